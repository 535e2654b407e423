from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

REQUEST_CONFIRMATIONS = 3
NUM_WORDS = 1


def _bool_from_env(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    return int(value, 0)


def _require_env(key: str) -> str:
    value = os.getenv(key)
    if value is None or value == "":
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


@dataclass(frozen=True)
class VrfSettings:
    coordinator_address: str = "0x" + "0" * 40
    key_hash: str = "0x" + "0" * 64
    subscription_id: int = 0
    callback_gas_limit: int = 500000
    request_confirmations: int = REQUEST_CONFIRMATIONS
    native_payment: bool = False
    # How far back to search for a fulfillment when the request block is unknown.
    fulfillment_lookback: int = 5000


@dataclass(frozen=True)
class ChainSettings:
    rpc_url: Optional[str] = None
    private_key: Optional[str] = None
    chain_id: Optional[int] = None
    gas_limit: int = 250000
    receipt_timeout: int = 180

    @property
    def enabled(self) -> bool:
        return bool(self.rpc_url)


@dataclass(frozen=True)
class RaffleSettings:
    entrance_fee: int
    interval_seconds: int
    vrf: VrfSettings = VrfSettings()
    chain: ChainSettings = ChainSettings()


def load_from_environment() -> RaffleSettings:
    entrance_fee = int(_require_env("ENTRANCE_FEE"), 0)
    interval = _int_from_env(os.getenv("INTERVAL_SECONDS"), 30)

    vrf = VrfSettings(
        coordinator_address=os.getenv("VRF__COORDINATOR_ADDRESS", "0x" + "0" * 40),
        key_hash=os.getenv("VRF__KEY_HASH", "0x" + "0" * 64),
        subscription_id=_int_from_env(os.getenv("VRF__SUBSCRIPTION_ID"), 0),
        callback_gas_limit=_int_from_env(os.getenv("VRF__CALLBACK_GAS_LIMIT"), 500000),
        request_confirmations=_int_from_env(
            os.getenv("VRF__REQUEST_CONFIRMATIONS"), REQUEST_CONFIRMATIONS
        ),
        native_payment=_bool_from_env(os.getenv("VRF__NATIVE_PAYMENT"), False),
        fulfillment_lookback=_int_from_env(os.getenv("VRF__FULFILLMENT_LOOKBACK"), 5000),
    )

    chain_id = os.getenv("CHAIN_ID")
    rpc_url = os.getenv("RPC_URL") or None
    chain = ChainSettings(
        rpc_url=rpc_url,
        private_key=_require_env("CUSTODY_PRIVATE_KEY") if rpc_url else None,
        chain_id=int(chain_id) if chain_id else None,
        gas_limit=_int_from_env(os.getenv("TX_GAS_LIMIT"), 250000),
        receipt_timeout=_int_from_env(os.getenv("TX_RECEIPT_TIMEOUT"), 180),
    )

    return RaffleSettings(
        entrance_fee=entrance_fee,
        interval_seconds=interval,
        vrf=vrf,
        chain=chain,
    )
