from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from .collaborators import PaymentRail, PaymentVerifier, RandomnessCoordinator
from .config import ChainSettings, VrfSettings
from .errors import FulfillmentMismatch, PaymentNotVerified, PayoutUnconfirmed
from .types import RandomnessRequest

if TYPE_CHECKING:  # pragma: no cover
    from web3 import Web3
    from web3.contract import Contract

logger = logging.getLogger("chainraffle.chain")

EXTRA_ARGS_V1_TAG = "VRF ExtraArgsV1"

# Subset of the VRF v2.5 coordinator ABI used by the raffle.
VRF_COORDINATOR_ABI = [
    {
        "type": "function",
        "name": "requestRandomWords",
        "stateMutability": "nonpayable",
        "inputs": [
            {
                "name": "req",
                "type": "tuple",
                "components": [
                    {"name": "keyHash", "type": "bytes32"},
                    {"name": "subId", "type": "uint256"},
                    {"name": "requestConfirmations", "type": "uint16"},
                    {"name": "callbackGasLimit", "type": "uint32"},
                    {"name": "numWords", "type": "uint32"},
                    {"name": "extraArgs", "type": "bytes"},
                ],
            }
        ],
        "outputs": [{"name": "requestId", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "RandomWordsRequested",
        "anonymous": False,
        "inputs": [
            {"name": "keyHash", "type": "bytes32", "indexed": True},
            {"name": "requestId", "type": "uint256", "indexed": False},
            {"name": "preSeed", "type": "uint256", "indexed": False},
            {"name": "subId", "type": "uint256", "indexed": True},
            {"name": "minimumRequestConfirmations", "type": "uint16", "indexed": False},
            {"name": "callbackGasLimit", "type": "uint32", "indexed": False},
            {"name": "numWords", "type": "uint32", "indexed": False},
            {"name": "extraArgs", "type": "bytes", "indexed": False},
            {"name": "sender", "type": "address", "indexed": True},
        ],
    },
    {
        "type": "event",
        "name": "RandomWordsFulfilled",
        "anonymous": False,
        "inputs": [
            {"name": "requestId", "type": "uint256", "indexed": True},
            {"name": "outputSeed", "type": "uint256", "indexed": False},
            {"name": "subId", "type": "uint256", "indexed": True},
            {"name": "payment", "type": "uint96", "indexed": False},
            {"name": "nativePayment", "type": "bool", "indexed": False},
            {"name": "success", "type": "bool", "indexed": False},
            {"name": "onlyPremium", "type": "bool", "indexed": False},
        ],
    },
]


class ChainCollaborators(NamedTuple):
    coordinator: "Web3VRFCoordinator"
    payment_rail: "Web3PaymentRail"
    payment_verifier: "Web3PaymentVerifier"


def connect(settings: ChainSettings) -> "Web3":
    from web3 import Web3
    from web3.middleware import ExtraDataToPOAMiddleware

    if not settings.rpc_url:
        raise RuntimeError("RPC_URL is not configured.")
    web3 = Web3(Web3.HTTPProvider(settings.rpc_url))
    if not web3.is_connected():
        raise ConnectionError(f"Cannot connect to RPC endpoint: {settings.rpc_url}")

    # For PoA testnets (e.g. Hardhat, Polygon) insert the middleware.
    web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


class CustodySigner:
    """Signs and broadcasts transactions from the account holding the pot."""

    def __init__(self, web3: "Web3", settings: ChainSettings) -> None:
        if not settings.private_key:
            raise RuntimeError("Custody signer not configured; set CUSTODY_PRIVATE_KEY in .env")
        self._web3 = web3
        self._settings = settings
        self._account = web3.eth.account.from_key(settings.private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def _base_params(self) -> Dict[str, Any]:
        return {
            "from": self._account.address,
            "nonce": self._web3.eth.get_transaction_count(self._account.address),
            "gasPrice": self._web3.eth.gas_price,
        }

    def send_function(self, fn) -> Tuple[Any, Any]:
        tx = fn.build_transaction({**self._base_params(), "gas": self._settings.gas_limit})
        tx_hash = self.broadcast(tx)
        return tx_hash, self.wait(tx_hash)

    def broadcast_value(self, recipient: str, amount: int) -> Any:
        from web3 import Web3

        tx = {
            **self._base_params(),
            "to": Web3.to_checksum_address(recipient),
            "value": int(amount),
            "gas": 21000,
        }
        return self.broadcast(tx)

    def broadcast(self, tx: Dict[str, Any]) -> Any:
        if self._settings.chain_id is not None:
            tx["chainId"] = self._settings.chain_id
        signed = self._account.sign_transaction(tx)
        return self._web3.eth.send_raw_transaction(signed.raw_transaction)

    def wait(self, tx_hash: Any) -> Any:
        return self._web3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._settings.receipt_timeout, poll_latency=2
        )


class Web3VRFCoordinator(RandomnessCoordinator):
    """Submits randomness requests to an on-chain VRF v2.5 coordinator.

    The custody account is the registered consumer, so the coordinator's
    callback carries no logic; a relayer reads the fulfillment and posts the
    words to the host. ``check_fulfillment`` re-derives the words from the
    ``RandomWordsFulfilled`` output seed before they are accepted.
    """

    def __init__(
        self,
        web3: "Web3",
        contract: "Contract",
        signer: CustodySigner,
        lookback: int = 5000,
    ) -> None:
        self._web3 = web3
        self._contract = contract
        self._signer = signer
        self._lookback = lookback
        self._request_blocks: Dict[int, int] = {}

    def encode_extra_args(self, native_payment: bool) -> bytes:
        tag = bytes(self._web3.keccak(text=EXTRA_ARGS_V1_TAG))[:4]
        return tag + self._web3.codec.encode(["bool"], [native_payment])

    def request_random_words(self, request: RandomnessRequest) -> int:
        key_hash = request.key_hash[2:] if request.key_hash.startswith("0x") else request.key_hash
        fn = self._contract.functions.requestRandomWords(
            (
                bytes.fromhex(key_hash),
                request.subscription_id,
                request.request_confirmations,
                request.callback_gas_limit,
                request.num_words,
                self.encode_extra_args(request.native_payment),
            )
        )
        tx_hash, receipt = self._signer.send_function(fn)
        if receipt.status != 1:
            raise RuntimeError(f"requestRandomWords reverted: tx={tx_hash.hex()}")

        events = self._contract.events.RandomWordsRequested().process_receipt(receipt)
        if not events:
            raise RuntimeError(f"RandomWordsRequested not emitted: tx={tx_hash.hex()}")
        request_id = int(events[0]["args"]["requestId"])
        self._request_blocks[request_id] = int(receipt.blockNumber)
        logger.info("VRF request %s broadcast in %s", request_id, tx_hash.hex())
        return request_id

    def fulfilled_seed(self, request_id: int) -> Optional[int]:
        from_block = self._request_blocks.get(request_id)
        if from_block is None:
            from_block = max(0, self._web3.eth.block_number - self._lookback)
        logs = self._contract.events.RandomWordsFulfilled().get_logs(
            from_block=from_block, argument_filters={"requestId": request_id}
        )
        if not logs:
            return None
        return int(logs[0]["args"]["outputSeed"])

    def derive_words(self, seed: int, num_words: int) -> List[int]:
        words = []
        for index in range(num_words):
            encoded = self._web3.codec.encode(["uint256", "uint256"], [seed, index])
            words.append(int.from_bytes(bytes(self._web3.keccak(encoded)), "big"))
        return words

    def check_fulfillment(self, request_id: int, random_words: Sequence[int]) -> None:
        seed = self.fulfilled_seed(request_id)
        if seed is None:
            raise FulfillmentMismatch(request_id, "the coordinator has not fulfilled this request")
        expected = self.derive_words(seed, len(random_words))
        if [int(word) for word in random_words] != expected:
            logger.warning("Posted words for request %s do not match the coordinator", request_id)
            raise FulfillmentMismatch(request_id, "words differ from the coordinator's output")


class Web3PaymentRail(PaymentRail):
    """Pays winners with native value transfers from the custody account."""

    def __init__(self, signer: CustodySigner) -> None:
        self._signer = signer

    def transfer(self, recipient: str, amount: int) -> bool:
        from web3.exceptions import Web3Exception

        try:
            tx_hash = self._signer.broadcast_value(recipient, amount)
        except (Web3Exception, ValueError) as exc:
            logger.error("Transfer of %s to %s failed: %s", amount, recipient, exc)
            return False
        try:
            receipt = self._signer.wait(tx_hash)
        except (Web3Exception, OSError) as exc:
            logger.error(
                "No receipt for transfer of %s to %s in %s: %s", amount, recipient, tx_hash.hex(), exc
            )
            raise PayoutUnconfirmed(recipient, amount, tx_hash.hex()) from exc
        if receipt.status != 1:
            logger.error("Transfer of %s to %s reverted: tx=%s", amount, recipient, tx_hash.hex())
            return False
        logger.info("Transferred %s to %s in %s", amount, recipient, tx_hash.hex())
        return True


class Web3PaymentVerifier(PaymentVerifier):
    """Checks entry payments against mined transactions to the custody account."""

    def __init__(self, web3: "Web3", custody_address: str) -> None:
        from web3 import Web3

        self._web3 = web3
        self._custody = Web3.to_checksum_address(custody_address)

    def verify(self, player: str, tx_hash: str) -> int:
        from web3 import Web3
        from web3.exceptions import Web3Exception

        try:
            tx = self._web3.eth.get_transaction(tx_hash)
            receipt = self._web3.eth.get_transaction_receipt(tx_hash)
        except (Web3Exception, ValueError) as exc:
            raise PaymentNotVerified(tx_hash, "transaction not found or not mined") from exc

        if receipt["status"] != 1:
            raise PaymentNotVerified(tx_hash, "transaction reverted")
        recipient = tx.get("to")
        if not recipient or Web3.to_checksum_address(recipient) != self._custody:
            raise PaymentNotVerified(tx_hash, "transaction did not pay the custody account")
        if Web3.to_checksum_address(tx["from"]) != Web3.to_checksum_address(player):
            raise PaymentNotVerified(tx_hash, "transaction was sent by another account")
        return int(tx["value"])


def build_chain_collaborators(chain: ChainSettings, vrf: VrfSettings) -> ChainCollaborators:
    from web3 import Web3

    web3 = connect(chain)
    signer = CustodySigner(web3, chain)
    contract = web3.eth.contract(
        address=Web3.to_checksum_address(vrf.coordinator_address), abi=VRF_COORDINATOR_ABI
    )
    return ChainCollaborators(
        coordinator=Web3VRFCoordinator(web3, contract, signer, lookback=vrf.fulfillment_lookback),
        payment_rail=Web3PaymentRail(signer),
        payment_verifier=Web3PaymentVerifier(web3, signer.address),
    )
