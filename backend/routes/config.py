from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify

from raffle.config import NUM_WORDS

from ..config import load_settings

bp = Blueprint("config", __name__)


def _get_raffle_metadata() -> Dict[str, Any]:
    settings = load_settings().raffle
    vrf = settings.vrf
    return {
        "entrance_fee": str(settings.entrance_fee),
        "interval_seconds": settings.interval_seconds,
        "num_words": NUM_WORDS,
        "request_confirmations": vrf.request_confirmations,
        "callback_gas_limit": vrf.callback_gas_limit,
        "native_payment": vrf.native_payment,
        "vrf_coordinator": vrf.coordinator_address if settings.chain.enabled else None,
        "chain_id": settings.chain.chain_id,
        "rpc_url": settings.chain.rpc_url,
    }


@bp.get("/config")
def get_config():
    return jsonify(_get_raffle_metadata())
