from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from ..config import load_settings
from ..schemas import (
    EntryRequest,
    EntryResponse,
    FulfillRequest,
    FulfillResponse,
    RaffleStatusResponse,
    UpkeepCheckResponse,
    UpkeepResponse,
)
from ..services.raffle import RaffleService

bp = Blueprint("raffle", __name__)


def get_raffle_service() -> RaffleService:
    return current_app.extensions["raffle"]


def _require_oracle() -> bool:
    api_key = load_settings().oracle_api_key
    if not api_key:
        current_app.logger.warning("Rejected fulfillment: ORACLE_API_KEY is not configured.")
        return False
    provided = request.headers.get("X-Oracle-Token") or ""
    return hmac.compare_digest(provided.encode("utf-8"), api_key.encode("utf-8"))


@bp.get("")
def get_status():
    snapshot = get_raffle_service().snapshot()
    response = RaffleStatusResponse(
        state=snapshot.state.name,
        entrance_fee=str(snapshot.entrance_fee),
        interval=snapshot.interval,
        balance=str(snapshot.balance),
        player_count=snapshot.player_count,
        last_round_start=snapshot.last_round_start,
        recent_winner=snapshot.recent_winner,
        pending_request_id=snapshot.pending_request_id,
    )
    return jsonify(response.model_dump())


@bp.get("/players")
def list_players():
    return jsonify(list(get_raffle_service().players()))


@bp.get("/players/<int:index>")
def get_player(index: int):
    try:
        player = get_raffle_service().player(index)
    except IndexError:
        return jsonify({"error": "player not found"}), 404
    return jsonify({"index": index, "player": player})


@bp.post("/entries")
def enter_raffle():
    payload = request.get_json(force=True, silent=True) or {}
    data = EntryRequest(**payload)

    service = get_raffle_service()
    position = service.enter(data.player, data.payment, tx_hash=data.tx_hash)

    response = EntryResponse(player=data.player, position=position, player_count=position + 1)
    return jsonify(response.model_dump()), 201


@bp.get("/upkeep")
def check_upkeep():
    needed, perform_data = get_raffle_service().check_upkeep()
    response = UpkeepCheckResponse(upkeep_needed=needed, perform_data="0x" + perform_data.hex())
    return jsonify(response.model_dump())


@bp.post("/upkeep")
def perform_upkeep():
    request_id, state = get_raffle_service().perform_upkeep()
    response = UpkeepResponse(request_id=request_id, state=state.name)
    return jsonify(response.model_dump()), 202


@bp.post("/fulfill")
def fulfill_random_words():
    if not _require_oracle():
        return jsonify({"error": "unauthorized"}), 401

    payload = request.get_json(force=True, silent=True) or {}
    data = FulfillRequest(**payload)

    event = get_raffle_service().fulfill_random_words(data.request_id, data.random_words)
    response = FulfillResponse(request_id=event.request_id, winner=event.winner, payout=str(event.amount))
    return jsonify(response.model_dump())


@bp.get("/winners")
def list_winners():
    limit = request.args.get("limit", type=int)
    return jsonify(get_raffle_service().settlements(limit))
