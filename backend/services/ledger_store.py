from __future__ import annotations

from typing import List, Optional

from sqlalchemy.orm import Session

from raffle.ledger import Ledger
from raffle.types import RoundState, WinnerPicked

from ..models import (
    SETTLEMENT_PAYING,
    EntryRow,
    PaymentReceiptRow,
    RaffleStateRow,
    SettlementRow,
)


def _int_or_none(value: Optional[str]) -> Optional[int]:
    return int(value) if value is not None else None


class LedgerRepository:
    """Loads and stores the raffle ledger inside a caller-owned session."""

    def __init__(self, entrance_fee: int, interval: int) -> None:
        self._entrance_fee = entrance_fee
        self._interval = interval

    def _ensure_state(self, session: Session, now: int) -> RaffleStateRow:
        row = session.get(RaffleStateRow, 1)
        if row is None:
            row = RaffleStateRow(id=1, state=int(RoundState.OPEN), last_round_start=now, pot="0")
            session.add(row)
            session.flush()
        return row

    def _entries(self, session: Session) -> List[EntryRow]:
        return session.query(EntryRow).order_by(EntryRow.position).all()

    def load(self, session: Session, now: int) -> Ledger:
        row = self._ensure_state(session, now)
        return Ledger(
            entrance_fee=self._entrance_fee,
            interval=self._interval,
            last_round_start=int(row.last_round_start),
            players=[entry.player for entry in self._entries(session)],
            state=RoundState(row.state),
            recent_winner=row.recent_winner,
            pot=int(row.pot),
            pending_request_id=_int_or_none(row.pending_request_id),
        )

    def save(self, session: Session, ledger: Ledger) -> None:
        row = self._ensure_state(session, ledger.last_round_start)
        row.state = int(ledger.state)
        row.last_round_start = ledger.last_round_start
        row.recent_winner = ledger.recent_winner
        row.pot = str(ledger.pot)
        row.pending_request_id = (
            str(ledger.pending_request_id) if ledger.pending_request_id is not None else None
        )

        entries = self._entries(session)
        stored = [entry.player for entry in entries]
        if stored != ledger.players[: len(stored)]:
            for entry in entries:
                session.delete(entry)
            stored = []
        for position in range(len(stored), len(ledger.players)):
            session.add(EntryRow(position=position, player=ledger.players[position]))
        session.flush()

    def record_settlement(self, session: Session, event: WinnerPicked) -> None:
        session.add(
            SettlementRow(
                request_id=str(event.request_id),
                winner=event.winner,
                payout=str(event.amount),
                random_word=str(event.random_word),
                status=SETTLEMENT_PAYING,
            )
        )

    def _settlement(self, session: Session, request_id: int) -> SettlementRow:
        return session.query(SettlementRow).filter_by(request_id=str(request_id)).one()

    def mark_settlement(
        self, session: Session, request_id: int, status: str, tx_hash: Optional[str] = None
    ) -> None:
        row = self._settlement(session, request_id)
        row.status = status
        if tx_hash is not None:
            row.tx_hash = tx_hash

    def discard_settlement(self, session: Session, request_id: int) -> None:
        session.delete(self._settlement(session, request_id))

    def list_settlements(self, session: Session, limit: Optional[int] = None) -> List[dict]:
        query = session.query(SettlementRow).order_by(SettlementRow.id.desc())
        if limit:
            query = query.limit(limit)
        return [row.to_dict() for row in query.all()]

    def receipt_used(self, session: Session, tx_hash: str) -> bool:
        return session.query(PaymentReceiptRow).filter_by(tx_hash=tx_hash).first() is not None

    def record_receipt(self, session: Session, tx_hash: str, player: str, amount: int) -> None:
        session.add(PaymentReceiptRow(tx_hash=tx_hash, player=player, amount=str(amount)))
