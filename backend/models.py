from __future__ import annotations

import datetime as dt

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

SETTLEMENT_PAYING = "paying"
SETTLEMENT_PAID = "paid"
SETTLEMENT_UNCONFIRMED = "unconfirmed"


class RaffleStateRow(Base):
    __tablename__ = "raffle_state"

    id = Column(Integer, primary_key=True, default=1)
    state = Column(Integer, nullable=False, default=0)
    last_round_start = Column(BigInteger, nullable=False)
    recent_winner = Column(String(64), nullable=True)
    # Wei amounts and VRF ids exceed 64 bits; stored as decimal strings.
    pot = Column(String(80), nullable=False, default="0")
    pending_request_id = Column(String(80), nullable=True)


class EntryRow(Base):
    __tablename__ = "entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    position = Column(Integer, nullable=False)
    player = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)


class PaymentReceiptRow(Base):
    """A payment transaction already credited to an entry; kept across rounds."""

    __tablename__ = "payment_receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(66), nullable=False, unique=True)
    player = Column(String(64), nullable=False)
    amount = Column(String(80), nullable=False)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)


class SettlementRow(Base):
    __tablename__ = "settlements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(80), nullable=False, unique=True)
    winner = Column(String(64), nullable=False)
    payout = Column(String(80), nullable=False)
    random_word = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=SETTLEMENT_PAYING)
    tx_hash = Column(String(66), nullable=True)
    settled_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "request_id": int(self.request_id),
            "winner": self.winner,
            "payout": self.payout,
            "random_word": self.random_word,
            "status": self.status,
            "tx_hash": self.tx_hash,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
        }
