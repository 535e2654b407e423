from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Optional

from .types import RaffleSnapshot, RoundState


@dataclass
class Ledger:
    """Configuration and mutable round state of one raffle.

    ``entrance_fee`` and ``interval`` are fixed for the lifetime of the
    ledger; everything else is rewritten by the engine. ``pot`` is the
    pooled balance: the sum of every payment accepted since the last
    settlement.
    """

    entrance_fee: int
    interval: int
    last_round_start: int
    players: List[str] = field(default_factory=list)
    state: RoundState = RoundState.OPEN
    recent_winner: Optional[str] = None
    pot: int = 0
    pending_request_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.entrance_fee < 0:
            raise ValueError("entrance_fee must not be negative")
        if self.interval < 0:
            raise ValueError("interval must not be negative")
        self.state = RoundState(self.state)

    def __setattr__(self, name: str, value) -> None:
        if name in ("entrance_fee", "interval") and name in self.__dict__:
            raise AttributeError(f"{name} is immutable")
        super().__setattr__(name, value)

    @property
    def player_count(self) -> int:
        return len(self.players)

    def snapshot(self) -> "Ledger":
        return replace(self, players=list(self.players))

    def restore(self, snapshot: "Ledger") -> None:
        self.players = list(snapshot.players)
        self.state = snapshot.state
        self.recent_winner = snapshot.recent_winner
        self.last_round_start = snapshot.last_round_start
        self.pot = snapshot.pot
        self.pending_request_id = snapshot.pending_request_id

    def describe(self) -> RaffleSnapshot:
        return RaffleSnapshot(
            state=self.state,
            entrance_fee=self.entrance_fee,
            interval=self.interval,
            balance=self.pot,
            player_count=self.player_count,
            last_round_start=self.last_round_start,
            recent_winner=self.recent_winner,
            pending_request_id=self.pending_request_id,
        )
