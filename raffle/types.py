from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union


class RoundState(IntEnum):
    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class RandomnessRequest:
    """Descriptor sent to the randomness coordinator for one draw."""

    key_hash: str
    subscription_id: int
    request_confirmations: int
    callback_gas_limit: int
    num_words: int
    native_payment: bool = False


@dataclass(frozen=True)
class RaffleSnapshot:
    state: RoundState
    entrance_fee: int
    interval: int
    balance: int
    player_count: int
    last_round_start: int
    recent_winner: Optional[str]
    pending_request_id: Optional[int]


@dataclass(frozen=True)
class EntryRecorded:
    player: str
    payment: int


@dataclass(frozen=True)
class RequestedRaffleWinner:
    request_id: int


@dataclass(frozen=True)
class WinnerPicked:
    winner: str
    amount: int
    request_id: int
    random_word: int


RaffleEvent = Union[EntryRecorded, RequestedRaffleWinner, WinnerPicked]
