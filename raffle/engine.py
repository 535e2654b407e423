from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from .collaborators import Clock, PaymentRail, RandomnessCoordinator, system_clock
from .config import NUM_WORDS, VrfSettings
from .errors import (
    InsufficientPayment,
    LedgerCorrupted,
    PayoutUnconfirmed,
    RoundNotOpen,
    TransferFailed,
    UnknownRequest,
    UpkeepNotNeeded,
)
from .ledger import Ledger
from .types import (
    EntryRecorded,
    RaffleEvent,
    RaffleSnapshot,
    RandomnessRequest,
    RequestedRaffleWinner,
    RoundState,
    WinnerPicked,
)

Listener = Callable[[RaffleEvent], None]


class Raffle:
    """Round state machine driving entries, draws and payouts.

    Each public mutating call is all-or-nothing: the ledger is restored and
    buffered events are dropped if anything raises. The engine does no
    locking; callers must not interleave operations on the same ledger.
    """

    def __init__(
        self,
        ledger: Ledger,
        coordinator: RandomnessCoordinator,
        payment_rail: PaymentRail,
        vrf: Optional[VrfSettings] = None,
        clock: Clock = system_clock,
        listeners: Iterable[Listener] = (),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ledger = ledger
        self._coordinator = coordinator
        self._payment_rail = payment_rail
        self._vrf = vrf or VrfSettings()
        self._clock = clock
        self._listeners: List[Listener] = list(listeners)
        self._pending_events: Optional[List[RaffleEvent]] = None
        self._logger = logger or logging.getLogger("chainraffle.engine")

    @classmethod
    def open(
        cls,
        entrance_fee: int,
        interval: int,
        coordinator: RandomnessCoordinator,
        payment_rail: PaymentRail,
        clock: Clock = system_clock,
        **kwargs,
    ) -> "Raffle":
        ledger = Ledger(entrance_fee=entrance_fee, interval=interval, last_round_start=clock())
        return cls(ledger, coordinator, payment_rail, clock=clock, **kwargs)

    # ------------------------------------------------------------------ #
    # Entry
    # ------------------------------------------------------------------ #

    def enter(self, player: str, payment: int) -> int:
        """Record a paid entry for ``player`` and return its slot index."""
        ledger = self._ledger
        if payment < ledger.entrance_fee:
            raise InsufficientPayment(payment, ledger.entrance_fee)
        if ledger.state != RoundState.OPEN:
            raise RoundNotOpen(ledger.state)

        with self._transaction():
            ledger.players.append(player)
            ledger.pot += payment
            self._emit(EntryRecorded(player=player, payment=payment))
        self._logger.debug("Entry recorded for %s (payment=%s)", player, payment)
        return ledger.player_count - 1

    # ------------------------------------------------------------------ #
    # Upkeep
    # ------------------------------------------------------------------ #

    def check_upkeep(self, check_data: bytes = b"") -> Tuple[bool, bytes]:
        ledger = self._ledger
        time_passed = self._clock() - ledger.last_round_start >= ledger.interval
        is_open = ledger.state == RoundState.OPEN
        has_balance = ledger.pot > 0
        has_players = ledger.player_count > 0
        return (time_passed and is_open and has_balance and has_players), b""

    def upkeep_needed(self) -> bool:
        needed, _ = self.check_upkeep()
        return needed

    def perform_upkeep(self, perform_data: bytes = b"") -> int:
        """Close the round and ask the coordinator for randomness.

        Returns the request id the coordinator will answer with. The
        response is not awaited.
        """
        ledger = self._ledger
        if not self.upkeep_needed():
            raise UpkeepNotNeeded(ledger.pot, ledger.player_count, ledger.state)

        with self._transaction():
            ledger.state = RoundState.CALCULATING
            request_id = self._coordinator.request_random_words(self._build_request())
            ledger.pending_request_id = request_id
            self._emit(RequestedRaffleWinner(request_id=request_id))
        self._logger.info(
            "Requested raffle winner: request=%s players=%s pot=%s",
            request_id,
            ledger.player_count,
            ledger.pot,
        )
        return request_id

    def _build_request(self) -> RandomnessRequest:
        vrf = self._vrf
        return RandomnessRequest(
            key_hash=vrf.key_hash,
            subscription_id=vrf.subscription_id,
            request_confirmations=vrf.request_confirmations,
            callback_gas_limit=vrf.callback_gas_limit,
            num_words=NUM_WORDS,
            native_payment=vrf.native_payment,
        )

    # ------------------------------------------------------------------ #
    # Settlement
    # ------------------------------------------------------------------ #

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> WinnerPicked:
        """Pick the winner for ``request_id`` and pay out the whole pot.

        The index is ``random_words[0] % len(players)``. The modulo bias this
        introduces is negligible for 256-bit words and small player counts.
        """
        ledger = self._ledger
        if ledger.state != RoundState.CALCULATING or ledger.pending_request_id != request_id:
            raise UnknownRequest(request_id, ledger.pending_request_id)
        if not random_words:
            raise ValueError("fulfill_random_words requires at least one random word")
        if not ledger.players:
            raise LedgerCorrupted("raffle is calculating with no players")

        random_word = int(random_words[0])
        winner = ledger.players[random_word % ledger.player_count]
        amount = ledger.pot

        unconfirmed: Optional[PayoutUnconfirmed] = None
        with self._transaction():
            ledger.recent_winner = winner
            ledger.state = RoundState.OPEN
            ledger.players = []
            ledger.last_round_start = self._clock()
            ledger.pending_request_id = None
            ledger.pot = 0
            event = WinnerPicked(
                winner=winner, amount=amount, request_id=request_id, random_word=random_word
            )
            self._emit(event)
            try:
                paid = self._payment_rail.transfer(winner, amount)
            except PayoutUnconfirmed as exc:
                # The funds may already be moving; keep the reset so no retry pays again.
                unconfirmed, paid = exc, True
            if not paid:
                self._logger.warning(
                    "Payout of %s to %s failed; round stays calculating", amount, winner
                )
                raise TransferFailed(winner, amount)
        if unconfirmed is not None:
            self._logger.error(
                "Payout of %s to %s unconfirmed (tx=%s); round settled for request %s",
                amount,
                winner,
                unconfirmed.tx_hash,
                request_id,
            )
            raise unconfirmed
        self._logger.info("Winner picked: %s receives %s (request=%s)", winner, amount, request_id)
        return event

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def entrance_fee(self) -> int:
        return self._ledger.entrance_fee

    @property
    def interval(self) -> int:
        return self._ledger.interval

    @property
    def state(self) -> RoundState:
        return self._ledger.state

    @property
    def recent_winner(self) -> Optional[str]:
        return self._ledger.recent_winner

    @property
    def players(self) -> Tuple[str, ...]:
        return tuple(self._ledger.players)

    @property
    def number_of_players(self) -> int:
        return self._ledger.player_count

    @property
    def last_round_start(self) -> int:
        return self._ledger.last_round_start

    @property
    def balance(self) -> int:
        return self._ledger.pot

    @property
    def pending_request_id(self) -> Optional[int]:
        return self._ledger.pending_request_id

    @property
    def num_words(self) -> int:
        return NUM_WORDS

    @property
    def request_confirmations(self) -> int:
        return self._vrf.request_confirmations

    def player(self, index: int) -> str:
        if index < 0 or index >= self._ledger.player_count:
            raise IndexError(f"no player at index {index}")
        return self._ledger.players[index]

    def snapshot(self) -> RaffleSnapshot:
        return self._ledger.describe()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        saved = self._ledger.snapshot()
        self._pending_events = []
        try:
            yield
        except Exception:
            self._ledger.restore(saved)
            self._pending_events = None
            raise
        events, self._pending_events = self._pending_events, None
        for event in events:
            for listener in self._listeners:
                listener(event)

    def _emit(self, event: RaffleEvent) -> None:
        if self._pending_events is None:
            raise RuntimeError("events can only be emitted inside a transaction")
        self._pending_events.append(event)
