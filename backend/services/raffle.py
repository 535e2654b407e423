from __future__ import annotations

import logging
from contextlib import contextmanager
from threading import RLock
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy.orm import Session

from raffle.collaborators import (
    Clock,
    InMemoryPaymentRail,
    InMemoryVRFCoordinator,
    PaymentRail,
    PaymentVerifier,
    RandomnessCoordinator,
    system_clock,
)
from raffle.config import RaffleSettings
from raffle.engine import Raffle
from raffle.errors import PaymentAlreadyUsed, PaymentNotVerified, PayoutUnconfirmed, TransferFailed
from raffle.ledger import Ledger
from raffle.types import RaffleEvent, RaffleSnapshot, RoundState, WinnerPicked

from ..db import session_scope
from ..models import SETTLEMENT_PAID, SETTLEMENT_UNCONFIRMED
from .ledger_store import LedgerRepository

T = TypeVar("T")


class _DeferredPayout(PaymentRail):
    """Accepts the engine's payout so it can be sent once the settlement is stored."""

    def transfer(self, recipient: str, amount: int) -> bool:
        return True


class RaffleService:
    """Hosts the raffle engine on top of the SQL-backed ledger.

    Every operation holds one process-wide lock and one database session:
    the ledger is loaded, handed to the engine, and saved only if the
    engine call returns. An exception rolls the session back, so a
    rejected or failed operation leaves no trace in storage.

    Settlement is split in two: the reset round and a ``paying`` settlement
    row are committed first, then the winner is paid. A failed payout puts
    the round back; a lost commit can never lead to a second payout.
    """

    def __init__(
        self,
        settings: RaffleSettings,
        coordinator: RandomnessCoordinator,
        payment_rail: PaymentRail,
        clock: Clock = system_clock,
        logger: Optional[logging.Logger] = None,
        payment_verifier: Optional[PaymentVerifier] = None,
    ) -> None:
        self._settings = settings
        self._coordinator = coordinator
        self._payment_rail = payment_rail
        self._payment_verifier = payment_verifier
        self._clock = clock
        self._repo = LedgerRepository(settings.entrance_fee, settings.interval_seconds)
        self._lock = RLock()
        self._logger = logger or logging.getLogger("chainraffle.service")

    @contextmanager
    def _raffle(
        self, persist: bool = True, payment_rail: Optional[PaymentRail] = None
    ) -> Iterator[Tuple[Raffle, Ledger, Session]]:
        with self._lock, session_scope() as session:
            ledger = self._repo.load(session, self._clock())
            events: List[RaffleEvent] = []
            raffle = Raffle(
                ledger,
                self._coordinator,
                payment_rail or self._payment_rail,
                vrf=self._settings.vrf,
                clock=self._clock,
                listeners=[events.append],
            )
            yield raffle, ledger, session
            if persist:
                self._repo.save(session, ledger)
                for event in events:
                    if isinstance(event, WinnerPicked):
                        self._repo.record_settlement(session, event)

    def _read(self, fn: Callable[[Raffle], T]) -> T:
        with self._raffle(persist=False) as (raffle, _, _):
            return fn(raffle)

    def enter(self, player: str, payment: int, tx_hash: Optional[str] = None) -> int:
        with self._raffle() as (raffle, _, session):
            if self._payment_verifier is not None:
                payment = self._verified_payment(session, player, payment, tx_hash)
            return raffle.enter(player, payment)

    def _verified_payment(
        self, session: Session, player: str, payment: int, tx_hash: Optional[str]
    ) -> int:
        if not tx_hash:
            raise PaymentNotVerified(tx_hash, "a payment transaction hash is required")
        if self._repo.receipt_used(session, tx_hash):
            raise PaymentAlreadyUsed(tx_hash)
        paid = self._payment_verifier.verify(player, tx_hash)
        if paid < payment:
            raise PaymentNotVerified(
                tx_hash, f"transaction paid {paid}, less than the claimed {payment}"
            )
        self._repo.record_receipt(session, tx_hash, player, paid)
        self._logger.info("Entry payment %s verified for %s (value=%s)", tx_hash, player, paid)
        return paid

    def check_upkeep(self) -> Tuple[bool, bytes]:
        return self._read(lambda raffle: raffle.check_upkeep(b""))

    def perform_upkeep(self) -> Tuple[int, RoundState]:
        with self._raffle() as (raffle, _, _):
            request_id = raffle.perform_upkeep(b"")
            return request_id, raffle.state

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> WinnerPicked:
        with self._lock:
            with self._raffle(payment_rail=_DeferredPayout()) as (raffle, ledger, _):
                if ledger.pending_request_id == request_id:
                    self._coordinator.check_fulfillment(request_id, random_words)
                before = ledger.snapshot()
                event = raffle.fulfill_random_words(request_id, random_words)
            return self._pay(event, before)

    def _pay(self, event: WinnerPicked, before: Ledger) -> WinnerPicked:
        try:
            paid = self._payment_rail.transfer(event.winner, event.amount)
        except PayoutUnconfirmed as exc:
            with session_scope() as session:
                self._repo.mark_settlement(
                    session, event.request_id, SETTLEMENT_UNCONFIRMED, tx_hash=exc.tx_hash
                )
            self._logger.error(
                "Payout for request %s unconfirmed (tx=%s); reconcile before paying again",
                event.request_id,
                exc.tx_hash,
            )
            raise

        with session_scope() as session:
            if paid:
                self._repo.mark_settlement(session, event.request_id, SETTLEMENT_PAID)
            else:
                self._repo.save(session, before)
                self._repo.discard_settlement(session, event.request_id)
        if not paid:
            self._logger.warning(
                "Payout of %s to %s failed; request %s stays pending",
                event.amount,
                event.winner,
                event.request_id,
            )
            raise TransferFailed(event.winner, event.amount)
        self._logger.info("Recorded settlement for request %s", event.request_id)
        return event

    def snapshot(self) -> RaffleSnapshot:
        return self._read(lambda raffle: raffle.snapshot())

    def players(self) -> Tuple[str, ...]:
        return self._read(lambda raffle: raffle.players)

    def player(self, index: int) -> str:
        return self._read(lambda raffle: raffle.player(index))

    def settlements(self, limit: Optional[int] = None) -> List[dict]:
        with self._lock, session_scope() as session:
            return self._repo.list_settlements(session, limit)


def build_service(settings: RaffleSettings, logger: Optional[logging.Logger] = None) -> RaffleService:
    logger = logger or logging.getLogger("chainraffle.service")
    if settings.chain.enabled:
        from raffle.chain import build_chain_collaborators

        chain = build_chain_collaborators(settings.chain, settings.vrf)
        logger.info("Raffle wired to VRF coordinator %s", settings.vrf.coordinator_address)
        return RaffleService(
            settings,
            chain.coordinator,
            chain.payment_rail,
            logger=logger,
            payment_verifier=chain.payment_verifier,
        )

    logger.warning(
        "RPC_URL not set; using in-memory VRF coordinator and payment rail. "
        "Entry payments are not verified."
    )
    return RaffleService(settings, InMemoryVRFCoordinator(), InMemoryPaymentRail(), logger=logger)
