from __future__ import annotations

from typing import Any, Dict, Optional

from .types import RoundState


class RaffleError(Exception):
    """Base class for rejected raffle operations.

    Every subclass carries the values needed to diagnose the rejection
    without reading logs; ``to_dict`` exposes them to API callers.
    """

    code = "raffle_error"
    status_code = 400

    def context(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self), **self.context()}


class InsufficientPayment(RaffleError):
    code = "insufficient_payment"
    status_code = 400

    def __init__(self, payment: int, entrance_fee: int) -> None:
        super().__init__(f"payment {payment} is below the entrance fee {entrance_fee}")
        self.payment = payment
        self.entrance_fee = entrance_fee

    def context(self) -> Dict[str, Any]:
        return {"payment": self.payment, "entrance_fee": self.entrance_fee}


class RoundNotOpen(RaffleError):
    code = "round_not_open"
    status_code = 409

    def __init__(self, state: RoundState) -> None:
        super().__init__(f"raffle is not open (state={state.name})")
        self.state = state

    def context(self) -> Dict[str, Any]:
        return {"state": self.state.name}


class UpkeepNotNeeded(RaffleError):
    code = "upkeep_not_needed"
    status_code = 409

    def __init__(self, balance: int, player_count: int, state: RoundState) -> None:
        super().__init__(
            f"upkeep not needed (balance={balance}, players={player_count}, state={state.name})"
        )
        self.balance = balance
        self.player_count = player_count
        self.state = state

    def context(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "player_count": self.player_count,
            "state": self.state.name,
        }


class UnknownRequest(RaffleError):
    code = "unknown_request"
    status_code = 409

    def __init__(self, request_id: int, pending_request_id: Optional[int]) -> None:
        super().__init__(
            f"request {request_id} is not outstanding (pending={pending_request_id})"
        )
        self.request_id = request_id
        self.pending_request_id = pending_request_id

    def context(self) -> Dict[str, Any]:
        return {"request_id": self.request_id, "pending_request_id": self.pending_request_id}


class TransferFailed(RaffleError):
    code = "transfer_failed"
    status_code = 502

    def __init__(self, recipient: str, amount: int) -> None:
        super().__init__(f"transfer of {amount} to {recipient} failed")
        self.recipient = recipient
        self.amount = amount

    def context(self) -> Dict[str, Any]:
        return {"recipient": self.recipient, "amount": self.amount}


class LedgerCorrupted(RuntimeError):
    """Raised when the ledger breaks an invariant the engine relies on."""


class PayoutUnconfirmed(RaffleError):
    """The payout was broadcast but its receipt never arrived.

    The funds may still move, so the settlement must not be retried; the
    transaction hash is kept for reconciliation.
    """

    code = "payout_unconfirmed"
    status_code = 504

    def __init__(self, recipient: str, amount: int, tx_hash: str) -> None:
        super().__init__(f"transfer of {amount} to {recipient} is unconfirmed (tx={tx_hash})")
        self.recipient = recipient
        self.amount = amount
        self.tx_hash = tx_hash

    def context(self) -> Dict[str, Any]:
        return {"recipient": self.recipient, "amount": self.amount, "tx_hash": self.tx_hash}


class PaymentNotVerified(RaffleError):
    code = "payment_not_verified"
    status_code = 400

    def __init__(self, tx_hash: Optional[str], reason: str) -> None:
        super().__init__(f"payment {tx_hash} rejected: {reason}")
        self.tx_hash = tx_hash
        self.reason = reason

    def context(self) -> Dict[str, Any]:
        return {"tx_hash": self.tx_hash, "reason": self.reason}


class PaymentAlreadyUsed(RaffleError):
    code = "payment_already_used"
    status_code = 409

    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"payment {tx_hash} was already credited to an entry")
        self.tx_hash = tx_hash

    def context(self) -> Dict[str, Any]:
        return {"tx_hash": self.tx_hash}


class FulfillmentMismatch(RaffleError):
    code = "fulfillment_mismatch"
    status_code = 409

    def __init__(self, request_id: int, reason: str) -> None:
        super().__init__(f"random words for request {request_id} rejected: {reason}")
        self.request_id = request_id
        self.reason = reason

    def context(self) -> Dict[str, Any]:
        return {"request_id": self.request_id, "reason": self.reason}
