from .collaborators import (
    InMemoryPaymentRail,
    InMemoryVRFCoordinator,
    PaymentRail,
    PaymentVerifier,
    RandomnessCoordinator,
    system_clock,
)
from .engine import Raffle
from .errors import (
    FulfillmentMismatch,
    InsufficientPayment,
    LedgerCorrupted,
    PaymentAlreadyUsed,
    PaymentNotVerified,
    PayoutUnconfirmed,
    RaffleError,
    RoundNotOpen,
    TransferFailed,
    UnknownRequest,
    UpkeepNotNeeded,
)
from .ledger import Ledger
from .types import RandomnessRequest, RoundState

__all__ = [
    "FulfillmentMismatch",
    "InMemoryPaymentRail",
    "InMemoryVRFCoordinator",
    "InsufficientPayment",
    "Ledger",
    "LedgerCorrupted",
    "PaymentAlreadyUsed",
    "PaymentNotVerified",
    "PaymentRail",
    "PaymentVerifier",
    "PayoutUnconfirmed",
    "Raffle",
    "RaffleError",
    "RandomnessCoordinator",
    "RandomnessRequest",
    "RoundNotOpen",
    "RoundState",
    "TransferFailed",
    "UnknownRequest",
    "UpkeepNotNeeded",
    "system_clock",
]
