from __future__ import annotations

import abc
import hashlib
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from .types import RandomnessRequest

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


class RandomnessCoordinator(abc.ABC):
    """Oracle that answers a randomness request with a later callback."""

    @abc.abstractmethod
    def request_random_words(self, request: RandomnessRequest) -> int:
        """Submit ``request`` and return the id the callback will carry.

        Implementations must not block for the response; the random words
        are delivered later through ``Raffle.fulfill_random_words``.
        """

    def check_fulfillment(self, request_id: int, random_words: Sequence[int]) -> None:
        """Raise ``FulfillmentMismatch`` if ``random_words`` were not produced
        by this coordinator for ``request_id``.

        The default accepts the words as delivered; coordinators with a
        public record of their answers override it.
        """


class PaymentRail(abc.ABC):
    """Value-transfer primitive used to pay the winner."""

    @abc.abstractmethod
    def transfer(self, recipient: str, amount: int) -> bool:
        """Move ``amount`` units to ``recipient``; return False on failure.

        Raises ``PayoutUnconfirmed`` when the transfer was sent but its
        outcome is unknown.
        """


class PaymentVerifier(abc.ABC):
    """Confirms that an entry fee was actually paid into custody."""

    @abc.abstractmethod
    def verify(self, player: str, tx_hash: str) -> int:
        """Return the amount ``player`` paid in ``tx_hash``.

        Raises ``PaymentNotVerified`` when the transaction does not prove a
        payment from ``player`` to the custody account.
        """


class RandomWordsConsumer(Protocol):
    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> object:
        ...


@dataclass
class RecordedRequest:
    request_id: int
    request: RandomnessRequest
    fulfilled: bool = False


class InMemoryVRFCoordinator(RandomnessCoordinator):
    """Local stand-in for a VRF coordinator.

    Requests are recorded and numbered from 1. Nothing is delivered until
    ``fulfill`` is called, which mirrors the asynchronous callback of the
    real oracle.
    """

    def __init__(self) -> None:
        self.requests: List[RecordedRequest] = []
        self._next_id = 1

    def request_random_words(self, request: RandomnessRequest) -> int:
        request_id = self._next_id
        self._next_id += 1
        self.requests.append(RecordedRequest(request_id=request_id, request=request))
        return request_id

    @property
    def last_request_id(self) -> Optional[int]:
        if not self.requests:
            return None
        return self.requests[-1].request_id

    def get_request(self, request_id: int) -> RecordedRequest:
        for recorded in self.requests:
            if recorded.request_id == request_id:
                return recorded
        raise KeyError(f"unknown request id {request_id}")

    def fulfill(
        self,
        request_id: int,
        consumer: RandomWordsConsumer,
        random_words: Optional[Iterable[int]] = None,
    ) -> object:
        recorded = self.get_request(request_id)
        if recorded.fulfilled:
            raise RuntimeError(f"request {request_id} already fulfilled")
        if random_words is None:
            words = self.derive_words(request_id, recorded.request.num_words)
        else:
            words = [int(w) for w in random_words]
        result = consumer.fulfill_random_words(request_id, words)
        recorded.fulfilled = True
        return result

    @staticmethod
    def derive_words(request_id: int, num_words: int) -> List[int]:
        words = []
        for index in range(num_words):
            digest = hashlib.sha256(f"{request_id}:{index}".encode("utf-8")).digest()
            words.append(int.from_bytes(digest, "big"))
        return words


@dataclass
class InMemoryPaymentRail(PaymentRail):
    """Credits winners in a local balance map.

    Addresses listed in ``rejecting`` refuse incoming funds, which lets
    tests exercise a failed payout.
    """

    balances: Dict[str, int] = field(default_factory=dict)
    rejecting: set = field(default_factory=set)
    transfers: List[tuple] = field(default_factory=list)

    def transfer(self, recipient: str, amount: int) -> bool:
        if recipient in self.rejecting:
            return False
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        self.transfers.append((recipient, amount))
        return True

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)
