"""Generation request lifecycle and per-request partial text accumulation.

A GenerationRequest is identified by a client-minted token and moves
pending -> streaming -> {completed | cancelled | errored}. A request may also
end straight from pending (final without partials, early cancel, error).

PartialAccumulator maps request ids to the text streamed so far. An entry
exists from the moment a request starts until it reaches a terminal state
or is discarded; fragments for ids without an entry are refused rather
than silently starting a new one.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class RequestStatus(Enum):
    """Status of a generation request."""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED, RequestStatus.ERRORED})

_ALLOWED = {
    RequestStatus.PENDING: {RequestStatus.STREAMING} | TERMINAL_STATUSES,
    RequestStatus.STREAMING: {RequestStatus.STREAMING} | TERMINAL_STATUSES,
}


class InvalidTransition(ValueError):
    """Raised when a request is moved out of a terminal state or backwards."""


def new_request_id() -> str:
    """Mint a fresh request id (uuid4: 122 random bits)."""
    return str(uuid.uuid4())


@dataclass
class GenerationRequest:
    """One outstanding query on the generation channel."""
    request_id: str
    question: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance(self, status: RequestStatus) -> None:
        if status not in _ALLOWED.get(self.status, ()):
            raise InvalidTransition(
                f"Request {self.request_id}: {self.status.value} -> {status.value}"
            )
        self.status = status
        if status in TERMINAL_STATUSES:
            self.completed_at = time.time()


class PartialAccumulator:
    """Text accumulated so far, keyed by request id."""

    def __init__(self):
        self._partials: dict[str, str] = {}

    def start(self, request_id: str) -> None:
        self._partials[request_id] = ""

    def append(self, request_id: str, text: str) -> Optional[str]:
        """Append a fragment and return the running total.

        Returns None (and stores nothing) if the id is not tracked.
        """
        if request_id not in self._partials:
            return None
        total = self._partials[request_id] + (text or "")
        self._partials[request_id] = total
        return total

    def get(self, request_id: str) -> Optional[str]:
        return self._partials.get(request_id)

    def finish(self, request_id: str) -> str:
        """Remove the entry and return its text ("" if untracked)."""
        return self._partials.pop(request_id, "")

    def discard(self, request_id: str) -> None:
        self._partials.pop(request_id, None)

    def __contains__(self, request_id) -> bool:
        return request_id in self._partials

    def __len__(self) -> int:
        return len(self._partials)
