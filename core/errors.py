"""
Error taxonomy for the reply worker.

Upstream (generation service) failures carry an explicit classification,
assigned where the SDK call is made; nothing downstream inspects raw
provider error fields.

  TransientUpstream  → UpstreamError(kind=TRANSIENT) / UpstreamTimeout
  PersistenceError   → store unreachable or unexpected constraint violation
  ApplicationError   → referenced rows missing (RecordNotFound)
  StartupError       → unrecoverable process start (store unreachable, bad config)
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


# 529 is the Anthropic "overloaded" status
TRANSIENT_STATUSES = frozenset({429, 500, 503, 504, 529})
OVERLOAD_STATUSES = frozenset({429, 503, 529})


def classify_status(status_code: Optional[int]) -> ErrorKind:
    """Map an HTTP status from a generation service to an ErrorKind."""
    if status_code in TRANSIENT_STATUSES:
        return ErrorKind.TRANSIENT
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.CONFLICT
    return ErrorKind.TERMINAL


class ReplyWorkerError(Exception):
    """Base class for all reply worker errors."""


class UpstreamError(ReplyWorkerError):
    """A generation service call failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TERMINAL,
        status_code: Optional[int] = None,
        provider: str = "",
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.provider = provider

    @classmethod
    def from_status(cls, message: str, status_code: Optional[int], provider: str = "") -> UpstreamError:
        return cls(message, kind=classify_status(status_code), status_code=status_code, provider=provider)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    @property
    def overloaded(self) -> bool:
        """Rate-limited or overloaded; eligible for the fallback backend."""
        return self.status_code in OVERLOAD_STATUSES

    def __repr__(self) -> str:
        return (f"{type(self).__name__}({str(self)!r}, kind={self.kind.value}, "
                f"status_code={self.status_code})")


class UpstreamTimeout(UpstreamError):
    """An attempt exceeded its deadline and was cancelled."""

    def __init__(self, timeout_s: float, provider: str = ""):
        super().__init__(
            f"Model timeout after {int(timeout_s * 1000)}ms",
            kind=ErrorKind.TRANSIENT,
            provider=provider,
        )
        self.timeout_s = timeout_s


class PersistenceError(ReplyWorkerError):
    """The job store could not complete an operation."""


class ApplicationError(ReplyWorkerError):
    """The batch references data that cannot be processed."""


class RecordNotFound(ApplicationError):
    def __init__(self, entity: str, record_id: str):
        super().__init__(f"{entity} not found: {record_id}")
        self.entity = entity
        self.record_id = record_id


class StartupError(ReplyWorkerError):
    """The worker process cannot start."""
