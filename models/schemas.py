"""
Core data models for the reply worker.
These are the types exchanged between the job store, generator and writer.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEADLETTER = "deadletter"


CLAIMABLE_STATUSES = (JobStatus.QUEUED.value, JobStatus.FAILED.value)
TERMINAL_STATUSES = (JobStatus.SUCCEEDED.value, JobStatus.DEADLETTER.value)


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_mapping(cls, mapping: Any):
        return cls.model_validate(dict(mapping))


# ──────────────────────────────────────────────────────────────
#  Job: one inbound message awaiting a reply
# ──────────────────────────────────────────────────────────────

class Job(_Record):
    id: str
    conversation_id: str
    inbound_message_id: str
    status: JobStatus
    attempts: int = 0
    max_attempts: int = 5
    run_after: UtcDatetime
    locked_at: Optional[UtcDatetime] = None
    locked_by: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None


# ──────────────────────────────────────────────────────────────
#  Conversation and messages
# ──────────────────────────────────────────────────────────────

class Conversation(_Record):
    id: str
    channel: str
    user_number: str


class InboundMessage(_Record):
    id: str
    conversation_id: str
    body: str
    from_address: str
    to_address: str
    provider: str
    provider_message_sid: Optional[str] = None
    received_at: Optional[UtcDatetime] = None


class OutboundMessage(_Record):
    id: str
    conversation_id: str
    reply_job_id: str
    inbound_message_id: Optional[str] = None
    provider: str
    to_address: str
    from_address: str
    body: str
    status: str = "pending"
    provider_inbound_sid: Optional[str] = None
    sequence_number: int
    created_at: Optional[UtcDatetime] = None


class TimelineEntry(BaseModel):
    direction: MessageDirection
    body: str
    ts: UtcDatetime


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class ReplyResult(BaseModel):
    reply: str
    model: str


class WriteResult(BaseModel):
    inserted_ids: list[str] = []
    segments: list[str] = []
    no_reply: bool = False


class BatchOutcome(BaseModel):
    """What one worker iteration did with a claimed batch."""
    job_ids: list[str]
    succeeded: bool
    model: str = ""
    inserted_ids: list[str] = []
    no_reply: bool = False
    error: str = ""
