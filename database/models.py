"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL (production) and SQLite (development, tests).

Key design decisions:
  - String primary keys (uuid hex), no database-specific sequences.
  - reply_jobs is the durable job queue; inbound_messages and conversations
    are written by ingestion and only read here.
  - outbound_messages carries a unique (reply_job_id, sequence_number) pair,
    the idempotency key for retried write-backs.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Integer, DateTime, Text, ForeignKey,
    Index, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="sms")
    user_number: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Inbound messages
# ──────────────────────────────────────────────────────────────

class InboundMessageRow(Base):
    __tablename__ = "inbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    from_address: Mapped[str] = mapped_column(String(64), nullable=False)
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="twilio")
    provider_message_sid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_inbound_conversation_received", "conversation_id", "received_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Reply jobs
# ──────────────────────────────────────────────────────────────

class ReplyJobRow(Base):
    __tablename__ = "reply_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    # no FK: source rows may be purged while the job is still queued
    inbound_message_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    run_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_reply_jobs_status_run_after", "status", "run_after"),
        Index("ix_reply_jobs_conversation_status", "conversation_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound messages
# ──────────────────────────────────────────────────────────────

class OutboundMessageRow(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    reply_job_id: Mapped[str] = mapped_column(String(64), ForeignKey("reply_jobs.id"), nullable=False)
    inbound_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    from_address: Mapped[str] = mapped_column(String(64), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    provider_inbound_sid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("reply_job_id", "sequence_number", name="uq_outbound_job_sequence"),
        Index("ix_outbound_conversation_created", "conversation_id", "created_at"),
    )
