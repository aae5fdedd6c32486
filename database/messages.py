"""
Read-side lookups for conversations and their messages.

These rows are written by ingestion (and by OutboundWriter); the worker only
reads them to build context and to address replies.
"""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import literal, select, union_all
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import RecordNotFound
from database.models import ConversationRow, InboundMessageRow, OutboundMessageRow
from models.schemas import Conversation, InboundMessage, MessageDirection, OutboundMessage, TimelineEntry

# outbound rows the correspondent has (or is about to have) seen
VISIBLE_OUTBOUND_STATUSES = ("sent", "sending")


async def load_conversation(session: AsyncSession, conversation_id: str) -> Conversation:
    row = await session.get(ConversationRow, conversation_id)
    if row is None:
        raise RecordNotFound("conversation", conversation_id)
    return Conversation.model_validate(row)


async def load_inbound_message(session: AsyncSession, message_id: str) -> InboundMessage:
    row = await session.get(InboundMessageRow, message_id)
    if row is None:
        raise RecordNotFound("inbound_message", message_id)
    return InboundMessage.model_validate(row)


async def load_timeline(
    session: AsyncSession,
    conversation_id: str,
    user_number: str,
    outbound_statuses: Iterable[str] = VISIBLE_OUTBOUND_STATUSES,
    limit: int = 200,
) -> list[TimelineEntry]:
    """
    Inbound messages from the correspondent and visible outbound replies to
    them, oldest first. `limit` keeps the most recent entries.
    """
    inbound = (
        select(
            literal(MessageDirection.INBOUND.value).label("direction"),
            InboundMessageRow.body.label("body"),
            InboundMessageRow.received_at.label("ts"),
        )
        .where(
            InboundMessageRow.conversation_id == conversation_id,
            InboundMessageRow.from_address == user_number,
        )
    )
    outbound = (
        select(
            literal(MessageDirection.OUTBOUND.value).label("direction"),
            OutboundMessageRow.body.label("body"),
            OutboundMessageRow.created_at.label("ts"),
        )
        .where(
            OutboundMessageRow.conversation_id == conversation_id,
            OutboundMessageRow.to_address == user_number,
            OutboundMessageRow.status.in_(list(outbound_statuses)),
        )
    )
    timeline = union_all(inbound, outbound).subquery()
    result = await session.execute(
        select(timeline.c.direction, timeline.c.body, timeline.c.ts)
        .order_by(timeline.c.ts.desc())
        .limit(limit)
    )
    entries = [
        TimelineEntry(direction=r.direction, body=r.body or "", ts=r.ts)
        for r in result
    ]
    entries.reverse()
    return entries


async def load_outbound_for_job(session: AsyncSession, reply_job_id: str) -> list[OutboundMessage]:
    """Segments written for a reply job, in send order."""
    result = await session.execute(
        select(OutboundMessageRow)
        .where(OutboundMessageRow.reply_job_id == reply_job_id)
        .order_by(OutboundMessageRow.sequence_number)
    )
    return [OutboundMessage.model_validate(row) for row in result.scalars()]
