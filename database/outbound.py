"""
Outbound writer — persists generated reply text as ordered outbound rows.

A reply is split into segments (one text message each) on tabs or blank
lines. Every segment is attributed to the batch's last job with a
sequence number, and (reply_job_id, sequence_number) is unique, so writing
the same reply for the same batch twice lands the same rows once.
"""
from __future__ import annotations

import structlog
from typing import Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from context.prompt import NO_REPLY_SENTINEL
from core.errors import PersistenceError
from database.models import OutboundMessageRow, _new_id
from models.schemas import InboundMessage, Job, WriteResult
from utils.text import split_segments

logger = structlog.get_logger()

outbound = OutboundMessageRow.__table__

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class OutboundWriter:
    """
    Usage:
        writer = OutboundWriter()
        async with db.session() as session:
            result = await writer.write(session, reply, batch, source)
            await store.mark_succeeded(session, [j.id for j in batch])
    """

    def __init__(self, no_reply_sentinel: str = NO_REPLY_SENTINEL, initial_status: str = "pending"):
        self.no_reply_sentinel = no_reply_sentinel
        self.initial_status = initial_status

    def _insert(self, session: AsyncSession):
        dialect = session.get_bind().dialect.name
        try:
            return _DIALECT_INSERTS[dialect]
        except KeyError:
            raise PersistenceError(f"Idempotent outbound insert not supported on {dialect!r}")

    async def write(
        self,
        session: AsyncSession,
        reply_text: str,
        jobs: Sequence[Job],
        source: InboundMessage,
    ) -> WriteResult:
        reply = (reply_text or "").strip()
        if reply == self.no_reply_sentinel:
            return WriteResult(no_reply=True)

        segments = split_segments(reply)
        if not segments or not jobs:
            return WriteResult(segments=segments)

        owner = jobs[-1]
        insert = self._insert(session)
        inserted: list[str] = []

        for seq, body in enumerate(segments):
            stmt = (
                insert(outbound)
                .values(
                    id=_new_id(),
                    conversation_id=owner.conversation_id,
                    reply_job_id=owner.id,
                    inbound_message_id=source.id,
                    provider=source.provider,
                    to_address=source.from_address,
                    from_address=source.to_address,
                    body=body,
                    status=self.initial_status,
                    provider_inbound_sid=source.provider_message_sid,
                    sequence_number=seq,
                )
                .on_conflict_do_nothing(index_elements=["reply_job_id", "sequence_number"])
                .returning(outbound.c.id)
            )
            try:
                new_id = (await session.execute(stmt)).scalar_one_or_none()
            except IntegrityError as e:
                raise PersistenceError(f"Outbound insert failed for job {owner.id}: {e.orig}") from e
            if new_id is not None:
                inserted.append(new_id)

        logger.info("outbound_written",
                    reply_job_id=owner.id,
                    conversation_id=owner.conversation_id,
                    segments=len(segments),
                    inserted=len(inserted))
        return WriteResult(inserted_ids=inserted, segments=segments)
