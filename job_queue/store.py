"""
Job Store — the durable reply-job queue.

The reply_jobs table is the queue. Rows move through

    queued ──claim──▶ processing ──▶ succeeded
      ▲                   │
      └──── failed ◀──────┤ (attempts < max_attempts, run_after pushed out)
                          └──▶ deadletter (attempts >= max_attempts, parked)

A claim is a lease: status=processing plus locked_at/locked_by. A worker
that dies mid-batch leaves the lease behind; once locked_at is
stale_lock_seconds old the row is eligible again and any worker may
reclaim it. Candidate selection uses FOR UPDATE SKIP LOCKED so concurrent
claimants never wait on each other and never take the same row.

Every operation takes the caller's session: claim in its own short
transaction, success marking together with the outbound inserts.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from database.models import ReplyJobRow, _new_id
from models.schemas import CLAIMABLE_STATUSES, TERMINAL_STATUSES, Job, JobStatus

logger = structlog.get_logger()

jobs = ReplyJobRow.__table__

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """
    Usage:
        store = JobStore()
        async with db.session() as session:          # committed on exit
            batch = await store.claim_batch(session, stale_lock_seconds=120, worker_id="w1")
    """

    def __init__(self, clock: Clock = utcnow, last_error_chars: int = 2000, claim_attempts: int = 5):
        self._clock = clock
        self.last_error_chars = last_error_chars
        self.claim_attempts = claim_attempts

    def now(self) -> datetime:
        return self._clock()

    # ── Claiming ───────────────────────────────────────────

    @staticmethod
    def _eligible(now: datetime, stale_lock_seconds: int) -> ColumnElement[bool]:
        stale_before = now - timedelta(seconds=stale_lock_seconds)
        return or_(
            and_(
                jobs.c.status.in_(CLAIMABLE_STATUSES),
                jobs.c.run_after <= now,
            ),
            and_(
                jobs.c.status == JobStatus.PROCESSING.value,
                jobs.c.locked_at.is_not(None),
                jobs.c.locked_at <= stale_before,
            ),
        )

    @staticmethod
    def _lease(where: ColumnElement[bool], now: datetime, worker_id: str):
        # eligibility is part of `where`, so a row taken by someone else
        # between select and update is simply not returned
        return (
            update(jobs)
            .where(where)
            .values(
                status=JobStatus.PROCESSING.value,
                locked_at=now,
                locked_by=worker_id,
            )
            .returning(*jobs.c)
        )

    async def _claim_primary(
        self, session: AsyncSession, eligible: ColumnElement[bool], now: datetime, worker_id: str,
    ) -> Optional[Job]:
        for _ in range(self.claim_attempts):
            candidate = (
                select(jobs.c.id)
                .where(eligible)
                .order_by(jobs.c.run_after.asc(), jobs.c.created_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job_id = (await session.execute(candidate)).scalar_one_or_none()
            if job_id is None:
                return None

            row = (await session.execute(
                self._lease(and_(jobs.c.id == job_id, eligible), now, worker_id)
            )).first()
            if row is not None:
                return Job.from_mapping(row._mapping)
            logger.debug("claim_race_lost", job_id=job_id, worker_id=worker_id)
        return None

    async def claim_batch(self, session: AsyncSession, stale_lock_seconds: int, worker_id: str) -> list[Job]:
        """
        Lease the oldest eligible job plus every other eligible job in the
        same conversation. Returns [primary, *siblings], or [] when idle.

        Both steps run in the caller's transaction; the primary's row lock
        is held until commit, so its lease cannot change under the sibling
        claim.
        """
        now = self._clock()
        eligible = self._eligible(now, stale_lock_seconds)

        primary = await self._claim_primary(session, eligible, now, worker_id)
        if primary is None:
            return []

        sibling_ids = list((await session.execute(
            select(jobs.c.id)
            .where(
                jobs.c.conversation_id == primary.conversation_id,
                jobs.c.id != primary.id,
                eligible,
            )
            .with_for_update(skip_locked=True)
        )).scalars())

        siblings: list[Job] = []
        if sibling_ids:
            result = await session.execute(
                self._lease(and_(jobs.c.id.in_(sibling_ids), eligible), now, worker_id)
            )
            siblings = sorted(
                (Job.from_mapping(r._mapping) for r in result),
                key=lambda j: (j.run_after, j.created_at),
            )

        batch = [primary, *siblings]
        logger.info("jobs_claimed",
                    worker_id=worker_id,
                    conversation_id=primary.conversation_id,
                    job_ids=[j.id for j in batch],
                    reclaimed=[j.id for j in batch if j.attempts > 0 or j.last_error])
        return batch

    # ── Completion ─────────────────────────────────────────

    async def mark_succeeded(self, session: AsyncSession, job_ids: Iterable[str]) -> int:
        """Retire jobs. Rows already succeeded (or dead-lettered) are untouched."""
        ids = list(job_ids)
        if not ids:
            return 0
        result = await session.execute(
            update(jobs)
            .where(
                jobs.c.id.in_(ids),
                jobs.c.status.not_in(TERMINAL_STATUSES),
            )
            .values(
                status=JobStatus.SUCCEEDED.value,
                locked_at=None,
                locked_by=None,
                last_error=None,
                completed_at=self._clock(),
            )
        )
        return result.rowcount

    async def mark_failed_or_deadletter(
        self,
        session: AsyncSession,
        batch: Sequence[Job],
        is_dead: bool,
        delay_seconds: int,
        last_error: str,
    ) -> int:
        """
        Count a failed attempt on each job and release its lease.

        Dead rows keep their run_after and are never picked up again;
        failed rows become eligible `delay_seconds` from now.
        """
        ids = [j.id for j in batch]
        if not ids:
            return 0
        values = {
            "attempts": jobs.c.attempts + 1,
            "status": (JobStatus.DEADLETTER if is_dead else JobStatus.FAILED).value,
            "locked_at": None,
            "locked_by": None,
            "last_error": (last_error or "")[: self.last_error_chars],
        }
        if not is_dead:
            values["run_after"] = self._clock() + timedelta(seconds=delay_seconds)

        result = await session.execute(
            update(jobs)
            .where(
                jobs.c.id.in_(ids),
                jobs.c.status.not_in(TERMINAL_STATUSES),
            )
            .values(**values)
        )
        return result.rowcount

    # ── Ingestion / admin ──────────────────────────────────

    async def enqueue(
        self,
        session: AsyncSession,
        conversation_id: str,
        inbound_message_id: str,
        max_attempts: Optional[int] = None,
        run_after: Optional[datetime] = None,
    ) -> Job:
        """Create a queued job for an inbound message."""
        now = self._clock()
        values = {
            "id": _new_id(),
            "conversation_id": conversation_id,
            "inbound_message_id": inbound_message_id,
            "status": JobStatus.QUEUED.value,
            "attempts": 0,
            "run_after": run_after or now,
            "created_at": now,
        }
        if max_attempts is not None:
            values["max_attempts"] = max_attempts
        row = (await session.execute(insert(jobs).values(**values).returning(*jobs.c))).first()
        return Job.from_mapping(row._mapping)

    async def get(self, session: AsyncSession, job_id: str) -> Optional[Job]:
        row = (await session.execute(select(jobs).where(jobs.c.id == job_id))).first()
        return Job.from_mapping(row._mapping) if row else None

    async def counts(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(jobs.c.status, func.count()).group_by(jobs.c.status)
        )
        out = {s.value: 0 for s in JobStatus}
        out.update({status: count for status, count in result.all()})
        return out

    async def list_deadletter(self, session: AsyncSession, limit: int = 50) -> list[Job]:
        result = await session.execute(
            select(jobs)
            .where(jobs.c.status == JobStatus.DEADLETTER.value)
            .order_by(jobs.c.created_at.desc())
            .limit(limit)
        )
        return [Job.from_mapping(r._mapping) for r in result]

    async def requeue_deadletter(self, session: AsyncSession, job_id: str) -> bool:
        """Operator action: give a dead-lettered job a fresh attempt budget."""
        result = await session.execute(
            update(jobs)
            .where(jobs.c.id == job_id, jobs.c.status == JobStatus.DEADLETTER.value)
            .values(
                status=JobStatus.QUEUED.value,
                attempts=0,
                run_after=self._clock(),
                last_error=None,
            )
        )
        requeued = result.rowcount == 1
        if requeued:
            logger.info("deadletter_requeued", job_id=job_id)
        return requeued
