"""
Reply Worker — pulls reply jobs from the store and drives generation.

Any number of worker processes run this loop against one database; the
store's row locks and lease expiry are the only coordination.

One iteration:

  ┌────────┐  claim (tx, committed)   ┌──────────────┐  read-only   ┌──────────┐
  │  Idle  │─────────────────────────▶│ batch leased │─────────────▶│ context  │
  └────────┘◀── poll delay (no work)  └──────────────┘              └────┬─────┘
       ▲                                                                 │
       │                 ┌──────────────────────┐   no session open      │
       │                 │ generate (retry +    │◀───────────────────────┘
       │                 │ fallback, never      │
       │                 │ raises)              │
       │                 └─────────┬────────────┘
       │                           │ tx: outbound segments + mark_succeeded
       │                           ▼
       └──────────────────── write-back ── error ──▶ failed / deadletter (tx)

If write-back or the failure marking itself cannot commit, the batch stays
leased and is reclaimed once the lease goes stale.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from context.transcript import ConversationContextProvider
from database.messages import load_conversation, load_inbound_message
from database.outbound import OutboundWriter
from database.session import Database
from generation.generator import ReplyGenerator
from job_queue.backoff import BackoffPolicy
from job_queue.store import JobStore
from models.schemas import BatchOutcome, InboundMessage, Job
from utils.text import truncate

logger = structlog.get_logger()


class ReplyWorker:
    """
    Usage:
        worker = ReplyWorker(db, store, generator, writer, context_provider, worker_id="w1")
        stop = asyncio.Event()
        await worker.run(stop)        # returns after stop.set()
        await worker.run_once()       # single iteration, None when idle
    """

    def __init__(
        self,
        db: Database,
        store: JobStore,
        generator: ReplyGenerator,
        writer: OutboundWriter,
        context_provider: ConversationContextProvider,
        backoff: BackoffPolicy = None,
        worker_id: str = "reply-worker",
        poll_interval_ms: int = 1000,
        stale_lock_seconds: int = 120,
        model_timeout_ms: int = 35000,
        loop_error_cooldown_ms: int = 2000,
        error_chars: int = 1500,
    ):
        self.db = db
        self.store = store
        self.generator = generator
        self.writer = writer
        self.context_provider = context_provider
        self.backoff = backoff or BackoffPolicy()
        self.worker_id = worker_id
        self.poll_interval_s = poll_interval_ms / 1000
        self.stale_lock_seconds = stale_lock_seconds
        self.model_timeout_s = model_timeout_ms / 1000
        self.loop_error_cooldown_s = loop_error_cooldown_ms / 1000
        self.error_chars = error_chars

    # ── Loop ───────────────────────────────────────────────

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until `stop` is set. An iteration in flight always finishes."""
        structlog.contextvars.bind_contextvars(worker_id=self.worker_id)
        logger.info("reply_worker_starting",
                    poll_interval_s=self.poll_interval_s,
                    stale_lock_seconds=self.stale_lock_seconds,
                    model_timeout_s=self.model_timeout_s)

        while not stop.is_set():
            try:
                outcome = await self.run_once()
            except Exception as e:
                logger.error("worker_loop_error", error=repr(e), exc_info=True)
                await self._sleep(stop, self.loop_error_cooldown_s)
                continue
            if outcome is None:
                await self._sleep(stop, self.poll_interval_s)

        logger.info("reply_worker_stopped")

    @staticmethod
    async def _sleep(stop: asyncio.Event, seconds: float) -> None:
        if stop.is_set():
            return
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> Optional[BatchOutcome]:
        batch = await self.claim()
        if not batch:
            return None

        try:
            return await self.process(batch)
        except Exception as e:
            error = truncate(f"{type(e).__name__}: {e}", self.error_chars)
            await self.handle_failure(batch, error)
            return BatchOutcome(job_ids=[j.id for j in batch], succeeded=False, error=error)

    # ── Phases ─────────────────────────────────────────────

    async def claim(self) -> list[Job]:
        async with self.db.session() as session:
            return await self.store.claim_batch(session, self.stale_lock_seconds, self.worker_id)

    async def load_source(self, job: Job) -> InboundMessage:
        """The message being answered. Raises RecordNotFound when rows are gone."""
        async with self.db.session() as session:
            await load_conversation(session, job.conversation_id)
            return await load_inbound_message(session, job.inbound_message_id)

    async def process(self, batch: list[Job]) -> BatchOutcome:
        last = batch[-1]
        job_ids = [j.id for j in batch]
        logger.info("batch_processing",
                    conversation_id=last.conversation_id,
                    job_ids=job_ids)

        source = await self.load_source(last)
        context = await self.context_provider.render(last.conversation_id)

        result = await self.generator.generate(context, timeout=self.model_timeout_s)

        async with self.db.session() as session:
            written = await self.writer.write(session, result.reply, batch, source)
            await self.store.mark_succeeded(session, job_ids)

        logger.info("batch_succeeded",
                    conversation_id=last.conversation_id,
                    job_ids=job_ids,
                    model=result.model,
                    segments=len(written.segments),
                    inserted=len(written.inserted_ids),
                    no_reply=written.no_reply)
        return BatchOutcome(
            job_ids=job_ids,
            succeeded=True,
            model=result.model,
            inserted_ids=written.inserted_ids,
            no_reply=written.no_reply,
        )

    async def handle_failure(self, batch: list[Job], error: str) -> None:
        logger.error("batch_failed",
                     conversation_id=batch[-1].conversation_id,
                     job_ids=[j.id for j in batch],
                     error=error)

        groups: dict[tuple[bool, int], list[Job]] = {}
        for job in batch:
            plan = self.backoff.plan(job)
            groups.setdefault((plan.is_dead, plan.delay_seconds), []).append(job)

        try:
            async with self.db.session() as session:
                for (is_dead, delay), jobs in groups.items():
                    await self.store.mark_failed_or_deadletter(session, jobs, is_dead, delay, error)
        except Exception as e:
            # lease is left in place; the batch is reclaimed once it goes stale
            logger.error("batch_mark_failed_error",
                         job_ids=[j.id for j in batch],
                         error=repr(e),
                         exc_info=True)
            return

        for (is_dead, delay), jobs in groups.items():
            if is_dead:
                logger.warning("jobs_deadlettered", job_ids=[j.id for j in jobs])
            else:
                logger.info("jobs_rescheduled", job_ids=[j.id for j in jobs], delay_seconds=delay)
