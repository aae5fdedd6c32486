"""Shared test fixtures for the reply worker."""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import select

from context.prompt import Prompt
from context.transcript import TranscriptContextProvider
from database.models import ConversationRow, InboundMessageRow, OutboundMessageRow, ReplyJobRow
from database.outbound import OutboundWriter
from database.session import Database
from generation.backends import GenerationBackend
from generation.generator import ReplyGenerator
from generation.retry import RetryExecutor, RetryOptions
from job_queue.consumer import ReplyWorker
from job_queue.store import JobStore
from models.schemas import Job

T0 = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
USER_NUMBER = "+15550001111"
SERVICE_NUMBER = "+15559990000"


class FakeClock:
    """Injectable clock; time moves only when a test advances it."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeBackend(GenerationBackend):
    """
    Scripted backend. Each call consumes the next scripted item; the last
    item repeats. Exceptions in the script are raised.
    """

    provider = "fake"

    def __init__(self, model: str = "fake-primary", script=("ok",)):
        super().__init__(model)
        self.script = list(script)
        self.prompts: list[Prompt] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: Prompt) -> str:
        self.prompts.append(prompt)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item


async def no_sleep(seconds: float) -> None:
    return None


def instant_retry(retries: int = 0, name: str = "test") -> RetryExecutor:
    return RetryExecutor(RetryOptions(retries=retries, base_delay_ms=1, max_delay_ms=1), sleep=no_sleep, name=name)


def make_generator(primary: GenerationBackend, fallback: GenerationBackend = None, **kwargs) -> ReplyGenerator:
    return ReplyGenerator(
        primary=primary,
        fallback=fallback,
        primary_retry=kwargs.pop("primary_retry", instant_retry(1, "primary")),
        fallback_retry=kwargs.pop("fallback_retry", instant_retry(0, "fallback")),
        **kwargs,
    )


class Seeder:
    """Writes ingestion-side rows directly, the way the inbound webhook would."""

    def __init__(self, db: Database, store: JobStore, clock: FakeClock):
        self.db = db
        self.store = store
        self.clock = clock

    async def conversation(self, user_number: str = USER_NUMBER) -> str:
        async with self.db.session() as session:
            row = ConversationRow(channel="sms", user_number=user_number, created_at=self.clock())
            session.add(row)
            await session.flush()
            return row.id

    async def inbound(self, conversation_id: str, body: str = "hey",
                      from_address: str = USER_NUMBER, received_at: Optional[datetime] = None) -> str:
        async with self.db.session() as session:
            row = InboundMessageRow(
                conversation_id=conversation_id,
                body=body,
                from_address=from_address,
                to_address=SERVICE_NUMBER,
                provider="twilio",
                provider_message_sid=f"SM{self.clock().timestamp():.0f}",
                received_at=received_at or self.clock(),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def outbound(self, conversation_id: str, body: str, status: str = "sent",
                       to_address: str = USER_NUMBER, created_at: Optional[datetime] = None,
                       reply_job_id: str = None, sequence_number: int = 0) -> str:
        async with self.db.session() as session:
            row = OutboundMessageRow(
                conversation_id=conversation_id,
                reply_job_id=reply_job_id or uuid.uuid4().hex,
                provider="twilio",
                to_address=to_address,
                from_address=SERVICE_NUMBER,
                body=body,
                status=status,
                sequence_number=sequence_number,
                created_at=created_at or self.clock(),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def job(self, conversation_id: str, body: str = "hey", inbound_message_id: str = None,
                  **kwargs) -> Job:
        if inbound_message_id is None:
            inbound_message_id = await self.inbound(conversation_id, body)
        async with self.db.session() as session:
            return await self.store.enqueue(session, conversation_id, inbound_message_id, **kwargs)

    async def get_job(self, job_id: str) -> Job:
        async with self.db.session() as session:
            return await self.store.get(session, job_id)

    async def outbound_rows(self, conversation_id: str = None) -> list[OutboundMessageRow]:
        async with self.db.session() as session:
            stmt = select(OutboundMessageRow).order_by(OutboundMessageRow.sequence_number)
            if conversation_id:
                stmt = stmt.where(OutboundMessageRow.conversation_id == conversation_id)
            return list((await session.execute(stmt)).scalars())

    async def job_rows(self) -> list[ReplyJobRow]:
        async with self.db.session() as session:
            return list((await session.execute(select(ReplyJobRow))).scalars())


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'reply_worker_test.db'}")
    await database.create_schema()
    yield database
    await database.close()


@pytest.fixture
def store(clock):
    return JobStore(clock=clock)


@pytest.fixture
def seed(db, store, clock):
    return Seeder(db, store, clock)


@pytest.fixture
def make_worker(db, store):
    def _make(generator: ReplyGenerator, writer: OutboundWriter = None, **kwargs) -> ReplyWorker:
        return ReplyWorker(
            db=db,
            store=store,
            generator=generator,
            writer=writer or OutboundWriter(),
            context_provider=TranscriptContextProvider(db),
            worker_id=kwargs.pop("worker_id", "worker-test"),
            poll_interval_ms=kwargs.pop("poll_interval_ms", 10),
            **kwargs,
        )
    return _make
