"""
End-to-end tests for the reply worker loop against a SQLite store.

Covers:
  - batch claim → generate → write-back → succeeded
  - no-reply sentinel
  - failure routing (missing source rows, write-back errors, dead-letter)
  - stop token and loop error recovery
"""
import asyncio
from datetime import timedelta

import pytest

from core.errors import UpstreamError
from database.outbound import OutboundWriter
from generation.generator import DEGRADED_REPLY
from models.schemas import JobStatus
from conftest import FakeBackend, make_generator


class ExplodingWriter(OutboundWriter):
    """Writes the segments, then fails before the transaction commits."""

    async def write(self, session, reply_text, jobs, source):
        await super().write(session, reply_text, jobs, source)
        raise RuntimeError("disk on fire")


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_idle(self, make_worker):
        worker = make_worker(make_generator(FakeBackend()))
        assert await worker.run_once() is None

    @pytest.mark.asyncio
    async def test_batch_end_to_end(self, seed, clock, make_worker):
        convo = await seed.conversation()
        j1 = await seed.job(convo, "hey")
        clock.advance(2)
        j2 = await seed.job(convo, "you around?")
        backend = FakeBackend("gpt-test", script=["hey\t\nwhat's good"])
        worker = make_worker(make_generator(backend))

        outcome = await worker.run_once()

        assert outcome.succeeded is True
        assert outcome.job_ids == [j1.id, j2.id]
        assert outcome.model == "gpt-test"
        assert len(outcome.inserted_ids) == 2

        rows = await seed.outbound_rows(convo)
        assert [(r.sequence_number, r.body) for r in rows] == [(0, "hey"), (1, "what's good")]
        assert {r.reply_job_id for r in rows} == {j2.id}
        assert {r.inbound_message_id for r in rows} == {j2.inbound_message_id}

        for job_id in (j1.id, j2.id):
            job = await seed.get_job(job_id)
            assert job.status == JobStatus.SUCCEEDED
            assert job.locked_by is None
            assert job.completed_at is not None

        # the model saw both user messages
        assert "USER: hey\nUSER: you around?" in backend.prompts[0].input

    @pytest.mark.asyncio
    async def test_no_reply_sentinel(self, seed, make_worker):
        convo = await seed.conversation()
        job = await seed.job(convo, "ok")
        worker = make_worker(make_generator(FakeBackend(script=["[NO_REPLY]"])))

        outcome = await worker.run_once()

        assert outcome.succeeded is True
        assert outcome.no_reply is True
        assert await seed.outbound_rows() == []
        assert (await seed.get_job(job.id)).status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_degraded_reply_still_sent(self, seed, make_worker):
        convo = await seed.conversation()
        job = await seed.job(convo)
        backend = FakeBackend(script=[UpstreamError.from_status("bad request", 400)])
        worker = make_worker(make_generator(backend))

        outcome = await worker.run_once()

        assert outcome.succeeded is True
        assert outcome.model == "error"
        assert [r.body for r in await seed.outbound_rows()] == [DEGRADED_REPLY]
        assert (await seed.get_job(job.id)).status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_missing_source_message_fails_batch(self, seed, clock, make_worker):
        convo = await seed.conversation()
        job = await seed.job(convo, inbound_message_id="purged-message")
        backend = FakeBackend()
        worker = make_worker(make_generator(backend))

        outcome = await worker.run_once()

        assert outcome.succeeded is False
        assert "RecordNotFound" in outcome.error
        assert backend.calls == 0
        failed = await seed.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert failed.run_after == clock() + timedelta(seconds=15)
        assert "inbound_message not found: purged-message" in failed.last_error
        assert failed.locked_by is None

    @pytest.mark.asyncio
    async def test_exhausted_job_deadlettered(self, seed, make_worker):
        convo = await seed.conversation()
        job = await seed.job(convo, inbound_message_id="purged-message", max_attempts=1)
        worker = make_worker(make_generator(FakeBackend()))

        await worker.run_once()

        dead = await seed.get_job(job.id)
        assert dead.status == JobStatus.DEADLETTER
        assert dead.run_after == job.run_after

    @pytest.mark.asyncio
    async def test_mixed_budgets_grouped(self, seed, make_worker, clock):
        convo = await seed.conversation()
        # source of the last job is missing, so the whole batch fails
        roomy = await seed.job(convo, max_attempts=5)
        clock.advance(1)
        last = await seed.job(convo, inbound_message_id="purged-message", max_attempts=1)
        worker = make_worker(make_generator(FakeBackend()))

        await worker.run_once()

        assert (await seed.get_job(roomy.id)).status == JobStatus.FAILED
        assert (await seed.get_job(last.id)).status == JobStatus.DEADLETTER

    @pytest.mark.asyncio
    async def test_write_back_is_atomic(self, seed, make_worker):
        convo = await seed.conversation()
        job = await seed.job(convo)
        worker = make_worker(make_generator(FakeBackend(script=["a\n\nb"])), writer=ExplodingWriter())

        outcome = await worker.run_once()

        assert outcome.succeeded is False
        assert await seed.outbound_rows() == []
        assert (await seed.get_job(job.id)).status == JobStatus.FAILED


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_stop_before_start(self, seed, make_worker):
        convo = await seed.conversation()
        job = await seed.job(convo)
        backend = FakeBackend()
        worker = make_worker(make_generator(backend))
        stop = asyncio.Event()
        stop.set()

        await asyncio.wait_for(worker.run(stop), timeout=5)

        assert backend.calls == 0
        assert (await seed.get_job(job.id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_inflight_iteration_completes(self, seed, make_worker):
        convo = await seed.conversation()
        job = await seed.job(convo)
        stop = asyncio.Event()

        class StoppingBackend(FakeBackend):
            async def generate(self, prompt):
                stop.set()
                return await super().generate(prompt)

        worker = make_worker(make_generator(StoppingBackend(script=["bye"])))
        await asyncio.wait_for(worker.run(stop), timeout=5)

        assert (await seed.get_job(job.id)).status == JobStatus.SUCCEEDED
        assert [r.body for r in await seed.outbound_rows()] == ["bye"]

    @pytest.mark.asyncio
    async def test_idle_sleep_wakes_on_stop(self, make_worker):
        worker = make_worker(make_generator(FakeBackend()), poll_interval_ms=60_000)
        stop = asyncio.Event()
        task = asyncio.create_task(worker.run(stop))
        await asyncio.sleep(0.2)

        stop.set()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, make_worker):
        worker = make_worker(make_generator(FakeBackend()), loop_error_cooldown_ms=1)
        stop = asyncio.Event()
        calls = 0

        async def broken_claim():
            nonlocal calls
            calls += 1
            if calls >= 3:
                stop.set()
            raise RuntimeError("store hiccup")

        worker.claim = broken_claim
        await asyncio.wait_for(worker.run(stop), timeout=5)
        assert calls == 3

    def test_error_cooldown_independent_of_poll(self, make_worker):
        worker = make_worker(make_generator(FakeBackend()), poll_interval_ms=500, loop_error_cooldown_ms=2000)
        assert worker.loop_error_cooldown_s == 2.0
        assert worker.poll_interval_s == 0.5
