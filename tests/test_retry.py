"""Tests for the bounded retry executor."""
import asyncio

import pytest

from core.errors import ErrorKind, UpstreamError, UpstreamTimeout
from generation.retry import RetryExecutor, RetryOptions, is_retryable


class Flaky:
    """Fails with the given errors, then returns 'done'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "done"


def transient(status=503):
    return UpstreamError.from_status("upstream busy", status)


@pytest.fixture
def delays():
    return []


@pytest.fixture
def executor(delays):
    async def record(seconds):
        delays.append(seconds)
    return RetryExecutor(RetryOptions(retries=3, base_delay_ms=350, max_delay_ms=3500), sleep=record)


class TestRetryExecutor:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self, executor, delays):
        op = Flaky()
        assert await executor.run(op) == "done"
        assert op.calls == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_transient_then_success(self, executor, delays):
        op = Flaky(transient(429), transient(500))
        assert await executor.run(op) == "done"
        assert op.calls == 3
        assert len(delays) == 2

    @pytest.mark.asyncio
    async def test_exhausts_budget_and_reraises(self, executor, delays):
        errors = [transient(503) for _ in range(10)]
        op = Flaky(*errors)
        with pytest.raises(UpstreamError) as exc_info:
            await executor.run(op)
        assert op.calls == 4            # retries + 1
        assert len(delays) == 3
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self, executor, delays):
        op = Flaky(UpstreamError.from_status("bad request", 400))
        with pytest.raises(UpstreamError) as exc_info:
            await executor.run(op)
        assert op.calls == 1
        assert delays == []
        assert exc_info.value.kind == ErrorKind.TERMINAL

    @pytest.mark.asyncio
    async def test_unclassified_error_not_retried(self, executor):
        op = Flaky(ValueError("boom"))
        with pytest.raises(ValueError):
            await executor.run(op)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_delays_bounded(self, executor, delays):
        op = Flaky(*[transient() for _ in range(3)])
        await executor.run(op)
        assert 0.35 <= delays[0] <= 0.35 + 0.15
        assert 0.70 <= delays[1] <= 0.70 + 0.15
        assert all(d <= 3.5 + 0.15 for d in delays)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, delays):
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(5)

        async def record(seconds):
            delays.append(seconds)

        executor = RetryExecutor(RetryOptions(retries=1, base_delay_ms=1, max_delay_ms=1), sleep=record)
        with pytest.raises(UpstreamTimeout) as exc_info:
            await executor.run(slow, timeout=0.01)
        assert calls == 2
        assert exc_info.value.retryable
        assert "Model timeout after 10ms" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_cancels_inflight_call(self):
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        executor = RetryExecutor(RetryOptions(retries=0))
        with pytest.raises(UpstreamTimeout):
            await executor.run(slow, timeout=0.01)
        assert cancelled.is_set()


class TestClassification:
    @pytest.mark.parametrize("status,retryable", [
        (429, True), (500, True), (503, True), (504, True), (529, True),
        (400, False), (401, False), (404, False), (None, False),
    ])
    def test_status_classification(self, status, retryable):
        assert is_retryable(UpstreamError.from_status("x", status)) is retryable

    def test_non_upstream_errors_not_retryable(self):
        assert not is_retryable(RuntimeError("x"))


class TestWorstCase:
    def test_every_attempt_times_out(self):
        options = RetryOptions(retries=2, base_delay_ms=100, max_delay_ms=1000, jitter_ms=0)
        assert options.worst_case_seconds(10.0) == pytest.approx(32.0)

    def test_no_retries(self):
        assert RetryOptions(retries=0).worst_case_seconds(5.0) == pytest.approx(5.0)
