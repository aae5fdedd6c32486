"""
Process entry point for the reply worker.

Usage:
    reply-worker                          # poll until SIGINT / SIGTERM
    reply-worker --once                   # one iteration, then exit
    reply-worker --config path/to/settings.yaml

Exit status 1 when the process cannot start (bad config, store unreachable).
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Optional, Sequence

import structlog
import yaml
from dotenv import load_dotenv

from config.settings import Settings, load_settings
from context.transcript import TranscriptContextProvider
from core.errors import StartupError
from database.outbound import OutboundWriter
from database.session import Database
from generation.backends import BackendSet, create_backends
from generation.generator import ReplyGenerator
from job_queue.backoff import BackoffPolicy
from job_queue.consumer import ReplyWorker
from job_queue.store import JobStore
from utils.logging import configure_logging

logger = structlog.get_logger()


def build_worker(settings: Settings, db: Database, backends: BackendSet) -> ReplyWorker:
    """Wire the worker's collaborators from settings."""
    gen = settings.generation
    w = settings.worker
    generator = ReplyGenerator.from_config(gen, backends)

    # a live worker whose generation outlasts its lease can have the batch reclaimed
    budget_s = generator.worst_case_seconds(w.model_timeout_ms / 1000)
    if budget_s >= w.stale_lock_seconds:
        logger.warning("lease_shorter_than_generation_budget",
                       stale_lock_seconds=w.stale_lock_seconds,
                       generation_budget_s=round(budget_s, 1))
    return ReplyWorker(
        db=db,
        store=JobStore(last_error_chars=w.last_error_chars),
        generator=generator,
        writer=OutboundWriter(no_reply_sentinel=gen.no_reply_sentinel),
        context_provider=TranscriptContextProvider(db),
        backoff=BackoffPolicy.from_config(settings.backoff),
        worker_id=w.worker_id,
        poll_interval_ms=w.poll_interval_ms,
        stale_lock_seconds=w.stale_lock_seconds,
        model_timeout_ms=w.model_timeout_ms,
        loop_error_cooldown_ms=w.loop_error_cooldown_ms,
    )


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))


async def serve(settings: Settings, once: bool = False) -> int:
    db = Database.from_settings(settings.database, echo=settings.debug)
    backends: Optional[BackendSet] = None
    try:
        await db.ping()
        if settings.database.create_schema:
            await db.create_schema()
        backends = create_backends(settings.generation)
        worker = build_worker(settings, db, backends)

        if once:
            structlog.contextvars.bind_contextvars(worker_id=worker.worker_id)
            outcome = await worker.run_once()
            logger.info("run_once_complete", outcome=outcome.model_dump() if outcome else None)
            return 0

        stop = asyncio.Event()
        _install_signal_handlers(stop)
        await worker.run(stop)
        return 0
    finally:
        if backends is not None:
            await backends.close()
        await db.close()


def main(argv: Sequence[str] = None) -> int:
    parser = argparse.ArgumentParser(description="Reply worker")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--once", action="store_true", help="Process at most one batch and exit")
    args = parser.parse_args(argv)

    load_dotenv()
    try:
        settings = load_settings(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        configure_logging()
        logger.error("worker_fatal", error=str(e))
        return 1

    configure_logging(settings.logging.level, settings.logging.json)
    try:
        return asyncio.run(serve(settings, once=args.once))
    except StartupError as e:
        logger.error("worker_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
