"""
Reply Generator — primary/fallback model orchestration.

Always produces some text so job bookkeeping can proceed:

    context empty              → EMPTY_CONTEXT_REPLY          (model "none")
    primary ok                 → reply                        (primary model)
    primary overloaded/429     → fallback through its own, smaller retry budget
    anything else / fallback x → DEGRADED_REPLY               (model "error")
    backend returned nothing   → EMPTY_RESPONSE_REPLY

Replies over `max_reply_chars` are clipped with an ellipsis. The no-reply
sentinel passes through untouched; callers treat it as success with zero
outbound messages.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import GenerationConfig
from context.prompt import NO_REPLY_SENTINEL, DefaultPromptBuilder, Prompt, PromptBuilder
from core.errors import UpstreamError
from generation.backends import BackendSet, GenerationBackend
from generation.retry import RetryExecutor, RetryOptions
from models.schemas import ReplyResult
from utils.text import clip_reply, truncate

logger = structlog.get_logger()

EMPTY_CONTEXT_REPLY = "Send me a message and I'll reply."
EMPTY_RESPONSE_REPLY = "I didn't catch that, try again?"
DEGRADED_REPLY = "I'm a bit jammed up right now, try again in a minute."


class ReplyGenerator:
    """
    Usage:
        generator = ReplyGenerator(primary, fallback)
        result = await generator.generate(transcript, timeout=35.0)
    """

    def __init__(
        self,
        primary: GenerationBackend,
        fallback: Optional[GenerationBackend] = None,
        prompt_builder: PromptBuilder = None,
        primary_retry: RetryExecutor = None,
        fallback_retry: RetryExecutor = None,
        max_reply_chars: int = 1200,
        no_reply_sentinel: str = NO_REPLY_SENTINEL,
    ):
        self.primary = primary
        self.fallback = fallback
        self.prompt_builder = prompt_builder or DefaultPromptBuilder(no_reply_sentinel=no_reply_sentinel)
        self.primary_retry = primary_retry or RetryExecutor(
            RetryOptions(retries=4, base_delay_ms=350, max_delay_ms=3500), name="primary"
        )
        self.fallback_retry = fallback_retry or RetryExecutor(
            RetryOptions(retries=2, base_delay_ms=400, max_delay_ms=2500), name="fallback"
        )
        self.max_reply_chars = max_reply_chars
        self.no_reply_sentinel = no_reply_sentinel

    @classmethod
    def from_config(
        cls,
        config: GenerationConfig,
        backends: BackendSet,
        prompt_builder: PromptBuilder = None,
    ) -> ReplyGenerator:
        return cls(
            primary=backends.primary,
            fallback=backends.fallback,
            prompt_builder=prompt_builder or DefaultPromptBuilder(
                system_prompt=config.system_prompt, no_reply_sentinel=config.no_reply_sentinel,
            ),
            primary_retry=RetryExecutor(RetryOptions.from_config(config.primary_retry), name="primary"),
            fallback_retry=RetryExecutor(RetryOptions.from_config(config.fallback_retry), name="fallback"),
            max_reply_chars=config.max_reply_chars,
            no_reply_sentinel=config.no_reply_sentinel,
        )

    def _finish(self, text: str, model: str) -> ReplyResult:
        reply = (text or "").strip()
        if not reply:
            return ReplyResult(reply=EMPTY_RESPONSE_REPLY, model=model)
        if reply == self.no_reply_sentinel:
            return ReplyResult(reply=reply, model=model)
        return ReplyResult(reply=clip_reply(reply, self.max_reply_chars), model=model)

    async def _call(self, backend: GenerationBackend, executor: RetryExecutor,
                    prompt: Prompt, timeout: Optional[float]) -> str:
        return await executor.run(lambda: backend.generate(prompt), timeout=timeout)

    def worst_case_seconds(self, timeout: float) -> float:
        """Longest a single generate() can run with a per-attempt `timeout`."""
        budget = self.primary_retry.options.worst_case_seconds(timeout)
        if self.fallback is not None:
            budget += self.fallback_retry.options.worst_case_seconds(timeout)
        return budget

    async def generate(self, context: str, timeout: Optional[float] = None) -> ReplyResult:
        """Generate a reply for the rendered conversation. Never raises."""
        context = (context or "").strip()
        if not context:
            return ReplyResult(reply=EMPTY_CONTEXT_REPLY, model="none")

        try:
            prompt = self.prompt_builder.build(context)
            text = await self._call(self.primary, self.primary_retry, prompt, timeout)
            return self._finish(text, self.primary.model)
        except UpstreamError as e:
            if not (e.overloaded and self.fallback is not None):
                logger.error("generation_failed",
                             model=self.primary.model,
                             kind=e.kind.value,
                             status_code=e.status_code,
                             error=truncate(str(e), 1500))
                return ReplyResult(reply=DEGRADED_REPLY, model="error")
            logger.warning("generation_fallback",
                           primary=self.primary.model,
                           fallback=self.fallback.model,
                           status_code=e.status_code)
        except Exception as e:
            logger.error("generation_error", model=self.primary.model, error=repr(e), exc_info=True)
            return ReplyResult(reply=DEGRADED_REPLY, model="error")

        try:
            text = await self._call(self.fallback, self.fallback_retry, prompt, timeout)
            return self._finish(text, self.fallback.model)
        except UpstreamError as e:
            logger.error("generation_fallback_failed",
                         model=self.fallback.model,
                         kind=e.kind.value,
                         status_code=e.status_code,
                         error=truncate(str(e), 1500))
            return ReplyResult(reply=DEGRADED_REPLY, model="error")
        except Exception as e:
            logger.error("generation_error", model=self.fallback.model, error=repr(e), exc_info=True)
            return ReplyResult(reply=DEGRADED_REPLY, model="error")
