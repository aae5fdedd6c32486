"""
Generation backends — thin adapters over the provider SDKs.

Each backend turns a Prompt into reply text for one model. Provider
exceptions are translated here into UpstreamError with an explicit
ErrorKind, so retry and fallback decisions never look at SDK internals.
SDK-level retries are disabled; RetryExecutor owns the retry budget.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass
from typing import Any

import anthropic
import openai

from config.settings import GenerationConfig
from context.prompt import Prompt
from core.errors import ErrorKind, StartupError, UpstreamError

logger = structlog.get_logger()


class GenerationBackend(abc.ABC):
    """One model behind one provider."""

    provider: str = ""

    def __init__(self, model: str):
        self.model = model

    @abc.abstractmethod
    async def generate(self, prompt: Prompt) -> str:
        """Return the model's reply text (possibly empty). Raises UpstreamError."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"


class OpenAIBackend(GenerationBackend):
    """OpenAI Responses API."""

    provider = "openai"

    def __init__(self, client: openai.AsyncOpenAI, model: str, max_output_tokens: int = None):
        super().__init__(model)
        self.client = client
        self.max_output_tokens = max_output_tokens

    async def generate(self, prompt: Prompt) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "instructions": prompt.instructions,
            "input": prompt.input,
        }
        if self.max_output_tokens:
            kwargs["max_output_tokens"] = self.max_output_tokens
        try:
            response = await self.client.responses.create(**kwargs)
        except openai.APIStatusError as e:
            raise UpstreamError.from_status(str(e), e.status_code, provider=self.provider) from e
        except openai.APIConnectionError as e:
            # includes APITimeoutError
            raise UpstreamError(str(e), kind=ErrorKind.TRANSIENT, provider=self.provider) from e
        except openai.OpenAIError as e:
            raise UpstreamError(str(e), kind=ErrorKind.TERMINAL, provider=self.provider) from e
        return (response.output_text or "").strip()


class AnthropicBackend(GenerationBackend):
    """Anthropic Messages API."""

    provider = "anthropic"

    def __init__(self, client: anthropic.AsyncAnthropic, model: str, max_output_tokens: int = 1024):
        super().__init__(model)
        self.client = client
        self.max_output_tokens = max_output_tokens or 1024

    async def generate(self, prompt: Prompt) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_output_tokens,
                system=prompt.instructions,
                messages=[{"role": "user", "content": prompt.input}],
            )
        except anthropic.APIStatusError as e:
            raise UpstreamError.from_status(str(e), e.status_code, provider=self.provider) from e
        except anthropic.APIConnectionError as e:
            raise UpstreamError(str(e), kind=ErrorKind.TRANSIENT, provider=self.provider) from e
        except anthropic.AnthropicError as e:
            raise UpstreamError(str(e), kind=ErrorKind.TERMINAL, provider=self.provider) from e
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return text.strip()


@dataclass
class BackendSet:
    """Primary + fallback backends sharing one SDK client."""
    primary: GenerationBackend
    fallback: GenerationBackend
    client: Any = None

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()


def create_backends(config: GenerationConfig) -> BackendSet:
    """Factory: build primary and fallback backends for the configured provider."""
    if not config.api_key or "${" in config.api_key:
        raise StartupError(f"Missing API key for generation provider {config.provider!r}")

    if config.provider == "openai":
        client = openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url or None,
            max_retries=0,
            timeout=config.request_timeout_s,
        )
        make = lambda model: OpenAIBackend(client, model, config.max_output_tokens)
    elif config.provider == "anthropic":
        client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url or None,
            max_retries=0,
            timeout=config.request_timeout_s,
        )
        make = lambda model: AnthropicBackend(client, model, config.max_output_tokens)
    else:
        raise StartupError(f"Unknown generation provider: {config.provider!r}")

    backends = BackendSet(
        primary=make(config.primary_model),
        fallback=make(config.fallback_model or config.primary_model),
        client=client,
    )
    logger.info("generation_backends_created",
                provider=config.provider,
                primary=backends.primary.model,
                fallback=backends.fallback.model)
    return backends
