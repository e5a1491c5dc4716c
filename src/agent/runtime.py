"""Model gateway for text generation.

Wraps Azure OpenAI chat completions with:
- Use-case model routing
- Per-attempt timeout
- Retry with exponential backoff and provider quota hints
- Langfuse observability
"""

import asyncio
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import openai
from langfuse import Langfuse
from openai import AsyncAzureOpenAI

from src.core.config import Settings, get_settings
from src.core.exceptions import (
    GenerationFailure,
    GenerationTimeout,
    NonRetryableModelError,
    QuotaExceeded,
)
from src.observability.metrics import GENERATION_ATTEMPTS, GENERATION_LATENCY

logger = logging.getLogger(__name__)

USE_CASES = ("rag", "simple", "complex", "attributed")

NON_RETRYABLE_MARKERS = ("api key", "permission", "not found", "invalid", "malformed")
QUOTA_MARKERS = ("quota", "rate limit")
RETRY_HINT = re.compile(r"(?:retry|try again) in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)

# Exception types the SDK raises for requests that will never succeed as sent
NON_RETRYABLE_TYPES = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
    openai.BadRequestError,
)


class ErrorKind(str, Enum):
    NON_RETRYABLE = "non_retryable"
    QUOTA = "quota"
    TRANSIENT = "transient"


@dataclass
class GenerationOptions:
    """Per-call generation options. Unset values fall back to settings."""

    use_case: str = "rag"
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None  # not supported by chat completions; ignored
    system_prompt: str | None = None


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, GenerationTimeout):
        return ErrorKind.TRANSIENT
    if isinstance(error, openai.RateLimitError):
        return ErrorKind.QUOTA
    if isinstance(error, NON_RETRYABLE_TYPES):
        return ErrorKind.NON_RETRYABLE

    message = str(error).lower()
    if any(marker in message for marker in NON_RETRYABLE_MARKERS):
        return ErrorKind.NON_RETRYABLE
    if any(marker in message for marker in QUOTA_MARKERS):
        return ErrorKind.QUOTA
    return ErrorKind.TRANSIENT


def retry_delay_ms(kind: ErrorKind, attempt: int, error: BaseException, base_delay_ms: int) -> float:
    """Delay before the next attempt.

    Quota errors honour a "retry in Ns" hint from the provider, else wait
    twice the base delay. Everything else backs off exponentially.
    """
    if kind is ErrorKind.QUOTA:
        match = RETRY_HINT.search(str(error))
        if match:
            return float(match.group(1)) * 1000
        return base_delay_ms * 2
    return base_delay_ms * (2**attempt)


def count_tokens(text: str) -> int:
    """Approximate token count: 1.3 tokens per whitespace-separated word."""
    return math.ceil(len(text.split()) * 1.3)


def build_rag_prompt(query: str, context: str, system_prompt: str) -> str:
    context_block = f"Context from knowledge base:\n{context}\n" if context else ""
    return (
        f"{system_prompt}\n\n"
        f"{context_block}\n\n"
        f"User question: {query}\n\n"
        "Please provide a helpful and accurate response based on the context above."
    )


class ModelGateway:
    """Generation client with retry policy.

    Attempts run 0..max_retries; each is raced against `timeout_seconds`.
    Auth, permission, unknown-model and bad-input errors fail immediately.
    """

    def __init__(
        self,
        client: AsyncAzureOpenAI,
        settings: Settings,
        langfuse: Langfuse | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings
        self._langfuse = langfuse
        self._sleep = sleep
        self.max_retries = settings.generation_max_retries
        self.base_delay_ms = settings.generation_retry_delay_ms
        self.timeout_seconds = settings.generation_timeout_seconds

    def select_model(self, use_case: str) -> str:
        if use_case not in USE_CASES:
            raise ValueError(
                f"Unknown use case '{use_case}'. Expected one of: {', '.join(USE_CASES)}"
            )
        return self.settings.get_model_routing()[use_case]

    def count_tokens(self, text: str) -> int:
        return count_tokens(text)

    async def generate(self, prompt: str, options: GenerationOptions | None = None) -> str:
        """Generate text for a prompt.

        Raises:
            NonRetryableModelError: Request rejected outright
            QuotaExceeded: Still rate limited after the last retry
            GenerationTimeout: Last attempt timed out
            GenerationFailure: Any other error after the last retry
        """
        options = options or GenerationOptions()
        model = options.model or self.select_model(options.use_case)
        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})

        generation = self._start_trace(model, messages, options)
        last_error: BaseException | None = None
        last_kind = ErrorKind.TRANSIENT

        for attempt in range(self.max_retries + 1):
            start_time = time.perf_counter()
            try:
                text = await asyncio.wait_for(
                    self._complete(model, messages, options), timeout=self.timeout_seconds
                )
            except TimeoutError:
                last_error = GenerationTimeout(self.timeout_seconds)
            except Exception as e:
                last_error = e
            else:
                latency = time.perf_counter() - start_time
                GENERATION_ATTEMPTS.labels(model=model, outcome="success").inc()
                GENERATION_LATENCY.labels(model=model).observe(latency)
                self._end_trace(generation, output=text, latency_ms=latency * 1000)
                return text

            last_kind = classify_error(last_error)
            outcome = "timeout" if isinstance(last_error, GenerationTimeout) else last_kind.value
            GENERATION_ATTEMPTS.labels(model=model, outcome=outcome).inc()

            if last_kind is ErrorKind.NON_RETRYABLE:
                logger.error(f"[ModelGateway] Non-retryable error from {model}: {last_error}")
                self._end_trace(generation, error=str(last_error))
                raise NonRetryableModelError(str(last_error), last_error) from last_error

            if attempt < self.max_retries:
                delay_ms = retry_delay_ms(last_kind, attempt, last_error, self.base_delay_ms)
                logger.warning(
                    f"[ModelGateway] Attempt {attempt + 1}/{self.max_retries + 1} failed "
                    f"({last_kind.value}): {last_error}. Retrying in {delay_ms:.0f}ms"
                )
                await self._sleep(delay_ms / 1000)

        self._end_trace(generation, error=str(last_error))
        logger.error(f"[ModelGateway] Giving up after {self.max_retries + 1} attempts: {last_error}")
        if last_kind is ErrorKind.QUOTA:
            raise QuotaExceeded(f"Quota exceeded: {last_error}", last_error) from last_error
        if isinstance(last_error, GenerationTimeout):
            raise last_error
        raise GenerationFailure(f"Generation failed: {last_error}", last_error) from last_error

    async def generate_rag_response(
        self,
        query: str,
        context: str,
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> str:
        prompt = build_rag_prompt(query, context, system_prompt or self.settings.rag_system_prompt)
        return await self.generate(prompt, options or GenerationOptions(use_case="rag"))

    async def _complete(self, model: str, messages: list[dict], options: GenerationOptions) -> str:
        temperature = options.temperature
        if temperature is None:
            temperature = self.settings.generation_temperature
        max_tokens = options.max_output_tokens or self.settings.generation_max_output_tokens

        create_params = {"model": model, "messages": messages}
        # Reasoning models (gpt-5, o-series) reject temperature/top_p and max_tokens
        if not any(x in model.lower() for x in ["gpt-5", "o1", "o3"]):
            create_params["temperature"] = temperature
            create_params["max_tokens"] = max_tokens
            if options.top_p is not None:
                create_params["top_p"] = options.top_p
        else:
            create_params["max_completion_tokens"] = max_tokens

        response = await self.client.chat.completions.create(**create_params)
        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise GenerationFailure("Empty response from model")
        return content

    def _start_trace(self, model: str, messages: list[dict], options: GenerationOptions):
        if not self._langfuse:
            return None
        try:
            return self._langfuse.start_generation(
                name="rag-generation",
                model=model,
                input=messages,
                metadata={"use_case": options.use_case},
            )
        except Exception as e:
            logger.warning(f"[ModelGateway] Langfuse generation start failed: {e}")
            return None

    def _end_trace(
        self,
        generation,
        output: str | None = None,
        latency_ms: float | None = None,
        error: str | None = None,
    ) -> None:
        if generation is None:
            return
        try:
            if error is not None:
                generation.update(level="ERROR", status_message=error)
            else:
                generation.update(output=output, metadata={"latency_ms": latency_ms})
            generation.end()
        except Exception as e:
            logger.warning(f"[ModelGateway] Langfuse generation update failed: {e}")

    async def shutdown(self) -> None:
        """Cleanup resources."""
        if self._langfuse:
            self._langfuse.flush()
        await self.client.close()


# Global gateway instance
_gateway: ModelGateway | None = None


def get_model_gateway() -> ModelGateway:
    """Get or create the global model gateway."""
    global _gateway
    if _gateway is None:
        settings = get_settings()
        client = AsyncAzureOpenAI(
            azure_endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,
            api_version=settings.azure_openai_api_version,
        )
        langfuse = None
        if settings.langfuse_public_key and settings.langfuse_secret_key:
            langfuse = Langfuse(
                public_key=settings.langfuse_public_key,
                secret_key=settings.langfuse_secret_key,
                host=settings.langfuse_host,
            )
        _gateway = ModelGateway(client, settings, langfuse)
    return _gateway


async def shutdown_model_gateway() -> None:
    """Shutdown the global gateway."""
    global _gateway
    if _gateway:
        await _gateway.shutdown()
        _gateway = None
