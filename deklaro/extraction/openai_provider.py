"""OpenAI-based extraction provider for invoice field extraction.

Uses OpenAI function calling for structured outputs, on OCR text or directly on
the page image (vision path).

Includes retry logic with exponential backoff for transient API errors only;
schema failures are never retried here.
"""

import base64
import logging
import time
from typing import Any

from openai import (
    APIConnectionError,
    AsyncOpenAI,
    InternalServerError,
    OpenAIError,
    RateLimitError,
)
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from deklaro.extraction.base import (
    ExtractionProvider,
    ExtractionResult,
    SchemaMismatchError,
    parse_function_call,
)
from deklaro.extraction.prompts import (
    EXTRACTION_FUNCTION_NAME,
    SYSTEM_PROMPT,
    build_text_prompt,
    build_vision_prompt,
    extraction_function,
)
from deklaro.extraction.schema import ExtractionPayload
from deklaro.shared.config import Settings

logger = logging.getLogger(__name__)

# APITimeoutError is a subclass of APIConnectionError
TRANSIENT_OPENAI_ERRORS = (APIConnectionError, RateLimitError, InternalServerError)


def build_openai_client(settings: Settings) -> AsyncOpenAI | None:
    """Construct the AsyncOpenAI client, or None without an API key.

    Client-side retries are disabled; tenacity owns the retry policy.
    """
    if settings.openai_api_key is None:
        return None
    return AsyncOpenAI(
        api_key=settings.openai_api_key.get_secret_value(),
        timeout=settings.ai_timeout_seconds,
        max_retries=0,
    )


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    The client is injected (or built from settings) and owned by the service
    container, never cached at module scope.
    """

    supports_vision = True

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        super().__init__(settings)
        self._client = client if client is not None else build_openai_client(settings)
        self.retry_wait: wait_base = wait_exponential_jitter(initial=1, max=20)

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """True when a client could be constructed (API key configured)."""
        return self._client is not None

    async def extract_from_text(
        self, ocr_text: str, previous: dict[str, Any] | None = None
    ) -> ExtractionResult:
        if not ocr_text or not ocr_text.strip():
            return self._failure("Empty OCR text provided")

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_text_prompt(ocr_text, previous)},
        ]
        return await self._extract(self.settings.openai_model, messages)

    async def extract_from_image(
        self, image_png: bytes, previous: dict[str, Any] | None = None
    ) -> ExtractionResult:
        if not image_png:
            return self._failure("Empty image provided")

        encoded = base64.b64encode(image_png).decode("ascii")
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_vision_prompt(previous)},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/png;base64,{encoded}", "detail": "high"},
                    },
                ],
            },
        ]
        return await self._extract(self.settings.openai_vision_model, messages)

    async def _extract(self, model: str, messages: list[dict[str, Any]]) -> ExtractionResult:
        if self._client is None:
            return self._failure("OpenAI API key not configured")

        started = time.perf_counter()
        try:
            response = await self._call_openai_with_retry(model, messages)
        except OpenAIError as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            logger.warning(
                f"OpenAI extraction call failed after {latency_ms}ms: {type(e).__name__}"
            )
            return self._failure(f"OpenAI request failed: {type(e).__name__}", latency_ms)

        latency_ms = int((time.perf_counter() - started) * 1000)
        if not response.choices:
            return self._failure("No choices in API response", latency_ms)
        message = response.choices[0].message
        if message.function_call is None:
            return self._failure("No function call in API response", latency_ms)

        try:
            payload = parse_function_call(
                message.function_call.name,
                message.function_call.arguments,
                EXTRACTION_FUNCTION_NAME,
                ExtractionPayload,
            )
        except SchemaMismatchError as e:
            return self._failure(str(e), latency_ms)

        return ExtractionResult(
            payload=payload,
            success=True,
            provider=self.provider_name,
            latency_ms=latency_ms,
        )

    async def _call_openai_with_retry(self, model: str, messages: list[dict[str, Any]]) -> Any:
        """Call the chat completions API, retrying transient transport errors.

        Raises:
            OpenAIError: After all retry attempts are exhausted, or immediately
                for non-transient errors (authentication, bad request)
        """
        assert self._client is not None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_OPENAI_ERRORS),
            wait=self.retry_wait,
            stop=stop_after_attempt(self.settings.ai_max_attempts),
            reraise=True,
        ):
            with attempt:
                return await self._client.chat.completions.create(  # type: ignore[call-overload]
                    model=model,
                    messages=messages,
                    functions=[extraction_function()],
                    function_call={"name": EXTRACTION_FUNCTION_NAME},
                    temperature=0,
                )
        raise AssertionError("unreachable")

    def _failure(self, error: str, latency_ms: int = 0) -> ExtractionResult:
        return ExtractionResult(
            payload=None,
            success=False,
            error=error,
            provider=self.provider_name,
            latency_ms=latency_ms,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
