"""Ollama-based extraction provider for self-hosted LLM inference.

Uses the Ollama chat API with tool calling, so the response carries the same
``extract_invoice_data`` tag as the OpenAI path. Text only.

See: https://ollama.ai/
"""

import logging
import time
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
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
    extraction_function,
)
from deklaro.extraction.schema import ExtractionPayload
from deklaro.shared.config import Settings

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class OllamaExtractionProvider(ExtractionProvider):
    """Extraction on a local Ollama server (Qwen2.5, Llama3.1 and similar)."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings)
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._model = settings.ollama_model
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.ai_timeout_seconds, connect=5.0)
        )
        self.retry_wait: wait_base = wait_exponential_jitter(initial=1, max=30)

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Configured when a base URL and model are set; reachability is checked at call time."""
        return bool(self._base_url and self._model)

    async def is_reachable(self) -> bool:
        """Check the server responds and the configured model is pulled."""
        try:
            response = await self._client.get(f"{self._base_url}/api/tags")
        except httpx.HTTPError:
            return False
        if response.status_code != 200:
            return False
        models = response.json().get("models", [])
        model_names = [m.get("name", "").split(":")[0] for m in models]
        return self._model.split(":")[0] in model_names

    async def extract_from_text(
        self, ocr_text: str, previous: dict[str, Any] | None = None
    ) -> ExtractionResult:
        if not ocr_text or not ocr_text.strip():
            return self._failure("Empty OCR text provided")

        started = time.perf_counter()
        try:
            body = await self._call_ollama_with_retry(build_text_prompt(ocr_text, previous))
        except httpx.HTTPError as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            logger.error(f"Ollama extraction failed: {type(e).__name__}")
            return self._failure(f"Ollama request failed: {type(e).__name__}", latency_ms)

        latency_ms = int((time.perf_counter() - started) * 1000)
        tool_calls = (body.get("message") or {}).get("tool_calls") or []
        if not tool_calls:
            return self._failure("No function call in API response", latency_ms)

        function = tool_calls[0].get("function") or {}
        try:
            payload = parse_function_call(
                function.get("name"),
                function.get("arguments"),
                EXTRACTION_FUNCTION_NAME,
                ExtractionPayload,
            )
        except SchemaMismatchError as e:
            logger.warning(f"Ollama response rejected: {e}")
            return self._failure(str(e), latency_ms)

        return ExtractionResult(
            payload=payload,
            success=True,
            provider=self.provider_name,
            latency_ms=latency_ms,
        )

    async def _call_ollama_with_retry(self, prompt: str) -> dict[str, Any]:
        """POST /api/chat, retrying transport errors and 5xx responses.

        Raises:
            httpx.HTTPError: After all retry attempts exhausted
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            wait=self.retry_wait,
            stop=stop_after_attempt(self.settings.ai_max_attempts),
            reraise=True,
        ):
            with attempt:
                response = await self._client.post(
                    f"{self._base_url}/api/chat",
                    json={
                        "model": self._model,
                        "messages": [
                            {"role": "system", "content": SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                        "tools": [{"type": "function", "function": extraction_function()}],
                        "stream": False,
                        "options": {"temperature": 0},
                    },
                )
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result
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
        await self._client.aclose()
