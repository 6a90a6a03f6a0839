"""Invoice direction classification (INCOMING vs OUTGOING).

A NIP match against the tenant's own tax ID decides deterministically. Only when
that fails is the AI classifier consulted; any AI failure yields UNKNOWN with
confidence 0, which the validation stage routes to manual review.
"""

import json
import logging
from typing import Literal

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from deklaro.companies.nip import normalize_nip, same_nip
from deklaro.db.models import InvoiceDirection
from deklaro.extraction.base import SchemaMismatchError, parse_function_call
from deklaro.extraction.openai_provider import TRANSIENT_OPENAI_ERRORS
from deklaro.extraction.schema import ExtractedInvoice
from deklaro.shared.config import Settings

logger = logging.getLogger(__name__)

CLASSIFY_FUNCTION_NAME = "classify_invoice"
MAX_CONTEXT_CHARS = 4000

SYSTEM_PROMPT = """You are an expert accounting assistant for Polish businesses. Classify \
an invoice as INCOMING (a purchase or cost for the company) or OUTGOING (a sale made by \
the company).

Base your decision on the roles of the seller (sprzedawca) and the buyer (nabywca):
1. If the company receiving the invoice is the buyer, it is INCOMING.
2. If the company receiving the invoice is the seller, it is OUTGOING.
3. If you cannot tell, answer UNKNOWN.

Confidence is a number between 0.0 and 1.0."""

CLASSIFY_FUNCTION = {
    "name": CLASSIFY_FUNCTION_NAME,
    "description": "Classify the direction of an invoice relative to the tenant",
    "parameters": {
        "type": "object",
        "properties": {
            "direction": {"type": "string", "enum": ["INCOMING", "OUTGOING", "UNKNOWN"]},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "rationale": {"type": "string"},
        },
        "required": ["direction", "confidence", "rationale"],
        "additionalProperties": False,
    },
}


class _ClassifierResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    direction: Literal["INCOMING", "OUTGOING", "UNKNOWN"]
    confidence: float = Field(ge=0, le=1)
    rationale: str


class Classification(BaseModel):
    """Direction decision with its provenance."""

    direction: InvoiceDirection
    confidence: float = Field(ge=0, le=1)
    rationale: str
    method: Literal["heuristic", "ai", "fallback"]


class InvoiceClassifier:
    """NIP heuristic first, AI function call as fallback."""

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self.settings = settings
        self._client = client
        self.retry_wait: wait_base = wait_exponential_jitter(initial=1, max=10)

    async def classify(
        self,
        data: ExtractedInvoice,
        tenant_nip: str | None,
        raw_text: str | None = None,
    ) -> Classification:
        """Classify invoice direction; never raises.

        Args:
            data: Extracted invoice fields
            tenant_nip: Tenant's own NIP (any formatting), None if unknown
            raw_text: OCR text given to the AI as additional context
        """
        if normalize_nip(tenant_nip):
            if same_nip(data.seller.nip, tenant_nip):
                return Classification(
                    direction=InvoiceDirection.OUTGOING,
                    confidence=1.0,
                    rationale="Seller NIP matches the tenant NIP",
                    method="heuristic",
                )
            if same_nip(data.buyer.nip, tenant_nip):
                return Classification(
                    direction=InvoiceDirection.INCOMING,
                    confidence=1.0,
                    rationale="Buyer NIP matches the tenant NIP",
                    method="heuristic",
                )

        logger.info("NIP heuristic inconclusive, falling back to AI classifier")
        try:
            return await self._classify_with_ai(data, tenant_nip, raw_text)
        except (OpenAIError, SchemaMismatchError, RuntimeError) as e:
            logger.warning(f"AI classification failed: {type(e).__name__}: {e}")
            return Classification(
                direction=InvoiceDirection.UNKNOWN,
                confidence=0.0,
                rationale="AI classification failed",
                method="fallback",
            )

    async def _classify_with_ai(
        self, data: ExtractedInvoice, tenant_nip: str | None, raw_text: str | None
    ) -> Classification:
        if self._client is None:
            raise RuntimeError("AI classifier not configured")

        context = {
            "seller": data.seller.model_dump(),
            "buyer": data.buyer.model_dump(),
            "header": {
                "invoice_number": data.invoice_number,
                "issue_date": data.issue_date.isoformat() if data.issue_date else None,
                "invoice_type": data.invoice_type,
            },
        }
        content = (
            f"The tenant's NIP is {normalize_nip(tenant_nip) or 'unknown'}. "
            f"Classify the invoice based on the following data:\n\n"
            f"{json.dumps(context, ensure_ascii=False)}"
        )
        if raw_text:
            content += f"\n\nOCR text:\n{raw_text[:MAX_CONTEXT_CHARS]}"

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_OPENAI_ERRORS),
            wait=self.retry_wait,
            stop=stop_after_attempt(self.settings.ai_max_attempts),
            reraise=True,
        ):
            with attempt:
                create = self._client.chat.completions.create
                response = await create(  # type: ignore[call-overload]
                    model=self.settings.classification_model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": content},
                    ],
                    functions=[CLASSIFY_FUNCTION],
                    function_call={"name": CLASSIFY_FUNCTION_NAME},
                    temperature=0.1,
                )

        if not response.choices:
            raise SchemaMismatchError("No choices in API response")
        call = response.choices[0].message.function_call
        if call is None:
            raise SchemaMismatchError("No function call in API response")
        parsed = parse_function_call(
            call.name, call.arguments, CLASSIFY_FUNCTION_NAME, _ClassifierResponse
        )
        return Classification(
            direction=InvoiceDirection(parsed.direction),
            confidence=parsed.confidence,
            rationale=parsed.rationale,
            method="ai",
        )
