"""Invoice data models for structured extraction.

The AI response is validated against these models immediately on receipt and
rejected on any mismatch; nothing is coerced. In particular:

- unknown keys are errors (``extra="forbid"``)
- amounts must be JSON numbers, never strings or booleans
- dates must be ISO ``YYYY-MM-DD`` strings
- confidence scores are integers 0-100
"""

import re
from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from deklaro.companies.nip import normalize_nip

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

CRITICAL_FIELDS = (
    "invoice_number",
    "seller_nip",
    "buyer_nip",
    "net_amount",
    "vat_amount",
    "gross_amount",
)


def _json_number(value: Any) -> Any:
    if value is None:
        return None
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValueError("must be a number")
    number = Decimal(str(value))
    if not number.is_finite():
        raise ValueError("must be a finite number")
    return number


def _iso_date(value: Any) -> Any:
    if value is None or isinstance(value, date):
        return value
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise ValueError("must be an ISO date (YYYY-MM-DD)")
    return date.fromisoformat(value)


Amount = Annotated[Decimal | None, BeforeValidator(_json_number)]
IsoDate = Annotated[date | None, BeforeValidator(_iso_date)]
Score = Annotated[int, Field(ge=0, le=100, strict=True)] | None


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Party(_StrictModel):
    """Seller or buyer block."""

    name: str | None = None
    nip: str | None = Field(None, description="Tax ID, normalised to digits")
    address: str | None = None

    @field_validator("nip")
    @classmethod
    def _normalise_nip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_nip(value) or None


class LineItem(_StrictModel):
    description: str | None = None
    quantity: Amount = None
    unit_price: Amount = None
    vat_rate: int | None = Field(None, strict=True, description="VAT rate in percent")
    net: Amount = None
    vat: Amount = None
    gross: Amount = None


class ExtractedInvoice(_StrictModel):
    """Structured invoice data; every field is null unless clearly present."""

    invoice_number: str | None = None
    issue_date: IsoDate = None
    due_date: IsoDate = None
    sale_date: IsoDate = None
    currency: str | None = Field(None, pattern=r"^[A-Z]{3}$", description="ISO 4217")
    net_amount: Amount = None
    vat_amount: Amount = None
    gross_amount: Amount = None
    line_items: list[LineItem] = Field(default_factory=list)
    seller: Party = Field(default_factory=Party)
    buyer: Party = Field(default_factory=Party)
    invoice_type: Literal["SALE", "PURCHASE", "CORRECTION"] | None = None


class ConfidenceScores(_StrictModel):
    """Per-field confidence (0-100). A missing score means the field was not scored."""

    invoice_number: Score = None
    issue_date: Score = None
    due_date: Score = None
    sale_date: Score = None
    seller_name: Score = None
    seller_nip: Score = None
    buyer_name: Score = None
    buyer_nip: Score = None
    net_amount: Score = None
    vat_amount: Score = None
    gross_amount: Score = None
    line_items: Score = None

    def scored(self) -> dict[str, int]:
        """Scores that were actually reported."""
        return {k: v for k, v in self.model_dump().items() if v is not None}

    def mean(self) -> int:
        """Overall confidence as the rounded mean of reported scores (0 if none)."""
        values = list(self.scored().values())
        if not values:
            return 0
        return round(sum(values) / len(values))

    def low_critical_fields(self, threshold: int) -> list[str]:
        """Critical fields scored below threshold; unscored critical fields count as low."""
        low = []
        for name in CRITICAL_FIELDS:
            score = getattr(self, name)
            if score is None or score < threshold:
                low.append(name)
        return low


class ExtractionPayload(_StrictModel):
    """Arguments of the ``extract_invoice_data`` function call."""

    extracted_data: ExtractedInvoice
    confidence: ConfidenceScores
