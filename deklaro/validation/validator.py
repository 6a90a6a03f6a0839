"""Financial and tax-ID validation of extracted invoices.

Hard checks, in order: required fields, gross == net + vat within tolerance,
NIP checksums, allowed VAT rates. Any hard error fails the invoice.

Soft checks only matter when there is no hard error: low overall confidence, a
critical field scored below the field threshold, unknown direction, or an
unresolved counterparty. They send the invoice to manual review.
"""

import logging
from collections.abc import Sequence
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from deklaro.companies.nip import nip_checksum_ok
from deklaro.db.models import InvoiceDirection
from deklaro.extraction.schema import ConfidenceScores, ExtractedInvoice
from deklaro.shared.config import Settings
from deklaro.shared.errors import StructuralValidationError

logger = logging.getLogger(__name__)


class ValidationOutcome(str, Enum):
    PASS = "PASS"
    SOFT_FAIL = "SOFT_FAIL"
    HARD_FAIL = "HARD_FAIL"


class ValidationReport(BaseModel):
    outcome: ValidationOutcome
    errors: list[str] = Field(default_factory=list)
    review_reasons: list[str] = Field(default_factory=list)

    def raise_for_outcome(self) -> None:
        """Raise ``StructuralValidationError`` for hard failures; no-op otherwise."""
        if self.outcome is ValidationOutcome.HARD_FAIL:
            raise StructuralValidationError(
                "; ".join(self.errors), severity="hard", reasons=self.errors
            )


class InvoiceValidator:
    def __init__(self, settings: Settings) -> None:
        self.tolerance: Decimal = settings.amount_tolerance
        self.allowed_vat_rates = frozenset(settings.allowed_vat_rates)
        self.confidence_threshold = settings.confidence_threshold
        self.field_threshold = settings.field_confidence_threshold

    def validate(
        self,
        data: ExtractedInvoice,
        *,
        confidence: ConfidenceScores,
        overall_confidence: int,
        direction: InvoiceDirection,
        unresolved_parties: Sequence[str] = (),
    ) -> ValidationReport:
        """Run all checks and decide PASS, SOFT_FAIL or HARD_FAIL.

        Args:
            data: Extracted invoice fields
            confidence: Per-field scores from extraction
            overall_confidence: Overall (possibly capped) confidence
            direction: Classification result
            unresolved_parties: Party labels ("seller", "buyer") whose NIP did not resolve
        """
        errors = [
            *self._check_required(data),
            *self._check_amounts(data),
            *self._check_nips(data),
            *self._check_vat_rates(data),
        ]
        if errors:
            logger.info(f"Validation hard fail: {errors}")
            return ValidationReport(outcome=ValidationOutcome.HARD_FAIL, errors=errors)

        reasons: list[str] = []
        if overall_confidence < self.confidence_threshold:
            reasons.append(
                f"Overall confidence {overall_confidence} below {self.confidence_threshold}"
            )
        low_fields = confidence.low_critical_fields(self.field_threshold)
        if low_fields:
            reasons.append(
                f"Low confidence for {', '.join(low_fields)} (below {self.field_threshold})"
            )
        if direction is InvoiceDirection.UNKNOWN:
            reasons.append("Invoice direction unknown")
        for party in unresolved_parties:
            reasons.append(f"Unresolved {party}")

        if reasons:
            return ValidationReport(outcome=ValidationOutcome.SOFT_FAIL, review_reasons=reasons)
        return ValidationReport(outcome=ValidationOutcome.PASS)

    def _check_required(self, data: ExtractedInvoice) -> list[str]:
        missing = []
        if not data.invoice_number:
            missing.append("invoice_number")
        if data.issue_date is None:
            missing.append("issue_date")
        if not data.seller.nip and not data.buyer.nip:
            missing.append("seller or buyer NIP")
        for name in ("net_amount", "vat_amount", "gross_amount"):
            if getattr(data, name) is None:
                missing.append(name)
        return [f"Missing required field: {name}" for name in missing]

    def _check_amounts(self, data: ExtractedInvoice) -> list[str]:
        net, vat, gross = data.net_amount, data.vat_amount, data.gross_amount
        if net is None or vat is None or gross is None:
            return []
        if abs(gross - (net + vat)) > self.tolerance:
            return [f"Amount mismatch: net {net} + vat {vat} = {net + vat}, gross {gross}"]
        return []

    def _check_nips(self, data: ExtractedInvoice) -> list[str]:
        errors = []
        for label, party in (("seller", data.seller), ("buyer", data.buyer)):
            if party.nip and not nip_checksum_ok(party.nip):
                errors.append(f"Invalid {label} NIP checksum: {party.nip}")
        return errors

    def _check_vat_rates(self, data: ExtractedInvoice) -> list[str]:
        errors = []
        for position, item in enumerate(data.line_items, start=1):
            if item.vat_rate is not None and item.vat_rate not in self.allowed_vat_rates:
                errors.append(f"Line item {position}: VAT rate {item.vat_rate}% not allowed")
        return errors
