"""Prompts and function definitions for Polish invoice (Faktura VAT) extraction."""

import json
from typing import Any

EXTRACTION_FUNCTION_NAME = "extract_invoice_data"

SYSTEM_PROMPT = """You are an expert at extracting structured data from Polish invoices \
(Faktura VAT).

IMPORTANT RULES:
1. Extract only information that is clearly present in the document
2. For missing or unclear fields, use null. Never guess
3. Polish currency is PLN unless stated otherwise
4. NIP (tax ID) is 10 digits, often written as XXX-XXX-XX-XX
5. Dates must be in YYYY-MM-DD format
6. Amounts must be numbers (no currency symbols, "1 234,56" -> 1234.56)
7. VAT rates in Poland: 23, 8, 5, 0

COMMON POLISH TERMS:
- "Sprzedawca" = Seller
- "Nabywca" = Buyer
- "Data wystawienia" = Issue date
- "Data sprzedaży" = Sale date
- "Termin płatności" = Due date
- "Wartość netto" = Net amount
- "Kwota VAT" = VAT amount
- "Wartość brutto" = Gross amount
- "Razem" / "Do zapłaty" = Total to pay

Report a confidence score (integer 0-100) for each field."""

_NULLABLE_STRING = {"type": ["string", "null"]}
_NULLABLE_NUMBER = {"type": ["number", "null"]}
_NULLABLE_DATE = {"type": ["string", "null"], "format": "date"}
_SCORE = {"type": "integer", "minimum": 0, "maximum": 100}

_PARTY = {
    "type": "object",
    "properties": {
        "name": _NULLABLE_STRING,
        "nip": _NULLABLE_STRING,
        "address": _NULLABLE_STRING,
    },
    "additionalProperties": False,
}

_LINE_ITEM = {
    "type": "object",
    "properties": {
        "description": _NULLABLE_STRING,
        "quantity": _NULLABLE_NUMBER,
        "unit_price": _NULLABLE_NUMBER,
        "vat_rate": {"type": ["integer", "null"]},
        "net": _NULLABLE_NUMBER,
        "vat": _NULLABLE_NUMBER,
        "gross": _NULLABLE_NUMBER,
    },
    "additionalProperties": False,
}

_SCORED_FIELDS = (
    "invoice_number",
    "issue_date",
    "due_date",
    "sale_date",
    "seller_name",
    "seller_nip",
    "buyer_name",
    "buyer_nip",
    "net_amount",
    "vat_amount",
    "gross_amount",
    "line_items",
)


def extraction_function() -> dict[str, Any]:
    """Function calling definition for ``extract_invoice_data``."""
    return {
        "name": EXTRACTION_FUNCTION_NAME,
        "description": "Extract structured data from a Polish VAT invoice",
        "parameters": {
            "type": "object",
            "properties": {
                "extracted_data": {
                    "type": "object",
                    "properties": {
                        "invoice_number": _NULLABLE_STRING,
                        "issue_date": _NULLABLE_DATE,
                        "due_date": _NULLABLE_DATE,
                        "sale_date": _NULLABLE_DATE,
                        "currency": _NULLABLE_STRING,
                        "net_amount": _NULLABLE_NUMBER,
                        "vat_amount": _NULLABLE_NUMBER,
                        "gross_amount": _NULLABLE_NUMBER,
                        "line_items": {"type": "array", "items": _LINE_ITEM},
                        "seller": _PARTY,
                        "buyer": _PARTY,
                        "invoice_type": {
                            "type": ["string", "null"],
                            "enum": ["SALE", "PURCHASE", "CORRECTION", None],
                        },
                    },
                    "additionalProperties": False,
                },
                "confidence": {
                    "type": "object",
                    "properties": {name: _SCORE for name in _SCORED_FIELDS},
                    "additionalProperties": False,
                },
            },
            "required": ["extracted_data", "confidence"],
        },
    }


def build_text_prompt(ocr_text: str, previous: dict[str, Any] | None = None) -> str:
    """User prompt for the text path; ``previous`` turns it into a re-extraction."""
    if previous is None:
        return f"""Extract invoice data from this Polish invoice OCR text.

OCR Text:
{ocr_text}"""

    return f"""The previous extraction had low confidence. Please re-extract with extra care.

Previous attempt:
{json.dumps(previous, indent=2, default=str)}

Focus on:
1. Invoice number (usually starts with FV/, FK/, or just a number)
2. Dates (look for "Data wystawienia", "Data sprzedaży", "Termin płatności")
3. NIP numbers (10 digits, often formatted as XXX-XXX-XX-XX)
4. Amounts (look for "netto", "VAT", "brutto", "razem")

OCR Text:
{ocr_text}"""


def build_vision_prompt(previous: dict[str, Any] | None = None) -> str:
    """User prompt accompanying the page image on the vision path."""
    prompt = "Read this Polish invoice image and extract its data."
    if previous is not None:
        prompt += (
            "\n\nThe previous extraction had low confidence. Re-read the image with "
            "extra care.\n\nPrevious attempt:\n"
            + json.dumps(previous, indent=2, default=str)
        )
    return prompt
