"""FA(3) structured invoice document for the e-invoicing gateway.

Layout: ``Naglowek`` header, ``Podmiot1`` (seller) and ``Podmiot2`` (buyer)
party blocks, and ``Fa`` with dates, per-rate totals (P_13_x net, P_14_x VAT),
the gross total P_15, annotations and ``FaWiersz`` line items.
"""

import xml.etree.ElementTree as ET
from collections import defaultdict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from deklaro.companies.address import parse_address
from deklaro.companies.nip import normalize_nip
from deklaro.db.models import Company, Invoice
from deklaro.shared.errors import ValidationError

FA3_NAMESPACE = "http://crd.gov.pl/wzor/2025/06/25/13775/"
SYSTEM_INFO = "Deklaro"

# VAT rate -> (net total field, VAT total field)
RATE_FIELDS: dict[int, tuple[str, str | None]] = {
    23: ("P_13_1", "P_14_1"),
    8: ("P_13_2", "P_14_2"),
    5: ("P_13_3", "P_14_3"),
    0: ("P_13_6_1", None),
}

_CENT = Decimal("0.01")

ET.register_namespace("", FA3_NAMESPACE)


def _q(tag: str) -> str:
    return f"{{{FA3_NAMESPACE}}}{tag}"


def _sub(parent: ET.Element, tag: str, text: Any = None) -> ET.Element:
    element = ET.SubElement(parent, _q(tag))
    if text is not None:
        element.text = str(text)
    return element


def _amount(value: Any) -> str:
    return str(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _party(
    parent: ET.Element,
    tag: str,
    company: Company | None,
    nip: str | None,
    name: str | None,
    address: str | None,
) -> None:
    block = _sub(parent, tag)
    ident = _sub(block, "DaneIdentyfikacyjne")
    _sub(ident, "NIP", company.nip if company else normalize_nip(nip))
    _sub(ident, "Nazwa", company.name if company else (name or ""))

    if company is not None:
        street, postal_code, city = company.street, company.postal_code, company.city
        country = company.country
    else:
        parsed = parse_address(address)
        street, postal_code, city = parsed.street, parsed.postal_code, parsed.city
        country = "PL"

    adres = _sub(block, "Adres")
    _sub(adres, "KodKraju", country)
    _sub(adres, "AdresL1", street or "")
    line2 = " ".join(part for part in (postal_code, city) if part)
    if line2:
        _sub(adres, "AdresL2", line2)


def _rate_totals(invoice: Invoice) -> dict[int, tuple[Decimal, Decimal]]:
    """Net and VAT totals per rate, from line items when they are complete."""
    totals: dict[int, list[Decimal]] = defaultdict(lambda: [Decimal(0), Decimal(0)])
    items = invoice.line_items or []
    complete = bool(items) and all(
        item.get("vat_rate") is not None and item.get("net") is not None for item in items
    )

    if complete:
        for item in items:
            rate = int(item["vat_rate"])
            net = Decimal(str(item["net"]))
            vat = _decimal(item.get("vat"))
            if vat is None:
                vat = (net * rate / 100).quantize(_CENT, rounding=ROUND_HALF_UP)
            totals[rate][0] += net
            totals[rate][1] += vat
    else:
        net = invoice.net_amount or Decimal(0)
        vat = invoice.vat_amount or Decimal(0)
        rate = round(vat / net * 100) if net else 23
        if rate not in RATE_FIELDS:
            rate = 23
        totals[rate] = [net, vat]

    unknown = sorted(set(totals) - set(RATE_FIELDS))
    if unknown:
        raise ValidationError(f"No FA(3) field for VAT rate(s): {unknown}")
    return {rate: (net, vat) for rate, (net, vat) in totals.items()}


def build_fa3_document(
    invoice: Invoice,
    seller: Company | None,
    buyer: Company | None,
    generated_on: date | None = None,
) -> bytes:
    """Convert a validated invoice to FA(3) XML.

    Args:
        invoice: Validated invoice row
        seller: Resolved seller company (falls back to extracted seller fields)
        buyer: Resolved buyer company (falls back to extracted buyer fields)
        generated_on: Document creation date (defaults to today)

    Returns:
        UTF-8 encoded XML document

    Raises:
        ValidationError: Required fields missing or a VAT rate without FA(3) field
    """
    if not invoice.invoice_number or invoice.issue_date is None or invoice.gross_amount is None:
        raise ValidationError("Invoice lacks number, issue date or gross amount")

    root = ET.Element(_q("Faktura"))

    header = _sub(root, "Naglowek")
    form_code = _sub(header, "KodFormularza", "FA")
    form_code.set("kodSystemowy", "FA (3)")
    form_code.set("wersjaSchemy", "1-0E")
    _sub(header, "WariantFormularza", 3)
    _sub(header, "DataWytworzeniaFa", (generated_on or date.today()).isoformat())
    _sub(header, "SystemInfo", SYSTEM_INFO)

    _party(
        root, "Podmiot1", seller, invoice.seller_nip, invoice.seller_name, invoice.seller_address
    )
    _party(root, "Podmiot2", buyer, invoice.buyer_nip, invoice.buyer_name, invoice.buyer_address)

    fa = _sub(root, "Fa")
    _sub(fa, "KodWaluty", invoice.currency or "PLN")
    _sub(fa, "P_1", invoice.issue_date.isoformat())
    _sub(fa, "P_2", invoice.invoice_number)
    if invoice.sale_date is not None:
        _sub(fa, "P_6", invoice.sale_date.isoformat())

    totals = _rate_totals(invoice)
    for rate, (net_field, vat_field) in RATE_FIELDS.items():
        if rate not in totals:
            continue
        net, vat = totals[rate]
        _sub(fa, net_field, _amount(net))
        if vat_field is not None:
            _sub(fa, vat_field, _amount(vat))
    _sub(fa, "P_15", _amount(invoice.gross_amount))

    annotations = _sub(fa, "Adnotacje")
    for field in ("P_16", "P_17", "P_18", "P_18A"):
        _sub(annotations, field, 2)
    _sub(_sub(annotations, "Zwolnienie"), "P_19N", 1)
    _sub(_sub(annotations, "NoweSrodkiTransportu"), "P_22N", 1)
    _sub(annotations, "P_23", 2)
    _sub(_sub(annotations, "PMarzy"), "P_PMarzyN", 1)

    _sub(fa, "RodzajFaktury", "VAT")

    for position, item in enumerate(invoice.line_items or [], start=1):
        row = _sub(fa, "FaWiersz")
        _sub(row, "NrWierszaFa", position)
        _sub(row, "P_7", item.get("description") or "")
        _sub(row, "P_8A", "szt.")
        if item.get("quantity") is not None:
            _sub(row, "P_8B", Decimal(str(item["quantity"])).normalize())
        if item.get("unit_price") is not None:
            _sub(row, "P_9A", _amount(item["unit_price"]))
        if item.get("net") is not None:
            _sub(row, "P_11", _amount(item["net"]))
        if item.get("vat_rate") is not None:
            _sub(row, "P_12", item["vat_rate"])

    if invoice.due_date is not None:
        payment = _sub(fa, "Platnosc")
        _sub(_sub(payment, "TerminPlatnosci"), "Termin", invoice.due_date.isoformat())

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)
