"""Unit tests for FA(3) document generation."""

import xml.etree.ElementTree as ET
from datetime import date
from decimal import Decimal

import pytest
from doubles import BUYER_NIP, SELLER_NIP, validated_invoice_fields

from deklaro.db.models import Company, Invoice, InvoiceStatus
from deklaro.shared.errors import ValidationError
from deklaro.submission.fa3 import FA3_NAMESPACE, build_fa3_document

NS = {"fa": FA3_NAMESPACE}


def make_invoice(**overrides) -> Invoice:
    fields = validated_invoice_fields()
    fields.update(overrides)
    return Invoice(
        id="inv-1",
        tenant_id="tenant-1",
        status=InvoiceStatus.VALIDATED,
        file_path="uploads/invoice.pdf",
        content_type="application/pdf",
        **fields,
    )


def seller_company() -> Company:
    return Company(
        tenant_id="tenant-1",
        nip=SELLER_NIP,
        name="SPRZEDAWCA SP. Z O.O.",
        street="UL. PROSTA 1",
        postal_code="00-001",
        city="WARSZAWA",
        country="PL",
    )


def build(invoice: Invoice, seller: Company | None = None) -> ET.Element:
    document = build_fa3_document(invoice, seller, None, generated_on=date(2024, 1, 16))
    assert document.startswith(b"<?xml")
    return ET.fromstring(document)


def text(root: ET.Element, path: str) -> str | None:
    element = root.find(path, NS)
    return None if element is None else element.text


class TestBuildFA3Document:
    def test_header(self) -> None:
        root = build(make_invoice())

        form_code = root.find("fa:Naglowek/fa:KodFormularza", NS)
        assert form_code is not None
        assert form_code.get("kodSystemowy") == "FA (3)"
        assert text(root, "fa:Naglowek/fa:WariantFormularza") == "3"
        assert text(root, "fa:Naglowek/fa:DataWytworzeniaFa") == "2024-01-16"

    def test_resolved_seller_used(self) -> None:
        root = build(make_invoice(), seller_company())

        assert text(root, "fa:Podmiot1/fa:DaneIdentyfikacyjne/fa:NIP") == SELLER_NIP
        assert text(root, "fa:Podmiot1/fa:DaneIdentyfikacyjne/fa:Nazwa") == (
            "SPRZEDAWCA SP. Z O.O."
        )
        assert text(root, "fa:Podmiot1/fa:Adres/fa:AdresL1") == "UL. PROSTA 1"
        assert text(root, "fa:Podmiot1/fa:Adres/fa:AdresL2") == "00-001 WARSZAWA"

    def test_extracted_buyer_fallback(self) -> None:
        root = build(make_invoice())

        assert text(root, "fa:Podmiot2/fa:DaneIdentyfikacyjne/fa:NIP") == BUYER_NIP
        assert text(root, "fa:Podmiot2/fa:DaneIdentyfikacyjne/fa:Nazwa") == "Nabywca S.A."
        assert text(root, "fa:Podmiot2/fa:Adres/fa:KodKraju") == "PL"
        assert text(root, "fa:Podmiot2/fa:Adres/fa:AdresL2") == "80-001 Gdańsk"

    def test_totals_and_dates(self) -> None:
        root = build(make_invoice())

        assert text(root, "fa:Fa/fa:P_1") == "2024-01-15"
        assert text(root, "fa:Fa/fa:P_2") == "FV/2024/01/123"
        assert text(root, "fa:Fa/fa:P_13_1") == "1000.00"
        assert text(root, "fa:Fa/fa:P_14_1") == "230.00"
        assert text(root, "fa:Fa/fa:P_15") == "1230.00"
        assert text(root, "fa:Fa/fa:Platnosc/fa:TerminPlatnosci/fa:Termin") == "2024-02-14"

    def test_line_items(self) -> None:
        root = build(make_invoice())

        rows = root.findall("fa:Fa/fa:FaWiersz", NS)
        assert len(rows) == 1
        assert text(rows[0], "fa:NrWierszaFa") == "1"
        assert text(rows[0], "fa:P_7") == "Usługi księgowe"
        assert text(rows[0], "fa:P_11") == "1000.00"
        assert text(rows[0], "fa:P_12") == "23"

    def test_mixed_rates_grouped(self) -> None:
        items = [
            {"description": "A", "vat_rate": 23, "net": "100.00", "vat": "23.00"},
            {"description": "B", "vat_rate": 8, "net": "50.00", "vat": "4.00"},
            {"description": "C", "vat_rate": 23, "net": "10.00"},
        ]
        root = build(
            make_invoice(
                line_items=items,
                net_amount=Decimal("160.00"),
                vat_amount=Decimal("29.30"),
                gross_amount=Decimal("189.30"),
            )
        )

        assert text(root, "fa:Fa/fa:P_13_1") == "110.00"
        assert text(root, "fa:Fa/fa:P_14_1") == "25.30"
        assert text(root, "fa:Fa/fa:P_13_2") == "50.00"
        assert text(root, "fa:Fa/fa:P_14_2") == "4.00"

    def test_rate_inferred_without_line_items(self) -> None:
        root = build(
            make_invoice(
                line_items=[],
                net_amount=Decimal("100.00"),
                vat_amount=Decimal("8.00"),
                gross_amount=Decimal("108.00"),
            )
        )

        assert text(root, "fa:Fa/fa:P_13_2") == "100.00"
        assert text(root, "fa:Fa/fa:P_13_1") is None

    def test_zero_rate_has_no_vat_field(self) -> None:
        items = [{"description": "Export", "vat_rate": 0, "net": "500.00", "vat": "0.00"}]
        root = build(
            make_invoice(
                line_items=items,
                net_amount=Decimal("500.00"),
                vat_amount=Decimal("0.00"),
                gross_amount=Decimal("500.00"),
            )
        )

        assert text(root, "fa:Fa/fa:P_13_6_1") == "500.00"

    def test_unsupported_rate(self) -> None:
        items = [{"description": "X", "vat_rate": 7, "net": "100.00", "vat": "7.00"}]

        with pytest.raises(ValidationError, match="VAT rate"):
            build_fa3_document(make_invoice(line_items=items), None, None)

    def test_missing_required_fields(self) -> None:
        with pytest.raises(ValidationError, match="lacks number"):
            build_fa3_document(make_invoice(invoice_number=None), None, None)
