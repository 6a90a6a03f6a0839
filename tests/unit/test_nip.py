"""Unit tests for NIP normalisation and checksum."""

import pytest
from doubles import BUYER_NIP, INVALID_NIP, SELLER_NIP

from deklaro.companies.nip import (
    format_nip,
    is_valid_nip,
    nip_checksum_ok,
    normalize_nip,
    same_nip,
)


class TestNormalizeNip:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("PL 123-456-32-18", "1234563218"),
            ("123 456 32 18", "1234563218"),
            ("1234563218", "1234563218"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_strips_everything_but_digits(self, raw: str | None, expected: str) -> None:
        assert normalize_nip(raw) == expected


class TestChecksum:
    def test_valid_numbers(self) -> None:
        assert nip_checksum_ok(SELLER_NIP)
        assert nip_checksum_ok(BUYER_NIP)

    def test_wrong_control_digit(self) -> None:
        assert not nip_checksum_ok(INVALID_NIP)

    def test_remainder_ten_is_never_valid(self) -> None:
        # weighted sum 230, remainder 10
        assert not nip_checksum_ok("1234567890")

    @pytest.mark.parametrize("nip", ["123456321", "12345632180", "12345a3218"])
    def test_wrong_shape(self, nip: str) -> None:
        assert not nip_checksum_ok(nip)

    def test_is_valid_nip_normalises_first(self) -> None:
        assert is_valid_nip("PL123-456-32-18")
        assert not is_valid_nip("PL123-456-32-17")


def test_format_nip() -> None:
    assert format_nip("1234563218") == "123-456-32-18"
    assert format_nip("12345") == "12345"


def test_same_nip() -> None:
    assert same_nip("PL1234563218", "123-456-32-18")
    assert not same_nip("1234563218", BUYER_NIP)
    assert not same_nip(None, "")
