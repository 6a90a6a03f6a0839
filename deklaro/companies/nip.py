"""Polish NIP (tax identification number) helpers.

A NIP is 10 digits; the last one is a weighted modulo-11 checksum of the first
nine. Extracted values often carry separators or a ``PL`` prefix, so every
comparison and lookup goes through ``normalize_nip`` first.
"""

import re

NIP_LENGTH = 10
NIP_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)

_NON_DIGITS = re.compile(r"\D")


def normalize_nip(raw: str | None) -> str:
    """Strip everything but digits ("PL 123-456-78-19" -> "1234567819")."""
    if not raw:
        return ""
    return _NON_DIGITS.sub("", raw)


def nip_checksum_ok(nip: str) -> bool:
    """Check the modulo-11 control digit of an already normalised NIP."""
    if len(nip) != NIP_LENGTH or not nip.isdigit():
        return False
    total = sum(int(d) * w for d, w in zip(nip[:9], NIP_WEIGHTS))
    control = total % 11
    # Remainder 10 cannot be encoded in one digit, such numbers are never issued
    if control == 10:
        return False
    return control == int(nip[9])


def is_valid_nip(raw: str | None) -> bool:
    """Normalise, then check length and checksum."""
    return nip_checksum_ok(normalize_nip(raw))


def format_nip(raw: str | None) -> str:
    """Format as XXX-XXX-XX-XX; returns the normalised digits if not 10 long."""
    nip = normalize_nip(raw)
    if len(nip) != NIP_LENGTH:
        return nip
    return f"{nip[:3]}-{nip[3:6]}-{nip[6:8]}-{nip[8:]}"


def same_nip(a: str | None, b: str | None) -> bool:
    """Compare two NIPs after normalisation; empty values never match."""
    left, right = normalize_nip(a), normalize_nip(b)
    return bool(left) and left == right
