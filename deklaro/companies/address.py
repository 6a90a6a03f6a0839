"""Split registry free-text addresses into street, postal code and city.

Registry addresses look like ``"UL. MARSZAŁKOWSKA 1, 00-001 WARSZAWA"``. The postal
code (two digits, dash, three digits) is the anchor: street is what precedes it,
city is what follows up to the next comma.
"""

import re

from pydantic import BaseModel

POSTAL_CODE = re.compile(r"\b\d{2}-\d{3}\b")


class ParsedAddress(BaseModel):
    street: str | None = None
    postal_code: str | None = None
    city: str | None = None


def parse_address(address: str | None) -> ParsedAddress:
    """Parse a Polish address into components.

    Without a postal code the last comma-separated part is taken as the city.
    A single-part address without postal code is returned as street only.
    """
    if not address or not address.strip():
        return ParsedAddress()

    address = address.strip()
    match = POSTAL_CODE.search(address)

    if match:
        before = address[: match.start()].strip().rstrip(",").strip()
        after = address[match.end() :].strip()
        city = after.split(",")[0].strip()
        return ParsedAddress(
            street=before or None,
            postal_code=match.group(0),
            city=city or None,
        )

    parts = [p.strip() for p in address.split(",")]
    if len(parts) > 1:
        street = ", ".join(p for p in parts[:-1] if p)
        return ParsedAddress(street=street or None, city=parts[-1] or None)

    return ParsedAddress(street=address)
