"""EU member state VAT rates and bloc membership."""

from __future__ import annotations

from decimal import Decimal

# Standard rates as of 2025, in percent.
EU_VAT_RATES: dict[str, Decimal] = {
    "AT": Decimal("20"),
    "BE": Decimal("21"),
    "BG": Decimal("20"),
    "CY": Decimal("19"),
    "CZ": Decimal("21"),
    "DE": Decimal("19"),
    "DK": Decimal("25"),
    "EE": Decimal("22"),
    "ES": Decimal("21"),
    "FI": Decimal("25.5"),
    "FR": Decimal("20"),
    "GR": Decimal("24"),
    "HR": Decimal("25"),
    "HU": Decimal("27"),
    "IE": Decimal("23"),
    "IT": Decimal("22"),
    "LT": Decimal("21"),
    "LU": Decimal("17"),
    "LV": Decimal("21"),
    "MT": Decimal("18"),
    "NL": Decimal("21"),
    "PL": Decimal("23"),
    "PT": Decimal("23"),
    "RO": Decimal("19"),
    "SE": Decimal("25"),
    "SI": Decimal("22"),
    "SK": Decimal("20"),
}

EU_MEMBER_STATES: frozenset[str] = frozenset(EU_VAT_RATES)

# Greece files under its VAT prefix rather than its ISO code.
_CODE_ALIASES: dict[str, str] = {"EL": "GR"}


def normalize_country_code(code: object) -> str | None:
    """Return an upper-cased two-letter code, or None when unusable."""
    if not isinstance(code, str):
        return None
    cleaned = code.strip().upper()
    if len(cleaned) != 2 or not cleaned.isalpha():
        return None
    return _CODE_ALIASES.get(cleaned, cleaned)


def is_member_state(code: object) -> bool:
    normalized = normalize_country_code(code)
    return normalized is not None and normalized in EU_MEMBER_STATES


def vat_rate_for(code: str) -> Decimal | None:
    """Standard VAT rate in percent, or None when the table has no entry."""
    normalized = normalize_country_code(code)
    if normalized is None:
        return None
    return EU_VAT_RATES.get(normalized)
