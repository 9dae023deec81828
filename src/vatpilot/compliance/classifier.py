"""IOSS eligibility classification for a single order.

Pure functions only. Values are interpreted in EUR; callers normalise
currency before classifying.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from vatpilot.compliance.rates import is_member_state

IOSS_MIN_VALUE = Decimal("22")
IOSS_MAX_VALUE = Decimal("150")


@dataclass(frozen=True, slots=True)
class Classification:
    in_bloc: bool
    eligible: bool
    tax_applicable: bool
    requires_duty_review: bool
    origin_outside_bloc: bool


NOT_ELIGIBLE = Classification(
    in_bloc=False,
    eligible=False,
    tax_applicable=False,
    requires_duty_review=False,
    origin_outside_bloc=False,
)


def to_decimal(value: object) -> Decimal | None:
    """Coerce a monetary value to Decimal, or None when it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            # str() keeps 21.99 as 21.99 rather than its binary expansion.
            result = Decimal(str(value).strip())
        except InvalidOperation:
            return None
    else:
        return None
    if not result.is_finite():
        return None
    return result


def is_in_qualifying_range(value: object) -> bool:
    """True when IOSS_MIN_VALUE <= value <= IOSS_MAX_VALUE."""
    amount = to_decimal(value)
    if amount is None:
        return False
    return IOSS_MIN_VALUE <= amount <= IOSS_MAX_VALUE


def origin_outside_bloc(origin_codes: Iterable[object]) -> bool:
    """True unless some known country of origin is an EU member state."""
    return not any(is_member_state(code) for code in origin_codes)


def classify(
    destination_code: object,
    value: object,
    origin_codes: Iterable[object] = (),
) -> Classification:
    """Derive the compliance flags for one order.

    Unknown destinations fail safe to NOT_ELIGIBLE. An in-bloc order with a
    non-numeric value keeps in_bloc but gets no value-derived flag.
    """
    if not is_member_state(destination_code):
        return NOT_ELIGIBLE

    outside = origin_outside_bloc(origin_codes)
    amount = to_decimal(value)
    if amount is None:
        return Classification(
            in_bloc=True,
            eligible=False,
            tax_applicable=False,
            requires_duty_review=False,
            origin_outside_bloc=outside,
        )

    return Classification(
        in_bloc=True,
        eligible=IOSS_MIN_VALUE <= amount <= IOSS_MAX_VALUE,
        tax_applicable=amount > 0,
        requires_duty_review=amount > IOSS_MAX_VALUE,
        origin_outside_bloc=outside,
    )
