"""Jurisdiction aggregation for the IOSS VAT return.

Pure over the orders it is given: no database access, and malformed values
degrade to "not counted" rather than raising.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Protocol

import loguru
from loguru import logger

from vatpilot.compliance.rates import normalize_country_code, vat_rate_for

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


class VatConvention(str, Enum):
    """How stored order totals relate to VAT."""

    # Totals include VAT; tax = total - total / (1 + rate)
    INCLUSIVE = "inclusive"
    # Totals exclude VAT; tax = total * rate, summed per order
    EXCLUSIVE = "exclusive"


class ReportableOrder(Protocol):
    destination_country: str | None
    total_price_cents: int
    remote_created_at: datetime
    in_bloc: bool
    eligible: bool
    requires_duty_review: bool


@dataclass(frozen=True)
class DateRange:
    """Inclusive bounds on an order's remote creation time."""

    start: datetime | None = None
    end: datetime | None = None

    def contains(self, moment: datetime | None) -> bool:
        if moment is None:
            return self.start is None and self.end is None
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True


@dataclass(frozen=True)
class JurisdictionAggregate:
    country_code: str
    vat_rate: Decimal
    taxable_amount: Decimal
    vat_amount: Decimal
    order_count: int


@dataclass(frozen=True)
class ComplianceSummary:
    total_orders: int
    eligible_orders: int
    in_bloc_orders: int
    duty_review_orders: int
    total_value: Decimal
    eligible_value: Decimal
    average_order_value: Decimal
    compliance_rate: Decimal

    def to_dict(self) -> dict[str, object]:
        return {
            "totalOrders": self.total_orders,
            "iossEligibleOrders": self.eligible_orders,
            "euOrders": self.in_bloc_orders,
            "dutyReviewOrders": self.duty_review_orders,
            "totalValue": float(self.total_value),
            "iossValue": float(self.eligible_value),
            "averageOrderValue": float(self.average_order_value),
            "complianceRate": float(self.compliance_rate),
        }


class ReportLogger:
    """Handles all logging for report generation."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def rate_missing(self, country_code: str, default_rate: Decimal) -> None:
        self._logger.bind(country=country_code, default_rate=str(default_rate)).warning(
            "No VAT rate for member state {}; using default {}%",
            country_code,
            default_rate,
        )

    def eligible_without_destination(self, count: int) -> None:
        self._logger.bind(count=count).warning(
            "{} eligible orders have no destination country and were skipped", count
        )

    def aggregated(self, jurisdictions: int, orders: int, convention: str) -> None:
        self._logger.bind(
            jurisdictions=jurisdictions, orders=orders, convention=convention
        ).info(
            "Aggregated {} orders into {} jurisdictions ({})",
            orders,
            jurisdictions,
            convention,
        )

    def duty_review_excluded(self, count: int) -> None:
        self._logger.bind(count=count).warning(
            "{} orders above the IOSS ceiling need customs duty review "
            "and are not part of this return",
            count,
        )

    def report_generated(
        self, connection_id: str, filename: str, report_type: str
    ) -> None:
        self._logger.bind(
            connection_id=connection_id, filename=filename, report_type=report_type
        ).info("Generated {} report {} for {}", report_type, filename, connection_id)


def to_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _euros(cents: int) -> Decimal:
    return Decimal(cents) / HUNDRED


def _in_range(order: ReportableOrder, date_range: DateRange | None) -> bool:
    return date_range is None or date_range.contains(order.remote_created_at)


def aggregate(
    orders: Iterable[ReportableOrder],
    date_range: DateRange | None = None,
    *,
    convention: VatConvention = VatConvention.INCLUSIVE,
    default_rate: Decimal = Decimal("20"),
    report_logger: ReportLogger | None = None,
) -> list[JurisdictionAggregate]:
    """Group eligible orders by destination and compute VAT per jurisdiction.

    Args:
        orders: Classified orders (persisted rows or transient ones)
        date_range: Optional inclusive window on remote creation time
        convention: Whether order totals include or exclude VAT
        default_rate: Percentage used when a member state has no table rate
        report_logger: Logger for data-integrity warnings

    Returns:
        One aggregate per jurisdiction, sorted by country code
    """
    log = report_logger or ReportLogger()
    taxable: dict[str, Decimal] = {}
    per_order_vat: dict[str, Decimal] = {}
    counts: dict[str, int] = {}
    rates: dict[str, Decimal] = {}
    missing_destination = 0
    total_orders = 0

    for order in orders:
        if not order.eligible or not _in_range(order, date_range):
            continue
        code = normalize_country_code(order.destination_country)
        if code is None:
            missing_destination += 1
            continue

        if code not in rates:
            rate = vat_rate_for(code)
            if rate is None:
                log.rate_missing(code, default_rate)
                rate = default_rate
            rates[code] = rate

        amount = _euros(order.total_price_cents)
        taxable[code] = taxable.get(code, Decimal("0")) + amount
        counts[code] = counts.get(code, 0) + 1
        if convention is VatConvention.EXCLUSIVE:
            vat = to_money(amount * rates[code] / HUNDRED)
            per_order_vat[code] = per_order_vat.get(code, Decimal("0")) + vat
        total_orders += 1

    if missing_destination:
        log.eligible_without_destination(missing_destination)

    aggregates = []
    for code in sorted(taxable):
        gross = taxable[code]
        rate = rates[code]
        if convention is VatConvention.EXCLUSIVE:
            vat_amount = per_order_vat[code]
        else:
            vat_amount = gross - gross / (1 + rate / HUNDRED)
        aggregates.append(
            JurisdictionAggregate(
                country_code=code,
                vat_rate=rate,
                taxable_amount=to_money(gross),
                vat_amount=to_money(vat_amount),
                order_count=counts[code],
            )
        )

    log.aggregated(len(aggregates), total_orders, convention.value)
    return aggregates


def compliance_summary(
    orders: Iterable[ReportableOrder], date_range: DateRange | None = None
) -> ComplianceSummary:
    """Headline IOSS figures over a connection's orders."""
    total_orders = eligible_orders = in_bloc_orders = duty_review_orders = 0
    total_cents = eligible_cents = 0

    for order in orders:
        if not _in_range(order, date_range):
            continue
        total_orders += 1
        total_cents += order.total_price_cents
        if order.in_bloc:
            in_bloc_orders += 1
        if order.eligible:
            eligible_orders += 1
            eligible_cents += order.total_price_cents
        if order.requires_duty_review:
            duty_review_orders += 1

    average = _euros(total_cents) / total_orders if total_orders else Decimal("0")
    rate = (
        Decimal(eligible_orders) * HUNDRED / Decimal(in_bloc_orders)
        if in_bloc_orders
        else Decimal("0")
    )
    return ComplianceSummary(
        total_orders=total_orders,
        eligible_orders=eligible_orders,
        in_bloc_orders=in_bloc_orders,
        duty_review_orders=duty_review_orders,
        total_value=to_money(_euros(total_cents)),
        eligible_value=to_money(_euros(eligible_cents)),
        average_order_value=to_money(average),
        compliance_rate=to_money(rate),
    )
