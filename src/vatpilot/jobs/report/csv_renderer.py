from __future__ import annotations

from collections.abc import Iterable
import csv
from decimal import Decimal
import io

from vatpilot.jobs.report.aggregator import JurisdictionAggregate, to_money

CSV_HEADER = (
    "Member State",
    "VAT Rate",
    "Taxable Amount (EUR)",
    "VAT Amount (EUR)",
)


def format_rate(rate: Decimal) -> str:
    """19 -> "19%", 25.5 -> "25.5%"."""
    return f"{rate.normalize():f}%"


def format_money(amount: Decimal) -> str:
    return f"{to_money(amount):.2f}"


def render_csv(aggregates: Iterable[JurisdictionAggregate]) -> str:
    """Render the return as UTF-8 CSV text with LF line endings.

    Rows are sorted by member state. The internal order count is not emitted.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_HEADER)
    for agg in sorted(aggregates, key=lambda a: a.country_code):
        writer.writerow(
            (
                agg.country_code,
                format_rate(agg.vat_rate),
                format_money(agg.taxable_amount),
                format_money(agg.vat_amount),
            )
        )
    return buffer.getvalue()
