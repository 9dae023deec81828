"""Report runner producing the IOSS return CSV for a connection."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import Literal

from vatpilot.adapters.db.facade import DB
from vatpilot.core.config import AppConfig
from vatpilot.jobs.report.aggregator import (
    ComplianceSummary,
    DateRange,
    JurisdictionAggregate,
    ReportableOrder,
    ReportLogger,
    VatConvention,
    aggregate,
    compliance_summary,
)
from vatpilot.jobs.report.csv_renderer import render_csv
from vatpilot.jobs.report.sample import sample_orders

ReportType = Literal["REAL", "SAMPLE"]

SAMPLE_FILENAME = "SAMPLE_Report.csv"


@dataclass
class ReportArtifact:
    """A rendered return, labelled with where its numbers came from."""

    filename: str
    content: str
    report_type: ReportType
    aggregates: list[JurisdictionAggregate]

    @property
    def is_sample(self) -> bool:
        return self.report_type == "SAMPLE"


def build_date_range(
    date_from: date | None = None, date_to: date | None = None
) -> DateRange | None:
    """Whole-day inclusive window; None when neither bound is given.

    Raises:
        ValueError: If date_from is after date_to
    """
    if date_from is None and date_to is None:
        return None
    if date_from is not None and date_to is not None and date_from > date_to:
        raise ValueError("dateFrom must not be after dateTo")
    return DateRange(
        start=datetime.combine(date_from, time.min) if date_from else None,
        end=datetime.combine(date_to, time.max) if date_to else None,
    )


def report_filename(day: date) -> str:
    return f"IOSS_Report_{day:%Y_%m_%d}.csv"


class ReportRunner:
    """Reads a connection's persisted orders and renders its IOSS return."""

    def __init__(
        self,
        db: DB,
        *,
        convention: VatConvention = VatConvention.INCLUSIVE,
        default_rate: Decimal = Decimal("20"),
        today: Callable[[], date] | None = None,
        report_logger: ReportLogger | None = None,
    ) -> None:
        """Initialize report runner.

        Args:
            db: Database facade to read orders from
            convention: VAT convention applied uniformly to the whole report
            default_rate: Fallback percentage for member states missing a rate
            today: Date source for the report filename (UTC by default)
        """
        self._db = db
        self._convention = convention
        self._default_rate = default_rate
        self._today = today or (lambda: datetime.now(UTC).date())
        self._logger = report_logger or ReportLogger()

    @classmethod
    def from_config(cls, config: AppConfig, db: DB) -> ReportRunner:
        return cls(
            db,
            convention=VatConvention(config.vat_convention),
            default_rate=config.default_vat_rate,
        )

    def generate(
        self,
        connection_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> ReportArtifact:
        """Build the return from real orders, or a SAMPLE when none qualify.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ValueError: If the date window is inverted
        """
        date_range = build_date_range(date_from, date_to)
        self._db.require_connection(connection_id)
        orders = self._db.list_orders(
            connection_id,
            created_from=date_range.start if date_range else None,
            created_to=date_range.end if date_range else None,
        )

        duty_review = sum(1 for o in orders if o.requires_duty_review)
        if duty_review:
            self._logger.duty_review_excluded(duty_review)

        aggregates = self._aggregate(orders)
        if aggregates:
            artifact = ReportArtifact(
                filename=report_filename(self._today()),
                content=render_csv(aggregates),
                report_type="REAL",
                aggregates=aggregates,
            )
        else:
            artifact = self.sample()

        self._logger.report_generated(
            connection_id, artifact.filename, artifact.report_type
        )
        return artifact

    def sample(self) -> ReportArtifact:
        """Demo return built from bundled orders through the same aggregation."""
        aggregates = self._aggregate(sample_orders())
        return ReportArtifact(
            filename=SAMPLE_FILENAME,
            content=render_csv(aggregates),
            report_type="SAMPLE",
            aggregates=aggregates,
        )

    def summary(
        self,
        connection_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> ComplianceSummary:
        """Headline IOSS figures for a connection.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
        """
        date_range = build_date_range(date_from, date_to)
        self._db.require_connection(connection_id)
        return compliance_summary(self._db.list_orders(connection_id), date_range)

    def _aggregate(
        self, orders: Iterable[ReportableOrder]
    ) -> list[JurisdictionAggregate]:
        return aggregate(
            orders,
            convention=self._convention,
            default_rate=self._default_rate,
            report_logger=self._logger,
        )
