"""IOSS return generation."""

from __future__ import annotations

from vatpilot.jobs.report.aggregator import (
    ComplianceSummary,
    DateRange,
    JurisdictionAggregate,
    VatConvention,
    aggregate,
    compliance_summary,
)
from vatpilot.jobs.report.csv_renderer import render_csv
from vatpilot.jobs.report.runner import ReportArtifact, ReportRunner

__all__ = [
    "ComplianceSummary",
    "DateRange",
    "JurisdictionAggregate",
    "ReportArtifact",
    "ReportRunner",
    "VatConvention",
    "aggregate",
    "compliance_summary",
    "render_csv",
]
