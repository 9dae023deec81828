"""Bundled demo orders for the clearly-labelled SAMPLE report."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from vatpilot.compliance.classifier import classify

SAMPLE_EPOCH = datetime(2024, 1, 1)

# (destination, order total in cents, number of orders)
_SAMPLE_BATCHES: tuple[tuple[str, int, int], ...] = (
    ("DE", 6600, 14),
    ("DE", 7600, 1),
    ("FR", 9375, 8),
    ("ES", 10500, 6),
    # Not part of the return: above the ceiling, below the floor, outside the bloc
    ("DE", 18000, 1),
    ("IT", 1500, 1),
    ("US", 5000, 2),
)


@dataclass(frozen=True)
class SampleOrder:
    remote_order_id: str
    destination_country: str | None
    total_price_cents: int
    remote_created_at: datetime
    in_bloc: bool
    eligible: bool
    tax_applicable: bool
    requires_duty_review: bool


def sample_orders() -> list[SampleOrder]:
    """Classified demo orders, deterministic across calls."""
    orders = []
    for destination, cents, count in _SAMPLE_BATCHES:
        for _ in range(count):
            index = len(orders)
            flags = classify(destination, Decimal(cents) / 100)
            orders.append(
                SampleOrder(
                    remote_order_id=f"sample-{index + 1}",
                    destination_country=destination,
                    total_price_cents=cents,
                    remote_created_at=SAMPLE_EPOCH + timedelta(hours=index),
                    in_bloc=flags.in_bloc,
                    eligible=flags.eligible,
                    tax_applicable=flags.tax_applicable,
                    requires_duty_review=flags.requires_duty_review,
                )
            )
    return orders
