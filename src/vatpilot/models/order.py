from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, TypedDict

from vatpilot.compliance.classifier import Classification, classify

FULFILLMENT_STATUSES = frozenset({"fulfilled", "null", "partial", "restocked"})
FINANCIAL_STATUSES = frozenset(
    {
        "pending",
        "authorized",
        "partially_paid",
        "paid",
        "partially_refunded",
        "refunded",
        "voided",
    }
)


class LineItemRecord(TypedDict):
    """Line item snapshot stored as JSON on the order row."""

    product_id: str | None
    variant_id: str | None
    title: str | None
    quantity: int
    price_cents: int
    vendor: str | None
    country_of_origin: str | None


class ShippingAddressRecord(TypedDict):
    country: str | None
    country_code: str | None
    province: str | None
    city: str | None
    zip: str | None


@dataclass
class OrderRecord:
    """Internal order shape, independent of the storefront API's schema."""

    remote_order_id: str
    order_number: str
    total_price_cents: int
    currency: str
    destination_country: str | None
    customer_email: str | None
    customer_id: str | None
    fulfillment_status: str
    financial_status: str
    remote_created_at: datetime
    remote_updated_at: datetime
    line_items: list[LineItemRecord] = field(default_factory=list)
    shipping_address: ShippingAddressRecord | None = None

    @property
    def origin_countries(self) -> list[str]:
        return [
            item["country_of_origin"]
            for item in self.line_items
            if item.get("country_of_origin")
        ]


@dataclass
class ClassifiedOrder:
    """An order record with the compliance flags derived before persistence."""

    record: OrderRecord
    classification: Classification

    @classmethod
    def from_record(cls, record: OrderRecord) -> ClassifiedOrder:
        """Classify on the stored total; no currency conversion happens here."""
        value = Decimal(record.total_price_cents) / 100
        return cls(
            record=record,
            classification=classify(
                record.destination_country, value, record.origin_countries
            ),
        )

    def to_row(self) -> dict[str, Any]:
        """Column values for the orders table (excluding connection and sync time)."""
        rec = self.record
        cls = self.classification
        return {
            "remote_order_id": rec.remote_order_id,
            "order_number": rec.order_number,
            "total_price_cents": rec.total_price_cents,
            "currency": rec.currency,
            "destination_country": rec.destination_country,
            "customer_email": rec.customer_email,
            "customer_id": rec.customer_id,
            "fulfillment_status": rec.fulfillment_status,
            "financial_status": rec.financial_status,
            "line_items": list(rec.line_items),
            "shipping_address": (
                dict(rec.shipping_address) if rec.shipping_address else None
            ),
            "remote_created_at": rec.remote_created_at,
            "remote_updated_at": rec.remote_updated_at,
            "in_bloc": cls.in_bloc,
            "eligible": cls.eligible,
            "tax_applicable": cls.tax_applicable,
            "requires_duty_review": cls.requires_duty_review,
            "origin_outside_bloc": cls.origin_outside_bloc,
        }
