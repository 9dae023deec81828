from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class Connection(Base):
    """A merchant store linked through the OAuth handshake.

    shop_domain and access_token are set and cleared together.
    """

    __tablename__ = "connections"

    connection_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    shop_domain: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[str | None] = mapped_column(String, nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    total_orders_synced: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    needs_reauth: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    orders: Mapped[list[Order]] = relationship(
        "Order", back_populates="connection", cascade="all, delete-orphan"
    )

    @property
    def is_connected(self) -> bool:
        return bool(self.shop_domain and self.access_token)

    def to_public_dict(self) -> dict[str, Any]:
        """Listing-safe view; never includes the access token."""
        return {
            "connectionId": self.connection_id,
            "shopDomain": self.shop_domain,
            "scope": self.scope,
            "connectedAt": _iso(self.connected_at),
            "lastSync": _iso(self.last_sync_at),
            "totalSynced": self.total_orders_synced,
            "needsReauth": self.needs_reauth,
        }

    def __repr__(self) -> str:
        return (
            f"Connection(connection_id={self.connection_id!r}, "
            f"shop_domain={self.shop_domain!r})"
        )


class Order(Base):
    """Order synced from a connected store, classified at write time."""

    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_connection_created", "connection_id", "remote_created_at"),
        Index("idx_orders_connection_eligible", "connection_id", "eligible"),
    )

    order_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("connections.connection_id", ondelete="CASCADE"),
        nullable=False,
    )
    remote_order_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    order_number: Mapped[str] = mapped_column(String, nullable=False)
    total_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    destination_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fulfillment_status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'null'")
    )
    financial_status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'pending'")
    )
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    remote_created_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)
    remote_updated_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)
    in_bloc: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    tax_applicable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    requires_duty_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    origin_outside_bloc: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    synced_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    connection: Mapped[Connection] = relationship(
        "Connection", back_populates="orders"
    )


@dataclass
class UpsertRowOutcome:
    remote_order_id: str
    action: str  # "created" | "updated" | "unchanged" | "failed"
    reason: str | None = None


@dataclass
class UpsertOutcome:
    created: int
    updated: int
    unchanged: int
    failed: int
    rows: list[UpsertRowOutcome]

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.unchanged


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
