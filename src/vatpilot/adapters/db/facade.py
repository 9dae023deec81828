from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
import uuid

from loguru import logger
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from vatpilot.adapters.db.models import (
    Base,
    Connection,
    Order,
    UpsertOutcome,
    UpsertRowOutcome,
)
from vatpilot.models.order import ClassifiedOrder

# Columns a re-sync may overwrite; identity columns are excluded.
_MUTABLE_ORDER_COLUMNS = (
    "connection_id",
    "order_number",
    "total_price_cents",
    "currency",
    "destination_country",
    "customer_email",
    "customer_id",
    "fulfillment_status",
    "financial_status",
    "line_items",
    "shipping_address",
    "remote_created_at",
    "remote_updated_at",
    "in_bloc",
    "eligible",
    "tax_applicable",
    "requires_duty_review",
    "origin_outside_bloc",
)


class PersistenceError(Exception):
    """A database write failed. Safe to retry: order writes are idempotent."""


class ConnectionNotFoundError(LookupError):
    """No connection exists with the given identifier."""


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how TIMESTAMP columns are stored."""
    return datetime.now(UTC).replace(tzinfo=None)


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works under pysqlite."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///vatpilot.db")
        """
        self._url = url
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._engine = create_engine(url, echo=False, connect_args=connect_args)
        if self._engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(self._engine)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    # Connections ---------------------------------------------------------

    def create_connection(self) -> Connection:
        """Create an empty (not yet authorized) connection."""
        with self.session() as session:  # type: Session
            connection = Connection(connection_id=uuid.uuid4().hex)
            session.add(connection)
            session.flush()
            session.refresh(connection)
            session.expunge(connection)
            return connection

    def get_connection(self, connection_id: str) -> Connection | None:
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection:
                session.expunge(connection)
            return connection

    def require_connection(self, connection_id: str) -> Connection:
        """Like get_connection but raises ConnectionNotFoundError."""
        connection = self.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    def list_connections(self) -> list[Connection]:
        with self.session() as session:  # type: Session
            connections = list(
                session.scalars(
                    select(Connection).order_by(Connection.created_at)
                ).all()
            )
            for connection in connections:
                session.expunge(connection)
            return connections

    def save_connection_credentials(
        self,
        *,
        shop_domain: str,
        access_token: str,
        scope: str,
        connection_id: str | None = None,
        connected_at: datetime | None = None,
    ) -> Connection:
        """Store handshake credentials, replacing any previous ones wholesale.

        Resolution order: the pending connection id from the OAuth state, then
        an existing connection for the same shop, then a new connection.

        Returns:
            The created or updated Connection
        """
        now = connected_at or utcnow()
        with self.session() as session:  # type: Session
            connection: Connection | None = None
            if connection_id:
                connection = session.get(Connection, connection_id)
            if connection is None:
                connection = session.scalars(
                    select(Connection).where(Connection.shop_domain == shop_domain)
                ).first()
            if connection is None:
                connection = Connection(connection_id=uuid.uuid4().hex)
                session.add(connection)

            connection.shop_domain = shop_domain
            connection.access_token = access_token
            connection.scope = scope
            connection.connected_at = now
            connection.needs_reauth = False
            connection.updated_at = now
            session.flush()
            session.refresh(connection)
            session.expunge(connection)
            return connection

    def disconnect_connection(self, connection_id: str) -> Connection:
        """Clear the credential together with the shop domain.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
        """
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            connection.shop_domain = None
            connection.access_token = None
            connection.scope = None
            connection.connected_at = None
            connection.updated_at = utcnow()
            session.flush()
            session.refresh(connection)
            session.expunge(connection)
            return connection

    def mark_connection_synced(
        self,
        connection_id: str,
        synced_at: datetime,
        *,
        advance_watermark: bool = True,
    ) -> int:
        """Advance the watermark and recount persisted orders.

        Args:
            connection_id: Connection that was synced
            synced_at: New last-sync watermark
            advance_watermark: False leaves last_sync_at alone and only recounts

        Returns:
            The connection's total persisted order count
        """
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            total = session.scalar(
                select(func.count(Order.order_id)).where(
                    Order.connection_id == connection_id
                )
            )
            if advance_watermark:
                connection.last_sync_at = synced_at
            connection.total_orders_synced = int(total or 0)
            connection.updated_at = utcnow()
            return connection.total_orders_synced

    def mark_connection_needs_reauth(self, connection_id: str) -> None:
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection is not None:
                connection.needs_reauth = True
                connection.updated_at = utcnow()

    # Orders --------------------------------------------------------------

    def latest_remote_created_at(self, connection_id: str) -> datetime | None:
        """Max remote creation time among persisted orders for a connection."""
        with self.session() as session:  # type: Session
            return session.scalar(
                select(func.max(Order.remote_created_at)).where(
                    Order.connection_id == connection_id
                )
            )

    def count_orders(self, connection_id: str) -> int:
        with self.session() as session:  # type: Session
            total = session.scalar(
                select(func.count(Order.order_id)).where(
                    Order.connection_id == connection_id
                )
            )
            return int(total or 0)

    def list_orders(
        self,
        connection_id: str,
        *,
        eligible_only: bool = False,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> list[Order]:
        """Fetch a connection's orders, newest first.

        Args:
            connection_id: Owning connection
            eligible_only: Restrict to IOSS-eligible orders
            created_from: Inclusive lower bound on remote creation time
            created_to: Inclusive upper bound on remote creation time

        Returns:
            Detached Order instances
        """
        stmt = select(Order).where(Order.connection_id == connection_id)
        if eligible_only:
            stmt = stmt.where(Order.eligible.is_(True))
        if created_from is not None:
            stmt = stmt.where(Order.remote_created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(Order.remote_created_at <= created_to)
        stmt = stmt.order_by(Order.remote_created_at.desc())

        with self.session() as session:  # type: Session
            orders = list(session.scalars(stmt).all())
            for order in orders:
                session.expunge(order)
            return orders

    def get_order_by_remote_id(self, remote_order_id: str) -> Order | None:
        with self.session() as session:  # type: Session
            order = session.scalars(
                select(Order).where(Order.remote_order_id == remote_order_id)
            ).first()
            if order:
                session.expunge(order)
            return order

    def upsert_orders(
        self,
        connection_id: str,
        orders: Iterable[ClassifiedOrder],
        *,
        synced_at: datetime | None = None,
    ) -> UpsertOutcome:
        """Unordered, idempotent bulk upsert keyed by remote order id.

        Each row is written inside its own SAVEPOINT so a single bad record
        is reported as failed without aborting the rest of the batch. Existing
        rows are overwritten field-for-field; a row only counts as updated
        when a stored value actually changed.

        Raises:
            PersistenceError: If the batch as a whole could not be written
        """
        batch = list(orders)
        rows: list[UpsertRowOutcome] = []
        counts = {"created": 0, "updated": 0, "unchanged": 0, "failed": 0}
        if not batch:
            return UpsertOutcome(0, 0, 0, 0, rows)

        stamp = synced_at or utcnow()
        try:
            with self.session() as session:  # type: Session
                remote_ids = [c.record.remote_order_id for c in batch]
                existing: dict[str, Order] = {
                    o.remote_order_id: o
                    for o in session.scalars(
                        select(Order).where(Order.remote_order_id.in_(remote_ids))
                    ).all()
                }

                for classified in batch:
                    values = {**classified.to_row(), "connection_id": connection_id}
                    remote_id = values["remote_order_id"]
                    try:
                        with session.begin_nested():
                            action = self._write_order_row(
                                session, existing, values, stamp
                            )
                    except SQLAlchemyError as e:
                        existing.pop(remote_id, None)
                        logger.bind(remote_order_id=remote_id).warning(
                            "Skipping order {}: {}", remote_id, e.__class__.__name__
                        )
                        rows.append(
                            UpsertRowOutcome(remote_id, "failed", reason=str(e))
                        )
                        counts["failed"] += 1
                        continue
                    rows.append(UpsertRowOutcome(remote_id, action))
                    counts[action] += 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to persist orders: {e}") from e

        return UpsertOutcome(
            created=counts["created"],
            updated=counts["updated"],
            unchanged=counts["unchanged"],
            failed=counts["failed"],
            rows=rows,
        )

    @staticmethod
    def _write_order_row(
        session: Session,
        existing: dict[str, Order],
        values: dict[str, Any],
        stamp: datetime,
    ) -> str:
        remote_id = values["remote_order_id"]
        current = existing.get(remote_id)
        if current is None:
            order = Order(**values, synced_at=stamp, created_at=stamp, updated_at=stamp)
            session.add(order)
            session.flush()
            existing[remote_id] = order
            return "created"

        changed = False
        for column in _MUTABLE_ORDER_COLUMNS:
            if getattr(current, column) != values[column]:
                setattr(current, column, values[column])
                changed = True
        current.synced_at = stamp
        if changed:
            current.updated_at = stamp
        session.flush()
        return "updated" if changed else "unchanged"
