from __future__ import annotations

from datetime import datetime
from pathlib import Path
import threading
import time
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from vatpilot.adapters.clients.shopify import (
    AuthError,
    OrderPage,
    RateLimitedError,
    TransportError,
)
from vatpilot.adapters.db.facade import DB, PersistenceError
from vatpilot.tools.sync.single_flight import SingleFlight
from vatpilot.tools.sync.sync_tool import SyncPhase, SyncResult, SyncTool

NOW = datetime(2024, 3, 10, 12, 0, 0)

# Helper functions


def create_db(tmp_path: Path) -> DB:
    """Create a test database."""
    db = DB(f"sqlite:///{tmp_path / 'test.db'}")
    db.create_schema()
    return db


def create_connected(db: DB) -> str:
    connection = db.save_connection_credentials(
        shop_domain="demo-store.myshopify.com",
        access_token="shpat_abc",  # noqa: S106
        scope="read_orders",
    )
    return connection.connection_id


def create_raw_order(
    order_id: int,
    *,
    total_price: str = "50.00",
    country_code: str = "DE",
    created_at: str = "2024-03-01T09:00:00Z",
) -> dict[str, Any]:
    """Create a raw order as the orders endpoint returns it."""
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "total_price": total_price,
        "currency": "EUR",
        "financial_status": "paid",
        "fulfillment_status": None,
        "created_at": created_at,
        "updated_at": created_at,
        "line_items": [],
        "shipping_address": {"country_code": country_code},
    }


def create_page(
    ids: range | list[int], next_page_info: str | None = None
) -> OrderPage:
    return OrderPage(
        orders=[create_raw_order(i) for i in ids], next_page_info=next_page_info
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class MockShopifyClient:
    """Mock ShopifyClient replaying scripted pages or errors."""

    def __init__(
        self,
        responses: list[OrderPage | Exception] | None = None,
        *,
        on_fetch: Any = None,
    ) -> None:
        self._responses = list(responses or [])
        self._on_fetch = on_fetch
        self.calls: list[dict[str, Any]] = []

    def script(self, *responses: OrderPage | Exception) -> None:
        self._responses = list(responses)

    def fetch_orders(
        self,
        shop_domain: str,
        access_token: str,
        *,
        limit: int = 50,
        created_after: datetime | None = None,
        status: str = "any",
        page_info: str | None = None,
    ) -> OrderPage:
        self.calls.append(
            {
                "shop_domain": shop_domain,
                "limit": limit,
                "created_after": created_after,
                "page_info": page_info,
            }
        )
        if self._on_fetch is not None:
            self._on_fetch()
        if not self._responses:
            return OrderPage(orders=[], next_page_info=None)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def create_tool(
    client: MockShopifyClient,
    db: DB,
    *,
    clock: FakeClock | None = None,
    sleeps: list[float] | None = None,
    **kwargs: Any,
) -> SyncTool:
    sleep_log = sleeps if sleeps is not None else []
    return SyncTool(
        client,  # type: ignore[arg-type]
        db,
        clock=clock or FakeClock(),
        sleep=sleep_log.append,
        now=lambda: NOW,
        **kwargs,
    )


class TestFullSync:
    def test_follows_cursor_and_persists_every_page(self, tmp_path: Path) -> None:
        # setup
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient(
            [create_page(range(1, 4), next_page_info="p2"), create_page(range(4, 6))]
        )
        tool = create_tool(client, db)

        # act
        result = tool.sync_full(connection_id)

        # assert
        assert result.success is True
        assert result.phase is SyncPhase.DONE
        assert (result.processed, result.created, result.updated) == (5, 5, 0)
        assert result.pages == 2
        assert [c["page_info"] for c in client.calls] == [None, "p2"]
        assert all(c["limit"] == 250 for c in client.calls)
        assert client.calls[0]["created_after"] is None
        connection = db.require_connection(connection_id)
        assert connection.last_sync_at == NOW
        assert connection.total_orders_synced == 5

    def test_full_sync_ignores_watermark(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        db.mark_connection_synced(connection_id, datetime(2024, 3, 1))
        client = MockShopifyClient([create_page([1])])

        create_tool(client, db).sync_full(connection_id)

        assert client.calls[0]["created_after"] is None

    def test_malformed_record_is_skipped(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        page = create_page([1, 2])
        page.orders.insert(1, {"id": 99, "total_price": "oops", "created_at": "x"})
        page.orders.append({"id": 100, "total_price": "12.00"})
        client = MockShopifyClient([page])

        result = create_tool(client, db).sync_full(connection_id)

        assert result.success is True
        assert result.created == 2
        assert result.failed == 2
        assert db.count_orders(connection_id) == 2

    def test_classifies_before_persisting(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        page = OrderPage(
            orders=[
                create_raw_order(1, total_price="22.00"),
                create_raw_order(2, total_price="150.01"),
                create_raw_order(3, country_code="US"),
            ]
        )

        create_tool(MockShopifyClient([page]), db).sync_full(connection_id)

        eligible = db.list_orders(connection_id, eligible_only=True)
        assert [o.remote_order_id for o in eligible] == ["1"]

    def test_page_limit_marks_truncated_and_keeps_watermark(
        self, tmp_path: Path
    ) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient(
            [
                create_page([1], next_page_info="p2"),
                create_page([2], next_page_info="p3"),
                create_page([3]),
            ]
        )

        result = create_tool(client, db, max_pages=2).sync_full(connection_id)

        connection = db.require_connection(connection_id)
        assert result.success is True
        assert result.truncated is True
        assert result.pages == 2
        assert connection.last_sync_at is None
        assert connection.total_orders_synced == 2


class TestIncrementalSync:
    def test_first_incremental_behaves_like_bounded_full(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient([create_page([1])])

        create_tool(client, db).sync_incremental(connection_id)

        assert client.calls[0]["created_after"] is None
        assert client.calls[0]["limit"] == 250

    def test_uses_later_of_watermark_and_latest_order(self, tmp_path: Path) -> None:
        # setup
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient(
            [OrderPage(orders=[create_raw_order(1, created_at="2024-03-05T09:00:00Z")])]
        )
        tool = create_tool(client, db)
        tool.sync_full(connection_id)
        db.mark_connection_synced(connection_id, datetime(2024, 3, 1))

        # act
        tool.sync_incremental(connection_id)

        # assert
        assert client.calls[-1]["created_after"] == datetime(2024, 3, 5, 9, 0, 0)
        assert client.calls[-1]["limit"] == 100

    def test_repeat_without_new_data_changes_nothing(self, tmp_path: Path) -> None:
        # setup
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient([create_page(range(1, 6))])
        tool = create_tool(client, db)
        first = tool.sync_incremental(connection_id)

        # act
        client.script(create_page(range(1, 6)))
        second = tool.sync_incremental(connection_id)

        # assert
        assert first.created == 5
        assert (second.created, second.updated) == (0, 0)
        assert second.processed == 5
        assert db.count_orders(connection_id) == 5
        assert db.require_connection(connection_id).total_orders_synced == 5
        assert client.calls[-1]["created_after"] == NOW

    def test_changed_upstream_order_is_updated(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient([create_page([1])])
        tool = create_tool(client, db)
        tool.sync_incremental(connection_id)

        changed = create_raw_order(1)
        changed["financial_status"] = "refunded"
        client.script(OrderPage(orders=[changed]))
        result = tool.sync_incremental(connection_id)

        assert (result.created, result.updated) == (0, 1)


class TestFailures:
    def test_rate_limit_backs_off_then_succeeds(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        sleeps: list[float] = []
        client = MockShopifyClient(
            [RateLimitedError("slow down", retry_after=5.0), create_page([1])]
        )

        result = create_tool(client, db, sleeps=sleeps).sync_full(connection_id)

        assert result.success is True
        assert sleeps == [5.0]
        assert len(client.calls) == 2

    def test_rate_limit_exhausted_reports_retry_after(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        sleeps: list[float] = []
        client = MockShopifyClient(
            [RateLimitedError("slow down", retry_after=2.0) for _ in range(4)]
        )

        result = create_tool(client, db, sleeps=sleeps).sync_full(connection_id)

        assert result.success is False
        assert result.phase is SyncPhase.FAILED
        assert result.error is not None
        assert result.error.kind == "rate_limited"
        assert result.error.retryable is True
        assert result.error.retry_after == 2.0
        assert sleeps == [2.0, 2.0, 2.0]

    def test_backoff_is_capped(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        sleeps: list[float] = []
        client = MockShopifyClient(
            [RateLimitedError("slow down", retry_after=600.0), create_page([1])]
        )

        create_tool(
            client, db, sleeps=sleeps, deadline_seconds=1000.0
        ).sync_full(connection_id)

        assert sleeps == [60.0]

    @pytest.mark.parametrize("retry_after", [float("nan"), float("inf"), -1.0])
    def test_unusable_retry_after_falls_back_to_default(
        self, tmp_path: Path, retry_after: float
    ) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        sleeps: list[float] = []
        client = MockShopifyClient(
            [RateLimitedError("slow down", retry_after=retry_after) for _ in range(4)]
        )

        result = create_tool(client, db, sleeps=sleeps).sync_full(connection_id)

        assert sleeps == [2.0, 2.0, 2.0]
        assert result.error is not None
        assert result.error.kind == "rate_limited"
        assert result.error.retry_after == 2.0

    def test_auth_error_marks_connection_for_reauth(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient([AuthError("revoked", status=401)])

        result = create_tool(client, db).sync_incremental(connection_id)

        assert result.error is not None
        assert result.error.kind == "auth"
        assert result.error.needs_reauth is True
        assert result.error.retryable is False
        assert db.require_connection(connection_id).needs_reauth is True
        assert len(client.calls) == 1

    def test_transport_error_is_retryable(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient([TransportError("bad gateway", status=502)])

        result = create_tool(client, db).sync_full(connection_id)

        assert result.error is not None
        assert result.error.kind == "transport"
        assert result.error.status == 502
        assert result.error.retryable is True
        assert db.require_connection(connection_id).last_sync_at is None

    def test_persistence_error_is_captured(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient([create_page([1])])
        tool = create_tool(client, db)

        with patch.object(db, "upsert_orders") as mock_upsert:
            mock_upsert.side_effect = PersistenceError("disk full")
            result = tool.sync_full(connection_id)

        assert result.error is not None
        assert result.error.kind == "persistence"
        assert result.error.retryable is True

    def test_deadline_aborts_with_sync_timeout(self, tmp_path: Path) -> None:
        # setup
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        clock = FakeClock()

        def slow_page() -> None:
            clock.now += 100.0

        client = MockShopifyClient(
            [
                create_page([1, 2], next_page_info="p2"),
                create_page([3], next_page_info="p3"),
            ],
            on_fetch=slow_page,
        )

        # act
        result = create_tool(
            client, db, clock=clock, deadline_seconds=180.0
        ).sync_full(connection_id)

        # assert
        assert result.success is False
        assert result.error is not None
        assert result.error.kind == "transport"
        assert result.error.message == "sync timeout"
        assert result.created == 2
        assert db.count_orders(connection_id) == 2

    def test_unexpected_client_error_is_captured(self, tmp_path: Path) -> None:
        # setup
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient(
            [
                create_page([1], next_page_info="p2"),
                ConnectionResetError(104, "reset by peer"),
            ]
        )

        # act
        result = create_tool(client, db).sync_full(connection_id)

        # assert
        assert result.success is False
        assert result.phase is SyncPhase.FAILED
        assert result.error is not None
        assert result.error.kind == "transport"
        assert result.error.retryable is True
        assert "reset by peer" in result.error.message
        assert result.created == 1
        assert db.require_connection(connection_id).last_sync_at is None

    def test_database_error_reading_state_is_captured(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        client = MockShopifyClient([create_page([1])])
        tool = create_tool(client, db)

        with patch.object(db, "latest_remote_created_at") as mock_latest:
            mock_latest.side_effect = OperationalError(
                "SELECT", {}, Exception("database is locked")
            )
            result = tool.sync_incremental(connection_id)

        assert result.error is not None
        assert result.error.kind == "persistence"
        assert result.phase is SyncPhase.FAILED
        assert client.calls == []

    def test_watermark_failure_does_not_fail_sync(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        tool = create_tool(MockShopifyClient([create_page([1])]), db)

        with patch.object(db, "mark_connection_synced") as mock_mark:
            mock_mark.side_effect = RuntimeError("lock timeout")
            result = tool.sync_full(connection_id)

        assert result.success is True
        assert db.count_orders(connection_id) == 1

    def test_unconnected_connection_is_reported(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)
        pending = db.create_connection()
        client = MockShopifyClient()

        result = create_tool(client, db).sync_full(pending.connection_id)

        assert result.error is not None
        assert result.error.kind == "not_connected"
        assert client.calls == []

    def test_unknown_connection_is_reported(self, tmp_path: Path) -> None:
        db = create_db(tmp_path)

        result = create_tool(MockShopifyClient(), db).sync_incremental("missing")

        assert result.error is not None
        assert "not found" in result.error.message

    def test_result_to_dict(self) -> None:
        result = SyncResult(success=True, processed=3, created=2, updated=1)

        data = result.to_dict()

        assert data["success"] is True
        assert data["phase"] == "idle"
        assert "error" not in data


class TestSingleFlightSync:
    def test_concurrent_triggers_run_one_pass(self, tmp_path: Path) -> None:
        # setup
        db = create_db(tmp_path)
        connection_id = create_connected(db)
        entered = threading.Event()
        release = threading.Event()

        def block() -> None:
            entered.set()
            release.wait(timeout=5)

        client = MockShopifyClient([create_page(range(1, 4))], on_fetch=block)
        flight: SingleFlight[SyncResult] = SingleFlight()
        tool = create_tool(client, db, single_flight=flight)
        results: list[SyncResult] = []

        def trigger() -> None:
            results.append(tool.sync_incremental(connection_id))

        # act
        first = threading.Thread(target=trigger)
        first.start()
        assert entered.wait(timeout=5)
        second = threading.Thread(target=trigger)
        second.start()
        deadline = time.monotonic() + 5
        while flight.followers(connection_id) < 1:
            if time.monotonic() > deadline:
                pytest.fail("second trigger never joined the in-flight sync")
            time.sleep(0.005)
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        # assert
        assert len(client.calls) == 1
        assert len(results) == 2
        assert results[0] is results[1]
        assert results[0].created == 3
        assert db.count_orders(connection_id) == 3
        assert db.require_connection(connection_id).total_orders_synced == 3
