from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import math
import time
from typing import Any

import loguru
from loguru import logger
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from vatpilot.adapters.clients.shopify import (
    DEFAULT_RETRY_AFTER_SECONDS,
    MAX_PAGE_SIZE,
    AuthError,
    OrderPage,
    RateLimitedError,
    ShopifyClient,
    ShopifyOrder,
    TransportError,
    to_order_record,
)
from vatpilot.adapters.db.facade import DB, PersistenceError, utcnow
from vatpilot.adapters.db.models import Connection
from vatpilot.core.config import AppConfig
from vatpilot.models.order import ClassifiedOrder
from vatpilot.tools.sync.single_flight import SingleFlight

INCREMENTAL_PAGE_SIZE = 100
MAX_BACKOFF_SECONDS = 60.0
SYNC_TIMEOUT_MESSAGE = "sync timeout"


class NotConnectedError(Exception):
    """The connection has no stored access credential."""


class SyncPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncError:
    """Structured failure cause carried on a SyncResult."""

    # auth, rate_limited, transport, persistence or not_connected
    kind: str
    message: str
    retryable: bool
    retry_after: float | None = None
    needs_reauth: bool = False
    status: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "retryAfter": self.retry_after,
            "needsReauth": self.needs_reauth,
            "status": self.status,
        }


@dataclass
class SyncResult:
    """Outcome of one sync pass over a connection."""

    success: bool
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    pages: int = 0
    phase: SyncPhase = SyncPhase.IDLE
    truncated: bool = False
    error: SyncError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "pages": self.pages,
            "phase": self.phase.value,
            "truncated": self.truncated,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


@dataclass
class _Progress:
    """Running counters for a sync pass."""

    phase: SyncPhase = SyncPhase.IDLE
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    pages: int = 0
    truncated: bool = False

    def result(self, error: SyncError | None = None) -> SyncResult:
        return SyncResult(
            success=error is None,
            processed=self.processed,
            created=self.created,
            updated=self.updated,
            failed=self.failed,
            pages=self.pages,
            phase=SyncPhase.FAILED if error else SyncPhase.DONE,
            truncated=self.truncated,
            error=error,
        )


class SyncToolLogger:
    """Handles all logging for SyncTool. Never logs access tokens."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(
        self, connection_id: str, mode: str, created_after: datetime | None
    ) -> None:
        floor = created_after.isoformat() if created_after else "none"
        self._logger.bind(
            connection_id=connection_id, mode=mode, created_after=floor
        ).info(
            "Starting {} sync for {} (created after: {})", mode, connection_id, floor
        )

    def joined_in_flight(self, connection_id: str) -> None:
        self._logger.bind(connection_id=connection_id).info(
            "Sync already running for {}, joined in-flight result", connection_id
        )

    def fetch_start(self, page_num: int, cursor: str | None) -> None:
        cursor_label = cursor or "initial"
        self._logger.bind(page=page_num, cursor=cursor_label).debug(
            "Fetching orders page {} (cursor: {})", page_num, cursor_label
        )

    def fetch_complete(self, page_num: int, order_count: int) -> None:
        self._logger.bind(page=page_num, count=order_count).info(
            "Fetched {} orders (page {})", order_count, page_num
        )

    def rate_limited(self, attempt: int, max_retries: int, delay: float) -> None:
        self._logger.bind(
            attempt=attempt, max_retries=max_retries, delay=delay
        ).warning(
            "Rate limited by Shopify, sleeping {}s (attempt {}/{})",
            delay,
            attempt,
            max_retries,
        )

    def record_skipped(self, remote_id: object, reason: str) -> None:
        self._logger.bind(remote_order_id=remote_id).warning(
            "Skipping malformed order {}: {}", remote_id, reason
        )

    def persistence_complete(
        self, created: int, updated: int, unchanged: int, failed: int
    ) -> None:
        self._logger.bind(
            created=created, updated=updated, unchanged=unchanged, failed=failed
        ).info(
            "Persisted orders: {} created, {} updated, {} unchanged, {} failed",
            created,
            updated,
            unchanged,
            failed,
        )

    def page_limit_reached(self, max_pages: int) -> None:
        self._logger.bind(max_pages=max_pages).warning(
            "Stopped after {} pages; more orders remain upstream", max_pages
        )

    def state_update_failed(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Could not update sync state for {}: {}", connection_id, error
        )

    def sync_complete(self, connection_id: str, result: SyncResult) -> None:
        self._logger.bind(connection_id=connection_id, **result.to_dict()).info(
            "Sync complete for {}: {} processed, {} created, {} updated ({} pages)",
            connection_id,
            result.processed,
            result.created,
            result.updated,
            result.pages,
        )

    def unexpected_error(
        self, connection_id: str, phase: SyncPhase, error: Exception
    ) -> None:
        self._logger.bind(connection_id=connection_id, phase=phase.value).exception(
            "Unexpected error during {} for {}: {!r}", phase.value, connection_id, error
        )

    def sync_failed(self, connection_id: str, error: SyncError) -> None:
        self._logger.bind(connection_id=connection_id, kind=error.kind).error(
            "Sync failed for {} ({}): {}", connection_id, error.kind, error.message
        )


class SyncTool:
    """Pulls orders from a connected store and upserts them idempotently.

    One SyncTool serves every connection; passes for the same connection are
    collapsed by a SingleFlight guard so they never run twice concurrently.
    """

    def __init__(
        self,
        client: ShopifyClient,
        db: DB,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
        deadline_seconds: float = 180.0,
        max_pages: int = 40,
        max_rate_limit_retries: int = 3,
        single_flight: SingleFlight[SyncResult] | None = None,
        sync_logger: SyncToolLogger | None = None,
    ) -> None:
        """
        Initialize the sync tool.

        Args:
            client: Shopify client used to fetch order pages
            db: Database facade for persistence
            clock: Monotonic clock used for the overall deadline
            sleep: Called with the backoff delay on rate limiting
            now: Wall clock for sync watermarks (naive UTC)
            deadline_seconds: Overall budget for one sync pass
            max_pages: Upper bound on pages fetched per pass
            max_rate_limit_retries: Retries of a single page after a 429
            single_flight: Shared guard; a private one is created if omitted
        """
        self._client = client
        self._db = db
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self._deadline_seconds = deadline_seconds
        self._max_pages = max_pages
        self._max_rate_limit_retries = max_rate_limit_retries
        self._single_flight = single_flight or SingleFlight()
        self._logger = sync_logger or SyncToolLogger()

    @classmethod
    def from_config(cls, config: AppConfig, client: ShopifyClient, db: DB) -> SyncTool:
        return cls(
            client,
            db,
            deadline_seconds=config.sync_deadline_seconds,
            max_pages=config.sync_max_pages,
        )

    def sync_full(self, connection: Connection | str) -> SyncResult:
        """Pull every order with no creation-time floor.

        Shares the per-connection single-flight key with sync_incremental: a
        full trigger arriving while an incremental pass is running joins that
        pass and receives its result.
        """
        return self._run_single_flight(_connection_id(connection), full=True)

    def sync_incremental(self, connection: Connection | str) -> SyncResult:
        """Pull only orders created after the connection's watermark."""
        return self._run_single_flight(_connection_id(connection), full=False)

    def sync(self, connection: Connection | str, *, full: bool = False) -> SyncResult:
        if full:
            return self.sync_full(connection)
        return self.sync_incremental(connection)

    def _run_single_flight(self, connection_id: str, *, full: bool) -> SyncResult:
        result, shared = self._single_flight.do(
            connection_id, lambda: self._run(connection_id, full=full)
        )
        if shared:
            self._logger.joined_in_flight(connection_id)
        return result

    def _run(self, connection_id: str, *, full: bool) -> SyncResult:
        progress = _Progress()
        deadline = self._clock() + self._deadline_seconds

        try:
            connection = self._require_connected(connection_id)
            created_after = None if full else self._watermark(connection)
        except NotConnectedError as e:
            return self._fail(
                connection_id,
                progress,
                SyncError(kind="not_connected", message=str(e), retryable=False),
            )
        except SQLAlchemyError as e:
            return self._fail(
                connection_id,
                progress,
                SyncError(
                    kind="persistence",
                    message=f"Could not read sync state: {e}",
                    retryable=True,
                ),
            )

        page_size = (
            INCREMENTAL_PAGE_SIZE if created_after is not None else MAX_PAGE_SIZE
        )
        self._logger.sync_start(
            connection_id, "full" if full else "incremental", created_after
        )

        try:
            self._pull(connection, progress, deadline, page_size, created_after)
        except AuthError as e:
            self._mark_needs_reauth(connection_id)
            return self._fail(
                connection_id,
                progress,
                SyncError(
                    kind="auth",
                    message=str(e),
                    retryable=False,
                    needs_reauth=True,
                    status=e.status,
                ),
            )
        except RateLimitedError as e:
            return self._fail(
                connection_id,
                progress,
                SyncError(
                    kind="rate_limited",
                    message=str(e),
                    retryable=True,
                    retry_after=_backoff_delay(e.retry_after),
                    status=e.status,
                ),
            )
        except TransportError as e:
            return self._fail(
                connection_id,
                progress,
                SyncError(
                    kind="transport", message=str(e), retryable=True, status=e.status
                ),
            )
        except (PersistenceError, SQLAlchemyError) as e:
            return self._fail(
                connection_id,
                progress,
                SyncError(kind="persistence", message=str(e), retryable=True),
            )
        except Exception as e:  # noqa: BLE001 - reported in the SyncResult
            self._logger.unexpected_error(connection_id, progress.phase, e)
            return self._fail(
                connection_id,
                progress,
                SyncError(
                    kind="transport",
                    message=f"Unexpected sync failure: {e!r}",
                    retryable=True,
                ),
            )

        try:
            self._db.mark_connection_synced(
                connection_id, self._now(), advance_watermark=not progress.truncated
            )
        except Exception as e:  # noqa: BLE001 - watermark update is best-effort
            self._logger.state_update_failed(connection_id, e)

        result = progress.result()
        self._logger.sync_complete(connection_id, result)
        return result

    def _require_connected(self, connection_id: str) -> Connection:
        connection = self._db.get_connection(connection_id)
        if connection is None:
            raise NotConnectedError(f"Connection {connection_id} not found")
        if not connection.is_connected:
            raise NotConnectedError(f"Connection {connection_id} is not connected")
        return connection

    def _watermark(self, connection: Connection) -> datetime | None:
        candidates = [
            connection.last_sync_at,
            self._db.latest_remote_created_at(connection.connection_id),
        ]
        known = [c for c in candidates if c is not None]
        return max(known) if known else None

    def _pull(
        self,
        connection: Connection,
        progress: _Progress,
        deadline: float,
        page_size: int,
        created_after: datetime | None,
    ) -> None:
        """Fetch, transform and persist pages in the order the API returns them."""
        page_info: str | None = None
        while True:
            if progress.pages >= self._max_pages:
                progress.truncated = True
                self._logger.page_limit_reached(self._max_pages)
                return

            self._check_deadline(deadline)
            progress.phase = SyncPhase.FETCHING
            self._logger.fetch_start(progress.pages + 1, page_info)
            page = self._fetch_with_backoff(
                connection, deadline, page_size, created_after, page_info
            )
            progress.pages += 1
            self._logger.fetch_complete(progress.pages, len(page.orders))

            progress.phase = SyncPhase.TRANSFORMING
            classified = self._transform(page, progress)

            self._check_deadline(deadline)
            progress.phase = SyncPhase.PERSISTING
            outcome = self._db.upsert_orders(
                connection.connection_id, classified, synced_at=self._now()
            )
            progress.processed += outcome.processed
            progress.created += outcome.created
            progress.updated += outcome.updated
            progress.failed += outcome.failed
            self._logger.persistence_complete(
                outcome.created, outcome.updated, outcome.unchanged, outcome.failed
            )

            if not page.next_page_info:
                return
            page_info = page.next_page_info

    def _fetch_with_backoff(
        self,
        connection: Connection,
        deadline: float,
        page_size: int,
        created_after: datetime | None,
        page_info: str | None,
    ) -> OrderPage:
        attempt = 0
        while True:
            try:
                return self._client.fetch_orders(
                    connection.shop_domain or "",
                    connection.access_token or "",
                    limit=page_size,
                    created_after=created_after,
                    page_info=page_info,
                )
            except RateLimitedError as e:
                attempt += 1
                if attempt > self._max_rate_limit_retries:
                    raise
                delay = _backoff_delay(e.retry_after)
                if self._clock() + delay > deadline:
                    raise TransportError(SYNC_TIMEOUT_MESSAGE) from e
                self._logger.rate_limited(attempt, self._max_rate_limit_retries, delay)
                self._sleep(delay)

    def _transform(self, page: OrderPage, progress: _Progress) -> list[ClassifiedOrder]:
        """Map raw orders to classified records, skipping malformed ones."""
        classified: list[ClassifiedOrder] = []
        for raw in page.orders:
            try:
                record = to_order_record(ShopifyOrder.parse(raw))
            except (ValidationError, ValueError) as e:
                remote_id = raw.get("id")
                progress.failed += 1
                self._logger.record_skipped(remote_id, e.__class__.__name__)
                continue
            classified.append(ClassifiedOrder.from_record(record))
        return classified

    def _check_deadline(self, deadline: float) -> None:
        if self._clock() > deadline:
            raise TransportError(SYNC_TIMEOUT_MESSAGE)

    def _mark_needs_reauth(self, connection_id: str) -> None:
        try:
            self._db.mark_connection_needs_reauth(connection_id)
        except Exception as e:  # noqa: BLE001 - the auth failure is what we report
            self._logger.state_update_failed(connection_id, e)

    def _fail(
        self, connection_id: str, progress: _Progress, error: SyncError
    ) -> SyncResult:
        self._logger.sync_failed(connection_id, error)
        return progress.result(error)


def _backoff_delay(retry_after: float) -> float:
    if not math.isfinite(retry_after) or retry_after < 0:
        return DEFAULT_RETRY_AFTER_SECONDS
    return min(retry_after, MAX_BACKOFF_SECONDS)


def _connection_id(connection: Connection | str) -> str:
    if isinstance(connection, Connection):
        return connection.connection_id
    return connection
