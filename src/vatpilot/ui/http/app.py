"""HTTP surface: OAuth handshake, sync trigger and IOSS report download."""

from __future__ import annotations

from datetime import date
import math
import sys
from typing import Any
import urllib.parse

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from vatpilot.adapters.clients.shopify import ShopifyClient, ShopifyClientError
from vatpilot.adapters.clients.shopify_oauth import (
    AuthorizationError,
    InvalidShopDomainError,
    ShopifyOAuth,
)
from vatpilot.adapters.db.facade import DB, ConnectionNotFoundError
from vatpilot.core.config import AppConfig, ConfigurationError, load_app_config_from_env
from vatpilot.jobs.report.runner import ReportRunner
from vatpilot.tools.sync.sync_tool import SyncResult, SyncTool

# SyncError.kind -> HTTP status for a failed sync
_SYNC_ERROR_STATUS = {
    "auth": 401,
    "rate_limited": 429,
    "transport": 502,
    "persistence": 503,
    "not_connected": 400,
}


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connection_id: str = Field(alias="connectionId", min_length=1)
    full: bool = False


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


def _parse_date(value: str | None, name: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an ISO date (YYYY-MM-DD)") from e


def _sync_response(result: SyncResult) -> JSONResponse:
    body = result.to_dict()
    if result.success or result.error is None:
        return JSONResponse(body)
    headers = {}
    retry_after = result.error.retry_after
    if retry_after is not None and math.isfinite(retry_after):
        headers["Retry-After"] = str(math.ceil(retry_after))
    status = _SYNC_ERROR_STATUS.get(result.error.kind, 500)
    return JSONResponse(body, status_code=status, headers=headers)


def create_app(
    config: AppConfig,
    db: DB,
    client: ShopifyClient,
    *,
    sync_tool: SyncTool | None = None,
    oauth: ShopifyOAuth | None = None,
    report_runner: ReportRunner | None = None,
) -> FastAPI:
    """Build the FastAPI application around explicitly constructed services."""
    sync_tool = sync_tool or SyncTool.from_config(config, client, db)
    oauth = oauth or ShopifyOAuth(config, client)
    report_runner = report_runner or ReportRunner.from_config(config, db)

    app = FastAPI(title="VATpilot")

    def dashboard_redirect(**params: str) -> RedirectResponse:
        query = urllib.parse.urlencode(params)
        return RedirectResponse(
            f"{config.frontend_url}/dashboard?{query}", status_code=302
        )

    def start_authorization(shop: str | None, connection_id: str | None) -> Response:
        if not shop:
            return _error(400, "shop parameter is required")
        try:
            url = oauth.begin_authorization(shop, connection_id or None)
        except ConfigurationError as e:
            logger.error("Cannot start Shopify authorization: {}", e)
            return _error(500, str(e))
        except InvalidShopDomainError as e:
            return _error(400, str(e))
        return RedirectResponse(url, status_code=302)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/shopify/auth")
    def shopify_auth(
        shop: str | None = None, connectionId: str | None = None  # noqa: N803
    ) -> Response:
        return start_authorization(shop, connectionId)

    @app.get("/authorize")
    def authorize(
        store: str | None = None, connectionId: str | None = None  # noqa: N803
    ) -> Response:
        return start_authorization(store, connectionId)

    @app.get("/api/shopify/callback")
    def shopify_callback(
        request: Request, background_tasks: BackgroundTasks
    ) -> RedirectResponse:
        params = dict(request.query_params)
        try:
            result = oauth.complete_authorization(params)
        except (AuthorizationError, ShopifyClientError, ConfigurationError) as e:
            return dashboard_redirect(status="error", message=str(e))

        try:
            connection = db.save_connection_credentials(
                shop_domain=result.shop_domain,
                access_token=result.access_token,
                scope=result.scope,
                connection_id=result.pending_connection_id,
            )
        except SQLAlchemyError as e:
            logger.bind(shop=result.shop_domain).exception(
                "Could not save credentials for {}: {}", result.shop_domain, e
            )
            return dashboard_redirect(
                status="error", message="Could not save the store connection"
            )
        logger.bind(connection_id=connection.connection_id).info(
            "Connected {} as {}", result.shop_domain, connection.connection_id
        )
        background_tasks.add_task(sync_tool.sync_full, connection.connection_id)
        return dashboard_redirect(
            status="connected", connectionId=connection.connection_id
        )

    @app.delete("/api/shopify/disconnect/{connection_id}")
    def shopify_disconnect(connection_id: str) -> Response:
        try:
            connection = db.disconnect_connection(connection_id)
        except ConnectionNotFoundError as e:
            return _error(404, str(e))
        return JSONResponse(
            {"success": True, "connection": connection.to_public_dict()}
        )

    @app.get("/api/connections/{connection_id}")
    def connection_status(connection_id: str) -> Response:
        connection = db.get_connection(connection_id)
        if connection is None:
            return _error(404, f"Connection {connection_id} not found")
        return JSONResponse(
            {"connected": connection.is_connected, **connection.to_public_dict()}
        )

    @app.post("/api/orders/sync")
    def orders_sync(body: SyncRequest) -> Response:
        connection = db.get_connection(body.connection_id)
        if connection is None:
            return _error(404, f"Connection {body.connection_id} not found")
        if not connection.is_connected:
            return _error(400, "No Shopify store connected")
        result = sync_tool.sync(connection.connection_id, full=body.full)
        return _sync_response(result)

    @app.get("/api/orders/summary")
    def orders_summary(
        connectionId: str | None = None,  # noqa: N803
        dateFrom: str | None = None,  # noqa: N803
        dateTo: str | None = None,  # noqa: N803
    ) -> Response:
        if not connectionId:
            return _error(400, "connectionId parameter is required")
        try:
            summary = report_runner.summary(
                connectionId,
                _parse_date(dateFrom, "dateFrom"),
                _parse_date(dateTo, "dateTo"),
            )
        except ConnectionNotFoundError as e:
            return _error(404, str(e))
        except ValueError as e:
            return _error(400, str(e))
        connection = db.require_connection(connectionId)
        return JSONResponse(
            {
                **summary.to_dict(),
                "shop": {
                    "domain": connection.shop_domain,
                    "lastSync": connection.to_public_dict()["lastSync"],
                    "totalSynced": connection.total_orders_synced,
                },
            }
        )

    @app.get("/api/report")
    def report(
        connectionId: str | None = None,  # noqa: N803
        dateFrom: str | None = None,  # noqa: N803
        dateTo: str | None = None,  # noqa: N803
    ) -> Response:
        if not connectionId:
            return _error(400, "connectionId parameter is required")
        try:
            artifact = report_runner.generate(
                connectionId,
                _parse_date(dateFrom, "dateFrom"),
                _parse_date(dateTo, "dateTo"),
            )
        except ConnectionNotFoundError as e:
            return _error(404, str(e))
        except ValueError as e:
            return _error(400, str(e))
        return Response(
            content=artifact.content.encode("utf-8"),
            media_type="text/csv; charset=utf-8",
            headers={
                "Content-Disposition": f'attachment; filename="{artifact.filename}"',
                "X-Report-Type": artifact.report_type,
            },
        )

    return app


def configure_logging(level: str) -> None:
    """Single stderr sink at the configured level."""
    logger.remove()
    logger.add(sys.stderr, level=level)


def build_app_from_env() -> tuple[FastAPI, AppConfig]:
    load_dotenv()
    config = load_app_config_from_env()
    configure_logging(config.log_level)
    db = DB(config.database_url)
    db.create_schema()
    client = ShopifyClient.from_config(config)
    return create_app(config, db, client), config


def main(host: str = "0.0.0.0", port: int = 5000) -> None:  # noqa: S104
    """Run the HTTP server."""
    import uvicorn

    app, _ = build_app_from_env()
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
