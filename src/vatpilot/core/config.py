from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import os
from typing import Literal

HostScheme = Literal["http", "https"]
VatConventionName = Literal["inclusive", "exclusive"]

DEFAULT_SCOPES = ("read_orders", "read_assigned_fulfillment_orders")


class ConfigurationError(Exception):
    """Missing or invalid process configuration."""


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Process configuration loaded once at startup."""

    shopify_api_key: str
    shopify_api_secret: str
    host_name: str = "localhost:5000"
    host_scheme: HostScheme = "http"
    frontend_url: str = "http://localhost:5173"
    database_url: str = "sqlite:///vatpilot.db"
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    vat_convention: VatConventionName = "inclusive"
    default_vat_rate: Decimal = Decimal("20")
    http_timeout_seconds: float = 30.0
    sync_deadline_seconds: float = 180.0
    sync_max_pages: int = 40
    log_level: str = "INFO"

    @property
    def callback_url(self) -> str:
        return f"{self.host_scheme}://{self.host_name}/api/shopify/callback"

    def require_client_credentials(self) -> tuple[str, str]:
        """Return (client_id, client_secret) or fail fast when either is absent."""
        missing = [
            name
            for name, value in (
                ("SHOPIFY_API_KEY", self.shopify_api_key),
                ("SHOPIFY_API_SECRET", self.shopify_api_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing Shopify credentials: {', '.join(missing)}"
            )
        return self.shopify_api_key, self.shopify_api_secret


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _positive_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def _positive_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def load_app_config_from_env() -> AppConfig:
    """Load config from env and validate it.

    Shopify client credentials may be empty here. They are checked when a
    handshake is initiated so that sync and report commands still work
    without them.
    """
    host_scheme = _env("HOST_SCHEME", "http").lower()
    if host_scheme not in {"http", "https"}:
        raise ConfigurationError("HOST_SCHEME must be one of: http, https")

    convention = _env("VATPILOT_VAT_CONVENTION", "inclusive").lower()
    if convention not in {"inclusive", "exclusive"}:
        raise ConfigurationError(
            "VATPILOT_VAT_CONVENTION must be one of: inclusive, exclusive"
        )

    raw_rate = _env("VATPILOT_DEFAULT_VAT_RATE", "20")
    try:
        default_rate = Decimal(raw_rate)
    except InvalidOperation as e:
        raise ConfigurationError(
            f"VATPILOT_DEFAULT_VAT_RATE must be a percentage, got {raw_rate!r}"
        ) from e
    if not default_rate.is_finite() or default_rate < 0:
        raise ConfigurationError(
            f"VATPILOT_DEFAULT_VAT_RATE must be a percentage, got {raw_rate!r}"
        )

    scopes_raw = _env("SHOPIFY_SCOPES")
    scopes = (
        tuple(s.strip() for s in scopes_raw.split(",") if s.strip())
        if scopes_raw
        else DEFAULT_SCOPES
    )

    return AppConfig(
        shopify_api_key=_env("SHOPIFY_API_KEY"),
        shopify_api_secret=_env("SHOPIFY_API_SECRET"),
        host_name=_env("HOST_NAME", "localhost:5000"),
        host_scheme=host_scheme,  # type: ignore[arg-type]
        frontend_url=_env("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        database_url=_env("DATABASE_URL", "sqlite:///vatpilot.db"),
        scopes=scopes,
        vat_convention=convention,  # type: ignore[arg-type]
        default_vat_rate=default_rate,
        http_timeout_seconds=_positive_float("VATPILOT_HTTP_TIMEOUT_SECONDS", 30.0),
        sync_deadline_seconds=_positive_float("VATPILOT_SYNC_DEADLINE_SECONDS", 180.0),
        sync_max_pages=_positive_int("VATPILOT_SYNC_MAX_PAGES", 40),
        log_level=_env("VATPILOT_LOG_LEVEL", "INFO").upper(),
    )
