from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
import http.client
import json
import math
import re
from typing import Any, Literal, Self, cast
import urllib.error
import urllib.parse
import urllib.request

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vatpilot.compliance.classifier import to_decimal
from vatpilot.compliance.rates import normalize_country_code
from vatpilot.core.config import AppConfig
from vatpilot.models.order import (
    FINANCIAL_STATUSES,
    FULFILLMENT_STATUSES,
    LineItemRecord,
    OrderRecord,
    ShippingAddressRecord,
)

SHOPIFY_API_VERSION = "2024-10"
MAX_PAGE_SIZE = 250
DEFAULT_RETRY_AFTER_SECONDS = 2.0

OrderStatus = Literal["open", "closed", "cancelled", "any"]

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="?next"?')


class ShopifyClientError(Exception):
    """Base error for Shopify client failures."""

    def __init__(
        self, message: str, *, status: int | None = None, body: str = ""
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class TokenExchangeError(ShopifyClientError):
    """The authorization code could not be exchanged for an access token."""


class AuthError(ShopifyClientError):
    """The access token was rejected (revoked or missing scope)."""


class RateLimitedError(ShopifyClientError):
    """Shopify asked us to slow down."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: float = DEFAULT_RETRY_AFTER_SECONDS,
        status: int | None = 429,
        body: str = "",
    ) -> None:
        super().__init__(message, status=status, body=body)
        self.retry_after = retry_after


class TransportError(ShopifyClientError):
    """Network failure or unexpected non-2xx response."""


class ShopifyBaseModel(BaseModel):
    """Shared base for Shopify transfer objects with a short parse alias."""

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class ShopifyAddress(ShopifyBaseModel):
    country: str | None = None
    country_code: str | None = None
    province: str | None = None
    city: str | None = None
    zip: str | None = None

    def to_record(self) -> ShippingAddressRecord:
        return {
            "country": self.country,
            "country_code": normalize_country_code(self.country_code),
            "province": self.province,
            "city": self.city,
            "zip": self.zip,
        }


class ShopifyOriginLocation(ShopifyBaseModel):
    country_code: str | None = None


class ShopifyCustomer(ShopifyBaseModel):
    id: int | str | None = None


class ShopifyLineItem(ShopifyBaseModel):
    product_id: int | str | None = None
    variant_id: int | str | None = None
    title: str | None = None
    quantity: int = 0
    price: str | float = "0"
    vendor: str | None = None
    origin_location: ShopifyOriginLocation | None = None

    def to_record(self) -> LineItemRecord:
        return {
            "product_id": _str_or_none(self.product_id),
            "variant_id": _str_or_none(self.variant_id),
            "title": self.title,
            "quantity": max(self.quantity, 0),
            "price_cents": max(to_cents(self.price), 0),
            "vendor": self.vendor,
            "country_of_origin": (
                normalize_country_code(self.origin_location.country_code)
                if self.origin_location
                else None
            ),
        }


class ShopifyOrder(ShopifyBaseModel):
    """Order as returned by the Admin REST API at SHOPIFY_API_VERSION."""

    id: int | str
    name: str | None = None
    order_number: int | str | None = None
    total_price: str | float
    currency: str | None = None
    email: str | None = None
    contact_email: str | None = None
    customer: ShopifyCustomer | None = None
    fulfillment_status: str | None = None
    financial_status: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    line_items: list[ShopifyLineItem] = Field(default_factory=list)
    shipping_address: ShopifyAddress | None = None
    billing_address: ShopifyAddress | None = None


class AccessTokenResponse(ShopifyBaseModel):
    access_token: str
    scope: str = ""


@dataclass
class OrderPage:
    """One page of the orders listing."""

    orders: list[dict[str, Any]]
    next_page_info: str | None = None


def _str_or_none(value: object) -> str | None:
    return None if value is None else str(value)


def to_cents(value: object) -> int:
    """Convert a decimal money string to integer cents (half-up).

    Raises:
        ValueError: If the value is not a finite number.
    """
    amount = to_decimal(value)
    if amount is None:
        raise ValueError(f"Not a monetary amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_order_record(order: ShopifyOrder) -> OrderRecord:
    """Map a Shopify order transfer object onto the internal order record.

    Raises:
        ValueError: If the total price is not numeric or negative.
    """
    total_cents = to_cents(order.total_price)
    if total_cents < 0:
        raise ValueError(f"Negative total price for order {order.id}")

    shipping = order.shipping_address
    billing = order.billing_address
    destination = normalize_country_code(
        (shipping.country_code if shipping else None)
        or (billing.country_code if billing else None)
    )

    fulfillment = order.fulfillment_status or "null"
    if fulfillment not in FULFILLMENT_STATUSES:
        fulfillment = "null"
    financial = order.financial_status or "pending"
    if financial not in FINANCIAL_STATUSES:
        financial = "pending"

    created_at = to_naive_utc(order.created_at)
    email = order.email or order.contact_email

    return OrderRecord(
        remote_order_id=str(order.id),
        order_number=order.name or _str_or_none(order.order_number) or str(order.id),
        total_price_cents=total_cents,
        currency=(order.currency or "USD").upper()[:3],
        destination_country=destination,
        customer_email=email.strip().lower() if email else None,
        customer_id=(
            _str_or_none(order.customer.id) if order.customer is not None else None
        ),
        fulfillment_status=fulfillment,
        financial_status=financial,
        remote_created_at=created_at,
        remote_updated_at=(
            to_naive_utc(order.updated_at) if order.updated_at else created_at
        ),
        line_items=[item.to_record() for item in order.line_items],
        shipping_address=shipping.to_record() if shipping else None,
    )


def normalize_shop_domain(shop: str) -> str:
    """Lowercase a shop domain and append the myshopify suffix when absent."""
    cleaned = shop.strip().lower()
    cleaned = re.sub(r"^https?://", "", cleaned).split("/", 1)[0]
    if not cleaned.endswith(".myshopify.com"):
        cleaned = f"{cleaned}.myshopify.com"
    return cleaned


def parse_next_page_info(link_header: str | None) -> str | None:
    """Extract the page_info cursor from a Link header's rel="next" entry."""
    if not link_header:
        return None
    for part in link_header.split(","):
        match = _NEXT_LINK_RE.search(part)
        if not match:
            continue
        query = urllib.parse.urlparse(match.group(1)).query
        values = urllib.parse.parse_qs(query).get("page_info")
        if values:
            return values[0]
    return None


def _parse_retry_after(value: str | None) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        seconds = float(value)
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
    if not math.isfinite(seconds):
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(seconds, 0.0)


@dataclass
class _Response:
    status: int
    body: str
    headers: dict[str, str]


class ShopifyClient:
    """Explicit Shopify Admin API client, built once per process."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        api_version: str = SHOPIFY_API_VERSION,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._api_version = api_version
        self._timeout = timeout_seconds

    @classmethod
    def from_config(cls, config: AppConfig) -> ShopifyClient:
        return cls(
            client_id=config.shopify_api_key,
            client_secret=config.shopify_api_secret,
            timeout_seconds=config.http_timeout_seconds,
        )

    @property
    def api_version(self) -> str:
        return self._api_version

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> _Response:
        """Issue one HTTP request and return status, body and headers.

        Non-2xx responses are returned rather than raised so callers can map
        status codes onto their own error types.

        Raises:
            TransportError: On network failures, timeouts and bodies that are
                not UTF-8.
        """
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req_headers = {"Accept": "application/json", **(headers or {})}
        if data is not None:
            req_headers["Content-Type"] = "application/json"
        req = urllib.request.Request(  # noqa: S310
            url, data=data, headers=req_headers, method=method
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout
            ) as resp:
                status = resp.status
                raw = resp.read()
                resp_headers = dict(resp.headers.items())
        except urllib.error.HTTPError as e:
            try:
                error_body = e.read().decode("utf-8", "ignore")
            except (OSError, http.client.HTTPException):
                error_body = ""
            return _Response(
                status=e.code,
                body=error_body,
                headers=dict(e.headers.items()) if e.headers else {},
            )
        except TimeoutError as e:
            raise TransportError(f"Timed out calling Shopify: {url}") from e
        except urllib.error.URLError as e:
            raise TransportError(f"Network error calling Shopify: {e.reason}") from e
        except (OSError, http.client.HTTPException) as e:
            raise TransportError(f"Connection to Shopify failed: {e!r}") from e

        try:
            body = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TransportError(
                "Shopify response is not valid UTF-8",
                status=status,
                body=raw.decode("utf-8", "replace"),
            ) from e
        return _Response(status=status, body=body, headers=resp_headers)

    @staticmethod
    def _parse_json(
        body: str, *, error_cls: type[ShopifyClientError], status: int
    ) -> dict[str, Any]:
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            raise error_cls(
                f"Failed to parse Shopify response as JSON: {e}",
                status=status,
                body=body,
            ) from e
        if not isinstance(parsed, dict):
            raise error_cls(
                "Unexpected Shopify response shape", status=status, body=body
            )
        return cast(dict[str, Any], parsed)

    # High-level APIs -----------------------------------------------------

    def exchange_code(self, shop_domain: str, code: str) -> AccessTokenResponse:
        """Exchange a one-time authorization code for an offline access token."""
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "code": code,
        }
        try:
            resp = self._request("POST", url, payload=payload)
        except TransportError as e:
            raise TokenExchangeError(str(e), status=e.status, body=e.body) from e

        if not 200 <= resp.status < 300:
            raise TokenExchangeError(
                f"Shopify token exchange failed ({resp.status})",
                status=resp.status,
                body=resp.body,
            )
        data = self._parse_json(
            resp.body, error_cls=TokenExchangeError, status=resp.status
        )
        if not data.get("access_token"):
            raise TokenExchangeError(
                "Shopify token response has no access_token",
                status=resp.status,
                body=resp.body,
            )
        try:
            return AccessTokenResponse.parse(data)
        except ValidationError as e:
            raise TokenExchangeError(
                "Shopify token response has malformed credential fields",
                status=resp.status,
                body=resp.body,
            ) from e

    def fetch_orders(
        self,
        shop_domain: str,
        access_token: str,
        *,
        limit: int = 50,
        created_after: datetime | None = None,
        status: OrderStatus = "any",
        page_info: str | None = None,
    ) -> OrderPage:
        """Fetch a single page of orders. Never retries.

        Raises:
            AuthError: On 401/403.
            RateLimitedError: On 429, carrying the Retry-After delay.
            TransportError: On any other failure.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        params: dict[str, str] = {"limit": str(limit)}
        if page_info:
            # Cursor pages reject every filter except limit.
            params["page_info"] = page_info
        else:
            params["status"] = status
            if created_after is not None:
                params["created_at_min"] = (
                    to_naive_utc(created_after).replace(tzinfo=UTC).isoformat()
                )

        url = (
            f"https://{shop_domain}/admin/api/{self._api_version}/orders.json?"
            + urllib.parse.urlencode(params)
        )
        resp = self._request(
            "GET", url, headers={"X-Shopify-Access-Token": access_token}
        )

        if resp.status in (401, 403):
            raise AuthError(
                f"Shopify rejected the access token ({resp.status})",
                status=resp.status,
                body=resp.body,
            )
        if resp.status == 429:
            retry_after = _parse_retry_after(_header(resp.headers, "Retry-After"))
            raise RateLimitedError(
                f"Shopify rate limit hit, retry after {retry_after}s",
                retry_after=retry_after,
                body=resp.body,
            )
        if not 200 <= resp.status < 300:
            raise TransportError(
                f"Shopify orders request failed ({resp.status})",
                status=resp.status,
                body=resp.body,
            )

        data = self._parse_json(resp.body, error_cls=TransportError, status=resp.status)
        orders = data.get("orders") or []
        if not isinstance(orders, list):
            raise TransportError(
                "Shopify orders payload is not a list",
                status=resp.status,
                body=resp.body,
            )
        return OrderPage(
            orders=[o for o in orders if isinstance(o, dict)],
            next_page_info=parse_next_page_info(_header(resp.headers, "Link")),
        )


def _header(headers: dict[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
