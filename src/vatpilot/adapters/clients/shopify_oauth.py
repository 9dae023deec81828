"""OAuth authorization-code handshake with a merchant's Shopify store."""

from __future__ import annotations

import base64
import binascii
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
import hashlib
import hmac
import json
import re
import secrets
import threading
import time
from typing import Any
import urllib.parse

import loguru
from loguru import logger

from vatpilot.adapters.clients.shopify import (
    ShopifyClient,
    TokenExchangeError,
    normalize_shop_domain,
)
from vatpilot.core.config import AppConfig

STATE_TTL_MS = 10 * 60 * 1000
# Tolerated clock skew for states stamped slightly in the future.
STATE_FUTURE_SKEW_MS = 60 * 1000
REQUIRED_CALLBACK_PARAMS = ("code", "shop", "state", "hmac")

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


class AuthorizationError(Exception):
    """Base error for handshake integrity failures."""


class MissingParameterError(AuthorizationError):
    """The callback lacks one of code, shop, state or hmac."""


class InvalidStateError(AuthorizationError):
    """The state token is malformed, forged or already consumed."""


class ExpiredStateError(AuthorizationError):
    """The state token is older than STATE_TTL_MS."""


class SignatureMismatchError(AuthorizationError):
    """The callback's hmac does not match our recomputed signature."""


class InvalidShopDomainError(AuthorizationError):
    """The shop is not a *.myshopify.com domain."""


@dataclass(frozen=True, slots=True)
class AuthorizationState:
    nonce: str
    connection_id: str | None
    issued_at_ms: int


@dataclass(frozen=True, slots=True)
class AuthorizationResult:
    """Credentials to persist into a Connection."""

    shop_domain: str
    access_token: str
    scope: str
    pending_connection_id: str | None

    def __repr__(self) -> str:
        return (
            f"AuthorizationResult(shop_domain={self.shop_domain!r}, "
            f"scope={self.scope!r}, pending_connection_id="
            f"{self.pending_connection_id!r})"
        )


class OAuthLogger:
    """Handles all logging for ShopifyOAuth. Never logs secrets."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def authorization_started(self, shop: str, connection_id: str | None) -> None:
        self._logger.bind(shop=shop, connection_id=connection_id).info(
            "Starting Shopify authorization for {}", shop
        )

    def callback_rejected(self, shop: str | None, reason: str) -> None:
        self._logger.bind(shop=shop, reason=reason).warning(
            "Rejected Shopify callback for {}: {}", shop or "<unknown>", reason
        )

    def token_exchanged(self, shop: str, scope: str) -> None:
        self._logger.bind(shop=shop, scope=scope).info(
            "Exchanged authorization code for {} (scope: {})", shop, scope
        )


def validate_shop_domain(shop: str) -> str:
    """Normalise a shop domain and reject anything outside myshopify.com."""
    normalized = normalize_shop_domain(shop)
    if not _SHOP_DOMAIN_RE.match(normalized):
        raise InvalidShopDomainError(f"Invalid Shopify shop domain: {shop!r}")
    return normalized


def compute_callback_hmac(params: Mapping[str, str], secret: str) -> str:
    """Hex HMAC-SHA256 over the sorted key=value pairs, excluding the signature."""
    message = "&".join(
        f"{key}={params[key]}"
        for key in sorted(params)
        if key not in ("hmac", "signature")
    )
    return hmac.new(
        secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


class _ConsumedNonces:
    """Bounded record of nonces already redeemed within the expiry window."""

    def __init__(self, max_size: int = 10_000) -> None:
        self._seen: OrderedDict[str, int] = OrderedDict()
        self._max_size = max_size
        self._lock = threading.Lock()

    def consume(self, nonce: str, now_ms: int) -> bool:
        """Record the nonce. Returns False if it was already consumed."""
        with self._lock:
            cutoff = now_ms - STATE_TTL_MS - STATE_FUTURE_SKEW_MS
            while self._seen:
                oldest_nonce, seen_at = next(iter(self._seen.items()))
                if seen_at >= cutoff and len(self._seen) < self._max_size:
                    break
                del self._seen[oldest_nonce]
            if nonce in self._seen:
                return False
            self._seen[nonce] = now_ms
            return True


class ShopifyOAuth:
    """Builds authorize URLs and validates OAuth callbacks."""

    def __init__(
        self,
        config: AppConfig,
        client: ShopifyClient,
        *,
        clock_ms: Callable[[], int] | None = None,
        oauth_logger: OAuthLogger | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._logger = oauth_logger or OAuthLogger()
        self._consumed = _ConsumedNonces()

    # State token ---------------------------------------------------------

    def _sign(self, payload: bytes) -> str:
        _, secret = self._config.require_client_credentials()
        return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def encode_state(self, connection_id: str | None = None) -> str:
        """Base64 JSON state embedding a nonce, connection id and issue time."""
        body: dict[str, Any] = {
            "nonce": secrets.token_hex(32),
            "connectionId": connection_id,
            "timestamp": self._clock_ms(),
        }
        payload = json.dumps(body, separators=(",", ":"), sort_keys=True).encode()
        envelope = {"payload": body, "sig": self._sign(payload)}
        return base64.urlsafe_b64encode(json.dumps(envelope).encode()).decode()

    def decode_state(self, state: str) -> AuthorizationState:
        """Decode, verify and age-check a state token.

        Raises:
            InvalidStateError: Malformed, forged or future-dated token.
            ExpiredStateError: Token older than ten minutes.
        """
        try:
            padded = state + "=" * (-len(state) % 4)
            envelope = json.loads(base64.urlsafe_b64decode(padded.encode()))
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise InvalidStateError("State parameter is not valid base64 JSON") from e

        if not isinstance(envelope, dict):
            raise InvalidStateError("State parameter has an unexpected shape")
        body = envelope.get("payload")
        sig = envelope.get("sig")
        if not isinstance(body, dict) or not isinstance(sig, str):
            raise InvalidStateError("State parameter has an unexpected shape")

        payload = json.dumps(body, separators=(",", ":"), sort_keys=True).encode()
        if not hmac.compare_digest(self._sign(payload), sig):
            raise InvalidStateError("State signature does not verify")

        nonce = body.get("nonce")
        timestamp = body.get("timestamp")
        connection_id = body.get("connectionId")
        if (
            not isinstance(nonce, str)
            or not nonce
            or not isinstance(timestamp, int)
            or isinstance(timestamp, bool)
            or (connection_id is not None and not isinstance(connection_id, str))
        ):
            raise InvalidStateError("State parameter is missing required fields")

        age_ms = self._clock_ms() - timestamp
        if age_ms > STATE_TTL_MS:
            raise ExpiredStateError("OAuth state expired")
        if age_ms < -STATE_FUTURE_SKEW_MS:
            raise InvalidStateError("OAuth state is dated in the future")

        return AuthorizationState(
            nonce=nonce, connection_id=connection_id, issued_at_ms=timestamp
        )

    # Handshake -----------------------------------------------------------

    def begin_authorization(
        self, store_domain: str, pending_connection_id: str | None = None
    ) -> str:
        """Return the provider authorize URL. Makes no network call.

        Raises:
            ConfigurationError: Client id or secret are not configured.
            InvalidShopDomainError: The store domain is not a Shopify domain.
        """
        client_id, _ = self._config.require_client_credentials()
        shop = validate_shop_domain(store_domain)
        state = self.encode_state(pending_connection_id)
        query = urllib.parse.urlencode(
            {
                "client_id": client_id,
                "scope": ",".join(self._config.scopes),
                "redirect_uri": self._config.callback_url,
                "state": state,
                "response_type": "code",
            }
        )
        self._logger.authorization_started(shop, pending_connection_id)
        return f"https://{shop}/admin/oauth/authorize?{query}"

    def complete_authorization(
        self, callback_params: Mapping[str, str]
    ) -> AuthorizationResult:
        """Validate a callback and exchange its code for an access token.

        Raises:
            MissingParameterError, SignatureMismatchError, InvalidStateError,
            ExpiredStateError, InvalidShopDomainError: Integrity failures.
            TokenExchangeError: The provider refused the code.
        """
        params = {k: v for k, v in callback_params.items() if v is not None}
        shop_param = params.get("shop")
        try:
            missing = [p for p in REQUIRED_CALLBACK_PARAMS if not params.get(p)]
            if missing:
                raise MissingParameterError(
                    f"Missing required OAuth parameters: {', '.join(missing)}"
                )

            _, secret = self._config.require_client_credentials()
            expected = compute_callback_hmac(params, secret)
            if not hmac.compare_digest(
                expected.encode("utf-8"), params["hmac"].encode("utf-8")
            ):
                raise SignatureMismatchError("HMAC validation failed")

            state = self.decode_state(params["state"])
            shop = validate_shop_domain(params["shop"])
            if not self._consumed.consume(state.nonce, self._clock_ms()):
                raise InvalidStateError("OAuth state has already been used")
        except AuthorizationError as e:
            self._logger.callback_rejected(shop_param, str(e))
            raise

        try:
            token = self._client.exchange_code(shop, params["code"])
        except TokenExchangeError as e:
            self._logger.callback_rejected(shop, f"token exchange failed: {e}")
            raise

        self._logger.token_exchanged(shop, token.scope)
        return AuthorizationResult(
            shop_domain=shop,
            access_token=token.access_token,
            scope=token.scope,
            pending_connection_id=state.connection_id,
        )
