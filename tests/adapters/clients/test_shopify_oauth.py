"""Tests for the Shopify OAuth handshake."""

from __future__ import annotations

import base64
import json
from unittest.mock import MagicMock
import urllib.parse

import pytest

from vatpilot.adapters.clients.shopify import (
    AccessTokenResponse,
    ShopifyClient,
    TokenExchangeError,
)
from vatpilot.adapters.clients.shopify_oauth import (
    STATE_TTL_MS,
    AuthorizationResult,
    ExpiredStateError,
    InvalidShopDomainError,
    InvalidStateError,
    MissingParameterError,
    ShopifyOAuth,
    SignatureMismatchError,
    compute_callback_hmac,
)
from vatpilot.core.config import AppConfig, ConfigurationError

SECRET = "shpss_test_secret"  # noqa: S105
MINUTE_MS = 60 * 1000
START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now_ms: int = START_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def create_config(**overrides: str) -> AppConfig:
    values = {"shopify_api_key": "client-id", "shopify_api_secret": SECRET}
    values.update(overrides)
    return AppConfig(**values)  # type: ignore[arg-type]


def create_client() -> MagicMock:
    client = MagicMock(spec=ShopifyClient)
    client.exchange_code.return_value = AccessTokenResponse(
        access_token="shpat_abc", scope="read_orders"  # noqa: S106
    )
    return client


def signed_callback(
    oauth: ShopifyOAuth,
    *,
    shop: str = "demo-store.myshopify.com",
    connection_id: str | None = "conn-1",
    secret: str = SECRET,
) -> dict[str, str]:
    params = {
        "code": "auth-code",
        "shop": shop,
        "state": oauth.encode_state(connection_id),
        "timestamp": "1700000000",
    }
    params["hmac"] = compute_callback_hmac(params, secret)
    return params


class TestBeginAuthorization:
    def test_builds_authorize_url(self) -> None:
        # setup
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())

        # act
        url = oauth.begin_authorization("demo-store", "conn-1")

        # assert
        parsed = urllib.parse.urlparse(url)
        query = urllib.parse.parse_qs(parsed.query)
        assert parsed.netloc == "demo-store.myshopify.com"
        assert parsed.path == "/admin/oauth/authorize"
        assert query["client_id"] == ["client-id"]
        assert query["scope"] == ["read_orders,read_assigned_fulfillment_orders"]
        assert query["redirect_uri"] == [
            "http://localhost:5000/api/shopify/callback"
        ]
        assert oauth.decode_state(query["state"][0]).connection_id == "conn-1"

    def test_state_embeds_nonce_connection_and_timestamp(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())

        state = oauth.encode_state("conn-9")

        padded = state + "=" * (-len(state) % 4)
        envelope = json.loads(base64.urlsafe_b64decode(padded))
        assert envelope["payload"]["connectionId"] == "conn-9"
        assert envelope["payload"]["timestamp"] == START_MS
        assert len(envelope["payload"]["nonce"]) == 64

    def test_makes_no_network_call(self) -> None:
        client = create_client()
        oauth = ShopifyOAuth(create_config(), client, clock_ms=FakeClock())

        oauth.begin_authorization("demo-store")

        assert client.method_calls == []

    def test_missing_credentials_fail_fast(self) -> None:
        oauth = ShopifyOAuth(
            create_config(shopify_api_key="", shopify_api_secret=""),
            create_client(),
        )

        with pytest.raises(ConfigurationError):
            oauth.begin_authorization("demo-store")

    def test_rejects_foreign_domain(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client())

        with pytest.raises(InvalidShopDomainError):
            oauth.begin_authorization("evil.com/.myshopify.com")


class TestCompleteAuthorization:
    def test_valid_callback_exchanges_code(self) -> None:
        # setup
        client = create_client()
        clock = FakeClock()
        oauth = ShopifyOAuth(create_config(), client, clock_ms=clock)
        params = signed_callback(oauth)

        # act
        result = oauth.complete_authorization(params)

        # expected
        expected = AuthorizationResult(
            shop_domain="demo-store.myshopify.com",
            access_token="shpat_abc",  # noqa: S106
            scope="read_orders",
            pending_connection_id="conn-1",
        )

        # assert
        assert result == expected
        client.exchange_code.assert_called_once_with(
            "demo-store.myshopify.com", "auth-code"
        )

    def test_repr_hides_access_token(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())

        result = oauth.complete_authorization(signed_callback(oauth))

        assert "shpat_abc" not in repr(result)

    @pytest.mark.parametrize("missing", ["code", "shop", "state", "hmac"])
    def test_missing_parameter(self, missing: str) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())
        params = signed_callback(oauth)
        del params[missing]

        with pytest.raises(MissingParameterError, match=missing):
            oauth.complete_authorization(params)

    def test_tampered_hmac_is_rejected(self) -> None:
        client = create_client()
        oauth = ShopifyOAuth(create_config(), client, clock_ms=FakeClock())
        params = signed_callback(oauth)
        last = "0" if params["hmac"][-1] != "0" else "1"
        params["hmac"] = params["hmac"][:-1] + last

        with pytest.raises(SignatureMismatchError):
            oauth.complete_authorization(params)
        client.exchange_code.assert_not_called()

    def test_tampered_param_is_rejected(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())
        params = signed_callback(oauth)
        params["shop"] = "other-store.myshopify.com"

        with pytest.raises(SignatureMismatchError):
            oauth.complete_authorization(params)

    def test_wrong_secret_is_rejected(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())
        params = signed_callback(oauth, secret="not-the-secret")  # noqa: S106

        with pytest.raises(SignatureMismatchError):
            oauth.complete_authorization(params)

    def test_nine_minute_old_state_is_accepted(self) -> None:
        clock = FakeClock()
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=clock)
        params = signed_callback(oauth)
        clock.advance(9 * MINUTE_MS)

        result = oauth.complete_authorization(params)

        assert result.shop_domain == "demo-store.myshopify.com"

    def test_exactly_ten_minute_old_state_is_accepted(self) -> None:
        clock = FakeClock()
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=clock)
        params = signed_callback(oauth)
        clock.advance(STATE_TTL_MS)

        assert oauth.complete_authorization(params).pending_connection_id == "conn-1"

    def test_eleven_minute_old_state_is_expired(self) -> None:
        clock = FakeClock()
        client = create_client()
        oauth = ShopifyOAuth(create_config(), client, clock_ms=clock)
        params = signed_callback(oauth)
        clock.advance(11 * MINUTE_MS)

        with pytest.raises(ExpiredStateError):
            oauth.complete_authorization(params)
        client.exchange_code.assert_not_called()

    def test_malformed_state_is_invalid(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())
        params = {"code": "c", "shop": "demo-store.myshopify.com", "state": "%%%"}
        params["hmac"] = compute_callback_hmac(params, SECRET)

        with pytest.raises(InvalidStateError):
            oauth.complete_authorization(params)

    def test_forged_state_is_invalid(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())
        body = {"nonce": "n" * 64, "connectionId": "victim", "timestamp": START_MS}
        forged = base64.urlsafe_b64encode(
            json.dumps({"payload": body, "sig": "0" * 64}).encode()
        ).decode()
        params = {"code": "c", "shop": "demo-store.myshopify.com", "state": forged}
        params["hmac"] = compute_callback_hmac(params, SECRET)

        with pytest.raises(InvalidStateError):
            oauth.complete_authorization(params)

    def test_state_is_single_use(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())
        params = signed_callback(oauth)
        oauth.complete_authorization(params)

        with pytest.raises(InvalidStateError, match="already been used"):
            oauth.complete_authorization(params)

    def test_signed_foreign_shop_is_rejected(self) -> None:
        oauth = ShopifyOAuth(create_config(), create_client(), clock_ms=FakeClock())
        params = signed_callback(oauth, shop="evil.example.com")

        with pytest.raises(InvalidShopDomainError):
            oauth.complete_authorization(params)

    def test_token_exchange_failure_propagates(self) -> None:
        client = create_client()
        client.exchange_code.side_effect = TokenExchangeError(
            "Shopify token exchange failed (400)", status=400, body="{}"
        )
        oauth = ShopifyOAuth(create_config(), client, clock_ms=FakeClock())

        with pytest.raises(TokenExchangeError) as exc_info:
            oauth.complete_authorization(signed_callback(oauth))

        assert exc_info.value.status == 400


class TestCallbackHmac:
    def test_excludes_signature_fields_and_sorts_keys(self) -> None:
        params = {"shop": "s", "code": "c", "hmac": "ignored", "signature": "x"}

        assert compute_callback_hmac(params, SECRET) == compute_callback_hmac(
            {"code": "c", "shop": "s"}, SECRET
        )
