"""
Tests for the Google / Microsoft connectors and the registry, with the
provider endpoints replaced by ``httpx.MockTransport``.
"""

from urllib.parse import parse_qs, urlparse
from unittest.mock import patch

import httpx
import pytest

from config.settings import Settings
from connectors.google import GoogleConnector
from connectors.microsoft import MicrosoftConnector
from connectors.registry import ConnectorRegistry
from utils.errors import ProviderExchangeFailed, ReauthorizationRequired, TokenRejected, UnknownProvider


@pytest.fixture
def provider_settings():
    return Settings(
        _env_file=None,
        token_encryption_key="unused-here",
        google_client_id="g-id",
        google_client_secret="g-secret",
        microsoft_client_id="m-id",
        microsoft_client_secret="m-secret",
        oauth_redirect_base="https://api.example.test",
    )


def _mock_client(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestAuthUrls:
    def test_google_consent_url(self, provider_settings):
        url = GoogleConnector(provider_settings).get_auth_url("state-123")
        query = parse_qs(urlparse(url).query)
        assert query["state"] == ["state-123"]
        assert query["access_type"] == ["offline"]
        assert query["redirect_uri"] == ["https://api.example.test/oauth/google/callback"]

    def test_microsoft_uses_tenant_endpoint(self, provider_settings):
        url = MicrosoftConnector(provider_settings).get_auth_url("state-123")
        assert url.startswith("https://login.microsoftonline.com/common/oauth2/v2.0/authorize?")
        assert "offline_access" in parse_qs(urlparse(url).query)["scope"][0]


class TestTokenExchange:
    @pytest.mark.asyncio
    async def test_google_callback(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/token":
                return httpx.Response(
                    200,
                    json={
                        "access_token": "ya29.access",
                        "refresh_token": "1//refresh",
                        "expires_in": 3599,
                        "scope": "openid email",
                    },
                )
            return httpx.Response(200, json={"id": "42", "email": "owner@gmail.example"})

        connector = GoogleConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            bundle = await connector.handle_callback("auth-code")
        assert bundle.access_token == "ya29.access"
        assert bundle.refresh_token == "1//refresh"
        assert bundle.expires_in == 3599
        assert bundle.account_label == "owner@gmail.example"
        assert "ya29" not in repr(bundle)

    @pytest.mark.asyncio
    async def test_invalid_grant_is_a_rejection(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        connector = GoogleConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            with pytest.raises(TokenRejected):
                await connector.refresh_access_token("1//refresh")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        connector = MicrosoftConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            with pytest.raises(ProviderExchangeFailed) as info:
                await connector.refresh_access_token("refresh")
        assert not isinstance(info.value, TokenRejected)
        assert info.value.retryable

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        connector = GoogleConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            with pytest.raises(ProviderExchangeFailed):
                await connector.handle_callback("auth-code")

    @pytest.mark.asyncio
    async def test_microsoft_refresh_rotates_token(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600}
            )

        connector = MicrosoftConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            bundle = await connector.refresh_access_token("old-refresh")
        assert bundle.refresh_token == "new-refresh"


    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [["invalid_grant"], "invalid_grant", {"error": {"code": 7}}])
    async def test_odd_error_bodies_are_transient(self, provider_settings, body):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json=body)

        connector = GoogleConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            with pytest.raises(ProviderExchangeFailed) as info:
                await connector.refresh_access_token("1//refresh")
        assert not isinstance(info.value, TokenRejected)

    @pytest.mark.asyncio
    async def test_non_object_token_response(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["access"])

        connector = MicrosoftConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            with pytest.raises(ProviderExchangeFailed, match="malformed"):
                await connector.refresh_access_token("refresh")


class TestLabels:
    @pytest.mark.asyncio
    async def test_gmail_user_and_common_system_labels(self, provider_settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "labels": [
                        {"id": "INBOX", "name": "INBOX", "type": "system"},
                        {"id": "CHAT", "name": "CHAT", "type": "system"},
                        {"id": "CATEGORY_SOCIAL", "name": "CATEGORY_SOCIAL", "type": "system"},
                        {"id": "Label_7", "name": "Sales", "type": "user"},
                    ]
                },
            )

        connector = GoogleConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            labels = await connector.list_labels("ya29.access")
        assert [(label.id, label.name, label.kind) for label in labels] == [
            ("INBOX", "INBOX", "system"),
            ("Label_7", "Sales", "user"),
        ]
        assert seen[0].url.path == "/gmail/v1/users/me/labels"
        assert seen[0].headers["Authorization"] == "Bearer ya29.access"

    @pytest.mark.asyncio
    async def test_outlook_folders(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1.0/me/mailFolders"
            return httpx.Response(
                200, json={"value": [{"id": "AAMk1", "displayName": "Inbox"}, {"id": "AAMk2", "displayName": "Leads"}]}
            )

        connector = MicrosoftConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            labels = await connector.list_labels("access")
        assert [(label.name, label.kind) for label in labels] == [("Inbox", "folder"), ("Leads", "folder")]

    @pytest.mark.asyncio
    async def test_revoked_access_token_needs_reauthorization(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"code": 401, "status": "UNAUTHENTICATED"}})

        connector = GoogleConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            with pytest.raises(ReauthorizationRequired):
                await connector.list_labels("stale")

    @pytest.mark.asyncio
    async def test_api_outage_is_transient(self, provider_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json=["oops"])

        connector = MicrosoftConnector(provider_settings)
        with patch.object(connector, "_client", _mock_client(handler)):
            with pytest.raises(ProviderExchangeFailed) as info:
                await connector.list_labels("access")
        assert info.value.retryable

class TestRegistry:
    def test_only_configured_providers_are_usable(self):
        settings = Settings(_env_file=None, token_encryption_key="unused-here", google_client_id="g", google_client_secret="s")
        registry = ConnectorRegistry.from_settings(settings)
        assert registry.list_configured() == ["google"]
        assert {p["provider"]: p["configured"] for p in registry.list_providers()} == {
            "google": True,
            "microsoft": False,
        }
        with pytest.raises(UnknownProvider):
            registry.require("microsoft")
