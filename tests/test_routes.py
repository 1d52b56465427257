"""
HTTP-level tests: the FastAPI app over httpx's ASGI transport.
"""

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from auth import verification
from database.helpers import get_user_by_email
from database.session import session_scope
from main import create_app
from utils.errors import ProviderExchangeFailed, TokenRejected

EMAIL = "Owner@Example.test"
PASSWORD = "s3cret-passw0rd"


@pytest_asyncio.fixture
async def client(settings, engine, registry, clock):
    app = create_app(settings, engine=engine, registry=registry, clock=clock)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://api.example.test") as client:
        yield client


@pytest_asyncio.fixture
async def auth_headers(client):
    resp = await client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD})
    assert resp.status_code == 201
    return {"Authorization": f"Bearer {resp.json()['token']}"}


async def _through_business_type(client, headers):
    await client.post("/onboarding/welcome", json={"accepted_terms": True}, headers=headers)
    resp = await client.post("/onboarding/business-type", json={"business_type_id": 1}, headers=headers)
    assert resp.status_code == 200
    return resp.json()["data"]


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestAuthRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "providers": ["google"]}
        assert "X-Process-Time" in resp.headers

    @pytest.mark.asyncio
    async def test_register_normalises_email(self, client, auth_headers):
        resp = await client.get("/auth/me", headers=auth_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["email"] == "owner@example.test"
        assert body["email_verified"] is False

    @pytest.mark.asyncio
    async def test_duplicate_registration(self, client, auth_headers):
        resp = await client.post("/auth/register", json={"email": "OWNER@example.test", "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_password_limit_counts_utf8_bytes(self, client):
        too_long = await client.post("/auth/register", json={"email": EMAIL, "password": "\u00e9" * 40})
        assert too_long.status_code == 422
        assert too_long.json()["error"]["code"] == "invalid_request"

        at_limit = await client.post("/auth/register", json={"email": EMAIL, "password": "\u00e9" * 36})
        assert at_limit.status_code == 201

        reset = await client.post(
            "/auth/reset-password", json={"token": "whatever", "new_password": "\u00e9" * 40}
        )
        assert reset.status_code == 422
        assert reset.json()["success"] is False

    @pytest.mark.asyncio
    async def test_registration_race_is_a_conflict(self, client, auth_headers):
        # Both requests pass the lookup; the unique index decides
        with patch("auth.routes.get_user_by_email", AsyncMock(return_value=None)):
            resp = await client.post("/auth/register", json={"email": EMAIL, "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_login(self, client, auth_headers):
        ok = await client.post("/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert ok.status_code == 200
        assert ok.json()["token"]

        bad = await client.post("/auth/login", json={"email": EMAIL, "password": "wrong-password"})
        assert bad.status_code == 401
        assert bad.json()["success"] is False

    @pytest.mark.asyncio
    async def test_protected_routes_need_a_token(self, client):
        resp = await client.get("/onboarding/status")
        assert resp.status_code in (401, 403)

        resp = await client.get("/onboarding/status", headers={"Authorization": "Bearer forged.token"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_verify_email(self, client, auth_headers, session_factory, settings):
        async with session_scope(session_factory) as session:
            user = await get_user_by_email(session, EMAIL)
            token = await verification.issue_token(
                session, user.user_id, verification.EMAIL_VERIFICATION, settings.verification_token_ttl_seconds
            )

        resp = await client.post("/auth/verify-email", json={"token": token})
        assert resp.json() == {"success": True, "email_verified": True}

        again = await client.post("/auth/verify-email", json={"token": token})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "token_invalid"

        resend = await client.post("/auth/resend-verification", headers=auth_headers)
        assert resend.json()["already_verified"] is True

    @pytest.mark.asyncio
    async def test_forgot_password_does_not_reveal_accounts(self, client, auth_headers):
        known = await client.post("/auth/forgot-password", json={"email": EMAIL})
        unknown = await client.post("/auth/forgot-password", json={"email": "nobody@example.test"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json() == {"success": True}

    @pytest.mark.asyncio
    async def test_delete_account(self, client, auth_headers):
        resp = await client.delete("/auth/me", headers=auth_headers)
        assert resp.json() == {"success": True}
        gone = await client.get("/auth/me", headers=auth_headers)
        assert gone.status_code == 404
        assert gone.json()["error"]["code"] == "user_not_found"


class TestOnboardingRoutes:
    @pytest.mark.asyncio
    async def test_status_for_new_user(self, client, auth_headers):
        resp = await client.get("/onboarding/status", headers=auth_headers)
        data = resp.json()["data"]
        assert data["next_step"] == "welcome"
        assert data["onboarding_completed"] is False

    @pytest.mark.asyncio
    async def test_business_type_seeds_categories(self, client, auth_headers):
        data = await _through_business_type(client, auth_headers)
        assert data["completed_steps"] == ["welcome", "business-type"]
        assert data["settings"]["categories"][0]["name"] == "Sales"
        assert data["next_step"] == "email-provider"

    @pytest.mark.asyncio
    async def test_step_out_of_order(self, client, auth_headers):
        await _through_business_type(client, auth_headers)
        resp = await client.post(
            "/onboarding/label-mapping",
            json={"label_mappings": [{"category": "Sales", "label": "Sales"}]},
            headers=auth_headers,
        )
        assert resp.status_code == 400
        assert resp.json() == {
            "success": False,
            "error": {
                "code": "step_out_of_order",
                "message": "Complete 'email-provider' before 'label-mapping'",
                "retryable": False,
            },
        }

    @pytest.mark.asyncio
    async def test_invalid_payload(self, client, auth_headers):
        resp = await client.post("/onboarding/welcome", json={"unexpected": 1}, headers=auth_headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_step_payload"

    @pytest.mark.asyncio
    async def test_unknown_step(self, client, auth_headers):
        resp = await client.post("/onboarding/billing", json={}, headers=auth_headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "unknown_step"

    @pytest.mark.asyncio
    async def test_skip_and_categories(self, client, auth_headers):
        await _through_business_type(client, auth_headers)

        skipped = await client.post("/onboarding/email-provider/skip", headers=auth_headers)
        assert skipped.json()["data"]["next_step"] == "team-notifications"

        not_skippable = await client.post("/onboarding/review/skip", headers=auth_headers)
        assert not_skippable.status_code == 400
        assert not_skippable.json()["error"]["code"] == "step_not_skippable"

        resp = await client.put(
            "/onboarding/categories", json={"categories": [{"name": "Leads"}]}, headers=auth_headers
        )
        assert resp.json()["data"]["settings"]["categories"] == [{"name": "Leads"}]

    @pytest.mark.asyncio
    async def test_business_type_catalog(self, client):
        listed = await client.get("/business-types")
        assert {bt["slug"] for bt in listed.json()} == {"hot_tub", "pool", "wellness", "other"}

        one = await client.get("/business-types/hot_tub")
        assert one.json()["id"] == 1

        missing = await client.get("/business-types/bakery")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "unknown_business_type"


class TestOAuthRoutes:
    @pytest.mark.asyncio
    async def test_providers(self, client):
        resp = await client.get("/oauth/providers")
        assert resp.json() == [{"provider": "google", "display_name": "Fake google", "configured": True}]

    @pytest.mark.asyncio
    async def test_connect_redirects_to_consent(self, client, auth_headers):
        resp = await client.get("/oauth/google", headers=auth_headers)
        assert resp.status_code == 307
        assert resp.headers["location"].startswith("https://auth.example.test/google?state=")

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client, auth_headers):
        resp = await client.get("/oauth/yahoo/auth-url", headers=auth_headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "unknown_provider"

    @pytest.mark.asyncio
    async def test_callback_redirects_to_next_step(self, client, auth_headers):
        await _through_business_type(client, auth_headers)
        auth = (await client.get("/oauth/google/auth-url", headers=auth_headers)).json()
        state = _state_from(auth["auth_url"])

        resp = await client.get("/oauth/google/callback", params={"code": "abc", "state": state})
        assert resp.status_code == 302
        assert resp.headers["location"] == "http://app.example.test/onboarding/label-mapping"

        replay = await client.get("/oauth/google/callback", params={"code": "abc", "state": state})
        assert replay.headers["location"] == "http://app.example.test/onboarding/error?reason=invalid_state"

        connections = (await client.get("/oauth/connections", headers=auth_headers)).json()
        assert [(c["provider"], c["status"]) for c in connections] == [("google", "active")]
        assert "access-abc" not in str(connections)

    @pytest.mark.asyncio
    async def test_callback_failures_use_generic_reasons(self, client, auth_headers, connector):
        denied = await client.get("/oauth/google/callback", params={"error": "access_denied"})
        assert denied.headers["location"].endswith("/onboarding/error?reason=access_denied")

        connector.callback_error = ProviderExchangeFailed("upstream said no: secret detail")
        auth = (await client.get("/oauth/google/auth-url", headers=auth_headers)).json()
        failed = await client.get(
            "/oauth/google/callback", params={"code": "abc", "state": _state_from(auth["auth_url"])}
        )
        assert failed.headers["location"].endswith("/onboarding/error?reason=exchange_failed")
        assert "secret" not in failed.headers["location"]

    @pytest.mark.asyncio
    async def test_disconnect(self, client, auth_headers):
        auth = (await client.get("/oauth/google/auth-url", headers=auth_headers)).json()
        await client.get("/oauth/google/callback", params={"code": "abc", "state": _state_from(auth["auth_url"])})

        resp = await client.post("/oauth/google/disconnect", headers=auth_headers)
        assert resp.json() == {"success": True}

        status = (await client.get("/onboarding/status", headers=auth_headers)).json()["data"]
        assert status["connected_providers"] == []
        connections = (await client.get("/oauth/connections", headers=auth_headers)).json()
        assert connections[0]["status"] == "revoked"

    @pytest.mark.asyncio
    async def test_mailbox_labels(self, client, auth_headers, connector, clock):
        missing = await client.get("/onboarding/labels", headers=auth_headers)
        assert missing.status_code == 409
        assert missing.json()["error"]["code"] == "reauthorization_required"

        auth = (await client.get("/oauth/google/auth-url", headers=auth_headers)).json()
        await client.get("/oauth/google/callback", params={"code": "abc", "state": _state_from(auth["auth_url"])})

        resp = await client.get("/onboarding/labels", params={"provider": "google"}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "provider": "google",
            "labels": [
                {"id": "INBOX", "name": "INBOX", "kind": "system"},
                {"id": "Label_1", "name": "Sales", "kind": "user"},
            ],
        }

        clock.advance(3601)
        connector.refresh_error = TokenRejected("invalid_grant")
        dead = await client.get("/onboarding/labels", params={"provider": "google"}, headers=auth_headers)
        assert dead.status_code == 409
        assert dead.json() == {
            "success": False,
            "error": {
                "code": "reauthorization_required",
                "message": "google rejected the refresh token",
                "retryable": False,
            },
        }
