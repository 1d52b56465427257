"""
Shared fixtures: a throw-away SQLite database, a controllable clock and an
in-memory OAuth provider.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from cryptography.fernet import Fernet

# Must be set before config.settings builds the process-wide Settings.
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
import pytest_asyncio

from api.dependencies import build_services
from config.settings import Settings
from connectors.base import BaseConnector
from connectors.registry import ConnectorRegistry
from connectors.schemas import MailboxLabel, TokenBundle
from database.helpers import create_schema, create_user, seed_business_types
from database.session import build_engine, build_session_factory, session_scope
from onboarding.business_types import DEFAULT_BUSINESS_TYPES

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class FakeConnector(BaseConnector):
    """Provider double: deterministic tokens, optional delays and failures."""

    def __init__(self, settings: Settings, provider: str = "google"):
        super().__init__(settings)
        self._provider = provider
        self.issue_refresh_token = True
        self.expires_in = 3600
        self.refresh_calls = 0
        self.revoked: List[str] = []
        self.refresh_error: Optional[Exception] = None
        self.callback_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None
        self.refresh_delay = 0.0
        self.refresh_started = asyncio.Event()
        self.refresh_gate: Optional[asyncio.Event] = None
        self.label_tokens: List[str] = []
        self.labels_error: Optional[Exception] = None

    @property
    def provider_name(self) -> str:
        return self._provider

    @property
    def display_name(self) -> str:
        return f"Fake {self._provider}"

    @property
    def scopes(self) -> List[str]:
        return ["mail.read", "mail.labels"]

    def get_auth_url(self, state: str) -> str:
        return f"https://auth.example.test/{self._provider}?state={state}"

    async def handle_callback(self, code: str) -> TokenBundle:
        if self.callback_error is not None:
            raise self.callback_error
        return TokenBundle(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}" if self.issue_refresh_token else None,
            expires_in=self.expires_in,
            scopes=self.scopes,
            account_id="acct-1",
            account_label="owner@example.test",
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        self.refresh_calls += 1
        self.refresh_started.set()
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenBundle(
            access_token=f"refreshed-{self.refresh_calls}",
            expires_in=self.expires_in,
        )

    async def list_labels(self, access_token: str) -> List[MailboxLabel]:
        self.label_tokens.append(access_token)
        if self.labels_error is not None:
            raise self.labels_error
        return [MailboxLabel(id="INBOX", name="INBOX", kind="system"), MailboxLabel(id="Label_1", name="Sales")]

    async def revoke_token(self, token: str) -> bool:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(token)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        token_encryption_key=Fernet.generate_key().decode(),
        frontend_url="http://app.example.test",
        oauth_redirect_base="http://api.example.test",
        default_retry_delay=0.0,
        oauth_timeout_seconds=2.0,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings.database_url)
    await create_schema(engine)
    async with session_scope(build_session_factory(engine)) as session:
        await seed_business_types(session, DEFAULT_BUSINESS_TYPES)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def connector(settings):
    return FakeConnector(settings)


@pytest.fixture
def registry(connector):
    return ConnectorRegistry([connector])


@pytest.fixture
def services(settings, engine, session_factory, registry, clock):
    return build_services(settings, session_factory, engine=engine, registry=registry, clock=clock)


@pytest_asyncio.fixture
async def user_id(session_factory):
    async with session_scope(session_factory) as session:
        user = await create_user(session, "Owner@Example.test", "not-a-real-hash", display_name="Owner")
        return user.user_id


@pytest.fixture
def connect(services):
    """Run a full authorization round-trip against the fake provider."""

    async def _connect(user_id, provider: str = "google", code: str = "code-1"):
        request = await services.tokens.begin_authorization(user_id, provider)
        return await services.tokens.complete_authorization(code, request.state)

    return _connect
