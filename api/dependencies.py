"""
FastAPI dependencies (shared across routes).

All long-lived components are built once per application by
``build_services`` and stored on ``app.state.services``; route handlers
reach them through the small getters below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.credential_store import CredentialStore
from connectors.encryption import SecretCipher
from connectors.registry import ConnectorRegistry
from connectors.state_store import OAuthStateStore
from connectors.token_manager import TokenManager
from database.session import session_scope
from onboarding.service import OnboardingService
from onboarding.tracker import OnboardingTracker
from utils.clock import Clock, utcnow


@dataclass
class Services:
    settings: Settings
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker[AsyncSession]
    cipher: SecretCipher
    registry: ConnectorRegistry
    credentials: CredentialStore
    states: OAuthStateStore
    tokens: TokenManager
    tracker: OnboardingTracker
    onboarding: OnboardingService


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    engine: Optional[AsyncEngine] = None,
    registry: Optional[ConnectorRegistry] = None,
    clock: Clock = utcnow,
) -> Services:
    """Wire the cipher, stores, token manager and onboarding components."""
    cipher = SecretCipher(settings.token_encryption_key)
    registry = registry or ConnectorRegistry.from_settings(settings)
    credentials = CredentialStore(session_factory, cipher, clock=clock)
    states = OAuthStateStore(session_factory, ttl_seconds=settings.oauth_state_ttl_seconds, clock=clock)
    tokens = TokenManager(credentials, states, registry, settings, clock=clock)
    tracker = OnboardingTracker(session_factory, tokens, clock=clock)
    onboarding = OnboardingService(session_factory, tokens, tracker, settings)
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        cipher=cipher,
        registry=registry,
        credentials=credentials,
        states=states,
        tokens=tokens,
        tracker=tracker,
        onboarding=onboarding,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings(services: Services = Depends(get_services)) -> Settings:
    return services.settings


def get_registry(services: Services = Depends(get_services)) -> ConnectorRegistry:
    return services.registry


def get_token_manager(services: Services = Depends(get_services)) -> TokenManager:
    return services.tokens


def get_onboarding_service(services: Services = Depends(get_services)) -> OnboardingService:
    return services.onboarding


async def db_session(services: Services = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    """One committed-or-rolled-back transaction per request."""
    async with session_scope(services.session_factory) as session:
        yield session
