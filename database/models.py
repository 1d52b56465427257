"""
SQLAlchemy ORM models for accounts, OAuth connections and onboarding.

Column types are portable (JSON with a JSONB variant, ``Uuid``) so the same
metadata runs on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    user_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)  # stored lower-cased
    display_name = Column(String(128))
    password_hash = Column(String(255), nullable=False, default="")
    email_verified = Column(Boolean, nullable=False, default=False)
    email_verified_at = Column(DateTime(timezone=True))
    onboarding_completed = Column(Boolean, nullable=False, default=False)
    onboarding_completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_now)

    connections = relationship("UserConnection", back_populates="user", passive_deletes=True)
    progress = relationship("OnboardingProgress", back_populates="user", uselist=False, passive_deletes=True)


class UserConnection(Base):
    __tablename__ = "user_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_user_connections_user_provider"),
    )

    connection_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    account_label = Column(String(128))
    account_id = Column(String(256))
    access_token = Column(Text)              # Fernet ciphertext, NULL once revoked
    refresh_token = Column(Text)             # Fernet ciphertext, optional
    token_type = Column(String(32), default="Bearer")
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(JsonType, default=list)
    provider_meta = Column(JsonType, default=dict)
    status = Column(String(16), nullable=False, default="active")
    version = Column(Integer, nullable=False, default=1)
    connected_at = Column(DateTime(timezone=True), default=_now)
    last_refreshed = Column(DateTime(timezone=True))
    last_used_at = Column(DateTime(timezone=True))
    revoked_at = Column(DateTime(timezone=True))
    error_message = Column(Text)

    user = relationship("User", back_populates="connections")


class OAuthState(Base):
    __tablename__ = "oauth_states"
    __table_args__ = (Index("ix_oauth_states_expires_at", "expires_at"),)

    state_hash = Column(String(64), primary_key=True)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True))


class BusinessType(Base):
    __tablename__ = "business_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(64), unique=True, nullable=False)
    name = Column(String(128), nullable=False)
    description = Column(Text)
    default_categories = Column(JsonType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)


class OnboardingProgress(Base):
    __tablename__ = "onboarding_progress"

    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    completed_steps = Column(JsonType, nullable=False, default=list)
    skipped_steps = Column(JsonType, nullable=False, default=list)
    business_type_id = Column(Integer, ForeignKey("business_types.id"), nullable=True)
    settings = Column(JsonType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    user = relationship("User", back_populates="progress")


class VerificationToken(Base):
    __tablename__ = "verification_tokens"
    __table_args__ = (Index("ix_verification_tokens_user_purpose", "user_id", "purpose"),)

    token_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    token_hash = Column(String(64), unique=True, nullable=False)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    purpose = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True))
