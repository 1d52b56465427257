"""
Value objects exchanged between connectors, the credential store and the
token manager.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from connectors.encryption import SecretCipher


class ConnectionStatus(str, Enum):
    NONE = "none"
    PENDING_AUTH = "pending_auth"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class TokenBundle(BaseModel):
    """Normalised output of a code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    scopes: List[str] = Field(default_factory=list)
    account_id: str = ""
    account_label: str = ""
    provider_meta: Dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        return f"TokenBundle(expires_in={self.expires_in}, scopes={self.scopes!r})"

    __str__ = __repr__


class MailboxLabel(BaseModel):
    """A label (Gmail) or mail folder (Outlook) that categories can map onto."""

    id: str
    name: str
    kind: str = "user"  # "system", "user" or "folder"


class AuthorizationRequest(BaseModel):
    provider: str
    authorization_url: str
    state: str


@dataclass(frozen=True)
class OAuthConnection:
    """
    Snapshot of a stored connection.

    Token fields stay encrypted until ``access_token()`` /
    ``refresh_token()`` is called, so passing the object around (or logging
    it) never exposes a secret.
    """

    connection_id: uuid.UUID
    user_id: uuid.UUID
    provider: str
    status: ConnectionStatus
    version: int
    expires_at: Optional[datetime]
    scopes: frozenset
    account_id: str = ""
    account_label: str = ""
    provider_meta: Dict[str, Any] = field(default_factory=dict, compare=False)
    connected_at: Optional[datetime] = None
    last_refreshed: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    error_message: Optional[str] = None
    encrypted_access_token: Optional[str] = field(default=None, repr=False)
    encrypted_refresh_token: Optional[str] = field(default=None, repr=False)
    cipher: Optional[SecretCipher] = field(default=None, repr=False, compare=False)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.encrypted_refresh_token)

    def access_token(self) -> str:
        if not self.encrypted_access_token or self.cipher is None:
            raise ValueError("connection holds no access token")
        return self.cipher.decrypt_token(self.encrypted_access_token)

    def refresh_token(self) -> Optional[str]:
        if not self.encrypted_refresh_token or self.cipher is None:
            return None
        return self.cipher.decrypt_token(self.encrypted_refresh_token)

    def is_fresh(self, now: datetime, margin_seconds: int) -> bool:
        """True while the access token is outside the refresh margin."""
        if self.expires_at is None:
            return True
        return (self.expires_at - now).total_seconds() > margin_seconds

    def to_public_dict(self) -> Dict[str, Any]:
        """Metadata for API responses, without token material."""
        return {
            "connection_id": str(self.connection_id),
            "provider": self.provider,
            "status": self.status.value,
            "account_label": self.account_label,
            "account_id": self.account_id,
            "scopes": sorted(self.scopes),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_refreshed": self.last_refreshed.isoformat() if self.last_refreshed else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "has_refresh_token": self.has_refresh_token,
            "error_message": self.error_message,
        }
