"""
GoogleConnector — OAuth2 web flow for Gmail.

Uses Google's OAuth2 to get per-user Gmail access without the user
sharing any credentials with the application.
"""

from __future__ import annotations

import logging
from typing import List
from urllib.parse import urlencode

import httpx

from connectors.base import BaseConnector
from connectors.schemas import MailboxLabel, TokenBundle
from utils.errors import ProviderExchangeFailed

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_GMAIL_LABELS_URL = "https://gmail.googleapis.com/gmail/v1/users/me/labels"

# System labels worth mapping to; the rest (CHAT, UNREAD, CATEGORY_*) are noise
_MAPPABLE_SYSTEM_LABELS = {"INBOX", "SENT", "DRAFT", "SPAM", "TRASH", "IMPORTANT", "STARRED"}


class GoogleConnector(BaseConnector):
    """OAuth2 connector for Gmail."""

    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.modify",
            "https://www.googleapis.com/auth/gmail.labels",
        ]

    def is_configured(self) -> bool:
        return bool(self.settings.google_client_id and self.settings.google_client_secret)

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.redirect_uri(),
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, code: str) -> TokenBundle:
        """Exchange auth code for tokens."""
        token_data = await self._post_token_request(
            _GOOGLE_TOKEN_URL,
            {
                "code": code,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": self.redirect_uri(),
                "grant_type": "authorization_code",
            },
        )
        if not token_data.get("access_token"):
            raise ProviderExchangeFailed("No access token received from Google")

        # Fetch user info to get email (account_label)
        try:
            async with self._client() as client:
                user_resp = await client.get(
                    _GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {token_data['access_token']}"},
                )
                user_resp.raise_for_status()
                user_info = user_resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderExchangeFailed(f"Google userinfo lookup failed: {exc.__class__.__name__}") from exc

        return TokenBundle(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_in=int(token_data.get("expires_in", 3600)),
            scopes=token_data.get("scope", "").split(),
            account_id=user_info.get("id", user_info.get("email", "")),
            account_label=user_info.get("email", ""),
            provider_meta={
                "email": user_info.get("email"),
                "name": user_info.get("name"),
                "picture": user_info.get("picture"),
            },
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        """Use refresh token to get a new access token."""
        data = await self._post_token_request(
            _GOOGLE_TOKEN_URL,
            {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if not data.get("access_token"):
            raise ProviderExchangeFailed("Google refresh returned no access token")
        return TokenBundle(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
            scopes=data.get("scope", "").split(),
        )

    async def revoke_token(self, token: str) -> bool:
        """Revoke the token at Google."""
        async with self._client() as client:
            resp = await client.post(
                _GOOGLE_REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        return resp.status_code == 200

    async def list_labels(self, access_token: str) -> List[MailboxLabel]:
        """User labels plus the common system labels."""
        data = await self._get_json(_GMAIL_LABELS_URL, access_token)
        labels = []
        for item in data.get("labels") or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            kind = "user" if item.get("type") == "user" else "system"
            if kind == "system" and item["id"] not in _MAPPABLE_SYSTEM_LABELS:
                continue
            labels.append(MailboxLabel(id=item["id"], name=item.get("name") or item["id"], kind=kind))
        return labels
