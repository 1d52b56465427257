"""
MicrosoftConnector — OAuth2 (Microsoft identity platform) for Outlook.
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

_MS_LOGIN_BASE = "https://login.microsoftonline.com"
_MS_GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"
_MS_MAIL_FOLDERS_URL = "https://graph.microsoft.com/v1.0/me/mailFolders"


class MicrosoftConnector(BaseConnector):
    """OAuth2 connector for Outlook / Microsoft 365 mailboxes."""

    @property
    def provider_name(self) -> str:
        return "microsoft"

    @property
    def display_name(self) -> str:
        return "Outlook"

    @property
    def scopes(self) -> List[str]:
        return [
            "offline_access",   # required for refresh_token
            "openid",
            "email",
            "User.Read",
            "Mail.ReadWrite",
            "MailboxSettings.ReadWrite",
        ]

    def is_configured(self) -> bool:
        return bool(self.settings.microsoft_client_id and self.settings.microsoft_client_secret)

    def _endpoint(self, name: str) -> str:
        return f"{_MS_LOGIN_BASE}/{self.settings.microsoft_tenant}/oauth2/v2.0/{name}"

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.microsoft_client_id,
            "redirect_uri": self.redirect_uri(),
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(self.scopes),
            "prompt": "select_account",
            "state": state,
        }
        return f"{self._endpoint('authorize')}?{urlencode(params)}"

    async def handle_callback(self, code: str) -> TokenBundle:
        token_data = await self._post_token_request(
            self._endpoint("token"),
            {
                "code": code,
                "client_id": self.settings.microsoft_client_id,
                "client_secret": self.settings.microsoft_client_secret,
                "redirect_uri": self.redirect_uri(),
                "grant_type": "authorization_code",
                "scope": " ".join(self.scopes),
            },
        )
        if not token_data.get("access_token"):
            raise ProviderExchangeFailed("No access token received from Microsoft")

        try:
            async with self._client() as client:
                me_resp = await client.get(
                    _MS_GRAPH_ME_URL,
                    headers={"Authorization": f"Bearer {token_data['access_token']}"},
                )
                me_resp.raise_for_status()
                me = me_resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderExchangeFailed(f"Microsoft profile lookup failed: {exc.__class__.__name__}") from exc

        email = me.get("mail") or me.get("userPrincipalName") or ""
        return TokenBundle(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_in=int(token_data.get("expires_in", 3600)),
            scopes=token_data.get("scope", "").split(),
            account_id=me.get("id", email),
            account_label=email,
            provider_meta={"email": email, "name": me.get("displayName")},
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        data = await self._post_token_request(
            self._endpoint("token"),
            {
                "client_id": self.settings.microsoft_client_id,
                "client_secret": self.settings.microsoft_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": " ".join(self.scopes),
            },
        )
        if not data.get("access_token"):
            raise ProviderExchangeFailed("Microsoft refresh returned no access token")
        # Microsoft rotates refresh tokens on every use
        return TokenBundle(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
            scopes=data.get("scope", "").split(),
        )

    async def list_labels(self, access_token: str) -> List[MailboxLabel]:
        """Top-level mail folders; Outlook has no Gmail-style labels."""
        data = await self._get_json(_MS_MAIL_FOLDERS_URL, access_token, params={"$top": 100})
        return [
            MailboxLabel(id=item["id"], name=item.get("displayName") or item["id"], kind="folder")
            for item in data.get("value") or []
            if isinstance(item, dict) and item.get("id")
        ]
