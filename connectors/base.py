"""
BaseConnector — abstract interface for all OAuth2 mailbox connectors.

Every provider (Google, Microsoft, …) subclasses this and implements
the core methods.  Connectors are stateless: they never touch the
database, they only talk to the provider.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

import httpx

from config.settings import Settings
from connectors.schemas import MailboxLabel, TokenBundle
from utils.errors import ProviderExchangeFailed, ReauthorizationRequired, TokenRejected

logger = logging.getLogger(__name__)

# OAuth2 error codes that mean "this grant is dead", not "try again later"
_REJECTION_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client", "access_denied"}


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'google', 'microsoft'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Gmail', 'Outlook'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Opaque single-use CSRF nonce issued by the state store.

        Returns
        -------
        The full URL to redirect the user to.
        """
        ...

    @abstractmethod
    async def handle_callback(self, code: str) -> TokenBundle:
        """Exchange the authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        """
        Refresh an expired access token.

        Raises ``TokenRejected`` when the provider refuses the refresh
        token, ``ProviderExchangeFailed`` for transient failures.
        """
        ...

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    # ── Mailbox ─────────────────────────────────────────────────────────

    @abstractmethod
    async def list_labels(self, access_token: str) -> List[MailboxLabel]:
        """Labels or folders the label-mapping step can target."""
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """
        Return True if this connector has all required config
        (client IDs, secrets).
        """
        return True

    def redirect_uri(self) -> str:
        return f"{self.settings.oauth_redirect_base}/oauth/{self.provider_name}/callback"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.oauth_timeout_seconds)

    async def _post_token_request(self, url: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST to a token endpoint and classify failures.

        Error bodies are logged by OAuth error code only; they can echo the
        submitted grant.
        """
        try:
            async with self._client() as client:
                resp = await client.post(url, data=data, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise ProviderExchangeFailed(
                f"{self.provider_name} token endpoint unreachable: {exc.__class__.__name__}"
            ) from exc

        if resp.status_code >= 400:
            error_code = ""
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("error"), str):
                error_code = body["error"]
            logger.warning(
                "%s token endpoint returned %s (%s)",
                self.provider_name, resp.status_code, error_code or "no error code",
            )
            if 400 <= resp.status_code < 500 and error_code in _REJECTION_ERRORS:
                raise TokenRejected(f"{self.provider_name} rejected the grant: {error_code}")
            raise ProviderExchangeFailed(f"{self.provider_name} token endpoint returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderExchangeFailed(f"{self.provider_name} returned a malformed token response") from exc
        if not isinstance(data, dict):
            raise ProviderExchangeFailed(f"{self.provider_name} returned a malformed token response")
        return data

    async def _get_json(self, url: str, access_token: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """GET a provider API resource with a bearer token."""
        try:
            async with self._client() as client:
                resp = await client.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise ProviderExchangeFailed(
                f"{self.provider_name} API unreachable: {exc.__class__.__name__}"
            ) from exc

        if resp.status_code == 401:
            raise ReauthorizationRequired(f"{self.provider_name} no longer accepts the access token")
        if resp.status_code >= 400:
            logger.warning("%s API returned %s for %s", self.provider_name, resp.status_code, url)
            raise ProviderExchangeFailed(f"{self.provider_name} API returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderExchangeFailed(f"{self.provider_name} returned a malformed API response") from exc
        if not isinstance(data, dict):
            raise ProviderExchangeFailed(f"{self.provider_name} returned a malformed API response")
        return data
