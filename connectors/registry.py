"""
ConnectorRegistry — holds the provider connectors this process can use.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.google import GoogleConnector
from connectors.microsoft import MicrosoftConnector
from utils.errors import UnknownProvider

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Lookup of configured connectors by provider slug."""

    def __init__(self, connectors: Iterable[BaseConnector] = ()):
        self._known: List[BaseConnector] = list(connectors)
        self._connectors: Dict[str, BaseConnector] = {}
        for conn in self._known:
            if conn.is_configured():
                self._connectors[conn.provider_name] = conn
                logger.info(
                    "Connector registered: %s (%s)",
                    conn.display_name,
                    conn.provider_name,
                )
            else:
                logger.warning(
                    "Connector %s skipped — not configured (missing client_id/secret)",
                    conn.provider_name,
                )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectorRegistry":
        # ── All known connectors, add new ones here ─────────────────────
        return cls([GoogleConnector(settings), MicrosoftConnector(settings)])

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a connector by provider name."""
        return self._connectors.get(provider)

    def require(self, provider: str) -> BaseConnector:
        connector = self._connectors.get(provider)
        if connector is None:
            raise UnknownProvider(f"Provider '{provider}' not found or not configured")
        return connector

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all known connectors."""
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "configured": c.provider_name in self._connectors,
            }
            for c in self._known
        ]

    def list_configured(self) -> List[str]:
        """Return names of configured connectors."""
        return list(self._connectors.keys())
