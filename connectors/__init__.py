"""
connectors — OAuth credential lifecycle for mailbox providers.

Provides:
  • Fernet encryption of tokens at rest (``SecretCipher``)
  • Versioned per-user credential storage (``CredentialStore``)
  • Single-use OAuth ``state`` nonces (``OAuthStateStore``)
  • Authorize / refresh / revoke orchestration (``TokenManager``)

Each provider (Gmail, Outlook) is a subclass of BaseConnector.
"""
