"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The 32-byte key is loaded from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``), URL-safe base64 encoded.  Generate one
with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

There is no plaintext fallback: a missing key is a startup error and a
ciphertext that does not authenticate under the current key raises
``CryptoError``.
"""

from __future__ import annotations

import base64
import binascii

from cryptography.fernet import Fernet, InvalidToken

from utils.errors import CryptoError

KEY_LENGTH = 32


class SecretCipher:
    """Authenticated symmetric cipher bound to one process-wide key."""

    def __init__(self, key: str | bytes):
        if not key:
            raise CryptoError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate a key: "
                "python -c \"from cryptography.fernet import Fernet; "
                "print(Fernet.generate_key().decode())\""
            )
        raw_key = key.encode() if isinstance(key, str) else key
        try:
            decoded = base64.urlsafe_b64decode(raw_key)
        except (binascii.Error, ValueError) as exc:
            raise CryptoError("Encryption key is not valid URL-safe base64") from exc
        if len(decoded) != KEY_LENGTH:
            raise CryptoError(f"Encryption key must decode to {KEY_LENGTH} bytes")
        self._fernet = Fernet(raw_key)

    def __repr__(self) -> str:
        return "SecretCipher(key=<redacted>)"

    def encrypt(self, plaintext: bytes) -> bytes:
        return self._fernet.encrypt(plaintext)

    def decrypt(self, ciphertext: bytes) -> bytes:
        try:
            return self._fernet.decrypt(ciphertext)
        except (InvalidToken, TypeError, ValueError) as exc:
            raise CryptoError("Ciphertext failed authentication") from exc

    def encrypt_token(self, plaintext: str) -> str:
        """Encrypt a token string for database storage (URL-safe base64)."""
        return self.encrypt(plaintext.encode()).decode()

    def decrypt_token(self, ciphertext: str) -> str:
        """Decrypt a token string read from the database."""
        try:
            return self.decrypt(ciphertext.encode()).decode()
        except UnicodeDecodeError as exc:
            raise CryptoError("Decrypted token is not valid UTF-8") from exc
