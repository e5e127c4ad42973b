"""Encryption of stored location passwords.

Passwords are stored as Fernet tokens (AES-128-CBC + HMAC-SHA256).  The key
is a urlsafe base64 string taken from configuration
(``security.secret_key``) or read from a key file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from branch_sync.errors import CredentialError

logger = logging.getLogger(__name__)


def generate_key() -> str:
    """Return a new random Fernet key."""
    return Fernet.generate_key().decode("ascii")


def load_or_create_key(key_file: Path) -> str:
    """Read the key stored in *key_file*, creating the file if missing.

    A new key file is written with ``0600`` permissions.
    """
    if key_file.exists():
        return key_file.read_text(encoding="ascii").strip()

    key = generate_key()
    key_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as fh:
        fh.write(key + "\n")
    logger.warning("Generated new credential key at %s; back it up", key_file)
    return key


class CredentialCipher:
    """Encrypt and decrypt location passwords.

    Args:
        key: Fernet key (urlsafe base64, 32 bytes decoded).

    Raises:
        CredentialError: If the key is malformed.
    """

    def __init__(self, key: str | bytes) -> None:
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise CredentialError(f"Invalid credential key: {exc}") from exc

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a stored token.

        Raises:
            CredentialError: If the token was not produced with this key.
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise CredentialError(
                "Stored password cannot be decrypted; re-enter it for this location"
            ) from exc
