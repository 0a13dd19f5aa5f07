"""
Field-level encryption for credential secrets (access/refresh tokens,
client secret) using Fernet from the `cryptography` package.

Without ENCRYPTION_KEY (development only) values are stored as given.
"""

import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from adops.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def _fernet() -> Optional[Fernet]:
    settings = get_settings()
    if not settings.encryption_key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        logger.warning("ENCRYPTION_KEY not set; credential secrets are stored in plaintext (development only).")
        return None
    try:
        return Fernet(settings.encryption_key.encode())
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc


def encrypt_value(plaintext: Optional[str]) -> Optional[str]:
    if plaintext is None:
        return None
    f = _fernet()
    return f.encrypt(plaintext.encode()).decode() if f else plaintext


def decrypt_value(ciphertext: Optional[str]) -> Optional[str]:
    if ciphertext is None:
        return None
    f = _fernet()
    if f is None:
        return ciphertext
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Rows written before a key was configured hold plaintext
        logger.warning("Credential value is not Fernet ciphertext; using it as stored.")
        return ciphertext
