"""
Fernet encryption for tool credentials at rest (the authentication block).

    token = encrypt_json({"type": "bearer", "config": {"token": "..."}})
    auth = decrypt_json(token)

ENCRYPTION_KEY may be a Fernet key or any passphrase (stretched with sha256).
Without one, a key is derived from DATABASE_URL so dev setups work; production
must set ENCRYPTION_KEY.
"""

import base64
import hashlib
import json
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from toolengine.config.settings import settings

logger = logging.getLogger(__name__)

FERNET_KEY_LENGTH = 44


def _stretch(secret: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())


@lru_cache(maxsize=1)
def _cipher() -> Fernet:
    configured = settings.encryption_key
    if not configured:
        logger.warning("[DB] ENCRYPTION_KEY is not set; deriving the credential key from DATABASE_URL")
        return Fernet(_stretch(settings.database_url))
    if len(configured) == FERNET_KEY_LENGTH:
        try:
            return Fernet(configured.encode())
        except ValueError:
            pass
    return Fernet(_stretch(configured))


def reset_cipher() -> None:
    """Forget the cached cipher so the next call re-reads settings.encryption_key."""
    _cipher.cache_clear()


def encrypt(plaintext: str) -> str:
    return _cipher().encrypt(plaintext.encode()).decode() if plaintext else ""


def decrypt(token: str) -> str:
    """Raises ValueError when `token` was not produced with the configured key."""
    if not token:
        return ""
    try:
        return _cipher().decrypt(token.encode()).decode()
    except InvalidToken as e:
        raise ValueError("credential could not be decrypted with the configured ENCRYPTION_KEY") from e


def encrypt_json(data: Optional[Dict[str, Any]]) -> str:
    return encrypt(json.dumps(data, separators=(",", ":"))) if data else ""


def decrypt_json(token: str) -> Dict[str, Any]:
    plaintext = decrypt(token)
    return json.loads(plaintext) if plaintext else {}
