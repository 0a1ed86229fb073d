# paperless_ai_db/crypto.py
"""Helpers for encrypting API tokens and keys at rest."""
import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from paperless_ai_db.config import Settings, settings as default_settings
from paperless_ai_db.errors import InitializationError


def _derive_key(raw: str) -> bytes:
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _fernet(app_settings: Optional[Settings]) -> Fernet:
    raw = (app_settings or default_settings).encryption_key
    if not raw:
        raise InitializationError("ENCRYPTION_KEY must be set to encrypt or decrypt secrets")
    return Fernet(_derive_key(raw))


def encrypt_secret(value: str, app_settings: Optional[Settings] = None) -> str:
    return _fernet(app_settings).encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_secret(value: str, app_settings: Optional[Settings] = None) -> str:
    fernet = _fernet(app_settings)
    try:
        return fernet.decrypt(value.encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError) as exc:
        raise ValueError("Unable to decrypt secret") from exc


def mask_secret(value: str) -> str:
    """Masked form of a secret for logs and listings; keeps the last 4 characters."""
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "•" * len(trimmed)
    return "•" * 8 + trimmed[-4:]
