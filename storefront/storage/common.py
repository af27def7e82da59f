"""Storage helpers shared between the memory and postgres backends."""

from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from storefront.logging import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness checks and lookups."""
    return (email or "").strip().lower()


def token_digest(token: str) -> str:
    """Hash a one-time token so only its digest is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def to_money(value: Any) -> Decimal:
    """Coerce a numeric value into a two-decimal amount."""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def optional_money(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_money(value)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Return a row column if present, otherwise the default."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def generate_uuid() -> str:
    return str(uuid.uuid4())


class SecretCipher:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret key material is required for TOTP encryption")
        digest = hashlib.sha256(key_material.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            # Rotated SECRET_KEY or a value written before encryption was enabled
            logger.warning("totp_secret_decrypt_failed")
            return None
