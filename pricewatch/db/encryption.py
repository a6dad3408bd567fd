"""Encryption of channel credentials at rest.

Bot tokens and app tokens for notification channels are stored through
the EncryptedString column type. Keys come from settings: the primary key
encrypts, any rotated-out keys are still accepted for decryption.
"""

import base64
import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from sqlalchemy import String, TypeDecorator

from pricewatch import metrics
from pricewatch.config import settings

logger = logging.getLogger(__name__)


def normalize_key(raw: str) -> bytes:
    """
    Turn a configured key into a Fernet key.

    A proper Fernet key (urlsafe base64 of 32 bytes) is used as is; any
    other string is padded or cut to 32 bytes.
    """
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw.encode()
    except (ValueError, TypeError):
        pass
    return base64.urlsafe_b64encode(raw.encode().ljust(32)[:32])


class CredentialCipher:
    """Encrypts and decrypts credential strings with one or more keys."""

    def __init__(self, primary_key: str = "", previous_keys: Optional[list[str]] = None):
        if primary_key:
            keys = [normalize_key(primary_key)]
        else:
            logger.warning(
                "ENCRYPTION_KEY not set, generating temporary key "
                "(stored channel credentials will not survive a restart)"
            )
            keys = [Fernet.generate_key()]
        keys.extend(normalize_key(k) for k in previous_keys or [] if k)
        self._fernet = MultiFernet([Fernet(k) for k in keys])

    def encrypt(self, value: str) -> str:
        if not value:
            return value
        try:
            return self._fernet.encrypt(value.encode()).decode()
        except (ValueError, TypeError) as e:
            metrics.encryption_errors_total.labels(operation="encrypt").inc()
            logger.error(f"Encryption failed: {e}")
            raise

    def decrypt(self, value: str) -> Optional[str]:
        """
        Decrypt a stored credential.

        Returns None for values no configured key can open, so the channel
        using it is treated as unconfigured instead of failing the row load.
        """
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except (InvalidToken, ValueError, TypeError) as e:
            metrics.encryption_errors_total.labels(operation="decrypt").inc()
            logger.error(
                f"Credential decryption failed: {type(e).__name__} "
                f"(value_length={len(value)}); key rotated without keeping the old key?"
            )
            return None

    def rotate(self, value: str) -> str:
        """Re-encrypt a stored value under the primary key."""
        return self._fernet.rotate(value.encode()).decode()


_cipher: Optional[CredentialCipher] = None


def get_cipher() -> CredentialCipher:
    global _cipher
    if _cipher is None:
        _cipher = CredentialCipher(
            settings.encryption_key,
            [k.strip() for k in settings.previous_encryption_keys.split(",")],
        )
    return _cipher


class EncryptedString(TypeDecorator):
    """String column whose value is encrypted on write and decrypted on read."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect: Any) -> Optional[str]:
        if value is None:
            return None
        return get_cipher().encrypt(value)

    def process_result_value(self, value: Optional[str], dialect: Any) -> Optional[str]:
        if value is None:
            return None
        return get_cipher().decrypt(value)
