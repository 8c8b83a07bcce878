"""User-scoped protection of stored secrets.

Secrets are encrypted with a Fernet key that lives in the current user's
profile directory. A blob written under one profile cannot be decoded by
another profile because the key is not shared, so ``unprotect`` reports
``None`` rather than raising.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import settings

logger = logging.getLogger(__name__)


class SecretProtectionError(RuntimeError):
    """Raised when the user key cannot be read, created or used."""


class SecretProtector:
    """Encrypt and decrypt opaque secret blobs for the current user."""

    def __init__(self, key_path: Optional[Path] = None) -> None:
        self._key_path = key_path
        self._fernet: Optional[Fernet] = None

    @property
    def key_path(self) -> Path:
        return self._key_path or settings.key_path()

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            try:
                self._fernet = Fernet(self._load_or_create_key())
            except (OSError, ValueError) as exc:
                raise SecretProtectionError(
                    f"Secret protection key at {self.key_path} is unusable: {exc}"
                ) from exc
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self.key_path
        if path.is_file():
            return path.read_bytes().strip()

        path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        # Owner read/write only; the key is what scopes secrets to this user
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(key)
        logger.info("Created secret protection key at %s", path)
        return key

    def protect(self, plain_text: str) -> str:
        """Return an opaque encrypted blob for ``plain_text``.

        Raises ``SecretProtectionError`` when the key file is unusable.
        """
        if not plain_text:
            return ""
        return self._get_fernet().encrypt(plain_text.encode("utf-8")).decode("ascii")

    def unprotect(self, blob: Optional[str]) -> Optional[str]:
        """Decrypt a blob, returning None when it cannot be read by this user."""
        if not blob:
            return None
        try:
            return self._get_fernet().decrypt(blob.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError, UnicodeError) as exc:
            logger.warning(
                "Stored secret could not be decrypted (%s); treating it as absent",
                type(exc).__name__,
            )
            return None
        except SecretProtectionError as exc:
            logger.warning("%s", exc)
            return None


secret_protector = SecretProtector()
