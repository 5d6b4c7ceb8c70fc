"""Encryption codec for configuration values at rest.

Values are JSON-encoded and then encrypted with Fernet. Decoding is lenient:
anything that is not a valid Fernet token is returned unchanged, so rows
written as plaintext before encryption was enabled stay readable. The price
is that a corrupted token is indistinguishable from legacy plaintext.
"""

import base64
import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from uconfig.logger.logger import get_logger
from uconfig.logger.types import Category

# Static salt; rotating the key means rotating the secret.
_SALT = b"uconfig-values-v1"
_ITERATIONS = 100_000


def derive_fernet_key(secret: str) -> bytes:
    """Derive a urlsafe base64 Fernet key from an arbitrary secret string."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_SALT,
        iterations=_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class ValueCodec:
    """Encrypts values before they are written and decrypts them after reads."""

    def __init__(self, secret: str) -> None:
        """
        Initialize ValueCodec.

        Args:
            secret: Encryption secret (UCONFIG_ENCRYPTION_KEY)

        Raises:
            ValueError: If the secret is empty
        """
        if not secret:
            raise ValueError("Encryption secret must not be empty")
        self._fernet = Fernet(derive_fernet_key(secret))
        self.logger = get_logger().with_category(Category.SECURITY)

    def encode(self, value: Any) -> str | None:
        """Encrypt a value; None passes through."""
        if value is None:
            return None
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def decode(self, raw: str | bytes | None) -> Any:
        """Decrypt a stored value; non-tokens are returned as they are."""
        if raw is None:
            return None
        token = raw.encode("utf-8") if isinstance(raw, str) else raw
        try:
            plaintext = self._fernet.decrypt(token).decode("utf-8")
        except (InvalidToken, ValueError, TypeError):
            self.logger.trace("Value is not encrypted, returning as stored")
            return raw
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError:
            # Encrypted bare string written without JSON framing
            return plaintext
