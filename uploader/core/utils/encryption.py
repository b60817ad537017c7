"""
Encryption utilities for securing upstream access tokens held in sessions.
"""

import base64
import json
import logging
import secrets
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

DEFAULT_KDF_ITERATIONS = 300_000
MIN_KDF_ITERATIONS = 100_000


class CredentialEncryption:
    """Handles encryption and decryption of sensitive credential data.

    Sessions live only in process memory, so the key-derivation salt is
    generated per instance and never persisted. Anything encrypted by one
    instance can only be decrypted by that same instance.
    """

    def __init__(self, secret: str, kdf_iterations: int = DEFAULT_KDF_ITERATIONS):
        """Initialize encryption with a key derived from the app's session secret."""
        if not secret:
            raise ValueError("Encryption secret cannot be empty")
        self._salt = secrets.token_bytes(16)
        self.cipher = self._create_cipher(secret, self._bounded_iterations(kdf_iterations))

    @staticmethod
    def _bounded_iterations(kdf_iterations: int) -> int:
        if kdf_iterations < MIN_KDF_ITERATIONS:
            logger.warning(
                f"KDF iterations {kdf_iterations} below recommended minimum, "
                f"using {MIN_KDF_ITERATIONS:,}"
            )
            return MIN_KDF_ITERATIONS
        return kdf_iterations

    def _create_cipher(self, secret: str, kdf_iterations: int) -> Fernet:
        """Create a Fernet cipher from the secret via PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self._salt,
            iterations=kdf_iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
        return Fernet(key)

    def encrypt_value(self, value: Any) -> str:
        """
        Encrypt a JSON-serializable value.

        Args:
            value: Data to protect

        Returns:
            Encrypted string (URL-safe base64, as produced by Fernet)
        """
        try:
            json_data = json.dumps({"value": value})
            return self.cipher.encrypt(json_data.encode("utf-8")).decode("utf-8")
        except (TypeError, ValueError) as e:
            logger.error(
                "Failed to encrypt credentials",
                extra={"error_type": type(e).__name__},
            )
            raise

    def decrypt_value(self, encrypted_data: str) -> Optional[Any]:
        """
        Decrypt a value produced by encrypt_value.

        Returns:
            The original value, or None if the token is invalid
        """
        try:
            decrypted_bytes = self.cipher.decrypt(encrypted_data.encode("utf-8"))
            return json.loads(decrypted_bytes.decode("utf-8"))["value"]
        except (InvalidToken, ValueError, KeyError) as e:
            logger.error(
                "Failed to decrypt credentials",
                extra={"error_type": type(e).__name__},
            )
            return None
