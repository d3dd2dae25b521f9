"""
Seed encryption using Fernet with per-record HKDF-derived keys.

Each stored blob is ``salt || fernet_token``: a random 16-byte salt feeds
HKDF-SHA256 (with the user id bound into ``info``) to derive the Fernet key,
and Fernet itself adds a random IV and an HMAC tag per token.
"""

import base64
import logging
import os

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

SALT_BYTES = 16
HKDF_INFO_PREFIX = b"refpay/user-seed/"


class SeedEncryption:
    """
    Encrypts and decrypts per-user master seeds.

    The same secret always decrypts blobs it produced; rotating the secret
    makes every existing blob undecryptable.
    """

    def __init__(self, encryption_key: str):
        """
        Args:
            encryption_key: Operator secret used as HKDF input key material

        Raises:
            ValueError: If encryption_key is empty
        """
        if not encryption_key:
            logger.error("Seed encryption key is empty")
            raise ValueError("Invalid encryption key: empty")
        self._ikm = encryption_key.encode()

    def _fernet(self, salt: bytes, user_id: str) -> Fernet:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            info=HKDF_INFO_PREFIX + user_id.encode(),
        )
        return Fernet(base64.urlsafe_b64encode(hkdf.derive(self._ikm)))

    def encrypt(self, seed: bytes, user_id: str) -> bytes:
        """
        Encrypts a seed for storage.

        Args:
            seed: Raw master seed bytes
            user_id: Owner of the seed, bound into the key derivation

        Returns:
            ``salt || token`` bytes suitable for database storage
        """
        salt = os.urandom(SALT_BYTES)
        return salt + self._fernet(salt, user_id).encrypt(seed)

    def decrypt(self, blob: bytes, user_id: str) -> bytes:
        """
        Decrypts a stored seed.

        Raises:
            ValueError: If decryption fails (wrong key, wrong user, tampered data)
        """
        if len(blob) <= SALT_BYTES:
            logger.error("Seed blob too short", extra={"user_id": user_id})
            raise ValueError("Decryption failed: truncated seed blob")

        salt, token = blob[:SALT_BYTES], blob[SALT_BYTES:]
        try:
            return self._fernet(salt, user_id).decrypt(token)
        except InvalidToken as e:
            logger.error(
                "Seed decryption failed: invalid token or wrong key",
                extra={"user_id": user_id},
            )
            raise ValueError("Decryption failed: invalid token or wrong key") from e


def generate_encryption_key() -> str:
    """
    Generates a random secret for REFPAY_DERIVATION__SEED_ENCRYPTION_KEY.

    Example:
        >>> key = generate_encryption_key()
        >>> print(f"REFPAY_DERIVATION__SEED_ENCRYPTION_KEY={key}")
    """
    return Fernet.generate_key().decode()
