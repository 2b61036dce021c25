"""
Encryption utilities for secrets stored in the backup profile (archive password,
object-storage secret keys, SFTP passwords, bot tokens).

Uses Fernet symmetric encryption with a per-installation key file kept next to
the profile. Encrypted values are stored as ``enc:<token>``; anything without
the prefix is treated as plaintext so hand-written profiles keep working.
"""

import os
import base64
from cryptography.fernet import Fernet, InvalidToken


ENCRYPTED_PREFIX = 'enc:'


class SecretError(Exception):
    """Raised when a stored secret cannot be decrypted."""
    pass


class SecretBox:
    """Handles encryption and decryption of profile secrets."""

    def __init__(self, key_file: str):
        """
        Initialize the secret box.

        Args:
            key_file: Path of the Fernet key file (created on first encrypt)
        """
        self.key_file = key_file
        self._fernet = None

    def _load_fernet(self, create: bool) -> Fernet:
        if self._fernet is not None:
            return self._fernet

        if os.path.exists(self.key_file):
            with open(self.key_file, 'rb') as f:
                key = f.read().strip()
        elif create:
            key = Fernet.generate_key()
            os.makedirs(os.path.dirname(self.key_file) or '.', exist_ok=True)
            fd = os.open(self.key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(key)
        else:
            raise SecretError(f"Secret key file not found: {self.key_file}")

        self._fernet = Fernet(key)
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for storage in the profile.

        Args:
            plaintext: String to encrypt

        Returns:
            ``enc:``-prefixed, base64-encoded token
        """
        fernet = self._load_fernet(create=True)
        encrypted_bytes = fernet.encrypt(plaintext.encode())
        return ENCRYPTED_PREFIX + base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, value: str) -> str:
        """
        Decrypt a stored value; plaintext values are returned unchanged.

        Args:
            value: Stored value, possibly ``enc:``-prefixed

        Returns:
            Plaintext string

        Raises:
            SecretError: If the key file is missing or the token is invalid
        """
        if not is_encrypted(value):
            return value

        fernet = self._load_fernet(create=False)
        try:
            encrypted_bytes = base64.urlsafe_b64decode(value[len(ENCRYPTED_PREFIX):].encode())
            return fernet.decrypt(encrypted_bytes).decode()
        except (InvalidToken, ValueError) as e:
            raise SecretError(f"Failed to decrypt secret (wrong key file?): {e}")


def is_encrypted(value) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)
