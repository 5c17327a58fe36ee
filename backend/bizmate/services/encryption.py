"""Fernet encryption for OAuth tokens stored at rest."""

from cryptography.fernet import Fernet, InvalidToken

from bizmate.core.config import settings


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


class EncryptionService:
    """Encrypts and decrypts credential tokens with Fernet.

    Fernet authenticates every ciphertext, so a token row tampered with in
    the database fails to decrypt instead of yielding a wrong bearer token.

    The key is a URL-safe base64-encoded 32-byte key, generated with
    ``Fernet.generate_key()``.
    """

    def __init__(self, encryption_key: str | None = None):
        """Initialize EncryptionService.

        Args:
            encryption_key: Fernet key. Defaults to settings.encryption_key.

        Raises:
            EncryptionError: If the key is missing or malformed.
        """
        key = encryption_key or settings.encryption_key

        if not key:
            raise EncryptionError(
                "Encryption key not configured. "
                "Set the ENCRYPTION_KEY environment variable to a Fernet key."
            )

        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise EncryptionError(f"Invalid encryption key: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token.

        Raises:
            EncryptionError: If the token is empty
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt empty string")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored token.

        Raises:
            EncryptionError: If the ciphertext is empty, corrupted, or was
                encrypted with a different key
        """
        if not ciphertext:
            raise EncryptionError("Cannot decrypt empty string")

        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise EncryptionError(
                "Decryption failed: the stored token is corrupted "
                "or was encrypted with a different key."
            ) from e
