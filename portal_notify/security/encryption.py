"""
Encryption for push endpoint tokens at rest.
Uses Fernet symmetric encryption; ciphertext is stored as text in JSON.
"""

from cryptography.fernet import Fernet, InvalidToken

from portal_notify.config import settings
from portal_notify.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def encryption_enabled() -> bool:
    return bool(settings.ENCRYPTION_KEY)


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from environment.

    Raises:
        EncryptionError: If encryption key is not configured
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_endpoint(token: str) -> str:
    """
    Encrypt a push endpoint token for storage.

    Args:
        token: Plain text endpoint token

    Returns:
        str: Fernet token (URL-safe base64 text)
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    try:
        return _get_fernet().encrypt(token.encode("utf-8")).decode("utf-8")
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to encrypt endpoint token", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_endpoint(encrypted: str) -> str:
    """
    Decrypt a stored push endpoint token.

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if not encrypted or not isinstance(encrypted, str):
        raise EncryptionError("Encrypted token must be a non-empty string")

    try:
        return _get_fernet().decrypt(encrypted.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        logger.error("Endpoint decryption failed - invalid token", error=str(e))
        raise EncryptionError("Invalid or corrupted token") from e
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to decrypt endpoint token", error=str(e))
        raise EncryptionError(f"Decryption failed: {e}") from e


def generate_new_key() -> str:
    """
    Generate a new Fernet encryption key.

    Note:
        Use this for initial setup or key rotation.
        Store the result in your environment variables.
    """
    return Fernet.generate_key().decode("utf-8")
