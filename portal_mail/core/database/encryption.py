"""
Database Field Encryption Module

Provides SQLAlchemy TypeDecorators and value helpers for encrypting sensitive
fields. Uses Fernet symmetric encryption (AES-128 in CBC mode with HMAC-SHA256).

KEY ROTATION SUPPORT:
- DB_ENCRYPTION_KEY: Primary key used for all NEW encryptions
- DB_ENCRYPTION_KEY_OLD: Comma-separated list of previous keys for decryption
  Example: DB_ENCRYPTION_KEY_OLD=oldkey1,oldkey2

Encrypted data:
- OAuth access/refresh tokens of connected mailboxes (value helpers)
- Message bodies (HTML and text)
- Draft bodies and scheduled-send payloads

Unencrypted (for search/filtering):
- Subjects, addresses, labels, flags, timestamps
"""
import os
import json
import logging
from typing import Any, Optional, List
from sqlalchemy import TypeDecorator, Text
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

FERNET_PREFIX = 'gAAAAA'

# Ciphers are built on first use so the key can be provided after import
primary_cipher: Optional[Fernet] = None
multi_cipher: Optional[MultiFernet] = None
old_ciphers: List[Fernet] = []


def _initialize_ciphers():
    """
    Initialize encryption ciphers with key rotation support.

    Uses MultiFernet to support decryption with old keys while
    encrypting only with the primary (newest) key.
    """
    global primary_cipher, multi_cipher, old_ciphers

    encryption_key = os.getenv('DB_ENCRYPTION_KEY')
    old_keys_raw = os.getenv('DB_ENCRYPTION_KEY_OLD', '')

    if not encryption_key:
        logger.critical(
            "DB_ENCRYPTION_KEY not set in environment. "
            "Generate a key with: portal-mail generate-key"
        )
        raise ValueError("DB_ENCRYPTION_KEY is required - tokens and bodies are stored encrypted")

    try:
        primary = Fernet(encryption_key.encode('utf-8'))
    except Exception as e:
        logger.critical(f"Failed to initialize encryption cipher: {e}")
        raise RuntimeError(f"Failed to initialize encryption cipher: {e}")

    all_ciphers = [primary]
    olds = []
    old_keys = [k.strip() for k in old_keys_raw.split(',') if k.strip()]
    for i, old_key in enumerate(old_keys):
        try:
            old_cipher = Fernet(old_key.encode('utf-8'))
        except Exception as e:
            logger.error(f"Invalid old encryption key #{i+1}: {e}")
            raise ValueError(f"Invalid old encryption key at position {i+1}")
        olds.append(old_cipher)
        all_ciphers.append(old_cipher)

    primary_cipher = primary
    old_ciphers = olds
    # MultiFernet encrypts with the first key and decrypts with any
    multi_cipher = MultiFernet(all_ciphers)

    if olds:
        logger.info(f"Database encryption initialized with {len(all_ciphers)} keys (1 primary + {len(olds)} old)")
    else:
        logger.info("Database encryption initialized successfully")


def _ciphers():
    if primary_cipher is None or multi_cipher is None:
        _initialize_ciphers()
    return primary_cipher, multi_cipher


def reinitialize_cipher() -> bool:
    """
    Rebuild the ciphers from the environment.

    Returns:
        True if cipher was successfully initialized, False otherwise
    """
    global primary_cipher, multi_cipher
    primary_cipher = None
    multi_cipher = None
    try:
        _initialize_ciphers()
        return True
    except (ValueError, RuntimeError) as e:
        logger.error(f"Failed to reinitialize encryption cipher: {e}")
        return False


def encrypt_value(value: str) -> str:
    """Encrypt a string with the primary key."""
    primary, _ = _ciphers()
    return primary.encrypt(value.encode('utf-8')).decode('utf-8')


def decrypt_value(value: str) -> str:
    """
    Decrypt a string with any configured key.

    Raises:
        InvalidToken: If no configured key can decrypt the value
    """
    _, multi = _ciphers()
    return multi.decrypt(value.encode('utf-8')).decode('utf-8')


class EncryptedText(TypeDecorator):
    """
    Encrypted text column type.

    Usage:
        class EmailMessage(Base):
            body_text = Column(EncryptedText)

    Storage format: Fernet token (stored as TEXT)
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        try:
            return encrypt_value(value)
        except (ValueError, RuntimeError):
            raise
        except Exception as e:
            logger.error(f"Encryption failed for value of length {len(value)}: {e}")
            raise RuntimeError(f"Failed to encrypt data: {e}")

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None

        # Legacy plaintext rows are returned as-is and encrypted on next write
        if not value.startswith(FERNET_PREFIX):
            return value

        try:
            return decrypt_value(value)
        except InvalidToken as e:
            logger.error(f"Failed to decrypt value - no matching key found: {e}")
            logger.critical("DECRYPTION FAILURE - data encrypted with unknown key")
            return None


class EncryptedJSON(TypeDecorator):
    """
    Encrypted JSON column type.

    Usage:
        class SendStatus(Base):
            payload = Column(EncryptedJSON)

    Storage format: Encrypted JSON string (stored as TEXT)
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[Any], dialect) -> Optional[str]:
        if value is None:
            return None
        try:
            json_str = json.dumps(value)
        except TypeError as e:
            logger.error(f"JSON serialization failed - value is not JSON-serializable: {e}")
            raise ValueError(f"Cannot encrypt non-JSON-serializable value: {e}")
        return encrypt_value(json_str)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[Any]:
        if value is None:
            return None

        if not value.startswith(FERNET_PREFIX):
            try:
                return json.loads(value)
            except json.JSONDecodeError as e:
                logger.warning(f"Unencrypted JSON field failed to parse: {e}")
                return None

        try:
            return json.loads(decrypt_value(value))
        except InvalidToken as e:
            logger.error(f"Failed to decrypt JSON - no matching key found: {e}")
            logger.critical("DECRYPTION FAILURE - JSON encrypted with unknown key")
            return None
        except json.JSONDecodeError as e:
            logger.error(f"Decryption succeeded but JSON parsing failed: {e}")
            logger.critical("DATA CORRUPTION - encrypted JSON is not valid JSON")
            return None


def is_encryption_enabled() -> bool:
    """Check whether a primary key is configured."""
    try:
        _ciphers()
    except (ValueError, RuntimeError):
        return False
    return True


def has_old_keys() -> bool:
    """Check if old encryption keys are configured for rotation."""
    return len(old_ciphers) > 0


def generate_encryption_key() -> str:
    """
    Generate a new Fernet encryption key.

    Returns:
        Base64-encoded encryption key (suitable for DB_ENCRYPTION_KEY env var)
    """
    return Fernet.generate_key().decode('utf-8')


def rotate_encrypted_value(encrypted_value: str) -> Optional[str]:
    """
    Re-encrypt a value with the primary key if it was encrypted with an old key.

    Returns:
        Re-encrypted value (or original if not encrypted), or None on error
    """
    if not encrypted_value or not encrypted_value.startswith(FERNET_PREFIX):
        return encrypted_value

    primary, multi = _ciphers()
    try:
        decrypted = multi.decrypt(encrypted_value.encode('utf-8'))
    except InvalidToken:
        logger.error("Cannot rotate value - no matching key found")
        return None
    return primary.encrypt(decrypted).decode('utf-8')


def needs_rotation(encrypted_value: str) -> bool:
    """Check if an encrypted value was encrypted with an old key."""
    if not encrypted_value or not encrypted_value.startswith(FERNET_PREFIX):
        return False

    primary, _ = _ciphers()
    try:
        primary.decrypt(encrypted_value.encode('utf-8'))
        return False
    except InvalidToken:
        return True


__all__ = [
    'EncryptedText',
    'EncryptedJSON',
    'encrypt_value',
    'decrypt_value',
    'is_encryption_enabled',
    'has_old_keys',
    'generate_encryption_key',
    'reinitialize_cipher',
    'rotate_encrypted_value',
    'needs_rotation',
]
