"""
Argus Escrow — At-Rest Encryption for Payout Addresses
Uses Fernet symmetric encryption from the cryptography library.
Encryption key is loaded from FERNET_KEY environment variable — never hardcoded.
"""
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from argus.config import get_settings

logger = logging.getLogger("argus.encryption")


@lru_cache()
def _get_fernet() -> Fernet:
    """
    Get a cached Fernet cipher instance.

    Raises RuntimeError if the key is not configured.
    """
    key = get_settings().FERNET_KEY
    if not key:
        raise RuntimeError(
            "FERNET_KEY environment variable is not set. "
            "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(key.encode("utf-8"))


def encrypt_value(plaintext: str) -> str:
    """Encrypt a string, returning URL-safe base64 ciphertext."""
    if not plaintext:
        return plaintext
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_value(ciphertext: str) -> str:
    """
    Decrypt a Fernet ciphertext back to plaintext.

    Raises:
        ValueError: If decryption fails (tampered or wrong key)
    """
    if not ciphertext:
        return ciphertext
    try:
        return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt value — possible key mismatch or data tampering")
        raise ValueError("Decryption failed — data may be corrupted or key has changed")


class EncryptedString(TypeDecorator):
    """
    Text column that is transparently encrypted on write and decrypted on read.

    Fernet output is non-deterministic, so these columns cannot be used in
    equality filters; compare after loading instead.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return encrypt_value(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return decrypt_value(value)


def mask_address(address: str, keep: int = 10) -> str:
    """Shorten an address for log output."""
    if not address or len(address) <= keep:
        return address
    return f"{address[:keep]}…"
