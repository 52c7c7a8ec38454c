"""Encryption of access credentials at rest."""

from .encryption import encrypt_value, decrypt_value, is_encrypted, get_fernet
from .types import EncryptedText

__all__ = [
    "encrypt_value",
    "decrypt_value",
    "is_encrypted",
    "get_fernet",
    "EncryptedText",
]
