"""SQLAlchemy column type that keeps access credentials encrypted at rest."""

from typing import Optional

from sqlalchemy import Text, TypeDecorator

from .encryption import decrypt_value, encrypt_value


class EncryptedText(TypeDecorator):
    """Encrypts on INSERT/UPDATE and decrypts on SELECT."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return encrypt_value(value)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return decrypt_value(value)
