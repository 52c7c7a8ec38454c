"""Ledger of OAuth state nonces that have already been redeemed."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class ConsumedOAuthState(Base):
    """A redeemed OAuth state nonce. Presence means the state is spent."""

    __tablename__ = "consumed_oauth_states"

    nonce: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    consumed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ConsumedOAuthState(nonce='{self.nonce[:8]}...')>"
