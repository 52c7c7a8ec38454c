"""Installation model linking a Whop company to its access credential."""

from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from ..security.types import EncryptedText


class Installation(Base):
    """Durable record of the app being installed for one company (tenant)."""

    __tablename__ = "installations"

    # Sole stable identity anchor ("biz_...")
    tenant_id: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False
    )

    # Hint only: maps to at most one tenant at a time
    experience_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, index=True, nullable=True
    )

    # Whop user who installed or last linked the app
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    access_token: Mapped[str] = mapped_column(EncryptedText, nullable=False)

    plan: Mapped[str] = mapped_column(String(32), default="free", nullable=False)

    def __repr__(self) -> str:
        return f"<Installation(tenant_id='{self.tenant_id}', plan='{self.plan}')>"
