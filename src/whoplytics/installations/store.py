"""Installation store: durable tenant -> installation mapping.

Every read is keyed by the identifier it was given and the returned record is
re-checked against that key before it leaves the store, so a query scoped to
one tenant can never hand back another tenant's row. Database failures are
raised as ``StoreUnavailable``; ``None`` always means "no such installation".
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import MissingRequiredField, StoreUnavailable
from ..models.base import utcnow
from ..models.installation import Installation

logger = logging.getLogger(__name__)

UPSERT_FIELDS = frozenset({"experience_id", "user_id", "username", "access_token", "plan"})


@dataclass(frozen=True)
class InstallationRecord:
    """Read-only view of an installation row."""

    tenant_id: str
    experience_id: Optional[str]
    user_id: Optional[str]
    username: Optional[str]
    access_token: str
    plan: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: Installation) -> "InstallationRecord":
        return cls(
            tenant_id=row.tenant_id,
            experience_id=row.experience_id,
            user_id=row.user_id,
            username=row.username,
            access_token=row.access_token,
            plan=row.plan,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class InstallationLookup(Protocol):
    """Read side of the store, as consumed by the resolver and sessions."""

    async def find_by_tenant_id(self, tenant_id: str) -> Optional[InstallationRecord]:
        ...

    async def find_by_experience_id(self, experience_id: str) -> Optional[InstallationRecord]:
        ...


class InstallationStore:
    """SQLAlchemy-backed installation store bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_tenant_id(self, tenant_id: str) -> Optional[InstallationRecord]:
        """Return the installation for *tenant_id*, or ``None``."""
        if not tenant_id:
            raise ValueError("tenant_id is required")
        row = await self._first(select(Installation).where(Installation.tenant_id == tenant_id))
        if row is None:
            return None
        if row.tenant_id != tenant_id:
            logger.error("Tenant isolation violation: asked for %s, got %s", tenant_id, row.tenant_id)
            return None
        return InstallationRecord.from_model(row)

    async def find_by_experience_id(self, experience_id: str) -> Optional[InstallationRecord]:
        """Return the installation currently linked to *experience_id*, or ``None``."""
        if not experience_id:
            raise ValueError("experience_id is required")
        row = await self._first(
            select(Installation).where(Installation.experience_id == experience_id)
        )
        if row is None or row.experience_id != experience_id:
            return None
        return InstallationRecord.from_model(row)

    async def find_latest_by_user_id(
        self,
        user_id: str,
        tenant_prefix: Optional[str] = None,
    ) -> Optional[InstallationRecord]:
        """Return the most recently updated installation linked by *user_id*."""
        stmt = select(Installation).where(Installation.user_id == user_id)
        if tenant_prefix:
            stmt = stmt.where(Installation.tenant_id.startswith(tenant_prefix, autoescape=True))
        stmt = stmt.order_by(Installation.updated_at.desc()).limit(1)
        row = await self._first(stmt)
        if row is None or row.user_id != user_id:
            return None
        return InstallationRecord.from_model(row)

    async def upsert(self, tenant_id: str, fields: Mapping[str, Any]) -> InstallationRecord:
        """Update-or-create the installation keyed by *tenant_id*.

        The write is a single ``INSERT .. ON CONFLICT DO UPDATE`` so concurrent
        upserts for the same tenant cannot lose updates. Setting
        ``experience_id`` detaches that experience from any other tenant first.
        Creating a new installation requires ``access_token``.
        """
        if not tenant_id:
            raise MissingRequiredField("tenant_id")
        unknown = set(fields) - UPSERT_FIELDS
        if unknown:
            raise ValueError(f"Unknown installation fields: {', '.join(sorted(unknown))}")

        values = {k: v for k, v in fields.items() if v is not None}
        now = utcnow()

        try:
            experience_id = values.get("experience_id")
            if experience_id:
                await self.session.execute(
                    update(Installation)
                    .where(
                        Installation.experience_id == experience_id,
                        Installation.tenant_id != tenant_id,
                    )
                    .values(experience_id=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )

            if "access_token" in values:
                await self.session.execute(self._insert_or_update(tenant_id, values, now))
            else:
                result = await self.session.execute(
                    update(Installation)
                    .where(Installation.tenant_id == tenant_id)
                    .values(**values, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await self.session.rollback()
                    raise MissingRequiredField("access_token")

            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Installation upsert failed for %s: %s", tenant_id, e)
            raise StoreUnavailable(f"Failed to upsert installation for {tenant_id}") from e

        # Drop any stale identity-map copy before reading back
        self.session.expire_all()
        record = await self.find_by_tenant_id(tenant_id)
        if record is None:
            raise StoreUnavailable(f"Installation for {tenant_id} vanished after upsert")
        logger.info("Upserted installation for %s", tenant_id)
        return record

    def _insert_or_update(self, tenant_id: str, values: dict, now: datetime):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise StoreUnavailable(f"Atomic upsert not supported on {dialect}")

        stmt = insert(Installation).values(
            tenant_id=tenant_id,
            plan=values.get("plan", "free"),
            created_at=now,
            updated_at=now,
            **{k: v for k, v in values.items() if k != "plan"},
        )
        return stmt.on_conflict_do_update(
            index_elements=[Installation.tenant_id],
            set_={**values, "updated_at": now},
        )

    async def _first(self, stmt) -> Optional[Installation]:
        try:
            result = await self.session.execute(stmt)
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error("Installation lookup failed: %s", e)
            raise StoreUnavailable("Installation lookup failed") from e
