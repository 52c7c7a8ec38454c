"""One-time-use enforcement for OAuth state nonces.

State is never stored before the callback. Only once a state has been
accepted is its nonce written down, and the unique constraint on the nonce
column turns a second redemption into ``ReplayedState``. Rows are only
needed while a state could still pass the age check, so anything older
than twice the maximum state age is pruned as new nonces arrive.
"""

import logging
from datetime import timedelta
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ReplayedState, StoreUnavailable
from ..models.base import utcnow
from ..models.oauth_state import ConsumedOAuthState
from ..observability.logging import redact

logger = logging.getLogger(__name__)


class ReplayGuard(Protocol):
    async def consume(self, nonce: str) -> None:
        ...


class NonceLedger:
    """Database-backed ledger of redeemed state nonces."""

    def __init__(self, session: AsyncSession, retention: timedelta = timedelta(minutes=20)):
        self.session = session
        self.retention = retention

    async def consume(self, nonce: str) -> None:
        """Record *nonce* as spent.

        Raises:
            ReplayedState: the nonce was already spent.
            StoreUnavailable: the ledger could not be written.
        """
        now = utcnow()
        try:
            await self.session.execute(
                delete(ConsumedOAuthState).where(
                    ConsumedOAuthState.consumed_at < now - self.retention
                ).execution_options(synchronize_session=False)
            )
            self.session.add(ConsumedOAuthState(nonce=nonce, consumed_at=now))
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning("Rejected replayed OAuth state %s", redact(nonce))
            raise ReplayedState("OAuth state has already been used") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to record OAuth state nonce: %s", e)
            raise StoreUnavailable("Could not record OAuth state") from e
