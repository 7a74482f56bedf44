"""
Lease repository for database operations.
Implements the atomic lease primitives used for leader election and
single-flight execution locks.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from jobcoord.db.models import LeaseModel
from jobcoord.types.records import LeaseRecord

logger = logging.getLogger(__name__)


class LeaseRepository:
    """
    Repository for lease database operations.

    Every mutation is a single conditional statement:
    - acquire_if_free: INSERT ... ON CONFLICT DO NOTHING
    - steal_if_expired: UPDATE ... WHERE expires_at <= now (bumps the token)
    - renew_if_owner: UPDATE ... WHERE holder_id AND fencing_token match
    - release / invalidate: UPDATE that expires the lease in place
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def get(self, key: str) -> LeaseRecord | None:
        """
        Get a lease by key.

        Args:
            key: The lease key.

        Returns:
            The LeaseRecord or None if the key was never acquired.
        """
        stmt = select(LeaseModel).where(LeaseModel.key == key)
        result = await self._session.execute(stmt)
        lease = result.scalar_one_or_none()
        return lease.to_record() if lease else None

    async def acquire_if_free(
        self,
        key: str,
        holder_id: str,
        ttl: timedelta,
        now: datetime,
    ) -> LeaseRecord | None:
        """
        Create the lease if the key has never been held.

        Args:
            key: The lease key.
            holder_id: Identity of the acquiring holder.
            ttl: Lease duration.
            now: Current time.

        Returns:
            The new LeaseRecord (token 1), or None if the row already exists.
        """
        stmt = (
            insert(LeaseModel)
            .values(
                key=key,
                holder_id=holder_id,
                fencing_token=1,
                expires_at=now + ttl,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[LeaseModel.key])
            .returning(LeaseModel)
        )
        result = await self._session.execute(stmt)
        lease = result.scalar_one_or_none()
        return lease.to_record() if lease else None

    async def steal_if_expired(
        self,
        key: str,
        holder_id: str,
        ttl: timedelta,
        now: datetime,
    ) -> LeaseRecord | None:
        """
        Take over an expired lease, incrementing its fencing token.

        Args:
            key: The lease key.
            holder_id: Identity of the acquiring holder.
            ttl: Lease duration.
            now: Current time.

        Returns:
            The updated LeaseRecord, or None if the lease is still live.
        """
        stmt = (
            update(LeaseModel)
            .where(
                and_(
                    LeaseModel.key == key,
                    LeaseModel.expires_at <= now,
                )
            )
            .values(
                holder_id=holder_id,
                fencing_token=LeaseModel.fencing_token + 1,
                expires_at=now + ttl,
                updated_at=now,
            )
            .returning(LeaseModel)
        )
        result = await self._session.execute(stmt)
        lease = result.scalar_one_or_none()

        if lease:
            logger.info(
                "Took over expired lease",
                extra={"lease_key": key, "holder_id": holder_id,
                       "fencing_token": lease.fencing_token},
            )
        return lease.to_record() if lease else None

    async def renew_if_owner(
        self,
        key: str,
        holder_id: str,
        token: int,
        ttl: timedelta,
        now: datetime,
    ) -> LeaseRecord | None:
        """
        Extend a live lease held by ``holder_id`` with ``token``.

        Returns:
            The renewed LeaseRecord, or None if the caller is no longer holder.
        """
        stmt = (
            update(LeaseModel)
            .where(
                and_(
                    LeaseModel.key == key,
                    LeaseModel.holder_id == holder_id,
                    LeaseModel.fencing_token == token,
                    LeaseModel.expires_at > now,
                )
            )
            .values(expires_at=now + ttl, updated_at=now)
            .returning(LeaseModel)
        )
        result = await self._session.execute(stmt)
        lease = result.scalar_one_or_none()
        return lease.to_record() if lease else None

    async def release(
        self,
        key: str,
        holder_id: str,
        token: int,
        now: datetime,
    ) -> bool:
        """
        Expire a lease early. The row is kept so the token stays monotonic.

        Returns:
            True if the caller held the lease and it was released.
        """
        stmt = (
            update(LeaseModel)
            .where(
                and_(
                    LeaseModel.key == key,
                    LeaseModel.holder_id == holder_id,
                    LeaseModel.fencing_token == token,
                    LeaseModel.expires_at > now,
                )
            )
            .values(expires_at=now, updated_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def invalidate(self, key: str, token: int, now: datetime) -> bool:
        """
        Fence out the holder of ``token``: bump the token and expire the lease.

        Any later conditional write carrying ``token`` is rejected.

        Returns:
            True if the lease still carried ``token`` and was invalidated.
        """
        stmt = (
            update(LeaseModel)
            .where(
                and_(
                    LeaseModel.key == key,
                    LeaseModel.fencing_token == token,
                )
            )
            .values(
                fencing_token=LeaseModel.fencing_token + 1,
                expires_at=now,
                updated_at=now,
            )
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.warning(
                "Invalidated lease",
                extra={"lease_key": key, "fencing_token": token},
            )
        return count > 0
