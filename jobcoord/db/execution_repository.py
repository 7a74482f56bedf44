"""
Execution repository for database operations.
All transitions are fenced: they carry the execution's fencing token and
only apply to non-terminal records.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobcoord.constants import ACTIVE_EXECUTION_STATUSES, ExecutionStatus
from jobcoord.db.models import ExecutionModel
from jobcoord.types.records import ExecutionRecord

logger = logging.getLogger(__name__)


class ExecutionRepository:
    """Repository for execution record database operations."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        execution_id: UUID,
        job_name: str,
        fencing_token: int,
        holder_id: str,
        now: datetime,
    ) -> ExecutionRecord:
        """Insert a RUNNING execution record."""
        stmt = (
            insert(ExecutionModel)
            .values(
                execution_id=execution_id,
                job_name=job_name,
                status=ExecutionStatus.RUNNING,
                fencing_token=fencing_token,
                holder_id=holder_id,
                started_at=now,
                heartbeat_at=now,
                summary={},
            )
            .returning(ExecutionModel)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one().to_record()

    async def get(self, execution_id: UUID) -> ExecutionRecord | None:
        stmt = select(ExecutionModel).where(ExecutionModel.execution_id == execution_id)
        result = await self._session.execute(stmt)
        execution = result.scalar_one_or_none()
        return execution.to_record() if execution else None

    async def heartbeat(
        self,
        execution_id: UUID,
        fencing_token: int,
        summary: dict[str, int],
        now: datetime,
    ) -> bool:
        """
        Record liveness for an active execution.

        A heartbeat on an UNKNOWN record restores it to RUNNING.

        Returns:
            False if the record is terminal or the token was superseded.
        """
        stmt = (
            update(ExecutionModel)
            .where(
                and_(
                    ExecutionModel.execution_id == execution_id,
                    ExecutionModel.fencing_token == fencing_token,
                    ExecutionModel.status.in_(ACTIVE_EXECUTION_STATUSES),
                )
            )
            .values(
                status=ExecutionStatus.RUNNING,
                heartbeat_at=now,
                summary=summary,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def finish(
        self,
        execution_id: UUID,
        fencing_token: int,
        status: ExecutionStatus,
        reason: str | None,
        summary: dict[str, int] | None,
        now: datetime,
    ) -> ExecutionRecord | None:
        """
        Move an active execution to a terminal status.

        Conditional on the fencing token and on the record still being
        RUNNING or UNKNOWN, so a record is finished at most once.

        Returns:
            The updated record, or None if the transition did not apply.
        """
        values: dict = {"status": status, "reason": reason, "ended_at": now}
        if summary is not None:
            values["summary"] = summary

        stmt = (
            update(ExecutionModel)
            .where(
                and_(
                    ExecutionModel.execution_id == execution_id,
                    ExecutionModel.fencing_token == fencing_token,
                    ExecutionModel.status.in_(ACTIVE_EXECUTION_STATUSES),
                )
            )
            .values(**values)
            .returning(ExecutionModel)
        )
        result = await self._session.execute(stmt)
        execution = result.scalar_one_or_none()

        if execution:
            logger.info(
                f"Execution finished as {status.value}",
                extra={
                    "execution_id": str(execution_id),
                    "fencing_token": fencing_token,
                    "reason": reason,
                },
            )
        return execution.to_record() if execution else None

    async def mark_unknown(
        self,
        execution_id: UUID,
        fencing_token: int,
        reason: str,
    ) -> ExecutionRecord | None:
        """Classify a RUNNING execution without recent heartbeat as UNKNOWN."""
        stmt = (
            update(ExecutionModel)
            .where(
                and_(
                    ExecutionModel.execution_id == execution_id,
                    ExecutionModel.fencing_token == fencing_token,
                    ExecutionModel.status == ExecutionStatus.RUNNING,
                )
            )
            .values(status=ExecutionStatus.UNKNOWN, reason=reason)
            .returning(ExecutionModel)
        )
        result = await self._session.execute(stmt)
        execution = result.scalar_one_or_none()
        return execution.to_record() if execution else None

    async def list_active(self) -> list[ExecutionRecord]:
        """List RUNNING and UNKNOWN executions, oldest first."""
        stmt = (
            select(ExecutionModel)
            .where(ExecutionModel.status.in_(ACTIVE_EXECUTION_STATUSES))
            .order_by(ExecutionModel.started_at.asc())
        )
        result = await self._session.execute(stmt)
        return [row.to_record() for row in result.scalars().all()]

    async def list_executions(
        self,
        job_name: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]:
        """
        List executions with optional filtering, newest first.

        Returns:
            Tuple of (executions, total_count).
        """
        filters = []
        if job_name is not None:
            filters.append(ExecutionModel.job_name == job_name)
        if status is not None:
            filters.append(ExecutionModel.status == status)

        count_stmt = select(func.count()).select_from(ExecutionModel)
        stmt = (
            select(ExecutionModel)
            .order_by(ExecutionModel.started_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
            stmt = stmt.where(and_(*filters))

        total = (await self._session.execute(count_stmt)).scalar() or 0
        result = await self._session.execute(stmt)
        return [row.to_record() for row in result.scalars().all()], total
