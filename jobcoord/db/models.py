"""
SQLAlchemy database models.
Defines the lease, work item and execution tables.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Identity,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobcoord.constants import ExecutionStatus, WorkItemStatus
from jobcoord.types.records import ExecutionRecord, LeaseRecord, WorkItem


def _enum_values(enum_cls) -> list[str]:
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class LeaseModel(Base):
    """
    Named lease used for leader election and single-flight execution locks.

    Rows are never deleted on release: the fencing token must stay monotonic
    across epochs, so release only expires the lease.
    """

    __tablename__ = "leases"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    fencing_token: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def to_record(self) -> LeaseRecord:
        return LeaseRecord(
            key=self.key,
            holder_id=self.holder_id,
            fencing_token=self.fencing_token,
            expires_at=self.expires_at,
        )

    def __repr__(self) -> str:
        return (
            f"Lease(key={self.key}, holder={self.holder_id}, "
            f"token={self.fencing_token}, expires_at={self.expires_at})"
        )


class WorkItemModel(Base):
    """
    Work item claimed and processed by coordinator workers.

    Key constraints:
    - claim_owner is set iff status is CLAIMED or PROCESSING
    - every release-side update is conditional on claim_owner
    """

    __tablename__ = "work_items"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )
    # Insertion order; breaks created_at ties within one batch insert
    seq: Mapped[int] = mapped_column(BigInteger, Identity(), nullable=False)
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    status: Mapped[WorkItemStatus] = mapped_column(
        Enum(
            WorkItemStatus,
            name="work_item_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=WorkItemStatus.PENDING,
    )

    # Claim management
    claim_owner: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "(claim_owner IS NOT NULL) = (status IN ('claimed', 'processing'))",
            name="ck_work_items_claim_owner",
        ),
        # Claim polling: (status, created_at) per job
        Index("ix_work_items_claim_poll", "job_name", "status", "created_at", "seq"),
        # Stale claim scan
        Index(
            "ix_work_items_claimed_at",
            "claimed_at",
            postgresql_where=(
                Column("status").in_(
                    [WorkItemStatus.CLAIMED.value, WorkItemStatus.PROCESSING.value]
                )
            ),
        ),
    )

    def to_record(self) -> WorkItem:
        return WorkItem(
            id=self.id,
            job_name=self.job_name,
            payload_ref=self.payload_ref,
            payload=self.payload or {},
            status=WorkItemStatus(self.status),
            claim_owner=self.claim_owner,
            claimed_at=self.claimed_at,
            retry_count=self.retry_count,
            created_at=self.created_at,
            last_updated_at=self.last_updated_at,
            last_error=self.last_error,
            result=self.result,
        )

    def __repr__(self) -> str:
        return (
            f"WorkItem(id={self.id}, job={self.job_name}, "
            f"status={self.status}, owner={self.claim_owner})"
        )


class ExecutionModel(Base):
    """
    One run of a named job.

    At most one RUNNING row per job_name; enforced by the single-flight
    lease, not by a database constraint.
    """

    __tablename__ = "executions"

    execution_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(
            ExecutionStatus,
            name="execution_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ExecutionStatus.RUNNING,
    )
    fencing_token: Mapped[int] = mapped_column(BigInteger, nullable=False)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_executions_job_status", "job_name", "status"),
        Index(
            "ix_executions_active",
            "status",
            "started_at",
            postgresql_where=(
                Column("status").in_(
                    [ExecutionStatus.RUNNING.value, ExecutionStatus.UNKNOWN.value]
                )
            ),
        ),
    )

    def to_record(self) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=self.execution_id,
            job_name=self.job_name,
            status=ExecutionStatus(self.status),
            started_at=self.started_at,
            fencing_token=self.fencing_token,
            holder_id=self.holder_id,
            ended_at=self.ended_at,
            heartbeat_at=self.heartbeat_at,
            reason=self.reason,
            summary=dict(self.summary or {}),
        )

    def __repr__(self) -> str:
        return (
            f"Execution(id={self.execution_id}, job={self.job_name}, "
            f"status={self.status}, token={self.fencing_token})"
        )
