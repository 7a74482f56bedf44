"""Initial schema with leases, work_items and executions tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

WORK_ITEM_STATUSES = ("pending", "claimed", "processing", "completed", "failed")
EXECUTION_STATUSES = ("running", "completed", "failed", "unknown")


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE work_item_status AS ENUM ('pending', 'claimed', 'processing', 'completed', 'failed');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute("""
        DO $$ BEGIN
            CREATE TYPE execution_status AS ENUM ('running', 'completed', 'failed', 'unknown');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Leases: one row per key, never deleted so fencing tokens stay monotonic
    op.create_table(
        "leases",
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("holder_id", sa.String(255), nullable=False),
        sa.Column("fencing_token", sa.BigInteger, nullable=False, server_default="1"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "work_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("seq", sa.BigInteger, sa.Identity(), nullable=False),
        sa.Column("job_name", sa.String(255), nullable=False),
        sa.Column("payload_ref", sa.String(1024), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "status",
            postgresql.ENUM(*WORK_ITEM_STATUSES, name="work_item_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("claim_owner", sa.String(255), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "last_updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "(claim_owner IS NOT NULL) = (status IN ('claimed', 'processing'))",
            name="ck_work_items_claim_owner",
        ),
    )

    op.create_index("ix_work_items_claim_owner", "work_items", ["claim_owner"])
    op.create_index(
        "ix_work_items_claim_poll",
        "work_items",
        ["job_name", "status", "created_at", "seq"],
    )

    # Partial index for the stale claim predicate
    op.execute("""
        CREATE INDEX ix_work_items_claimed_at
        ON work_items (claimed_at)
        WHERE status IN ('claimed', 'processing')
    """)

    op.create_table(
        "executions",
        sa.Column("execution_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_name", sa.String(255), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(*EXECUTION_STATUSES, name="execution_status", create_type=False),
            nullable=False,
            server_default="running",
        ),
        sa.Column("fencing_token", sa.BigInteger, nullable=False),
        sa.Column("holder_id", sa.String(255), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("summary", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.PrimaryKeyConstraint("execution_id"),
    )

    op.create_index("ix_executions_job_status", "executions", ["job_name", "status"])

    # Partial index for the stall monitor and reconciler scans
    op.execute("""
        CREATE INDEX ix_executions_active
        ON executions (status, started_at)
        WHERE status IN ('running', 'unknown')
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_executions_active")
    op.drop_index("ix_executions_job_status")
    op.drop_table("executions")

    op.execute("DROP INDEX IF EXISTS ix_work_items_claimed_at")
    op.drop_index("ix_work_items_claim_poll")
    op.drop_index("ix_work_items_claim_owner")
    op.drop_table("work_items")

    op.drop_table("leases")

    # Drop enums
    op.execute("DROP TYPE IF EXISTS execution_status")
    op.execute("DROP TYPE IF EXISTS work_item_status")
