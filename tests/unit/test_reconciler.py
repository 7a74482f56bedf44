"""
Unit tests for the status reconciler.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from jobcoord.constants import ExecutionStatus, single_flight_key
from jobcoord.coordination.reconciler import (
    NO_HEARTBEAT_REASON,
    ORPHANED_REASON,
    StatusReconciler,
)


@pytest.fixture
def reconciler(stores, metrics) -> StatusReconciler:
    return StatusReconciler(
        stores, interval_seconds=1, liveness_timeout_seconds=120, metrics=metrics
    )


async def create_execution(stores, with_lease: bool = True, ttl_seconds: float = 600):
    execution_id = uuid4()
    token = 1
    if with_lease:
        lease = await stores.leases.acquire_if_free(
            single_flight_key("sync"), str(execution_id), timedelta(seconds=ttl_seconds)
        )
        token = lease.fencing_token
    return await stores.executions.create(execution_id, "sync", token, "crashed-node")


class TestStatusReconciler:
    """Tests for StatusReconciler."""

    @pytest.mark.asyncio
    async def test_missing_lease_marks_orphaned_once(self, stores, reconciler):
        """Test that an execution without its lease fails exactly once."""
        record = await create_execution(stores, with_lease=False)

        assert await reconciler.run_once() == [record.execution_id]
        assert await reconciler.run_once() == []

        stored = await stores.executions.get(record.execution_id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.reason == ORPHANED_REASON
        assert stored.ended_at is not None

    @pytest.mark.asyncio
    async def test_superseded_lease_marks_orphaned(self, stores, reconciler):
        """Test that a lease held under a newer token orphans the execution."""
        record = await create_execution(stores)
        await stores.leases.invalidate(single_flight_key("sync"), record.fencing_token)

        assert await reconciler.run_once() == [record.execution_id]
        stored = await stores.executions.get(record.execution_id)
        assert stored.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_expired_lease_marks_orphaned(self, stores, clock, reconciler):
        """Test that an execution whose lease ran out is failed."""
        record = await create_execution(stores, ttl_seconds=30)
        clock.advance(31)

        assert await reconciler.run_once() == [record.execution_id]
        stored = await stores.executions.get(record.execution_id)
        assert stored.reason == ORPHANED_REASON

    @pytest.mark.asyncio
    async def test_healthy_execution_untouched(self, stores, clock, reconciler):
        """Test that a held lease with a recent heartbeat is left alone."""
        record = await create_execution(stores)
        clock.advance(60)

        assert await reconciler.run_once() == []
        stored = await stores.executions.get(record.execution_id)
        assert stored.status == ExecutionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_silent_execution_becomes_unknown(self, stores, clock, reconciler):
        """Test the RUNNING -> UNKNOWN -> RUNNING path on a held lease."""
        record = await create_execution(stores)
        clock.advance(121)

        assert await reconciler.run_once() == [record.execution_id]
        stored = await stores.executions.get(record.execution_id)
        assert stored.status == ExecutionStatus.UNKNOWN
        assert stored.reason == NO_HEARTBEAT_REASON

        # Still unknown, not re-marked
        assert await reconciler.run_once() == []

        alive = await stores.executions.heartbeat(
            record.execution_id, record.fencing_token, {"claimed": 1}
        )
        assert alive is True
        stored = await stores.executions.get(record.execution_id)
        assert stored.status == ExecutionStatus.RUNNING
        assert stored.summary == {"claimed": 1}

    @pytest.mark.asyncio
    async def test_unknown_with_lost_lease_fails(self, stores, clock, reconciler):
        """Test that an UNKNOWN execution fails once its lease is gone."""
        record = await create_execution(stores, ttl_seconds=300)
        clock.advance(121)
        await reconciler.run_once()

        clock.advance(200)
        assert await reconciler.run_once() == [record.execution_id]
        stored = await stores.executions.get(record.execution_id)
        assert stored.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_terminal_records_untouched(self, stores, reconciler):
        """Test that completed executions are never corrected."""
        record = await create_execution(stores, with_lease=False)
        await stores.executions.finish(
            record.execution_id, record.fencing_token, ExecutionStatus.COMPLETED, None
        )

        assert await reconciler.run_once() == []
        stored = await stores.executions.get(record.execution_id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.reason is None
