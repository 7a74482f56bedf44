"""
Unit tests for the job coordinator over in-process stores.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from jobcoord.constants import (
    CircuitState,
    ExecutionStatus,
    RejectionReason,
    WorkItemStatus,
    single_flight_key,
)
from jobcoord.coordination.claim_queue import RecordClaimQueue
from jobcoord.coordination.coordinator import JobCoordinator
from jobcoord.coordination.leader import LeaderElector
from jobcoord.coordination.retry import RetryConfig, RetryExecutor
from jobcoord.errors import ExecutionTimeoutError


async def seed(stores, job_name: str, count: int) -> list:
    return await stores.work_items.create_items(
        job_name, [(None, {"n": n}) for n in range(count)]
    )


class Gate:
    """Processor that blocks until opened, so tests can act mid-item."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.opened = asyncio.Event()
        self.calls = 0

    async def __call__(self, context):
        self.calls += 1
        self.started.set()
        await self.opened.wait()
        return {"n": context.payload["n"]}


class TestTrigger:
    """Tests for trigger decisions."""

    @pytest.mark.asyncio
    async def test_accepted_execution_completes(self, stores, elector, coordinator):
        """Test that an accepted trigger processes all pending items."""
        await elector.try_acquire()
        items = await seed(stores, "echo", 3)

        result = await coordinator.trigger("echo")
        assert result.accepted
        assert result.reason is None
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.fencing_token == 1
        assert record.holder_id == "test-node"
        assert record.ended_at is not None
        assert record.summary["claimed"] == 3
        assert record.summary["succeeded"] == 3

        for item in items:
            stored = await stores.work_items.get_item(item.id)
            assert stored.status == WorkItemStatus.COMPLETED
            assert stored.result == {"echo": {"n": item.payload["n"]}}

    @pytest.mark.asyncio
    async def test_single_flight_lease_released(self, stores, clock, elector, coordinator):
        """Test that the next execution of a job takes the lease under a new token."""
        await elector.try_acquire()

        first = await coordinator.trigger("echo")
        await coordinator.wait(first.execution_id)
        lease = await stores.leases.get(single_flight_key("echo"))
        assert lease.is_expired(clock())

        second = await coordinator.trigger("echo")
        await coordinator.wait(second.execution_id)
        record = await stores.executions.get(second.execution_id)
        assert record.fencing_token == 2

    @pytest.mark.asyncio
    async def test_concurrent_triggers_accept_one(self, elector, coordinator):
        """Test that simultaneous triggers start exactly one execution."""
        await elector.try_acquire()

        results = await asyncio.gather(*(coordinator.trigger("echo") for _ in range(5)))

        accepted = [r for r in results if r.accepted]
        assert len(accepted) == 1
        assert all(
            r.reason == RejectionReason.ALREADY_RUNNING for r in results if not r.accepted
        )
        await coordinator.wait(accepted[0].execution_id)

    @pytest.mark.asyncio
    async def test_follower_rejects_with_leader_hint(self, stores, clock, metrics, coordinator):
        """Test that a follower rejects triggers and names the leader."""
        leader = LeaderElector(
            stores.leases, "node-b", ttl_seconds=15, renew_interval_seconds=5,
            clock=clock, metrics=metrics,
        )
        await leader.try_acquire()

        result = await coordinator.trigger("echo")

        assert not result.accepted
        assert result.reason == RejectionReason.NOT_LEADER
        assert result.leader_id == "node-b"
        _, total = await stores.executions.list_executions()
        assert total == 0

    @pytest.mark.asyncio
    async def test_unknown_job_rejected(self, elector, coordinator):
        """Test that a job with no processor is rejected."""
        await elector.try_acquire()

        result = await coordinator.trigger("does-not-exist")

        assert result.reason == RejectionReason.UNKNOWN_JOB

    @pytest.mark.asyncio
    async def test_trigger_does_not_wait_for_completion(
        self, stores, elector, coordinator, processors
    ):
        """Test that trigger returns while the execution is still running."""
        gate = Gate()
        processors["gated"] = gate
        await elector.try_acquire()
        await seed(stores, "gated", 1)

        result = await coordinator.trigger("gated")
        await gate.started.wait()

        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.RUNNING
        assert coordinator.is_running_locally(result.execution_id)
        assert (await coordinator.trigger("gated")).reason == RejectionReason.ALREADY_RUNNING

        gate.opened.set()
        await coordinator.wait(result.execution_id)
        assert not coordinator.is_running_locally(result.execution_id)


class TestItemOutcomes:
    """Tests for how item outcomes shape an execution."""

    @pytest.mark.asyncio
    async def test_failed_items_recorded_without_failing_execution(
        self, stores, elector, coordinator
    ):
        """Test that exhausted retries fail the item but not the execution."""
        await elector.try_acquire()
        (item,) = await seed(stores, "failing", 1)

        result = await coordinator.trigger("failing")
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        stored = await stores.work_items.get_item(item.id)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.summary["failed"] == 1
        assert stored.status == WorkItemStatus.FAILED
        assert stored.retry_count == 3
        assert "Retries exhausted" in stored.last_error

    @pytest.mark.asyncio
    async def test_open_circuit_defers_remaining_items(
        self, stores, elector, test_settings, processors, metrics
    ):
        """Test that an open circuit hands the rest of the batch back untouched."""
        retry = RetryExecutor(
            RetryConfig(max_attempts=1, initial_delay=0, max_delay=0, window_size=2),
            metrics=metrics,
        )
        coordinator = JobCoordinator(
            stores, elector, settings=test_settings, processors=processors,
            retry_executor=retry, metrics=metrics,
        )
        await elector.try_acquire()
        items = await seed(stores, "failing", 5)

        result = await coordinator.trigger("failing")
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.summary["failed"] == 2
        assert record.summary["deferred"] == 3

        statuses = [(await stores.work_items.get_item(i.id)).status for i in items]
        assert statuses == [WorkItemStatus.FAILED] * 2 + [WorkItemStatus.PENDING] * 3
        deferred = await stores.work_items.get_item(items[4].id)
        assert deferred.retry_count == 0
        assert deferred.last_error == "deferred: circuit open"

    @pytest.mark.asyncio
    async def test_half_open_circuit_closes_within_one_pass(
        self, stores, elector, test_settings, processors, metrics
    ):
        """Test that workers queue for the trial permit instead of deferring the pass."""
        now = [0.0]
        retry = RetryExecutor(
            RetryConfig(
                max_attempts=1,
                initial_delay=0,
                max_delay=0,
                window_size=2,
                half_open_max_calls=1,
                half_open_success_threshold=3,
                half_open_poll_interval=0.01,
            ),
            clock=lambda: now[0],
            metrics=metrics,
        )
        breaker = retry.breaker("healthy")
        for _ in range(2):
            breaker.record_failure()
        now[0] += 30
        assert breaker.state == CircuitState.HALF_OPEN

        async def healthy(context):
            await asyncio.sleep(0)
            return {"n": context.payload["n"]}

        processors["healthy"] = healthy
        settings = test_settings.model_copy(
            update={"worker_concurrency": 2, "claim_batch_size": 1}
        )
        coordinator = JobCoordinator(
            stores, elector, settings=settings, processors=processors,
            retry_executor=retry, metrics=metrics,
        )
        await elector.try_acquire()
        await seed(stores, "healthy", 10)

        result = await coordinator.trigger("healthy")
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.summary["succeeded"] == 10
        assert record.summary["deferred"] == 0
        assert await stores.work_items.get_stats("healthy") == {"completed": 10}
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reclaimed_items_counted(self, stores, clock, elector, coordinator, metrics):
        """Test that items abandoned by a crashed worker are picked up and counted."""
        await seed(stores, "echo", 2)
        crashed = RecordClaimQueue(stores.work_items, "echo", "crashed", metrics=metrics)
        await crashed.claim_batch(10, timedelta(seconds=5))
        clock.advance(10)
        await elector.try_acquire()

        result = await coordinator.trigger("echo")
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        assert record.summary["reclaimed"] == 2
        assert record.summary["succeeded"] == 2

    @pytest.mark.asyncio
    async def test_lost_claim_result_discarded(
        self, stores, clock, elector, coordinator, processors
    ):
        """Test that a result for an item reclaimed mid-flight is not written."""
        async def hijacked(context):
            clock.advance(6)
            await stores.work_items.claim_batch(
                context.job_name, "intruder", 10, timedelta(seconds=5)
            )
            return {"late": True}

        processors["hijacked"] = hijacked
        await elector.try_acquire()
        (item,) = await seed(stores, "hijacked", 1)

        result = await coordinator.trigger("hijacked")
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        stored = await stores.work_items.get_item(item.id)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.summary["lost_claims"] == 1
        assert record.summary["succeeded"] == 0
        assert stored.claim_owner == "intruder"
        assert stored.result is None


class TestCancellation:
    """Tests for cooperative cancellation and global aborts."""

    @pytest.mark.asyncio
    async def test_cooperative_cancel_releases_rest_of_batch(
        self, stores, elector, coordinator, processors
    ):
        """Test that cancellation lets the item in flight finish and releases the rest."""
        gate = Gate()
        processors["gated"] = gate
        await elector.try_acquire()
        items = await seed(stores, "gated", 3)

        result = await coordinator.trigger("gated")
        await gate.started.wait()
        assert coordinator.cancel(result.execution_id, "operator request")
        assert not coordinator.cancel(result.execution_id, "again")
        gate.opened.set()
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.FAILED
        assert record.reason == "ExecutionCancelledError: operator request"
        assert record.summary["succeeded"] == 1
        assert record.summary["released"] == 2
        assert gate.calls == 1

        statuses = [(await stores.work_items.get_item(i.id)).status for i in items]
        assert statuses == [
            WorkItemStatus.COMPLETED,
            WorkItemStatus.PENDING,
            WorkItemStatus.PENDING,
        ]

    @pytest.mark.asyncio
    async def test_leadership_loss_stops_item_writes(
        self, stores, elector, coordinator, processors
    ):
        """Test that a demoted leader writes nothing more for its items."""
        gate = Gate()
        processors["gated"] = gate
        await elector.try_acquire()
        items = await seed(stores, "gated", 3)

        result = await coordinator.trigger("gated")
        await gate.started.wait()
        await elector.release()
        gate.opened.set()
        await coordinator.wait(result.execution_id)

        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.FAILED
        assert record.reason == "LeadershipLostError: released"

        first, *rest = [await stores.work_items.get_item(i.id) for i in items]
        assert first.status == WorkItemStatus.PROCESSING
        assert first.result is None
        assert all(item.status == WorkItemStatus.CLAIMED for item in rest)

    @pytest.mark.asyncio
    async def test_global_error_lets_sibling_calls_finish(
        self, stores, elector, test_settings, processors, retry_executor, metrics
    ):
        """Test that a global error stops workers without interrupting calls in flight."""
        started = {0: asyncio.Event(), 1: asyncio.Event()}
        gates = {0: asyncio.Event(), 1: asyncio.Event()}
        outcome = {}

        async def gated(context):
            n = context.payload["n"]
            started[n].set()
            try:
                await gates[n].wait()
            except asyncio.CancelledError:
                outcome[n] = "interrupted"
                raise
            outcome[n] = "finished"
            return {"n": n}

        processors["gated"] = gated
        settings = test_settings.model_copy(
            update={"worker_concurrency": 2, "claim_batch_size": 1}
        )
        coordinator = JobCoordinator(
            stores, elector, settings=settings, processors=processors,
            retry_executor=retry_executor, metrics=metrics,
        )
        await elector.try_acquire()
        items = await seed(stores, "gated", 2)

        result = await coordinator.trigger("gated")
        await asyncio.gather(started[0].wait(), started[1].wait())
        coordinator.cancel(
            result.execution_id, "stalled", ExecutionTimeoutError("exceeded 600s budget")
        )
        gates[0].set()
        for _ in range(10):
            await asyncio.sleep(0)
        assert coordinator.is_running_locally(result.execution_id)
        gates[1].set()
        await coordinator.wait(result.execution_id)

        assert outcome == {0: "finished", 1: "finished"}
        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.FAILED
        assert record.reason == "ExecutionTimeoutError: exceeded 600s budget"
        assert record.summary["succeeded"] == 0
        for item in items:
            stored = await stores.work_items.get_item(item.id)
            assert stored.status == WorkItemStatus.PROCESSING
            assert stored.result is None

    @pytest.mark.asyncio
    async def test_cancel_unknown_execution(self, coordinator):
        """Test that cancelling an execution not running here is a no-op."""
        assert coordinator.cancel(uuid4(), "nothing to cancel") is False

    @pytest.mark.asyncio
    async def test_shutdown_finalizes_running_executions(
        self, stores, elector, coordinator, processors
    ):
        """Test that shutdown cancels local executions and records their outcome."""
        gate = Gate()
        processors["gated"] = gate
        await elector.try_acquire()
        await seed(stores, "gated", 2)

        result = await coordinator.trigger("gated")
        await gate.started.wait()
        shutdown = asyncio.create_task(coordinator.shutdown(timeout=5))
        await asyncio.sleep(0)
        gate.opened.set()
        await shutdown

        record = await stores.executions.get(result.execution_id)
        assert record.status == ExecutionStatus.FAILED
        assert record.reason == "ExecutionCancelledError: coordinator shutdown"
        assert coordinator.local_executions() == []
