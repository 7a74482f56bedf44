"""
Job coordinator.

Accepts trigger requests on the leader, guards each job with a single-flight
lease, and runs the claim/process loop for an execution on a pool of
workers. Triggering never waits for the job to finish.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID, uuid4

from jobcoord.config import Settings, get_settings
from jobcoord.constants import (
    SPAN_EXECUTION,
    SPAN_PROCESS_ITEM,
    SPAN_TRIGGER,
    ExecutionStatus,
    RejectionReason,
    single_flight_key,
)
from jobcoord.coordination.claim_queue import RecordClaimQueue
from jobcoord.coordination.decider import ExecutionDecider
from jobcoord.coordination.leader import LeaderElector
from jobcoord.coordination.retry import (
    CallClassification,
    CallOutcome,
    RetryConfig,
    RetryExecutor,
)
from jobcoord.errors import (
    ExecutionCancelledError,
    ExecutionTimeoutError,
    LeadershipLostError,
    StaleClaimReclaimed,
)
from jobcoord.observability.events import emit_event
from jobcoord.observability.logging import bind_context, clear_context
from jobcoord.observability.metrics import MetricsCollector, get_metrics
from jobcoord.observability.tracing import start_span
from jobcoord.processors import Processor, get_processor
from jobcoord.stores.base import Stores
from jobcoord.types.events import CoordinationEvent
from jobcoord.types.job import ItemContext, TriggerResult
from jobcoord.types.records import ExecutionRecord, ExecutionSummary, WorkItem

logger = logging.getLogger(__name__)

# Errors that end an execution without further item writes
GLOBAL_ERRORS = (LeadershipLostError, ExecutionTimeoutError)


class CancellationToken:
    """
    Cooperative cancellation for one execution.

    Checked at batch boundaries and before each downstream call; a call in
    flight is allowed to finish.
    """

    def __init__(self) -> None:
        self.event = asyncio.Event()
        self.reason: str | None = None
        self._error: BaseException | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.event.is_set()

    @property
    def is_global(self) -> bool:
        """Whether the cancellation forbids further item writes."""
        return isinstance(self._error, GLOBAL_ERRORS)

    def cancel(self, reason: str, error: BaseException | None = None) -> bool:
        """Request cancellation. The first request wins."""
        if self.event.is_set():
            return False
        self.reason = reason
        self._error = error or ExecutionCancelledError(reason)
        self.event.set()
        return True

    def error(self) -> BaseException:
        return self._error or ExecutionCancelledError(self.reason or "cancelled")

    def raise_if_cancelled(self) -> None:
        if self.event.is_set():
            raise self.error()


@dataclass
class ExecutionRun:
    """In-process state of an execution started by this replica."""

    record: ExecutionRecord
    processor: Processor
    leader_token: int
    cancel: CancellationToken = field(default_factory=CancellationToken)
    summary: ExecutionSummary = field(default_factory=ExecutionSummary)
    # Set once a worker sees the circuit open; no more claiming this pass
    circuit_tripped: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    @property
    def execution_id(self) -> UUID:
        return self.record.execution_id

    @property
    def job_name(self) -> str:
        return self.record.job_name

    @property
    def fencing_token(self) -> int:
        return self.record.fencing_token


class JobCoordinator:
    """
    Triggers and runs job executions.

    Features:
    - Leader-only triggering (followers reject with NOT_LEADER)
    - Single-flight per job name via a lease whose TTL is the execution
      time budget
    - Worker pool per execution, skip-locked claiming, stale reclaim
    - Retries and a per-job circuit breaker around every downstream call
    - Cooperative cancellation; global errors stop all workers
    """

    def __init__(
        self,
        stores: Stores,
        elector: LeaderElector,
        settings: Settings | None = None,
        processors: Mapping[str, Processor] | None = None,
        retry_executor: RetryExecutor | None = None,
        decider: ExecutionDecider | None = None,
        metrics: MetricsCollector | None = None,
    ):
        settings = settings or get_settings()

        self._stores = stores
        self._elector = elector
        self._processors = processors
        self.holder_id = settings.instance_id
        self.worker_concurrency = settings.worker_concurrency
        self.claim_batch_size = settings.claim_batch_size
        self.stale_after = timedelta(seconds=settings.claim_stale_after_seconds)
        self.max_execution = timedelta(seconds=settings.max_execution_seconds)

        self._metrics = metrics or get_metrics()
        self._retry = retry_executor or RetryExecutor(
            RetryConfig.from_settings(settings), metrics=self._metrics
        )
        self._decider = decider or ExecutionDecider(settings.execution_max_failure_ratio)
        self._runs: dict[UUID, ExecutionRun] = {}

    @property
    def retry_executor(self) -> RetryExecutor:
        return self._retry

    def _resolve_processor(self, job_name: str) -> Processor | None:
        if self._processors is not None:
            return self._processors.get(job_name)
        return get_processor(job_name)

    def local_executions(self) -> list[ExecutionRecord]:
        return [run.record for run in self._runs.values()]

    def is_running_locally(self, execution_id: UUID) -> bool:
        return execution_id in self._runs

    async def trigger(self, job_name: str) -> TriggerResult:
        """
        Start an execution of ``job_name`` if this replica may.

        Returns as soon as the execution is recorded and its loop scheduled.

        Returns:
            Accepted with the execution id, or Rejected with the reason.
        """
        with start_span(SPAN_TRIGGER, job_name=job_name) as span:
            result = await self._trigger(job_name)
            span.set_attribute("accepted", result.accepted)
            if result.reason is not None:
                span.set_attribute("rejection_reason", result.reason.value)

        self._metrics.record_trigger(
            job_name, "accepted" if result.accepted else result.reason.value
        )
        if not result.accepted:
            emit_event(CoordinationEvent.execution_rejected(job_name, result.reason))
        return result

    async def _trigger(self, job_name: str) -> TriggerResult:
        processor = self._resolve_processor(job_name)
        if processor is None:
            return TriggerResult.reject(job_name, RejectionReason.UNKNOWN_JOB)

        leader_token = self._elector.fencing_token
        if leader_token is None:
            return TriggerResult.reject(
                job_name,
                RejectionReason.NOT_LEADER,
                leader_id=await self._elector.current_leader(),
            )

        execution_id = uuid4()
        key = single_flight_key(job_name)
        lease = await self._stores.leases.acquire_if_free(key, str(execution_id), self.max_execution)
        if lease is None:
            lease = await self._stores.leases.steal_if_expired(
                key, str(execution_id), self.max_execution
            )
        if lease is None:
            return TriggerResult.reject(job_name, RejectionReason.ALREADY_RUNNING)

        try:
            record = await self._stores.executions.create(
                execution_id, job_name, lease.fencing_token, self.holder_id
            )
        except Exception:
            await self._stores.leases.release(key, str(execution_id), lease.fencing_token)
            raise

        run = ExecutionRun(record=record, processor=processor, leader_token=leader_token)
        self._runs[execution_id] = run
        run.task = asyncio.create_task(
            self._run_execution(run), name=f"execution-{execution_id}"
        )
        run.task.add_done_callback(lambda _: self._runs.pop(execution_id, None))

        emit_event(
            CoordinationEvent.execution_accepted(job_name, execution_id, lease.fencing_token)
        )
        return TriggerResult.accept(job_name, execution_id)

    def cancel(
        self,
        execution_id: UUID,
        reason: str,
        error: BaseException | None = None,
    ) -> bool:
        """
        Signal cooperative cancellation to a local execution.

        Returns:
            True if the execution runs here and was not already cancelled.
        """
        run = self._runs.get(execution_id)
        if run is None:
            return False
        cancelled = run.cancel.cancel(reason, error)
        if cancelled:
            logger.warning(
                f"Cancelling execution: {reason}",
                extra={"execution_id": str(execution_id), "job_name": run.job_name},
            )
        return cancelled

    def on_leadership_lost(self, cause: str) -> None:
        """Demotion callback: stop every local execution without item writes."""
        for execution_id in list(self._runs):
            self.cancel(
                execution_id,
                f"leadership lost: {cause}",
                LeadershipLostError(cause),
            )

    async def wait(self, execution_id: UUID) -> None:
        """Wait for a local execution to finish (no-op if unknown)."""
        run = self._runs.get(execution_id)
        if run is not None and run.task is not None:
            await asyncio.gather(run.task, return_exceptions=True)

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """Cancel all local executions and wait for them to finalize."""
        runs = list(self._runs.values())
        if not runs:
            return

        logger.info(f"Shutting down {len(runs)} executions")
        for run in runs:
            run.cancel.cancel("coordinator shutdown")

        tasks = [run.task for run in runs if run.task is not None]
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_execution(self, run: ExecutionRun) -> None:
        bind_context(
            job_name=run.job_name,
            execution_id=str(run.execution_id),
            fencing_token=run.fencing_token,
        )
        started = time.monotonic()
        error: BaseException | None = None

        logger.info("Execution started")
        with start_span(
            SPAN_EXECUTION,
            job_name=run.job_name,
            execution_id=run.execution_id,
            fencing_token=run.fencing_token,
        ) as span:
            try:
                await self._run_workers(run)
            except (*GLOBAL_ERRORS, ExecutionCancelledError) as e:
                error = e
            except Exception as e:
                logger.exception(f"Execution aborted: {e}")
                error = e

            decision = self._decider.decide(run.summary, error)
            span.set_attribute("status", decision.status.value)

            await self._finish(run, decision.status, decision.reason, time.monotonic() - started)
        clear_context()

    async def _finish(
        self,
        run: ExecutionRun,
        status: ExecutionStatus,
        reason: str | None,
        duration: float,
    ) -> None:
        summary = run.summary.to_dict()
        try:
            finished = await self._stores.executions.finish(
                run.execution_id, run.fencing_token, status, reason, summary
            )
        except Exception as e:
            logger.exception(f"Failed to record execution outcome: {e}")
            finished = None

        if finished is None:
            # Stall monitor or reconciler already finalized the record
            logger.warning("Execution record already final, outcome not recorded")
        else:
            self._metrics.record_execution_finished(run.job_name, status.value, duration)
            emit_event(
                CoordinationEvent.execution_finished(
                    job_name=run.job_name,
                    execution_id=run.execution_id,
                    fencing_token=run.fencing_token,
                    status=status,
                    summary=summary,
                    reason=reason,
                    duration_seconds=duration,
                )
            )

        try:
            await self._stores.leases.release(
                single_flight_key(run.job_name), str(run.execution_id), run.fencing_token
            )
        except Exception as e:
            logger.warning(f"Failed to release single-flight lease: {e}")

    async def _run_workers(self, run: ExecutionRun) -> None:
        """
        Run the worker pool until every worker has stopped.

        The first error raised by a worker becomes the token's cancellation;
        siblings observe it at their next check and wind down, so a downstream
        call already in flight finishes. Workers are only hard-cancelled when
        the execution task itself is cancelled.
        """
        workers = [
            asyncio.create_task(
                self._worker_loop(run, f"{run.execution_id}:w{n}"),
                name=f"worker-{run.execution_id}-{n}",
            )
            for n in range(1, self.worker_concurrency + 1)
        ]

        first_error: BaseException | None = None
        pending: set[asyncio.Task] = set(workers)
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_EXCEPTION
                )
                for task in done:
                    exc = task.exception()
                    if exc is None:
                        continue
                    if first_error is None or isinstance(first_error, ExecutionCancelledError):
                        first_error = exc
                    if not isinstance(exc, ExecutionCancelledError):
                        run.cancel.cancel(str(exc), exc)
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

        if first_error is not None:
            raise first_error

    async def _check_batch_boundary(self, run: ExecutionRun) -> None:
        run.cancel.raise_if_cancelled()

        if self._elector.fencing_token != run.leader_token:
            raise LeadershipLostError("leader epoch changed during execution")

        lease = await self._stores.leases.get(single_flight_key(run.job_name))
        if lease is None or not lease.is_held_by(
            str(run.execution_id), run.fencing_token, self._stores.clock()
        ):
            raise ExecutionTimeoutError("single-flight lease expired or fenced")

        alive = await self._stores.executions.heartbeat(
            run.execution_id, run.fencing_token, run.summary.to_dict()
        )
        if not alive:
            raise ExecutionTimeoutError("execution record was finalized by another component")

    def _guard_item_write(self, run: ExecutionRun) -> None:
        if run.cancel.is_global:
            raise run.cancel.error()
        if self._elector.fencing_token != run.leader_token:
            raise LeadershipLostError("leader epoch changed during execution")

    async def _worker_loop(self, run: ExecutionRun, worker_id: str) -> None:
        queue = RecordClaimQueue(
            self._stores.work_items,
            run.job_name,
            worker_id,
            execution_id=run.execution_id,
            fencing_token=run.fencing_token,
            metrics=self._metrics,
        )

        while not run.circuit_tripped.is_set():
            await self._check_batch_boundary(run)

            batch = await queue.claim_batch(self.claim_batch_size, self.stale_after)
            if not batch:
                return
            run.summary.claimed += len(batch)
            run.summary.reclaimed += sum(1 for item in batch if item.was_reclaimed)

            for index, item in enumerate(batch):
                if run.cancel.is_cancelled:
                    self._guard_item_write(run)
                    await self._release_items(run, queue, batch[index:], "cancelled")
                    raise run.cancel.error()
                if run.circuit_tripped.is_set():
                    await self._defer_items(run, queue, batch[index:])
                    return

                try:
                    outcome = await self._process_item(run, queue, item)
                except StaleClaimReclaimed as e:
                    run.summary.lost_claims += 1
                    self._metrics.record_item_outcome(run.job_name, "lost")
                    logger.warning(
                        f"Discarding result: {e}",
                        extra={"item_id": str(item.id), "worker_id": worker_id},
                    )
                    continue

                if outcome.classification == CallClassification.CIRCUIT_OPEN:
                    run.circuit_tripped.set()
                    logger.warning(
                        f"Circuit open, deferring {len(batch) - index} items",
                        extra={"worker_id": worker_id},
                    )
                    await self._defer_items(run, queue, batch[index:])
                    return
                if outcome.classification == CallClassification.CANCELLED:
                    self._guard_item_write(run)
                    await self._release_items(run, queue, batch[index:], "cancelled")
                    raise run.cancel.error()

    async def _process_item(
        self,
        run: ExecutionRun,
        queue: RecordClaimQueue,
        item: WorkItem,
    ) -> CallOutcome:
        """
        Process one claimed item through the retry executor.

        Circuit-open and cancelled outcomes are returned without an item
        write; the caller hands the item back.
        """
        started = time.monotonic()
        with start_span(
            SPAN_PROCESS_ITEM,
            job_name=run.job_name,
            item_id=item.id,
            worker_id=queue.worker_id,
        ) as span:
            self._guard_item_write(run)
            claimed = await queue.mark_processing(item.id)

            context = ItemContext(
                item_id=item.id,
                job_name=run.job_name,
                execution_id=run.execution_id,
                fencing_token=run.fencing_token,
                worker_id=queue.worker_id,
                payload_ref=item.payload_ref,
                payload=item.payload,
                retry_count=claimed.retry_count,
                claimed_at=claimed.claimed_at,
            )
            outcome = await self._retry.execute(
                run.job_name, run.processor, context, cancel_event=run.cancel.event
            )
            span.set_attribute("outcome", outcome.classification.value)
            span.set_attribute("attempts", outcome.attempts)

            if outcome.classification == CallClassification.SUCCEEDED:
                self._guard_item_write(run)
                result = outcome.value if isinstance(outcome.value, dict) else None
                await queue.mark_completed(item.id, result)
                run.summary.succeeded += 1
                self._metrics.record_item_outcome(
                    run.job_name, "succeeded", time.monotonic() - started
                )
            elif outcome.classification in (
                CallClassification.RETRIES_EXHAUSTED,
                CallClassification.NON_RETRYABLE,
            ):
                self._guard_item_write(run)
                await queue.mark_failed(item.id, str(outcome.error), outcome.attempts)
                run.summary.failed += 1
                self._metrics.record_item_outcome(
                    run.job_name, "failed", time.monotonic() - started
                )
                logger.warning(
                    f"Work item failed after {outcome.attempts} attempts: {outcome.error}",
                    extra={"item_id": str(item.id), "worker_id": queue.worker_id},
                )

        return outcome

    async def _defer_items(
        self,
        run: ExecutionRun,
        queue: RecordClaimQueue,
        items: list[WorkItem],
    ) -> None:
        self._guard_item_write(run)
        for item in items:
            try:
                await queue.release(item.id, "deferred: circuit open")
            except StaleClaimReclaimed:
                run.summary.lost_claims += 1
                continue
            run.summary.deferred += 1
            self._metrics.record_item_outcome(run.job_name, "deferred")

    async def _release_items(
        self,
        run: ExecutionRun,
        queue: RecordClaimQueue,
        items: list[WorkItem],
        reason: str,
    ) -> None:
        for item in items:
            try:
                await queue.release(item.id, reason)
            except StaleClaimReclaimed:
                run.summary.lost_claims += 1
                continue
            run.summary.released += 1

