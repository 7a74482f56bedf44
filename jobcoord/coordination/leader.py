"""
Lease-based leader election.

One replica holds the leader lease at a time. The holder renews it on a
background loop well inside the TTL; every other replica keeps trying to
take it over once it expires. Each takeover bumps the fencing token, so
writes made under an older epoch can be rejected by the stores.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from jobcoord.clock import Clock, utcnow
from jobcoord.errors import ConfigurationError
from jobcoord.observability.events import emit_event
from jobcoord.observability.metrics import MetricsCollector, get_metrics
from jobcoord.stores.base import LeaseStore
from jobcoord.types.events import CoordinationEvent

logger = logging.getLogger(__name__)

ElectedCallback = Callable[[int], None]
DemotedCallback = Callable[[str], None]


@dataclass(frozen=True)
class LeadershipSnapshot:
    """Point-in-time view of this replica's leadership."""

    lease_key: str
    holder_id: str
    is_leader: bool
    fencing_token: int | None
    deadline: datetime | None


class LeaderElector:
    """
    Leader election over a single named lease.

    Features:
    - Acquire-if-free or steal-if-expired, never an unconditional write
    - Background renewal at an interval strictly below half the TTL
    - Local deadline guard: leadership lapses when the locally computed
      lease deadline passes, even if the renew loop is stalled
    - Demotion flips the local flag before any callback, log or event
    """

    def __init__(
        self,
        leases: LeaseStore,
        holder_id: str,
        lease_key: str = "jobcoord:leader",
        ttl_seconds: float = 15.0,
        renew_interval_seconds: float = 5.0,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: MetricsCollector | None = None,
    ):
        if ttl_seconds <= 0:
            raise ConfigurationError("ttl_seconds must be positive")
        if renew_interval_seconds <= 0 or renew_interval_seconds >= ttl_seconds / 2:
            raise ConfigurationError(
                "renew_interval_seconds must be positive and shorter than ttl_seconds / 2"
            )

        self._leases = leases
        self.holder_id = holder_id
        self.lease_key = lease_key
        self._ttl = timedelta(seconds=ttl_seconds)
        self.renew_interval = renew_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics or get_metrics()

        self._token: int | None = None
        self._deadline: datetime | None = None
        self._elected = asyncio.Event()
        self._on_elected: list[ElectedCallback] = []
        self._on_demoted: list[DemotedCallback] = []
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_leader(self) -> bool:
        return (
            self._token is not None
            and self._deadline is not None
            and self._clock() < self._deadline
        )

    @property
    def fencing_token(self) -> int | None:
        """Current epoch's token, or None when not leader."""
        return self._token if self.is_leader else None

    def leadership(self) -> LeadershipSnapshot:
        is_leader = self.is_leader
        return LeadershipSnapshot(
            lease_key=self.lease_key,
            holder_id=self.holder_id,
            is_leader=is_leader,
            fencing_token=self._token if is_leader else None,
            deadline=self._deadline if is_leader else None,
        )

    def on_elected(self, callback: ElectedCallback) -> None:
        """Register a callback invoked with the new fencing token."""
        self._on_elected.append(callback)

    def on_demoted(self, callback: DemotedCallback) -> None:
        """Register a callback invoked with the demotion cause."""
        self._on_demoted.append(callback)

    async def current_leader(self) -> str | None:
        """Holder of the unexpired leader lease, as seen by the store."""
        lease = await self._leases.get(self.lease_key)
        if lease is None or lease.is_expired(self._clock()):
            return None
        return lease.holder_id

    async def wait_for_leadership(self, timeout: float | None = None) -> bool:
        """
        Wait until this replica becomes leader.

        Returns:
            True if leader, False if the timeout elapsed first.
        """
        try:
            await asyncio.wait_for(self._elected.wait(), timeout)
        except TimeoutError:
            return False
        return self.is_leader

    async def try_acquire(self) -> tuple[bool, int | None]:
        """
        Take the leader lease if it is free or expired.

        Contention is not an error: a held lease returns (False, None).

        Returns:
            Tuple of (is_leader, fencing_token).
        """
        if self.is_leader:
            return True, self._token

        # Deadline is measured from before the store call
        started = self._clock()
        lease = await self._leases.acquire_if_free(self.lease_key, self.holder_id, self._ttl)
        if lease is None:
            lease = await self._leases.steal_if_expired(
                self.lease_key, self.holder_id, self._ttl
            )
        if lease is None:
            return False, None

        self._promote(lease.fencing_token, started + self._ttl)
        return True, lease.fencing_token

    async def renew(self) -> bool:
        """
        Extend the lease for the current epoch.

        Any failure demotes this replica immediately.
        """
        token = self._token
        if token is None:
            return False
        if not self.is_leader:
            self._demote("local lease deadline passed")
            return False

        started = self._clock()
        try:
            lease = await self._leases.renew_if_owner(
                self.lease_key, self.holder_id, token, self._ttl
            )
        except Exception as e:
            self._demote(f"renew failed: {e}")
            raise

        if lease is None:
            self._demote("renew rejected: lease taken over or fenced")
            return False

        self._deadline = started + self._ttl
        return True

    async def release(self) -> None:
        """Give up leadership. Best-effort: the lease expires on its own."""
        token = self._token
        if token is None:
            return

        self._demote("released")
        try:
            await self._leases.release(self.lease_key, self.holder_id, token)
        except Exception as e:
            logger.warning(
                f"Failed to release leader lease: {e}",
                extra={"lease_key": self.lease_key, "fencing_token": token},
            )

    async def start(self) -> None:
        """Start the background acquire/renew loop."""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"leader-elector-{self.holder_id}")
        logger.info(
            "Leader elector started",
            extra={"holder_id": self.holder_id, "lease_key": self.lease_key},
        )

    async def stop(self) -> None:
        """Stop the loop and release the lease if held."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.release()
        logger.info("Leader elector stopped", extra={"holder_id": self.holder_id})

    async def run_once(self) -> bool:
        """One loop iteration: renew if leader, otherwise try to acquire."""
        if self._token is not None:
            if await self.renew():
                return True
        is_leader, _ = await self.try_acquire()
        return is_leader

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(
                    f"Error in leader election loop: {e}",
                    extra={"holder_id": self.holder_id},
                )
            await self._sleep(self.renew_interval)

    def _promote(self, token: int, deadline: datetime) -> None:
        self._token = token
        self._deadline = deadline
        self._elected.set()

        self._metrics.set_leader(self.holder_id, True)
        emit_event(CoordinationEvent.leadership_gained(self.lease_key, self.holder_id, token))
        for callback in self._on_elected:
            try:
                callback(token)
            except Exception:
                logger.exception("on_elected callback failed")

    def _demote(self, cause: str) -> None:
        token = self._token
        if token is None:
            return

        # Local signal first; everything else observes an already-demoted elector
        self._token = None
        self._deadline = None
        self._elected.clear()

        self._metrics.set_leader(self.holder_id, False)
        emit_event(
            CoordinationEvent.leadership_lost(self.lease_key, self.holder_id, token, cause)
        )
        for callback in self._on_demoted:
            try:
                callback(cause)
            except Exception:
                logger.exception("on_demoted callback failed")
