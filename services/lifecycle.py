"""
Queue entry lifecycle: status transitions and their side effects
"""
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db.database import store_errors
from db.repositories import CounterRepository, QueueRepository
from errors import InvalidTransition, NotFound
from models import CounterStatus, EntryStatus, QueueEntryInfo, TERMINAL_STATUSES
from queueModel import ServiceTimeSmoother, minutes_between, round_half_up
from services.admission import utc_now

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[EntryStatus, FrozenSet[EntryStatus]] = {
    EntryStatus.WAITING: frozenset({
        EntryStatus.CALLED, EntryStatus.IN_SERVICE, EntryStatus.CANCELLED, EntryStatus.NO_SHOW,
    }),
    EntryStatus.CALLED: frozenset({
        EntryStatus.IN_SERVICE, EntryStatus.CANCELLED, EntryStatus.NO_SHOW,
    }),
    EntryStatus.IN_SERVICE: frozenset({
        EntryStatus.COMPLETED, EntryStatus.NO_SHOW,
    }),
}


def can_transition(current: EntryStatus, target: EntryStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class QueueLifecycle:
    """
    Moves queue entries through waiting -> called -> in_service -> completed

    Each transition is one transaction: the entry's compare-and-set status
    update, the queue occupancy change, the counter's rolling average and
    the counter release commit together or not at all. Occupancy is
    decremented only by the transition that wins the compare-and-set into a
    terminal state, so it happens exactly once per entry.
    """

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utc_now):
        self.session = session
        self.queues = QueueRepository(session)
        self.counters = CounterRepository(session)
        self.clock = clock

    async def transition(
        self,
        entry_id: str,
        target,
        counter_id: Optional[str] = None
    ) -> QueueEntryInfo:
        """
        Apply a status change to an entry

        Args:
            entry_id: queue entry to move
            target: EntryStatus or its string value
            counter_id: counter to attach when calling or starting service

        Raises:
            NotFound: entry or counter missing
            InvalidTransition: change not allowed from the current status
            Unavailable: queue store unreachable
        """
        try:
            target = EntryStatus(target)
        except ValueError:
            raise InvalidTransition(f"Unknown status '{target}'")

        try:
            with store_errors("transition"):
                updated = await self._apply(entry_id, target, counter_id)
                await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Entry {entry_id} -> {target.value}")
        return updated

    async def cancel(self, entry_id: str) -> QueueEntryInfo:
        """Customer cancellation, allowed from waiting or called only"""
        return await self.transition(entry_id, EntryStatus.CANCELLED)

    async def _apply(self, entry_id: str, target: EntryStatus, counter_id: Optional[str]) -> QueueEntryInfo:
        entry = await self.queues.get_entry(entry_id)
        if entry is None:
            raise NotFound(f"Queue entry '{entry_id}' not found")

        if not can_transition(entry.status, target):
            raise InvalidTransition(
                f"Cannot move entry from {entry.status.value} to {target.value}"
            )

        if counter_id is not None and target in (EntryStatus.CALLED, EntryStatus.IN_SERVICE):
            counter = await self.counters.get_counter(counter_id)
            if counter is None:
                raise NotFound(f"Counter '{counter_id}' not found")
            if entry.service_id not in counter.service_ids:
                raise InvalidTransition(f"Counter {counter.counter_number} does not support this service")

        now = self.clock()
        fields = {}

        if target == EntryStatus.CALLED:
            fields["called_at"] = now
            if counter_id is not None:
                fields["counter_id"] = counter_id

        elif target == EntryStatus.IN_SERVICE:
            fields["started_at"] = now
            counter_id = counter_id or entry.counter_id
            if counter_id is not None:
                await self._claim_counter(counter_id, entry_id)
                fields["counter_id"] = counter_id

        elif target == EntryStatus.COMPLETED:
            fields["completed_at"] = now
            if entry.started_at is not None:
                fields["actual_wait_minutes"] = round_half_up(
                    max(minutes_between(entry.joined_at, entry.started_at), 0.0)
                )

        updated = await self.queues.update_status(entry_id, entry.status, target, **fields)
        if updated is None:
            # Another request moved the entry first
            raise InvalidTransition(f"Entry '{entry_id}' changed concurrently, retry")

        if target in TERMINAL_STATUSES:
            await self.queues.increment_occupancy(entry.queue_id, -1)

            if target == EntryStatus.COMPLETED and updated.counter_id and entry.started_at:
                await self._record_service_time(
                    updated.counter_id,
                    minutes_between(entry.started_at, now)
                )

            if updated.counter_id:
                await self.counters.release(updated.counter_id, entry_id=entry_id)

        return updated

    async def _claim_counter(self, counter_id: str, entry_id: str):
        """Occupy a counter for one in-service entry"""
        counter = await self.counters.get_counter(counter_id, for_update=True)
        if counter is None:
            raise NotFound(f"Counter '{counter_id}' not found")
        if counter.status == CounterStatus.OFFLINE:
            raise InvalidTransition(f"Counter {counter.counter_number} is offline")
        if counter.current_entry_id not in (None, entry_id):
            raise InvalidTransition(
                f"Counter {counter.counter_number} is serving another entry"
            )
        await self.counters.assign_entry(counter_id, entry_id)

    async def _record_service_time(self, counter_id: str, service_minutes: float):
        """Fold a completed service into the counter's rolling average"""
        counter = await self.counters.get_counter(counter_id, for_update=True)
        if counter is None:
            logger.warning(f"Counter {counter_id} vanished before average update")
            return

        smoother = ServiceTimeSmoother(current=counter.average_service_time)
        new_avg = smoother.update(max(service_minutes, 0.0))
        await self.counters.update_average_service_time(counter_id, new_avg)
        logger.debug(f"Counter {counter_id} average {counter.average_service_time:.1f} -> {new_avg:.1f}")


async def reconcile(session: AsyncSession) -> dict:
    """
    Repair state a crash could have left behind

    Releases counters marked busy without a live in-service entry and
    resets queue occupancy to the number of non-terminal entries.
    """
    with store_errors("reconciliation"):
        released = await CounterRepository(session).reconcile_busy_counters()
        corrected = await QueueRepository(session).reconcile_occupancy()
        await session.commit()

    if released or corrected:
        logger.warning(f"Reconciled {released} counters and {corrected} queues")
    return {"counters_released": released, "queues_corrected": corrected}
