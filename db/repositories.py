"""
Database repositories for data access

Write methods used by admission and lifecycle only flush; the caller owns
the transaction so entry, queue and counter changes commit together.
Catalog and counter administration commit directly.
"""
from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging
import uuid

from db.models import Service, Counter, ServiceQueue, QueueEntry
from models import (
    ACTIVE_STATUSES, TERMINAL_STATUSES, CounterInfo, CounterStats, CounterStatus,
    EntryStatus, HistoricalSample, QueueEntryInfo, QueueInfo, QueueStatus,
    ServiceInfo,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _values(statuses: Iterable) -> List[str]:
    return [s.value if isinstance(s, EntryStatus) else s for s in statuses]


def _counter_info(counter: Counter) -> CounterInfo:
    return CounterInfo(
        id=counter.id,
        counter_number=counter.counter_number,
        name=counter.name,
        service_ids=[s.id for s in counter.services],
        status=counter.status,
        current_entry_id=counter.current_entry_id,
        average_service_time=counter.average_service_time or 0.0
    )


class ServiceRepository:
    """Repository for the service catalog"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_service(self, service_data: dict, capacity: Optional[int] = None) -> ServiceInfo:
        """Insert or update a service and make sure its queue exists"""
        service_id = service_data.get('id') or _new_id()
        service = Service(
            id=service_id,
            name=service_data['name'],
            description=service_data.get('description'),
            category=service_data.get('category'),
            duration_minutes=service_data['duration_minutes'],
            price=service_data.get('price', 0.0),
            is_active=service_data.get('is_active', True)
        )
        service = await self.session.merge(service)  # Insert or update
        await self.session.flush()

        existing = await self.session.execute(
            select(ServiceQueue.id).where(ServiceQueue.service_id == service_id)
        )
        if existing.scalar_one_or_none() is None:
            self.session.add(ServiceQueue(
                id=_new_id(),
                service_id=service_id,
                name=f"{service.name} queue",
                status=QueueStatus.ACTIVE.value,
                capacity=capacity,
                occupancy=0,
                last_sequence=0
            ))

        await self.session.commit()
        return ServiceInfo.model_validate(service)

    async def get(self, service_id: str) -> Optional[ServiceInfo]:
        """Get service by ID, active or not"""
        result = await self.session.execute(
            select(Service).where(Service.id == service_id)
            .execution_options(populate_existing=True)
        )
        service = result.scalar_one_or_none()
        return ServiceInfo.model_validate(service) if service else None

    async def get_all(self, active_only: bool = False) -> List[ServiceInfo]:
        query = select(Service).order_by(Service.name)
        if active_only:
            query = query.where(Service.is_active.is_(True))

        result = await self.session.execute(query)
        return [ServiceInfo.model_validate(s) for s in result.scalars().all()]

    async def deactivate(self, service_id: str) -> Optional[ServiceInfo]:
        result = await self.session.execute(
            update(Service)
            .where(Service.id == service_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount == 0:
            return None
        return await self.get(service_id)


class HistoricalSampleRepository:
    """Read-only view over completed entries with start and end recorded"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def recent_completed(self, service_id: str, limit: int = 50) -> List[HistoricalSample]:
        """Most recent completed services first, at most `limit`"""
        result = await self.session.execute(
            select(QueueEntry.started_at, QueueEntry.completed_at)
            .where(QueueEntry.service_id == service_id)
            .where(QueueEntry.status == EntryStatus.COMPLETED.value)
            .where(QueueEntry.started_at.is_not(None))
            .where(QueueEntry.completed_at.is_not(None))
            .order_by(QueueEntry.completed_at.desc())
            .limit(limit)
        )
        return [HistoricalSample(start=start, end=end) for start, end in result.all()]

    async def entries_since(self, since: datetime, service_id: Optional[str] = None) -> List[QueueEntryInfo]:
        """All entries joined since a point in time, for analytics"""
        query = select(QueueEntry).where(QueueEntry.joined_at >= since)
        if service_id:
            query = query.where(QueueEntry.service_id == service_id)

        result = await self.session.execute(query.order_by(QueueEntry.joined_at))
        return [QueueEntryInfo.model_validate(e) for e in result.scalars().all()]


class QueueRepository:
    """Repository for queues and queue entries"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_queue_for_service(self, service_id: str) -> Optional[QueueInfo]:
        result = await self.session.execute(
            select(ServiceQueue).where(ServiceQueue.service_id == service_id)
            .execution_options(populate_existing=True)
        )
        queue = result.scalar_one_or_none()
        return QueueInfo.model_validate(queue) if queue else None

    async def get_or_create_queue(
        self,
        service_id: str,
        name: str,
        capacity: Optional[int] = None
    ) -> QueueInfo:
        """Queue for a service, created on first use"""
        queue = await self.get_queue_for_service(service_id)
        if queue:
            return queue

        db_queue = ServiceQueue(
            id=_new_id(),
            service_id=service_id,
            name=name,
            status=QueueStatus.ACTIVE.value,
            capacity=capacity,
            occupancy=0,
            last_sequence=0
        )
        self.session.add(db_queue)
        await self.session.flush()
        return QueueInfo.model_validate(db_queue)

    async def set_capacity(self, queue_id: str, capacity: Optional[int]):
        await self.session.execute(
            update(ServiceQueue)
            .where(ServiceQueue.id == queue_id)
            .values(capacity=capacity)
            .execution_options(synchronize_session=False)
        )

    async def set_status(self, queue_id: str, status: QueueStatus):
        await self.session.execute(
            update(ServiceQueue)
            .where(ServiceQueue.id == queue_id)
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )

    async def count_waiting(self, service_id: str, min_priority: int = 0) -> int:
        """
        Entries currently waiting for a service

        Args:
            min_priority: only count entries at or above this priority,
                i.e. the ones that will be called before a newcomer
        """
        query = (
            select(func.count(QueueEntry.id))
            .where(QueueEntry.service_id == service_id)
            .where(QueueEntry.status == EntryStatus.WAITING.value)
        )
        if min_priority > 0:
            query = query.where(QueueEntry.priority >= min_priority)

        result = await self.session.execute(query)
        return result.scalar_one()

    async def count_active_for_customer_service(self, customer_id: str, service_id: str) -> int:
        result = await self.session.execute(
            select(func.count(QueueEntry.id))
            .where(QueueEntry.customer_id == customer_id)
            .where(QueueEntry.service_id == service_id)
            .where(QueueEntry.status.in_(_values(ACTIVE_STATUSES)))
        )
        return result.scalar_one()

    async def count_active_in_queue(self, queue_id: str) -> int:
        result = await self.session.execute(
            select(func.count(QueueEntry.id))
            .where(QueueEntry.queue_id == queue_id)
            .where(QueueEntry.status.in_(_values(ACTIVE_STATUSES)))
        )
        return result.scalar_one()

    async def reserve_slot(self, queue_id: str) -> Optional[int]:
        """
        Atomically take a place in the queue

        Increments occupancy and the sequence counter in one statement,
        only while the queue is below its capacity.

        Returns:
            The new entry's sequence number, or None when the queue is full
        """
        result = await self.session.execute(
            update(ServiceQueue)
            .where(ServiceQueue.id == queue_id)
            .where(or_(
                ServiceQueue.capacity.is_(None),
                ServiceQueue.occupancy < ServiceQueue.capacity
            ))
            .values(
                occupancy=ServiceQueue.occupancy + 1,
                last_sequence=ServiceQueue.last_sequence + 1
            )
            .returning(ServiceQueue.last_sequence)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def increment_occupancy(self, queue_id: str, delta: int):
        """Atomic occupancy adjustment"""
        await self.session.execute(
            update(ServiceQueue)
            .where(ServiceQueue.id == queue_id)
            .values(occupancy=ServiceQueue.occupancy + delta)
            .execution_options(synchronize_session=False)
        )

    async def create(self, **fields) -> QueueEntryInfo:
        """Insert a queue entry; raises IntegrityError on duplicate active membership"""
        entry = QueueEntry(id=fields.pop('id', None) or _new_id(), **fields)
        self.session.add(entry)
        await self.session.flush()
        return QueueEntryInfo.model_validate(entry)

    async def get_entry(self, entry_id: str) -> Optional[QueueEntryInfo]:
        result = await self.session.execute(
            select(QueueEntry).where(QueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        return QueueEntryInfo.model_validate(entry) if entry else None

    async def update_status(
        self,
        entry_id: str,
        expected: EntryStatus,
        new_status: EntryStatus,
        **fields
    ) -> Optional[QueueEntryInfo]:
        """
        Compare-and-set status change

        Returns:
            Updated entry, or None when the entry is no longer in `expected`
        """
        result = await self.session.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .where(QueueEntry.status == expected.value)
            .values(status=new_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return await self.get_entry(entry_id)

    async def list_entries(
        self,
        service_id: Optional[str] = None,
        status: Optional[EntryStatus] = None,
        counter_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[QueueEntryInfo]:
        """Entries in call order: higher priority first, then by sequence number"""
        query = select(QueueEntry)
        if service_id:
            query = query.where(QueueEntry.service_id == service_id)
        if status:
            query = query.where(QueueEntry.status == status.value)
        if counter_id:
            query = query.where(QueueEntry.counter_id == counter_id)
        if customer_id:
            query = query.where(QueueEntry.customer_id == customer_id)

        result = await self.session.execute(
            query.order_by(
                QueueEntry.service_id,
                QueueEntry.priority.desc(),
                QueueEntry.sequence_number
            )
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [QueueEntryInfo.model_validate(e) for e in result.scalars().all()]

    async def reconcile_occupancy(self) -> int:
        """
        Reset every queue's occupancy to its count of non-terminal entries

        Returns:
            Number of queues that were corrected
        """
        active_counts = await self.session.execute(
            select(QueueEntry.queue_id, func.count(QueueEntry.id))
            .where(QueueEntry.status.notin_(_values(TERMINAL_STATUSES)))
            .group_by(QueueEntry.queue_id)
        )
        expected: Dict[str, int] = dict(active_counts.all())

        queues = await self.session.execute(select(ServiceQueue.id, ServiceQueue.occupancy))
        corrected = 0
        for queue_id, occupancy in queues.all():
            actual = expected.get(queue_id, 0)
            if occupancy != actual:
                logger.warning(f"Queue {queue_id} occupancy {occupancy} != {actual} active entries, correcting")
                await self.session.execute(
                    update(ServiceQueue)
                    .where(ServiceQueue.id == queue_id)
                    .values(occupancy=actual)
                    .execution_options(synchronize_session=False)
                )
                corrected += 1
        return corrected


class CounterRepository:
    """Repository for service counters"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_counter(self, counter_data: dict) -> CounterInfo:
        """Insert a counter; raises LookupError for unknown service ids"""
        service_ids = list(dict.fromkeys(counter_data.get('service_ids', [])))
        services = []
        if service_ids:
            result = await self.session.execute(
                select(Service).where(Service.id.in_(service_ids))
            )
            services = list(result.scalars().all())
            missing = set(service_ids) - {s.id for s in services}
            if missing:
                raise LookupError(f"Unknown services: {', '.join(sorted(missing))}")

        status = counter_data.get('status', CounterStatus.AVAILABLE)
        counter = Counter(
            id=counter_data.get('id') or _new_id(),
            counter_number=counter_data['counter_number'],
            name=counter_data['name'],
            status=status.value if isinstance(status, CounterStatus) else status,
            current_entry_id=None,
            average_service_time=counter_data.get('average_service_time', 0.0)
        )
        counter.services = services
        self.session.add(counter)
        await self.session.commit()
        return _counter_info(counter)

    async def get_by_number(self, counter_number: int) -> Optional[CounterInfo]:
        result = await self.session.execute(
            select(Counter).where(Counter.counter_number == counter_number)
            .execution_options(populate_existing=True)
        )
        counter = result.scalar_one_or_none()
        return _counter_info(counter) if counter else None

    async def get_counter(self, counter_id: str, for_update: bool = False) -> Optional[CounterInfo]:
        """
        Get counter by ID

        Args:
            for_update: lock the row until the transaction ends
        """
        query = select(Counter).where(Counter.id == counter_id)
        if for_update:
            query = query.with_for_update()

        result = await self.session.execute(query.execution_options(populate_existing=True))
        counter = result.scalar_one_or_none()
        return _counter_info(counter) if counter else None

    async def list_counters(self, status: Optional[CounterStatus] = None) -> List[CounterInfo]:
        query = select(Counter).order_by(Counter.counter_number)
        if status:
            query = query.where(Counter.status == status.value)

        result = await self.session.execute(query.execution_options(populate_existing=True))
        return [_counter_info(c) for c in result.scalars().all()]

    async def active_counters_supporting(self, service_id: str) -> List[CounterInfo]:
        """Non-offline counters serving a service, by counter number"""
        result = await self.session.execute(
            select(Counter)
            .where(Counter.services.any(Service.id == service_id))
            .where(Counter.status != CounterStatus.OFFLINE.value)
            .order_by(Counter.counter_number)
            .execution_options(populate_existing=True)
        )
        return [_counter_info(c) for c in result.scalars().all()]

    async def count_entries_at_counter(self, counter_id: str, statuses: Iterable) -> int:
        result = await self.session.execute(
            select(func.count(QueueEntry.id))
            .where(QueueEntry.counter_id == counter_id)
            .where(QueueEntry.status.in_(_values(statuses)))
        )
        return result.scalar_one()

    async def update_average_service_time(self, counter_id: str, new_avg: float):
        await self.session.execute(
            update(Counter)
            .where(Counter.id == counter_id)
            .values(average_service_time=new_avg)
            .execution_options(synchronize_session=False)
        )

    async def assign_entry(self, counter_id: str, entry_id: str):
        """Mark the counter busy with one entry"""
        await self.session.execute(
            update(Counter)
            .where(Counter.id == counter_id)
            .values(current_entry_id=entry_id, status=CounterStatus.BUSY.value)
            .execution_options(synchronize_session=False)
        )

    async def release(self, counter_id: str, entry_id: Optional[str] = None) -> bool:
        """
        Free a busy counter

        When entry_id is given the counter is only released if it still
        holds that entry.
        """
        query = (
            update(Counter)
            .where(Counter.id == counter_id)
            .where(Counter.status == CounterStatus.BUSY.value)
        )
        if entry_id is not None:
            query = query.where(Counter.current_entry_id == entry_id)

        result = await self.session.execute(
            query.values(current_entry_id=None, status=CounterStatus.AVAILABLE.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def update_status(self, counter_id: str, status: CounterStatus) -> Optional[CounterInfo]:
        values = {"status": status.value}
        if status != CounterStatus.BUSY:
            values["current_entry_id"] = None

        result = await self.session.execute(
            update(Counter)
            .where(Counter.id == counter_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount == 0:
            return None
        return await self.get_counter(counter_id)

    async def get_stats(self) -> CounterStats:
        result = await self.session.execute(
            select(Counter.status, func.count(Counter.id)).group_by(Counter.status)
        )
        by_status = dict(result.all())
        return CounterStats(
            total=sum(by_status.values()),
            available=by_status.get(CounterStatus.AVAILABLE.value, 0),
            busy=by_status.get(CounterStatus.BUSY.value, 0),
            offline=by_status.get(CounterStatus.OFFLINE.value, 0)
        )

    async def reconcile_busy_counters(self) -> int:
        """
        Release busy counters with no live in-service occupant

        Returns:
            Number of counters released
        """
        result = await self.session.execute(
            select(Counter.id, Counter.current_entry_id, QueueEntry.status)
            .outerjoin(QueueEntry, QueueEntry.id == Counter.current_entry_id)
            .where(Counter.status == CounterStatus.BUSY.value)
        )
        released = 0
        for counter_id, entry_id, entry_status in result.all():
            if entry_id is None or entry_status != EntryStatus.IN_SERVICE.value:
                logger.warning(f"Counter {counter_id} busy without live entry ({entry_id}), releasing")
                await self.release(counter_id)
                released += 1
        return released
