"""
Queue admission: validates and creates queue entries
"""
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.config import settings
from db.database import store_errors
from db.repositories import (
    CounterRepository, HistoricalSampleRepository, QueueRepository, ServiceRepository,
)
from errors import CapacityExceeded, Conflict, NotFound, QueueClosed
from models import AdmissionResult, EntryStatus, QueueStatus
from services.counter_scorer import CounterScorer
from services.estimator import WaitTimeEstimator, to_response

logger = logging.getLogger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 10


def clamp_priority(priority: Optional[int]) -> int:
    if priority is None:
        return MIN_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AdmissionController:
    """
    Admits customers into per-service queues

    Checks run in order: service exists and is active (NotFound), queue is
    accepting entries (QueueClosed), customer has no live entry for the
    service (Conflict), queue below its ceiling (CapacityExceeded). The slot
    reservation and the entry insert share one transaction: the reservation
    is a single capacity-conditional UPDATE and the insert is guarded by a
    partial unique index on live memberships, so concurrent requests cannot
    double-admit or overfill a queue.

    Estimation and counter scoring read inside savepoints, so a failed
    query degrades the result without aborting the admission transaction.
    The estimated wait is fixed at admission and never recomputed.
    """

    def __init__(
        self,
        session: AsyncSession,
        estimator: Optional[WaitTimeEstimator] = None,
        scorer: Optional[CounterScorer] = None,
        default_capacity: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.session = session
        self.services = ServiceRepository(session)
        self.queues = QueueRepository(session)
        self.counters = CounterRepository(session)
        self.estimator = estimator or WaitTimeEstimator(
            self.services,
            HistoricalSampleRepository(session),
            sample_limit=settings.ESTIMATOR_SAMPLE_LIMIT,
            isolate=session.begin_nested
        )
        self.scorer = scorer or CounterScorer(self.counters, isolate=session.begin_nested)
        self.default_capacity = (
            settings.DEFAULT_QUEUE_CAPACITY if default_capacity is None else default_capacity
        )
        self.clock = clock

    async def admit(
        self,
        customer_id: str,
        service_id: str,
        priority: Optional[int] = 0,
        notes: Optional[str] = None
    ) -> AdmissionResult:
        """
        Admit a customer to the queue for a service

        Raises:
            NotFound: service missing or inactive
            QueueClosed: queue is paused or closed
            Conflict: customer already has a live entry for the service
            CapacityExceeded: queue is full
            Unavailable: queue store unreachable
        """
        priority = clamp_priority(priority)

        with store_errors("admission"):
            service = await self.services.get(service_id)
            if service is None or not service.is_active:
                raise NotFound(f"Service '{service_id}' not found")

            queue = await self.queues.get_or_create_queue(
                service_id,
                name=f"{service.name} queue",
                capacity=self.default_capacity
            )
            if queue.status != QueueStatus.ACTIVE:
                raise QueueClosed(f"Queue for '{service.name}' is {queue.status.value}")

            active = await self.queues.count_active_for_customer_service(customer_id, service_id)
            if active > 0:
                raise Conflict("Already in queue for this service")

            if queue.capacity is not None and queue.occupancy >= queue.capacity:
                raise CapacityExceeded(f"Queue for '{service.name}' is at full capacity")

            # Entries called before this one: same or higher priority
            queue_size = await self.queues.count_waiting(service_id, min_priority=priority)

        # Best effort; both degrade instead of raising
        estimation = await self.estimator.estimate(service_id, queue_size)
        assignment = await self.scorer.best_counter(service_id, priority)

        try:
            with store_errors("admission"):
                sequence = await self.queues.reserve_slot(queue.id)
                if sequence is None:
                    raise CapacityExceeded(f"Queue for '{service.name}' is at full capacity")

                entry = await self.queues.create(
                    queue_id=queue.id,
                    sequence_number=sequence,
                    customer_id=customer_id,
                    service_id=service_id,
                    counter_id=assignment.value,
                    status=EntryStatus.WAITING.value,
                    priority=priority,
                    estimated_wait_minutes=estimation.value.estimated_wait_minutes,
                    notes=notes,
                    joined_at=self.clock()
                )
                await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.info(f"Concurrent admission rejected for {customer_id} on {service_id}: {e.orig}")
            raise Conflict("Already in queue for this service") from e
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            f"Admitted {customer_id} to {service_id} as #{sequence} "
            f"(wait={entry.estimated_wait_minutes}min, counter={entry.counter_id}, "
            f"estimate_degraded={estimation.degraded}, assignment_degraded={assignment.degraded})"
        )

        return AdmissionResult(entry=entry, estimate=to_response(service_id, estimation))
