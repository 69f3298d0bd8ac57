"""
Queue Service - FastAPI application
Admits customers into service queues, drives entry lifecycles and
estimates wait times from historical service durations
Publishes queue updates to upstream broker
"""
from fastapi import FastAPI, Query, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
import logging

from config.config import settings
from db.database import get_db, get_session, init_db, close_db
from db.repositories import (
    CounterRepository, HistoricalSampleRepository, QueueRepository, ServiceRepository,
)
from errors import Conflict, NotFound, QueueServiceError, Unavailable
from models import (
    AdmissionResult, AdmitRequest, BookingSlot, BusyDayPrediction, CounterCreate,
    CounterInfo, CounterStats, CounterStatus, CounterStatusUpdate, EntryStatus,
    PeakHourPrediction, QueueCapacityUpdate, QueueEfficiency, QueueEntryInfo,
    QueueInfo, QueueStatusResponse, QueueStatusUpdate, ServiceCreate, ServiceInfo,
    TransitionRequest, WaitTimeEstimateResponse,
)
from publisher import QueueUpdatePublisher
from services.admission import AdmissionController
from services.analytics import QueueAnalytics
from services.catalog_service import CatalogServiceClient
from services.estimator import WaitTimeEstimator, to_response
from services.lifecycle import QueueLifecycle, reconcile

import os
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# Global publisher instance
publisher: Optional[QueueUpdatePublisher] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    global publisher

    # Startup
    logger.info("Starting Queue Service...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Sync service catalog from CatalogService
    if settings.CATALOG_SERVICE_URL:
        try:
            catalog_client = CatalogServiceClient()
            logger.info("Fetching service catalog from CatalogService...")
            services = await catalog_client.fetch_services()

            async with get_db() as db:
                service_repo = ServiceRepository(db)
                for service_data in services:
                    await service_repo.upsert_service(
                        service_data,
                        capacity=settings.DEFAULT_QUEUE_CAPACITY
                    )

            logger.info(f"Loaded {len(services)} services from CatalogService")

        except Unavailable as e:
            logger.error(f"Failed to fetch service catalog: {e}")
            logger.warning("Starting service with the existing catalog")

    # Repair counters/occupancy left inconsistent by a crash
    async with get_db() as db:
        await reconcile(db)

    if settings.MQTT_ENABLED:
        publisher = QueueUpdatePublisher()
        publisher.start()

    logger.info("Queue Service ready")

    yield

    # Shutdown
    logger.info("Shutting down Queue Service...")
    if publisher:
        publisher.stop()

    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title="Queue Service",
    description="Queue admission, counter assignment and wait time estimation",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QueueServiceError)
async def queue_service_error_handler(request: Request, exc: QueueServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code}
    )


def _estimator(db: AsyncSession) -> WaitTimeEstimator:
    return WaitTimeEstimator(
        ServiceRepository(db),
        HistoricalSampleRepository(db),
        sample_limit=settings.ESTIMATOR_SAMPLE_LIMIT
    )


async def _publish(db: AsyncSession, entry: QueueEntryInfo):
    """Push the entry's service queue state to the broker, if enabled"""
    if not (publisher and publisher.running):
        return

    try:
        waiting = await QueueRepository(db).count_waiting(entry.service_id)
    except SQLAlchemyError as e:
        logger.error(f"Skipping queue update publish for {entry.service_id}: {e}")
        return

    outcome = await _estimator(db).estimate(entry.service_id, waiting)
    publisher.publish_update(entry, waiting, to_response(entry.service_id, outcome))


# ============ HTTP API Endpoints ============

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    publisher_status = "connected" if publisher and publisher.running else "disabled"

    return {
        "status": "healthy",
        "service": "queue",
        "publisher_status": publisher_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ============ Services ============

@app.get("/api/services", response_model=List[ServiceInfo])
async def get_services(
    active_only: bool = Query(False, description="Only services open for admission"),
    db: AsyncSession = Depends(get_session)
):
    """
    Get the service catalog

    Example: GET /api/services?active_only=true
    """
    return await ServiceRepository(db).get_all(active_only=active_only)


@app.post("/api/services", response_model=ServiceInfo, status_code=201)
async def create_service(
    service: ServiceCreate,
    db: AsyncSession = Depends(get_session)
):
    """Create or update a service; its queue is created alongside"""
    try:
        return await ServiceRepository(db).upsert_service(
            service.model_dump(),
            capacity=settings.DEFAULT_QUEUE_CAPACITY
        )
    except IntegrityError:
        raise Conflict(f"Service name '{service.name}' already in use")


@app.get("/api/services/{service_id}", response_model=ServiceInfo)
async def get_service(
    service_id: str,
    db: AsyncSession = Depends(get_session)
):
    service = await ServiceRepository(db).get(service_id)

    if not service:
        raise NotFound(f"Service '{service_id}' not found")

    return service


@app.post("/api/services/{service_id}/deactivate", response_model=ServiceInfo)
async def deactivate_service(
    service_id: str,
    db: AsyncSession = Depends(get_session)
):
    """Stop admitting new entries; existing entries keep their lifecycle"""
    service = await ServiceRepository(db).deactivate(service_id)

    if not service:
        raise NotFound(f"Service '{service_id}' not found")

    return service


# ============ Counters ============

@app.get("/api/counters", response_model=List[CounterInfo])
async def get_counters(
    status: Optional[CounterStatus] = Query(None, description="Filter by status"),
    db: AsyncSession = Depends(get_session)
):
    return await CounterRepository(db).list_counters(status=status)


@app.post("/api/counters", response_model=CounterInfo, status_code=201)
async def create_counter(
    counter: CounterCreate,
    db: AsyncSession = Depends(get_session)
):
    repo = CounterRepository(db)

    if await repo.get_by_number(counter.counter_number):
        raise Conflict(f"Counter number {counter.counter_number} already exists")

    try:
        return await repo.create_counter(counter.model_dump())
    except LookupError as e:
        raise NotFound(str(e))
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Counter number {counter.counter_number} already exists")


@app.get("/api/counters/stats/overview", response_model=CounterStats)
async def get_counter_stats(db: AsyncSession = Depends(get_session)):
    return await CounterRepository(db).get_stats()


@app.get("/api/counters/{counter_id}", response_model=CounterInfo)
async def get_counter(
    counter_id: str,
    db: AsyncSession = Depends(get_session)
):
    counter = await CounterRepository(db).get_counter(counter_id)

    if not counter:
        raise NotFound(f"Counter '{counter_id}' not found")

    return counter


@app.put("/api/counters/{counter_id}/status", response_model=CounterInfo)
async def update_counter_status(
    counter_id: str,
    update: CounterStatusUpdate,
    db: AsyncSession = Depends(get_session)
):
    """Take a counter offline or back into service; refused while it serves an entry"""
    repo = CounterRepository(db)

    if update.status != CounterStatus.BUSY:
        current = await repo.get_counter(counter_id)
        if current and current.current_entry_id:
            entry = await QueueRepository(db).get_entry(current.current_entry_id)
            if entry and entry.status == EntryStatus.IN_SERVICE:
                raise Conflict(
                    f"Counter {current.counter_number} is serving entry {entry.id}; "
                    f"complete it first"
                )

    counter = await repo.update_status(counter_id, update.status)

    if not counter:
        raise NotFound(f"Counter '{counter_id}' not found")

    return counter


# ============ Queue Entries ============

@app.post("/api/queue-entries", response_model=AdmissionResult, status_code=201)
async def join_queue(
    request: AdmitRequest,
    db: AsyncSession = Depends(get_session)
):
    """
    Join the queue for a service

    Example: POST /api/queue-entries
    {"customer_id": "cust-42", "service_id": "consultation", "priority": 0}
    """
    result = await AdmissionController(db).admit(
        customer_id=request.customer_id,
        service_id=request.service_id,
        priority=request.priority,
        notes=request.notes
    )
    await _publish(db, result.entry)
    return result


@app.get("/api/queue-entries", response_model=List[QueueEntryInfo])
async def get_queue_entries(
    service_id: Optional[str] = Query(None),
    status: Optional[EntryStatus] = Query(None),
    counter_id: Optional[str] = Query(None),
    customer_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session)
):
    return await QueueRepository(db).list_entries(
        service_id=service_id,
        status=status,
        counter_id=counter_id,
        customer_id=customer_id,
        limit=limit,
        offset=offset
    )


@app.get("/api/queue-entries/{entry_id}", response_model=QueueEntryInfo)
async def get_queue_entry(
    entry_id: str,
    db: AsyncSession = Depends(get_session)
):
    entry = await QueueRepository(db).get_entry(entry_id)

    if not entry:
        raise NotFound(f"Queue entry '{entry_id}' not found")

    return entry


@app.put("/api/queue-entries/{entry_id}/status", response_model=QueueEntryInfo)
async def update_queue_entry_status(
    entry_id: str,
    request: TransitionRequest,
    db: AsyncSession = Depends(get_session)
):
    """Move an entry through its lifecycle (staff)"""
    entry = await QueueLifecycle(db).transition(entry_id, request.status, counter_id=request.counter_id)
    await _publish(db, entry)
    return entry


@app.delete("/api/queue-entries/{entry_id}", response_model=QueueEntryInfo)
async def cancel_queue_entry(
    entry_id: str,
    db: AsyncSession = Depends(get_session)
):
    """Cancel an entry that is waiting or called"""
    entry = await QueueLifecycle(db).cancel(entry_id)
    await _publish(db, entry)
    return entry


# ============ Queues and Wait Times ============

@app.get("/api/queues/{service_id}", response_model=QueueStatusResponse)
async def get_queue_status(
    service_id: str,
    db: AsyncSession = Depends(get_session)
):
    """Occupancy, waiting count and the wait a newcomer would face"""
    queue = await QueueRepository(db).get_queue_for_service(service_id)

    if not queue:
        raise NotFound(f"No queue for service '{service_id}'")

    waiting = await QueueRepository(db).count_waiting(service_id)
    outcome = await _estimator(db).estimate(service_id, waiting)

    return QueueStatusResponse(
        queue=queue,
        waiting=waiting,
        estimate=to_response(service_id, outcome)
    )


@app.put("/api/queues/{service_id}/status", response_model=QueueInfo)
async def update_queue_status(
    service_id: str,
    update: QueueStatusUpdate,
    db: AsyncSession = Depends(get_session)
):
    """Pause, close or reopen a queue; entries already in it are unaffected"""
    repo = QueueRepository(db)
    queue = await repo.get_queue_for_service(service_id)

    if not queue:
        raise NotFound(f"No queue for service '{service_id}'")

    await repo.set_status(queue.id, update.status)
    await db.commit()
    logger.info(f"Queue for {service_id} is now {update.status.value}")

    return await repo.get_queue_for_service(service_id)


@app.put("/api/queues/{service_id}/capacity", response_model=QueueInfo)
async def update_queue_capacity(
    service_id: str,
    update: QueueCapacityUpdate,
    db: AsyncSession = Depends(get_session)
):
    """
    Set the queue's ceiling on live entries

    Example: PUT /api/queues/consultation/capacity
    {"capacity": 20}   or   {"capacity": null} to remove the ceiling

    Lowering it below the current occupancy only blocks new admissions.
    """
    repo = QueueRepository(db)
    queue = await repo.get_queue_for_service(service_id)

    if not queue:
        raise NotFound(f"No queue for service '{service_id}'")

    await repo.set_capacity(queue.id, update.capacity)
    await db.commit()
    logger.info(f"Queue for {service_id} capacity set to {update.capacity}")

    return await repo.get_queue_for_service(service_id)


@app.get("/api/waittime/{service_id}", response_model=WaitTimeEstimateResponse)
async def get_wait_time(
    service_id: str,
    queue_size: Optional[int] = Query(None, ge=0, description="Entries ahead; defaults to current waiting count"),
    db: AsyncSession = Depends(get_session)
):
    """
    Estimate the wait for a service before joining

    Example: GET /api/waittime/consultation?queue_size=3

    Response:
    {
        "service_id": "consultation",
        "estimated_wait_minutes": 105,
        "queue_position": 4,
        "total_ahead": 3,
        "average_service_time": 30,
        "confidence": 0.5,
        "degraded": false
    }
    """
    if queue_size is None:
        queue_size = await QueueRepository(db).count_waiting(service_id)

    outcome = await _estimator(db).estimate(service_id, queue_size)
    return to_response(service_id, outcome)


# ============ Analytics ============

@app.get("/api/analytics/peak-hours", response_model=List[PeakHourPrediction])
async def get_peak_hours(
    days: int = Query(30, ge=1, le=365),
    service_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_session)
):
    return await QueueAnalytics(db).predict_peak_hours(days=days, service_id=service_id)


@app.get("/api/analytics/optimal-slots", response_model=List[BookingSlot])
async def get_optimal_slots(
    day_of_week: int = Query(..., ge=0, le=6, description="0=Monday ... 6=Sunday"),
    exclude_hours: List[int] = Query([]),
    db: AsyncSession = Depends(get_session)
):
    return await QueueAnalytics(db).optimal_booking_slots(day_of_week, exclude_hours)


@app.get("/api/analytics/busy-days/{service_id}", response_model=List[BusyDayPrediction])
async def get_busy_days(
    service_id: str,
    days_ahead: int = Query(7, ge=1, le=31),
    db: AsyncSession = Depends(get_session)
):
    return await QueueAnalytics(db).predict_busy_days(service_id, days_ahead=days_ahead)


@app.get("/api/analytics/queue-efficiency", response_model=QueueEfficiency)
async def get_queue_efficiency(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_session)
):
    return await QueueAnalytics(db).queue_efficiency(days=days)


# ============ Admin/Debug Endpoints ============

@app.get("/debug/publisher-status")
async def get_publisher_status():
    """
    Debug endpoint to check queue update publisher status
    """
    if not publisher:
        return {"status": "not_initialized"}

    return {
        "status": "running" if publisher.running else "stopped",
        **publisher.get_stats()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
        reload=True,
        log_level="info"
    )
