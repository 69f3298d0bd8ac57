import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from db.database import Base
from db import database
import db.models  # noqa: F401  registers tables on Base.metadata
from app import app

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

BASE_TIME = datetime(2025, 10, 8, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for lifecycle timestamps"""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> datetime:
        self.now = self.now + timedelta(minutes=minutes)
        return self.now


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create async engine for the test session"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Get a test database session.
    It also patches the application's session factory to use the test engine.
    """
    test_session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with test_session_factory() as session:
        # Patch the global session factory in db.database
        original_factory = database.async_session_factory
        database.async_session_factory = test_session_factory

        yield session

        await session.rollback()

        # Restore original factory
        database.async_session_factory = original_factory


@pytest_asyncio.fixture
async def test_client(test_db_session) -> AsyncGenerator[AsyncClient, None]:
    """Get a test client for the application"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def clock():
    return FakeClock()


# ==================== DATA FIXTURES ====================

@pytest.fixture
def sample_services():
    """Sample service catalog"""
    return [
        {
            "id": "consultation",
            "name": "Consultation",
            "category": "general",
            "duration_minutes": 30,
            "price": 50.0
        },
        {
            "id": "passport",
            "name": "Passport Renewal",
            "category": "documents",
            "duration_minutes": 10,
            "price": 20.0
        },
        {
            "id": "retired",
            "name": "Retired Service",
            "category": "general",
            "duration_minutes": 15,
            "price": 0.0,
            "is_active": False
        }
    ]


@pytest.fixture
def sample_counters():
    """Sample counters"""
    return [
        {
            "id": "counter-1",
            "counter_number": 1,
            "name": "Counter 1",
            "service_ids": ["consultation", "passport"]
        },
        {
            "id": "counter-2",
            "counter_number": 2,
            "name": "Counter 2",
            "service_ids": ["consultation"]
        },
        {
            "id": "counter-3",
            "counter_number": 3,
            "name": "Counter 3",
            "service_ids": ["passport"],
            "status": "offline"
        }
    ]


@pytest.fixture
def mock_catalog_service_response(sample_services):
    """Mock response from CatalogService"""
    return sample_services[0:2]


@pytest_asyncio.fixture
async def seed_services(test_db_session, sample_services):
    """Seed database with services (and their queues)"""
    from db.repositories import ServiceRepository
    repo = ServiceRepository(test_db_session)
    for service in sample_services:
        await repo.upsert_service(service)
    return sample_services


@pytest_asyncio.fixture
async def seed_counters(test_db_session, seed_services, sample_counters):
    """Seed database with counters"""
    from db.repositories import CounterRepository
    repo = CounterRepository(test_db_session)
    for counter in sample_counters:
        await repo.create_counter(counter)
    return sample_counters


@pytest_asyncio.fixture
async def add_entry(test_db_session, seed_services):
    """
    Factory inserting queue entries directly, bypassing admission

    Keeps the queue's sequence counter and occupancy in step with the
    inserted rows.
    """
    from sqlalchemy import select, update
    from db.models import QueueEntry, ServiceQueue
    from models import TERMINAL_STATUSES

    created = {"n": 0}

    async def _add(
        service_id,
        status="waiting",
        customer_id=None,
        joined_at=BASE_TIME,
        started_at=None,
        completed_at=None,
        counter_id=None,
        priority=0
    ):
        queue = (await test_db_session.execute(
            select(ServiceQueue).where(ServiceQueue.service_id == service_id)
        )).scalar_one()

        created["n"] += 1
        sequence = queue.last_sequence + 1
        active = status not in [s.value for s in TERMINAL_STATUSES]

        await test_db_session.execute(
            update(ServiceQueue)
            .where(ServiceQueue.id == queue.id)
            .values(
                last_sequence=sequence,
                occupancy=ServiceQueue.occupancy + (1 if active else 0)
            )
            .execution_options(synchronize_session=False)
        )
        await test_db_session.refresh(queue)

        entry = QueueEntry(
            id=f"entry-{created['n']}",
            queue_id=queue.id,
            sequence_number=sequence,
            customer_id=customer_id or f"customer-{created['n']}",
            service_id=service_id,
            counter_id=counter_id,
            status=status,
            priority=priority,
            estimated_wait_minutes=0,
            joined_at=joined_at,
            started_at=started_at,
            completed_at=completed_at
        )
        test_db_session.add(entry)
        await test_db_session.commit()
        return entry.id

    return _add


@pytest_asyncio.fixture
async def add_history(add_entry):
    """Factory inserting completed services with the given durations (minutes)"""

    async def _add(service_id, durations, counter_id=None, start=BASE_TIME):
        ids = []
        for i, minutes in enumerate(durations):
            started = start + timedelta(hours=i)
            ids.append(await add_entry(
                service_id,
                status="completed",
                joined_at=started - timedelta(minutes=5),
                started_at=started,
                completed_at=started + timedelta(minutes=minutes),
                counter_id=counter_id
            ))
        return ids

    return _add
