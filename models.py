"""
Pydantic schemas for Queue Service
"""
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Dict, List, Optional


class EntryStatus(str, Enum):
    """Queue entry lifecycle states"""
    WAITING = "waiting"
    CALLED = "called"
    IN_SERVICE = "in_service"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


ACTIVE_STATUSES = (EntryStatus.WAITING, EntryStatus.CALLED, EntryStatus.IN_SERVICE)
TERMINAL_STATUSES = (EntryStatus.COMPLETED, EntryStatus.CANCELLED, EntryStatus.NO_SHOW)


class CounterStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class QueueStatus(str, Enum):
    """Only active queues admit new entries"""
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


# ============ Service Catalog ============

class ServiceCreate(BaseModel):
    """Service catalog entry submitted by an administrator"""
    id: Optional[str] = Field(default=None, description="Service identifier, generated when omitted")
    name: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = None
    duration_minutes: int = Field(..., ge=5, le=480, description="Nominal duration")
    price: float = Field(default=0.0, ge=0)
    is_active: bool = True

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "consultation",
                "name": "Consultation",
                "category": "general",
                "duration_minutes": 30,
                "price": 50.0
            }
        }
    )


class ServiceInfo(BaseModel):
    """Service catalog entry"""
    id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    duration_minutes: int
    price: float
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# ============ Counters ============

class CounterCreate(BaseModel):
    counter_number: int = Field(..., ge=1)
    name: str = Field(..., min_length=2, max_length=50)
    service_ids: List[str] = Field(default_factory=list)
    status: CounterStatus = CounterStatus.AVAILABLE


class CounterStatusUpdate(BaseModel):
    status: CounterStatus


class CounterInfo(BaseModel):
    """Service counter and its current occupancy"""
    id: str
    counter_number: int
    name: str
    service_ids: List[str]
    status: CounterStatus
    current_entry_id: Optional[str] = None
    average_service_time: float = 0.0

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "c1f3",
                "counter_number": 1,
                "name": "Counter 1",
                "service_ids": ["consultation"],
                "status": "available",
                "current_entry_id": None,
                "average_service_time": 12.4
            }
        }
    )


class CounterStats(BaseModel):
    total: int
    available: int
    busy: int
    offline: int


# ============ Queues and Entries ============

class QueueInfo(BaseModel):
    """Per-service queue aggregate"""
    id: str
    service_id: str
    name: str
    status: QueueStatus = QueueStatus.ACTIVE
    capacity: Optional[int] = None
    occupancy: int
    last_sequence: int

    model_config = ConfigDict(from_attributes=True)


class QueueStatusUpdate(BaseModel):
    status: QueueStatus


class QueueCapacityUpdate(BaseModel):
    """None removes the ceiling"""
    capacity: Optional[int] = Field(..., ge=1)


class QueueEntryInfo(BaseModel):
    """One customer's participation in a service queue"""
    id: str
    queue_id: str
    sequence_number: int
    customer_id: str
    service_id: str
    counter_id: Optional[str] = None
    status: EntryStatus
    priority: int
    estimated_wait_minutes: int
    actual_wait_minutes: Optional[int] = None
    notes: Optional[str] = None
    joined_at: datetime
    called_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class HistoricalSample(BaseModel):
    """Start/end of one completed service"""
    start: datetime
    end: datetime


class AdmitRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    service_id: str = Field(..., min_length=1)
    priority: int = Field(default=0, description="Clamped to 0-10")
    notes: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "customer_id": "cust-42",
                "service_id": "consultation",
                "priority": 0,
                "notes": "Needs wheelchair access"
            }
        }
    )


class TransitionRequest(BaseModel):
    status: EntryStatus
    counter_id: Optional[str] = None


# ============ Wait Time ============

class WaitTimeEstimateResponse(BaseModel):
    """Wait time estimate returned to clients"""
    service_id: str
    estimated_wait_minutes: int
    queue_position: int
    total_ahead: int
    average_service_time: int
    confidence: float
    degraded: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "service_id": "consultation",
                "estimated_wait_minutes": 105,
                "queue_position": 4,
                "total_ahead": 3,
                "average_service_time": 30,
                "confidence": 0.5,
                "degraded": False
            }
        }
    )


class AdmissionResult(BaseModel):
    entry: QueueEntryInfo
    estimate: WaitTimeEstimateResponse


class QueueStatusResponse(BaseModel):
    queue: QueueInfo
    waiting: int
    estimate: WaitTimeEstimateResponse


# ============ Outgoing Updates (to upstream broker) ============

class QueueUpdate(BaseModel):
    """
    Queue update published to upstream broker
    Consumed by display boards for the service
    """
    service_id: str
    entry_id: str
    status: EntryStatus
    waiting: int
    wait_minutes: int
    confidence: float
    timestamp: datetime

    def to_broker_message(self) -> dict:
        """
        Convert to broker message format:
        {
            "type": "queue_update",
            "service": "consultation",
            "entry": "9b1e...",
            "status": "waiting",
            "waiting": 3,
            "minutes": 105,
            "confidence": 0.5,
            "ts": "2025-10-08T18:06:00Z"
        }
        """
        return {
            "type": "queue_update",
            "service": self.service_id,
            "entry": self.entry_id,
            "status": self.status.value,
            "waiting": self.waiting,
            "minutes": self.wait_minutes,
            "confidence": round(self.confidence, 2),
            "ts": self.timestamp.isoformat()
        }


# ============ Analytics ============

class PeakHourPrediction(BaseModel):
    day_of_week: int = Field(..., description="0=Monday ... 6=Sunday")
    hour: int
    predicted_volume: int
    confidence: float


class BookingSlot(BaseModel):
    hour: int
    reason: str
    confidence: float


class BusyDayPrediction(BaseModel):
    date: str
    expected_load: int
    confidence: int


class ServiceEfficiency(BaseModel):
    count: int
    avg_wait: float
    avg_service: float


class HourCount(BaseModel):
    hour: int
    count: int


class QueueEfficiency(BaseModel):
    total_completed: int = 0
    average_wait_time: float = 0.0
    average_service_time: float = 0.0
    by_service: Dict[str, ServiceEfficiency] = Field(default_factory=dict)
    peak_hours: List[HourCount] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
