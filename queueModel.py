"""
Wait time estimation, counter scoring and service-time smoothing

Pure calculations with no data access. The async services in services/
fetch the inputs and call into this module.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Generic, Iterable, List, Optional, Sequence, TypeVar, Union

# Estimation
BUFFER_MULTIPLIER = Decimal("1.15")  # 15% buffer for variability
FALLBACK_WAIT_PER_PERSON = 15
FALLBACK_CONFIDENCE = 0.3
BASE_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95

# Counter scoring
BASE_SCORE = 100.0
LOAD_PENALTY = 10.0
SERVICE_TIME_PENALTY = 0.5
IDLE_BONUS = 30.0

# Rolling average weight of the newest service time
SMOOTHING_ALPHA = 0.2

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Result computed from real data"""
    value: T
    degraded = False


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """Fallback result produced because the real computation failed"""
    value: T
    reason: str = ""
    degraded = True


Outcome = Union[Ok[T], Degraded[T]]


@dataclass(frozen=True)
class WaitTimeEstimate:
    """Result from wait time estimation"""
    estimated_wait_minutes: int
    queue_position: int
    total_ahead: int
    average_service_time: int  # raw average before the buffer
    confidence: float


@dataclass(frozen=True)
class CounterScore:
    counter_id: str
    score: float


def round_half_up(value) -> int:
    """Round to the nearest integer, halves away from zero"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite drops tzinfo)"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def minutes_between(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / 60.0


def calculate_wait_estimate(
    baseline_minutes: int,
    sample_durations: Sequence[float],
    queue_size: int
) -> WaitTimeEstimate:
    """
    Estimate the wait for a newcomer with queue_size people ahead

    Args:
        baseline_minutes: nominal service duration, used without history
        sample_durations: recent actual service durations in minutes
        queue_size: entries currently ahead (negative treated as 0)

    Returns:
        WaitTimeEstimate; confidence grows with sample count up to 0.95
    """
    queue_size = max(queue_size, 0)

    if sample_durations:
        average = max(round_half_up(sum(sample_durations) / len(sample_durations)), 0)
        confidence = min(BASE_CONFIDENCE + len(sample_durations) / 100, MAX_CONFIDENCE)
    else:
        average = max(baseline_minutes, 0)
        confidence = BASE_CONFIDENCE

    adjusted = round_half_up(Decimal(average) * BUFFER_MULTIPLIER)

    return WaitTimeEstimate(
        estimated_wait_minutes=adjusted * queue_size,
        queue_position=queue_size + 1,
        total_ahead=queue_size,
        average_service_time=average,
        confidence=round(confidence, 2)
    )


def fallback_estimate(queue_size: int) -> WaitTimeEstimate:
    """Estimate used when service data cannot be read"""
    queue_size = max(queue_size, 0)
    return WaitTimeEstimate(
        estimated_wait_minutes=queue_size * FALLBACK_WAIT_PER_PERSON,
        queue_position=queue_size + 1,
        total_ahead=queue_size,
        average_service_time=FALLBACK_WAIT_PER_PERSON,
        confidence=FALLBACK_CONFIDENCE
    )


def score_counter(active_entries: int, average_service_time: float, in_service: int) -> float:
    """
    Score a candidate counter; higher is better, never below 0

    Loaded counters and slow counters are penalised, idle ones get a bonus.
    """
    score = BASE_SCORE
    score -= LOAD_PENALTY * active_entries
    score -= SERVICE_TIME_PENALTY * (average_service_time or 0.0)
    if in_service == 0:
        score += IDLE_BONUS
    return max(score, 0.0)


def pick_best_counter(scores: Iterable[CounterScore]) -> Optional[str]:
    """Highest score wins; ties keep the first candidate"""
    best: Optional[CounterScore] = None
    for candidate in scores:
        if best is None or candidate.score > best.score:
            best = candidate
    return best.counter_id if best else None


class ServiceTimeSmoother:
    """Exponential moving average of a counter's service time"""

    def __init__(self, current: float = 0.0, alpha: float = SMOOTHING_ALPHA):
        """
        Args:
            current: existing average in minutes (0 means no history)
            alpha: weight of the newest observation (0 < alpha < 1)
        """
        self.alpha = alpha
        self.current = current

    def update(self, service_minutes: float) -> float:
        """
        Fold one completed service into the average

        The first observation replaces an empty (zero) average.
        """
        if not self.current:
            self.current = service_minutes
        else:
            self.current = (
                self.current * (1 - self.alpha) +
                service_minutes * self.alpha
            )
        return self.current


def durations_from_samples(samples) -> List[float]:
    """
    Service durations in minutes from HistoricalSample-like objects

    Samples whose end precedes their start count as zero-length.
    """
    return [max(minutes_between(s.start, s.end), 0.0) for s in samples]
