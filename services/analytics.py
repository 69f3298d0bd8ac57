"""
Historical queue analytics: peak hours, busy days, quiet slots, efficiency

All operations are non-blocking. On data-access failure they log the error
and return empty results rather than failing the request.
"""
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import HistoricalSampleRepository, ServiceRepository
from models import (
    BookingSlot, BusyDayPrediction, EntryStatus, HourCount, PeakHourPrediction,
    QueueEfficiency, ServiceEfficiency,
)
from queueModel import as_utc, minutes_between

logger = logging.getLogger(__name__)

PEAK_HOURS_LIMIT = 20
BOOKING_SLOTS_LIMIT = 10
BUSY_DAYS_HISTORY = 30
DEFAULT_DAY_LOAD = 5
DEFAULT_DAY_CONFIDENCE = 20


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QueueAnalytics:
    """Predictions over queue admission history"""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = _utc_now):
        self.history = HistoricalSampleRepository(session)
        self.services = ServiceRepository(session)
        self.clock = clock

    async def predict_peak_hours(
        self,
        days: int = 30,
        service_id: Optional[str] = None
    ) -> List[PeakHourPrediction]:
        """
        Busiest (weekday, hour) slots over the last `days` days

        Confidence blends sample size with whether the slot is above the
        mean volume.
        """
        if days < 1 or days > 365:
            raise ValueError("days must be between 1 and 365")

        try:
            entries = await self.history.entries_since(self.clock() - timedelta(days=days), service_id)
        except Exception as e:
            logger.error(f"Peak hour prediction failed: {e}")
            return []

        volume: Dict[Tuple[int, int], int] = defaultdict(int)
        for entry in entries:
            joined = as_utc(entry.joined_at)
            volume[(joined.weekday(), joined.hour)] += 1

        if not volume:
            return []

        mean_volume = sum(volume.values()) / len(volume)
        predictions = []
        for (day_of_week, hour), count in volume.items():
            sample_confidence = min(count / 10, 1.0)
            volume_confidence = 0.8 if count > mean_volume else 0.5
            predictions.append(PeakHourPrediction(
                day_of_week=day_of_week,
                hour=hour,
                predicted_volume=count,
                confidence=round((sample_confidence + volume_confidence) / 2, 2)
            ))

        predictions.sort(key=lambda p: p.predicted_volume, reverse=True)
        return predictions[:PEAK_HOURS_LIMIT]

    async def optimal_booking_slots(
        self,
        day_of_week: int,
        exclude_hours: Sequence[int] = ()
    ) -> List[BookingSlot]:
        """Quiet hours on a weekday (0=Monday), best first"""
        peak_hours = await self.predict_peak_hours()
        hour_volume = {p.hour: p.predicted_volume for p in peak_hours if p.day_of_week == day_of_week}
        mean_volume = sum(hour_volume.values()) / (len(hour_volume) or 1)

        slots = []
        for hour in range(24):
            if hour in exclude_hours:
                continue

            volume = hour_volume.get(hour, 0)
            if volume == 0:
                slots.append(BookingSlot(hour=hour, reason="Historically quiet period", confidence=0.8))
            elif volume < mean_volume * 0.5:
                slots.append(BookingSlot(hour=hour, reason="Below average traffic", confidence=0.75))
            elif volume < mean_volume:
                slots.append(BookingSlot(hour=hour, reason="Moderate traffic", confidence=0.65))

        # Stable sort keeps earlier hours first within a confidence band
        slots.sort(key=lambda s: s.confidence, reverse=True)
        return slots[:BOOKING_SLOTS_LIMIT]

    async def predict_busy_days(self, service_id: str, days_ahead: int = 7) -> List[BusyDayPrediction]:
        """Expected admissions for each of the next `days_ahead` days"""
        now = self.clock()
        try:
            entries = await self.history.entries_since(now - timedelta(days=BUSY_DAYS_HISTORY), service_id)
        except Exception as e:
            logger.error(f"Busy day prediction failed for {service_id}: {e}")
            return []

        counts: Dict[int, int] = defaultdict(int)
        dates: Dict[int, set] = defaultdict(set)
        for entry in entries:
            joined = as_utc(entry.joined_at)
            counts[joined.weekday()] += 1
            dates[joined.weekday()].add(joined.date())

        predictions = []
        for offset in range(1, days_ahead + 1):
            target = (now + timedelta(days=offset)).date()
            weekday = target.weekday()

            if counts.get(weekday):
                unique_days = len(dates[weekday])
                predictions.append(BusyDayPrediction(
                    date=target.isoformat(),
                    expected_load=round(counts[weekday] / unique_days),
                    confidence=round(min(unique_days / 4 * 100, 90))
                ))
            else:
                predictions.append(BusyDayPrediction(
                    date=target.isoformat(),
                    expected_load=DEFAULT_DAY_LOAD,
                    confidence=DEFAULT_DAY_CONFIDENCE
                ))

        return predictions

    async def queue_efficiency(self, days: int = 30) -> QueueEfficiency:
        """Wait and service time summary for completed entries"""
        try:
            entries = await self.history.entries_since(self.clock() - timedelta(days=days))
            services = {s.id: s.name for s in await self.services.get_all()}
        except Exception as e:
            logger.error(f"Queue efficiency analysis failed: {e}")
            return QueueEfficiency()

        completed = [e for e in entries if e.status == EntryStatus.COMPLETED]
        if not completed:
            return QueueEfficiency()

        total_wait = 0.0
        total_service = 0.0
        per_service: Dict[str, List[float]] = defaultdict(lambda: [0, 0.0, 0.0])
        hour_counts: Dict[int, int] = defaultdict(int)

        for entry in completed:
            wait = minutes_between(entry.joined_at, entry.started_at) if entry.started_at else 0.0
            service = (
                minutes_between(entry.started_at, entry.completed_at)
                if entry.started_at and entry.completed_at else 0.0
            )
            total_wait += wait
            total_service += service

            bucket = per_service[services.get(entry.service_id, "Unknown")]
            bucket[0] += 1
            bucket[1] += wait
            bucket[2] += service

            hour_counts[as_utc(entry.joined_at).hour] += 1

        efficiency = QueueEfficiency(
            total_completed=len(completed),
            average_wait_time=total_wait / len(completed),
            average_service_time=total_service / len(completed),
            by_service={
                name: ServiceEfficiency(count=count, avg_wait=wait / count, avg_service=service / count)
                for name, (count, wait, service) in per_service.items()
            },
            peak_hours=[
                HourCount(hour=hour, count=count)
                for hour, count in sorted(hour_counts.items(), key=lambda hc: hc[1], reverse=True)[:5]
            ]
        )

        if efficiency.average_wait_time > 20:
            efficiency.recommendations.append("Consider adding more service counters during peak hours")
        if efficiency.average_wait_time > 30:
            efficiency.recommendations.append("Wait times are high - recommend reviewing staff allocation")
        if efficiency.peak_hours:
            efficiency.recommendations.append(
                f"Peak hour at {efficiency.peak_hours[0].hour}:00 - consider scheduling more staff"
            )

        return efficiency
