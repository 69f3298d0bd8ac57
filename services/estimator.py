"""
Wait time estimation from historical service durations
"""
from contextlib import nullcontext
import logging

from models import WaitTimeEstimateResponse
from queueModel import (
    Degraded, Ok, Outcome, WaitTimeEstimate, calculate_wait_estimate,
    durations_from_samples, fallback_estimate,
)

logger = logging.getLogger(__name__)


class WaitTimeEstimator:
    """
    Estimates how long a newcomer will wait for a service

    Never raises. When the service or its history cannot be read the
    result is Degraded with a flat 15 minutes per person and confidence 0.3,
    so a broken analytics path never blocks admission.
    """

    def __init__(self, services, history, sample_limit: int = 50, isolate=nullcontext):
        """
        Args:
            services: ServiceRepository-like, provides get(service_id)
            history: HistoricalSampleRepository-like, provides recent_completed()
            sample_limit: most recent completed services considered
            isolate: factory for an async context wrapping the reads, e.g.
                session.begin_nested so a failed query rolls back to a
                savepoint and leaves the caller's transaction usable
        """
        self.services = services
        self.history = history
        self.sample_limit = sample_limit
        self.isolate = isolate

    async def estimate(self, service_id: str, queue_size: int) -> Outcome[WaitTimeEstimate]:
        """
        Args:
            service_id: service being requested
            queue_size: entries ahead of the newcomer

        Returns:
            Ok(estimate) from real data or Degraded(fallback)
        """
        try:
            async with self.isolate():
                service = await self.services.get(service_id)
                if service is None:
                    raise LookupError(f"Service '{service_id}' not found")

                samples = await self.history.recent_completed(service_id, self.sample_limit)
        except Exception as e:
            logger.warning(f"Wait time estimation degraded for {service_id}: {e}")
            return Degraded(fallback_estimate(queue_size), reason=str(e))

        estimate = calculate_wait_estimate(
            baseline_minutes=service.duration_minutes,
            sample_durations=durations_from_samples(samples),
            queue_size=queue_size
        )
        logger.debug(
            f"Estimated {service_id}: {estimate.estimated_wait_minutes}min "
            f"for {estimate.total_ahead} ahead ({len(samples)} samples)"
        )
        return Ok(estimate)


def to_response(service_id: str, outcome: Outcome[WaitTimeEstimate]) -> WaitTimeEstimateResponse:
    """API representation of an estimation outcome"""
    estimate = outcome.value
    return WaitTimeEstimateResponse(
        service_id=service_id,
        estimated_wait_minutes=estimate.estimated_wait_minutes,
        queue_position=estimate.queue_position,
        total_ahead=estimate.total_ahead,
        average_service_time=estimate.average_service_time,
        confidence=estimate.confidence,
        degraded=outcome.degraded
    )
