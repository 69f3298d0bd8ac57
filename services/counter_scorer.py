"""
Counter assignment scoring
"""
from contextlib import nullcontext
import logging
from typing import List, Optional

from models import ACTIVE_STATUSES, EntryStatus
from queueModel import CounterScore, Degraded, Ok, Outcome, pick_best_counter, score_counter

logger = logging.getLogger(__name__)


class CounterScorer:
    """
    Ranks counters able to serve a service

    Read-only; the caller commits any assignment. On data-access failure
    the result is Degraded(None) and the entry is left for manual assignment.
    """

    def __init__(self, counters, isolate=nullcontext):
        """
        Args:
            counters: CounterRepository-like
            isolate: factory for an async context wrapping the reads
                (session.begin_nested for a savepoint)
        """
        self.counters = counters
        self.isolate = isolate

    async def score_candidates(self, service_id: str) -> List[CounterScore]:
        candidates = await self.counters.active_counters_supporting(service_id)

        scores = []
        for counter in candidates:
            load = await self.counters.count_entries_at_counter(counter.id, ACTIVE_STATUSES)
            serving = await self.counters.count_entries_at_counter(counter.id, [EntryStatus.IN_SERVICE])
            scores.append(CounterScore(
                counter_id=counter.id,
                score=score_counter(load, counter.average_service_time, serving)
            ))
        return scores

    async def best_counter(self, service_id: str, priority: int = 0) -> Outcome[Optional[str]]:
        """
        Args:
            service_id: service the entry needs
            priority: entry priority (0-10), recorded for diagnostics only

        Returns:
            Ok(counter_id) or Ok(None) when no counter supports the service,
            Degraded(None) on failure
        """
        try:
            async with self.isolate():
                scores = await self.score_candidates(service_id)
        except Exception as e:
            logger.warning(f"Counter assignment degraded for {service_id}: {e}")
            return Degraded(None, reason=str(e))

        best = pick_best_counter(scores)
        logger.debug(f"Best counter for {service_id} (priority {priority}): {best} of {len(scores)}")
        return Ok(best)
