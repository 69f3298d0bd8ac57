"""
Unit tests for queueModel.py
Tests wait time estimation, counter scoring and service-time smoothing
"""
import pytest
from datetime import datetime, timezone
from queueModel import (
    CounterScore, Degraded, Ok, ServiceTimeSmoother, WaitTimeEstimate,
    calculate_wait_estimate, durations_from_samples, fallback_estimate,
    minutes_between, pick_best_counter, round_half_up, score_counter,
)
from models import HistoricalSample


class TestCalculateWaitEstimate:
    """Tests for history-based wait estimation"""

    def test_no_history_uses_nominal_duration(self):
        """Consultation (30 min, no history) with 3 ahead"""
        result = calculate_wait_estimate(baseline_minutes=30, sample_durations=[], queue_size=3)

        assert result.average_service_time == 30
        # 30 * 1.15 = 34.5 -> 35 per person
        assert result.estimated_wait_minutes == 105
        assert result.confidence == pytest.approx(0.5)
        assert result.queue_position == 4
        assert result.total_ahead == 3

    def test_history_overrides_nominal_duration(self):
        """Average of samples replaces the nominal duration"""
        result = calculate_wait_estimate(
            baseline_minutes=30,
            sample_durations=[10.0, 20.0, 12.0],
            queue_size=2
        )

        assert result.average_service_time == 14
        # 14 * 1.15 = 16.1 -> 16 per person
        assert result.estimated_wait_minutes == 32
        assert result.confidence == pytest.approx(0.53)

    def test_empty_queue_still_reports_confidence(self):
        """Zero ahead means zero wait, confidence from samples"""
        result = calculate_wait_estimate(
            baseline_minutes=10,
            sample_durations=[8.0] * 20,
            queue_size=0
        )

        assert result.estimated_wait_minutes == 0
        assert result.queue_position == 1
        assert result.confidence == pytest.approx(0.7)

    def test_confidence_capped(self):
        """Confidence never exceeds 0.95"""
        result = calculate_wait_estimate(
            baseline_minutes=10,
            sample_durations=[10.0] * 50,
            queue_size=1
        )

        assert result.confidence == pytest.approx(0.95)

    def test_negative_queue_size_treated_as_empty(self):
        result = calculate_wait_estimate(baseline_minutes=10, sample_durations=[], queue_size=-4)

        assert result.estimated_wait_minutes == 0
        assert result.queue_position == 1

    def test_monotonic_in_queue_size(self):
        """Estimated wait never decreases as the queue grows"""
        samples = [7.5, 9.0, 11.25]
        waits = [
            calculate_wait_estimate(12, samples, n).estimated_wait_minutes
            for n in range(0, 40)
        ]

        assert waits == sorted(waits)

    def test_confidence_within_bounds(self):
        for count in (0, 1, 10, 44, 45, 46, 200):
            result = calculate_wait_estimate(10, [5.0] * count, 3)
            assert 0.0 <= result.confidence <= 0.95

    def test_reversed_samples_never_negative(self):
        """A sample ending before it started counts as zero minutes"""
        samples = durations_from_samples([
            HistoricalSample(start=datetime(2025, 10, 8, 10, 0, tzinfo=timezone.utc),
                             end=datetime(2025, 10, 8, 9, 20, tzinfo=timezone.utc))
        ])

        assert samples == [0.0]

        result = calculate_wait_estimate(baseline_minutes=30, sample_durations=samples, queue_size=3)

        assert result.average_service_time == 0
        assert result.estimated_wait_minutes == 0

    def test_negative_average_clamped(self):
        result = calculate_wait_estimate(baseline_minutes=30, sample_durations=[-40.0, 10.0], queue_size=3)

        assert result.average_service_time == 0
        assert result.estimated_wait_minutes == 0
        assert result.confidence == pytest.approx(0.52)


class TestFallbackEstimate:
    """Tests for the degraded estimate"""

    def test_fallback_values(self):
        result = fallback_estimate(4)

        assert result.estimated_wait_minutes == 60
        assert result.average_service_time == 15
        assert result.confidence == pytest.approx(0.3)
        assert result.queue_position == 5

    def test_fallback_empty_queue(self):
        result = fallback_estimate(0)

        assert result.estimated_wait_minutes == 0
        assert result.queue_position == 1


class TestOutcome:
    """Tests for Ok/Degraded tagging"""

    def test_ok_is_not_degraded(self):
        outcome = Ok(fallback_estimate(1))

        assert outcome.degraded is False
        assert isinstance(outcome.value, WaitTimeEstimate)

    def test_degraded_carries_reason(self):
        outcome = Degraded(None, reason="database down")

        assert outcome.degraded is True
        assert outcome.value is None
        assert outcome.reason == "database down"


class TestRounding:
    """Tests for half-up rounding and time helpers"""

    @pytest.mark.parametrize("value,expected", [
        (34.5, 35),
        (2.5, 3),
        (2.4999, 2),
        (16.1, 16),
        (0, 0),
    ])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_minutes_between_mixed_naive_and_aware(self):
        """SQLite returns naive timestamps; they are treated as UTC"""
        start = datetime(2025, 10, 8, 9, 0, 0)
        end = datetime(2025, 10, 8, 9, 20, 30, tzinfo=timezone.utc)

        assert minutes_between(start, end) == pytest.approx(20.5)


class TestScoreCounter:
    """Tests for counter scoring heuristics"""

    def test_two_waiting_idle_counter(self):
        """2 waiting-equivalent entries, none in service, avg 10"""
        assert score_counter(active_entries=2, average_service_time=10.0, in_service=0) == pytest.approx(105.0)

    def test_busy_counter_gets_no_idle_bonus(self):
        assert score_counter(active_entries=1, average_service_time=0.0, in_service=1) == pytest.approx(90.0)

    def test_score_clamped_at_zero(self):
        assert score_counter(active_entries=20, average_service_time=60.0, in_service=1) == pytest.approx(0.0)


class TestPickBestCounter:
    """Tests for counter selection"""

    def test_highest_score_wins(self):
        scores = [
            CounterScore("a", 90.0),
            CounterScore("b", 120.0),
            CounterScore("c", 110.0),
        ]

        assert pick_best_counter(scores) == "b"

    def test_ties_keep_first(self):
        scores = [
            CounterScore("a", 100.0),
            CounterScore("b", 100.0),
        ]

        assert pick_best_counter(scores) == "a"

    def test_no_candidates(self):
        assert pick_best_counter([]) is None


class TestServiceTimeSmoother:
    """Tests for rolling average service time"""

    def test_first_observation_replaces_empty_average(self):
        smoother = ServiceTimeSmoother(current=0.0)

        assert smoother.update(12.0) == pytest.approx(12.0)

    def test_exponential_smoothing(self):
        """new = 0.8 * old + 0.2 * sample"""
        smoother = ServiceTimeSmoother(current=10.0)

        assert smoother.update(20.0) == pytest.approx(12.0)
        assert smoother.update(20.0) == pytest.approx(13.6)

    @pytest.mark.parametrize("previous,duration", [
        (3.0, 45.0),
        (17.25, 4.5),
        (8.0, 8.0),
    ])
    def test_rolling_average_formula(self, previous, duration):
        smoother = ServiceTimeSmoother(current=previous)

        assert smoother.update(duration) == pytest.approx(0.8 * previous + 0.2 * duration)
