"""Tests for the reading state machine and sliding-window statistics."""

import math

import pytest

from scalecam.tracking import (
    EvictionPolicy,
    ReadingState,
    ReadingStateMachine,
    SlidingWindowStatistics,
)


# ---------------------------------------------------------------------------
# ReadingStateMachine
# ---------------------------------------------------------------------------


class TestReadingStateMachine:
    @pytest.fixture
    def machine(self):
        return ReadingStateMachine(stale_interval=1.5)

    def test_starts_idle(self, machine):
        assert machine.state is ReadingState.IDLE
        assert machine.deadline is None

    def test_goes_idle_after_stale_interval(self, machine):
        machine.accept(0.0)
        assert machine.is_active_at(1.0)
        assert machine.expire(1.0) is False
        assert machine.state is ReadingState.ACTIVE

        assert machine.expire(1.6) is True
        assert machine.state is ReadingState.IDLE

    def test_new_accept_moves_deadline(self, machine):
        machine.accept(0.0)
        machine.accept(1.0)
        assert machine.deadline == pytest.approx(2.5)
        assert machine.expire(1.6) is False
        assert machine.is_active
        assert machine.expire(2.5) is True

    def test_superseded_token_is_ignored(self, machine):
        first = machine.accept(0.0)
        second = machine.accept(1.0)

        assert machine.fire_stale_check(first) is False
        assert machine.is_active
        assert machine.fire_stale_check(second) is True
        assert not machine.is_active

    def test_check_after_reset_is_ignored(self, machine):
        token = machine.accept(0.0)
        machine.reset()
        assert machine.fire_stale_check(token) is False
        assert machine.state is ReadingState.IDLE

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            ReadingStateMachine(stale_interval=0)


# ---------------------------------------------------------------------------
# SlidingWindowStatistics
# ---------------------------------------------------------------------------


class TestSlidingWindowStatistics:
    @pytest.fixture
    def stats(self):
        return SlidingWindowStatistics(window_duration=5.0)

    def test_empty_is_zero(self, stats):
        assert stats.mean() == 0.0
        assert stats.standard_deviation() == 0.0
        assert len(stats) == 0

    def test_population_statistics(self, stats):
        stats.ingest(1.0, 0.0)
        stats.ingest(2.0, 1.0)
        stats.ingest(3.0, 2.0)

        assert stats.mean() == pytest.approx(2.0)
        assert stats.standard_deviation() == pytest.approx(math.sqrt(2.0 / 3.0))

    def test_old_samples_pruned(self, stats):
        stats.ingest(1.0, 0.0)
        stats.ingest(2.0, 1.0)
        stats.ingest(3.0, 2.0)
        stats.ingest(3.0, 10.0)

        assert len(stats) == 1
        assert stats.mean() == pytest.approx(3.0)
        assert stats.standard_deviation() == pytest.approx(0.0)

    def test_boundary_sample_retained(self, stats):
        stats.ingest(1.0, 0.0)
        stats.ingest(2.0, 5.0)
        assert [s.value for s in stats.samples()] == [1.0, 2.0]

    def test_samples_sorted_and_within_window(self, stats):
        for i in range(20):
            stats.ingest(float(i), i * 0.5)
        samples = stats.samples()
        timestamps = [s.timestamp for s in samples]
        assert timestamps == sorted(timestamps)
        assert all(t >= timestamps[-1] - 5.0 for t in timestamps)

    def test_rejects_out_of_order(self, stats):
        stats.ingest(1.0, 2.0)
        with pytest.raises(ValueError):
            stats.ingest(1.0, 1.0)

    def test_prune_against_clock(self, stats):
        stats.ingest(1.0, 0.0)
        assert stats.prune(4.0) == 0
        assert stats.prune(5.5) == 1
        assert stats.mean() == 0.0

    def test_precise_for_close_readings(self, stats):
        values = [12.301, 12.302, 12.300, 12.301]
        for i, v in enumerate(values):
            stats.ingest(v, float(i))
        mean = sum(values) / len(values)
        expected = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
        assert stats.mean() == pytest.approx(mean)
        assert stats.standard_deviation() == pytest.approx(expected, rel=1e-6)

    def test_window_change_reprunes(self, stats):
        for t in range(6):
            stats.ingest(float(t), float(t))
        stats.window_duration = 2.0
        assert [s.timestamp for s in stats.samples()] == [3.0, 4.0, 5.0]

    def test_window_clamped(self, stats):
        stats.window_duration = 0.1
        assert stats.window_duration == 1.0
        stats.window_duration = 120
        assert stats.window_duration == 30.0

    def test_clear(self, stats):
        stats.ingest(1.0, 0.0)
        stats.clear()
        assert len(stats) == 0
        stats.ingest(5.0, 1.0)
        assert stats.mean() == 5.0


class TestCapacityPolicy:
    def test_keeps_newest_300(self):
        stats = SlidingWindowStatistics(policy=EvictionPolicy.CAPACITY)
        for i in range(301):
            stats.ingest(float(i), float(i))

        samples = stats.samples()
        assert len(samples) == 300
        assert samples[0].value == 1.0
        assert samples[-1].value == 300.0
        assert stats.mean() == pytest.approx(sum(range(1, 301)) / 300)

    def test_ignores_time(self):
        stats = SlidingWindowStatistics(window_duration=1.0, policy=EvictionPolicy.CAPACITY, capacity=3)
        stats.ingest(1.0, 0.0)
        stats.ingest(2.0, 100.0)
        assert len(stats) == 2
        stats.ingest(3.0, 200.0)
        stats.ingest(4.0, 300.0)
        assert [s.value for s in stats.samples()] == [2.0, 3.0, 4.0]
