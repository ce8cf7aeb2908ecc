"""Live-reading state and rolling statistics.

Classes:
    ReadingState              - IDLE / ACTIVE
    ReadingStateMachine       - Goes idle once a stale interval passes with no accepted value
    Sample                    - Accepted value kept inside the statistics window
    EvictionPolicy            - TIME (sliding duration) or CAPACITY (newest N)
    SlidingWindowStatistics   - Ordered samples with running mean / std dev

Neither class locks; ReadingPipeline serializes access to both.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional

from scalecam.config import MAX_WINDOW_SECONDS, MIN_WINDOW_SECONDS

DEFAULT_CAPACITY = 300


# ---------------------------------------------------------------------------
# Reading state machine
# ---------------------------------------------------------------------------


class ReadingState(Enum):
    IDLE = "idle"
    ACTIVE = "active"


class ReadingStateMachine:
    """
    Tracks whether a live accepted reading exists.

    Every acceptance returns a token (its timestamp). The owner schedules a
    stale check with that token; when it fires, the machine goes idle only if
    no newer acceptance has replaced the token. Frames without an accepted
    value cause no transition, so single missed frames do not blink the
    live indicator.

    Args:
        stale_interval: Seconds after the last acceptance before going idle.
    """

    def __init__(self, stale_interval: float = 1.5):
        if stale_interval <= 0:
            raise ValueError(f"stale_interval must be positive, got {stale_interval}")
        self.stale_interval = stale_interval
        self.state = ReadingState.IDLE
        self.last_accepted_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.state is ReadingState.ACTIVE

    @property
    def deadline(self) -> Optional[float]:
        """Time at which the pending stale check fires, if active."""
        if self.last_accepted_at is None:
            return None
        return self.last_accepted_at + self.stale_interval

    def accept(self, now: float) -> float:
        """Record an accepted value at *now* and return the stale-check token."""
        self.state = ReadingState.ACTIVE
        self.last_accepted_at = now
        return now

    def fire_stale_check(self, token: float) -> bool:
        """Handle a scheduled stale check.

        Returns:
            True if the machine transitioned to IDLE.
        """
        if self.state is not ReadingState.ACTIVE or self.last_accepted_at != token:
            return False
        self.reset()
        return True

    def expire(self, now: float) -> bool:
        """Polling form of the stale check: go idle if the deadline has passed."""
        deadline = self.deadline
        if deadline is None or now < deadline:
            return False
        return self.fire_stale_check(self.last_accepted_at)

    def is_active_at(self, now: float) -> bool:
        deadline = self.deadline
        return self.is_active and deadline is not None and now < deadline

    def reset(self) -> None:
        self.state = ReadingState.IDLE
        self.last_accepted_at = None


# ---------------------------------------------------------------------------
# Sliding window statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Sample:
    timestamp: float
    value: float


class EvictionPolicy(Enum):
    TIME = "time"  # Drop samples older than window_duration
    CAPACITY = "capacity"  # Keep the newest `capacity` samples


class SlidingWindowStatistics:
    """
    Time-ordered samples with population mean and standard deviation.

    Sums are kept relative to a shift value (the first sample ingested into
    an empty window) so the variance stays accurate for readings like
    12.301 +/- 0.001 where raw sums of squares would cancel badly.

    Args:
        window_duration: Seconds of history kept under the TIME policy.
        policy: Eviction policy.
        capacity: Samples kept under the CAPACITY policy.
    """

    def __init__(
        self,
        window_duration: float = 5.0,
        policy: EvictionPolicy = EvictionPolicy.TIME,
        capacity: int = DEFAULT_CAPACITY,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.policy = policy
        self.capacity = capacity
        self._window_duration = self._clamp_window(window_duration)
        self._samples: Deque[Sample] = deque()
        self._shift = 0.0
        self._sum = 0.0
        self._sum_sq = 0.0

    @staticmethod
    def _clamp_window(seconds: float) -> float:
        return min(max(float(seconds), MIN_WINDOW_SECONDS), MAX_WINDOW_SECONDS)

    @property
    def window_duration(self) -> float:
        return self._window_duration

    @window_duration.setter
    def window_duration(self, seconds: float) -> None:
        self._window_duration = self._clamp_window(seconds)
        if self._samples:
            self.prune(self._samples[-1].timestamp)

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def latest(self) -> Optional[Sample]:
        return self._samples[-1] if self._samples else None

    def samples(self) -> List[Sample]:
        """Retained samples, oldest first."""
        return list(self._samples)

    def ingest(self, value: float, timestamp: float) -> None:
        """Append a sample and evict whatever the policy no longer retains."""
        if self._samples and timestamp < self._samples[-1].timestamp:
            raise ValueError(
                f"Sample timestamp {timestamp} precedes newest sample "
                f"{self._samples[-1].timestamp}"
            )
        if not self._samples:
            self._shift = value
            self._sum = 0.0
            self._sum_sq = 0.0

        self._samples.append(Sample(timestamp=timestamp, value=value))
        delta = value - self._shift
        self._sum += delta
        self._sum_sq += delta * delta

        self.prune(timestamp)

    def prune(self, now: float) -> int:
        """Evict expired samples relative to *now*.

        Returns:
            Number of samples evicted.
        """
        evicted = 0
        if self.policy is EvictionPolicy.TIME:
            cutoff = now - self._window_duration
            while self._samples and self._samples[0].timestamp < cutoff:
                self._evict_oldest()
                evicted += 1
        else:
            while len(self._samples) > self.capacity:
                self._evict_oldest()
                evicted += 1
        return evicted

    def _evict_oldest(self) -> None:
        sample = self._samples.popleft()
        if not self._samples:
            self._sum = 0.0
            self._sum_sq = 0.0
            return
        delta = sample.value - self._shift
        self._sum -= delta
        self._sum_sq -= delta * delta

    def mean(self) -> float:
        n = len(self._samples)
        if n == 0:
            return 0.0
        return self._shift + self._sum / n

    def variance(self) -> float:
        """Population variance (divides by N)."""
        n = len(self._samples)
        if n == 0:
            return 0.0
        shifted_mean = self._sum / n
        return max(self._sum_sq / n - shifted_mean * shifted_mean, 0.0)

    def standard_deviation(self) -> float:
        return math.sqrt(self.variance())

    def clear(self) -> None:
        self._samples.clear()
        self._sum = 0.0
        self._sum_sq = 0.0
