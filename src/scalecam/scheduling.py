"""Single-flight admission control in front of a recognition backend.

Backends are far slower than frame delivery. The scheduler drops any frame
that arrives while a submission is in flight or sooner than the backend's
minimum interval after the previous submission, so at most one request per
backend is ever outstanding and nothing queues up.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from scalecam.errors import BackendError, RecognitionCancelled
from scalecam.inference import Frame, RecognitionBackend
from scalecam.recognition import Candidate

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerState:
    in_flight: bool
    last_submitted_at: Optional[float]


@dataclass
class RecognitionOutcome:
    """Result of one admitted submission, success or failure."""

    frame: Frame
    submitted_at: float
    completed_at: float
    candidates: List[Candidate] = field(default_factory=list)
    error: Optional[BackendError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def latency(self) -> float:
        return self.completed_at - self.submitted_at


class InferenceScheduler:
    """
    Admit frames to a backend one at a time, no faster than ``min_interval``.

    Admitted frames run on a single worker thread. The completion callback
    receives a :class:`RecognitionOutcome` for every admitted frame of the
    current session; ``BackendError``s are captured in the outcome and never
    raised to the caller.

    Args:
        backend: Recognition backend; owned by this scheduler.
        min_interval: Minimum seconds between admitted submissions.
        on_complete: Called on the worker thread with each outcome.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        min_interval: float = 0.0,
        on_complete: Optional[Callable[[RecognitionOutcome], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.min_interval = min_interval
        self.on_complete = on_complete
        self.clock = clock

        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{backend.name}-inference")
        self._in_flight = False
        self._last_submitted_at: Optional[float] = None
        self._generation = 0
        self._future: Optional[Future] = None

        self.stats = {"submitted": 0, "dropped_busy": 0, "dropped_interval": 0, "failed": 0}

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return SchedulerState(self._in_flight, self._last_submitted_at)

    def submit(self, frame: Frame) -> bool:
        """Admit *frame* or drop it.

        Returns:
            True if the frame was dispatched to the backend.
        """
        with self._lock:
            now = self.clock()
            if self._in_flight:
                self.stats["dropped_busy"] += 1
                return False
            if (
                self._last_submitted_at is not None
                and now - self._last_submitted_at < self.min_interval
            ):
                self.stats["dropped_interval"] += 1
                return False

            self._in_flight = True
            self._last_submitted_at = now
            self.stats["submitted"] += 1
            generation = self._generation
            self._future = self._executor.submit(self._run, frame, now, generation)
        return True

    def _run(self, frame: Frame, submitted_at: float, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                log.debug("Skipping frame queued before cancel")
                return

        candidates: List[Candidate] = []
        error: Optional[BackendError] = None
        try:
            candidates = self.backend.recognize(frame)
        except BackendError as exc:
            error = exc
        except Exception as exc:
            log.exception("Unexpected failure in %s backend", self.backend.name)
            error = BackendError(str(exc))

        outcome = RecognitionOutcome(
            frame=frame,
            submitted_at=submitted_at,
            completed_at=self.clock(),
            candidates=candidates,
            error=error,
        )

        with self._lock:
            if generation != self._generation:
                log.debug("Discarding outcome from a cancelled session")
                return
            if error is not None and not isinstance(error, RecognitionCancelled):
                self.stats["failed"] += 1

        try:
            if self.on_complete is not None:
                self.on_complete(outcome)
        except Exception:
            log.exception("Completion callback failed")
        finally:
            with self._lock:
                if generation == self._generation:
                    self._in_flight = False

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the latest submission has completed.

        Returns:
            False if it was still running when *timeout* expired.
        """
        future = self._future
        if future is None:
            return True
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def cancel(self) -> None:
        """Abandon in-flight work and reset admission state."""
        with self._lock:
            self._generation += 1
            self._in_flight = False
            self._last_submitted_at = None
        self.backend.cancel()

    def shutdown(self, wait: bool = True) -> None:
        self.cancel()
        self._executor.shutdown(wait=wait)

    def reset_stats(self) -> None:
        self.stats = {"submitted": 0, "dropped_busy": 0, "dropped_interval": 0, "failed": 0}
