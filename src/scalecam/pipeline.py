"""Reading pipeline: scheduler -> backend -> selector -> state + statistics.

``ReadingPipeline`` is the single serialization point of the system. Frames
are submitted from the capture thread, outcomes arrive on the scheduler's
worker thread and stale checks on timer threads; all of them mutate the
reading state and the statistics only while holding the pipeline lock.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from scalecam.capture import FrameSource
from scalecam.config import ReaderConfig, RegionOfInterest
from scalecam.errors import (
    BackendNotReady,
    CaptureError,
    EmptyResponse,
    RecognitionCancelled,
    status_message,
)
from scalecam.inference import Frame, RecognitionBackend
from scalecam.recognition import Box, CandidateSelector, format_reading
from scalecam.scheduling import InferenceScheduler, RecognitionOutcome
from scalecam.tracking import (
    EvictionPolicy,
    ReadingStateMachine,
    Sample,
    SlidingWindowStatistics,
)

log = logging.getLogger(__name__)

STATUS_STARTING = "Starting camera…"
STATUS_LOADING = "Model loading…"
STATUS_LOOKING = "Model ready. Looking for readings…"
STATUS_TRACKING = "Tracking live samples."
STATUS_WAITING = "Waiting for a reading…"
STATUS_LOAD_FAILED = "Model load failed."
STATUS_STOPPED = "Camera stopped."


@dataclass(frozen=True)
class ReadingSnapshot:
    """Everything a display needs, captured atomically."""

    value: Optional[float]
    is_active: bool
    samples: List[Sample]
    mean: float
    standard_deviation: float
    status: str
    model_info: str
    box: Optional[Box]  # Normalized, full-frame coordinates
    consecutive_failures: int
    degraded: bool

    @property
    def display_value(self) -> str:
        return "—" if self.value is None else format_reading(self.value)


class ReadingPipeline:
    """
    Live reading session around one recognition backend.

    Args:
        backend: Recognition backend; its profile comes from ``config.backend``.
        config: Reader configuration.
        clock: Monotonic time source shared with the scheduler.
        timer_factory: ``threading.Timer``-compatible factory for stale checks.
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        config: Optional[ReaderConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.backend = backend
        self.config = config or ReaderConfig(backend=backend.name)
        self.clock = clock
        self._timer_factory = timer_factory

        profile = self.config.profile
        self.selector = CandidateSelector(
            confidence_threshold=self.config.confidence_threshold,
            parse_mode=profile.parse_mode,
        )
        self.state_machine = ReadingStateMachine(stale_interval=profile.stale_interval)
        self.statistics = SlidingWindowStatistics(
            window_duration=self.config.window_duration,
            policy=EvictionPolicy(self.config.eviction_policy),
            capacity=self.config.capacity,
        )
        self.scheduler = InferenceScheduler(
            backend,
            min_interval=profile.request_interval,
            on_complete=self._handle_outcome,
            clock=clock,
        )

        self._lock = threading.RLock()
        self._running = False
        self._source: Optional[FrameSource] = None
        self._region = self.config.region_of_interest
        self._submitted_region = self._region
        self._stale_timer: Optional[threading.Timer] = None
        self._value: Optional[float] = None
        self._box: Optional[Box] = None
        self._status = STATUS_STARTING
        self._model_info = f"Preparing {backend.name}…"
        self._failures = 0

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start_session(self, source: Optional[FrameSource] = None) -> bool:
        """Start a session, opening *source* if given.

        Returns:
            False if the frame source could not be opened; call again to retry.
        """
        with self._lock:
            if self._running:
                return True

        if source is not None:
            try:
                source.open()
            except CaptureError as exc:
                log.warning("Session start failed: %s", exc)
                with self._lock:
                    self._status = status_message(exc)
                return False

        with self._lock:
            self._running = True
            self._source = source
            self._failures = 0
            self._status = STATUS_LOOKING if self.backend.is_ready() else STATUS_LOADING
        log.info("Session started with %s backend", self.backend.name)

        threading.Thread(
            target=self._prepare_backend,
            name=f"{self.backend.name}-prepare",
            daemon=True,
        ).start()
        return True

    def _prepare_backend(self) -> None:
        try:
            self.backend.prepare()
        except Exception as exc:
            log.exception("Failed to prepare %s backend", self.backend.name)
            with self._lock:
                self._model_info = f"Failed to load {self.backend.name}: {exc}"
                if self._running:
                    self._status = STATUS_LOAD_FAILED
            return

        with self._lock:
            self._model_info = f"Loaded {self.backend.name}"
            if self._running and self._status in (STATUS_LOADING, STATUS_STARTING):
                self._status = STATUS_LOOKING

    def stop_session(self) -> None:
        """Cancel in-flight work and reset live state; samples age out normally."""
        self.scheduler.cancel()
        with self._lock:
            self._running = False
            self._cancel_stale_timer()
            self.state_machine.reset()
            self._clear_current()
            self._failures = 0
            self._status = STATUS_STOPPED
            source, self._source = self._source, None
        if source is not None:
            source.close()
        log.info("Session stopped")

    def close(self) -> None:
        self.stop_session()
        self.scheduler.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Frame intake
    # ------------------------------------------------------------------

    def submit_frame(self, frame: Frame) -> bool:
        """Offer a captured frame to the backend.

        Returns:
            True if the scheduler admitted it.
        """
        with self._lock:
            if not self._running:
                return False
            region = self._region

        upright = frame.upright()
        prepared = Frame(image=region.crop(upright.image), timestamp=frame.timestamp)

        with self._lock:
            if not self._running:
                return False
            admitted = self.scheduler.submit(prepared)
            if admitted:
                self._submitted_region = region
        return admitted

    def _handle_outcome(self, outcome: RecognitionOutcome) -> None:
        with self._lock:
            if not self._running:
                return

            error = outcome.error
            if error is not None:
                if isinstance(error, (EmptyResponse, RecognitionCancelled)):
                    log.debug("No candidates from %s: %s", self.backend.name, error)
                    return
                if isinstance(error, BackendNotReady):
                    # Retried on the next admitted frame once prepare() finishes
                    log.debug("%s backend not ready: %s", self.backend.name, error)
                    if self._status not in (STATUS_TRACKING, STATUS_LOAD_FAILED):
                        self._status = STATUS_LOADING
                    return
                self._failures += 1
                self._status = status_message(error)
                if self.degraded:
                    self._status = f"{self._status} [{self._failures} consecutive failures]"
                log.warning(
                    "%s backend failed (%d in a row): %s",
                    self.backend.name,
                    self._failures,
                    error,
                )
                return

            self._failures = 0
            now = self.clock()
            reading = self.selector.select(outcome.candidates, now)
            if reading is None:
                if not self.state_machine.is_active:
                    self._status = STATUS_WAITING
                return

            token = self.state_machine.accept(now)
            self.statistics.ingest(reading.value, now)
            self._value = reading.value
            self._box = (
                self._submitted_region.to_frame_box(reading.box)
                if reading.box is not None
                else None
            )
            self._status = STATUS_TRACKING
            self._schedule_stale_check(token)

    # ------------------------------------------------------------------
    # Stale handling
    # ------------------------------------------------------------------

    def _schedule_stale_check(self, token: float) -> None:
        self._cancel_stale_timer()
        timer = self._timer_factory(
            self.state_machine.stale_interval,
            self._fire_stale_check,
            args=(token,),
        )
        timer.daemon = True
        self._stale_timer = timer
        timer.start()

    def _cancel_stale_timer(self) -> None:
        if self._stale_timer is not None:
            self._stale_timer.cancel()
            self._stale_timer = None

    def _fire_stale_check(self, token: float) -> None:
        with self._lock:
            if self.state_machine.fire_stale_check(token):
                self._clear_current()
                self._status = STATUS_WAITING
                log.debug("Reading went stale")

    def _clear_current(self) -> None:
        self._value = None
        self._box = None

    # ------------------------------------------------------------------
    # Controls and display surface
    # ------------------------------------------------------------------

    @property
    def degraded(self) -> bool:
        return self._failures >= self.config.failure_alert_threshold

    def set_window_duration(self, seconds: float) -> float:
        """Change the averaging window; returns the clamped value in effect."""
        with self._lock:
            self.statistics.window_duration = seconds
            return self.statistics.window_duration

    def set_confidence_threshold(self, threshold: float) -> float:
        with self._lock:
            self.selector.confidence_threshold = threshold
            return self.selector.confidence_threshold

    def set_region_of_interest(self, region: RegionOfInterest) -> None:
        with self._lock:
            self._region = region

    def snapshot(self) -> ReadingSnapshot:
        with self._lock:
            if self.statistics.policy is EvictionPolicy.TIME:
                self.statistics.prune(self.clock())
            return ReadingSnapshot(
                value=self._value,
                is_active=self.state_machine.is_active,
                samples=self.statistics.samples(),
                mean=self.statistics.mean(),
                standard_deviation=self.statistics.standard_deviation(),
                status=self._status,
                model_info=self._model_info,
                box=self._box,
                consecutive_failures=self._failures,
                degraded=self.degraded,
            )
