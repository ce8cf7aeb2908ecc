"""Reader configuration and per-backend timing profiles."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from scalecam.errors import ConfigError
from scalecam.recognition import Box, ParseMode

MIN_WINDOW_SECONDS = 1.0
MAX_WINDOW_SECONDS = 30.0


@dataclass(frozen=True)
class RegionOfInterest:
    """Normalized rectangle restricting where recognition runs.

    Coordinates are fractions of the frame with the origin top-left.
    """

    x: float = 0.0
    y: float = 0.0
    width: float = 1.0
    height: float = 1.0

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ConfigError(f"Region of interest must have positive size: {self}")
        if self.x < 0 or self.y < 0 or self.x + self.width > 1.0 + 1e-9 or self.y + self.height > 1.0 + 1e-9:
            raise ConfigError(f"Region of interest must lie within [0, 1]: {self}")

    @property
    def is_full_frame(self) -> bool:
        return self.x == 0.0 and self.y == 0.0 and self.width == 1.0 and self.height == 1.0

    def crop(self, image: np.ndarray) -> np.ndarray:
        """Return the part of *image* inside the region (a view, not a copy)."""
        if self.is_full_frame:
            return image
        h, w = image.shape[:2]
        x1 = int(round(self.x * w))
        y1 = int(round(self.y * h))
        x2 = max(x1 + 1, int(round((self.x + self.width) * w)))
        y2 = max(y1 + 1, int(round((self.y + self.height) * h)))
        return image[y1:y2, x1:x2]

    def to_frame_box(self, box: Box) -> Box:
        """Map a box normalized to the region back to full-frame coordinates."""
        x1, y1, x2, y2 = box
        return (
            self.x + x1 * self.width,
            self.y + y1 * self.height,
            self.x + x2 * self.width,
            self.y + y2 * self.height,
        )


@dataclass(frozen=True)
class BackendProfile:
    """Admission and staleness timing for one backend family."""

    name: str
    request_interval: float  # Minimum seconds between submissions
    stale_interval: float  # Seconds without an accepted value before going idle
    parse_mode: ParseMode


PROFILES: Dict[str, BackendProfile] = {
    "easyocr": BackendProfile("easyocr", 0.0, 1.5, ParseMode.PERMISSIVE),
    "two_stage": BackendProfile("two_stage", 0.0, 1.5, ParseMode.STRICT),
    "remote": BackendProfile("remote", 0.6, 1.5, ParseMode.STRICT),
    "vlm": BackendProfile("vlm", 2.0, 3.0, ParseMode.REPLY),
}


@dataclass
class ReaderConfig:
    """All knobs the reading pipeline and its backends consume."""

    backend: str = "easyocr"
    confidence_threshold: float = 1.0
    min_text_height: float = 0.0  # Fraction of frame height
    region_of_interest: RegionOfInterest = field(default_factory=RegionOfInterest)
    window_duration: float = 5.0
    eviction_policy: str = "time"  # "time" | "capacity"
    capacity: int = 300
    failure_alert_threshold: int = 3

    # Profile overrides (None = use the backend profile)
    request_interval: Optional[float] = None
    stale_interval: Optional[float] = None

    # Local recognizer
    languages: tuple = ("en",)
    use_gpu: bool = False

    # Two-stage recognizer
    detector_path: str = "models/readout_detector.pt"
    recognizer_path: str = "models/readout_crnn.onnx"
    detector_conf: float = 0.25

    # Remote OCR service
    remote_endpoint: str = "http://localhost:8866/predict/ocr_system"
    remote_timeout: float = 5.0

    # Vision-language model
    vlm_endpoint: str = "http://localhost:11434"
    vlm_model: str = "smolvlm2"
    vlm_timeout: float = 30.0

    def __post_init__(self):
        if self.backend not in PROFILES:
            raise ConfigError(
                f"Unknown backend {self.backend!r}, expected one of {sorted(PROFILES)}"
            )
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ConfigError(f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}")
        if not 0.0 <= self.min_text_height <= 1.0:
            raise ConfigError(f"min_text_height must be in [0, 1], got {self.min_text_height}")
        if not MIN_WINDOW_SECONDS <= self.window_duration <= MAX_WINDOW_SECONDS:
            raise ConfigError(
                f"window_duration must be in [{MIN_WINDOW_SECONDS}, {MAX_WINDOW_SECONDS}], "
                f"got {self.window_duration}"
            )
        if self.eviction_policy not in ("time", "capacity"):
            raise ConfigError(f"eviction_policy must be 'time' or 'capacity', got {self.eviction_policy!r}")
        if self.capacity < 1:
            raise ConfigError(f"capacity must be positive, got {self.capacity}")
        if self.request_interval is not None and self.request_interval < 0:
            raise ConfigError(f"request_interval must be >= 0, got {self.request_interval}")
        if self.stale_interval is not None and self.stale_interval <= 0:
            raise ConfigError(f"stale_interval must be positive, got {self.stale_interval}")
        if isinstance(self.region_of_interest, dict):
            try:
                self.region_of_interest = RegionOfInterest(**self.region_of_interest)
            except TypeError as exc:
                raise ConfigError(f"Invalid region_of_interest: {exc}") from exc
        elif not isinstance(self.region_of_interest, RegionOfInterest):
            raise ConfigError(
                "region_of_interest must be an object with x, y, width and height, "
                f"got {self.region_of_interest!r}"
            )
        self.languages = tuple(self.languages)

    @property
    def profile(self) -> BackendProfile:
        """Backend profile with any interval overrides applied."""
        base = PROFILES[self.backend]
        return BackendProfile(
            name=base.name,
            request_interval=(
                base.request_interval if self.request_interval is None else self.request_interval
            ),
            stale_interval=(
                base.stale_interval if self.stale_interval is None else self.stale_interval
            ),
            parse_mode=base.parse_mode,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReaderConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**data)


def load_config(path: str) -> ReaderConfig:
    """Load a ReaderConfig from a JSON file."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")
    return ReaderConfig.from_dict(data)
