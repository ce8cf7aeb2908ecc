"""Frame sources feeding the reading pipeline."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol, Union

import cv2

from scalecam.errors import DeviceUnavailable
from scalecam.inference import Frame

log = logging.getLogger(__name__)


class FrameSource(Protocol):
    def open(self) -> None: ...

    def read(self) -> Optional[Frame]: ...

    def close(self) -> None: ...


class VideoCaptureSource:
    """Camera index or video file read through ``cv2.VideoCapture``.

    Args:
        source: Device index (e.g. ``0``) or a path/URL.
        orientation: Clockwise rotation applied downstream to make frames upright.
        clock: Monotonic time source used to stamp frames.
    """

    def __init__(
        self,
        source: Union[int, str] = 0,
        orientation: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.orientation = orientation
        self.clock = clock
        self._cap: Optional[cv2.VideoCapture] = None

    def open(self) -> None:
        if self._cap is not None:
            return
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailable(f"Cannot open video source {self.source!r}")
        self._cap = cap
        log.info(
            "Opened %r (%dx%d @ %.1f fps)",
            self.source,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            cap.get(cv2.CAP_PROP_FPS),
        )

    def read(self) -> Optional[Frame]:
        """Next frame, or None at end of stream."""
        if self._cap is None:
            raise DeviceUnavailable("Video source is not open")
        ok, image = self._cap.read()
        if not ok:
            return None
        return Frame(image=image, timestamp=self.clock(), orientation=self.orientation)

    @property
    def fps(self) -> float:
        if self._cap is None:
            return 0.0
        return self._cap.get(cv2.CAP_PROP_FPS)

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
