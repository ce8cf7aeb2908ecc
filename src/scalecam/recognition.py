"""Candidate parsing and selection for decimal readouts.

Readouts show a fixed ``d.ddd`` decimal. Every recognition backend emits raw
``(text, confidence)`` candidates per frame; this module decides which one,
if any, becomes the accepted value.

Parse modes:
    STRICT      - whole trimmed string must be ``(0|[1-9]\\d*)\\.\\d{3}``
    PERMISSIVE  - first ``\\d+\\.\\d+`` substring anywhere (first-generation
                  baseline, still used by the local single-pass recognizer)

Classes:
    Candidate          - One raw hypothesis from a backend
    AcceptedReading    - Winning candidate resolved to a float
    CandidateSelector  - Threshold, parse, pick most confident
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

# Normalized (x1, y1, x2, y2) in full-frame coordinates
Box = Tuple[float, float, float, float]

READING_DECIMALS = 3

_STRICT_PATTERN = re.compile(r"(0|[1-9][0-9]*)\.[0-9]{3}")
_PERMISSIVE_PATTERN = re.compile(r"[0-9]+\.[0-9]+")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseMode(Enum):
    """How strictly a raw string must match the readout format."""

    STRICT = "strict"
    PERMISSIVE = "permissive"
    REPLY = "reply"  # Free-text model reply, whole-reply float fallback


def parse_strict(text: str) -> Optional[float]:
    """Parse *text* only if the whole trimmed string is a ``d.ddd`` reading.

    >>> parse_strict(" 12.301 ")
    12.301
    >>> parse_strict("012.301") is None
    True
    """
    if not text:
        return None
    match = _STRICT_PATTERN.fullmatch(text.strip())
    if match is None:
        return None
    return float(match.group(0))


def parse_permissive(text: str) -> Optional[float]:
    """Return the first ``digits.digits`` substring found anywhere in *text*."""
    if not text:
        return None
    match = _PERMISSIVE_PATTERN.search(text)
    if match is None:
        return None
    return float(match.group(0))


def parse_reading(text: str, mode: ParseMode = ParseMode.STRICT) -> Optional[float]:
    if mode is ParseMode.PERMISSIVE:
        return parse_permissive(text)
    if mode is ParseMode.REPLY:
        return extract_reply_value(text)
    return parse_strict(text)


def extract_reply_value(reply: str) -> Optional[float]:
    """Pull a reading out of free text returned by a generative model.

    The decimal pattern is searched first; if the reply holds no such
    substring the whole trimmed reply is tried as a float.
    """
    if reply is None:
        return None
    sanitized = reply.strip()
    value = parse_permissive(sanitized)
    if value is not None:
        return value
    try:
        value = float(sanitized)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def format_reading(value: float) -> str:
    """Format *value* at the readout's display precision."""
    return f"{value:.{READING_DECIMALS}f}"


# ---------------------------------------------------------------------------
# Candidate selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candidate:
    """One raw hypothesis from a recognition backend for a single frame."""

    text: str
    confidence: float  # [0, 1]
    box: Optional[Box] = None  # Normalized region, if the backend localizes text


@dataclass(frozen=True)
class AcceptedReading:
    """Candidate that survived thresholding, parsing and selection."""

    value: float
    timestamp: float
    confidence: float
    text: str
    box: Optional[Box] = None


class CandidateSelector:
    """
    Pick the single accepted value out of one frame's candidates.

    Steps:
    1. Drop candidates below the confidence threshold
    2. Drop candidates that do not parse under the configured mode
    3. Keep the strictly most confident one (first encountered wins ties)

    The default threshold of 1.0 only admits fully confident candidates;
    callers are expected to lower it for OCR backends.
    """

    def __init__(
        self,
        confidence_threshold: float = 1.0,
        parse_mode: ParseMode = ParseMode.STRICT,
    ):
        """
        Args:
            confidence_threshold: Minimum candidate confidence, clamped to [0, 1]
            parse_mode: How candidate text is matched (see ParseMode)
        """
        self.confidence_threshold = confidence_threshold
        self.parse_mode = parse_mode

    @property
    def confidence_threshold(self) -> float:
        return self._confidence_threshold

    @confidence_threshold.setter
    def confidence_threshold(self, value: float) -> None:
        self._confidence_threshold = min(max(float(value), 0.0), 1.0)

    def select(
        self,
        candidates: Iterable[Candidate],
        timestamp: float,
    ) -> Optional[AcceptedReading]:
        """
        Resolve a frame's candidates to an accepted reading.

        Args:
            candidates: Candidates in backend order
            timestamp: Time to stamp on the accepted reading

        Returns:
            AcceptedReading, or None if nothing passes validation
        """
        best: Optional[Candidate] = None
        best_value = 0.0

        for candidate in candidates:
            if candidate.confidence < self._confidence_threshold:
                continue
            value = parse_reading(candidate.text, self.parse_mode)
            if value is None:
                continue
            if best is None or candidate.confidence > best.confidence:
                best = candidate
                best_value = value

        if best is None:
            return None

        return AcceptedReading(
            value=best_value,
            timestamp=timestamp,
            confidence=best.confidence,
            text=best.text,
            box=best.box,
        )
