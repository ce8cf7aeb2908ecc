"""Error taxonomy for the reading pipeline.

Capture errors are fatal to a single session start. Backend errors are
recoverable and never unwind past the scheduler: they turn into "no accepted
value" for the frame plus a status update.
"""

from __future__ import annotations


class ScaleCamError(Exception):
    """Base class for every error raised by scalecam."""

    status_code = "ERROR"


class ConfigError(ScaleCamError, ValueError):
    status_code = "CONFIG_ERROR"


# ---------------------------------------------------------------------------
# Capture / session start
# ---------------------------------------------------------------------------


class CaptureError(ScaleCamError):
    """Session start failed; the caller must retry explicitly."""

    status_code = "CAPTURE_ERROR"


class PermissionDenied(CaptureError):
    status_code = "PERMISSION_DENIED"


class DeviceUnavailable(CaptureError):
    status_code = "DEVICE_UNAVAILABLE"


# ---------------------------------------------------------------------------
# Recognition backends
# ---------------------------------------------------------------------------


class BackendError(ScaleCamError):
    """A single recognition attempt failed."""

    status_code = "BACKEND_ERROR"


class BackendNotReady(BackendError):
    status_code = "BACKEND_NOT_READY"


class BackendTransportFailure(BackendError):
    status_code = "NETWORK_FAILURE"


class BackendDecodeFailure(BackendError):
    status_code = "DECODE_FAILURE"


class EmptyResponse(BackendError):
    """The backend answered but decoded zero candidates."""

    status_code = "EMPTY_RESPONSE"


class RecognitionCancelled(BackendError):
    status_code = "CANCELLED"


STATUS_MESSAGES = {
    PermissionDenied.status_code: "Camera permission denied.",
    DeviceUnavailable.status_code: "Camera unavailable.",
    BackendNotReady.status_code: "Model loading…",
    BackendTransportFailure.status_code: "Network failed, retrying.",
    BackendDecodeFailure.status_code: "Recognition response format is invalid.",
    BackendError.status_code: "Recognition failed.",
}


def status_message(error: ScaleCamError) -> str:
    """Human-readable status line for *error*."""
    base = STATUS_MESSAGES.get(error.status_code, STATUS_MESSAGES[BackendError.status_code])
    detail = str(error)
    if detail:
        return f"{base} ({detail})"
    return base
