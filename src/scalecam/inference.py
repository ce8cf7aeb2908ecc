"""Recognition backends that turn a frame into raw reading candidates.

Every backend satisfies the :class:`RecognitionBackend` protocol
(``prepare`` / ``recognize`` / ``is_ready`` / ``cancel``) and is selected at
configuration time; call sites never branch on the concrete type.

Classes:
    Frame                  - Image buffer + capture timestamp + orientation hint
    RecognitionBackend     - Capability protocol shared by all backends
    EasyOCRBackend         - Local single-pass recognizer (all text regions in one call)
    YoloRegionDetector     - Stage 1 of the two-stage backend
    OnnxCrnnRecognizer     - Stage 2: CTC text recognizer via ONNX Runtime
    TwoStageOnnxBackend    - Detector + per-region recognizer, single pipeline at a time
    RemoteOCRBackend       - HTTP OCR service with a tolerant response decoder
    VLMBackend             - Prompted vision-language model, cancellable mid-generation

Usage:
    from scalecam.inference import EasyOCRBackend, Frame

    backend = EasyOCRBackend(min_text_height=0.05)
    backend.prepare()
    candidates = backend.recognize(Frame(image=frame_bgr, timestamp=time.monotonic()))
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np
import requests

from scalecam.config import ReaderConfig
from scalecam.errors import (
    BackendDecodeFailure,
    BackendError,
    BackendNotReady,
    BackendTransportFailure,
    ConfigError,
    EmptyResponse,
    RecognitionCancelled,
)
from scalecam.recognition import Box, Candidate, extract_reply_value

log = logging.getLogger(__name__)

READOUT_CHARSET = "0123456789."

_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


# ---------------------------------------------------------------------------
# Frame + backend protocol
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Frame:
    """One captured frame.

    ``orientation`` is the clockwise rotation in degrees that makes the image
    upright (0, 90, 180 or 270).
    """

    image: np.ndarray  # BGR
    timestamp: float  # Monotonic capture time, seconds
    orientation: int = 0

    def upright(self) -> "Frame":
        """Return a frame whose image has the orientation hint applied."""
        rotation = self.orientation % 360
        if rotation == 0:
            return self
        if rotation not in _ROTATIONS:
            raise ValueError(f"Unsupported orientation: {self.orientation}")
        return Frame(
            image=cv2.rotate(self.image, _ROTATIONS[rotation]),
            timestamp=self.timestamp,
            orientation=0,
        )


class RecognitionBackend(Protocol):
    name: str

    def prepare(self) -> None: ...

    def recognize(self, frame: Frame) -> List[Candidate]: ...

    def is_ready(self) -> bool: ...

    def cancel(self) -> None: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def encode_jpeg_base64(image: np.ndarray, quality: int = 80) -> str:
    """JPEG-encode a BGR image and return it as a base64 string."""
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise BackendError("Could not encode frame as JPEG")
    return base64.b64encode(buf.tobytes()).decode("ascii")


def polygon_to_box(points: Sequence[Sequence[float]], width: int, height: int) -> Box:
    """Normalized axis-aligned box around a pixel polygon."""
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    x1, y1 = pts.min(axis=0)
    x2, y2 = pts.max(axis=0)
    return (
        float(np.clip(x1 / width, 0.0, 1.0)),
        float(np.clip(y1 / height, 0.0, 1.0)),
        float(np.clip(x2 / width, 0.0, 1.0)),
        float(np.clip(y2 / height, 0.0, 1.0)),
    )


def ctc_greedy_decode(logits: np.ndarray, charset: str = READOUT_CHARSET) -> Tuple[str, float]:
    """Greedy CTC decode of a single sequence.

    Args:
        logits: (T, len(charset) + 1) array, class 0 is the CTC blank.
        charset: Characters for classes 1..N.

    Returns:
        (text, confidence) where confidence is the mean max-probability of
        the emitted steps.
    """
    indices = logits.argmax(axis=-1)
    exp_logits = np.exp(logits - logits.max(axis=-1, keepdims=True))
    probs = exp_logits / exp_logits.sum(axis=-1, keepdims=True)
    max_probs = probs.max(axis=-1)

    result = []
    conf_values = []
    prev_idx = -1
    for t, idx in enumerate(indices):
        if idx != 0 and idx != prev_idx:  # 0 = CTC blank
            result.append(charset[idx - 1])
            conf_values.append(max_probs[t])
        prev_idx = idx

    text = "".join(result)
    confidence = float(np.mean(conf_values)) if conf_values else 0.0
    return text, confidence


# ---------------------------------------------------------------------------
# Local single-pass recognizer (EasyOCR)
# ---------------------------------------------------------------------------


class EasyOCRBackend:
    """EasyOCR detection + recognition in one ``readtext`` call.

    Every detected text region becomes a candidate carrying its normalized
    bounding box. Regions shorter than ``min_text_height`` (fraction of the
    frame height) are dropped before selection.

    Args:
        languages: EasyOCR language codes.
        gpu: Run EasyOCR on the GPU.
        min_text_height: Minimum region height as a fraction of frame height.
        reader: Pre-built ``easyocr.Reader`` (skips loading in ``prepare``).
    """

    name = "easyocr"

    def __init__(
        self,
        languages: Sequence[str] = ("en",),
        gpu: bool = False,
        min_text_height: float = 0.0,
        reader: Any = None,
    ):
        self.languages = list(languages)
        self.gpu = gpu
        self.min_text_height = min_text_height
        self._reader = reader
        self._prepare_lock = threading.Lock()

    def prepare(self) -> None:
        with self._prepare_lock:
            if self._reader is not None:
                return
            import easyocr

            log.info("Loading EasyOCR reader (languages=%s, gpu=%s)", self.languages, self.gpu)
            self._reader = easyocr.Reader(self.languages, gpu=self.gpu, verbose=False)

    def is_ready(self) -> bool:
        return self._reader is not None

    def cancel(self) -> None:
        pass

    def recognize(self, frame: Frame) -> List[Candidate]:
        reader = self._reader
        if reader is None:
            raise BackendNotReady("EasyOCR reader not loaded")

        height, width = frame.image.shape[:2]
        try:
            results = reader.readtext(frame.image, allowlist=READOUT_CHARSET, detail=1)
        except Exception as exc:
            raise BackendError(f"EasyOCR failed: {exc}") from exc

        candidates: List[Candidate] = []
        for points, text, conf in results:
            box = polygon_to_box(points, width, height)
            if box[3] - box[1] < self.min_text_height:
                continue
            candidates.append(Candidate(text=text.strip(), confidence=float(conf), box=box))
        return candidates


# ---------------------------------------------------------------------------
# Two-stage: YOLO region detector + ONNX CRNN recognizer
# ---------------------------------------------------------------------------


class YoloRegionDetector:
    """Finds readout regions with an ultralytics YOLO model.

    Args:
        model_path: Path to detector weights.
        conf: Minimum detection confidence.
        device: ``"cuda"`` or ``"cpu"``.
    """

    def __init__(self, model_path: str, conf: float = 0.25, device: str = "cpu"):
        from ultralytics import YOLO

        self.model = YOLO(model_path)
        self.model.to(device)
        self.conf = conf
        self.device = device

    def __call__(self, image: np.ndarray) -> List[Tuple[int, int, int, int]]:
        """Return pixel boxes (x1, y1, x2, y2), most confident first."""
        results = self.model(image, conf=self.conf, device=self.device, verbose=False)
        detections = []
        for r in results:
            if r.boxes is None:
                continue
            boxes = r.boxes.xyxy.cpu().numpy().astype(int)
            confs = r.boxes.conf.cpu().numpy()
            for box, conf_val in zip(boxes, confs):
                x1, y1, x2, y2 = box
                detections.append((float(conf_val), (int(x1), int(y1), int(x2), int(y2))))
        detections.sort(key=lambda d: d[0], reverse=True)
        return [box for _, box in detections]


class OnnxCrnnRecognizer:
    """CRNN text recognizer run through ONNX Runtime.

    Input is a (N, 1, 32, 128) grayscale batch in [0, 1]; output is
    (N, T, len(charset) + 1) logits decoded with greedy CTC.

    Args:
        model_path: Path to the ``.onnx`` model.
        charset: Characters for classes 1..N (class 0 is blank).
    """

    INPUT_W = 128
    INPUT_H = 32

    def __init__(self, model_path: str, charset: str = READOUT_CHARSET):
        import onnxruntime as ort

        providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
        available = set(ort.get_available_providers())

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        log.info("Loading CRNN recognizer from %s", model_path)
        self.session = ort.InferenceSession(
            model_path,
            sess_options=sess_options,
            providers=[p for p in providers if p in available],
        )
        self.input_name = self.session.get_inputs()[0].name
        self.charset = charset
        log.info("Active providers: %s", self.session.get_providers())

    def _preprocess(self, crop_bgr: np.ndarray) -> np.ndarray:
        """Returns (1, 1, 32, 128) float32 array normalized to [0, 1]."""
        gray = cv2.cvtColor(crop_bgr, cv2.COLOR_BGR2GRAY)
        resized = cv2.resize(gray, (self.INPUT_W, self.INPUT_H), interpolation=cv2.INTER_LINEAR)
        tensor = resized.astype(np.float32) / 255.0
        return tensor[np.newaxis, np.newaxis, :, :]

    def __call__(self, crop_bgr: np.ndarray) -> Tuple[str, float]:
        tensor = self._preprocess(crop_bgr)
        output = self.session.run(None, {self.input_name: tensor})[0]
        return ctc_greedy_decode(output[0], self.charset)


class TwoStageOnnxBackend:
    """
    Detect readout regions, then recognize each crop independently.

    A recognizer failure on one crop omits only that crop's candidate. Only
    one detect+recognize pipeline runs at a time: a call that arrives while
    another is running returns no candidates instead of re-entering.

    Args:
        detector_path: YOLO weights for region detection.
        recognizer_path: ONNX CRNN model for crop recognition.
        detector_conf: Minimum detection confidence.
        detector: Callable image -> pixel boxes (replaces the YOLO detector).
        recognizer: Callable crop -> (text, confidence) (replaces the CRNN).
    """

    name = "two_stage"

    def __init__(
        self,
        detector_path: str = "models/readout_detector.pt",
        recognizer_path: str = "models/readout_crnn.onnx",
        detector_conf: float = 0.25,
        detector: Optional[Callable[[np.ndarray], List[Tuple[int, int, int, int]]]] = None,
        recognizer: Optional[Callable[[np.ndarray], Tuple[str, float]]] = None,
    ):
        self.detector_path = detector_path
        self.recognizer_path = recognizer_path
        self.detector_conf = detector_conf
        self._detector = detector
        self._recognizer = recognizer
        self._prepare_lock = threading.Lock()
        self._busy = threading.Lock()

    def prepare(self) -> None:
        with self._prepare_lock:
            if self._detector is None:
                self._detector = YoloRegionDetector(self.detector_path, conf=self.detector_conf)
            if self._recognizer is None:
                self._recognizer = OnnxCrnnRecognizer(self.recognizer_path)

    def is_ready(self) -> bool:
        return self._detector is not None and self._recognizer is not None

    def cancel(self) -> None:
        pass

    def recognize(self, frame: Frame) -> List[Candidate]:
        if not self.is_ready():
            raise BackendNotReady("Detector or recognizer not loaded")
        if not self._busy.acquire(blocking=False):
            log.debug("Two-stage pipeline busy, skipping frame at %.3f", frame.timestamp)
            return []
        try:
            return self._run_pipeline(frame.image)
        finally:
            self._busy.release()

    def _run_pipeline(self, image: np.ndarray) -> List[Candidate]:
        height, width = image.shape[:2]
        try:
            regions = self._detector(image)
        except Exception as exc:
            raise BackendError(f"Region detection failed: {exc}") from exc

        candidates: List[Candidate] = []
        for x1, y1, x2, y2 in regions:
            x1, y1 = max(0, x1), max(0, y1)
            x2, y2 = min(width, x2), min(height, y2)
            if x2 <= x1 or y2 <= y1:
                continue
            crop = image[y1:y2, x1:x2]
            try:
                text, conf = self._recognizer(crop)
            except Exception as exc:
                log.debug("Recognition failed for region %s: %s", (x1, y1, x2, y2), exc)
                continue
            text = text.strip()
            if not text:
                continue
            box = (x1 / width, y1 / height, x2 / width, y2 / height)
            candidates.append(Candidate(text=text, confidence=float(conf), box=box))
        return candidates


# ---------------------------------------------------------------------------
# Remote HTTP OCR service
# ---------------------------------------------------------------------------


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _decode_candidate(item: Any) -> Optional[Candidate]:
    if not isinstance(item, dict):
        return None
    text = item.get("text")
    if not isinstance(text, str):
        text = ""
    confidence = _number(item.get("score"))
    if confidence is None:
        confidence = _number(item.get("probability"))
    if confidence is None:
        confidence = 0.0
    return Candidate(text=text, confidence=min(max(confidence, 0.0), 1.0))


def _decode_candidate_list(value: Any) -> Optional[List[Candidate]]:
    """Decode a list of candidate objects; None if *value* is not one."""
    if not isinstance(value, list):
        return None
    candidates = []
    for item in value:
        candidate = _decode_candidate(item)
        if candidate is None:
            return None
        candidates.append(candidate)
    return candidates


def decode_ocr_response(body: Any) -> List[Candidate]:
    """
    Decode an OCR service response, tolerating schema drift across servers.

    Accepted shapes, tried in order:
        {"results": [...]}, {"result": [...]}, {"data": [[...], ...]} (first
        element), {"data": [...]}, and a bare [...].

    Raises:
        BackendDecodeFailure: if no shape matches.
    """
    if isinstance(body, dict):
        for key in ("results", "result"):
            if key in body:
                parsed = _decode_candidate_list(body[key])
                if parsed is not None:
                    return parsed
        data = body.get("data")
        if isinstance(data, list):
            if data and all(isinstance(group, list) for group in data):
                parsed = _decode_candidate_list(data[0])
                if parsed is not None:
                    return parsed
            parsed = _decode_candidate_list(data)
            if parsed is not None:
                return parsed
        raise BackendDecodeFailure(f"Unrecognized response keys: {sorted(body)}")

    parsed = _decode_candidate_list(body)
    if parsed is None:
        raise BackendDecodeFailure(f"Unrecognized response type: {type(body).__name__}")
    return parsed


class RemoteOCRBackend:
    """OCR over HTTP (PaddleOCR-style ``ocr_system`` endpoint).

    Transport errors and zero decoded candidates are distinct failures:
    ``BackendTransportFailure`` marks the endpoint unreachable until the next
    successful round trip, ``EmptyResponse`` does not.

    Args:
        endpoint: URL receiving the JSON POST.
        timeout: Per-request timeout in seconds.
        language: OCR language code sent to the server.
        use_angle_classification: Ask the server to classify text angle.
        session: ``requests.Session`` to reuse (created in ``prepare`` if None).
    """

    name = "remote"

    def __init__(
        self,
        endpoint: str = "http://localhost:8866/predict/ocr_system",
        timeout: float = 5.0,
        language: str = "en",
        use_angle_classification: bool = True,
        session: Optional[requests.Session] = None,
        jpeg_quality: int = 80,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.language = language
        self.use_angle_classification = use_angle_classification
        self.jpeg_quality = jpeg_quality
        self._session = session
        self._reachable = True

    def prepare(self) -> None:
        if self._session is None:
            self._session = requests.Session()

    def is_ready(self) -> bool:
        return self._session is not None and self._reachable

    def cancel(self) -> None:
        pass

    def build_payload(self, image: np.ndarray) -> dict:
        return {
            "image": encode_jpeg_base64(image, self.jpeg_quality),
            "useAngleClassification": self.use_angle_classification,
            "language": self.language,
        }

    def recognize(self, frame: Frame) -> List[Candidate]:
        if self._session is None:
            raise BackendNotReady("HTTP session not prepared")

        payload = self.build_payload(frame.image)
        try:
            response = self._session.post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            self._reachable = False
            raise BackendTransportFailure(str(exc)) from exc
        self._reachable = True

        try:
            body = response.json()
        except ValueError as exc:
            raise BackendDecodeFailure("Response body is not JSON") from exc

        candidates = decode_ocr_response(body)
        if not candidates:
            raise EmptyResponse("OCR service returned no candidates")
        return candidates


# ---------------------------------------------------------------------------
# Vision-language model (Ollama-compatible generate API)
# ---------------------------------------------------------------------------


class VLMBackend:
    """
    Ask a vision-language model what number the display shows.

    The reply is free text, so it goes through ``extract_reply_value`` and
    becomes at most one candidate (the trimmed reply, confidence 1.0) that the
    selector parses in REPLY mode. Generation is streamed; ``cancel()`` stops
    it between chunks and rejects new requests until ``prepare()`` runs again.

    Args:
        endpoint: Base URL of the model server.
        model: Model name on the server.
        timeout: Connect/read timeout in seconds.
        max_tokens: Generation cap.
        image_size: Square side the frame is resized to before upload.
        session: ``requests.Session`` to reuse.
    """

    name = "vlm"

    SYSTEM_PROMPT = "You read decimal numbers from LED displays."
    PROMPT = (
        "What decimal number is shown on the LED display here? "
        "Return the number alone and nothing else."
    )

    def __init__(
        self,
        endpoint: str = "http://localhost:11434",
        model: str = "smolvlm2",
        timeout: float = 30.0,
        max_tokens: int = 24,
        image_size: int = 448,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.image_size = image_size
        self._session = session or requests.Session()
        self._prepare_lock = threading.Lock()
        self._ready = False
        self._cancel = threading.Event()

    def prepare(self) -> None:
        """Make sure the model is available on the server, pulling it if needed.

        Also re-arms the backend after ``cancel()``: a cancel stays in effect
        for every generation until the next ``prepare()``.
        """
        with self._prepare_lock:
            self._cancel.clear()
            if self._ready:
                return
            try:
                response = self._session.get(f"{self.endpoint}/api/tags", timeout=self.timeout)
                response.raise_for_status()
                names = {m.get("name", "") for m in response.json().get("models", [])}
                if self.model not in names and f"{self.model}:latest" not in names:
                    log.info("Pulling %s from %s", self.model, self.endpoint)
                    pull = self._session.post(
                        f"{self.endpoint}/api/pull",
                        json={"model": self.model, "stream": False},
                        timeout=None,
                    )
                    pull.raise_for_status()
            except (requests.RequestException, ValueError) as exc:
                raise BackendNotReady(f"Model {self.model} unavailable: {exc}") from exc
            log.info("Model %s ready", self.model)
            self._ready = True

    def is_ready(self) -> bool:
        return self._ready

    def cancel(self) -> None:
        self._cancel.set()

    def build_payload(self, image: np.ndarray) -> dict:
        resized = cv2.resize(image, (self.image_size, self.image_size), interpolation=cv2.INTER_AREA)
        return {
            "model": self.model,
            "system": self.SYSTEM_PROMPT,
            "prompt": self.PROMPT,
            "images": [encode_jpeg_base64(resized)],
            "stream": True,
            "options": {"temperature": 0.0, "top_p": 0.9, "num_predict": self.max_tokens},
        }

    def recognize(self, frame: Frame) -> List[Candidate]:
        if not self._ready:
            raise BackendNotReady(f"Model {self.model} not loaded")
        if self._cancel.is_set():
            raise RecognitionCancelled("Backend cancelled")

        payload = self.build_payload(frame.image)
        try:
            with self._session.post(
                f"{self.endpoint}/api/generate",
                json=payload,
                stream=True,
                timeout=self.timeout,
            ) as response:
                response.raise_for_status()
                reply = self._collect_reply(response)
        except requests.RequestException as exc:
            raise BackendTransportFailure(str(exc)) from exc

        reply = reply.strip()
        if extract_reply_value(reply) is None:
            log.debug("No number in model reply %r", reply)
            return []
        # Raw reply; the selector parses it in REPLY mode without rounding
        return [Candidate(text=reply, confidence=1.0)]

    def _collect_reply(self, response: requests.Response) -> str:
        chunks = []
        for line in response.iter_lines():
            if self._cancel.is_set():
                raise RecognitionCancelled("Generation cancelled")
            if not line:
                continue
            try:
                chunk = json.loads(line)
            except ValueError as exc:
                raise BackendDecodeFailure(f"Malformed stream chunk: {line[:80]!r}") from exc
            if "error" in chunk:
                raise BackendError(str(chunk["error"]))
            chunks.append(chunk.get("response", ""))
            if chunk.get("done"):
                break
        return "".join(chunks)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_backend(config: ReaderConfig) -> RecognitionBackend:
    """Instantiate the backend named by ``config.backend`` (not yet prepared)."""
    if config.backend == "easyocr":
        return EasyOCRBackend(
            languages=config.languages,
            gpu=config.use_gpu,
            min_text_height=config.min_text_height,
        )
    if config.backend == "two_stage":
        return TwoStageOnnxBackend(
            detector_path=config.detector_path,
            recognizer_path=config.recognizer_path,
            detector_conf=config.detector_conf,
        )
    if config.backend == "remote":
        return RemoteOCRBackend(
            endpoint=config.remote_endpoint,
            timeout=config.remote_timeout,
            language=config.languages[0] if config.languages else "en",
        )
    if config.backend == "vlm":
        return VLMBackend(
            endpoint=config.vlm_endpoint,
            model=config.vlm_model,
            timeout=config.vlm_timeout,
        )
    raise ConfigError(f"Unknown backend {config.backend!r}")
