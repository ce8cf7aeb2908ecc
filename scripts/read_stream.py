#!/usr/bin/env python3
"""Track a live decimal readout from a camera or video file.

Feeds every captured frame to the reading pipeline, which drops frames while
the backend is busy, and prints the current value with its running mean and
standard deviation over the averaging window.

Usage:
    python scripts/read_stream.py                          # camera 0, EasyOCR
    python scripts/read_stream.py scale.mp4 --backend two_stage
    python scripts/read_stream.py 1 --backend remote --endpoint http://ocr:8866/predict/ocr_system
    python scripts/read_stream.py --backend vlm --model smolvlm2 --window 10
    python scripts/read_stream.py scale.mp4 --roi 0.3,0.4,0.4,0.2 --conf 0.6 --show
    python scripts/read_stream.py --config reader.json --log-level DEBUG
"""

import argparse
import dataclasses
import logging
import sys
import time
from pathlib import Path

import cv2

# Add src to path for local imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from scalecam.capture import VideoCaptureSource
from scalecam.config import PROFILES, ReaderConfig, RegionOfInterest, load_config
from scalecam.errors import ConfigError
from scalecam.inference import build_backend
from scalecam.pipeline import ReadingPipeline, ReadingSnapshot


# ---------------------------------------------------------------------------
# Config assembly
# ---------------------------------------------------------------------------


def parse_roi(text: str) -> RegionOfInterest:
    """Parse 'x,y,width,height' (normalized) into a RegionOfInterest."""
    try:
        x, y, w, h = (float(v) for v in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected x,y,width,height, got {text!r}")
    try:
        return RegionOfInterest(x, y, w, h)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc))


def build_config(args: argparse.Namespace) -> ReaderConfig:
    """Load the JSON config (if any) and apply command-line overrides."""
    config = load_config(args.config) if args.config else ReaderConfig()

    overrides = {
        "backend": args.backend,
        "confidence_threshold": args.conf,
        "window_duration": args.window,
        "region_of_interest": args.roi,
        "min_text_height": args.min_height,
        "detector_path": args.detector,
        "recognizer_path": args.recognizer,
        "use_gpu": True if args.gpu else None,
    }
    if args.endpoint:
        key = "vlm_endpoint" if (args.backend or config.backend) == "vlm" else "remote_endpoint"
        overrides[key] = args.endpoint
    if args.model:
        overrides["vlm_model"] = args.model
    if args.capacity:
        overrides["eviction_policy"] = "capacity"
        overrides["capacity"] = args.capacity

    return dataclasses.replace(config, **{k: v for k, v in overrides.items() if v is not None})


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


def format_snapshot(snap: ReadingSnapshot) -> str:
    line = (
        f"value={snap.display_value:>10}  "
        f"mean={snap.mean:.3f}  sd={snap.standard_deviation:.4f}  "
        f"n={len(snap.samples):<3}  {snap.status}"
    )
    if snap.degraded:
        line += "  [DEGRADED]"
    return line


def draw_overlay(image, snap: ReadingSnapshot):
    h, w = image.shape[:2]
    out = image.copy()
    if snap.box is not None:
        x1, y1, x2, y2 = snap.box
        cv2.rectangle(
            out,
            (int(x1 * w), int(y1 * h)),
            (int(x2 * w), int(y2 * h)),
            (0, 255, 0),
            2,
        )
    color = (0, 255, 0) if snap.is_active else (0, 165, 255)
    cv2.putText(out, snap.display_value, (10, 40), cv2.FONT_HERSHEY_SIMPLEX, 1.2, color, 2)
    cv2.putText(
        out,
        f"mean {snap.mean:.3f}  sd {snap.standard_deviation:.4f}  n {len(snap.samples)}",
        (10, 75),
        cv2.FONT_HERSHEY_SIMPLEX,
        0.6,
        (255, 255, 255),
        1,
    )
    return out


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------


def run(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"ERROR: {exc}")
        return 2

    source_arg = int(args.source) if args.source.isdigit() else args.source
    source = VideoCaptureSource(source_arg, orientation=args.orientation)
    backend = build_backend(config)
    pipeline = ReadingPipeline(backend, config)

    print("=" * 70)
    print(f"Source: {args.source}  Backend: {config.backend}")
    print(f"Profile: {config.profile}")
    print(f"Confidence >= {config.confidence_threshold}  Window: {config.window_duration}s")
    if not config.region_of_interest.is_full_frame:
        print(f"Region of interest: {config.region_of_interest}")
    print("=" * 70)

    if not pipeline.start_session(source):
        print(f"ERROR: {pipeline.snapshot().status}")
        pipeline.close()
        return 1

    frames = 0
    last_print = 0.0
    start = time.monotonic()
    try:
        while True:
            frame = source.read()
            if frame is None:
                break
            frames += 1
            pipeline.submit_frame(frame)

            now = time.monotonic()
            if now - last_print >= args.print_interval:
                last_print = now
                print(format_snapshot(pipeline.snapshot()))

            if args.show:
                cv2.imshow("scalecam", draw_overlay(frame.upright().image, pipeline.snapshot()))
                if cv2.waitKey(1) & 0xFF == ord("q"):
                    break
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        # Let the last admitted frame finish before reporting
        pipeline.scheduler.wait(timeout=5)
        final = pipeline.snapshot()
        stats = dict(pipeline.scheduler.stats)
        pipeline.close()
        if args.show:
            cv2.destroyAllWindows()

    elapsed = time.monotonic() - start
    print("=" * 70)
    print(f"Frames read: {frames} ({frames / max(elapsed, 1e-6):.1f} fps)")
    print(f"Recognitions: {stats['submitted']} submitted, {stats['failed']} failed")
    print(f"Dropped: {stats['dropped_busy']} busy, {stats['dropped_interval']} rate-limited")
    print(f"Final: {format_snapshot(final)}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Track a live decimal readout")
    parser.add_argument(
        "source",
        nargs="?",
        default="0",
        help="Camera index or video path/URL (default: 0)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON reader config; command-line flags override it",
    )
    parser.add_argument(
        "--backend",
        type=str,
        default=None,
        choices=sorted(PROFILES),
        help="Recognition backend (default: easyocr)",
    )
    parser.add_argument(
        "--conf",
        type=float,
        default=None,
        help="Minimum candidate confidence in [0, 1] (default: 1.0)",
    )
    parser.add_argument(
        "--window",
        type=float,
        default=None,
        help="Averaging window in seconds, 1-30 (default: 5)",
    )
    parser.add_argument(
        "--capacity",
        type=int,
        default=None,
        help="Keep the newest N samples instead of a time window",
    )
    parser.add_argument(
        "--roi",
        type=parse_roi,
        default=None,
        help="Region of interest as normalized x,y,width,height",
    )
    parser.add_argument(
        "--min-height",
        type=float,
        default=None,
        help="Minimum text height as a fraction of the frame (easyocr)",
    )
    parser.add_argument(
        "--orientation",
        type=int,
        default=0,
        choices=[0, 90, 180, 270],
        help="Clockwise rotation that makes frames upright",
    )
    parser.add_argument(
        "--detector",
        type=str,
        default=None,
        help="YOLO detector weights (two_stage)",
    )
    parser.add_argument(
        "--recognizer",
        type=str,
        default=None,
        help="CRNN ONNX model (two_stage)",
    )
    parser.add_argument(
        "--endpoint",
        type=str,
        default=None,
        help="OCR service URL (remote) or model server URL (vlm)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Vision-language model name (vlm)",
    )
    parser.add_argument(
        "--gpu",
        action="store_true",
        help="Run EasyOCR on the GPU",
    )
    parser.add_argument(
        "--show",
        action="store_true",
        help="Show frames with the reading overlay (press q to quit)",
    )
    parser.add_argument(
        "--print-interval",
        type=float,
        default=0.5,
        help="Seconds between status lines",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(run(args))


if __name__ == "__main__":
    main()
