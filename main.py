#!/usr/bin/env python3
"""
HeartLens – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --source SRC          Camera index or video file (default: 0)
    --resolution WxH      Camera resolution (default: 640x480)
    --fps INT             Target frame rate (default: 30)
    --combination NAME    Channel combination (default, red, green, blue,
                          luminance, chrom, green_red)
    --roi MODE            ROI locator: center, finger or face
    --quality-model PATH  Signal-quality model (.npz)
    --async-quality       Run quality inference on a background thread
    --subject ID          Subject whose history is shown and saved
    --mongo-uri URI       MongoDB connection string (default: $MONGODB_URI)
    --no-flip             Disable horizontal mirror
    --save PATH           Save annotated video to file (optional)
    --headless            Run without display window (log vitals only)

Keyboard shortcuts (when a window is open)
------------------------------------------
    q / ESC  – quit
    r        – start a new session
    p        – save the session record for --subject
    s        – save a single annotated frame as PNG
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

# Must be set before cv2 is imported so Qt5 uses X11/XWayland instead of
# looking for a Wayland plugin that is not bundled with pip-installed opencv.
os.environ.setdefault("QT_QPA_PLATFORM", "xcb")

import cv2

from heartlens.camera import Camera
from heartlens.config import PipelineConfig
from heartlens.errors import FrameSourceError, InferenceUnavailable
from heartlens.persistence import MemoryRecordStore, MongoRecordStore, RecordStore
from heartlens.pipeline import VitalsPipeline
from heartlens.quality import load_quality_model
from heartlens.records import VitalsReport
from heartlens.roi import CenterRoiLocator, FaceRoiLocator, FingerRoiLocator
from heartlens.sampler import CombinationConfig
from heartlens.visualizer import Visualizer

logger = logging.getLogger("heartlens")

_LOCATORS = {
    "center": CenterRoiLocator,
    "finger": FingerRoiLocator,
    "face": FaceRoiLocator,
}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Camera-based heart rate, HRV and signal quality (rPPG)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--source", default="0",
                        help="Camera index or path of a video file")
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--combination", default=CombinationConfig.DEFAULT.value,
                        help="Channel combination: "
                             + ", ".join(c.value for c in CombinationConfig))
    parser.add_argument("--roi", choices=sorted(_LOCATORS), default="center",
                        help="Region-of-interest locator")
    parser.add_argument("--quality-model", type=Path, default=Path("models/quality_model.npz"),
                        help="Signal-quality model archive")
    parser.add_argument("--async-quality", action="store_true",
                        help="Run quality inference on a background thread")
    parser.add_argument("--subject", default=None,
                        help="Subject ID for history lookup and saving")
    parser.add_argument("--mongo-uri", default=os.environ.get("MONGODB_URI"),
                        help="MongoDB connection string (in-memory store if unset)")
    parser.add_argument("--no-flip", action="store_true",
                        help="Disable horizontal image flip")
    parser.add_argument("--save", type=Path, default=None,
                        help="Save annotated video to this file path")
    parser.add_argument("--headless", action="store_true",
                        help="No display window; log vitals only")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity")
    return parser.parse_args(argv)


def _parse_source(source: str) -> int | str:
    return int(source) if source.isdigit() else source


def _format_report(report: VitalsReport) -> str:
    hr, hrv, quality = report.heart_rate, report.hrv, report.quality
    bpm = f"{hr.bpm:.1f}" if hr.is_set else "--"
    sdnn = f"{hrv.sdnn_ms:.0f}ms" if hrv.is_set else "--"
    label = quality.label.value if quality.is_set else "--"
    return (
        f"BPM={bpm} (conf {hr.confidence:.0f})  SDNN={sdnn} (conf {hrv.confidence:.0f})  "
        f"quality={label} ({quality.confidence:.0f})"
    )


def _open_store(args: argparse.Namespace) -> RecordStore:
    if args.mongo_uri:
        return MongoRecordStore.from_uri(args.mongo_uri)
    logger.info("No MongoDB URI – records are kept in memory only.")
    return MemoryRecordStore()


def _show_history(store: RecordStore, subject: str) -> None:
    averages = store.average_vitals(subject)
    last = store.last_access(subject)
    if averages is None:
        logger.info("Subject %s: new user (no records).", subject)
        return
    bpm = f"{averages.bpm:.1f}" if averages.bpm is not None else "N/A"
    sdnn = f"{averages.sdnn_ms:.0f} ms" if averages.sdnn_ms is not None else "N/A"
    logger.info(
        "Subject %s: %d record(s), last access %s, average BPM %s, average HRV %s",
        subject, averages.count, last if last is not None else "never", bpm, sdnn,
    )


def _save(pipeline: VitalsPipeline, store: RecordStore | None, subject: str | None) -> None:
    if store is None or not subject:
        logger.warning("Saving needs --subject.")
        return
    outcome = pipeline.save_session(subject, store)
    if outcome.success:
        logger.info("Session saved for subject %s.", subject)
    else:
        logger.error("Failed to save session: %s", outcome.error)


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1
    resolution = (res_w, res_h)

    try:
        model = load_quality_model(args.quality_model)
    except InferenceUnavailable as exc:
        logger.warning("%s – signal quality disabled.", exc)
        model = None

    store: RecordStore | None = None
    if args.subject:
        store = _open_store(args)
        _show_history(store, args.subject)

    config = PipelineConfig(fs=float(args.fps), combination=args.combination)
    locator = _LOCATORS[args.roi]()
    pipeline = VitalsPipeline(
        config, quality_model=model, locator=locator,
        asynchronous_quality=args.async_quality,
    )
    pipeline.start_session()

    camera = Camera(
        source=_parse_source(args.source),
        resolution=resolution,
        fps=args.fps,
        flip_horizontal=not args.no_flip,
    )
    vis = Visualizer(resolution=resolution, show_fps=not args.headless)

    writer: cv2.VideoWriter | None = None
    if args.save:
        fourcc = cv2.VideoWriter_fourcc(*"mp4v")
        writer = cv2.VideoWriter(str(args.save), fourcc, args.fps, resolution)
        logger.info("Saving video to %s", args.save)

    if not args.headless:
        cv2.namedWindow("HeartLens", cv2.WINDOW_NORMAL)
        cv2.resizeWindow("HeartLens", res_w, res_h)

    logger.info("Starting HeartLens.  Press 'q' or ESC to quit.")
    frame_idx = 0
    log_interval = max(1, args.fps)  # log roughly once per second

    try:
        with camera:
            for frame in camera.frames():
                pipeline.on_frame(frame, camera.timestamp())
                frame_idx += 1
                if frame is None:
                    continue

                report = pipeline.report()
                if args.headless and frame_idx % log_interval == 0:
                    logger.info(_format_report(report))

                if writer is None and args.headless:
                    continue
                roi = pipeline.sampler.last_roi
                annotated = vis.draw(
                    frame, report, roi=roi, buffer_fill=pipeline.buffer.fill_ratio,
                )
                if writer is not None:
                    writer.write(annotated)

                if not args.headless:
                    cv2.imshow("HeartLens", annotated)
                    key = cv2.waitKey(1) & 0xFF
                    if key in (ord("q"), 27):          # q or ESC
                        logger.info("Quit requested by user.")
                        break
                    elif key == ord("r"):
                        pipeline.start_session()
                    elif key == ord("p"):
                        _save(pipeline, store, args.subject)
                    elif key == ord("s"):
                        fname = f"snapshot_{int(time.time())}.png"
                        cv2.imwrite(fname, annotated)
                        logger.info("Saved snapshot: %s", fname)

        if args.headless and args.subject:
            _save(pipeline, store, args.subject)

    except FrameSourceError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        pipeline.close()
        if writer is not None:
            writer.release()
        if not args.headless:
            cv2.destroyAllWindows()

    return 0


def main(argv: list[str] | None = None) -> int:
    return run(parse_args(argv))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
