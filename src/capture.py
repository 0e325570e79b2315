"""
Live Adaptive Frame Capture

This module is responsible for:
1. Deciding, tick by tick, which moments of a live video stream are worth keeping
2. Translating an operator sensitivity (0-100) into a scene threshold and a
   minimum capture interval
3. Driving a camera source on a fixed-period timer
4. Replaying a recorded file through the same controller offline

The controller owns all of its running state (last kept time, last kept
pixel buffer, output frames). Ticks are serialized; readers get tuple
snapshots of the append-only output.
"""

import logging
import math
import threading
import time
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from config import CaptureSettings
from frame_metrics import encode_jpeg, is_blurry, scene_delta, sharpen, sharpness_score
from models import CapturedFrame, InputError


logger = logging.getLogger(__name__)


def scene_threshold(sensitivity: float, t_max: float = 0.20, t_min: float = 0.02) -> float:
    """High sensitivity means a low threshold (more frames kept)."""
    s = min(100.0, max(0.0, sensitivity))
    return t_max - (s / 100.0) * (t_max - t_min)


def min_capture_interval(sensitivity: float, i_max: float = 8.0, i_min: float = 1.5) -> float:
    """Seconds required between two kept frames."""
    s = min(100.0, max(0.0, sensitivity))
    return max(i_min, i_max - (s / 100.0) * (i_max - i_min))


class LiveCaptureController:
    """
    Adaptive keep/skip decision for a continuous frame source.

    Usage:
        controller = LiveCaptureController(sensitivity=60)
        for elapsed, frame in ticks:
            controller.tick(frame, elapsed)
        frames = controller.finish()
    """

    def __init__(self, sensitivity: Optional[float] = None, settings: Optional[CaptureSettings] = None):
        """
        Initialize the controller.

        Args:
            sensitivity: Operator sensitivity in [0, 100]; overrides settings.sensitivity
            settings: Capture tuning (thresholds, intervals, max frames)
        """
        self.settings = settings or CaptureSettings()
        self._sensitivity = self.settings.sensitivity if sensitivity is None else sensitivity
        self._frames: List[CapturedFrame] = []
        self._last_kept_time: Optional[float] = None
        self._last_kept_pixels: Optional[np.ndarray] = None
        self._finished = False
        self._lock = threading.Lock()

    @property
    def sensitivity(self) -> float:
        return self._sensitivity

    @sensitivity.setter
    def sensitivity(self, value: float):
        # Read at every tick, so a change applies from the next tick on
        self._sensitivity = min(100.0, max(0.0, float(value)))

    @property
    def scene_threshold(self) -> float:
        return scene_threshold(self._sensitivity, self.settings.threshold_max, self.settings.threshold_min)

    @property
    def min_interval(self) -> float:
        return min_capture_interval(self._sensitivity, self.settings.interval_max, self.settings.interval_min)

    @property
    def frames(self) -> Tuple[CapturedFrame, ...]:
        """Snapshot of the frames kept so far."""
        return tuple(self._frames)

    @property
    def finished(self) -> bool:
        return self._finished

    def tick(self, frame: Optional[np.ndarray], elapsed: float) -> Optional[CapturedFrame]:
        """
        Process one sampled frame.

        Args:
            frame: Raw frame (H, W, 3) uint8, or None when the source has nothing readable
            elapsed: Seconds since recording started

        Returns:
            The CapturedFrame if the frame was kept, otherwise None
        """
        if frame is None or frame.size == 0:
            return None
        if frame.ndim != 3 or frame.shape[2] < 3:
            raise InputError(f"Expected an (H, W, 3) color frame, got shape {frame.shape}")

        with self._lock:
            if self._finished:
                return None
            return self._tick_locked(frame, float(elapsed))

    def _tick_locked(self, frame: np.ndarray, elapsed: float) -> Optional[CapturedFrame]:
        settings = self.settings
        is_first = not self._frames

        delta = scene_delta(self._last_kept_pixels, frame, settings.pixel_stride)
        sharpness = sharpness_score(frame, settings.blur_grid_step)
        blurry = is_blurry(sharpness, settings.blur_threshold)

        logger.debug(f"Frame analysis at {elapsed:.1f}s: diff={delta:.3f}, sharpness={sharpness:.1f}, blurry={blurry}")

        if not is_first:
            since_last = elapsed - self._last_kept_time
            if since_last < self.min_interval:
                logger.debug(f"Only {since_last:.1f}s since last capture, need {self.min_interval:.1f}s, skipping")
                return None
            if not delta > self.scene_threshold:
                logger.debug(f"Scene change {delta:.3f} below threshold {self.scene_threshold:.3f}, skipping")
                return None
            if blurry and len(self._frames) >= settings.min_frames_before_blur_skip:
                logger.debug("Frame too blurry and we have enough frames, skipping")
                return None
            if len(self._frames) >= settings.max_frames:
                logger.debug("Max frames reached, skipping")
                return None

        stored = sharpen(frame) if settings.sharpen else frame
        captured = CapturedFrame(
            timestamp_seconds=elapsed,
            image=encode_jpeg(stored, settings.jpeg_quality),
            sharpness_score=sharpness,
            scene_delta=delta,
        )

        self._frames.append(captured)
        self._last_kept_time = elapsed
        self._last_kept_pixels = frame.copy()

        logger.info(
            f"Captured frame #{len(self._frames)} at {elapsed:.1f}s "
            f"(diff: {delta:.3f}, minInterval: {self.min_interval:.1f}s)"
        )
        return captured

    def finish(self) -> Tuple[CapturedFrame, ...]:
        """Stop accepting ticks and return the final frame sequence."""
        with self._lock:
            self._finished = True
            logger.info(f"Capture finished with {len(self._frames)} frames")
            return tuple(self._frames)


class LiveCaptureSession:
    """
    Drives a camera source through the controller on a fixed-period timer.

    The source only needs a `read() -> (ok, frame)` method, like
    cv2.VideoCapture. Each tick completes before the next one is scheduled;
    missed periods are skipped rather than queued.
    """

    def __init__(
        self,
        source,
        controller: LiveCaptureController,
        tick_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.source = source
        self.controller = controller
        self.tick_interval = tick_interval or controller.settings.tick_interval
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        max_duration: Optional[float] = None
    ) -> Tuple[CapturedFrame, ...]:
        """
        Capture until `stop_event` is set or `max_duration` seconds have elapsed.

        Returns:
            The flushed frame sequence
        """
        start = self._clock()
        next_tick = start
        logger.info(f"Live capture started (tick every {self.tick_interval:.2f}s)")

        while True:
            if stop_event is not None and stop_event.is_set():
                break

            elapsed = self._clock() - start
            if max_duration is not None and elapsed > max_duration:
                break

            ok, frame = self.source.read()
            self.controller.tick(frame if ok else None, elapsed)

            next_tick += self.tick_interval
            now = self._clock()
            if next_tick < now:
                missed = math.ceil((now - next_tick) / self.tick_interval)
                next_tick += missed * self.tick_interval
            wait = next_tick - now
            if wait > 0:
                if stop_event is not None:
                    stop_event.wait(wait)
                else:
                    self._sleep(wait)

        return self.controller.finish()


def open_camera(index: int = 0):
    """Open a camera device with OpenCV."""
    cap = cv2.VideoCapture(index)
    if not cap.isOpened():
        raise ValueError(f"Cannot open camera: {index}")
    return cap


def replay_video(
    video_path: str,
    controller: LiveCaptureController,
    tick_interval: Optional[float] = None
) -> Tuple[CapturedFrame, ...]:
    """
    Feed a recorded video through the controller as if it were live.

    The file is sampled every `tick_interval` seconds of video time; no
    wall-clock waiting happens.
    """
    tick_interval = tick_interval or controller.settings.tick_interval
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise ValueError(f"Cannot open video: {video_path}")

    try:
        fps = cap.get(cv2.CAP_PROP_FPS)
        total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
        duration = total_frames / fps if fps > 0 else 0.0
        num_ticks = int(duration // tick_interval) + 1 if duration > 0 else 0

        logger.info(f"Replaying {video_path}: {duration:.1f}s, {num_ticks} ticks")

        for i in range(num_ticks):
            elapsed = i * tick_interval
            cap.set(cv2.CAP_PROP_POS_MSEC, elapsed * 1000.0)
            ok, frame = cap.read()
            controller.tick(frame if ok else None, elapsed)
    finally:
        cap.release()

    return controller.finish()
