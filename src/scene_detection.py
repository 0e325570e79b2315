"""
Batch Scene Segmentation Module

This module is responsible for:
1. Running a frame-difference scene detector (FFmpeg) over a finished video
2. Applying the retry / evenly-spaced fallback ladder when too few scenes are found
3. Bounding and de-duplicating the scene timestamps
4. Extracting exactly one frame per surviving timestamp (FFmpeg or OpenCV)
5. Sampling candidate frames around hinted timestamps for the alignment stage

Failure to read the source video or to run the detector is fatal for the
request. A failed extraction only drops that one timestamp.
"""

import logging
import math
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import cv2
from tqdm import tqdm

import cancel as cancellation
from cancel import CancellationToken
from config import SegmentationSettings
from frame_metrics import decode_image, encode_jpeg, scene_delta, sharpness_score
from models import (
    CapturedFrame,
    FrameExtractionError,
    InputError,
    SceneDetectionError,
    SceneSegment,
    SourceVideoError,
)


logger = logging.getLogger(__name__)

PTS_TIME_RE = re.compile(r'pts_time:\s*([\d.]+)')


def plan_scene_timestamps(
    detect: Callable[[float], List[float]],
    start: float,
    end: float,
    threshold: float = 0.2,
    min_frames: int = 4,
    max_frames: int = 60,
    min_spacing: float = 0.5,
    retry_factor: float = 0.5
) -> List[float]:
    """
    Turn raw detector output into a bounded, sorted, de-duplicated timestamp list.

    Args:
        detect: Callable running the detector at a threshold, returning timestamps
        start: Start of the analyzed interval in seconds
        end: End of the analyzed interval in seconds
        threshold: Initial scene-change threshold
        min_frames: Minimum number of timestamps wanted
        max_frames: Maximum number of timestamps returned
        min_spacing: Timestamps closer than this to the previous kept one are dropped
        retry_factor: Threshold multiplier for the single retry

    Returns:
        Sorted timestamps
    """
    timestamps = sorted(detect(threshold))
    logger.info(f"Found {len(timestamps)} scene timestamps at threshold {threshold}")

    if len(timestamps) < min_frames:
        lower = threshold * retry_factor
        logger.info(f"Too few scenes ({len(timestamps)}), retrying with threshold {lower}")
        timestamps = sorted(detect(lower))
        logger.info(f"After retry: {len(timestamps)} timestamps")

    if len(timestamps) < min_frames:
        # Detected cuts are discarded in favour of an even spread
        logger.info(f"Still too few scenes, using {min_frames} evenly distributed timestamps")
        interval = (end - start) / min_frames
        timestamps = [start + i * interval for i in range(min_frames)]

    if len(timestamps) > max_frames:
        logger.info(f"Limiting from {len(timestamps)} to {max_frames} frames")
        step = len(timestamps) / max_frames
        timestamps = [timestamps[int(math.floor(i * step))] for i in range(max_frames)]

    timestamps.sort()

    unique: List[float] = []
    for ts in timestamps:
        if not unique or ts - unique[-1] > min_spacing:
            unique.append(ts)

    return unique


def probe_duration(
    video_path: str,
    ffprobe_bin: str = 'ffprobe',
    timeout: Optional[float] = 60.0
) -> float:
    """Duration of a video in seconds via ffprobe."""
    command = [
        ffprobe_bin,
        '-v', 'error',
        '-show_entries', 'format=duration',
        '-of', 'default=noprint_wrappers=1:nokey=1',
        str(video_path),
    ]
    logger.debug(f"Running ffprobe: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=True, capture_output=True, text=True, timeout=timeout)
        return float(result.stdout.strip())
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError, ValueError) as e:
        raise SourceVideoError(f"Could not probe video duration for {video_path}: {e}") from e


class FfmpegSceneDetector:
    """FFmpeg `select=gt(scene,θ)` + `showinfo` scene-change detector."""

    def __init__(self, ffmpeg_bin: str = 'ffmpeg', timeout: float = 600.0):
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout

    def build_command(self, video_path: str, start: float, end: float, threshold: float) -> List[str]:
        return [
            self.ffmpeg_bin,
            '-hide_banner', '-nostats', '-loglevel', 'info',
            '-ss', f"{start:.3f}",
            '-t', f"{max(0.0, end - start):.3f}",
            '-i', str(video_path),
            '-vf', f"format=yuv420p,select='gt(scene,{threshold})',showinfo",
            '-f', 'null', '-',
        ]

    def detect(
        self,
        video_path: str,
        start: float,
        end: float,
        threshold: float,
        cancel: Optional[CancellationToken] = None
    ) -> List[float]:
        """
        Run scene detection over [start, end].

        Returns:
            Absolute timestamps (seconds) of scene changes
        """
        cancellation.check(cancel)
        command = self.build_command(video_path, start, end, threshold)
        logger.debug(f"Running ffmpeg scene detection: {' '.join(command)}")

        try:
            result = subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
                timeout=cancellation.subprocess_timeout(cancel, self.timeout)
            )
        except subprocess.TimeoutExpired as e:
            cancellation.check(cancel)
            raise SceneDetectionError(f"Scene detection timed out after {e.timeout}s") from e
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise SceneDetectionError(f"Scene detection failed for {video_path}: {e}") from e

        # showinfo writes to stderr; timestamps are relative to the seek point
        return self.parse_timestamps(result.stderr, offset=start, end=end)

    @staticmethod
    def parse_timestamps(output: str, offset: float = 0.0, end: Optional[float] = None) -> List[float]:
        """Absolute `pts_time` values from showinfo output, kept within [offset, end]."""
        timestamps = [offset + float(m) for m in PTS_TIME_RE.findall(output or '')]
        return [ts for ts in timestamps if ts >= offset and (end is None or ts <= end)]


class FfmpegFrameExtractor:
    """Extracts one JPEG still per timestamp with FFmpeg."""

    def __init__(self, ffmpeg_bin: str = 'ffmpeg', timeout: float = 10.0, quality: int = 2):
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout
        self.quality = quality

    def extract(
        self,
        video_path: str,
        timestamp: float,
        work_dir: Path,
        cancel: Optional[CancellationToken] = None
    ) -> bytes:
        frame_path = Path(work_dir) / f"frame_{timestamp:010.3f}.jpg"
        command = [
            self.ffmpeg_bin,
            '-hide_banner', '-loglevel', 'error', '-nostats',
            '-ss', f"{timestamp:.3f}",
            '-i', str(video_path),
            '-frames:v', '1',
            '-q:v', str(self.quality),
            str(frame_path), '-y',
        ]
        try:
            subprocess.run(
                command,
                check=True,
                capture_output=True,
                timeout=cancellation.subprocess_timeout(cancel, self.timeout)
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise FrameExtractionError(f"ffmpeg could not extract frame at {timestamp:.2f}s: {e}") from e

        if not frame_path.exists() or frame_path.stat().st_size == 0:
            raise FrameExtractionError(f"No frame written at {timestamp:.2f}s")

        data = frame_path.read_bytes()
        frame_path.unlink()
        return data


class OpenCVFrameExtractor:
    """Extracts one JPEG still per timestamp by seeking with OpenCV."""

    def __init__(self, quality: int = 90):
        self.quality = quality

    def extract(
        self,
        video_path: str,
        timestamp: float,
        work_dir: Optional[Path] = None,
        cancel: Optional[CancellationToken] = None
    ) -> bytes:
        cap = cv2.VideoCapture(str(video_path))
        if not cap.isOpened():
            raise FrameExtractionError(f"Cannot open video: {video_path}")
        try:
            cap.set(cv2.CAP_PROP_POS_MSEC, timestamp * 1000.0)
            ret, frame = cap.read()
        finally:
            cap.release()

        if not ret or frame is None:
            raise FrameExtractionError(f"No frame readable at {timestamp:.2f}s")
        return encode_jpeg(frame, self.quality)


class SceneSegmenter:
    """
    Turns a finished video into a bounded set of scene frames.

    The detector and extractor are injected so that they can be replaced
    (tests use in-process fakes).
    """

    def __init__(
        self,
        detector=None,
        extractor=None,
        settings: Optional[SegmentationSettings] = None,
        show_progress: bool = True
    ):
        self.settings = settings or SegmentationSettings()
        self.detector = detector or FfmpegSceneDetector(
            ffmpeg_bin=self.settings.ffmpeg_bin,
            timeout=self.settings.detect_timeout
        )
        self.extractor = extractor or self._default_extractor()
        self.show_progress = show_progress

    def _default_extractor(self):
        if self.settings.extractor == 'opencv':
            return OpenCVFrameExtractor(quality=self.settings.jpeg_quality)
        return FfmpegFrameExtractor(ffmpeg_bin=self.settings.ffmpeg_bin, timeout=self.settings.extract_timeout)

    def _video_duration(self, video_path: str) -> float:
        return probe_duration(video_path, self.settings.ffprobe_bin)

    @staticmethod
    def _check_video(video_path: str) -> Path:
        path = Path(video_path)
        if not path.is_file():
            raise InputError(f"Video not found: {video_path}")
        if path.stat().st_size == 0:
            raise InputError(f"Video file is empty: {video_path}")
        return path

    def plan(
        self,
        video_path: str,
        threshold: Optional[float] = None,
        start: float = 0.0,
        end: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> List[float]:
        """Scene timestamps for a video, without extracting any frame."""
        self._check_video(video_path)
        threshold = self.settings.scene_threshold if threshold is None else threshold
        if end is None:
            end = self._video_duration(video_path)
        if end <= start:
            raise InputError(f"Empty analysis interval: {start:.2f}s - {end:.2f}s")

        logger.info(f"Analyzing {video_path}: {start:.2f}s - {end:.2f}s, threshold {threshold}")

        def detect(theta: float) -> List[float]:
            return self.detector.detect(video_path, start, end, theta, cancel=cancel)

        timestamps = plan_scene_timestamps(
            detect,
            start,
            end,
            threshold=threshold,
            min_frames=self.settings.min_frames,
            max_frames=self.settings.max_frames,
            min_spacing=self.settings.min_spacing,
            retry_factor=self.settings.retry_factor
        )
        logger.info(f"Final {len(timestamps)} timestamps: {', '.join(f'{t:.2f}s' for t in timestamps)}")
        return timestamps

    def segment(
        self,
        video_path: str,
        threshold: Optional[float] = None,
        start: float = 0.0,
        end: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> SceneSegment:
        """
        Detect scenes and extract one frame per scene timestamp.

        Args:
            video_path: Path to a finished video file
            threshold: Initial scene threshold (default from settings)
            start: Start of the analyzed interval in seconds
            end: End of the analyzed interval (default: video duration)
            cancel: Optional cancellation token

        Returns:
            SceneSegment with chronologically ordered frames
        """
        logger.info("=" * 60)
        logger.info("SCENE SEGMENTATION")
        logger.info("=" * 60)

        timestamps = self.plan(video_path, threshold, start, end, cancel)
        frames = self._extract_all(video_path, timestamps, cancel)

        logger.info(f"Returning {len(frames)} frames ({len(timestamps) - len(frames)} extraction failures)")
        return SceneSegment(
            frames=tuple(frames),
            min_frames=self.settings.min_frames,
            max_frames=self.settings.max_frames
        )

    def _extract_all(
        self,
        video_path: str,
        timestamps: Sequence[float],
        cancel: Optional[CancellationToken] = None,
        desc: str = "Extracting frames"
    ) -> List[CapturedFrame]:
        frames: List[CapturedFrame] = []
        previous_pixels = None

        with tempfile.TemporaryDirectory(prefix='scenes_') as work_dir:
            for ts in tqdm(timestamps, desc=desc, disable=not self.show_progress):
                cancellation.check(cancel)
                try:
                    image = self.extractor.extract(video_path, ts, Path(work_dir), cancel=cancel)
                except FrameExtractionError as e:
                    cancellation.check(cancel)
                    logger.warning(f"Failed to extract frame at {ts:.2f}s: {e}")
                    continue

                pixels = decode_image(image)
                if pixels is None:
                    logger.warning(f"Extracted frame at {ts:.2f}s is not a readable image, dropping it")
                    continue

                frames.append(CapturedFrame(
                    timestamp_seconds=ts,
                    image=image,
                    sharpness_score=sharpness_score(pixels),
                    scene_delta=scene_delta(previous_pixels, pixels)
                ))
                previous_pixels = pixels

        return frames

    def extract_candidates_around(
        self,
        video_path: str,
        hints: Sequence[float],
        cancel: Optional[CancellationToken] = None
    ) -> List[List[CapturedFrame]]:
        """
        Sample several candidate frames around each hinted timestamp.

        For every hint, `candidates_per_hint` frames are taken starting
        `candidate_window` seconds before it, `candidate_spacing` seconds apart.
        Groups for which nothing could be extracted are returned empty so
        group indices keep matching hint indices.
        """
        self._check_video(video_path)
        s = self.settings
        groups: List[List[CapturedFrame]] = []

        for i, hint in enumerate(hints):
            first = max(0.0, hint - s.candidate_window)
            times = [first + c * s.candidate_spacing for c in range(s.candidates_per_hint)]
            logger.info(f"Step {i + 1}: extracting candidates around {hint:.2f}s")
            groups.append(self._extract_all(video_path, times, cancel, desc=f"Candidates for step {i + 1}"))

        return groups
