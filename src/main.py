#!/usr/bin/env python3
"""
Procedure Frame Sequencer

Main CLI application entry point.

This application turns a procedure video into an ordered set of step frames:
1. Capturing frames live from a camera (or replaying a recording) with an
   adaptive keep/skip controller
2. Segmenting a finished video into scene frames with FFmpeg scene detection
3. Optionally transcribing the narration with Whisper
4. Aligning the frames to an ordered list of step texts with a monotonic
   dynamic-programming assignment
"""

import argparse
import json
import logging
import sys
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import cancel as cancellation
from cancel import CancellationToken
from capture import LiveCaptureController, LiveCaptureSession, open_camera, replay_video
from config import AppConfig, load_config
from inference import ImageLabeler, create_text_embedder
from inference_cache import InferenceCache
from matching import AlignmentResult, FrameStepAligner, build_candidates, candidates_from_frames
from models import (
    CapturedFrame,
    FrameSequencerError,
    InputError,
    StepText,
    steps_from_texts,
    validate_steps,
)
from scene_detection import SceneSegmenter
from transcription import VoiceTranscriber


logger = logging.getLogger(__name__)

MANIFEST_NAME = 'frames.json'


def load_steps(steps_file: str) -> List[StepText]:
    """
    Load step texts from a JSON file.

    Accepted formats:
        ["open cover", "remove filter", ...]
        {"steps": ["open cover", ...]}
        {"steps": [{"text": "open cover"}, ...]}
    """
    with open(steps_file, 'r', encoding='utf-8') as f:
        data = json.load(f)

    items = data.get('steps', []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise InputError(f"Steps file must contain a list of steps: {steps_file}")

    texts = []
    for item in items:
        if isinstance(item, dict):
            item = item.get('text', '')
        if not isinstance(item, str):
            raise InputError(f"Malformed step entry: {item!r}")
        texts.append(item)

    steps = steps_from_texts(texts)
    validate_steps(steps)
    return steps


def load_hints(hints_file: str) -> List[float]:
    """
    Load per-step timestamp hints (seconds) from a JSON file.

    Accepted formats:
        [12.5, 40.0, ...]
        {"hints": [12.5, 40.0, ...]}
    """
    with open(hints_file, 'r', encoding='utf-8') as f:
        data = json.load(f)

    items = data.get('hints') if isinstance(data, dict) else data
    if not isinstance(items, list) or not items:
        raise InputError(f"Hints file must contain a non-empty list of timestamps: {hints_file}")

    hints = []
    for item in items:
        if isinstance(item, bool) or not isinstance(item, (int, float)) or item < 0:
            raise InputError(f"Malformed hint entry: {item!r}")
        hints.append(float(item))
    return hints


def write_frames(frames: Sequence[CapturedFrame], output_dir: str, prefix: str = 'scene') -> Path:
    """Write frames as JPEG files plus a JSON manifest; returns the manifest path."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    entries = []
    for i, frame in enumerate(frames):
        name = f"{prefix}_{i + 1:04d}.jpg"
        (output_dir / name).write_bytes(frame.image)
        meta = asdict(frame)
        meta.pop('image')
        meta['file'] = name
        entries.append(meta)

    manifest = output_dir / MANIFEST_NAME
    with open(manifest, 'w', encoding='utf-8') as f:
        json.dump({'frames': entries}, f, indent=2)

    logger.info(f"Saved {len(entries)} frames to {output_dir}")
    return manifest


def load_frames(frames_dir: str) -> List[CapturedFrame]:
    """Load frames written by write_frames."""
    frames_dir = Path(frames_dir)
    manifest = frames_dir / MANIFEST_NAME
    if not manifest.exists():
        raise InputError(f"No {MANIFEST_NAME} in {frames_dir}")

    with open(manifest, 'r', encoding='utf-8') as f:
        data = json.load(f)

    frames = []
    for entry in data.get('frames', []):
        frames.append(CapturedFrame(
            timestamp_seconds=float(entry['timestamp_seconds']),
            image=(frames_dir / entry['file']).read_bytes(),
            sharpness_score=float(entry.get('sharpness_score', 0.0)),
            scene_delta=float(entry.get('scene_delta', 0.0)),
            label=entry.get('label')
        ))
    return frames


class ProcedurePipeline:
    """Main pipeline orchestrating segmentation, transcription and alignment"""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        segmenter: Optional[SceneSegmenter] = None,
        aligner: Optional[FrameStepAligner] = None,
        transcriber: Optional[VoiceTranscriber] = None
    ):
        """
        Initialize the pipeline.

        Components that are not passed in are built lazily from the config
        the first time they are needed.
        """
        self.config = config or AppConfig()
        self._segmenter = segmenter
        self._aligner = aligner
        self._transcriber = transcriber

        logger.info("ProcedurePipeline initialized")

    @property
    def segmenter(self) -> SceneSegmenter:
        if self._segmenter is None:
            self._segmenter = SceneSegmenter(settings=self.config.segmentation)
        return self._segmenter

    @property
    def aligner(self) -> FrameStepAligner:
        if self._aligner is None:
            services = self.config.services
            model = services.openai_embedding_model if services.embedding_backend == 'openai' else services.embedding_model
            cache = InferenceCache(
                self.config.cache.cache_dir,
                labeler=ImageLabeler(services.image_model, device=services.device),
                embedder=create_text_embedder(services.embedding_backend, model, device=services.device),
                memory_entries=self.config.cache.memory_entries
            )
            alignment = self.config.alignment
            self._aligner = FrameStepAligner(
                cache,
                jump_penalty=alignment.jump_penalty,
                top_k=alignment.top_k,
                label_count=alignment.label_count
            )
        return self._aligner

    @property
    def transcriber(self) -> VoiceTranscriber:
        if self._transcriber is None:
            services = self.config.services
            self._transcriber = VoiceTranscriber(
                model_size=services.whisper_model,
                device=services.device,
                language=services.language
            )
        return self._transcriber

    def align(
        self,
        frames: Sequence[CapturedFrame],
        steps: Sequence[StepText],
        cancel: Optional[CancellationToken] = None
    ) -> AlignmentResult:
        validate_steps(steps)
        return self.aligner.align(steps, candidates_from_frames(frames), cancel=cancel)

    def align_around_hints(
        self,
        video_path: str,
        steps: Sequence[StepText],
        hints: Sequence[float],
        cancel: Optional[CancellationToken] = None
    ) -> AlignmentResult:
        """
        Align steps to candidate frames sampled around per-step timestamp hints.

        Hint i yields a group of nearby frames; candidates are positioned by
        (hint index, position inside the group).
        """
        validate_steps(steps)
        if not hints:
            raise InputError("At least one timestamp hint is required")

        logger.info(f"Extracting candidates around {len(hints)} hints...")
        groups = self.segmenter.extract_candidates_around(video_path, hints, cancel=cancel)
        candidates = build_candidates(groups)
        logger.info(f"Extracted {len(candidates)} candidates")

        cancellation.check(cancel)
        return self.aligner.align(steps, candidates, cancel=cancel)

    def transcribe(self, video_path: str) -> str:
        """Narration transcript; '' when transcription is unavailable or fails."""
        try:
            return self.transcriber.transcribe_text(video_path)
        except Exception as e:
            logger.warning(f"Transcription unavailable, continuing without transcript: {e}")
            return ''

    def run(
        self,
        video_path: str,
        steps: Sequence[StepText],
        output_dir: str,
        transcribe: bool = False,
        threshold: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> Dict:
        """
        Run the complete pipeline on a finished video.

        Args:
            video_path: Path to the video file
            steps: Ordered steps to align
            output_dir: Directory for frames and alignment.json
            transcribe: Also transcribe the narration
            threshold: Initial scene threshold
            cancel: Optional cancellation token, checked between stages

        Returns:
            JSON-serializable result with the assignment and transcript
        """
        validate_steps(steps)
        output_dir = Path(output_dir)

        logger.info("=" * 80)
        logger.info("Starting Procedure Frame Pipeline")
        logger.info("=" * 80)

        logger.info("\n[STEP 1] Segmenting video into scenes...")
        segment = self.segmenter.segment(video_path, threshold=threshold, cancel=cancel)
        write_frames(segment.frames, str(output_dir / 'frames'))

        transcript = ''
        if transcribe:
            cancellation.check(cancel)
            logger.info("\n[STEP 2] Transcribing narration...")
            transcript = self.transcribe(video_path)

        cancellation.check(cancel)
        logger.info("\n[STEP 3] Aligning frames to steps...")
        result = self.align(segment.frames, steps, cancel=cancel)

        payload = result.to_dict()
        payload['transcript'] = transcript
        payload['video'] = str(video_path)

        result_file = output_dir / 'alignment.json'
        with open(result_file, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)

        logger.info("=" * 80)
        logger.info(f"SUCCESS! Results: {result_file}")
        logger.info("=" * 80)
        return payload


def _cmd_segment(args, config: AppConfig) -> int:
    pipeline = ProcedurePipeline(config)
    segment = pipeline.segmenter.segment(args.video, threshold=args.threshold, start=args.start, end=args.end)
    write_frames(segment.frames, args.output)
    return 0


def _cmd_capture(args, config: AppConfig) -> int:
    controller = LiveCaptureController(sensitivity=args.sensitivity, settings=config.capture)

    if args.video:
        frames = replay_video(args.video, controller)
    else:
        camera = open_camera(args.camera)
        stop = threading.Event()
        session = LiveCaptureSession(camera, controller)
        logger.info("Recording... press Ctrl+C to stop")
        try:
            frames = session.run(stop_event=stop, max_duration=args.duration)
        except KeyboardInterrupt:
            stop.set()
            frames = controller.finish()
        finally:
            camera.release()

    write_frames(frames, args.output, prefix='capture')
    return 0


def _timeout_token(args) -> Optional[CancellationToken]:
    timeout = getattr(args, 'timeout', None)
    return CancellationToken(timeout=timeout) if timeout else None


def _cmd_align(args, config: AppConfig) -> int:
    pipeline = ProcedurePipeline(config)
    steps = load_steps(args.steps)
    cancel = _timeout_token(args)
    if args.video:
        if not args.hints:
            raise InputError("--video requires --hints")
        result = pipeline.align_around_hints(args.video, steps, load_hints(args.hints), cancel=cancel)
    else:
        result = pipeline.align(load_frames(args.frames), steps, cancel=cancel)

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, 'w', encoding='utf-8') as f:
        json.dump(result.to_dict(), f, indent=2)
    logger.info(f"Alignment written to {output}")
    return 0


def _cmd_run(args, config: AppConfig) -> int:
    pipeline = ProcedurePipeline(config)
    steps = load_steps(args.steps)
    pipeline.run(
        args.video,
        steps,
        args.output,
        transcribe=args.transcribe,
        threshold=args.threshold,
        cancel=_timeout_token(args)
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Procedure frame capture, scene segmentation and frame-to-step alignment',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Extract scene frames from a recorded video
  frame-sequencer segment ./repair.mp4 --output ./frames

  # Capture from the default camera at high sensitivity
  frame-sequencer capture --camera 0 --sensitivity 80 --output ./captured

  # Align extracted frames to step texts
  frame-sequencer align --frames ./frames --steps ./steps.json --output ./alignment.json

  # Align frames sampled around per-step timestamp hints
  frame-sequencer align --video ./repair.mp4 --hints ./hints.json --steps ./steps.json --output ./alignment.json

  # Full pipeline on a video
  frame-sequencer run ./repair.mp4 --steps ./steps.json --output ./out --transcribe --timeout 600
        """
    )
    parser.add_argument('--config', default=None, help='Path to a YAML config file')
    parser.add_argument('--cache-dir', default=None, help='Inference cache directory (overrides config)')
    parser.add_argument('--device', default=None, help='Inference device, e.g. cpu or cuda:0 (overrides config)')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')

    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('segment', help='Detect scenes and extract one frame per scene')
    p.add_argument('video', help='Path to the video file')
    p.add_argument('--output', required=True, help='Directory for frames and manifest')
    p.add_argument('--threshold', type=float, default=None, help='Initial scene threshold (default: 0.2)')
    p.add_argument('--min-frames', type=int, default=None, help='Minimum number of frames')
    p.add_argument('--max-frames', type=int, default=None, help='Maximum number of frames')
    p.add_argument('--start', type=float, default=0.0, help='Start of the analyzed interval (s)')
    p.add_argument('--end', type=float, default=None, help='End of the analyzed interval (s)')
    p.set_defaults(func=_cmd_segment)

    p = sub.add_parser('capture', help='Adaptive frame capture from a camera or a recording')
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument('--camera', type=int, help='Camera device index')
    source.add_argument('--video', help='Replay a recorded video through the controller')
    p.add_argument('--output', required=True, help='Directory for frames and manifest')
    p.add_argument('--sensitivity', type=float, default=None, help='Sensitivity 0-100 (default from config: 50)')
    p.add_argument('--duration', type=float, default=None, help='Stop live capture after this many seconds')
    p.set_defaults(func=_cmd_capture)

    p = sub.add_parser('align', help='Align saved frames (or frames sampled around hints) to step texts')
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument('--frames', help='Directory written by segment/capture')
    source.add_argument('--video', help='Video to sample candidates from (requires --hints)')
    p.add_argument('--hints', default=None, help='JSON file with one timestamp hint (s) per step')
    p.add_argument('--steps', required=True, help='JSON file with ordered step texts')
    p.add_argument('--output', required=True, help='Output JSON file')
    p.add_argument('--timeout', type=float, default=None, help='Cancel the alignment after this many seconds')
    p.set_defaults(func=_cmd_align)

    p = sub.add_parser('run', help='Segment a video and align it to step texts')
    p.add_argument('video', help='Path to the video file')
    p.add_argument('--steps', required=True, help='JSON file with ordered step texts')
    p.add_argument('--output', required=True, help='Output directory')
    p.add_argument('--threshold', type=float, default=None, help='Initial scene threshold (default: 0.2)')
    p.add_argument('--min-frames', type=int, default=None, help='Minimum number of frames')
    p.add_argument('--max-frames', type=int, default=None, help='Maximum number of frames')
    p.add_argument('--transcribe', action='store_true', help='Transcribe the narration with Whisper')
    p.add_argument('--timeout', type=float, default=None, help='Cancel the run after this many seconds')
    p.set_defaults(func=_cmd_run)

    return parser


def _apply_overrides(config: AppConfig, args) -> AppConfig:
    updates = {}
    if args.cache_dir:
        updates['cache'] = config.cache.model_copy(update={'cache_dir': args.cache_dir})
    if args.device:
        updates['services'] = config.services.model_copy(update={'device': args.device})

    seg_updates = {}
    if getattr(args, 'min_frames', None) is not None:
        seg_updates['min_frames'] = args.min_frames
    if getattr(args, 'max_frames', None) is not None:
        seg_updates['max_frames'] = args.max_frames
    if seg_updates:
        merged = {**config.segmentation.model_dump(), **seg_updates}
        updates['segmentation'] = type(config.segmentation).model_validate(merged)

    return config.model_copy(update=updates) if updates else config


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        force=True
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = _apply_overrides(load_config(args.config), args)
        return args.func(args, config)
    except FrameSequencerError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
