"""
Shared data models for the Procedure Frame Sequencer.

This module contains dataclasses, shared types and the error hierarchy used
across multiple modules to avoid circular imports and unnecessary dependencies.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple


# Cache kinds
IMAGE_LABELS = "image-labels"
TEXT_EMBEDDING = "text-embedding"


class FrameSequencerError(Exception):
    """Base class for all errors raised by the sequencer"""


class InputError(FrameSequencerError, ValueError):
    """Rejected input: missing video, empty step list, malformed image"""


class ExternalServiceError(FrameSequencerError, RuntimeError):
    """An external tool or inference service failed"""


class SourceVideoError(ExternalServiceError):
    """The source video could not be read or probed"""


class SceneDetectionError(ExternalServiceError):
    """The frame-difference detector failed for the whole video"""


class FrameExtractionError(ExternalServiceError):
    """A single frame could not be extracted"""


class OperationCancelled(FrameSequencerError):
    """Raised when a running batch operation should stop early"""


@dataclass(frozen=True)
class CapturedFrame:
    """A still frame kept by the live controller or the batch segmenter"""
    timestamp_seconds: float
    image: bytes  # JPEG-encoded
    sharpness_score: float
    scene_delta: float
    label: Optional[str] = None


@dataclass(frozen=True)
class SceneSegment:
    """Chronologically ordered frames extracted from one video"""
    frames: Tuple[CapturedFrame, ...]
    min_frames: int = 0
    max_frames: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'frames', tuple(self.frames))
        for prev, cur in zip(self.frames, self.frames[1:]):
            if cur.timestamp_seconds <= prev.timestamp_seconds:
                raise InputError(
                    f"Frame timestamps must be strictly increasing "
                    f"({prev.timestamp_seconds:.3f}s then {cur.timestamp_seconds:.3f}s)"
                )

    @property
    def timestamps(self) -> List[float]:
        return [f.timestamp_seconds for f in self.frames]

    @property
    def within_bounds(self) -> bool:
        if self.max_frames and len(self.frames) > self.max_frames:
            return False
        return len(self.frames) >= self.min_frames

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[CapturedFrame]:
        return iter(self.frames)


@dataclass(frozen=True)
class StepText:
    """One procedure step, in chronological order"""
    index: int
    text: str


def steps_from_texts(texts: Sequence[str]) -> List[StepText]:
    """Wrap plain step strings into indexed StepText objects."""
    return [StepText(index=i, text=t) for i, t in enumerate(texts)]


def validate_steps(steps: Sequence[StepText]) -> None:
    """
    Check that step indices form the dense sequence 0..N-1 and texts are usable.

    Raises:
        InputError: if the list is empty, out of order, or has blank text
    """
    if not steps:
        raise InputError("Step list is empty")
    for expected, step in enumerate(steps):
        if step.index != expected:
            raise InputError(f"Step indices must be 0..N-1 in order, got {step.index} at position {expected}")
        if not isinstance(step.text, str) or not step.text.strip():
            raise InputError(f"Step {step.index} has no text")


@dataclass(frozen=True)
class Candidate:
    """A frame eligible to represent a step"""
    step_index_hint: int
    local_index: int
    frame: CapturedFrame

    @property
    def position(self) -> int:
        # Keeps candidates of one group adjacent but ordered
        return self.step_index_hint * 100 + self.local_index


@dataclass(frozen=True)
class LabelScore:
    label: str
    score: float


@dataclass(frozen=True)
class ScoredCandidate:
    candidate_index: int
    score: float


@dataclass(frozen=True)
class Assignment:
    """Result of one alignment call: chosen candidate per step plus top-K alternatives"""
    chosen: Tuple[Optional[int], ...]
    scores: Tuple[Optional[float], ...]
    top_candidates: Tuple[Tuple[ScoredCandidate, ...], ...] = field(default_factory=tuple)
    total_score: float = 0.0

    def as_mapping(self) -> Dict[int, Optional[int]]:
        return {i: c for i, c in enumerate(self.chosen)}

    def __len__(self) -> int:
        return len(self.chosen)
