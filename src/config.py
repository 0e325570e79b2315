"""
Configuration for the Procedure Frame Sequencer.

Settings are pydantic models with validated ranges. They can be loaded from
a YAML file; anything the file leaves out keeps its default.

Example config.yaml:

    capture:
      sensitivity: 70
      max_frames: 40
    segmentation:
      min_frames: 6
      extractor: opencv
    alignment:
      jump_penalty: 0.05
    cache:
      cache_dir: ./cache/inference
"""

import logging
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


logger = logging.getLogger(__name__)


class CaptureSettings(BaseModel):
    """Live capture controller tuning"""
    model_config = ConfigDict(extra="forbid")

    sensitivity: float = Field(50.0, ge=0.0, le=100.0)
    threshold_max: float = Field(0.20, ge=0.0, le=1.0)
    threshold_min: float = Field(0.02, ge=0.0, le=1.0)
    interval_max: float = Field(8.0, gt=0.0)
    interval_min: float = Field(1.5, gt=0.0)
    max_frames: int = Field(60, ge=1)
    pixel_stride: int = Field(16, ge=1)
    blur_grid_step: int = Field(8, ge=1)
    blur_threshold: float = Field(15.0, ge=0.0)
    min_frames_before_blur_skip: int = Field(5, ge=0)
    sharpen: bool = True
    jpeg_quality: int = Field(85, ge=1, le=100)
    tick_interval: float = Field(1.0, gt=0.0)

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.threshold_min > self.threshold_max:
            raise ValueError("threshold_min must not exceed threshold_max")
        if self.interval_min > self.interval_max:
            raise ValueError("interval_min must not exceed interval_max")
        return self


class SegmentationSettings(BaseModel):
    """Batch scene segmentation tuning"""
    model_config = ConfigDict(extra="forbid")

    scene_threshold: float = Field(0.2, gt=0.0, le=1.0)
    retry_factor: float = Field(0.5, gt=0.0, lt=1.0)
    min_frames: int = Field(4, ge=1)
    max_frames: int = Field(60, ge=1)
    min_spacing: float = Field(0.5, ge=0.0)
    extractor: Literal["ffmpeg", "opencv"] = "ffmpeg"
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    detect_timeout: float = Field(600.0, gt=0.0)
    extract_timeout: float = Field(10.0, gt=0.0)
    jpeg_quality: int = Field(90, ge=1, le=100)
    # Candidate sampling around hinted timestamps
    candidates_per_hint: int = Field(5, ge=1)
    candidate_spacing: float = Field(7.0, gt=0.0)
    candidate_window: float = Field(15.0, ge=0.0)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_frames > self.max_frames:
            raise ValueError("min_frames must not exceed max_frames")
        return self


class AlignmentSettings(BaseModel):
    """Frame-to-step alignment tuning"""
    model_config = ConfigDict(extra="forbid")

    jump_penalty: float = Field(0.02, ge=0.0)
    top_k: int = Field(3, ge=1)
    label_count: int = Field(5, ge=1)


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cache_dir: str = "./cache/inference"
    memory_entries: int = Field(0, ge=0)


class ServiceSettings(BaseModel):
    """External inference services"""
    model_config = ConfigDict(extra="forbid")

    device: str = "cpu"
    image_model: str = "google/vit-base-patch16-224"
    embedding_backend: Literal["transformers", "openai"] = "transformers"
    embedding_model: str = "intfloat/multilingual-e5-large"
    openai_embedding_model: str = "text-embedding-3-small"
    whisper_model: Literal["tiny", "base", "small", "medium", "large"] = "base"
    language: Optional[str] = None


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    segmentation: SegmentationSettings = Field(default_factory=SegmentationSettings)
    alignment: AlignmentSettings = Field(default_factory=AlignmentSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    services: ServiceSettings = Field(default_factory=ServiceSettings)


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: YAML file path; None returns the defaults

    Returns:
        Validated AppConfig
    """
    if path is None:
        return AppConfig()

    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping: {path}")

    config = AppConfig.model_validate(data)
    logger.info(f"Loaded config from {path}")
    return config
