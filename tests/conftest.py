import sys
from pathlib import Path
from typing import List, Sequence

import numpy as np
import pytest


# Modules live flat under src/ and import each other by bare name.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


VOCAB = ["panel", "filter", "battery", "cable", "noise"]


class KeywordEmbedder:
    """Embeds a text as keyword counts over a small vocabulary."""

    def __init__(self, fail_on: str = None) -> None:
        self.calls: List[List[str]] = []
        self.fail_on = fail_on

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise RuntimeError("embedding service unavailable")
        return [[float(t.count(w)) + 0.01 for w in VOCAB] for t in texts]


class BytesLabeler:
    """Labels an image whose bytes are b'img-<label>'; b'img-broken' fails."""

    def __init__(self) -> None:
        self.calls: List[bytes] = []

    def label(self, image: bytes):
        from models import LabelScore

        self.calls.append(image)
        name = image.decode("utf-8").split("-", 1)[1]
        if name == "broken":
            raise RuntimeError("labeling service rejected the image")
        return [LabelScore(label=name, score=0.9), LabelScore(label="tool", score=0.05)]


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def failing_embedder() -> KeywordEmbedder:
    return KeywordEmbedder(fail_on="unscrew")


@pytest.fixture
def labeler() -> BytesLabeler:
    return BytesLabeler()


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def make_frame():
    """Factory for CapturedFrame objects carrying fake image bytes."""
    from models import CapturedFrame

    def _make(name: str, timestamp: float = 0.0, label: str = None):
        return CapturedFrame(
            timestamp_seconds=timestamp,
            image=f"img-{name}".encode("utf-8"),
            sharpness_score=100.0,
            scene_delta=0.5,
            label=label,
        )

    return _make
