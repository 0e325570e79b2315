from types import SimpleNamespace

import numpy as np
import pytest

import inference
import transcription
from frame_metrics import encode_jpeg
from models import ExternalServiceError, LabelScore


def test_image_labeler_sorts_labels(monkeypatch, rng):
    def fake_pipeline(task, model, device):
        assert task == "image-classification"
        return lambda image, top_k: [
            {"label": "screwdriver", "score": 0.2},
            {"label": "panel", "score": 0.7},
        ][:top_k]

    monkeypatch.setattr(inference, "pipeline", fake_pipeline)
    labeler = inference.ImageLabeler(device="cpu", top_k=2)

    labels = labeler.label(encode_jpeg(rng.integers(0, 256, size=(16, 16, 3), dtype=np.uint8)))

    assert labels == [LabelScore("panel", 0.7), LabelScore("screwdriver", 0.2)]


def test_image_labeler_rejects_unreadable_bytes(monkeypatch):
    monkeypatch.setattr(inference, "pipeline", lambda task, model, device: lambda image, top_k: [])
    labeler = inference.ImageLabeler(device="cpu")

    with pytest.raises(ExternalServiceError):
        labeler.label(b"not an image")


class FakeEmbeddings:
    def create(self, model, input):
        # Out of order on purpose
        data = [SimpleNamespace(index=i, embedding=[float(i), 1.0]) for i in range(len(input))]
        return SimpleNamespace(data=list(reversed(data)))


def test_openai_embedder_restores_input_order(monkeypatch):
    monkeypatch.setattr(inference, "OpenAI", lambda api_key=None: SimpleNamespace(embeddings=FakeEmbeddings()))

    embedder = inference.create_text_embedder("openai", "text-embedding-3-small")

    assert embedder.embed(["a", "b", "c"]) == [[0.0, 1.0], [1.0, 1.0], [2.0, 1.0]]


def test_openai_embedder_wraps_request_errors(monkeypatch):
    class Failing:
        def create(self, model, input):
            raise ConnectionError("network down")

    monkeypatch.setattr(inference, "OpenAI", lambda api_key=None: SimpleNamespace(embeddings=Failing()))

    with pytest.raises(ExternalServiceError):
        inference.OpenAITextEmbedder().embed(["a"])


@pytest.fixture
def transcriber(monkeypatch):
    model = SimpleNamespace(transcribe=lambda audio, language=None, verbose=False: {
        "text": " unscrew the panel ",
        "language": "en",
        "segments": [{"start": 0.0, "end": 1.2, "text": " unscrew the panel "}],
    })
    monkeypatch.setattr(transcription.whisper, "load_model", lambda size, device=None: model)
    return transcription.VoiceTranscriber(model_size="tiny")


def test_transcribe_returns_text_and_segments(transcriber, monkeypatch):
    monkeypatch.setattr(
        transcription.librosa, "load", lambda path, sr, mono: (np.zeros(16000, dtype=np.float32), sr)
    )

    result = transcriber.transcribe("narration.wav")

    assert result.full_text == "unscrew the panel"
    assert result.duration == 1.0
    assert result.segments[0]["text"] == "unscrew the panel"


def test_transcribe_failure_yields_empty_transcript(transcriber, monkeypatch):
    def broken(path, sr, mono):
        raise RuntimeError("no audio stream")

    monkeypatch.setattr(transcription.librosa, "load", broken)

    assert transcriber.transcribe_text("silent.mp4") == ""


def test_tiny_blob_is_not_transcribed(transcriber):
    assert transcriber.transcribe_blob(b"\x1a\x45") == ""
    assert transcriber.transcribe_blob(b"") == ""


def test_save_transcription_writes_json(transcriber, tmp_path):
    import json

    result = transcription.TranscriptionResult(full_text="hello", language="en", duration=2.0)
    path = tmp_path / "out" / "transcript.json"

    transcriber.save_transcription(result, str(path))

    assert json.loads(path.read_text())["full_text"] == "hello"
