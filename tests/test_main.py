import json

import pytest

import main
from cancel import CancellationToken
from inference_cache import InferenceCache
from main import ProcedurePipeline, load_frames, load_hints, load_steps, write_frames
from matching import FrameStepAligner
from models import InputError, OperationCancelled, SceneSegment, steps_from_texts


class FakeSegmenter:
    def __init__(self, frames, groups=()):
        self.frames = frames
        self.groups = [list(g) for g in groups]
        self.calls = []
        self.tokens = []

    def segment(self, video_path, threshold=None, start=0.0, end=None, cancel=None):
        self.calls.append((video_path, threshold))
        self.tokens.append(cancel)
        return SceneSegment(frames=self.frames, min_frames=1, max_frames=10)

    def extract_candidates_around(self, video_path, hints, cancel=None):
        self.calls.append((video_path, list(hints)))
        self.tokens.append(cancel)
        return self.groups


class SilentTranscriber:
    def transcribe_text(self, path):
        return "first unscrew the panel"


class BrokenWhisper:
    def __init__(self, *args, **kwargs):
        raise RuntimeError("Model base not found")


@pytest.mark.parametrize(
    "payload",
    [
        ["unscrew panel", "remove filter"],
        {"steps": ["unscrew panel", "remove filter"]},
        {"steps": [{"text": "unscrew panel"}, {"text": "remove filter"}]},
    ],
)
def test_load_steps_formats(tmp_path, payload):
    path = tmp_path / "steps.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    steps = load_steps(str(path))

    assert [(s.index, s.text) for s in steps] == [(0, "unscrew panel"), (1, "remove filter")]


def test_load_steps_rejects_empty_list(tmp_path):
    path = tmp_path / "steps.json"
    path.write_text(json.dumps({"steps": []}), encoding="utf-8")

    with pytest.raises(InputError):
        load_steps(str(path))


def test_frames_round_trip_through_manifest(tmp_path, make_frame):
    frames = [make_frame("panel", 1.5), make_frame("filter", 4.0, label="filter housing")]

    manifest = write_frames(frames, str(tmp_path / "frames"))

    assert (tmp_path / "frames" / "scene_0001.jpg").read_bytes() == b"img-panel"
    assert json.loads(manifest.read_text())["frames"][1]["file"] == "scene_0002.jpg"
    assert load_frames(str(tmp_path / "frames")) == frames


def test_load_frames_requires_manifest(tmp_path):
    with pytest.raises(InputError):
        load_frames(str(tmp_path))


def test_pipeline_run_writes_alignment(tmp_path, labeler, embedder, make_frame):
    frames = [make_frame("panel", 1.0), make_frame("noise", 2.0), make_frame("filter", 3.0)]
    segmenter = FakeSegmenter(frames)
    aligner = FrameStepAligner(InferenceCache(tmp_path / "cache", labeler=labeler, embedder=embedder))
    pipeline = ProcedurePipeline(segmenter=segmenter, aligner=aligner, transcriber=SilentTranscriber())
    video = tmp_path / "repair.mp4"
    video.write_bytes(b"video")

    payload = pipeline.run(
        str(video), steps_from_texts(["unscrew panel", "remove filter"]), str(tmp_path / "out"), transcribe=True
    )

    assert [r["chosen"]["candidate_index"] for r in payload["result"]] == [0, 2]
    assert payload["transcript"] == "first unscrew the panel"
    saved = json.loads((tmp_path / "out" / "alignment.json").read_text())
    assert saved["total_candidates"] == 3
    assert (tmp_path / "out" / "frames" / "frames.json").exists()


def test_pipeline_rejects_empty_steps(tmp_path, make_frame):
    segmenter = FakeSegmenter([make_frame("panel", 1.0)])
    pipeline = ProcedurePipeline(segmenter=segmenter)

    with pytest.raises(InputError):
        pipeline.run(str(tmp_path / "repair.mp4"), [], str(tmp_path / "out"))
    assert segmenter.calls == []


def test_transcriber_construction_failure_is_not_fatal(monkeypatch):
    monkeypatch.setattr(main, "VoiceTranscriber", BrokenWhisper)

    assert ProcedurePipeline().transcribe("repair.mp4") == ""


def test_run_continues_without_transcript_when_whisper_fails(tmp_path, labeler, embedder, make_frame, monkeypatch):
    monkeypatch.setattr(main, "VoiceTranscriber", BrokenWhisper)
    aligner = FrameStepAligner(InferenceCache(tmp_path / "cache", labeler=labeler, embedder=embedder))
    pipeline = ProcedurePipeline(segmenter=FakeSegmenter([make_frame("panel", 1.0)]), aligner=aligner)

    payload = pipeline.run(
        str(tmp_path / "repair.mp4"), steps_from_texts(["unscrew panel"]), str(tmp_path / "out"), transcribe=True
    )

    assert payload["transcript"] == ""
    assert payload["result"][0]["chosen"]["candidate_index"] == 0
    assert (tmp_path / "out" / "alignment.json").exists()


def test_cancelled_run_stops_before_alignment(tmp_path, labeler, embedder, make_frame):
    segmenter = FakeSegmenter([make_frame("panel", 1.0), make_frame("filter", 2.0)])
    aligner = FrameStepAligner(InferenceCache(tmp_path / "cache", labeler=labeler, embedder=embedder))
    pipeline = ProcedurePipeline(segmenter=segmenter, aligner=aligner)
    token = CancellationToken()
    token.cancel("user abort")

    with pytest.raises(OperationCancelled):
        pipeline.run(
            str(tmp_path / "repair.mp4"),
            steps_from_texts(["unscrew panel", "remove filter"]),
            str(tmp_path / "out"),
            cancel=token,
        )

    assert segmenter.tokens == [token]
    assert labeler.calls == []
    assert not (tmp_path / "out" / "alignment.json").exists()


def test_cancelled_align_stops_labeling(tmp_path, labeler, embedder, make_frame):
    aligner = FrameStepAligner(InferenceCache(tmp_path / "cache", labeler=labeler, embedder=embedder))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        ProcedurePipeline(aligner=aligner).align(
            [make_frame("panel", 1.0)], steps_from_texts(["unscrew panel"]), cancel=token
        )
    assert labeler.calls == []


def test_align_around_hints_uses_grouped_candidates(tmp_path, labeler, embedder, make_frame):
    groups = [
        [make_frame("noise", 5.0), make_frame("panel", 12.0)],
        [make_frame("filter", 33.0), make_frame("noise", 40.0)],
    ]
    segmenter = FakeSegmenter([], groups=groups)
    aligner = FrameStepAligner(InferenceCache(tmp_path / "cache", labeler=labeler, embedder=embedder))
    pipeline = ProcedurePipeline(segmenter=segmenter, aligner=aligner)

    result = pipeline.align_around_hints(
        "repair.mp4", steps_from_texts(["unscrew panel", "remove filter"]), [20.0, 48.0]
    )

    assert segmenter.calls == [("repair.mp4", [20.0, 48.0])]
    assert result.assignment.chosen == (1, 2)
    assert [c.position for c in result.candidates] == [0, 1, 100, 101]
    assert result.chosen_frame(1).timestamp_seconds == 33.0


def test_align_around_hints_requires_hints():
    pipeline = ProcedurePipeline(segmenter=FakeSegmenter([]))

    with pytest.raises(InputError):
        pipeline.align_around_hints("repair.mp4", steps_from_texts(["unscrew panel"]), [])


@pytest.mark.parametrize("payload, expected", [([12.5, 40], [12.5, 40.0]), ({"hints": [3]}, [3.0])])
def test_load_hints_formats(tmp_path, payload, expected):
    path = tmp_path / "hints.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    assert load_hints(str(path)) == expected


@pytest.mark.parametrize("payload", [[], {"hints": []}, ["12s"], [-1.0], [True], {"oops": 1}])
def test_load_hints_rejects_malformed(tmp_path, payload):
    path = tmp_path / "hints.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(InputError):
        load_hints(str(path))


def test_cli_align_video_requires_hints(tmp_path):
    steps = tmp_path / "steps.json"
    steps.write_text(json.dumps(["unscrew panel"]), encoding="utf-8")

    code = main.main([
        "align",
        "--video", str(tmp_path / "repair.mp4"),
        "--steps", str(steps),
        "--output", str(tmp_path / "alignment.json"),
    ])

    assert code == 1


def test_cli_timeout_builds_token():
    args = main.build_parser().parse_args(["run", "v.mp4", "--steps", "s.json", "--output", "o", "--timeout", "30"])

    token = main._timeout_token(args)

    assert token is not None and not token.cancelled
    assert main._timeout_token(main.build_parser().parse_args(["run", "v.mp4", "--steps", "s.json", "--output", "o"])) is None


def test_cli_align_with_missing_frames_exits_nonzero(tmp_path):
    steps = tmp_path / "steps.json"
    steps.write_text(json.dumps(["unscrew panel"]), encoding="utf-8")

    code = main.main([
        "--cache-dir", str(tmp_path / "cache"),
        "align",
        "--frames", str(tmp_path / "nothing-here"),
        "--steps", str(steps),
        "--output", str(tmp_path / "alignment.json"),
    ])

    assert code == 1


def test_cli_overrides_apply_to_config():
    args = main.build_parser().parse_args(
        ["--device", "cuda:0", "--cache-dir", "/tmp/c", "segment", "v.mp4", "--output", "o", "--min-frames", "8"]
    )

    config = main._apply_overrides(main.AppConfig(), args)

    assert config.services.device == "cuda:0"
    assert config.cache.cache_dir == "/tmp/c"
    assert config.segmentation.min_frames == 8
