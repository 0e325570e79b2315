import json

import pytest

from inference_cache import InferenceCache, content_key
from models import IMAGE_LABELS, TEXT_EMBEDDING, LabelScore


def test_content_key_is_sha256_of_utf8():
    assert content_key("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert content_key("abc") == content_key(b"abc")


def test_repeated_lookup_calls_service_once(tmp_path, embedder):
    cache = InferenceCache(tmp_path, embedder=embedder)

    first = cache.get(TEXT_EMBEDDING, "remove filter")
    second = cache.get(TEXT_EMBEDDING, "remove filter")

    assert first == second
    assert embedder.calls == [["remove filter"]]
    assert cache.path_for(TEXT_EMBEDDING, content_key("remove filter")).exists()


def test_entries_survive_a_new_cache_instance(tmp_path, embedder, labeler):
    InferenceCache(tmp_path, labeler=labeler, embedder=embedder).get_image_labels(b"img-panel")

    reopened = InferenceCache(tmp_path)
    labels = reopened.get_image_labels(b"img-panel")

    assert labels[0] == LabelScore(label="panel", score=0.9)
    assert labeler.calls == [b"img-panel"]


def test_partial_hits_send_only_missing_texts_once(tmp_path, embedder):
    cache = InferenceCache(tmp_path, embedder=embedder)
    cache.get_text_embeddings(["open panel", "remove filter"])
    embedder.calls.clear()

    vectors = cache.get_text_embeddings(["remove filter", "attach cable", "open panel", "attach cable"])

    assert embedder.calls == [["attach cable"]]
    assert len(vectors) == 4
    assert vectors[1] == vectors[3]
    assert vectors[0] != vectors[1]


def test_corrupt_entry_is_treated_as_miss(tmp_path, embedder):
    cache = InferenceCache(tmp_path, embedder=embedder)
    path = cache.path_for(TEXT_EMBEDDING, content_key("remove filter"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")

    vector = cache.get(TEXT_EMBEDDING, "remove filter")

    assert embedder.calls == [["remove filter"]]
    assert json.loads(path.read_text(encoding="utf-8")) == vector


def _plant(cache, kind, value, payload):
    path = cache.path_for(kind, content_key(value))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.mark.parametrize("payload", [{"oops": 1}, [], ["a", "b"], [True, 0.5], 3.5])
def test_wrong_shape_embedding_is_treated_as_miss(tmp_path, embedder, payload):
    cache = InferenceCache(tmp_path, embedder=embedder)
    _plant(cache, TEXT_EMBEDDING, "remove filter", payload)

    vectors = cache.get_text_embeddings(["remove filter"])

    assert embedder.calls == [["remove filter"]]
    assert len(vectors[0]) == 5


@pytest.mark.parametrize("payload", [[1, 2], {"label": "x"}, [{"label": "x"}], [{"label": 3, "score": 0.1}]])
def test_wrong_shape_labels_are_treated_as_miss(tmp_path, labeler, payload):
    cache = InferenceCache(tmp_path, labeler=labeler)
    _plant(cache, IMAGE_LABELS, b"img-filter", payload)

    labels = cache.get_image_labels(b"img-filter")

    assert labeler.calls == [b"img-filter"]
    assert labels[0] == LabelScore(label="filter", score=0.9)


def test_embedding_of_wrong_dimension_is_recomputed(tmp_path, embedder):
    cache = InferenceCache(tmp_path, embedder=embedder)
    cache.get_text_embeddings(["open panel"])
    _plant(cache, TEXT_EMBEDDING, "remove filter", [0.1, 0.2])
    embedder.calls.clear()

    vectors = cache.get_text_embeddings(["open panel", "remove filter"])

    assert embedder.calls == [["remove filter"]]
    assert [len(v) for v in vectors] == [5, 5]


def test_minority_dimension_in_cold_cache_is_recomputed(tmp_path, embedder):
    warm = InferenceCache(tmp_path, embedder=embedder)
    warm.get_text_embeddings(["open panel", "attach cable"])
    _plant(warm, TEXT_EMBEDDING, "remove filter", [0.1, 0.2])
    embedder.calls.clear()

    cold = InferenceCache(tmp_path, embedder=embedder)
    vectors = cold.get_text_embeddings(["remove filter", "open panel", "attach cable"])

    assert embedder.calls == [["remove filter"]]
    assert {len(v) for v in vectors} == {5}


def test_failed_service_call_is_not_cached(tmp_path, labeler):
    cache = InferenceCache(tmp_path, labeler=labeler)

    with pytest.raises(RuntimeError):
        cache.get(IMAGE_LABELS, b"img-broken")

    assert not cache.path_for(IMAGE_LABELS, content_key(b"img-broken")).exists()


def test_missing_service_raises(tmp_path):
    cache = InferenceCache(tmp_path)

    with pytest.raises(RuntimeError):
        cache.get_text_embeddings(["anything"])


def test_unknown_kind_is_rejected(tmp_path, embedder):
    with pytest.raises(ValueError):
        InferenceCache(tmp_path, embedder=embedder).get("video-captions", "x")


def test_memory_layer_evicts_least_recently_used(tmp_path, embedder):
    cache = InferenceCache(tmp_path, embedder=embedder, memory_entries=2)
    cache.get_text_embeddings(["a", "b"])
    cache.get(TEXT_EMBEDDING, "a")
    cache.get(TEXT_EMBEDDING, "c")

    assert list(cache._memory) == [(TEXT_EMBEDDING, content_key("a")), (TEXT_EMBEDDING, content_key("c"))]


def test_write_failure_still_returns_value(tmp_path, embedder, monkeypatch):
    import inference_cache

    cache = InferenceCache(tmp_path, embedder=embedder)

    def refuse(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(inference_cache.tempfile, "mkstemp", refuse)

    vector = cache.get(TEXT_EMBEDDING, "remove filter")

    assert len(vector) == 5
    assert not cache.path_for(TEXT_EMBEDDING, content_key("remove filter")).exists()
