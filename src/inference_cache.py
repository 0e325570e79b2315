"""
Content-Addressed Inference Cache

This module is responsible for:
1. Memoizing image-label and text-embedding results on a sha256 content hash
2. Sending only the missing subset of a text batch to the embedding service
3. Treating unreadable or malformed cache entries as misses

Entries are stored one JSON file per (kind, key) under `cache_dir/kind/key.json`.
Values are never mutated once written. Two callers computing the same
missing key concurrently both compute; the last writer wins.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from collections import Counter, OrderedDict
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from models import IMAGE_LABELS, TEXT_EMBEDDING, LabelScore


logger = logging.getLogger(__name__)

KINDS = (IMAGE_LABELS, TEXT_EMBEDDING)


def content_key(value: Union[str, bytes]) -> str:
    """sha256 hex digest of the input (strings are UTF-8 encoded)."""
    if isinstance(value, str):
        value = value.encode('utf-8')
    return hashlib.sha256(value).hexdigest()


def _is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def is_valid_entry(kind: str, value: Any) -> bool:
    """Whether a stored value has the shape its kind requires."""
    if not isinstance(value, list):
        return False
    if kind == TEXT_EMBEDDING:
        return len(value) > 0 and all(_is_number(x) for x in value)
    return all(
        isinstance(r, dict) and isinstance(r.get('label'), str) and _is_number(r.get('score'))
        for r in value
    )


class InferenceCache:
    """
    Cache-wrapped access to the labeling and embedding services.

    Args:
        cache_dir: Root directory for cache files
        labeler: Object with label(image_bytes) -> List[LabelScore]
        embedder: Object with embed(texts) -> List[List[float]]
        memory_entries: Size of an in-process LRU in front of the files (0 disables it)
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        labeler=None,
        embedder=None,
        memory_entries: int = 0
    ):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.labeler = labeler
        self.embedder = embedder
        self.memory_entries = memory_entries
        self._memory: "OrderedDict[Tuple[str, str], Any]" = OrderedDict()
        self._memory_lock = threading.Lock()
        # Learned from the first embedder response
        self._embedding_dim: Optional[int] = None

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def path_for(self, kind: str, key: str) -> Path:
        return self.cache_dir / kind / f"{key}.json"

    def read(self, kind: str, key: str) -> Optional[Any]:
        """Stored value for (kind, key), or None on miss or corrupt entry."""
        cached = self._memory_get(kind, key)
        if cached is not None:
            return cached

        path = self.path_for(kind, key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                value = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring unreadable cache entry {path}: {e}")
            return None

        if not is_valid_entry(kind, value):
            logger.debug(f"Ignoring malformed cache entry {path}")
            return None
        if kind == TEXT_EMBEDDING and self._embedding_dim and len(value) != self._embedding_dim:
            logger.debug(f"Ignoring cache entry {path} with dimension {len(value)}, expected {self._embedding_dim}")
            return None

        self._memory_put(kind, key, value)
        return value

    def write(self, kind: str, key: str, value: Any) -> None:
        """Atomically store a value; failures are logged and ignored."""
        path = self.path_for(kind, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{key}.", suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(value, f)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.warning(f"Could not write cache entry {path}: {e}")

        self._memory_put(kind, key, value)

    def _memory_get(self, kind: str, key: str) -> Optional[Any]:
        if not self.memory_entries:
            return None
        with self._memory_lock:
            value = self._memory.get((kind, key))
            if value is not None:
                self._memory.move_to_end((kind, key))
            return value

    def _memory_put(self, kind: str, key: str, value: Any) -> None:
        if not self.memory_entries:
            return
        with self._memory_lock:
            self._memory[(kind, key)] = value
            self._memory.move_to_end((kind, key))
            while len(self._memory) > self.memory_entries:
                self._memory.popitem(last=False)

    # ------------------------------------------------------------------
    # Cache-wrapped service access
    # ------------------------------------------------------------------

    def get(self, kind: str, value: Union[str, bytes]) -> Any:
        """
        Return the service result for `value`, computing it only on a miss.

        Args:
            kind: IMAGE_LABELS (value = encoded image bytes) or
                  TEXT_EMBEDDING (value = text)
            value: Service input

        Returns:
            List of {'label', 'score'} dicts for image labels, or a
            list of floats for a text embedding
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown cache kind: {kind}")

        key = content_key(value)
        cached = self.read(kind, key)
        if cached is not None:
            return cached

        if kind == IMAGE_LABELS:
            result = self._compute_labels(value)
        else:
            result = self._compute_embeddings([value])[0]

        self.write(kind, key, result)
        return result

    def get_image_labels(self, image: bytes) -> List[LabelScore]:
        """Ranked labels for an encoded image."""
        raw = self.get(IMAGE_LABELS, image)
        return [LabelScore(label=r['label'], score=float(r['score'])) for r in raw]

    def get_text_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embeddings for a batch of texts, in request order.

        Only the texts missing from the cache are sent to the embedding
        service, de-duplicated, in a single batched call.
        """
        results: List[Optional[List[float]]] = [None] * len(texts)
        missing: Dict[str, List[int]] = OrderedDict()

        for i, text in enumerate(texts):
            key = content_key(text)
            cached = self.read(TEXT_EMBEDDING, key)
            if cached is not None:
                results[i] = cached
            else:
                missing.setdefault(text, []).append(i)

        # Hits disagreeing with the batch's dimension are stale entries
        if not self._embedding_dim:
            self._embedding_dim = _most_common_length(r for r in results if r is not None)
        self._drop_mismatched(texts, results, missing, self._embedding_dim)

        if missing:
            to_compute = list(missing.keys())
            logger.debug(f"Text embedding cache: {len(texts) - sum(len(v) for v in missing.values())} hits, "
                         f"{len(to_compute)} to compute")
            self._fill(to_compute, missing, results)

            # The service may disagree with the dimension guessed from the hits
            stale: Dict[str, List[int]] = OrderedDict()
            self._drop_mismatched(texts, results, stale, self._embedding_dim)
            if stale:
                self._fill(list(stale.keys()), stale, results)

        return results

    def _drop_mismatched(self, texts, results, missing, dim: Optional[int]) -> None:
        if not dim:
            return
        for i, vector in enumerate(results):
            if vector is not None and len(vector) != dim:
                logger.debug(f"Ignoring cached embedding of dimension {len(vector)}, expected {dim}")
                results[i] = None
                missing.setdefault(texts[i], []).append(i)

    def _fill(self, to_compute: List[str], missing: Dict[str, List[int]], results: List) -> None:
        vectors = self._compute_embeddings(to_compute)
        for text, vector in zip(to_compute, vectors):
            self.write(TEXT_EMBEDDING, content_key(text), vector)
            for i in missing[text]:
                results[i] = vector

    def _compute_labels(self, image: bytes) -> List[Dict[str, Any]]:
        if self.labeler is None:
            raise RuntimeError("No image labeler configured for cache misses")
        labels = self.labeler.label(image)
        return [asdict(l) if isinstance(l, LabelScore) else dict(l) for l in labels]

    def _compute_embeddings(self, texts: List[str]) -> List[List[float]]:
        if self.embedder is None:
            raise RuntimeError("No text embedder configured for cache misses")
        vectors = self.embedder.embed(texts)
        if len(vectors) != len(texts):
            raise RuntimeError(f"Embedder returned {len(vectors)} vectors for {len(texts)} texts")
        vectors = [[float(x) for x in v] for v in vectors]
        dims = {len(v) for v in vectors}
        if len(dims) > 1 or 0 in dims:
            raise RuntimeError(f"Embedder returned vectors of dimensions {sorted(dims)}")
        if vectors:
            self._embedding_dim = len(vectors[0])
        return vectors


def _most_common_length(vectors) -> Optional[int]:
    counts = Counter(len(v) for v in vectors)
    if not counts:
        return None
    return counts.most_common(1)[0][0]
