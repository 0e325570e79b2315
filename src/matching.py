"""
Frame-to-Step Matching and Alignment Engine

This module is responsible for:
1. Describing candidate frames with their top image labels
2. Embedding step texts and frame descriptions (through the inference cache)
3. Building the steps x candidates cosine similarity matrix
4. Monotonic dynamic-programming assignment of steps to candidates
5. Ranking the top-K candidates per step for review

The assignment respects chronological order: a later step always uses a
candidate positioned strictly after the one used by the previous step, so
no candidate is reused and no step regresses. Among all such assignments the
one maximizing total similarity minus jump penalty is returned.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

import cancel as cancellation
from cancel import CancellationToken
from inference_cache import InferenceCache
from models import (
    Assignment,
    Candidate,
    CapturedFrame,
    ScoredCandidate,
    StepText,
    validate_steps,
)
from similarity import cosine_matrix, top_k


logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


def monotonic_assignment(
    similarity,
    positions: Sequence[float],
    jump_penalty: float = 0.02
) -> Tuple[List[Optional[int]], float]:
    """
    Assign each step a candidate with strictly increasing positions.

    dp[0][j] = sim[0][j]
    dp[i][j] = max over k with pos[k] < pos[j] of
               dp[i-1][k] + sim[i][j] - jump_penalty * |pos[j] - pos[k]| / 100

    Ties keep the lowest candidate index, both for predecessors and for the
    final state. If no strictly increasing chain covers every step, the
    longest feasible prefix of steps is assigned and the rest map to None.

    Args:
        similarity: S x C matrix (steps x candidates)
        positions: Chronological position of each candidate
        jump_penalty: Cost per 100 units of position distance

    Returns:
        Tuple of (chosen candidate index or None per step, objective of the chain)
    """
    num_steps = len(similarity)
    if num_steps == 0:
        return [], 0.0

    sim = np.asarray(similarity, dtype=np.float64)
    if sim.size == 0:
        return [None] * num_steps, 0.0
    sim = sim.reshape(num_steps, -1)
    num_candidates = sim.shape[1]

    pos = np.asarray(positions, dtype=np.float64)
    if pos.shape != (num_candidates,):
        raise ValueError(f"Expected {num_candidates} positions, got {pos.shape[0] if pos.ndim else 0}")

    dp = np.full((num_steps, num_candidates), -np.inf)
    back = np.full((num_steps, num_candidates), -1, dtype=np.int64)
    dp[0] = sim[0]

    for i in range(1, num_steps):
        prev = dp[i - 1]
        for j in range(num_candidates):
            valid = pos < pos[j]
            if not valid.any():
                continue
            cand = prev + sim[i, j] - jump_penalty * np.abs(pos[j] - pos) / 100.0
            cand[~valid] = -np.inf
            k = int(np.argmax(cand))
            if np.isfinite(cand[k]):
                dp[i, j] = cand[k]
                back[i, j] = k

    # Deepest step that still has a feasible chain
    last = num_steps - 1
    while last >= 0 and not np.isfinite(dp[last]).any():
        last -= 1

    chosen: List[Optional[int]] = [None] * num_steps
    if last < 0:
        return chosen, 0.0

    if last < num_steps - 1:
        logger.warning(
            f"Only {last + 1} of {num_steps} steps can be matched in order; "
            f"steps {last + 1}..{num_steps - 1} get no frame"
        )

    best_end = int(np.argmax(dp[last]))
    total = float(dp[last, best_end])

    cur = best_end
    for i in range(last, -1, -1):
        chosen[i] = cur
        cur = int(back[i, cur])

    return chosen, total


def rank_candidates(similarity, k: int = 3) -> List[List[ScoredCandidate]]:
    """Top-K candidates per step by raw similarity, ignoring order constraints."""
    ranked = []
    for row in similarity:
        row = np.asarray(row, dtype=np.float64)
        ranked.append([ScoredCandidate(candidate_index=j, score=float(row[j])) for j in top_k(row, k)])
    return ranked


def align_matrix(
    similarity,
    positions: Sequence[float],
    jump_penalty: float = 0.02,
    k: int = 3
) -> Assignment:
    """Run the monotonic assignment and the top-K ranking on a precomputed matrix."""
    chosen, total = monotonic_assignment(similarity, positions, jump_penalty)
    scores = tuple(
        float(similarity[i][c]) if c is not None else None
        for i, c in enumerate(chosen)
    )
    top = tuple(tuple(r) for r in rank_candidates(similarity, k))
    return Assignment(chosen=tuple(chosen), scores=scores, top_candidates=top, total_score=total)


def build_candidates(frame_groups: Sequence[Sequence[CapturedFrame]]) -> List[Candidate]:
    """
    Flatten grouped frames into candidates.

    Group i holds the frames sampled for step hint i (e.g. several frames
    near a hinted timestamp); the order inside a group is preserved.
    """
    candidates = []
    for hint, group in enumerate(frame_groups):
        for local, frame in enumerate(group):
            candidates.append(Candidate(step_index_hint=hint, local_index=local, frame=frame))
    return candidates


def candidates_from_frames(frames: Sequence[CapturedFrame]) -> List[Candidate]:
    """One candidate per frame, positioned by capture order."""
    return build_candidates([[f] for f in frames])


@dataclass
class AlignmentResult:
    """Assignment plus the data it was computed from"""
    steps: List[StepText]
    candidates: List[Candidate]
    assignment: Assignment
    descriptions: List[Optional[str]] = field(default_factory=list)
    similarity: Optional[np.ndarray] = None

    def chosen_frame(self, step_index: int) -> Optional[CapturedFrame]:
        idx = self.assignment.chosen[step_index]
        return self.candidates[idx].frame if idx is not None else None

    def to_dict(self) -> Dict:
        """JSON-serializable summary (images are left out)."""
        result = []
        for step in self.steps:
            idx = self.assignment.chosen[step.index]
            entry = {
                'step_index': step.index,
                'text': step.text,
                'chosen': None,
                'top': [
                    self._candidate_info(sc.candidate_index, sc.score)
                    for sc in self.assignment.top_candidates[step.index]
                ],
            }
            if idx is not None:
                entry['chosen'] = self._candidate_info(idx, self.assignment.scores[step.index])
            result.append(entry)

        return {
            'total_steps': len(self.steps),
            'total_candidates': len(self.candidates),
            'total_score': self.assignment.total_score,
            'result': result,
        }

    def _candidate_info(self, idx: int, score: Optional[float]) -> Dict:
        cand = self.candidates[idx]
        return {
            'candidate_index': idx,
            'score': score,
            'timestamp_seconds': cand.frame.timestamp_seconds,
            'step_index_hint': cand.step_index_hint,
            'local_candidate_index': cand.local_index,
            'description': self.descriptions[idx] if idx < len(self.descriptions) else None,
        }


class FrameStepAligner:
    """
    Matches procedure steps to candidate frames.

    Frames are described by their top image labels, descriptions and step
    texts are embedded with the same text model, and the resulting cosine
    matrix is assigned with the monotonic DP. All inference goes through the
    content-addressed cache.
    """

    def __init__(
        self,
        cache: InferenceCache,
        jump_penalty: float = 0.02,
        top_k: int = 3,
        label_count: int = 5
    ):
        """
        Initialize the FrameStepAligner.

        Args:
            cache: Cache wrapping the labeling and embedding services
            jump_penalty: Cost per 100 units of candidate position distance
            top_k: Number of ranked alternatives reported per step
            label_count: Number of top labels joined into a frame description
        """
        self.cache = cache
        self.jump_penalty = jump_penalty
        self.top_k = top_k
        self.label_count = label_count

    def describe(self, candidate: Candidate) -> str:
        """Short text description of a frame from its top labels."""
        labels = self.cache.get_image_labels(candidate.frame.image)
        return ', '.join(l.label for l in labels[:self.label_count])

    def describe_all(
        self,
        candidates: Sequence[Candidate],
        cancel: Optional[CancellationToken] = None
    ) -> List[Optional[str]]:
        descriptions: List[Optional[str]] = []
        for k, candidate in enumerate(candidates):
            cancellation.check(cancel)
            if candidate.frame.label:
                descriptions.append(candidate.frame.label)
                continue
            try:
                desc = self.describe(candidate)
            except Exception as e:
                logger.warning(f"Labeling failed for candidate {k}, excluding it: {e}")
                descriptions.append(None)
                continue
            logger.debug(f"Image {k}: {desc}")
            descriptions.append(desc)
        return descriptions

    def _embed(self, texts: List[str], what: str) -> Optional[List[List[float]]]:
        if not texts:
            return []
        try:
            return self.cache.get_text_embeddings(texts)
        except Exception as e:
            logger.error(f"Embedding {what} failed: {e}")
            return None

    def similarity_matrix(
        self,
        steps: Sequence[StepText],
        candidates: Sequence[Candidate],
        descriptions: Optional[Sequence[Optional[str]]] = None,
        cancel: Optional[CancellationToken] = None
    ) -> np.ndarray:
        """
        Compute the steps x candidates cosine similarity matrix.

        Cells for steps or candidates whose labels or embeddings could not be
        obtained are -inf.
        """
        num_steps, num_candidates = len(steps), len(candidates)
        logger.info(f"Computing similarity matrix: {num_steps} steps x {num_candidates} candidates")

        matrix = np.full((num_steps, num_candidates), -np.inf)
        if num_steps == 0 or num_candidates == 0:
            return matrix

        if descriptions is None:
            descriptions = self.describe_all(candidates, cancel)

        cancellation.check(cancel)
        step_vectors = self._embed([s.text for s in steps], "step texts")
        if step_vectors is None:
            return matrix

        usable = [j for j, d in enumerate(descriptions) if d]
        cancellation.check(cancel)
        desc_vectors = self._embed([descriptions[j] for j in usable], "frame descriptions")
        if desc_vectors is None or not usable:
            return matrix

        try:
            matrix[:, usable] = cosine_matrix(step_vectors, desc_vectors)
        except ValueError as e:
            logger.error(f"Step and description embeddings are incompatible: {e}")
        return matrix

    def align(
        self,
        steps: Sequence[StepText],
        candidates: Sequence[Candidate],
        cancel: Optional[CancellationToken] = None
    ) -> AlignmentResult:
        """
        Align ordered steps to candidate frames.

        Args:
            steps: Ordered steps with dense indices 0..N-1
            candidates: Candidate frames with chronological positions
            cancel: Optional cancellation token

        Returns:
            AlignmentResult with the assignment and top-K alternatives
        """
        steps = list(steps)
        candidates = list(candidates)
        if steps:
            validate_steps(steps)

        logger.info("=" * 60)
        logger.info("MONOTONIC DP ALIGNMENT")
        logger.info("=" * 60)

        descriptions = self.describe_all(candidates, cancel) if steps else [None] * len(candidates)
        matrix = self.similarity_matrix(steps, candidates, descriptions, cancel)

        # Excluded candidates never enter the DP
        usable = [j for j in range(len(candidates)) if np.isfinite(matrix[:, j]).all()] if steps else []
        if len(usable) < len(candidates):
            logger.info(f"{len(candidates) - len(usable)} candidates excluded from the assignment")

        sub = matrix[:, usable]
        positions = [candidates[j].position for j in usable]
        chosen_sub, total = monotonic_assignment(sub, positions, self.jump_penalty)

        chosen = tuple(usable[c] if c is not None else None for c in chosen_sub)
        scores = tuple(float(matrix[i, c]) if c is not None else None for i, c in enumerate(chosen))
        top = tuple(tuple(r) for r in rank_candidates(matrix, self.top_k))

        assignment = Assignment(chosen=chosen, scores=scores, top_candidates=top, total_score=total)
        logger.info(f"Optimal assignment total score: {total:.4f}")
        for step in steps:
            logger.info(f"  Step {step.index}: candidate {chosen[step.index]}")

        return AlignmentResult(
            steps=steps,
            candidates=candidates,
            assignment=assignment,
            descriptions=list(descriptions),
            similarity=matrix
        )
