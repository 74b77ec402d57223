"""Inverted-file database of keyframes for loop and relocalization queries."""

from __future__ import annotations

import dataclasses
import threading
from collections import defaultdict
from typing import Any, Iterable


@dataclasses.dataclass
class LoopClosureConfig:
    """Tuning of loop detection and loop verification."""

    use_vector_scores: bool = False
    vector_filepath: str = ""
    min_vector_score: float = 0.0
    covisibility_consistency_th: int = 3
    num_initial_match_points: int = 20
    num_ransac_inliers: int = 20
    num_optimization_inliers: int = 20
    proj_treshold: int = 10
    num_projected_match_points: int = 40


@dataclasses.dataclass
class ScoredKeyFrame:
    """A keyframe together with the similarity score that selected it."""

    score: float
    keyframe: Any


class KeyFrameDatabase:
    """Keyframes indexed by the visual words they contain.

    ``vocabulary`` must provide ``score(bow_a, bow_b)``. Keyframes provide
    ``id``, ``frame_id``, ``bow_vec`` (word id to weight), the loop and
    relocalization bookkeeping attributes, ``is_bad``,
    ``connected_keyframes()``, ``covisible_keyframes()`` and
    ``best_covisibility_keyframes(n)``. When vector scores are enabled,
    ``vector_db`` provides ``load(path)``, ``vector(frame_id)``,
    ``add_keyframe_vector(keyframe_id, vector)`` and ``inner_product(a, b)``.
    """

    def __init__(self, vocabulary, config=None, vector_db=None, logger=None) -> None:
        self._vocabulary = vocabulary
        self.config = config if config is not None else LoopClosureConfig()
        self._vector_db = vector_db
        self._logger = logger
        self._lock = threading.RLock()
        self._inverted_file: defaultdict[Any, list[Any]] = defaultdict(list)

        if self.config.use_vector_scores:
            if vector_db is None:
                raise ValueError("vector scores are enabled but no vector database was given")
            if self.config.vector_filepath:
                vector_db.load(self.config.vector_filepath)

    # Maintenance

    def add(self, keyframe) -> None:
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                self._inverted_file[word].append(keyframe)
            if self.config.use_vector_scores:
                self._vector_db.add_keyframe_vector(
                    keyframe.id, self._vector_db.vector(keyframe.frame_id)
                )

    def erase(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted_file.get(word)
                if not entries:
                    continue
                for i, entry in enumerate(entries):
                    if entry is keyframe:
                        del entries[i]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted_file.clear()

    # Helpers

    def _log(self, method: str, *args) -> None:
        if self._logger is not None:
            getattr(self._logger, method)(*args)

    def _set_metric(self, name: str, value) -> None:
        if self._logger is not None:
            setattr(self._logger.current, name, value)

    @staticmethod
    def _retain_best(scored: Iterable[ScoredKeyFrame], best_acc_score: float) -> list[Any]:
        threshold = 0.75 * best_acc_score
        result: list[Any] = []
        seen: set[int] = set()
        for item in scored:
            if item.score > threshold and id(item.keyframe) not in seen:
                result.append(item.keyframe)
                seen.add(id(item.keyframe))
        return result

    # Loop detection

    def detect_loop_candidates(self, keyframe, min_score: float) -> list[Any]:
        """Loop candidates scored by bag-of-words similarity and covisibility."""
        connected = keyframe.connected_keyframes()
        candidates = self.query_candidates(keyframe, connected, min_score)
        if not candidates:
            return []

        max_common = max(kf.loop_words for kf in candidates)
        min_common = int(max_common * 0.8)

        scored = []
        for kf in candidates:
            if kf.loop_words > min_common:
                si = self._vocabulary.score(keyframe.bow_vec, kf.bow_vec)
                kf.loop_score = si
                if si >= min_score:
                    scored.append(ScoredKeyFrame(si, kf))
        if not scored:
            return []
        return self.accumulated_filter_loop_candidates(keyframe, scored, min_score, min_common)

    def score(self, kf1, kf2) -> float:
        """Similarity of two keyframes."""
        if self.config.use_vector_scores:
            db = self._vector_db
            return float(db.inner_product(db.vector(kf1.frame_id), db.vector(kf2.frame_id)))
        return float(self._vocabulary.score(kf1.bow_vec, kf2.bow_vec))

    def min_score(self, keyframe) -> float:
        """Lowest similarity to a good covisible keyframe, at least the configured floor."""
        lowest = 1.0
        for kf in keyframe.covisible_keyframes():
            if kf.is_bad:
                continue
            lowest = min(lowest, self.score(keyframe, kf))
        return max(lowest, self.config.min_vector_score)

    def custom_detect_loop_candidates(self, keyframe, min_score: float) -> list[Any]:
        """Loop detection in stages, each stage reported to the logger."""
        connected = keyframe.connected_keyframes()
        self._log("connected_frames", connected)

        candidates = self.query_candidates(keyframe, connected, min_score)
        self._set_metric("num_initial_candidates", len(candidates))
        self._log("initial_candidates", candidates)

        max_common = 0
        for kf in candidates:
            kf.loop_query = keyframe.id
            max_common = max(max_common, kf.loop_words)
        min_common = int(max_common * 0.8)

        scored = self.filter_loop_candidates(keyframe, candidates, min_score, min_common)
        self._log("filtered_candidates", scored)
        self._set_metric("num_filtered_candidates", len(scored))

        accumulated = self.accumulated_filter_loop_candidates(
            keyframe, scored, min_score, min_common
        )
        self._log("acc_filtered_candidates", accumulated)
        self._set_metric("num_acc_filtered_candidates", len(accumulated))
        return accumulated

    def query_candidates(self, keyframe, connected, min_score: float) -> list[Any]:
        """Keyframes sharing a word with ``keyframe``, not among ``connected``.

        Counts the shared words of each keyframe in ``loop_words``.
        """
        found: list[Any] = []
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                for kf in self._inverted_file.get(word, ()):
                    if kf.loop_query != keyframe.id:
                        kf.loop_words = 0
                        if kf not in connected:
                            kf.loop_query = keyframe.id
                            found.append(kf)
                    kf.loop_words += 1
        return found

    def filter_loop_candidates(
        self, keyframe, candidates, min_score: float, min_common_words: float
    ) -> list[ScoredKeyFrame]:
        """Candidates with enough shared words and a score of at least ``min_score``."""
        scored = []
        for kf in candidates:
            if kf.loop_words > min_common_words:
                si = self.score(keyframe, kf)
                kf.loop_score = si
                if si >= min_score:
                    scored.append(ScoredKeyFrame(si, kf))
        return scored

    def accumulated_filter_loop_candidates(
        self, keyframe, candidates, min_score: float, min_common_words: float
    ) -> list[Any]:
        """Accumulate scores over covisible groups; keep those above 75% of the best."""
        accumulated = []
        best_acc = min_score
        for item in candidates:
            best_score = item.score
            acc_score = item.score
            best_kf = item.keyframe
            for neighbour in item.keyframe.best_covisibility_keyframes(10):
                if (
                    neighbour.loop_query == keyframe.id
                    and neighbour.loop_words > min_common_words
                ):
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf = neighbour
                        best_score = neighbour.loop_score
            accumulated.append(ScoredKeyFrame(acc_score, best_kf))
            best_acc = max(best_acc, acc_score)
        return self._retain_best(accumulated, best_acc)

    # Relocalization

    def detect_relocalization_candidates(self, frame) -> list[Any]:
        """Keyframes similar to ``frame`` (with ``id`` and ``bow_vec``)."""
        found: list[Any] = []
        with self._lock:
            for word in sorted(frame.bow_vec):
                for kf in self._inverted_file.get(word, ()):
                    if kf.reloc_query != frame.id:
                        kf.reloc_words = 0
                        kf.reloc_query = frame.id
                        found.append(kf)
                    kf.reloc_words += 1
        if not found:
            return []

        max_common = max(kf.reloc_words for kf in found)
        min_common = int(max_common * 0.8)

        scored = []
        for kf in found:
            if kf.reloc_words > min_common:
                si = self._vocabulary.score(frame.bow_vec, kf.bow_vec)
                kf.reloc_score = si
                scored.append(ScoredKeyFrame(si, kf))
        if not scored:
            return []

        accumulated = []
        best_acc = 0.0
        for item in scored:
            best_score = item.score
            acc_score = item.score
            best_kf = item.keyframe
            for neighbour in item.keyframe.best_covisibility_keyframes(10):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append(ScoredKeyFrame(acc_score, best_kf))
            best_acc = max(best_acc, acc_score)
        return self._retain_best(accumulated, best_acc)