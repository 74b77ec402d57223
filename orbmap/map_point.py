"""Map points: 3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np


def hamming_distance(a, b) -> int:
    """Number of differing bits between two binary descriptors."""
    xor = np.bitwise_xor(np.asarray(a, dtype=np.uint8), np.asarray(b, dtype=np.uint8))
    return int(np.unpackbits(xor).sum())


def _as_vector(position) -> np.ndarray:
    return np.array(position, dtype=float).reshape(3)


class MapPoint:
    """A 3D point with its observations, descriptor and scale range.

    Keyframes are expected to expose ``id``, ``frame_id``, ``u_right``,
    ``descriptors``, ``keys_un`` (items with ``octave``), ``scale_factors``,
    ``scale_levels``, ``camera_center``, ``is_bad``,
    ``erase_map_point_match(idx)`` and ``replace_map_point_match(idx, point)``.
    """

    global_lock = threading.Lock()
    _ids = itertools.count()

    def __init__(self, position, reference_keyframe, slam_map) -> None:
        self.first_kf_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

        self._lock = threading.RLock()
        self._world_pos = _as_vector(position)
        self._normal = np.zeros(3)
        self._descriptor: np.ndarray | None = None
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._ref_kf = reference_keyframe
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._map = slam_map

        with slam_map.mutex_point_creation:
            self.id = next(MapPoint._ids)

    # Position and geometry

    def set_world_pos(self, position) -> None:
        with MapPoint.global_lock, self._lock:
            self._world_pos = _as_vector(position)

    @property
    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    @property
    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    @property
    def reference_keyframe(self):
        with self._lock:
            return self._ref_kf

    @property
    def descriptor(self) -> np.ndarray | None:
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    # Observations

    def add_observation(self, keyframe, idx: int) -> None:
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = idx
            self._n_obs += 2 if keyframe.u_right[idx] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        bad = False
        with self._lock:
            if keyframe in self._observations:
                idx = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[idx] >= 0 else 1
                if self._ref_kf is keyframe:
                    self._ref_kf = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    @property
    def observations(self) -> dict[Any, int]:
        with self._lock:
            return dict(self._observations)

    @property
    def num_observations(self) -> int:
        with self._lock:
            return self._n_obs

    def index_in_keyframe(self, keyframe) -> int:
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._lock:
            return keyframe in self._observations

    # Lifetime

    def set_bad_flag(self) -> None:
        with self._lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, idx in observations.items():
            keyframe.erase_map_point_match(idx)
        self._map.erase_map_point(self)

    @property
    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    @property
    def replaced(self) -> MapPoint | None:
        with self._lock:
            return self._replaced

    def replace(self, other: MapPoint) -> None:
        """Hand every observation over to ``other`` and retire this point."""
        if other.id == self.id:
            return
        with self._lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible, found = self._visible, self._found
            self._replaced = other

        for keyframe, idx in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(idx, other)
                other.add_observation(keyframe, idx)
            else:
                keyframe.erase_map_point_match(idx)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    # Tracking statistics

    def increase_visible(self, n: int = 1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._lock:
            self._found += n

    @property
    def visible(self) -> int:
        with self._lock:
            return self._visible

    @property
    def found(self) -> int:
        with self._lock:
            return self._found

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    # Descriptor, normal and scale

    def compute_distinctive_descriptors(self) -> None:
        """Pick the observed descriptor with the least median distance to the others."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(keyframe.descriptors[idx], dtype=np.uint8)
            for keyframe, idx in observations.items()
            if not keyframe.is_bad
        ]
        if not descriptors:
            return

        middle = (len(descriptors) - 1) // 2
        medians = [
            sorted(hamming_distance(a, b) for b in descriptors)[middle]
            for a in descriptors
        ]
        best = medians.index(min(medians))

        with self._lock:
            self._descriptor = descriptors[best].copy()

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref_kf = self._ref_kf
            pos = self._world_pos.copy()
        if not observations or ref_kf is None:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = pos - np.asarray(keyframe.camera_center, dtype=float).reshape(3)
            normal += direction / np.linalg.norm(direction)

        dist = float(np.linalg.norm(pos - np.asarray(ref_kf.camera_center, dtype=float).reshape(3)))
        level = ref_kf.keys_un[observations.get(ref_kf, 0)].octave
        level_scale = ref_kf.scale_factors[level]
        top_scale = ref_kf.scale_factors[ref_kf.scale_levels - 1]

        with self._lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / top_scale
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame) -> int:
        """Pyramid level at which this point should appear at ``current_dist``."""
        with self._lock:
            ratio = self._max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.scale_levels - 1))