"""Keyframes: frames kept in the map, linked by covisibility and a spanning tree."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np


class KeyFrame:
    """A frame kept in the map, linked to others by covisibility and a spanning tree.

    The frame it is built from must provide ``id``, ``timestamp``,
    ``grid_element_width_inv``, ``grid_element_height_inv``, ``fx``, ``fy``,
    ``cx``, ``cy``, ``invfx``, ``invfy``, ``bf``, ``b``, ``th_depth``,
    ``keys``, ``keys_un`` (items with ``pt`` as ``(x, y)`` and ``octave``),
    ``u_right``, ``depth``, ``descriptors``, ``bow_vec``, ``feat_vec``,
    ``scale_levels``, ``scale_factor``, ``log_scale_factor``,
    ``scale_factors``, ``level_sigma2``, ``inv_level_sigma2``, ``min_x``,
    ``min_y``, ``max_x``, ``max_y``, ``k``, ``map_points``, ``vocabulary``,
    ``grid`` (columns of rows of keypoint indices) and ``tcw``.
    """

    _ids = itertools.count()

    def __init__(self, frame, slam_map, database=None) -> None:
        self.frame_id = frame.id
        self.timestamp = frame.timestamp
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv

        # Bookkeeping used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None

        self.fx, self.fy, self.cx, self.cy = frame.fx, frame.fy, frame.cx, frame.cy
        self.invfx, self.invfy = frame.invfx, frame.invfy
        self.bf, self.b = frame.bf, frame.b
        self.th_depth = frame.th_depth

        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.n = len(self.keys_un)
        self.u_right = list(frame.u_right)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, copy=True)
        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = dict(frame.feat_vec)

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x, self.min_y = frame.min_x, frame.min_y
        self.max_x, self.max_y = frame.max_x, frame.max_y
        self.k = np.array(frame.k, dtype=float)
        self.vocabulary = frame.vocabulary

        self.grid = [[list(cell) for cell in column] for column in frame.grid]
        self.grid_cols = len(self.grid)
        self.grid_rows = len(self.grid[0]) if self.grid else 0

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self._map_points: list[Any] = list(frame.map_points)
        self._connected_weights: dict[KeyFrame, int] = {}
        self._ordered_connected: list[KeyFrame] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: set[KeyFrame] = set()
        self._loop_edges: set[KeyFrame] = set()
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False
        self._tcp: np.ndarray | None = None
        self.half_baseline = frame.b / 2

        self._map = slam_map
        self._database = database

        self.id = next(KeyFrame._ids)
        self.set_pose(frame.tcw)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id}, frame_id={self.frame_id})"

    # Bag of words

    def compute_bow(self) -> None:
        """Fill the bag-of-words vectors from the descriptors if they are missing."""
        if not self.bow_vec or not self.feat_vec:
            descriptors = [row for row in self.descriptors]
            # Feature vector links features with nodes 4 levels up from the leaves.
            bow_vec, feat_vec = self.vocabulary.transform(descriptors, 4)
            self.bow_vec = dict(bow_vec)
            self.feat_vec = dict(feat_vec)

    # Pose

    def set_pose(self, tcw) -> None:
        with self._pose_lock:
            self._tcw = np.array(tcw, dtype=float).reshape(4, 4)
            rcw = self._tcw[:3, :3]
            tvec = self._tcw[:3, 3]
            rwc = rcw.T
            self._ow = -rwc @ tvec
            self._twc = np.eye(4)
            self._twc[:3, :3] = rwc
            self._twc[:3, 3] = self._ow
            center = np.array([self.half_baseline, 0.0, 0.0, 1.0])
            self._cw = self._twc @ center

    @property
    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    @property
    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    @property
    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    @property
    def stereo_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._cw.copy()

    @property
    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    @property
    def relative_pose(self) -> np.ndarray | None:
        """Pose relative to the parent, set when this keyframe is discarded."""
        return None if self._tcp is None else self._tcp.copy()

    # Covisibility graph

    def add_connection(self, keyframe: KeyFrame, weight: int) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    @staticmethod
    def _ordered(pairs: list[tuple[int, KeyFrame]]) -> tuple[list[KeyFrame], list[int]]:
        pairs = sorted(pairs, key=lambda p: (p[0], p[1].id), reverse=True)
        return [kf for _, kf in pairs], [w for w, _ in pairs]

    def update_best_covisibles(self) -> None:
        with self._connections_lock:
            pairs = [(w, kf) for kf, w in self._connected_weights.items()]
            self._ordered_connected, self._ordered_weights = self._ordered(pairs)

    def connected_keyframes(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list[KeyFrame]:
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n: int) -> list[KeyFrame]:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, weight: int) -> list[KeyFrame]:
        """Keyframes with at least ``weight``; empty when every weight qualifies."""
        with self._connections_lock:
            if not self._ordered_connected:
                return []
            count = next(
                (i for i, w in enumerate(self._ordered_weights) if weight > w),
                len(self._ordered_weights),
            )
            if count == len(self._ordered_weights):
                return []
            return list(self._ordered_connected[:count])

    def weight(self, keyframe: KeyFrame) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Map point associations

    def add_map_point(self, map_point, idx: int) -> None:
        with self._features_lock:
            self._map_points[idx] = map_point

    def erase_map_point_match(self, target) -> None:
        """Drop a match, given either its keypoint index or the map point itself."""
        if isinstance(target, (int, np.integer)):
            with self._features_lock:
                self._map_points[int(target)] = None
            return
        idx = target.index_in_keyframe(self)
        if idx >= 0:
            with self._features_lock:
                self._map_points[idx] = None

    def replace_map_point_match(self, idx: int, map_point) -> None:
        self._map_points[idx] = map_point

    def map_points(self) -> set[Any]:
        with self._features_lock:
            return {mp for mp in self._map_points if mp is not None and not mp.is_bad}

    def tracked_map_points(self, min_obs: int) -> int:
        with self._features_lock:
            good = [mp for mp in self._map_points if mp is not None and not mp.is_bad]
            if min_obs > 0:
                return sum(1 for mp in good if mp.num_observations >= min_obs)
            return len(good)

    def map_point_matches(self) -> list[Any]:
        with self._features_lock:
            return list(self._map_points)

    def update_connections(self) -> None:
        """Rebuild covisibility links from the map points shared with other keyframes."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for mp in points:
            if mp is None or mp.is_bad:
                continue
            for keyframe in mp.observations:
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        threshold = 15
        n_max = 0
        kf_max: KeyFrame | None = None
        pairs: list[tuple[int, KeyFrame]] = []
        for keyframe, count in counter.items():
            if count > n_max:
                n_max, kf_max = count, keyframe
            if count >= threshold:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)

        if not pairs:
            pairs.append((n_max, kf_max))
            kf_max.add_connection(self, n_max)

        ordered, weights = self._ordered(pairs)

        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree

    def add_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children.add(keyframe)

    def erase_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children.discard(keyframe)

    def change_parent(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    @property
    def children(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._children)

    @property
    def parent(self) -> KeyFrame | None:
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe: KeyFrame) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    # Loop edges and erasure

    def add_loop_edge(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges.add(keyframe)

    @property
    def loop_edges(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._loop_edges)

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove this keyframe from the graph and the map, re-parenting its children."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return

        for keyframe in list(self._connected_weights):
            keyframe.erase_connection(self)

        for mp in list(self._map_points):
            if mp is not None:
                mp.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights = {}
            self._ordered_connected = []
            self._ordered_weights = []

            candidates = {self._parent}
            # Each round links the child with the strongest tie to a parent candidate.
            while self._children:
                best_weight = -1
                best: tuple[KeyFrame, KeyFrame] | None = None
                for child in list(self._children):
                    if child.is_bad:
                        continue
                    for connected in child.covisible_keyframes():
                        if connected in candidates:
                            w = child.weight(connected)
                            if w > best_weight:
                                best_weight = w
                                best = (child, connected)
                if best is None:
                    break
                child, new_parent = best
                child.change_parent(new_parent)
                candidates.add(child)
                self._children.discard(child)

            for child in list(self._children):
                child.change_parent(self._parent)

            self._parent.erase_child(self)
            self._tcp = self.pose @ self._parent.pose_inverse
            self._bad = True

        if self._map is not None:
            self._map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    @property
    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            update = self._connected_weights.pop(keyframe, None) is not None
        if update:
            self.update_best_covisibles()

    # Geometry queries

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted keypoints inside the square of half-side ``r``."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(
            self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv)
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(
            self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv)
        )
        if max_cell_y < 0:
            return []

        indices = []
        for column in self.grid[min_cell_x : max_cell_x + 1]:
            for cell in column[min_cell_y : max_cell_y + 1]:
                for idx in cell:
                    px, py = self.keys_un[idx].pt
                    if abs(px - x) < r and abs(py - y) < r:
                        indices.append(idx)
        return indices

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i: int) -> np.ndarray | None:
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        u, v = self.keys[i].pt
        point = np.array([(u - self.cx) * z * self.invfx, (v - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ point + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """The depth at position (count - 1) // q among the sorted map point depths."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row, z_offset = tcw[2, :3], tcw[2, 3]
        depths = sorted(
            float(row @ mp.world_pos + z_offset) for mp in points if mp is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]