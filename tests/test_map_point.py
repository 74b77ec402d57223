import math
from types import SimpleNamespace

import numpy as np
import pytest

from orbmap.map_point import MapPoint, hamming_distance
from orbmap.slam_map import Map

SCALE = 1.2
LEVELS = 8


class FakeKeyFrame:
    def __init__(self, ident, n=4, stereo=False, center=(0.0, 0.0, 0.0), descriptors=None):
        self.id = ident
        self.frame_id = ident * 10
        self.u_right = [5.0 if stereo else -1.0] * n
        self.descriptors = (
            descriptors if descriptors is not None else np.zeros((n, 32), dtype=np.uint8)
        )
        self.keys_un = [SimpleNamespace(octave=0) for _ in range(n)]
        self.scale_factors = [SCALE**i for i in range(LEVELS)]
        self.scale_levels = LEVELS
        self.log_scale_factor = math.log(SCALE)
        self.camera_center = np.array(center)
        self.is_bad = False
        self.matches = [None] * n

    def erase_map_point_match(self, idx):
        self.matches[idx] = None

    def replace_map_point_match(self, idx, point):
        self.matches[idx] = point


@pytest.fixture
def slam_map():
    return Map()


def make_point(slam_map, kf=None, pos=(0.0, 0.0, 10.0)):
    kf = kf or FakeKeyFrame(1)
    point = MapPoint(pos, kf, slam_map)
    slam_map.add_map_point(point)
    return point


def test_hamming_distance_identical_and_opposite():
    a = np.zeros(32, dtype=np.uint8)
    b = np.full(32, 0xFF, dtype=np.uint8)
    assert hamming_distance(a, a) == 0
    assert hamming_distance(a, b) == 256
    assert hamming_distance(a, b) == hamming_distance(b, a)


def test_ids_increase(slam_map):
    p1 = make_point(slam_map)
    p2 = make_point(slam_map)
    assert p2.id > p1.id


def test_world_pos_round_trip_and_copy(slam_map):
    point = make_point(slam_map)
    point.set_world_pos([1.0, 2.0, 3.0])
    pos = point.world_pos
    pos[0] = 99.0
    assert point.world_pos.tolist() == [1.0, 2.0, 3.0]


def test_add_observation_counts_stereo_twice(slam_map):
    point = make_point(slam_map)
    mono, stereo = FakeKeyFrame(2), FakeKeyFrame(3, stereo=True)
    point.add_observation(mono, 1)
    point.add_observation(stereo, 2)
    point.add_observation(mono, 3)
    assert point.num_observations == 3
    assert point.index_in_keyframe(mono) == 1
    assert point.index_in_keyframe(FakeKeyFrame(4)) == -1
    assert point.is_in_keyframe(stereo)


def test_erase_observation_below_three_sets_bad(slam_map):
    kf1, kf2, kf3 = FakeKeyFrame(1), FakeKeyFrame(2), FakeKeyFrame(3)
    point = make_point(slam_map, kf1)
    for kf in (kf1, kf2, kf3):
        point.add_observation(kf, 0)
        kf.matches[0] = point
    point.erase_observation(kf3)
    assert point.is_bad
    assert point not in slam_map.all_map_points()
    assert kf1.matches[0] is None and kf2.matches[0] is None


def test_erase_reference_keyframe_moves_reference(slam_map):
    kfs = [FakeKeyFrame(i) for i in range(1, 6)]
    point = make_point(slam_map, kfs[0])
    for kf in kfs:
        point.add_observation(kf, 0)
    point.erase_observation(kfs[0])
    assert not point.is_bad
    assert point.reference_keyframe is kfs[1]


def test_replace_hands_over_observations(slam_map):
    kf_a, kf_b, kf_shared = FakeKeyFrame(1), FakeKeyFrame(2), FakeKeyFrame(3)
    old = make_point(slam_map, kf_a)
    new = make_point(slam_map, kf_b)
    old.add_observation(kf_a, 1)
    old.add_observation(kf_shared, 2)
    new.add_observation(kf_shared, 0)
    old.increase_visible(3)
    old.increase_found(2)
    visible_before = new.visible + old.visible
    found_before = new.found + old.found

    old.replace(new)

    assert old.is_bad
    assert old.replaced is new
    assert kf_a.matches[1] is new
    assert new.index_in_keyframe(kf_a) == 1
    assert new.index_in_keyframe(kf_shared) == 0
    assert new.visible == visible_before
    assert new.found == found_before
    assert old not in slam_map.all_map_points()


def test_replace_with_itself_is_noop(slam_map):
    point = make_point(slam_map)
    point.replace(point)
    assert not point.is_bad


def test_found_ratio_matches_counts(slam_map):
    point = make_point(slam_map)
    assert point.found_ratio() == 1.0
    point.increase_visible(3)
    point.increase_found(1)
    assert point.found_ratio() == point.found / point.visible


def test_distinctive_descriptor_is_medoid(slam_map):
    rows = np.zeros((3, 32), dtype=np.uint8)
    rows[2] = 0xFF
    kfs = [FakeKeyFrame(i, descriptors=rows) for i in range(1, 4)]
    point = make_point(slam_map, kfs[0])
    for i, kf in enumerate(kfs):
        point.add_observation(kf, i)
    point.compute_distinctive_descriptors()
    assert point.descriptor.tolist() == rows[0].tolist()


def test_normal_and_distances(slam_map):
    kf = FakeKeyFrame(1)
    point = make_point(slam_map, kf, pos=(0.0, 0.0, 10.0))
    point.add_observation(kf, 0)
    point.update_normal_and_depth()
    assert np.allclose(point.normal, [0.0, 0.0, 1.0])
    max_d = point.max_distance_invariance() / 1.2
    min_d = point.min_distance_invariance() / 0.8
    assert max_d == pytest.approx(10.0)
    assert min_d == pytest.approx(max_d / kf.scale_factors[-1])


def test_predict_scale_bounds(slam_map):
    kf = FakeKeyFrame(1)
    point = make_point(slam_map, kf, pos=(0.0, 0.0, 10.0))
    point.add_observation(kf, 0)
    point.update_normal_and_depth()
    assert point.predict_scale(10.0, kf) == 0
    assert point.predict_scale(20.0, kf) == 0
    assert point.predict_scale(1e-6, kf) == LEVELS - 1
    assert point.predict_scale(10.0 / SCALE**2 * 0.99, kf) == 3