from types import SimpleNamespace

import numpy as np
import pytest

from orbmap.epipolar import compute_f12, skew_symmetric


def _rotation_z(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _rotation_x(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


K = np.array([[500.0, 0.0, 320.0], [0.0, 480.0, 240.0], [0.0, 0.0, 1.0]])


def _keyframe(rotation, translation, k=K):
    return SimpleNamespace(rotation=rotation, translation=np.asarray(translation), k=k)


def test_skew_symmetric_layout():
    expected = np.array([[0.0, -3.0, 2.0], [3.0, 0.0, -1.0], [-2.0, 1.0, 0.0]])
    np.testing.assert_array_equal(skew_symmetric([1.0, 2.0, 3.0]), expected)


def test_skew_symmetric_matches_cross_product():
    rng = np.random.default_rng(3)
    for _ in range(5):
        v, w = rng.normal(size=3), rng.normal(size=3)
        np.testing.assert_allclose(skew_symmetric(v) @ w, np.cross(v, w))


def test_skew_symmetric_is_antisymmetric_and_accepts_column():
    m = skew_symmetric(np.array([[0.5], [-1.5], [2.0]]))
    np.testing.assert_array_equal(m, -m.T)


def test_compute_f12_satisfies_epipolar_constraint():
    r1 = _rotation_z(0.1) @ _rotation_x(-0.05)
    t1 = np.array([0.2, -0.1, 0.3])
    r2 = _rotation_z(-0.15) @ _rotation_x(0.08)
    t2 = np.array([-0.4, 0.05, 0.1])
    kf1, kf2 = _keyframe(r1, t1), _keyframe(r2, t2)
    f12 = compute_f12(kf1, kf2)

    rng = np.random.default_rng(11)
    world = np.column_stack(
        [rng.uniform(-1, 1, 10), rng.uniform(-1, 1, 10), rng.uniform(4, 9, 10)]
    )
    for point in world:
        x1 = K @ (r1 @ point + t1)
        x2 = K @ (r2 @ point + t2)
        x1, x2 = x1 / x1[2], x2 / x2[2]
        assert x1 @ f12 @ x2 == pytest.approx(0.0, abs=1e-9)


def test_compute_f12_is_singular():
    kf1 = _keyframe(np.eye(3), [0.0, 0.0, 0.0])
    kf2 = _keyframe(_rotation_z(0.2), [1.0, 0.5, 0.0])
    f12 = compute_f12(kf1, kf2)
    assert np.linalg.det(f12) == pytest.approx(0.0, abs=1e-12)


def test_compute_f12_zero_for_same_pose():
    pose = _rotation_x(0.3)
    kf1 = _keyframe(pose, [0.1, 0.2, 0.3])
    kf2 = _keyframe(pose, [0.1, 0.2, 0.3])
    np.testing.assert_allclose(compute_f12(kf1, kf2), 0.0, atol=1e-15)