import math
from types import SimpleNamespace

import numpy as np
import pytest

from orbmap.triangulation import check_rt, triangulate

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


def _rot_y(deg):
    a = math.radians(deg)
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def _project(points_cam):
    uv = (K @ points_cam.T).T
    return uv[:, :2] / uv[:, 2:3]


def _scene(n=80, seed=3, depth=(4.0, 10.0)):
    rng = np.random.default_rng(seed)
    pts = np.column_stack(
        [rng.uniform(-2, 2, n), rng.uniform(-1.5, 1.5, n), rng.uniform(*depth, n)]
    )
    r = _rot_y(5.0)
    t = -r @ np.array([1.0, 0.0, 0.0])
    keys1 = _project(pts)
    keys2 = _project(pts @ r.T + t)
    return pts, r, t, keys1, keys2


def _cameras(r, t):
    p1 = np.zeros((3, 4))
    p1[:, :3] = K
    p2 = K @ np.column_stack([r, t])
    return p1, p2


def test_triangulate_recovers_point():
    pts, r, t, keys1, keys2 = _scene()
    p1, p2 = _cameras(r, t)
    for i in range(5):
        x = triangulate(tuple(keys1[i]), tuple(keys2[i]), p1, p2)
        assert np.allclose(x, pts[i], atol=1e-6)


def test_triangulate_accepts_keypoint_objects():
    pts, r, t, keys1, keys2 = _scene()
    p1, p2 = _cameras(r, t)
    kp1 = SimpleNamespace(pt=tuple(keys1[0]), octave=0)
    kp2 = SimpleNamespace(pt=tuple(keys2[0]), octave=0)
    assert np.allclose(triangulate(kp1, kp2, p1, p2), pts[0], atol=1e-6)


def test_check_rt_true_motion_accepts_all():
    pts, r, t, keys1, keys2 = _scene()
    n = len(pts)
    matches = [(i, i) for i in range(n)]
    result = check_rt(r, t, keys1, keys2, matches, [True] * n, K, 4.0)
    assert result.n_good == n
    assert all(result.good)
    for i in range(n):
        assert np.allclose(result.points[i], pts[i], atol=1e-6)
    assert result.parallax > 1.0


def test_check_rt_reversed_translation_rejects_all():
    pts, r, t, keys1, keys2 = _scene()
    n = len(pts)
    matches = [(i, i) for i in range(n)]
    result = check_rt(r, -t, keys1, keys2, matches, [True] * n, K, 4.0)
    assert result.n_good == 0
    assert result.parallax == 0.0
    assert result.points == [None] * n
    assert not any(result.good)


def test_check_rt_skips_outliers():
    pts, r, t, keys1, keys2 = _scene()
    n = len(pts)
    matches = [(i, i) for i in range(n)]
    inliers = [i % 2 == 0 for i in range(n)]
    result = check_rt(r, t, keys1, keys2, matches, inliers, K, 4.0)
    assert result.n_good == sum(inliers)
    for i in range(n):
        if inliers[i]:
            assert result.points[i] is not None
        else:
            assert result.points[i] is None
            assert result.good[i] is False


def test_check_rt_far_points_counted_but_not_good():
    pts, r, t, keys1, keys2 = _scene(n=30, depth=(1e4, 1.2e4))
    n = len(pts)
    matches = [(i, i) for i in range(n)]
    result = check_rt(r, t, keys1, keys2, matches, [True] * n, K, 4.0)
    assert result.n_good == n
    assert not any(result.good)
    assert result.parallax < 0.1


def test_check_rt_empty_matches():
    result = check_rt(np.eye(3), np.array([1.0, 0.0, 0.0]), [], [], [], [], K, 4.0)
    assert result.n_good == 0
    assert result.points == []
    assert result.parallax == pytest.approx(0.0)