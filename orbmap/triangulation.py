"""Linear triangulation and the cheirality check of a two-view motion hypothesis."""

from __future__ import annotations

import dataclasses
import math

import numpy as np

# Rays closer than this (as a cosine) are treated as having no parallax.
_LOW_PARALLAX_COS = 0.99998


@dataclasses.dataclass
class RTCheck:
    """Outcome of testing one motion hypothesis against the matches.

    ``points`` and ``good`` are indexed by keypoint in the first view.
    ``parallax`` is in degrees.
    """

    n_good: int
    points: list[np.ndarray | None]
    good: list[bool]
    parallax: float


def _xy(keypoint) -> tuple[float, float]:
    pt = getattr(keypoint, "pt", keypoint)
    x, y = pt
    return float(x), float(y)


def triangulate(kp1, kp2, p1, p2) -> np.ndarray:
    """3D point seen at ``kp1`` by camera ``p1`` and at ``kp2`` by camera ``p2``.

    Keypoints are ``(x, y)`` pairs or objects with such a ``pt``; cameras are
    3x4 projection matrices. The result may be non-finite for a degenerate pair.
    """
    x1, y1 = _xy(kp1)
    x2, y2 = _xy(kp2)
    p1 = np.asarray(p1, dtype=float).reshape(3, 4)
    p2 = np.asarray(p2, dtype=float).reshape(3, 4)
    a = np.vstack(
        [
            x1 * p1[2] - p1[0],
            y1 * p1[2] - p1[1],
            x2 * p2[2] - p2[0],
            y2 * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    x = vt[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return x[:3] / x[3]


def check_rt(r, t, keys1, keys2, matches, inliers, k, th2) -> RTCheck:
    """Triangulate the inlier matches under motion ``(r, t)`` and count the good ones.

    A point is counted when it lies in front of both cameras (unless the rays
    are almost parallel) and reprojects within squared error ``th2`` in both
    images. ``matches`` holds ``(index1, index2)`` pairs, ``inliers`` one flag
    per match.
    """
    r = np.asarray(r, dtype=float).reshape(3, 3)
    t = np.asarray(t, dtype=float).reshape(3)
    k = np.asarray(k, dtype=float).reshape(3, 3)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]

    points: list[np.ndarray | None] = [None] * len(keys1)
    good = [False] * len(keys1)
    cos_parallaxes: list[float] = []

    p1 = np.zeros((3, 4))
    p1[:, :3] = k
    p2 = k @ np.column_stack([r, t])
    o2 = -r.T @ t

    n_good = 0
    with np.errstate(all="ignore"):
        for (i1, i2), inlier in zip(matches, inliers):
            if not inlier:
                continue
            u1, v1 = _xy(keys1[i1])
            u2, v2 = _xy(keys2[i2])
            p3d = triangulate((u1, v1), (u2, v2), p1, p2)
            if not np.all(np.isfinite(p3d)):
                good[i1] = False
                continue

            normal2 = p3d - o2
            cos_parallax = float(
                p3d @ normal2 / (np.linalg.norm(p3d) * np.linalg.norm(normal2))
            )

            # "Infinite" points easily land behind a camera, so only check with parallax.
            if p3d[2] <= 0 and cos_parallax < _LOW_PARALLAX_COS:
                continue
            p3d_c2 = r @ p3d + t
            if p3d_c2[2] <= 0 and cos_parallax < _LOW_PARALLAX_COS:
                continue

            inv_z1 = 1.0 / p3d[2]
            im1x = fx * p3d[0] * inv_z1 + cx
            im1y = fy * p3d[1] * inv_z1 + cy
            if (im1x - u1) ** 2 + (im1y - v1) ** 2 > th2:
                continue

            inv_z2 = 1.0 / p3d_c2[2]
            im2x = fx * p3d_c2[0] * inv_z2 + cx
            im2y = fy * p3d_c2[1] * inv_z2 + cy
            if (im2x - u2) ** 2 + (im2y - v2) ** 2 > th2:
                continue

            cos_parallaxes.append(cos_parallax)
            points[i1] = p3d.copy()
            n_good += 1
            if cos_parallax < _LOW_PARALLAX_COS:
                good[i1] = True

    if n_good > 0:
        cos_parallaxes.sort()
        idx = min(50, len(cos_parallaxes) - 1)
        value = max(-1.0, min(1.0, cos_parallaxes[idx]))
        parallax = math.degrees(math.acos(value))
    else:
        parallax = 0.0

    return RTCheck(n_good=n_good, points=points, good=good, parallax=parallax)