"""Epipolar relations between keyframes."""

from __future__ import annotations

import numpy as np


def skew_symmetric(v) -> np.ndarray:
    """Cross-product matrix of a 3-vector: ``skew_symmetric(v) @ w == cross(v, w)``."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def compute_f12(kf1, kf2) -> np.ndarray:
    """Fundamental matrix with ``x1.T @ F12 @ x2 = 0`` between two keyframes.

    Keyframes provide ``rotation`` (3x3, world to camera), ``translation``
    (3-vector) and ``k`` (3x3 calibration).
    """
    r1w = np.asarray(kf1.rotation, dtype=float).reshape(3, 3)
    t1w = np.asarray(kf1.translation, dtype=float).reshape(3)
    r2w = np.asarray(kf2.rotation, dtype=float).reshape(3, 3)
    t2w = np.asarray(kf2.translation, dtype=float).reshape(3)

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(kf1.k, dtype=float).reshape(3, 3)
    k2 = np.asarray(kf2.k, dtype=float).reshape(3, 3)

    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)