"""Quads and the homographies that map tag coordinates to pixels."""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

_SINGULAR_EPSILON = 1e-10


def homography_compute(correspondences: Sequence[Sequence[float]]) -> np.ndarray:
    """Compute the 3x3 homography from four ``(x, y, px, py)`` correspondences.

    Solves the 8x8 linear system by Gaussian elimination with partial
    pivoting; a near-singular system gives a RuntimeWarning.
    """
    c = np.asarray(correspondences, dtype=float)
    if c.shape != (4, 4):
        raise ValueError("expected four (x, y, px, py) correspondences")

    rows = []
    for x, y, px, py in c:
        rows.append([x, y, 1, 0, 0, 0, -x * px, -y * px, px])
        rows.append([0, 0, 0, x, y, 1, -x * py, -y * py, py])
    a = np.array(rows, dtype=float)

    with np.errstate(divide="ignore", invalid="ignore"):
        for col in range(8):
            pivot = col + int(np.argmax(np.abs(a[col:, col])))
            if abs(a[pivot, col]) < _SINGULAR_EPSILON:
                warnings.warn("matrix is singular", RuntimeWarning, stacklevel=2)
            if pivot != col:
                a[[col, pivot], col:] = a[[pivot, col], col:]
            factors = a[col + 1:, col] / a[col, col]
            a[col + 1:, col:] -= np.outer(factors, a[col, col:])
            a[col + 1:, col] = 0

        for col in range(7, -1, -1):
            total = a[col, col + 1:8] @ a[col + 1:8, 8]
            a[col, 8] = (a[col, 8] - total) / a[col, col]

    return np.append(a[:8, 8], 1.0).reshape(3, 3)


def homography_project(h: np.ndarray, x: float, y: float) -> tuple[float, float]:
    """Project the point ``(x, y)`` through homography ``h``."""
    xx = h[0, 0] * x + h[0, 1] * y + h[0, 2]
    yy = h[1, 0] * x + h[1, 1] * y + h[1, 2]
    zz = h[2, 0] * x + h[2, 1] * y + h[2, 2]
    return float(xx / zz), float(yy / zz)


def _default_corners() -> np.ndarray:
    return np.zeros((4, 2), dtype=float)


@dataclass
class Quad:
    """A candidate tag outline: four corners and its homographies.

    ``H`` maps tag coordinates ([-1, 1] at the black corners) to pixels and
    ``Hinv`` maps pixels back to tag coordinates.
    """

    p: np.ndarray = field(default_factory=_default_corners)
    reversed_border: bool = False
    H: np.ndarray | None = None
    Hinv: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.p = np.array(self.p, dtype=float).reshape(4, 2)

    def update_homographies(self) -> None:
        """Recompute ``H`` and ``Hinv`` from the corners.

        Raises numpy.linalg.LinAlgError when ``H`` has no inverse.
        """
        correspondences = [
            (
                -1.0 if i in (0, 3) else 1.0,
                -1.0 if i in (0, 1) else 1.0,
                self.p[i, 0],
                self.p[i, 1],
            )
            for i in range(4)
        ]
        self.H = homography_compute(correspondences)
        self.Hinv = np.linalg.inv(self.H)