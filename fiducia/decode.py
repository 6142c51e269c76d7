"""Sampling and decoding the bit pattern inside a candidate quad."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from fiducia.family import DecodeEntry, QuickDecode, TagFamily
from fiducia.geometry import Quad, homography_project

_GRADIENT_RANGE = 1.0
_SEARCH_STEP = 0.25
_MIN_EDGE_SAMPLES = 16
_MIN_DET = 0.001

_LAPLACIAN = np.array([[0.0, -1.0, 0.0], [-1.0, 4.0, -1.0], [0.0, -1.0, 0.0]])


def _zeros33() -> np.ndarray:
    return np.zeros((3, 3), dtype=float)


def _zeros3() -> np.ndarray:
    return np.zeros(3, dtype=float)


@dataclass
class GrayModel:
    """Least-squares plane ``gray = c0*x + c1*y + c2`` over sampled intensities.

    ``a`` accumulates the upper triangle of J'J and ``b`` accumulates J'gray.
    """

    a: np.ndarray = field(default_factory=_zeros33)
    b: np.ndarray = field(default_factory=_zeros3)
    c: np.ndarray = field(default_factory=_zeros3)

    def add(self, x: float, y: float, gray: float) -> None:
        """Add one intensity sample taken at ``(x, y)``."""
        self.a[0, 0] += x * x
        self.a[0, 1] += x * y
        self.a[0, 2] += x
        self.a[1, 1] += y * y
        self.a[1, 2] += y
        self.a[2, 2] += 1
        self.b[0] += x * gray
        self.b[1] += y * gray
        self.b[2] += gray

    def solve(self) -> np.ndarray:
        """Fit the plane coefficients from the samples added so far."""
        upper = np.triu(self.a)
        full = upper + np.triu(self.a, 1).T
        try:
            self.c = np.linalg.solve(full, self.b)
        except np.linalg.LinAlgError:
            self.c = np.linalg.lstsq(full, self.b, rcond=None)[0]
        return self.c

    def interpolate(self, x: float, y: float) -> float:
        """Evaluate the fitted plane at ``(x, y)``."""
        return float(self.c[0] * x + self.c[1] * y + self.c[2])


def value_for_pixel(image, px: float, py: float) -> float | None:
    """Bilinearly interpolate ``image`` at ``(px, py)`` with pixel centres at +0.5.

    Returns None when the sample needs pixels outside the image.
    """
    if not (math.isfinite(px) and math.isfinite(py)):
        return None
    im = np.asarray(image)
    height, width = im.shape
    x1 = math.floor(px - 0.5)
    x2 = math.ceil(px - 0.5)
    x = px - 0.5 - x1
    y1 = math.floor(py - 0.5)
    y2 = math.ceil(py - 0.5)
    y = py - 0.5 - y1
    if x1 < 0 or x2 >= width or y1 < 0 or y2 >= height:
        return None
    return (
        float(im[y1, x1]) * (1 - x) * (1 - y)
        + float(im[y1, x2]) * x * (1 - y)
        + float(im[y2, x1]) * (1 - x) * y
        + float(im[y2, x2]) * x * y
    )


def sharpen(values, amount: float) -> np.ndarray:
    """Return ``values`` plus ``amount`` times its zero-padded Laplacian."""
    v = np.asarray(values, dtype=float)
    if v.ndim != 2:
        raise ValueError("values must be a 2-dimensional array")
    rows, cols = v.shape
    padded = np.pad(v, 1)
    lap = np.zeros_like(v)
    for i in range(3):
        for j in range(3):
            k = _LAPLACIAN[i, j]
            if k:
                lap += k * padded[i:i + rows, j:j + cols]
    return v + amount * lap


def _border_patterns(width: int) -> list[tuple[float, float, float, float, bool]]:
    """Sampling lines around the tag border: start, step and whether white."""
    return [
        (-0.5, 0.5, 0, 1, True),
        (0.5, 0.5, 0, 1, False),
        (width + 0.5, 0.5, 0, 1, True),
        (width - 0.5, 0.5, 0, 1, False),
        (0.5, -0.5, 1, 0, True),
        (0.5, 0.5, 1, 0, False),
        (0.5, width + 0.5, 1, 0, True),
        (0.5, width - 0.5, 1, 0, False),
    ]


def quad_decode(
    family: TagFamily,
    decoder: QuickDecode,
    image,
    quad: Quad,
    decode_sharpening: float,
) -> tuple[float, DecodeEntry | None] | None:
    """Read the code inside ``quad`` and look it up in ``decoder``.

    Returns None when the border contrast has the wrong polarity for the
    family; otherwise the decision margin and the matching entry, which is
    None when the sampled code matches no tag.
    """
    if quad.H is None:
        raise ValueError("quad homography has not been computed")
    im = np.asarray(image)
    if im.ndim != 2:
        raise ValueError(f"image must have exactly 2 dimensions; got {im.ndim}")
    height, width = im.shape
    h = quad.H
    wab = family.width_at_border

    white = GrayModel()
    black = GrayModel()
    for x0, y0, dx, dy, is_white in _border_patterns(wab):
        model = white if is_white else black
        for i in range(wab):
            tagx = 2 * ((x0 + i * dx) / wab - 0.5)
            tagy = 2 * ((y0 + i * dy) / wab - 0.5)
            px, py = homography_project(h, tagx, tagy)
            if not (math.isfinite(px) and math.isfinite(py)):
                continue
            ix, iy = int(px), int(py)
            if ix < 0 or iy < 0 or ix >= width or iy >= height:
                continue
            model.add(tagx, tagy, float(im[iy, ix]))

    white.solve()
    if wab > 1:
        black.solve()
    else:
        black.c = np.array([0.0, 0.0, black.b[2] / 4])

    if (white.interpolate(0, 0) - black.interpolate(0, 0) < 0) != family.reversed_border:
        return None

    size = family.total_width
    values = np.zeros((size, size), dtype=float)
    min_coord = int((wab - size) / 2)
    for bx, by in zip(family.bit_x, family.bit_y):
        tagx = 2 * ((bx + 0.5) / wab - 0.5)
        tagy = 2 * ((by + 0.5) / wab - 0.5)
        px, py = homography_project(h, tagx, tagy)
        v = value_for_pixel(im, px, py)
        if v is None:
            continue
        thresh = (black.interpolate(tagx, tagy) + white.interpolate(tagx, tagy)) / 2.0
        values[by - min_coord, bx - min_coord] = v - thresh

    values = sharpen(values, decode_sharpening)

    rcode = 0
    white_score = black_score = 0.0
    white_count = black_count = 1
    for bx, by in zip(family.bit_x, family.bit_y):
        rcode <<= 1
        v = values[by - min_coord, bx - min_coord]
        if v > 0:
            white_score += v
            white_count += 1
            rcode |= 1
        else:
            black_score -= v
            black_count += 1

    margin = min(white_score / white_count, black_score / black_count)
    return float(margin), decoder.decode(rcode)


def _fit_edge(im: np.ndarray, a: np.ndarray, b: np.ndarray, reversed_border: bool,
              quad_decimate: float) -> tuple[float, float, float, float]:
    """Fit a line to the strongest gradients found along the normal of edge a-b."""
    height, width = im.shape
    nx = b[1] - a[1]
    ny = -b[0] + a[0]
    mag = math.sqrt(nx * nx + ny * ny)
    nx /= mag
    ny /= mag
    if reversed_border:
        nx, ny = -nx, -ny

    nsamples = max(_MIN_EDGE_SAMPLES, int(mag / 8))
    search = quad_decimate + 1
    mx = my = mxx = mxy = myy = 0.0
    count = 0
    for s in range(nsamples):
        alpha = (1.0 + s) / (nsamples + 1)
        x0 = alpha * a[0] + (1 - alpha) * b[0]
        y0 = alpha * a[1] + (1 - alpha) * b[1]

        mn = mcount = 0.0
        n = -search
        while n <= search:
            x1 = int(x0 + (n + _GRADIENT_RANGE) * nx)
            y1 = int(y0 + (n + _GRADIENT_RANGE) * ny)
            x2 = int(x0 + (n - _GRADIENT_RANGE) * nx)
            y2 = int(y0 + (n - _GRADIENT_RANGE) * ny)
            if (0 <= x1 < width and 0 <= y1 < height
                    and 0 <= x2 < width and 0 <= y2 < height):
                g1 = int(im[y1, x1])
                g2 = int(im[y2, x2])
                if g1 >= g2:
                    weight = (g2 - g1) * (g2 - g1)
                    mn += weight * n
                    mcount += weight
            n += _SEARCH_STEP

        if mcount == 0:
            continue
        n0 = mn / mcount
        bestx = x0 + n0 * nx
        besty = y0 + n0 * ny
        mx += bestx
        my += besty
        mxx += bestx * bestx
        mxy += bestx * besty
        myy += besty * besty
        count += 1

    if count == 0:
        return (math.nan, math.nan, math.nan, math.nan)

    ex, ey = mx / count, my / count
    cxx = mxx / count - ex * ex
    cxy = mxy / count - ex * ey
    cyy = myy / count - ey * ey
    theta = 0.5 * float(np.arctan2(np.float32(-2 * cxy), np.float32(cyy - cxx)))
    return (
        ex,
        ey,
        float(np.cos(np.float32(theta))),
        float(np.sin(np.float32(theta))),
    )


def refine_edges(image, quad: Quad, quad_decimate: float) -> None:
    """Snap the edges of ``quad`` to nearby strong gradients, moving its corners in place.

    A corner whose adjacent edges cannot be intersected keeps its position.
    """
    im = np.asarray(image)
    if im.ndim != 2:
        raise ValueError(f"image must have exactly 2 dimensions; got {im.ndim}")
    p = quad.p
    lines = [
        _fit_edge(im, p[edge], p[(edge + 1) & 3], quad.reversed_border, quad_decimate)
        for edge in range(4)
    ]

    for i in range(4):
        la, lb = lines[i], lines[(i + 1) & 3]
        a00, a01 = la[3], -lb[3]
        a10, a11 = -la[2], lb[2]
        b0 = -la[0] + lb[0]
        b1 = -la[1] + lb[1]
        det = a00 * a11 - a10 * a01
        if abs(det) > _MIN_DET:
            l0 = (a11 / det) * b0 + (-a01 / det) * b1
            quad.p[i, 0] = float(np.float32(la[0] + l0 * a00))
            quad.p[i, 1] = float(np.float32(la[1] + l0 * a10))