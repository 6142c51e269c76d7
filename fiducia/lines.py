"""Line fitting over ordered boundary points and quad corner segmentation."""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from fiducia.threshold import ClusterPoint, QuadThreshParams

_MAX_KERNEL = 20
_FILTER_SIGMA = 1.0
_FILTER_CUTOFF = 0.05


def _sqrtf(value: float) -> float:
    """Square root evaluated in single precision."""
    return float(np.sqrt(np.float32(value)))


def _make_filter() -> tuple[float, ...]:
    half = int(math.sqrt(-math.log(_FILTER_CUTOFF) * 2 * _FILTER_SIGMA * _FILTER_SIGMA) + 1)
    return tuple(
        float(np.float32(math.exp(-j * j / (2 * _FILTER_SIGMA * _FILTER_SIGMA))))
        for j in range(-half, half + 1)
    )


_FILTER = _make_filter()


@dataclass(frozen=True)
class LineFitMoments:
    """Weighted first and second moments of a run of points."""

    mx: float = 0.0
    my: float = 0.0
    mxx: float = 0.0
    myy: float = 0.0
    mxy: float = 0.0
    w: float = 0.0

    def __add__(self, other: LineFitMoments) -> LineFitMoments:
        return LineFitMoments(
            self.mx + other.mx,
            self.my + other.my,
            self.mxx + other.mxx,
            self.myy + other.myy,
            self.mxy + other.mxy,
            self.w + other.w,
        )

    def __sub__(self, other: LineFitMoments) -> LineFitMoments:
        return LineFitMoments(
            self.mx - other.mx,
            self.my - other.my,
            self.mxx - other.mxx,
            self.myy - other.myy,
            self.mxy - other.mxy,
            self.w - other.w,
        )


@dataclass(frozen=True)
class LineFit:
    """A fitted line: a point on it, its unit normal and the fit errors."""

    ex: float
    ey: float
    nx: float
    ny: float
    err: float
    mse: float

    @property
    def params(self) -> tuple[float, float, float, float]:
        return (self.ex, self.ey, self.nx, self.ny)


def compute_lfps(cluster: Sequence[ClusterPoint], image) -> list[LineFitMoments]:
    """Return cumulative moments: entry ``j`` covers points ``0..j`` inclusive.

    Each point is weighted by its image gradient magnitude plus one.
    """
    im = np.asarray(image)
    if im.ndim != 2:
        raise ValueError(f"image must have exactly 2 dimensions; got {im.ndim}")
    height, width = im.shape

    result: list[LineFitMoments] = []
    total = LineFitMoments()
    for p in cluster:
        x = p.x * 0.5 + 0.5
        y = p.y * 0.5 + 0.5
        ix, iy = int(x), int(y)
        weight = 1.0
        if 0 < ix and ix + 1 < width and 0 < iy and iy + 1 < height:
            grad_x = int(im[iy, ix + 1]) - int(im[iy, ix - 1])
            grad_y = int(im[iy + 1, ix]) - int(im[iy - 1, ix])
            weight = math.sqrt(grad_x * grad_x + grad_y * grad_y) + 1
        total = total + LineFitMoments(
            weight * x,
            weight * y,
            weight * x * x,
            weight * y * y,
            weight * x * y,
            weight,
        )
        result.append(total)
    return result


def fit_line(lfps: Sequence[LineFitMoments], i0: int, i1: int) -> LineFit:
    """Fit a line to points ``i0..i1`` inclusive, wrapping when ``i1 < i0``."""
    sz = len(lfps)
    if i0 == i1:
        raise ValueError("a line needs two distinct end points")
    if not (0 <= i0 < sz and 0 <= i1 < sz):
        raise IndexError(f"indices ({i0}, {i1}) out of range for {sz} points")

    if i0 < i1:
        n = i1 - i0 + 1
        m = lfps[i1]
        if i0 > 0:
            m = m - lfps[i0 - 1]
    else:
        n = sz - i0 + i1 + 1
        m = (lfps[sz - 1] - lfps[i0 - 1]) + lfps[i1]

    ex = m.mx / m.w
    ey = m.my / m.w
    cxx = m.mxx / m.w - ex * ex
    cxy = m.mxy / m.w - ex * ey
    cyy = m.myy / m.w - ey * ey

    root = _sqrtf((cxx - cyy) * (cxx - cyy) + 4 * cxy * cxy)
    eig_small = 0.5 * (cxx + cyy - root)
    eig = 0.5 * (cxx + cyy + root)

    nx1, ny1 = cxx - eig, cxy
    m1 = nx1 * nx1 + ny1 * ny1
    nx2, ny2 = cxy, cyy - eig
    m2 = nx2 * nx2 + ny2 * ny2
    if m1 > m2:
        nx, ny, mag = nx1, ny1, m1
    else:
        nx, ny, mag = nx2, ny2, m2

    length = _sqrtf(mag)
    if length == 0:
        nx = ny = math.nan
    else:
        nx /= length
        ny /= length

    return LineFit(ex, ey, nx, ny, n * eig_small, eig_small)


def _filtered_errors(lfps: Sequence[LineFitMoments], ksz: int) -> list[float]:
    sz = len(lfps)
    errs = [fit_line(lfps, (i + sz - ksz) % sz, (i + ksz) % sz).err for i in range(sz)]
    half = len(_FILTER) // 2
    return [
        sum(errs[(iy + i - half) % sz] * f for i, f in enumerate(_FILTER))
        for iy in range(sz)
    ]


def quad_segment_maxima(
    params: QuadThreshParams, lfps: Sequence[LineFitMoments]
) -> tuple[int, int, int, int] | None:
    """Pick four corner indices among the peaks of the local line-fit error.

    Returns None when no acceptable quad can be formed.
    """
    sz = len(lfps)
    ksz = min(_MAX_KERNEL, sz // 12)
    if ksz < 2:
        return None

    errs = _filtered_errors(lfps, ksz)
    maxima = [
        (i, e)
        for i, e in enumerate(errs)
        if e > errs[(i + 1) % sz] and e > errs[i - 1]
    ]
    if len(maxima) < 4:
        return None

    if len(maxima) > params.max_nmaxima:
        cutoff = sorted((e for _, e in maxima), reverse=True)[params.max_nmaxima]
        maxima = [(i, e) for i, e in maxima if e > cutoff]
    corners = [i for i, _ in maxima]
    count = len(corners)

    max_mse = params.max_line_fit_mse
    max_dot = params.cos_critical_rad
    best_error = math.inf
    best: tuple[int, int, int, int] | None = None

    for m0 in range(count - 3):
        i0 = corners[m0]
        for m1 in range(m0 + 1, count - 2):
            i1 = corners[m1]
            line01 = fit_line(lfps, i0, i1)
            if line01.mse > max_mse:
                continue
            for m2 in range(m1 + 1, count - 1):
                i2 = corners[m2]
                line12 = fit_line(lfps, i1, i2)
                if line12.mse > max_mse:
                    continue
                dot = line01.nx * line12.nx + line01.ny * line12.ny
                if abs(dot) > max_dot:
                    continue
                for m3 in range(m2 + 1, count):
                    i3 = corners[m3]
                    line23 = fit_line(lfps, i2, i3)
                    if line23.mse > max_mse:
                        continue
                    line30 = fit_line(lfps, i3, i0)
                    if line30.mse > max_mse:
                        continue
                    err = line01.err + line12.err + line23.err + line30.err
                    if err < best_error:
                        best_error = err
                        best = (i0, i1, i2, i3)

    if best is None or best_error == math.inf:
        return None
    if best_error / sz < max_mse:
        return best
    return None


def quad_segment_agg(lfps: Sequence[LineFitMoments]) -> tuple[int, int, int, int] | None:
    """Find four corners by repeatedly dropping the vertex cheapest to remove.

    Returns None if the candidate queue runs dry before four remain.
    """
    sz = len(lfps)
    if sz < 4:
        raise ValueError("at least four points are needed to segment a quad")

    left_of = [(i - 1) % sz for i in range(sz)]
    right_of = [(i + 1) % sz for i in range(sz)]
    is_vertex = [True] * sz

    heap: list[tuple[float, int, int, int, int]] = []
    counter = 0

    def push(i: int, left: int, right: int) -> None:
        nonlocal counter
        mse = fit_line(lfps, left, right).mse
        heapq.heappush(heap, (mse, counter, i, left, right))
        counter += 1

    for i in range(sz):
        push(i, left_of[i], right_of[i])

    nvertices = sz
    while nvertices > 4:
        if not heap:
            return None
        _, _, i, left, right = heapq.heappop(heap)
        if not (is_vertex[i] and is_vertex[left] and is_vertex[right]):
            continue

        is_vertex[i] = False
        right_of[left] = right
        left_of[right] = left

        push(left, left_of[left], right)
        push(right, left, right_of[right])
        nvertices -= 1

    a, b, c, d = (i for i, keep in enumerate(is_vertex) if keep)
    return (a, b, c, d)