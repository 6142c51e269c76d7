"""Fitting quadrilaterals to edge clusters and the full quad-finding pass."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

import numpy as np

from fiducia.family import TagFamily
from fiducia.geometry import Quad
from fiducia.lines import compute_lfps, fit_line, quad_segment_maxima
from fiducia.threshold import (
    ClusterPoint,
    QuadThreshParams,
    connected_components,
    gradient_clusters,
    threshold,
)

MIN_CLUSTER_POINTS = 24
MIN_TAG_WIDTH = 3
_NO_FAMILY_WIDTH = 1000000
_CENTRE_NOISE_X = 0.05118
_CENTRE_NOISE_Y = -0.028581
_QUADRANT = 2 << 15
_MIN_DET = 0.001
_AREA_FRACTION = 0.95

_NETWORKS: dict[int, tuple[tuple[int, int], ...]] = {
    2: ((0, 1),),
    3: ((0, 1), (1, 2), (0, 1)),
    4: ((0, 1), (2, 3), (0, 2), (1, 3), (1, 2)),
    5: ((0, 1), (3, 4), (1, 2), (0, 1), (0, 3), (2, 4), (1, 2), (2, 3), (1, 2)),
}


def _sqrt(value: float) -> float:
    return math.sqrt(value) if value >= 0 else math.nan


def _ptsort(order: list[int], slopes: Sequence[float]) -> list[int]:
    """Sort point indices by slope with small sorting networks and a merge sort."""
    n = len(order)
    if n <= 1:
        return list(order)
    if n in _NETWORKS:
        arr = list(order)
        for a, b in _NETWORKS[n]:
            if slopes[arr[a]] > slopes[arr[b]]:
                arr[a], arr[b] = arr[b], arr[a]
        return arr

    half = n // 2
    left = _ptsort(order[:half], slopes)
    right = _ptsort(order[half:], slopes)
    merged: list[int] = []
    ia = ib = 0
    while ia < len(left) and ib < len(right):
        if slopes[left[ia]] < slopes[right[ib]]:
            merged.append(left[ia])
            ia += 1
        else:
            merged.append(right[ib])
            ib += 1
    merged.extend(left[ia:])
    merged.extend(right[ib:])
    return merged


def _angular_order(cluster: Sequence[ClusterPoint]) -> tuple[list[float], float]:
    """Return each point's pseudo-angle around the cluster centre and the border sign."""
    xs = np.array([p.x for p in cluster], dtype=np.float32)
    ys = np.array([p.y for p in cluster], dtype=np.float32)
    gx = np.array([p.gx for p in cluster], dtype=np.float32)
    gy = np.array([p.gy for p in cluster], dtype=np.float32)

    cx = np.float32((float(xs.min()) + float(xs.max())) * 0.5 + _CENTRE_NOISE_X)
    cy = np.float32((float(ys.min()) + float(ys.max())) * 0.5 + _CENTRE_NOISE_Y)
    dx = xs - cx
    dy = ys - cy

    dot = float(np.sum(dx * gx + dy * gy, dtype=np.float64))

    quadrant = np.where(
        dy > 0,
        np.where(dx > 0, _QUADRANT, 2 * _QUADRANT),
        np.where(dx > 0, 0, -_QUADRANT),
    ).astype(np.float32)

    flip = dy < 0
    dx = np.where(flip, -dx, dx)
    dy = np.where(flip, -dy, dy)
    turn = dx < 0
    ndx = np.where(turn, dy, dx)
    ndy = np.where(turn, -dx, dy)
    with np.errstate(divide="ignore", invalid="ignore"):
        slopes = (quadrant + ndy / ndx).astype(np.float32)
    return slopes.tolist(), dot


def fit_quad(
    params: QuadThreshParams,
    image,
    cluster: Sequence[ClusterPoint],
    tag_width: int,
    normal_border: bool,
    reversed_border: bool,
) -> Quad | None:
    """Fit a quad to one cluster of boundary points, or return None.

    The cluster itself is left untouched; its points are ordered by angle
    around their centre, deduplicated, split into four lines and the line
    intersections become the corners. Quads that are too small, too
    sharply angled or wound the wrong way are rejected.
    """
    if len(cluster) < MIN_CLUSTER_POINTS:
        return None

    xs = [p.x for p in cluster]
    ys = [p.y for p in cluster]
    if (max(xs) - min(xs)) * (max(ys) - min(ys)) < tag_width:
        return None

    slopes, dot = _angular_order(cluster)
    is_reversed = dot < 0
    if is_reversed and not reversed_border:
        return None
    if not is_reversed and not normal_border:
        return None

    ordered = [cluster[i] for i in _ptsort(list(range(len(cluster))), slopes)]
    points = [ordered[0]]
    points.extend(
        p for prev, p in zip(ordered, ordered[1:]) if p.x != prev.x or p.y != prev.y
    )
    if len(points) < MIN_CLUSTER_POINTS:
        return None

    lfps = compute_lfps(points, image)
    indices = quad_segment_maxima(params, lfps)
    if indices is None:
        return None

    lines = []
    for i in range(4):
        line = fit_line(lfps, indices[i], indices[(i + 1) & 3])
        if line.mse > params.max_line_fit_mse:
            return None
        lines.append(line)

    corners = []
    for i in range(4):
        a, b = lines[i], lines[(i + 1) & 3]
        a00, a01 = a.ny, -b.ny
        a10, a11 = -a.nx, b.nx
        b0 = b.ex - a.ex
        b1 = b.ey - a.ey
        det = a00 * a11 - a10 * a01
        if abs(det) < _MIN_DET:
            return None
        l0 = (a11 / det) * b0 + (-a01 / det) * b1
        corners.append(
            (
                float(np.float32(a.ex + l0 * a00)),
                float(np.float32(a.ey + l0 * a10)),
            )
        )

    area = 0.0
    for tri in ((0, 1, 2), (2, 3, 0)):
        lengths = [
            math.dist(corners[tri[k]], corners[tri[(k + 1) % 3]]) for k in range(3)
        ]
        s = sum(lengths) / 2
        area += _sqrt(s * (s - lengths[0]) * (s - lengths[1]) * (s - lengths[2]))
    if area < _AREA_FRACTION * tag_width * tag_width:
        return None

    limit = params.cos_critical_rad
    for i in range(4):
        p0, p1, p2 = corners[i], corners[(i + 1) & 3], corners[(i + 2) & 3]
        dx1, dy1 = p1[0] - p0[0], p1[1] - p0[1]
        dx2, dy2 = p2[0] - p1[0], p2[1] - p1[1]
        denom = math.sqrt((dx1 * dx1 + dy1 * dy1) * (dx2 * dx2 + dy2 * dy2))
        cos_dtheta = (dx1 * dx2 + dy1 * dy2) / denom if denom else math.nan
        if cos_dtheta > limit or cos_dtheta < -limit or dx1 * dy2 < dy1 * dx2:
            return None

    return Quad(p=corners, reversed_border=is_reversed)


def fit_quads(
    params: QuadThreshParams,
    families: Iterable[TagFamily],
    quad_decimate: float,
    clusters: Sequence[Sequence[ClusterPoint]],
    image,
) -> list[Quad]:
    """Fit quads to every suitably sized cluster.

    The smallest border width among ``families``, scaled down by
    ``quad_decimate``, sets the minimum tag width; the families also
    decide whether normal and/or reversed borders are accepted.
    """
    im = np.asarray(image)
    if im.ndim != 2:
        raise ValueError(f"image must have exactly 2 dimensions; got {im.ndim}")
    h, w = im.shape

    normal_border = False
    reversed_border = False
    min_width = _NO_FAMILY_WIDTH
    for family in families:
        min_width = min(min_width, family.width_at_border)
        normal_border |= not family.reversed_border
        reversed_border |= family.reversed_border
    tag_width = max(MIN_TAG_WIDTH, int(min_width / quad_decimate))

    max_points = 3 * (2 * w + 2 * h)
    quads: list[Quad] = []
    for cluster in clusters:
        if len(cluster) < params.min_cluster_pixels or len(cluster) > max_points:
            continue
        quad = fit_quad(params, im, cluster, tag_width, normal_border, reversed_border)
        if quad is not None:
            quads.append(quad)
    return quads


def quad_thresh(
    params: QuadThreshParams,
    families: Iterable[TagFamily],
    quad_decimate: float,
    image,
) -> list[Quad]:
    """Find candidate tag quads in a grayscale image."""
    threshim = threshold(image, params)
    uf = connected_components(threshim)
    clusters = gradient_clusters(threshim, uf)
    return fit_quads(params, families, quad_decimate, clusters, image)