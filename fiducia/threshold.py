"""Adaptive thresholding, connected components and edge clustering."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from itertools import product

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

TILE_SIZE = 4
BAYER_TILE_SIZE = 32
MAX_DIMENSION = 32768
UNKNOWN = 127
MIN_COMPONENT_SIZE = 25

_NEIGHBOURS = ((1, 0), (0, 1), (-1, 1), (1, 1))
_U64_MASK = (1 << 64) - 1


@dataclass
class QuadThreshParams:
    """Tuning parameters for quad detection."""

    min_cluster_pixels: int = 5
    max_nmaxima: int = 10
    critical_rad: float = 0.0
    cos_critical_rad: float = field(default_factory=lambda: math.cos(10 * math.pi / 180))
    max_line_fit_mse: float = 10.0
    min_white_black_diff: int = 5
    deglitch: bool = False


class UnionFind:
    """Disjoint sets over the integers ``0 .. size-1``."""

    def __init__(self, size: int) -> None:
        if size < 0:
            raise ValueError("size must not be negative")
        self._parent = list(range(size))
        self._size = [1] * size

    def __len__(self) -> int:
        return len(self._parent)

    def find(self, item: int) -> int:
        """Return the representative of the set holding ``item``."""
        parent = self._parent
        if not 0 <= item < len(parent):
            raise IndexError(f"item {item} out of range")
        while parent[item] != item:
            parent[item] = parent[parent[item]]
            item = parent[item]
        return item

    def union(self, a: int, b: int) -> int:
        """Join the sets holding ``a`` and ``b``; return the new representative."""
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self._size[ra] > self._size[rb]:
            self._parent[rb] = ra
            self._size[ra] += self._size[rb]
            return ra
        self._parent[ra] = rb
        self._size[rb] += self._size[ra]
        return rb

    def set_size(self, item: int) -> int:
        """Return the number of elements in the set holding ``item``."""
        return self._size[self.find(item)]


@dataclass(slots=True)
class ClusterPoint:
    """A boundary point between a white and a black region.

    Coordinates are twice the pixel position; ``gx``/``gy`` give the
    gradient direction (-255, 0 or 255). ``slope`` is filled in later
    when the points are ordered around a quad.
    """

    x: int
    y: int
    gx: int
    gy: int
    slope: float = 0.0


def _as_gray(image) -> np.ndarray:
    a = np.asarray(image)
    if a.ndim != 2:
        raise ValueError(f"image must have exactly 2 dimensions; got {a.ndim}")
    if a.dtype != np.uint8:
        raise ValueError("image must contain 8-bit unsigned data")
    return a


def _neighbourhood(a: np.ndarray, op, fill: int) -> np.ndarray:
    """Combine every cell with its 3x3 neighbours, ignoring cells off the grid."""
    rows, cols = a.shape
    padded = np.pad(a, 1, constant_values=fill)
    result = a.copy()
    for dy, dx in product(range(3), repeat=2):
        result = op(result, padded[dy:dy + rows, dx:dx + cols])
    return result


def threshold(image, params: QuadThreshParams | None = None) -> np.ndarray:
    """Binarise ``image`` to 0/255, marking low-contrast areas with 127.

    Thresholds come from the min/max of 4x4 tiles, spread over their 3x3
    tile neighbourhood. Pixels in the last partial tiles use the nearest
    full tile and are never marked low-contrast.
    """
    params = params or QuadThreshParams()
    im = _as_gray(image)
    h, w = im.shape
    if w >= MAX_DIMENSION or h >= MAX_DIMENSION:
        raise ValueError(f"image dimensions must be below {MAX_DIMENSION}")
    tw, th = w // TILE_SIZE, h // TILE_SIZE
    if tw == 0 or th == 0:
        raise ValueError(f"image must be at least {TILE_SIZE}x{TILE_SIZE} pixels")

    tiles = im[:th * TILE_SIZE, :tw * TILE_SIZE].reshape(th, TILE_SIZE, tw, TILE_SIZE)
    tile_max = _neighbourhood(tiles.max(axis=(1, 3)), np.maximum, 0)
    tile_min = _neighbourhood(tiles.min(axis=(1, 3)), np.minimum, 255)

    ty = np.minimum(np.arange(h) // TILE_SIZE, th - 1)
    tx = np.minimum(np.arange(w) // TILE_SIZE, tw - 1)
    mx = tile_max[np.ix_(ty, tx)].astype(np.int32)
    mn = tile_min[np.ix_(ty, tx)].astype(np.int32)
    thresh = mn + (mx - mn) // 2

    out = np.where(im > thresh, 255, 0).astype(np.uint8)
    low_contrast = (mx - mn) < params.min_white_black_diff
    low_contrast[th * TILE_SIZE:, :] = False
    low_contrast[:, tw * TILE_SIZE:] = False
    out[low_contrast] = UNKNOWN

    if params.deglitch and h > 2 and w > 2:
        dilated = np.zeros_like(out)
        dilated[1:-1, 1:-1] = sliding_window_view(out, (3, 3)).max(axis=(2, 3))
        out[1:-1, 1:-1] = sliding_window_view(dilated, (3, 3)).min(axis=(2, 3))

    return out


def threshold_bayer(image) -> np.ndarray:
    """Binarise a Bayer-pattern image to 0/1.

    Statistics are gathered separately for each of the four 2x2 mosaic
    positions over 32x32 tiles and their 3x3 tile neighbourhood.
    """
    im = _as_gray(image)
    h, w = im.shape
    if h == 0 or w == 0:
        raise ValueError("image must not be empty")
    tw, th = w // BAYER_TILE_SIZE + 1, h // BAYER_TILE_SIZE + 1
    half = BAYER_TILE_SIZE // 2

    thresholds = np.empty((4, th, tw), dtype=np.int32)
    for by, bx in product((0, 1), repeat=2):
        sub = im[by::2, bx::2]
        sh, sw = sub.shape
        maxes = np.zeros((th * half, tw * half), dtype=np.uint8)
        mins = np.full((th * half, tw * half), 255, dtype=np.uint8)
        maxes[:sh, :sw] = sub
        mins[:sh, :sw] = sub
        tile_max = maxes.reshape(th, half, tw, half).max(axis=(1, 3))
        tile_min = mins.reshape(th, half, tw, half).min(axis=(1, 3))
        tile_max = _neighbourhood(tile_max, np.maximum, 0).astype(np.int32)
        tile_min = _neighbourhood(tile_min, np.minimum, 255).astype(np.int32)
        spread = np.trunc((tile_max - tile_min) / 2).astype(np.int32)
        thresholds[2 * by + bx] = (tile_min + spread) & 0xFF

    ys = np.arange(h)[:, None]
    xs = np.arange(w)[None, :]
    thresh = thresholds[2 * (ys & 1) + (xs & 1), ys // BAYER_TILE_SIZE, xs // BAYER_TILE_SIZE]
    return (im > thresh).astype(np.uint8)


def _union_line(uf: UnionFind, rows: list[list[int]], w: int, y: int) -> None:
    above = rows[y - 1]
    row = rows[y]
    base = y * w
    up = base - w

    v_0_m1 = above[0]
    v_1_m1 = above[1]
    v = row[0]
    for x in range(1, w - 1):
        v_m1_m1 = v_0_m1
        v_0_m1 = v_1_m1
        v_1_m1 = above[x + 1]
        v_m1_0 = v
        v = row[x]
        if v == UNKNOWN:
            continue
        here = base + x

        if row[x - 1] == v:
            uf.union(here, here - 1)
        if x == 1 or not (v_m1_0 == v_m1_m1 and v_m1_m1 == v_0_m1):
            if above[x] == v:
                uf.union(here, up + x)
        if v == 255:
            if x == 1 or not (v_m1_0 == v_m1_m1 or v_0_m1 == v_m1_m1):
                if above[x - 1] == v:
                    uf.union(here, up + x - 1)
            if v_0_m1 != v_1_m1 and above[x + 1] == v:
                uf.union(here, up + x + 1)


def connected_components(threshim) -> UnionFind:
    """Group equal-valued neighbouring pixels of a thresholded image.

    Pixel ``(x, y)`` is element ``y * width + x``. Pixels valued 127 are
    left unconnected.
    """
    t = _as_gray(threshim)
    h, w = t.shape
    uf = UnionFind(w * h)
    if h == 0 or w < 3:
        return uf
    rows = t.tolist()

    first = rows[0]
    for x in range(1, w - 1):
        v = first[x]
        if v != UNKNOWN and first[x - 1] == v:
            uf.union(x, x - 1)

    for y in range(1, h):
        _union_line(uf, rows, w, y)
    return uf


def _u64hash(x: int) -> int:
    return ((2654435761 * x) & _U64_MASK) >> 32


def gradient_clusters(threshim, uf: UnionFind) -> list[list[ClusterPoint]]:
    """Collect boundary points between every pair of adjacent large components.

    Components with fewer than 25 pixels are ignored. Each cluster holds
    the points, in scan order, lying between one white and one black
    component.
    """
    t = _as_gray(threshim)
    h, w = t.shape
    if len(uf) != w * h:
        raise ValueError("union-find size does not match the image")
    rows = t.tolist()

    clusters: dict[int, list[ClusterPoint]] = {}
    for y in range(1, h - 1):
        row = rows[y]
        for x in range(1, w - 1):
            v0 = row[x]
            if v0 == UNKNOWN:
                continue
            rep0 = uf.find(y * w + x)
            if uf.set_size(rep0) < MIN_COMPONENT_SIZE:
                continue
            for dx, dy in _NEIGHBOURS:
                v1 = rows[y + dy][x + dx]
                if v0 + v1 != 255:
                    continue
                rep1 = uf.find((y + dy) * w + x + dx)
                if uf.set_size(rep1) < MIN_COMPONENT_SIZE:
                    continue
                if rep0 < rep1:
                    cluster_id = (rep1 << 32) + rep0
                else:
                    cluster_id = (rep0 << 32) + rep1
                diff = v1 - v0
                clusters.setdefault(cluster_id, []).append(
                    ClusterPoint(2 * x + dx, 2 * y + dy, dx * diff, dy * diff)
                )

    buckets = max(1, int(0.2 * w * h))
    order = sorted(clusters, key=lambda cid: (_u64hash(cid) % buckets, cid))
    return [clusters[cid] for cid in order]