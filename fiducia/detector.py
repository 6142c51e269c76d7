"""The tag detector: preprocessing, quad finding, decoding and reconciliation."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
from shapely.errors import GEOSException
from shapely.geometry import Polygon

from fiducia.decode import quad_decode, refine_edges as refine_quad_edges
from fiducia.family import QuickDecode, TagFamily
from fiducia.geometry import Quad, homography_project
from fiducia.quads import quad_thresh
from fiducia.threshold import QuadThreshParams

DEFAULT_BITS_CORRECTED = 2
_TAG_CORNERS = ((-1, 1), (1, 1), (1, -1), (-1, -1))


@dataclass(eq=False)
class Detection:
    """A decoded tag.

    ``H`` maps the ideal tag (corners at (-1,1), (1,1), (1,-1), (-1,-1)) to
    image pixels, ``c`` is the tag centre and ``p`` its corners in pixels,
    wrapping counter-clockwise around the tag.
    """

    family: TagFamily
    id: int
    hamming: int
    decision_margin: float
    H: np.ndarray
    c: tuple[float, float]
    p: np.ndarray = field(default_factory=lambda: np.zeros((4, 2)))


def _as_gray(image) -> np.ndarray:
    im = np.asarray(image)
    if im.ndim != 2:
        raise ValueError(f"image must have exactly 2 dimensions; got {im.ndim}")
    if im.dtype != np.uint8:
        raise ValueError("image must contain 8-bit unsigned data")
    return im


def _decimate(im: np.ndarray, factor: float) -> np.ndarray:
    """Subsample ``im`` by ``factor`` (1.5 or an integer factor)."""
    h, w = im.shape
    if factor == 1.5:
        ys = (np.arange(int(h / 1.5)) * 1.5).astype(int)
        xs = (np.arange(int(w / 1.5)) * 1.5).astype(int)
        return im[np.ix_(ys, xs)].copy()
    f = int(factor)
    return im[: (h // f) * f : f, : (w // f) * f : f].copy()


def _gaussian_blur(im: np.ndarray, sigma: float, ksz: int) -> np.ndarray:
    half = ksz // 2
    offsets = np.arange(-half, half + 1, dtype=float)
    kernel = np.exp(-offsets * offsets / (2 * sigma * sigma))
    kernel /= kernel.sum()

    data = im.astype(float)
    padded = np.pad(data, ((0, 0), (half, half)), mode="edge")
    rows = sum(k * padded[:, i : i + data.shape[1]] for i, k in enumerate(kernel))
    padded = np.pad(rows, ((half, half), (0, 0)), mode="edge")
    cols = sum(k * padded[i : i + data.shape[0], :] for i, k in enumerate(kernel))
    return np.clip(np.rint(cols), 0, 255).astype(np.uint8)


def _prefer_smaller(pref: int, q0: float, q1: float) -> int:
    if pref:
        return pref
    if q0 < q1:
        return -1
    if q1 < q0:
        return 1
    return 0


def _overlaps(a: np.ndarray, b: np.ndarray) -> bool:
    try:
        return Polygon(a).intersects(Polygon(b))
    except GEOSException:
        return Polygon(a).buffer(0).intersects(Polygon(b).buffer(0))


class Detector:
    """Finds tags of the registered families in grayscale images."""

    def __init__(
        self,
        nthreads: int = 1,
        quad_decimate: float = 2.0,
        quad_sigma: float = 0.0,
        refine_edges: bool = True,
        decode_sharpening: float = 0.25,
        qtp: QuadThreshParams | None = None,
    ) -> None:
        if nthreads < 1:
            raise ValueError("nthreads must be at least 1")
        self.nthreads = nthreads
        self.quad_decimate = quad_decimate
        self.quad_sigma = quad_sigma
        self.refine_edges = refine_edges
        self.decode_sharpening = decode_sharpening
        self.qtp = qtp if qtp is not None else QuadThreshParams()
        self.nquads = 0
        self._families: list[TagFamily] = []
        self._decoders: dict[int, QuickDecode] = {}

    @property
    def families(self) -> tuple[TagFamily, ...]:
        return tuple(self._families)

    def add_family(self, family: TagFamily, bits_corrected: int = DEFAULT_BITS_CORRECTED) -> None:
        """Register ``family``, correcting up to ``bits_corrected`` bit errors."""
        if id(family) not in self._decoders:
            self._decoders[id(family)] = QuickDecode(family, bits_corrected)
        self._families.append(family)

    def remove_family(self, family: TagFamily) -> None:
        """Unregister one occurrence of ``family``; raises ValueError if absent."""
        for i, f in enumerate(self._families):
            if f is family:
                del self._families[i]
                break
        else:
            raise ValueError(f"family {family.name!r} is not registered")
        if not any(f is family for f in self._families):
            self._decoders.pop(id(family), None)

    def clear_families(self) -> None:
        """Unregister every family."""
        self._families.clear()
        self._decoders.clear()

    def _preprocess(self, im: np.ndarray) -> np.ndarray:
        quad_im = _decimate(im, self.quad_decimate) if self.quad_decimate > 1 else im.copy()
        if self.quad_sigma != 0:
            sigma = abs(float(np.float32(self.quad_sigma)))
            ksz = int(4 * sigma)
            if ksz & 1 == 0:
                ksz += 1
            if ksz > 1:
                blurred = _gaussian_blur(quad_im, sigma, ksz)
                if self.quad_sigma > 0:
                    quad_im = blurred
                else:
                    sharp = 2 * quad_im.astype(int) - blurred.astype(int)
                    quad_im = np.clip(sharp, 0, 255).astype(np.uint8)
        return quad_im

    def _decode_quad(self, im: np.ndarray, quad: Quad) -> list[Detection]:
        if self.refine_edges:
            refine_quad_edges(im, quad, self.quad_decimate)
        try:
            quad.update_homographies()
        except np.linalg.LinAlgError:
            return []
        if not np.all(np.isfinite(quad.H)):
            return []

        found = []
        for family in self._families:
            if family.reversed_border != quad.reversed_border:
                continue
            work = Quad(
                p=quad.p,
                reversed_border=quad.reversed_border,
                H=quad.H.copy(),
                Hinv=quad.Hinv.copy(),
            )
            result = quad_decode(
                family, self._decoders[id(family)], im, work, self.decode_sharpening
            )
            if result is None:
                continue
            margin, entry = result
            if entry is None or not margin >= 0:
                continue

            theta = entry.rotation * math.pi / 2.0
            c, s = math.cos(theta), math.sin(theta)
            rot = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
            h = work.H @ rot
            corners = np.array([homography_project(h, tx, ty) for tx, ty in _TAG_CORNERS])
            found.append(
                Detection(
                    family=family,
                    id=entry.id,
                    hamming=entry.hamming,
                    decision_margin=float(np.float32(margin)),
                    H=h,
                    c=homography_project(h, 0, 0),
                    p=corners,
                )
            )
        return found

    @staticmethod
    def _reconcile(detections: list[Detection]) -> list[Detection]:
        """Drop overlapping duplicates of the same tag, keeping the better one."""
        dets = list(detections)
        i0 = 0
        while i0 < len(dets):
            det0 = dets[i0]
            removed0 = False
            i1 = i0 + 1
            while i1 < len(dets):
                det1 = dets[i1]
                if det0.id != det1.id or det0.family is not det1.family:
                    i1 += 1
                    continue
                if not _overlaps(det0.p, det1.p):
                    i1 += 1
                    continue
                pref = _prefer_smaller(0, det0.hamming, det1.hamming)
                pref = _prefer_smaller(pref, -det0.decision_margin, -det1.decision_margin)
                for k in range(4):
                    pref = _prefer_smaller(pref, det0.p[k, 0], det1.p[k, 0])
                    pref = _prefer_smaller(pref, det0.p[k, 1], det1.p[k, 1])
                if pref < 0:
                    del dets[i1]
                else:
                    del dets[i0]
                    removed0 = True
                    break
            if not removed0:
                i0 += 1
        return dets

    def detect(self, image) -> list[Detection]:
        """Detect tags in a 2-D uint8 image; results are ordered by tag id."""
        im = _as_gray(image)
        if not self._families:
            return []

        quad_im = self._preprocess(im)
        quads = quad_thresh(self.qtp, self._families, self.quad_decimate, quad_im)

        if self.quad_decimate > 1:
            for q in quads:
                if self.quad_decimate == 1.5:
                    scaled = q.p * self.quad_decimate
                else:
                    scaled = (q.p - 0.5) * self.quad_decimate + 0.5
                q.p = scaled.astype(np.float32).astype(float)
        self.nquads = len(quads)

        if self.nthreads > 1 and len(quads) > 1:
            with ThreadPoolExecutor(max_workers=self.nthreads) as pool:
                per_quad = list(pool.map(lambda q: self._decode_quad(im, q), quads))
        else:
            per_quad = [self._decode_quad(im, q) for q in quads]

        detections = [d for found in per_quad for d in found]
        detections = self._reconcile(detections)
        detections.sort(key=lambda d: d.id)
        return detections