import math

import numpy as np
import pytest

from fiducia.detector import Detection, Detector
from fiducia.family import TagFamily
from fiducia.geometry import homography_project
from fiducia.threshold import QuadThreshParams

CELL = 20
MARGIN = 40


def make_family():
    return TagFamily(
        name="tag16h5",
        codes=(0x27C8, 0x31B6, 0x3859),
        width_at_border=6,
        total_width=8,
        reversed_border=False,
        nbits=16,
        bit_x=(1, 2, 3, 2, 4, 4, 4, 3, 4, 3, 2, 3, 1, 1, 1, 2),
        bit_y=(1, 1, 1, 2, 1, 2, 3, 2, 4, 4, 4, 3, 4, 3, 2, 3),
        h=5,
    )


def render(family, idx):
    tag = family.to_image(idx)
    big = np.kron(tag, np.ones((CELL, CELL), dtype=np.uint8))
    return np.pad(big, MARGIN, constant_values=255)


def expected_corners(x_offset=0):
    lo = MARGIN + CELL
    hi = MARGIN + 7 * CELL
    return [
        (lo + x_offset, lo),
        (hi + x_offset, lo),
        (hi + x_offset, hi),
        (lo + x_offset, hi),
    ]


def assert_corners_match(det, corners, tol=2.0):
    for ex, ey in corners:
        best = min(math.hypot(px - ex, py - ey) for px, py in det.p)
        assert best < tol


@pytest.fixture
def family():
    return make_family()


def make_detector(family, **kwargs):
    det = Detector(**kwargs)
    det.add_family(family, 0)
    return det


def test_detects_single_tag(family):
    detector = make_detector(family)
    dets = detector.detect(render(family, 0))
    assert len(dets) == 1
    d = dets[0]
    assert d.id == 0
    assert d.hamming == 0
    assert d.family is family
    assert d.decision_margin > 0
    assert abs(d.c[0] - 120) < 1.5
    assert abs(d.c[1] - 120) < 1.5
    assert_corners_match(d, expected_corners())


def test_centre_is_projection_of_origin(family):
    detector = make_detector(family)
    d = detector.detect(render(family, 2))[0]
    assert d.id == 2
    cx, cy = homography_project(d.H, 0, 0)
    assert cx == pytest.approx(d.c[0])
    assert cy == pytest.approx(d.c[1])
    for (tx, ty), corner in zip(((-1, 1), (1, 1), (1, -1), (-1, -1)), d.p):
        px, py = homography_project(d.H, tx, ty)
        assert px == pytest.approx(corner[0])
        assert py == pytest.approx(corner[1])


def test_rotated_tag_still_decodes(family):
    detector = make_detector(family)
    image = np.ascontiguousarray(np.rot90(render(family, 1)))
    dets = detector.detect(image)
    assert [d.id for d in dets] == [1]
    assert_corners_match(dets[0], expected_corners())


def test_detections_sorted_by_id(family):
    detector = make_detector(family)
    image = np.hstack([render(family, 1), render(family, 0)])
    dets = detector.detect(image)
    assert [d.id for d in dets] == [0, 1]
    width = 2 * MARGIN + 8 * CELL
    assert_corners_match(dets[0], expected_corners(width))
    assert_corners_match(dets[1], expected_corners())


def test_duplicate_family_detections_are_reconciled(family):
    detector = Detector()
    detector.add_family(family, 0)
    detector.add_family(family, 0)
    dets = detector.detect(render(family, 0))
    assert len(dets) == 1
    assert dets[0].id == 0


def test_no_decimation(family):
    detector = make_detector(family, quad_decimate=1.0)
    dets = detector.detect(render(family, 0))
    assert [d.id for d in dets] == [0]
    assert_corners_match(dets[0], expected_corners())


def test_blur_and_sharpen_keep_detection(family):
    for sigma in (0.8, -0.8):
        detector = make_detector(family, quad_sigma=sigma)
        dets = detector.detect(render(family, 0))
        assert [d.id for d in dets] == [0]


def test_multithreaded_matches_single(family):
    image = np.hstack([render(family, 2), render(family, 0)])
    single = make_detector(family).detect(image)
    multi = make_detector(family, nthreads=3).detect(image)
    assert [d.id for d in multi] == [d.id for d in single]
    for a, b in zip(single, multi):
        assert np.allclose(a.p, b.p)


def test_blank_image_has_no_detections(family):
    detector = make_detector(family)
    assert detector.detect(np.full((64, 64), 200, dtype=np.uint8)) == []


def test_no_families_returns_empty():
    detector = Detector()
    assert detector.detect(render(make_family(), 0)) == []


def test_family_management(family):
    other = make_family()
    detector = Detector()
    detector.add_family(family)
    detector.add_family(other)
    assert detector.families == (family, other)
    detector.remove_family(family)
    assert detector.families == (other,)
    with pytest.raises(ValueError):
        detector.remove_family(family)
    detector.clear_families()
    assert detector.families == ()
    assert detector.detect(render(family, 0)) == []


def test_removed_family_no_longer_detected(family):
    detector = make_detector(family)
    detector.remove_family(family)
    assert detector.detect(render(family, 0)) == []


def test_rejects_bad_images(family):
    detector = make_detector(family)
    with pytest.raises(ValueError):
        detector.detect(np.zeros((10, 10, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        detector.detect(np.zeros((10, 10), dtype=np.float64))


def test_rejects_bad_thread_count():
    with pytest.raises(ValueError):
        Detector(nthreads=0)


def test_defaults():
    detector = Detector()
    assert detector.nthreads == 1
    assert detector.quad_decimate == 2.0
    assert detector.quad_sigma == 0.0
    assert detector.refine_edges is True
    assert detector.decode_sharpening == 0.25
    assert detector.qtp.max_nmaxima == 10
    assert detector.qtp.min_cluster_pixels == 5


def test_nquads_counted(family):
    detector = make_detector(family, qtp=QuadThreshParams())
    dets = detector.detect(render(family, 0))
    assert detector.nquads >= len(dets) == 1
    assert isinstance(dets[0], Detection) and dets[0].id == 0