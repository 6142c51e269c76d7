import math

import numpy as np
import pytest

from fiducia.lines import (
    LineFitMoments,
    compute_lfps,
    fit_line,
    quad_segment_agg,
    quad_segment_maxima,
)
from fiducia.threshold import ClusterPoint, QuadThreshParams

# Square corners in doubled (fixed-point) coordinates.
CORNERS = [(20, 20), (100, 20), (100, 100), (20, 100)]
STEPS = 40


def _square_cluster():
    points = []
    for k in range(4):
        x0, y0 = CORNERS[k]
        x1, y1 = CORNERS[(k + 1) % 4]
        for s in range(STEPS):
            x = x0 + (x1 - x0) * s // STEPS
            y = y0 + (y1 - y0) * s // STEPS
            points.append(ClusterPoint(x, y, 0, 0))
    return points


def _flat_image():
    return np.full((64, 64), 128, dtype=np.uint8)


def test_compute_lfps_is_cumulative_with_unit_weights():
    cluster = _square_cluster()
    lfps = compute_lfps(cluster, _flat_image())
    assert len(lfps) == len(cluster)
    assert [m.w for m in lfps] == [float(i + 1) for i in range(len(cluster))]
    expected_mx = sum(p.x * 0.5 + 0.5 for p in cluster)
    assert lfps[-1].mx == pytest.approx(expected_mx)


def test_compute_lfps_weights_by_gradient():
    cols = np.arange(16, dtype=np.uint8) * 10
    image = np.tile(cols, (16, 1))
    lfps = compute_lfps([ClusterPoint(10, 10, 0, 0)], image)
    assert lfps[0].w == pytest.approx(21.0)


def test_compute_lfps_rejects_non_2d_image():
    with pytest.raises(ValueError):
        compute_lfps([ClusterPoint(2, 2, 0, 0)], np.zeros((4, 4, 3), dtype=np.uint8))


def test_moments_add_and_subtract_round_trip():
    a = LineFitMoments(1.0, 2.0, 3.0, 4.0, 5.0, 6.0)
    b = LineFitMoments(0.5, 0.25, 1.0, 2.0, 3.0, 1.0)
    assert (a + b) - b == a


def test_fit_line_on_collinear_points():
    cluster = [ClusterPoint(2 * i, 2 * i + 4, 0, 0) for i in range(10)]
    lfps = compute_lfps(cluster, _flat_image())
    line = fit_line(lfps, 0, 9)
    assert abs(line.mse) < 1e-4
    assert math.hypot(line.nx, line.ny) == pytest.approx(1.0, abs=1e-6)
    # Normal is perpendicular to the direction (1, 1).
    assert line.nx + line.ny == pytest.approx(0.0, abs=1e-4)
    # Centroid lies on the line y = x + 2.
    assert line.ey - line.ex == pytest.approx(2.0)


def test_fit_line_err_is_count_times_mse():
    lfps = compute_lfps(_square_cluster(), _flat_image())
    line = fit_line(lfps, 30, 50)
    assert line.err == pytest.approx(21 * line.mse)
    assert line.mse > 0


def test_fit_line_wrap_matches_rotated_cluster():
    cluster = _square_cluster()
    sz = len(cluster)
    lfps = compute_lfps(cluster, _flat_image())
    wrapped = fit_line(lfps, 150, 25)
    rotated = cluster[150:] + cluster[:150]
    lfps2 = compute_lfps(rotated, _flat_image())
    straight = fit_line(lfps2, 0, (25 - 150) % sz)
    assert wrapped.ex == pytest.approx(straight.ex)
    assert wrapped.ey == pytest.approx(straight.ey)
    assert wrapped.mse == pytest.approx(straight.mse, rel=1e-4, abs=1e-4)
    assert abs(wrapped.nx * straight.nx + wrapped.ny * straight.ny) == pytest.approx(1.0, abs=1e-4)


def test_fit_line_rejects_equal_indices():
    lfps = compute_lfps(_square_cluster(), _flat_image())
    with pytest.raises(ValueError):
        fit_line(lfps, 3, 3)


def test_fit_line_rejects_out_of_range():
    lfps = compute_lfps(_square_cluster(), _flat_image())
    with pytest.raises(IndexError):
        fit_line(lfps, 0, len(lfps))


def test_quad_segment_maxima_finds_square_corners():
    cluster = _square_cluster()
    lfps = compute_lfps(cluster, _flat_image())
    indices = quad_segment_maxima(QuadThreshParams(), lfps)
    assert indices is not None
    assert list(indices) == sorted(indices)
    for idx, (cx, cy) in zip(indices, CORNERS):
        p = cluster[idx]
        assert abs(p.x - cx) <= 4 and abs(p.y - cy) <= 4


def test_quad_segment_maxima_too_few_points():
    cluster = _square_cluster()[::8]
    lfps = compute_lfps(cluster, _flat_image())
    assert quad_segment_maxima(QuadThreshParams(), lfps) is None


def test_quad_segment_maxima_on_straight_line_has_no_quad():
    cluster = [ClusterPoint(2 * i, 40, 0, 0) for i in range(60)]
    lfps = compute_lfps(cluster, np.full((8, 64), 128, dtype=np.uint8))
    assert quad_segment_maxima(QuadThreshParams(), lfps) is None


def test_quad_segment_agg_keeps_corners():
    lfps = compute_lfps(_square_cluster(), _flat_image())
    assert quad_segment_agg(lfps) == (0, STEPS, 2 * STEPS, 3 * STEPS)


def test_quad_segment_agg_with_exactly_four_points():
    cluster = [ClusterPoint(x, y, 0, 0) for x, y in CORNERS]
    lfps = compute_lfps(cluster, _flat_image())
    assert quad_segment_agg(lfps) == (0, 1, 2, 3)


def test_quad_segment_agg_rejects_too_few_points():
    cluster = [ClusterPoint(x, y, 0, 0) for x, y in CORNERS[:3]]
    lfps = compute_lfps(cluster, _flat_image())
    with pytest.raises(ValueError):
        quad_segment_agg(lfps)