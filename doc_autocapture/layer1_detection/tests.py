"""
Tests for Layer 1: OpenCV adapter, corner ordering and document detection.
"""
import math

import numpy as np
import pytest

from doc_autocapture.config import ScannerConfig
from doc_autocapture.conftest import (
    DOCUMENT_BOX,
    draw_document,
    make_blank_frame,
    make_document_frame,
)
from doc_autocapture.error_handlers import (
    InvalidFrameError,
    InvalidGeometryError,
    ResourceUnavailableError,
)
from doc_autocapture.layer1_detection import (
    ImageOps,
    QuadrilateralDetector,
    ScratchBuffers,
    is_valid_quadrilateral,
    order_corners,
    order_corners_by_angle,
    polygon_area,
)
from doc_autocapture.models import Point


def rotated_rectangle(cx, cy, w, h, degrees):
    """Corners of a rectangle rotated about its centre, in TL/TR/BR/BL order."""
    theta = math.radians(degrees)
    cos_t, sin_t = math.cos(theta), math.sin(theta)
    points = []
    for dx, dy in ((-w / 2, -h / 2), (w / 2, -h / 2), (w / 2, h / 2), (-w / 2, h / 2)):
        points.append(Point(cx + dx * cos_t - dy * sin_t, cy + dx * sin_t + dy * cos_t))
    return tuple(points)


class TestOrderCorners:
    """Canonical TL, TR, BR, BL ordering."""

    def test_shuffled_rectangle_is_ordered(self):
        tl, tr, br, bl = Point(10, 20), Point(110, 20), Point(110, 90), Point(10, 90)
        assert order_corners([br, tl, bl, tr]) == (tl, tr, br, bl)

    def test_idempotent_on_ordered_input(self):
        quads = [
            (Point(0, 0), Point(50, 3), Point(55, 60), Point(-2, 58)),
            rotated_rectangle(200, 150, 180, 120, 12),
            rotated_rectangle(320, 240, 300, 200, -15),
        ]
        for quad in quads:
            once = order_corners(quad)
            assert order_corners(once) == once

    def test_skewed_document(self):
        corners = [Point(400, 380), Point(90, 100), Point(520, 120), Point(60, 360)]
        tl, tr, br, bl = order_corners(corners)
        assert (tl, tr, br, bl) == (Point(90, 100), Point(520, 120), Point(400, 380), Point(60, 360))

    def test_angle_sweep_matches_for_convex_quads(self):
        for degrees in (-20, -5, 0, 7, 18):
            quad = rotated_rectangle(300, 200, 240, 160, degrees)
            shuffled = [quad[2], quad[0], quad[3], quad[1]]
            assert order_corners_by_angle(shuffled) == order_corners(shuffled)

    def test_angle_sweep_is_idempotent(self):
        quad = rotated_rectangle(100, 100, 80, 40, 10)
        once = order_corners_by_angle(quad)
        assert order_corners_by_angle(once) == once

    @pytest.mark.parametrize('count', [0, 3, 5])
    def test_wrong_point_count_raises(self, count):
        points = [Point(i, i * 2) for i in range(count)]
        with pytest.raises(InvalidGeometryError) as exc:
            order_corners(points)
        assert exc.value.details['corner_count'] == count


class TestQuadrilateralValidity:
    """Area and interior angle checks."""

    def test_polygon_area(self):
        square = [Point(0, 0), Point(10, 0), Point(10, 10), Point(0, 10)]
        assert polygon_area(square) == pytest.approx(100.0)

    def test_rectangle_is_valid(self):
        assert is_valid_quadrilateral([Point(0, 0), Point(200, 0), Point(200, 100), Point(0, 100)])

    def test_small_polygon_rejected(self):
        assert not is_valid_quadrilateral([Point(0, 0), Point(20, 0), Point(20, 20), Point(0, 20)])

    def test_sliver_rejected(self):
        # Parallelogram with 10 degree acute angles
        shear = 400 / math.tan(math.radians(10))
        sliver = [Point(0, 0), Point(300, 0), Point(300 + shear, 400), Point(shear, 400)]
        assert polygon_area(sliver) > 1000
        assert not is_valid_quadrilateral(sliver)

    def test_custom_thresholds(self):
        square = [Point(0, 0), Point(20, 0), Point(20, 20), Point(0, 20)]
        assert is_valid_quadrilateral(square, min_area_px=100)

    def test_needs_four_points(self):
        assert not is_valid_quadrilateral([Point(0, 0), Point(100, 0), Point(0, 100)])


class TestImageOps:
    """OpenCV adapter behavior."""

    def test_grayscale_from_bgr_bgra_and_gray(self):
        ops = ImageOps()
        bgr = np.full((10, 12, 3), 90, dtype=np.uint8)
        bgra = np.full((10, 12, 4), 90, dtype=np.uint8)
        gray = np.full((10, 12), 90, dtype=np.uint8)
        for frame in (bgr, bgra, gray):
            result = ops.to_grayscale(frame)
            assert result.shape == (10, 12)
            assert int(result[0, 0]) == 90

    def test_grayscale_writes_into_buffer(self):
        ops = ImageOps()
        buffers = ScratchBuffers.allocate(10, 12, 3)
        result = ops.to_grayscale(np.full((10, 12, 3), 40, dtype=np.uint8), dst=buffers.gray)
        assert np.shares_memory(result, buffers.gray)

    def test_median_uses_sample(self):
        ops = ImageOps()
        gray = np.zeros((100, 100), dtype=np.uint8)
        gray[:, 40:] = 200
        assert ops.median(gray) == 200.0
        assert ops.median(np.zeros((0,), dtype=np.uint8)) == 0.0

    def test_saturation_ratios(self):
        ops = ImageOps()
        gray = np.full((10, 10), 128, dtype=np.uint8)
        gray[0, :] = 0
        gray[1, :5] = 255
        dark, bright = ops.saturation_ratios(gray)
        assert dark == pytest.approx(0.10)
        assert bright == pytest.approx(0.05)

    @pytest.mark.parametrize('frame', [
        None,
        np.zeros((0, 0, 3), dtype=np.uint8),
        np.zeros((4, 4, 2), dtype=np.uint8),
        [[1, 2], [3, 4]],
    ])
    def test_validate_frame_rejects_bad_input(self, frame):
        with pytest.raises(InvalidFrameError):
            ImageOps.validate_frame(frame)

    def test_buffer_allocation_rejects_empty_shape(self):
        with pytest.raises(ResourceUnavailableError):
            ScratchBuffers.allocate(0, 10, 3)

    def test_buffers_match(self):
        buffers = ScratchBuffers.allocate(48, 64, 3)
        assert buffers.matches(48, 64, 3)
        assert not buffers.matches(48, 64, 4)
        assert buffers.laplacian.dtype == np.float64


class TestQuadrilateralDetector:
    """Contour-based document detection."""

    def test_detects_document_corners(self, config, document_frame):
        quad = QuadrilateralDetector(config).detect(document_frame)
        assert quad is not None
        assert quad.is_valid
        left, top, right, bottom = DOCUMENT_BOX
        expected = [(left, top), (right, top), (right, bottom), (left, bottom)]
        for corner, (x, y) in zip(quad.corners, expected):
            assert corner.x == pytest.approx(x, abs=3)
            assert corner.y == pytest.approx(y, abs=3)

    def test_area_ratio(self, config, document_frame):
        quad = QuadrilateralDetector(config).detect(document_frame)
        left, top, right, bottom = DOCUMENT_BOX
        expected = (right - left) * (bottom - top) / float(640 * 480)
        assert quad.area_ratio == pytest.approx(expected, rel=0.05)

    def test_blank_frame_returns_none(self, config, blank_frame):
        assert QuadrilateralDetector(config).detect(blank_frame) is None

    def test_empty_frame_returns_none(self, config):
        detector = QuadrilateralDetector(config)
        assert detector.detect(None) is None
        assert detector.detect(np.zeros((0, 0, 3), dtype=np.uint8)) is None

    def test_small_document_rejected_by_area_ratio(self, config):
        frame = make_document_frame(box=(250, 200, 370, 290))
        assert QuadrilateralDetector(config).detect(frame) is None

    def test_area_ratio_bounds_are_configurable(self):
        frame = make_document_frame(box=(250, 200, 370, 290))
        config = ScannerConfig(min_document_area_ratio=0.02)
        assert QuadrilateralDetector(config).detect(frame) is not None

    def test_largest_candidate_wins(self):
        frame = make_blank_frame()
        draw_document(frame, (20, 60, 319, 359))     # 300 x 300
        draw_document(frame, (360, 100, 619, 359))   # 260 x 260
        config = ScannerConfig(min_document_area_ratio=0.1)
        quad = QuadrilateralDetector(config).detect(frame)
        assert quad is not None
        assert quad.corners[0].x == pytest.approx(20, abs=3)
        assert quad.corners[1].x == pytest.approx(319, abs=3)

    def test_uses_scratch_buffers(self, config, document_frame):
        buffers = ScratchBuffers.allocate(480, 640, 3)
        quad = QuadrilateralDetector(config).detect(document_frame, buffers)
        assert quad is not None
        assert buffers.edges.any()

    def test_adaptive_thresholds_follow_median(self, config):
        detector = QuadrilateralDetector(config)
        dark = np.full((50, 50), 30, dtype=np.uint8)
        bright = np.full((50, 50), 240, dtype=np.uint8)
        low, high = detector.adaptive_thresholds(dark)
        assert low == pytest.approx(0.67 * 30)
        assert high == pytest.approx(1.33 * 30)
        low, high = detector.adaptive_thresholds(bright)
        assert low == pytest.approx(0.67 * 240)
        assert high == 255.0
