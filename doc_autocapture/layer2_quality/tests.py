"""
Tests for Layer 2: stability tracking and quality scoring.
"""
import cv2
import pytest

from doc_autocapture.config import ScannerConfig
from doc_autocapture.conftest import make_blank_frame, make_document_frame
from doc_autocapture.error_handlers import InvalidFrameError
from doc_autocapture.layer2_quality import (
    CornerHistory,
    QualityScorer,
    movement_to_score,
    stability_score,
)
from doc_autocapture.models import Point


def square_at(dx=0.0, dy=0.0):
    return (
        Point(100 + dx, 100 + dy),
        Point(300 + dx, 100 + dy),
        Point(300 + dx, 250 + dy),
        Point(100 + dx, 250 + dy),
    )


def history_from_offsets(offsets, capacity=7):
    history = CornerHistory(capacity)
    for index, dx in enumerate(offsets):
        history = history.record(index + 1, square_at(dx), index * 100.0)
    return history


def gray(frame):
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


class TestCornerHistory:
    """Bounded ring buffer of corner sets."""

    def test_push_is_non_destructive(self):
        empty = CornerHistory(3)
        one = empty.record(1, square_at(), 0.0)
        assert len(empty) == 0
        assert len(one) == 1
        assert one.latest.frame_index == 1

    def test_oldest_entry_evicted(self):
        history = history_from_offsets([0, 1, 2, 3, 4], capacity=3)
        assert len(history) == 3
        assert [e.frame_index for e in history] == [3, 4, 5]

    def test_cleared_keeps_capacity(self):
        history = history_from_offsets([0, 1, 2], capacity=5).cleared()
        assert len(history) == 0
        assert history.capacity == 5

    def test_average_movement_uses_every_consecutive_pair(self):
        history = history_from_offsets([0, 10, 30])
        # Pairs move 10 px and 20 px for all four corners
        assert history.average_movement() == pytest.approx(15.0)

    def test_average_movement_needs_two_entries(self):
        assert history_from_offsets([0]).average_movement() is None

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            CornerHistory(0)


class TestStabilityScore:
    """Jitter to score mapping."""

    def test_bounds(self):
        assert movement_to_score(0.0) == 100
        assert movement_to_score(5.0) == 100
        assert movement_to_score(50.0) == 0
        assert movement_to_score(500.0) == 0

    def test_midpoint(self):
        assert movement_to_score(27.5) == 50

    def test_strictly_decreasing_between_bounds(self):
        scores = [movement_to_score(m) for m in (6, 10, 20, 30, 40, 49)]
        assert scores == sorted(scores, reverse=True)
        assert len(set(scores)) == len(scores)
        assert all(0 <= s <= 100 for s in scores)

    def test_insufficient_history_scores_zero(self):
        assert stability_score(CornerHistory(7)) == 0
        assert stability_score(history_from_offsets([0])) == 0

    def test_static_history_scores_full(self):
        assert stability_score(history_from_offsets([0, 0, 0])) == 100

    def test_moving_history(self):
        assert stability_score(history_from_offsets([0, 10, 30])) == 78


class TestSharpness:
    """Laplacian variance mapping."""

    @pytest.mark.parametrize('variance,expected', [
        (0, 0),
        (50, 0),
        (125, 25),
        (200, 50),
        (350, 75),
        (500, 100),
        (5000, 100),
    ])
    def test_breakpoints(self, variance, expected):
        assert QualityScorer().sharpness_from_variance(variance) == expected

    def test_monotonic_non_decreasing(self):
        scorer = QualityScorer()
        scores = [scorer.sharpness_from_variance(v) for v in range(0, 700, 7)]
        assert all(a <= b for a, b in zip(scores, scores[1:]))

    def test_sharp_frame_beats_blurred_frame(self):
        scorer = QualityScorer()
        sharp = gray(make_document_frame())
        blurred = cv2.GaussianBlur(sharp, (31, 31), 0)
        sharp_var = scorer.laplacian_variance(sharp)
        blurred_var = scorer.laplacian_variance(blurred)
        assert sharp_var > blurred_var
        assert scorer.sharpness_from_variance(sharp_var) == 100
        assert scorer.sharpness_from_variance(blurred_var) < 50


class TestLighting:
    """Exposure, contrast and clipping penalties."""

    def test_well_lit(self):
        assert QualityScorer().lighting_from_stats(128, 60, 0.0, 0.0) == 100

    def test_underexposed(self):
        assert QualityScorer().lighting_from_stats(40, 60, 0.0, 0.0) == 68

    def test_low_contrast(self):
        assert QualityScorer().lighting_from_stats(128, 10, 0.0, 0.0) == 70

    def test_overexposed_and_harsh(self):
        assert QualityScorer().lighting_from_stats(200, 120, 0.0, 0.0) == 85

    def test_clipped_shadows(self):
        assert QualityScorer().lighting_from_stats(128, 60, 0.10, 0.0) == 80

    def test_clamped_at_zero(self):
        assert QualityScorer().lighting_from_stats(0, 0, 1.0, 1.0) == 0

    def test_document_frame_is_well_lit(self):
        scorer = QualityScorer()
        metrics = scorer.measure(gray(make_document_frame()))
        score = scorer.lighting_from_stats(
            metrics.brightness, metrics.contrast, metrics.dark_ratio, metrics.bright_ratio
        )
        assert score == 100


class TestFusion:
    """Weighted overall score."""

    def test_weighted_sum(self):
        assert QualityScorer().fuse(80, 60, 80, detected=True) == 73

    def test_no_detection_ignores_stability(self):
        scorer = QualityScorer()
        assert scorer.fuse(100, 100, 100, detected=False) == 60
        assert scorer.fuse(100, 0, 0, detected=False) == 0

    def test_convex_combination_in_range(self):
        scorer = QualityScorer()
        ws, wsh, wl = scorer.weights
        for stability in (0, 33, 67, 100):
            for sharpness in (0, 21, 50, 100):
                for lighting in (0, 45, 100):
                    overall = scorer.fuse(stability, sharpness, lighting, detected=True)
                    exact = ws * stability + wsh * sharpness + wl * lighting
                    assert 0 <= overall <= 100
                    assert abs(overall - exact) <= 0.5 + 1e-9

    def test_custom_weights(self):
        scorer = QualityScorer(ScannerConfig(score_weights=(0.35, 0.35, 0.30)))
        assert scorer.fuse(100, 100, 0, detected=True) == 70


class TestQualityScorer:
    """Whole-frame scoring."""

    def test_stable_document_scores_full(self):
        scorer = QualityScorer()
        history = history_from_offsets([0, 0])
        scores, metrics = scorer.score(gray(make_document_frame()), history, detected=True)
        assert scores.stability == 100
        assert scores.sharpness == 100
        assert scores.lighting == 100
        assert scores.overall == 100
        assert metrics.avg_movement == pytest.approx(0.0)

    def test_first_detection_has_zero_stability(self):
        scorer = QualityScorer()
        scores, _ = scorer.score(gray(make_document_frame()), history_from_offsets([0]), detected=True)
        assert scores.stability == 0
        assert scores.overall == 60

    def test_no_detection(self):
        scorer = QualityScorer()
        scores, metrics = scorer.score(gray(make_blank_frame()), CornerHistory(7), detected=False)
        assert scores.stability == 0
        assert scores.sharpness == 0
        assert scores.overall < ScannerConfig().capture_threshold
        assert metrics.avg_movement is None

    def test_assess_standalone_image(self):
        scores = QualityScorer().assess(make_document_frame())
        assert scores.stability == 0
        assert scores.sharpness == 100
        assert scores.lighting == 100

    def test_assess_single_channel_image(self):
        frame = make_document_frame()
        single = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)[:, :, None]
        scorer = QualityScorer()
        assert scorer.assess(single) == scorer.assess(frame)
        assert scorer.assess(single[:, :, 0]) == scorer.assess(frame)

    def test_assess_rejects_missing_image(self):
        with pytest.raises(InvalidFrameError):
            QualityScorer().assess(None)

    def test_metrics_to_dict(self):
        _, metrics = QualityScorer().score(gray(make_document_frame()), CornerHistory(7), detected=False)
        data = metrics.to_dict()
        assert set(data) == {
            'laplacian_variance', 'brightness', 'contrast',
            'dark_ratio', 'bright_ratio', 'avg_movement'
        }
