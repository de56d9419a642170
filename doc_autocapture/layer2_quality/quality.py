"""
Layer 2 — Quality Assessment
Capture-readiness scoring for live frames.
Evaluates stability, sharpness and lighting and fuses them into one score.
"""
import numpy as np
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..config import ScannerConfig
from ..layer1_detection.image_ops import ImageOps, ScratchBuffers
from ..models import QualityScores, round_half_up
from .stability import CornerHistory, stability_score

logger = logging.getLogger(__name__)


def clamp_score(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


@dataclass
class QualityMetrics:
    """Raw measurements behind the quality scores."""
    laplacian_variance: float   # Higher = sharper
    brightness: float           # Mean luminance (0-255)
    contrast: float             # Standard deviation of luminance
    dark_ratio: float           # Fraction of near-black pixels
    bright_ratio: float         # Fraction of near-white pixels
    avg_movement: Optional[float] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'laplacian_variance': round(self.laplacian_variance, 2),
            'brightness': round(self.brightness, 2),
            'contrast': round(self.contrast, 2),
            'dark_ratio': round(self.dark_ratio, 4),
            'bright_ratio': round(self.bright_ratio, 4),
            'avg_movement': None if self.avg_movement is None else round(self.avg_movement, 2)
        }


class QualityScorer:
    """
    Per-frame capture readiness scoring.

    Sub-scores are integers in [0, 100]; ``overall`` is the weighted sum
    ``w_stability * stability + w_sharpness * sharpness + w_lighting * lighting``
    with stability forced to 0 while no document is detected.
    """

    # Lighting penalty model
    LIGHTING = {
        'dark_mean': 80.0,           # Mean below this is underexposed
        'dark_mean_slope': 0.8,
        'dark_mean_cap': 60.0,
        'bright_mean': 180.0,        # Mean above this is overexposed
        'bright_mean_slope': 0.6,
        'bright_mean_cap': 60.0,
        'low_contrast': 40.0,        # Stddev below this is flat
        'low_contrast_slope': 1.0,
        'low_contrast_cap': 50.0,
        'high_contrast': 110.0,      # Stddev above this is harsh
        'high_contrast_slope': 0.3,
        'high_contrast_cap': 20.0,
        'saturation_tolerance': 0.05,
        'saturation_slope': 400.0,
        'saturation_cap': 40.0,
        'dark_pixel_max': 5,
        'bright_pixel_min': 250,
    }

    def __init__(self, config: Optional[ScannerConfig] = None, image_ops: Optional[ImageOps] = None):
        self.config = config or ScannerConfig()
        self.image_ops = image_ops or ImageOps()
        self.weights = tuple(self.config.score_weights)
        logger.debug(f"QualityScorer initialized with weights {self.weights}")

    def sharpness_from_variance(self, variance: float) -> int:
        """
        Map Laplacian variance onto [0, 100].

        Two linear segments: floor..midpoint covers 0-50 and
        midpoint..ceiling covers 50-100, which makes the score most
        responsive in the borderline-blur range.
        """
        low, mid, high = self.config.sharpness_thresholds
        if variance >= high:
            return 100
        if variance <= low:
            return 0
        if variance < mid:
            ratio = (variance - low) / (mid - low)
            return max(0, round_half_up(ratio * 50))
        ratio = (variance - mid) / (high - mid)
        return min(100, round_half_up(50 + ratio * 50))

    def laplacian_variance(self, gray: np.ndarray, buffers: Optional[ScratchBuffers] = None) -> float:
        laplacian = self.image_ops.laplacian(gray, dst=buffers.laplacian if buffers else None)
        _, stddev = self.image_ops.mean_std_dev(laplacian)
        return stddev ** 2

    def lighting_from_stats(self, brightness: float, contrast: float, dark_ratio: float, bright_ratio: float) -> int:
        """Start at 100 and subtract exposure, contrast and clipping penalties."""
        t = self.LIGHTING
        score = 100.0

        if brightness < t['dark_mean']:
            score -= min(t['dark_mean_cap'], (t['dark_mean'] - brightness) * t['dark_mean_slope'])
        elif brightness > t['bright_mean']:
            score -= min(t['bright_mean_cap'], (brightness - t['bright_mean']) * t['bright_mean_slope'])

        if contrast < t['low_contrast']:
            score -= min(t['low_contrast_cap'], (t['low_contrast'] - contrast) * t['low_contrast_slope'])
        elif contrast > t['high_contrast']:
            score -= min(t['high_contrast_cap'], (contrast - t['high_contrast']) * t['high_contrast_slope'])

        tolerance = t['saturation_tolerance']
        for ratio in (dark_ratio, bright_ratio):
            if ratio > tolerance:
                score -= min(t['saturation_cap'], (ratio - tolerance) * t['saturation_slope'])

        return clamp_score(score)

    def fuse(self, stability: int, sharpness: int, lighting: int, detected: bool) -> int:
        """Weighted overall score; stability counts only while a document is held."""
        w_stability, w_sharpness, w_lighting = self.weights
        effective_stability = stability if detected else 0
        return clamp_score(
            w_stability * effective_stability +
            w_sharpness * sharpness +
            w_lighting * lighting
        )

    def measure(self, gray: np.ndarray, buffers: Optional[ScratchBuffers] = None) -> QualityMetrics:
        """Raw sharpness and lighting measurements of a grayscale frame."""
        t = self.LIGHTING
        variance = self.laplacian_variance(gray, buffers)
        brightness, contrast = self.image_ops.mean_std_dev(gray)
        dark_ratio, bright_ratio = self.image_ops.saturation_ratios(
            gray, t['dark_pixel_max'], t['bright_pixel_min']
        )
        return QualityMetrics(
            laplacian_variance=variance,
            brightness=brightness,
            contrast=contrast,
            dark_ratio=dark_ratio,
            bright_ratio=bright_ratio
        )

    def score(
        self,
        gray: np.ndarray,
        history: CornerHistory,
        detected: bool,
        buffers: Optional[ScratchBuffers] = None
    ) -> Tuple[QualityScores, QualityMetrics]:
        """
        Score one frame.

        Args:
            gray: Grayscale frame at processing resolution
            history: Corner history already including this frame's corners
                (empty when nothing was detected)
            detected: Whether a valid quadrilateral was found
            buffers: Optional scratch buffers

        Returns:
            Tuple of (QualityScores, QualityMetrics)
        """
        cfg = self.config
        metrics = self.measure(gray, buffers)

        if detected:
            metrics.avg_movement = history.average_movement()
            stability = stability_score(history, cfg.stability_low_px, cfg.stability_high_px)
        else:
            stability = 0

        sharpness = self.sharpness_from_variance(metrics.laplacian_variance)
        lighting = self.lighting_from_stats(
            metrics.brightness, metrics.contrast, metrics.dark_ratio, metrics.bright_ratio
        )
        overall = self.fuse(stability, sharpness, lighting, detected)

        return QualityScores(
            overall=overall,
            stability=stability,
            sharpness=sharpness,
            lighting=lighting
        ), metrics

    def assess(self, image: np.ndarray) -> QualityScores:
        """
        Sharpness and lighting of a standalone image (no stability).

        Args:
            image: BGR, BGRA or grayscale image (numpy array)

        Returns:
            QualityScores with stability 0

        Raises:
            InvalidFrameError: If the image is empty or oddly shaped
        """
        self.image_ops.validate_frame(image)
        gray = self.image_ops.to_grayscale(image)
        scores, _ = self.score(gray, CornerHistory(self.config.stability_window), detected=False)
        return scores
