"""
Layer 1 — Quadrilateral Detector
Finds the single best document-shaped contour in a frame.

Pipeline:
1. Grayscale + Gaussian blur
2. Canny with thresholds derived from the frame's median intensity
3. External contours, filtered by area ratio
4. Polygon approximation (2% of perimeter), 4 convex vertices only
5. Largest valid candidate wins
"""
import logging
from typing import Optional

import numpy as np

from ..config import ScannerConfig
from ..models import Point, Quadrilateral
from .corners import is_valid_quadrilateral, order_corners
from .image_ops import ImageOps, ScratchBuffers

logger = logging.getLogger(__name__)


class QuadrilateralDetector:
    """
    Contour-based document detector.

    Returns ``None`` for frames without a usable document; "no detection"
    is a normal, frequent outcome and never raises.
    """

    def __init__(self, config: Optional[ScannerConfig] = None, image_ops: Optional[ImageOps] = None):
        self.config = config or ScannerConfig()
        self.image_ops = image_ops or ImageOps()
        logger.debug(
            f"QuadrilateralDetector initialized (area ratio "
            f"{self.config.min_document_area_ratio}-{self.config.max_document_area_ratio})"
        )

    def adaptive_thresholds(self, gray: np.ndarray):
        """
        Canny thresholds around the median gray value.

        Returns:
            Tuple of (lower, upper), clamped to [0, 255]
        """
        median_value = self.image_ops.median(gray)
        sigma = self.config.canny_sigma
        lower = max(0.0, (1.0 - sigma) * median_value)
        upper = min(255.0, (1.0 + sigma) * median_value)
        return lower, upper

    def detect(self, frame: np.ndarray, buffers: Optional[ScratchBuffers] = None) -> Optional[Quadrilateral]:
        """
        Detect the document boundary.

        Args:
            frame: BGR/BGRA/grayscale frame at processing resolution
            buffers: Optional scratch buffers matching the frame size

        Returns:
            Quadrilateral with canonically ordered corners, or None
        """
        if frame is None or getattr(frame, 'size', 0) == 0:
            return None
        gray = self.image_ops.to_grayscale(frame, dst=buffers.gray if buffers else None)
        return self.detect_in_gray(gray, buffers)

    def detect_in_gray(self, gray: np.ndarray, buffers: Optional[ScratchBuffers] = None) -> Optional[Quadrilateral]:
        """Same as detect() for an already converted grayscale frame."""
        if gray is None or gray.size == 0:
            return None
        cfg = self.config
        ops = self.image_ops
        frame_area = float(gray.shape[0] * gray.shape[1])

        blurred = ops.gaussian_blur(gray, cfg.blur_kernel_size, dst=buffers.blurred if buffers else None)
        lower, upper = self.adaptive_thresholds(gray)
        edges = ops.edge_detect(blurred, lower, upper, dst=buffers.edges if buffers else None)
        contours = ops.find_external_contours(edges)

        best: Optional[Quadrilateral] = None

        for contour in contours:
            area_ratio = ops.contour_area(contour) / frame_area
            if area_ratio < cfg.min_document_area_ratio or area_ratio > cfg.max_document_area_ratio:
                continue

            epsilon = cfg.approx_epsilon_ratio * ops.arc_length(contour)
            approx = ops.approx_polygon(contour, epsilon)
            if len(approx) != 4 or not ops.is_convex(approx):
                continue

            points = [Point.from_sequence(p) for p in approx.reshape(4, 2)]
            ordered = order_corners(points)
            if not is_valid_quadrilateral(ordered, cfg.min_quad_area_px, cfg.min_angle_degrees):
                logger.debug(f"Rejected degenerate quadrilateral (area ratio {area_ratio:.3f})")
                continue

            # Strict comparison keeps the first candidate on ties
            if best is None or area_ratio > best.area_ratio:
                best = Quadrilateral(corners=ordered, area_ratio=area_ratio, is_valid=True)

        if best is None:
            logger.debug(f"No document among {len(contours)} contours (canny {lower:.0f}/{upper:.0f})")
        return best
