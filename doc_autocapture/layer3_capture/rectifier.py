"""
Layer 3 — Rectifier
Perspective correction of the detected document into an upright rectangle.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from ..error_handlers import InvalidGeometryError
from ..layer1_detection.corners import polygon_area
from ..layer1_detection.image_ops import ImageOps
from ..models import Point, corners_to_array, round_half_up

logger = logging.getLogger(__name__)


@dataclass
class RectifiedImage:
    image: np.ndarray
    width: int
    height: int
    transform: np.ndarray


def destination_size(corners: Sequence[Point]) -> Tuple[int, int]:
    """
    Output size from ordered corners (TL, TR, BR, BL).

    Width is the longer of the top and bottom edges, height the longer of
    the left and right edges; both rounded half up and at least 1 pixel.
    """
    tl, tr, br, bl = corners
    width = round_half_up(max(tl.distance_to(tr), bl.distance_to(br)))
    height = round_half_up(max(tl.distance_to(bl), tr.distance_to(br)))
    return max(width, 1), max(height, 1)


class Rectifier:
    """Maps an ordered quadrilateral onto a W x H rectangle."""

    def __init__(self, image_ops: Optional[ImageOps] = None):
        self.image_ops = image_ops or ImageOps()

    def rectify(self, frame: np.ndarray, corners: Optional[Sequence[Point]]) -> RectifiedImage:
        """
        Apply perspective transform to extract flat document.

        Args:
            frame: Source image
            corners: Ordered document corners (TL, TR, BR, BL)

        Returns:
            RectifiedImage of exactly width x height pixels

        Raises:
            InvalidGeometryError: If fewer than 4 corners are available
        """
        if not corners or len(corners) != 4:
            count = 0 if not corners else len(corners)
            raise InvalidGeometryError("rectification needs 4 ordered corners", corner_count=count)
        if polygon_area(corners) <= 0.0:
            raise InvalidGeometryError("corners enclose no area", corner_count=4)

        width, height = destination_size(corners)
        src = corners_to_array(corners)
        dst = np.array([
            [0, 0],
            [width, 0],
            [width, height],
            [0, height]
        ], dtype=np.float32)

        transform = self.image_ops.perspective_transform(src, dst)
        warped = self.image_ops.warp(frame, transform, (width, height))

        logger.debug(f"Perspective corrected to {width}x{height}")
        return RectifiedImage(image=warped, width=width, height=height, transform=transform)
