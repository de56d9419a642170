"""
Layer 1 — Detection
Contour-based document detection, corner ordering and the OpenCV adapter.
"""
from .image_ops import ImageOps, ScratchBuffers
from .corners import (
    order_corners,
    order_corners_by_angle,
    is_valid_quadrilateral,
    polygon_area,
)
from .detector import QuadrilateralDetector

__all__ = [
    'ImageOps',
    'ScratchBuffers',
    'order_corners',
    'order_corners_by_angle',
    'is_valid_quadrilateral',
    'polygon_area',
    'QuadrilateralDetector'
]
