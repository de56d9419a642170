"""
Data Model
Value types shared by every layer of the capture pipeline.
"""
import base64
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (not banker's rounding)."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Point:
    """Image-space coordinate (floating point, origin top-left)."""
    x: float
    y: float

    def distance_to(self, other: 'Point') -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def scaled(self, sx: float, sy: float) -> 'Point':
        return Point(self.x * sx, self.y * sy)

    def to_dict(self) -> Dict:
        return {'x': round(self.x, 2), 'y': round(self.y, 2)}

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> 'Point':
        return cls(float(values[0]), float(values[1]))


Corners = Tuple[Point, Point, Point, Point]


def corners_to_array(corners: Sequence[Point]) -> np.ndarray:
    """Pack points into the (N, 2) float32 layout OpenCV expects."""
    return np.array([[p.x, p.y] for p in corners], dtype=np.float32)


@dataclass(frozen=True)
class Quadrilateral:
    """
    Document boundary candidate.

    ``corners`` are in canonical order (top-left, top-right, bottom-right,
    bottom-left) whenever ``is_valid`` is True.
    """
    corners: Corners
    area_ratio: float
    is_valid: bool = True

    def __post_init__(self):
        if self.is_valid and len(self.corners) != 4:
            raise ValueError(f"Valid quadrilateral needs 4 corners, got {len(self.corners)}")

    def scaled(self, sx: float, sy: float) -> 'Quadrilateral':
        """Return a copy with every corner scaled (area ratio is scale invariant)."""
        return Quadrilateral(
            corners=tuple(p.scaled(sx, sy) for p in self.corners),
            area_ratio=self.area_ratio,
            is_valid=self.is_valid
        )


@dataclass(frozen=True)
class CornerHistoryEntry:
    frame_index: int
    corners: Corners
    timestamp_ms: float


@dataclass(frozen=True)
class QualityScores:
    """Capture readiness scores, each an integer in [0, 100]."""
    overall: int = 0
    stability: int = 0
    sharpness: int = 0
    lighting: int = 0

    def to_dict(self) -> Dict:
        return {
            'overall': self.overall,
            'stability': self.stability,
            'sharpness': self.sharpness,
            'lighting': self.lighting
        }


class CaptureState(str, Enum):
    IDLE = 'idle'
    COUNTABLE = 'countable'
    COUNTING = 'counting'
    CAPTURING = 'capturing'
    COOLDOWN = 'cooldown'


class AnimationPhase(str, Enum):
    """Cosmetic capture phase exposed to the UI layer."""
    IDLE = 'idle'
    PRE_CAPTURE = 'pre'
    FLASH = 'flash'
    POST_CAPTURE = 'post'


class CaptureTrigger(str, Enum):
    AUTO = 'auto'
    MANUAL = 'manual'


@dataclass
class ScanResult:
    """Final rectified document produced by one capture."""
    image: np.ndarray
    width: int
    height: int
    captured_at_ms: float
    corners: Corners
    quality: QualityScores
    trigger: CaptureTrigger = CaptureTrigger.AUTO

    def encode_png(self) -> bytes:
        """Encode the rectified image as PNG bytes."""
        ok, buffer = cv2.imencode('.png', self.image)
        if not ok:
            raise ValueError("PNG encoding failed")
        return buffer.tobytes()

    def to_data_url(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.encode_png()).decode('ascii')

    def to_dict(self, include_image: bool = False) -> Dict:
        """Convert to dictionary for API response."""
        result = {
            'width': self.width,
            'height': self.height,
            'captured_at_ms': self.captured_at_ms,
            'corners': [p.to_dict() for p in self.corners],
            'quality': self.quality.to_dict(),
            'trigger': self.trigger.value
        }
        if include_image:
            result['image'] = self.to_data_url()
        return result


@dataclass
class FrameAnalysis:
    """Per-frame snapshot handed to the overlay / UI layer."""
    frame_index: int
    timestamp_ms: float
    scores: QualityScores
    corners: Optional[Corners]
    state: CaptureState
    animation_phase: AnimationPhase
    countdown_seconds: int
    countdown_progress: float
    readiness_color: str
    result: Optional[ScanResult] = None

    @property
    def detected(self) -> bool:
        return self.corners is not None

    def to_dict(self, include_image: bool = False) -> Dict:
        data = {
            'frame_index': self.frame_index,
            'timestamp_ms': self.timestamp_ms,
            'detected': self.detected,
            'scores': self.scores.to_dict(),
            'corners': [p.to_dict() for p in self.corners] if self.corners else None,
            'state': self.state.value,
            'animation_phase': self.animation_phase.value,
            'countdown_seconds': self.countdown_seconds,
            'countdown_progress': round(self.countdown_progress, 3),
            'readiness_color': self.readiness_color,
            'captured': self.result is not None
        }
        if self.result is not None:
            data['result'] = self.result.to_dict(include_image=include_image)
        return data
