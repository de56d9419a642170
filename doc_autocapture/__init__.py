"""
Document Auto-Capture
Live document detection, capture-readiness scoring and auto capture.
Finds the document quadrilateral, scores stability / sharpness / lighting,
counts down while quality holds and returns a perspective-corrected scan.
"""
from .config import ScannerConfig
from .models import (
    AnimationPhase,
    CaptureState,
    CaptureTrigger,
    FrameAnalysis,
    Point,
    Quadrilateral,
    QualityScores,
    ScanResult,
)
from .auto_capture import AutoCaptureEngine, ScanSession

__all__ = [
    'ScannerConfig',
    'AnimationPhase',
    'CaptureState',
    'CaptureTrigger',
    'FrameAnalysis',
    'Point',
    'Quadrilateral',
    'QualityScores',
    'ScanResult',
    'AutoCaptureEngine',
    'ScanSession'
]
