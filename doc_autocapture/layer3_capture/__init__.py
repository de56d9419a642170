"""
Layer 3 — Capture
Auto-capture countdown state machine and perspective rectification.
"""
from .state_machine import CaptureSession, CaptureStateMachine, StepResult
from .rectifier import Rectifier, RectifiedImage, destination_size

__all__ = [
    'CaptureSession',
    'CaptureStateMachine',
    'StepResult',
    'Rectifier',
    'RectifiedImage',
    'destination_size'
]
