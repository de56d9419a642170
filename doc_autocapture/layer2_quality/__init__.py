"""
Layer 2 — Quality
Stability tracking plus sharpness/lighting scoring and score fusion.
"""
from .stability import CornerHistory, movement_to_score, stability_score
from .quality import QualityScorer, QualityMetrics

__all__ = [
    'CornerHistory',
    'movement_to_score',
    'stability_score',
    'QualityScorer',
    'QualityMetrics'
]
