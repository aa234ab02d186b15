from .base import BaseFeatureExtractor, KeyPoint
from .feature_matcher import FeatureMatcher, Match, MatchingMethod
from .opencv import DetectorType, OpenCVFeatureExtractor

__all__ = [
    "KeyPoint",
    "BaseFeatureExtractor",
    "DetectorType",
    "OpenCVFeatureExtractor",
    "Match",
    "MatchingMethod",
    "FeatureMatcher",
]
