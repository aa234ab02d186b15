"""
Frontend module for the RGB-D odometry library.

This module contains the per-frame components: depth uncertainty models,
the Frame entity, motion estimation strategies, keyframe selection and
loop-closure coordination.
"""

from .camera import CameraIntrinsics
from .depth_model import (
    BaseDepthModel,
    GaussianMixtureDepthModel,
    QuadraticDepthModel,
    create_depth_model,
)
from .frame import Frame
from .keyframe import KeyframeManager, PromotionMetric
from .loop_closure import LoopClosureCoordinator, LoopClosureEvent, LoopClosureStatus

__all__ = [
    "CameraIntrinsics",
    "BaseDepthModel",
    "QuadraticDepthModel",
    "GaussianMixtureDepthModel",
    "create_depth_model",
    "Frame",
    "KeyframeManager",
    "PromotionMetric",
    "LoopClosureCoordinator",
    "LoopClosureEvent",
    "LoopClosureStatus",
]
