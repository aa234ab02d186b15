"""
PyTorch RGB-D Odometry Library

A PyTorch-based library estimating the 6-DOF motion of an RGB-D camera from
synchronized color and depth images, with keyframe selection and
loop-closure correction of the trajectory.

Major Components:
- Frontend: Depth uncertainty, frames, motion estimation strategies,
  keyframes and loop closure
- Backend: SE(3) algebra, the synchronized trajectory and loop solvers
- SLAM: The RGBDVisualOdometry pipeline
- Tools: Offline replay of saved frame sequences
"""
from torchrgbd.backend import (
    EdgeKind,
    Keyframe,
    KeyframeEdge,
    LoopSolver,
    RebasingLoopSolver,
    RigidTransform,
    SolverResult,
    Trajectory,
    TrajectorySnapshot,
)
from torchrgbd.config import DEFAULT_CONFIG, load_config, merge_config
from torchrgbd.frontend import (
    CameraIntrinsics,
    Frame,
    KeyframeManager,
    LoopClosureCoordinator,
    LoopClosureEvent,
)
from torchrgbd.frontend.feature_extraction import KeyPoint, OpenCVFeatureExtractor
from torchrgbd.frontend.odometry import MotionEstimate, create_estimator
from torchrgbd.slam import RGBDVisualOdometry, RGBDVOStatus

# Version information
from torchrgbd.version import __version__

__all__ = [
    "RigidTransform",
    "EdgeKind",
    "Keyframe",
    "KeyframeEdge",
    "Trajectory",
    "TrajectorySnapshot",
    "LoopSolver",
    "RebasingLoopSolver",
    "SolverResult",
    "DEFAULT_CONFIG",
    "merge_config",
    "load_config",
    "CameraIntrinsics",
    "Frame",
    "KeyframeManager",
    "LoopClosureCoordinator",
    "LoopClosureEvent",
    "KeyPoint",
    "OpenCVFeatureExtractor",
    "MotionEstimate",
    "create_estimator",
    "RGBDVisualOdometry",
    "RGBDVOStatus",
    "__version__",
]
