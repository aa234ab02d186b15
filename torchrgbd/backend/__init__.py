from .loop_solver import LoopSolver, RebasingLoopSolver, SolverResult
from .se3 import DEFAULT_DTYPE, RigidTransform
from .trajectory import (
    EdgeKind,
    Keyframe,
    KeyframeEdge,
    KeyframeGraph,
    PoseIntegrator,
    Trajectory,
    TrajectorySnapshot,
)

__all__ = [
    "DEFAULT_DTYPE",
    "RigidTransform",
    "EdgeKind",
    "Keyframe",
    "KeyframeEdge",
    "KeyframeGraph",
    "PoseIntegrator",
    "Trajectory",
    "TrajectorySnapshot",
    "LoopSolver",
    "RebasingLoopSolver",
    "SolverResult",
]
