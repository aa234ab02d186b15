import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

from .se3 import RigidTransform
from .trajectory import EdgeKind, KeyframeEdge


@dataclass
class SolverResult:
    """Outcome of a loop-closure solve."""

    success: bool
    poses: Dict[int, RigidTransform] = field(default_factory=dict)  # Corrected poses only
    message: str = ""


class LoopSolver(ABC):
    """Interface of the external pose-graph solver used for loop closure."""

    def __init__(self, config: Dict = None):
        self.config = config if config is not None else {}
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def solve(
        self, poses: Mapping[int, RigidTransform], edges: Sequence[KeyframeEdge]
    ) -> SolverResult:
        """
        Compute corrected keyframe poses for a constraint graph.

        Args:
            poses: Current global pose per keyframe id
            edges: All graph edges including the new loop edge

        Returns:
            SolverResult; on success ``poses`` holds the keyframes whose
            pose changes. Failure means no improvement was found.
        """
        pass


class RebasingLoopSolver(LoopSolver):
    """
    Close the newest loop edge by rigidly re-basing the query keyframe.

    The query keyframe (edge source) is moved so that the loop constraint
    holds exactly; every keyframe created after it is moved by the same
    correction. Older keyframes keep their pose.
    """

    def __init__(self, config: Dict = None):
        """
        Initialize rebasing solver.

        Args:
            config: Configuration dictionary with the following keys:
                - min_translation: Smallest correction worth applying (metres)
                - min_rotation: Smallest correction worth applying (radians)
        """
        super().__init__(config)
        self.min_translation = self.config.get("min_translation", 1e-3)
        self.min_rotation = self.config.get("min_rotation", 1e-3)

    def solve(
        self, poses: Mapping[int, RigidTransform], edges: Sequence[KeyframeEdge]
    ) -> SolverResult:
        loop_edges: List[KeyframeEdge] = [e for e in edges if e.kind == EdgeKind.LOOP]
        if not loop_edges:
            return SolverResult(False, message="no loop edge")

        edge = loop_edges[-1]
        if edge.source not in poses or edge.target not in poses:
            return SolverResult(False, message="loop edge references unknown keyframes")

        # pose(source) = pose(target) * T^-1 must hold after the correction
        corrected_query = poses[edge.target].compose(edge.transform.inverse())
        delta = corrected_query.compose(poses[edge.source].inverse())

        if (
            delta.translation_norm() < self.min_translation
            and delta.rotation_angle() < self.min_rotation
        ):
            return SolverResult(False, message="no improvement found")

        corrected = {
            kf_id: delta.compose(pose) for kf_id, pose in poses.items() if kf_id >= edge.source
        }
        self.logger.debug(
            f"Re-based {len(corrected)} keyframes from {edge.source} "
            f"(|t|={delta.translation_norm():.3f})"
        )
        return SolverResult(True, corrected)
