import logging
import math
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..backend.se3 import RigidTransform
from ..backend.trajectory import EdgeKind, Keyframe, KeyframeEdge, Trajectory
from .frame import Frame
from .odometry.base import MotionEstimate


class PromotionMetric(Enum):
    """Criterion for promoting a frame to a keyframe."""

    DISPLACEMENT = "displacement"  # Translation or rotation since the active keyframe
    OVERLAP = "overlap"  # Correspondence count relative to the keyframe's valid points
    ANY = "any"  # Either of the above


class KeyframeManager:
    """
    Keyframe selection on top of the shared trajectory.

    The first processed frame becomes keyframe 0. After that, every
    successful estimate is checked against the active keyframe; when the
    promotion metric crosses its threshold the frame becomes a new
    keyframe, linked to the previous one by a sequential edge. Keyframes
    are never removed.
    """

    def __init__(self, trajectory: Trajectory, config: Dict = None):
        """
        Initialize keyframe manager.

        Args:
            trajectory: Shared trajectory owning the keyframe graph
            config: Configuration dictionary with the following keys:
                - kf_dist_eps: Translation threshold in metres
                - kf_angle_eps: Rotation threshold in degrees
                - kf_min_overlap: Overlap ratio below which a keyframe is added
                - promotion_metric: 'displacement', 'overlap' or 'any'
        """
        self.trajectory = trajectory
        self.config = config if config is not None else {}

        self.kf_dist_eps = self.config.get("kf_dist_eps", 0.10)
        self.kf_angle_eps = math.radians(self.config.get("kf_angle_eps", 10.0))
        self.kf_min_overlap = self.config.get("kf_min_overlap", 0.5)
        self.promotion_metric = PromotionMetric(self.config.get("promotion_metric", "displacement"))

        self.active_keyframe_id: Optional[int] = None
        self._last_promoted_frame: Optional[int] = None

        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def graph(self):
        return self.trajectory.graph

    @property
    def active_keyframe(self) -> Optional[Keyframe]:
        if self.active_keyframe_id is None:
            return None
        with self.trajectory.read():
            return self.graph.get_keyframe(self.active_keyframe_id)

    @property
    def num_keyframes(self) -> int:
        with self.trajectory.read():
            return len(self.graph)

    def reset(self):
        self.active_keyframe_id = None
        self._last_promoted_frame = None

    def relative_to_active(self, pose: RigidTransform) -> RigidTransform:
        """Transform from a global pose into the active keyframe's frame."""
        with self.trajectory.read():
            keyframe = self.graph.get_keyframe(self.active_keyframe_id)
            return keyframe.pose.inverse().compose(pose)

    def should_promote(
        self, relative: RigidTransform, estimate: Optional[MotionEstimate] = None
    ) -> bool:
        """
        Evaluate the promotion metric.

        Args:
            relative: Pose of the current frame in the active keyframe's frame
            estimate: Estimate of the current frame, for the overlap metric

        Returns:
            True if the frame should become a keyframe
        """
        displaced = (
            relative.translation_norm() > self.kf_dist_eps
            or relative.rotation_angle() > self.kf_angle_eps
        )

        low_overlap = False
        if estimate is not None and self.active_keyframe_id is not None:
            n_valid = self.active_keyframe.frame.n_valid_keypoints
            if n_valid > 0:
                low_overlap = estimate.num_correspondences / n_valid < self.kf_min_overlap

        if self.promotion_metric == PromotionMetric.DISPLACEMENT:
            return displaced
        if self.promotion_metric == PromotionMetric.OVERLAP:
            return low_overlap
        return displaced or low_overlap

    def process(
        self,
        frame: Frame,
        pose: RigidTransform,
        estimate: Optional[MotionEstimate],
        frame_index: int,
    ) -> Optional[Keyframe]:
        """
        Decide whether a processed frame becomes a keyframe.

        Must be called inside ``trajectory.write()`` so that promotion and
        the pose update form one logical update.

        Args:
            frame: The processed frame
            pose: Its global pose
            estimate: Its motion estimate, or None for the first frame
            frame_index: Index of the frame in the processed sequence

        Returns:
            The new keyframe, or None
        """
        if self._last_promoted_frame == frame_index:
            return None

        if self.active_keyframe_id is None:
            keyframe = self.graph.add_keyframe(frame, pose)
            self._activate(keyframe, frame_index)
            self.logger.info(f"Created initial keyframe {keyframe.id}")
            return keyframe

        if estimate is None or not estimate.success:
            return None

        relative = self.relative_to_active(pose)
        if not self.should_promote(relative, estimate):
            return None

        previous_id = self.active_keyframe_id
        keyframe = self.graph.add_keyframe(frame, pose)
        self.graph.add_edge(previous_id, keyframe.id, relative, EdgeKind.SEQUENTIAL)
        self._activate(keyframe, frame_index)
        self.logger.info(
            f"Promoted frame {frame_index} to keyframe {keyframe.id} "
            f"(|t|={relative.translation_norm():.3f}, "
            f"angle={math.degrees(relative.rotation_angle()):.1f} deg)"
        )
        return keyframe

    def _activate(self, keyframe: Keyframe, frame_index: int):
        self.active_keyframe_id = keyframe.id
        self._last_promoted_frame = frame_index

    def get_all_keyframes(self) -> List[Keyframe]:
        with self.trajectory.read():
            return list(self.graph.keyframes.values())

    def get_edges(self, keyframe_id: int) -> List[KeyframeEdge]:
        with self.trajectory.read():
            return self.graph.get_edges(keyframe_id)

    def graph_distance(self, a: int, b: int) -> float:
        with self.trajectory.read():
            return self.graph.graph_distance(a, b)

    def get_keyframes_near(
        self, pose: RigidTransform, radius: float, angle: float = math.pi
    ) -> List[Tuple[Keyframe, float]]:
        """Keyframes within ``radius`` metres and ``angle`` radians of a pose, nearest first."""
        with self.trajectory.read():
            return self.graph.get_keyframes_near(pose, radius, angle)
