import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ...backend.se3 import RigidTransform
from ..frame import Frame


@dataclass
class MotionEstimate:
    """
    Result of a motion estimation.

    ``transform`` maps coordinates of the current frame into the reference
    frame, i.e. it is the current camera pose expressed in the reference
    camera. It is only meaningful when ``success`` is True.
    """

    transform: RigidTransform
    success: bool
    num_correspondences: int = 0
    num_inliers: int = 0
    fitness: float = float("inf")  # Mean squared residual of the final inlier set
    iterations: int = 0
    message: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls, message: str, num_correspondences: int = 0, iterations: int = 0
    ) -> "MotionEstimate":
        """Create a failed estimate carrying an identity transform."""
        return cls(
            RigidTransform.identity(),
            False,
            num_correspondences=num_correspondences,
            iterations=iterations,
            message=message,
        )

    @property
    def inlier_ratio(self) -> float:
        if self.num_correspondences == 0:
            return 0.0
        return self.num_inliers / self.num_correspondences


class BaseMotionEstimator(ABC):
    """
    Base class for motion estimation strategies.

    Every strategy owns its state (previous frame, accumulated model) and
    reports failure through ``MotionEstimate.success`` instead of raising.
    """

    name = "base"

    def __init__(self, config: Dict = None):
        """
        Initialize motion estimator.

        Args:
            config: Configuration dictionary with the following keys:
                - min_correspondences: Minimum surviving correspondences
                - max_iterations: Hard cap on solver iterations
                - max_condition_number: Largest accepted normal matrix condition number
        """
        self.config = config if config is not None else {}
        self.min_correspondences = self.config.get("min_correspondences", 10)
        self.max_iterations = self.config.get("max_iterations", 30)
        self.max_condition_number = self.config.get("max_condition_number", 1e8)

        if self.min_correspondences < 3:
            raise ValueError(
                f"min_correspondences must be at least 3, got {self.min_correspondences}"
            )
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")

        self.previous_frame: Optional[Frame] = None

        # Initialize logger
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def estimate_motion(
        self,
        frame: Frame,
        reference: Any = None,
        initial_guess: Optional[RigidTransform] = None,
    ) -> MotionEstimate:
        """
        Estimate the motion of a frame relative to a reference.

        Args:
            frame: Current frame with computed distributions
            reference: Reference Frame or Keyframe; strategies that track
                the previous frame or an accumulated model use their own
                state when this is None
            initial_guess: Initial current-to-reference transform

        Returns:
            MotionEstimate
        """
        pass

    def reset(self):
        """Forget all accumulated state."""
        self.previous_frame = None

    def set_reference_pose(self, pose: RigidTransform):
        """Re-synchronise the strategy with the global pose of the last frame."""
        pass

    def resync(self, frame: Optional[Frame], pose: RigidTransform):
        """
        Continue tracking from a frame whose global pose is known.

        Used when the strategy becomes active in the middle of a sequence.
        """
        self.previous_frame = frame
        self.set_reference_pose(pose)

    def apply_correction(self, delta: RigidTransform):
        """Re-base accumulated world-frame state by a rigid correction."""
        pass

    @staticmethod
    def _resolve_reference(reference: Any) -> Optional[Frame]:
        # Keyframes carry their frame
        if reference is not None and not isinstance(reference, Frame):
            reference = getattr(reference, "frame", None)
            if not isinstance(reference, Frame):
                raise ValueError("Reference must be a Frame or a Keyframe")
        return reference

    @staticmethod
    def _check_frame(frame: Frame):
        if not frame.has_distributions:
            raise ValueError("Frame distributions must be computed before motion estimation")
