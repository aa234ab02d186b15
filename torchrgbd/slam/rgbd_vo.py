"""
RGB-D visual odometry with keyframes and loop closure.

This module wires the frontend components together: each synchronized
color/depth pair becomes a Frame, is registered by the active motion
estimation strategy, integrated into the global pose and offered to the
keyframe manager. New keyframes feed the loop-closure coordinator, whose
corrections are reported back through the per-frame result.
"""
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import torch

from ..backend.loop_solver import LoopSolver
from ..backend.se3 import RigidTransform
from ..backend.trajectory import Trajectory, TrajectorySnapshot
from ..config import merge_config
from ..frontend.camera import CameraIntrinsics
from ..frontend.depth_model import create_depth_model
from ..frontend.feature_extraction import (
    BaseFeatureExtractor,
    KeyPoint,
    OpenCVFeatureExtractor,
)
from ..frontend.frame import Frame
from ..frontend.keyframe import KeyframeManager
from ..frontend.loop_closure import LoopClosureCoordinator, LoopClosureEvent
from ..frontend.odometry import STRATEGIES, BaseMotionEstimator, MotionEstimate, create_estimator

FAILURE_POLICIES = ("identity", "constant_velocity")

# Strategies that need an explicit reference and cannot track on their own
VERIFICATION_ONLY = ("particle_loop",)


class RGBDVOStatus(Enum):
    """Status of the odometry pipeline after a frame."""

    INITIALIZING = 0  # First frame processed
    TRACKING = 1  # Motion estimated
    LOST = 2  # Estimation failed, fallback motion applied
    REJECTED = 3  # Frame out of order, nothing changed


class RGBDVisualOdometry:
    """
    Frame-to-frame RGB-D odometry with keyframe selection and loop closure.

    Frames must arrive in strictly increasing timestamp order; others are
    rejected without touching any state. A failed estimate never stops the
    pipeline: the configured failure policy supplies the motion instead.
    """

    def __init__(
        self,
        config: Dict = None,
        feature_extractor: Optional[BaseFeatureExtractor] = None,
        loop_solver: Optional[LoopSolver] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Configuration overrides, merged into ``DEFAULT_CONFIG``
            feature_extractor: Feature source used when a frame comes
                without keypoints (OpenCV detector from config by default)
            loop_solver: Solver used for loop closures
        """
        self.config = merge_config(config)
        self.logger = logging.getLogger(self.__class__.__name__)

        frame_config = self.config["frame"]
        self.max_range = frame_config["max_range"]
        self.max_stdev = frame_config["max_stdev"]
        self.depth_model = create_depth_model(frame_config)

        registration = self.config["registration"]
        self.failure_policy = registration["failure_policy"]
        if self.failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"Unknown failure policy: {self.failure_policy}")

        self._feature_extractor = feature_extractor

        self.trajectory = Trajectory()
        self.keyframe_manager = KeyframeManager(self.trajectory, self.config["keyframe"])

        loop_config = self.config["loop_closure"]
        self.loop_closure: Optional[LoopClosureCoordinator] = None
        if loop_config["enabled"]:
            self.loop_closure = LoopClosureCoordinator(
                self.trajectory, loop_config, solver=loop_solver
            )

        self.estimators: Dict[str, BaseMotionEstimator] = {}
        self.strategy: Optional[str] = None
        # Drained but not yet reported with a frame result
        self._pending_events: List[LoopClosureEvent] = []
        self.set_strategy(registration["type"])

        self.status = RGBDVOStatus.INITIALIZING
        self.frame_idx = 0
        self.last_timestamp: Optional[float] = None
        self.previous_frame: Optional[Frame] = None
        self.velocity = RigidTransform.identity()

        self.logger.info(f"Initialized RGB-D odometry with strategy '{self.strategy}'")

    @property
    def feature_extractor(self) -> BaseFeatureExtractor:
        if self._feature_extractor is None:
            features = self.config["features"]
            self._feature_extractor = OpenCVFeatureExtractor(
                detector=features["detector"],
                max_features=features["max_features"],
                smooth=features["smooth"],
            )
        return self._feature_extractor

    @property
    def estimator(self) -> BaseMotionEstimator:
        """The active motion estimation strategy."""
        return self.estimators[self.strategy]

    def set_strategy(self, name: str):
        """
        Switch the active registration strategy.

        Each strategy instance is kept, so switching back resumes its
        accumulated state. The newly active strategy is re-synchronised with
        the current global pose and the last processed frame, after pending
        loop corrections have been applied to every strategy.
        """
        if name not in STRATEGIES:
            raise ValueError(f"Unknown registration strategy: {name}")
        if name in VERIFICATION_ONLY:
            raise ValueError(f"Strategy '{name}' is only used for loop verification")

        if name not in self.estimators:
            self.estimators[name] = create_estimator(name, self.config[name])

        estimator = self.estimators[name]
        if self.strategy is not None and name != self.strategy:
            with self.trajectory.read():
                self._drain_loop_events()
                estimator.resync(self.previous_frame, self.trajectory.global_pose)
            self.logger.info(f"Switched registration strategy from '{self.strategy}' to '{name}'")
        self.strategy = name

    def start(self):
        """Start the background loop-closure worker, if configured."""
        if self.loop_closure is not None and self.config["loop_closure"]["background"]:
            self.loop_closure.start()

    def close(self):
        """Stop background activity."""
        if self.loop_closure is not None:
            self.loop_closure.stop()

    def __enter__(self) -> "RGBDVisualOdometry":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def build_frame(
        self,
        rgb: np.ndarray,
        depth: np.ndarray,
        intrinsics: Union[CameraIntrinsics, np.ndarray, torch.Tensor],
        timestamp: float,
        keypoints: Optional[Union[Sequence[KeyPoint], np.ndarray]] = None,
        descriptors: Optional[torch.Tensor] = None,
        frame_id: Optional[str] = None,
        depth_scale: Optional[float] = None,
    ) -> Frame:
        """Create a Frame and compute its keypoint distributions."""
        if not isinstance(intrinsics, CameraIntrinsics):
            intrinsics = CameraIntrinsics.from_matrix(intrinsics, depth.shape[1], depth.shape[0])

        if keypoints is None:
            keypoints, descriptors = self.feature_extractor.detect_and_compute(rgb)

        frame = Frame(
            rgb,
            depth,
            intrinsics,
            keypoints,
            descriptors,
            timestamp=timestamp,
            frame_id=frame_id or "",
            depth_scale=depth_scale,
        )
        return frame.compute_distributions(self.max_range, self.max_stdev, self.depth_model)

    def process_frame(
        self,
        rgb: np.ndarray,
        depth: np.ndarray,
        intrinsics: Union[CameraIntrinsics, np.ndarray, torch.Tensor],
        timestamp: float,
        keypoints: Optional[Union[Sequence[KeyPoint], np.ndarray]] = None,
        descriptors: Optional[torch.Tensor] = None,
        frame_id: Optional[str] = None,
        depth_scale: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Process a synchronized RGB-D image pair.

        Args:
            rgb: Color image (H, W, 3), uint8
            depth: Depth image (H, W), uint16 (millimetres by default) or float metres
            intrinsics: Camera intrinsics or a 3x3 camera matrix
            timestamp: Acquisition time; must increase strictly
            keypoints: Precomputed keypoints; detected with the feature
                extractor when omitted
            descriptors: Descriptors matching ``keypoints``
            frame_id: Coordinate frame identifier
            depth_scale: Metres per depth unit

        Returns:
            Dictionary with:
                - pose: Global pose after this frame
                - relative_pose: Motion applied for this frame (None if rejected)
                - success: Whether the motion was estimated
                - status: RGBDVOStatus
                - keyframe: Keyframe created for this frame, or None
                - loop_closures: LoopClosureEvents reported since the last frame
                - num_keypoints: Number of keypoints
                - num_valid: Number of keypoints with a valid 3D distribution
                - frame_idx: Number of frames processed so far
                - processing_time: Wall time spent in seconds
                - estimate: MotionEstimate of the active strategy (None if rejected)
        """
        start_time = time.time()

        if self.last_timestamp is not None and timestamp <= self.last_timestamp:
            self.logger.warning(
                f"Rejecting frame at t={timestamp:.6f}, not after t={self.last_timestamp:.6f}"
            )
            return {
                "pose": self.trajectory.global_pose,
                "relative_pose": None,
                "success": False,
                "status": RGBDVOStatus.REJECTED,
                "keyframe": None,
                "loop_closures": [],
                "num_keypoints": 0,
                "num_valid": 0,
                "frame_idx": self.frame_idx,
                "processing_time": time.time() - start_time,
                "estimate": None,
            }

        frame = self.build_frame(
            rgb, depth, intrinsics, timestamp, keypoints, descriptors, frame_id, depth_scale
        )
        self.frame_idx += 1

        if self.previous_frame is None:
            # Lets model strategies seed their model
            estimate = self.estimator.estimate_motion(frame)
            relative = RigidTransform.identity()
            with self.trajectory.write():
                self._drain_loop_events()
                pose = self.trajectory.integrator.pose.clone()
                keyframe = self.keyframe_manager.process(frame, pose, None, self.frame_idx)
            self.status = RGBDVOStatus.INITIALIZING
            success = True
        else:
            estimate = self._estimate(frame)
            success = estimate.success
            relative = estimate.transform if success else self._fallback_motion()

            with self.trajectory.write():
                self._drain_loop_events()
                pose = self.trajectory.integrator.integrate(relative).clone()
                keyframe = self.keyframe_manager.process(frame, pose, estimate, self.frame_idx)
                if not success:
                    self.estimator.set_reference_pose(pose)

            if success:
                self.velocity = relative
                self.status = RGBDVOStatus.TRACKING
            else:
                self.logger.warning(
                    f"Motion estimation failed at frame {self.frame_idx}: {estimate.message}"
                )
                self.status = RGBDVOStatus.LOST

        self.previous_frame = frame
        self.last_timestamp = timestamp

        if keyframe is not None and self.loop_closure is not None:
            self.loop_closure.notify_keyframe(keyframe.id)

        with self.trajectory.read():
            self._drain_loop_events()
        loop_closures, self._pending_events = self._pending_events, []

        return {
            "pose": self.trajectory.global_pose,
            "relative_pose": relative,
            "success": success,
            "status": self.status,
            "keyframe": keyframe,
            "loop_closures": loop_closures,
            "num_keypoints": frame.num_keypoints,
            "num_valid": frame.n_valid_keypoints,
            "frame_idx": self.frame_idx,
            "processing_time": time.time() - start_time,
            "estimate": estimate,
        }

    def _estimate(self, frame: Frame) -> MotionEstimate:
        guess = self.velocity if self.failure_policy == "constant_velocity" else None
        return self.estimator.estimate_motion(frame, initial_guess=guess)

    def _fallback_motion(self) -> RigidTransform:
        if self.failure_policy == "constant_velocity":
            return self.velocity.clone()
        return RigidTransform.identity()

    def _drain_loop_events(self) -> List[LoopClosureEvent]:
        """
        Apply queued loop corrections to every strategy.

        Must run under the trajectory lock. Events are queued under the same
        lock together with their correction, so once drained the strategies
        agree with the trajectory until the lock is released.
        """
        if self.loop_closure is None:
            return []

        events = self.loop_closure.poll_events()
        for event in events:
            if event.accepted and event.correction is not None:
                for estimator in self.estimators.values():
                    estimator.apply_correction(event.correction)
        self._pending_events.extend(events)
        return events

    def get_pose(self) -> RigidTransform:
        """Current global pose."""
        return self.trajectory.global_pose

    def get_snapshot(self) -> TrajectorySnapshot:
        """Consistent copy of the trajectory state."""
        return self.trajectory.snapshot()
