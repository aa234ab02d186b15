from typing import Any, Dict, Optional

from ...backend.se3 import RigidTransform
from ..frame import Frame
from .base import MotionEstimate
from .feature_model import FeatureModel
from .icp_model import CovarianceICPEstimator


class ProbabilisticModelEstimator(CovarianceICPEstimator):
    """
    Covariance-weighted ICP against a persistent Gaussian mixture model.

    Instead of re-registering against recent frames, every registered frame
    is folded into a ``FeatureModel``: matched components are refined,
    unmatched points become components and stale ones age out. This
    averages depth noise over time and bridges short detection gaps.
    """

    name = "icp_prob_model"

    def __init__(self, config: Dict = None):
        """
        Initialize the probabilistic model estimator.

        Args:
            config: Configuration dictionary; on top of the covariance ICP keys:
                - max_model_size: Maximum number of mixture components
                - max_age: Updates a component may go unseen before removal
        """
        super().__init__(config)
        self.model = FeatureModel(
            max_model_size=self.config.get("max_model_size", 3000),
            max_age=self.config.get("max_age", 20),
            max_association_distance=self.distance_threshold,
            mahalanobis_gate=self.mahalanobis_gate,
        )

    def reset(self):
        super().reset()
        self.model.clear()

    def apply_correction(self, delta: RigidTransform):
        self.pose = delta.compose(self.pose)
        self.model.transform(delta)

    @property
    def model_size(self) -> int:
        return len(self.model)

    def estimate_motion(
        self,
        frame: Frame,
        reference: Any = None,
        initial_guess: Optional[RigidTransform] = None,
    ) -> MotionEstimate:
        if reference is not None:
            return super().estimate_motion(frame, reference, initial_guess)

        self._check_frame(frame)
        subset = frame.valid_subset()
        source, source_cov = subset["means"], subset["covariances"]

        if self.model.is_empty:
            self._seed(subset)
            self.logger.info(f"Model initialized with {len(self.model)} components")
            return MotionEstimate(RigidTransform.identity(), True, message="initialized")

        def associate(points, covariances, gated=True):
            gate = None if gated else float("inf")
            obs_idx, comp_idx, _ = self.model.associate(points, covariances, gate)
            return obs_idx, comp_idx, self.model.means, self.model.covariances

        guess = initial_guess if initial_guess is not None else RigidTransform.identity()
        estimate = self.register(source, source_cov, self.pose.compose(guess), associate)
        if not estimate.success:
            return estimate

        world_pose = estimate.transform
        estimate.transform = self.pose.inverse().compose(world_pose)
        self.pose = world_pose
        self._fold_in(subset, world_pose)
        estimate.extra["model_size"] = len(self.model)
        return estimate

    def _seed(self, subset: Dict):
        self._fold_in(subset, self.pose)

    def _fold_in(self, subset: Dict, pose: RigidTransform):
        points = pose.transform_points(subset["means"])
        covariances = pose.rotate_covariances(subset["covariances"])
        obs_idx, comp_idx, _ = self.model.associate(points, covariances)
        descriptors = subset["descriptors"] if subset["descriptors"].shape[1] > 0 else None
        self.model.update(points, covariances, descriptors, obs_idx, comp_idx)
