from typing import Any, Dict, Optional

import torch

from ...backend.se3 import RigidTransform
from ..feature_extraction import FeatureMatcher, MatchingMethod
from ..frame import Frame
from .base import BaseMotionEstimator, MotionEstimate
from .feature_model import FeatureModel
from .registration import is_degenerate_sample, rigid_transform_svd


class RansacEstimator(BaseMotionEstimator):
    """
    Descriptor-driven RANSAC registration.

    Correspondences come from descriptor matching between the valid
    keypoints of two frames. Random 3-point samples propose rigid
    transforms; the hypothesis with the most inliers is refined by least
    squares over its inlier set.
    """

    name = "ransac"

    def __init__(self, config: Dict = None):
        """
        Initialize RANSAC estimator.

        Args:
            config: Configuration dictionary with the following keys:
                - max_iterations: Number of RANSAC samples
                - inlier_threshold: Euclidean inlier distance
                - min_inliers: Minimum size of the best consensus set
                - min_correspondences: Minimum number of descriptor matches
                - refine_iterations: Re-estimation rounds on the inlier set
                - matching: 'mutual', 'ratio' or 'nearest'
                - ratio_threshold: Threshold for the ratio test
                - seed: Seed of the sampling generator
        """
        config = dict(config) if config is not None else {}
        config.setdefault("max_iterations", 200)
        super().__init__(config)

        self.inlier_threshold = self.config.get("inlier_threshold", 0.03)
        self.min_inliers = self.config.get("min_inliers", 6)
        self.refine_iterations = self.config.get("refine_iterations", 10)

        methods = {
            "mutual": MatchingMethod.MUTUAL_NEAREST,
            "ratio": MatchingMethod.RATIO_TEST,
            "nearest": MatchingMethod.NEAREST_NEIGHBOR,
        }
        matching = self.config.get("matching", "mutual")
        if matching not in methods:
            raise ValueError(f"Unknown matching method: {matching}")
        self.matcher = FeatureMatcher(
            method=methods[matching],
            ratio_threshold=self.config.get("ratio_threshold", 0.8),
            max_distance=self.config.get("max_descriptor_distance", float("inf")),
        )

        self.generator = torch.Generator()
        self.generator.manual_seed(self.config.get("seed", 0))

    def estimate_motion(
        self,
        frame: Frame,
        reference: Any = None,
        initial_guess: Optional[RigidTransform] = None,
    ) -> MotionEstimate:
        self._check_frame(frame)
        reference_frame = self._resolve_reference(reference)
        if reference_frame is None:
            reference_frame = self.previous_frame
        if reference is None:
            self.previous_frame = frame

        if reference_frame is None:
            self.logger.info("No reference frame yet, initializing")
            return MotionEstimate(RigidTransform.identity(), True, message="initialized")

        source = frame.valid_subset()
        target = reference_frame.valid_subset()
        src_idx, tgt_idx = self.matcher.match_indices(source["descriptors"], target["descriptors"])
        return self.solve(source["means"][src_idx], target["means"][tgt_idx])

    def solve(self, source: torch.Tensor, target: torch.Tensor) -> MotionEstimate:
        """
        Robustly estimate the transform mapping ``source`` onto ``target``.

        Args:
            source: Corresponding source points (N, 3)
            target: Corresponding target points (N, 3)

        Returns:
            MotionEstimate; ``extra['inlier_mask']`` holds the final inliers
        """
        n = source.shape[0]
        if n < self.min_correspondences:
            self.logger.warning(
                f"Not enough correspondences: {n} < {self.min_correspondences}"
            )
            return MotionEstimate.failure("not enough correspondences", n)

        best_mask = None
        best_count = 0
        iteration = 0
        for iteration in range(1, self.max_iterations + 1):
            sample = torch.randperm(n, generator=self.generator)[:3]
            if is_degenerate_sample(source[sample]) or is_degenerate_sample(target[sample]):
                continue

            hypothesis = rigid_transform_svd(source[sample], target[sample])
            if hypothesis is None:
                continue

            mask = self._inliers(hypothesis, source, target)
            count = int(mask.sum().item())
            if count > best_count:
                best_count = count
                best_mask = mask
                if count == n:
                    break

        if best_mask is None or best_count < self.min_inliers:
            return MotionEstimate.failure(
                f"best consensus too small: {best_count} < {self.min_inliers}", n, iteration
            )

        # Least-squares refinement over the consensus set
        transform = None
        mask = best_mask
        for _ in range(self.refine_iterations):
            refined = rigid_transform_svd(source[mask], target[mask])
            if refined is None:
                break
            transform = refined
            new_mask = self._inliers(transform, source, target)
            if int(new_mask.sum().item()) < self.min_inliers or torch.equal(new_mask, mask):
                break
            mask = new_mask

        if transform is None:
            return MotionEstimate.failure("degenerate consensus set", n, iteration)

        residuals = target[mask] - transform.transform_points(source[mask])
        fitness = torch.mean(torch.sum(residuals**2, dim=1)).item()
        self.logger.debug(f"RANSAC kept {int(mask.sum())}/{n} inliers after {iteration} samples")
        return MotionEstimate(
            transform,
            True,
            num_correspondences=n,
            num_inliers=int(mask.sum().item()),
            fitness=fitness,
            iterations=iteration,
            extra={"inlier_mask": mask},
        )

    def _inliers(
        self, transform: RigidTransform, source: torch.Tensor, target: torch.Tensor
    ) -> torch.Tensor:
        errors = torch.norm(transform.transform_points(source) - target, dim=1)
        return errors < self.inlier_threshold


class RansacModelEstimator(RansacEstimator):
    """
    RANSAC against the accumulated feature model.

    Frame descriptors are matched against the descriptors kept per model
    component, so features that dropped out of the previous frame can still
    be used. The registered frame is folded into the model afterwards.
    """

    name = "ransac_model"

    def __init__(self, config: Dict = None):
        """
        Initialize the model-based RANSAC estimator.

        Args:
            config: Configuration dictionary; on top of the RANSAC keys:
                - max_model_size: Maximum number of mixture components
                - max_age: Updates a component may go unseen before removal
        """
        super().__init__(config)
        self.model = FeatureModel(
            max_model_size=self.config.get("max_model_size", 3000),
            max_age=self.config.get("max_age", 20),
            max_association_distance=self.config.get("distance_threshold", 0.15),
        )
        self.pose = RigidTransform.identity()

    def reset(self):
        super().reset()
        self.model.clear()
        self.pose = RigidTransform.identity()

    def set_reference_pose(self, pose: RigidTransform):
        self.pose = pose.clone()

    def resync(self, frame: Optional[Frame], pose: RigidTransform):
        super().resync(frame, pose)
        if frame is not None and self.model.is_empty:
            subset = frame.valid_subset()
            if subset["descriptors"].shape[1] > 0:
                self._fold_in(subset, self.pose, None)

    def apply_correction(self, delta: RigidTransform):
        self.pose = delta.compose(self.pose)
        self.model.transform(delta)

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
        if subset["descriptors"].shape[1] == 0:
            return MotionEstimate.failure("frame has no descriptors")

        if self.model.is_empty:
            self._fold_in(subset, self.pose, None)
            self.logger.info(f"Model initialized with {len(self.model)} components")
            return MotionEstimate(RigidTransform.identity(), True, message="initialized")

        obs_idx, comp_idx = self.model.match_descriptors(subset["descriptors"], self.matcher)
        estimate = self.solve(subset["means"][obs_idx], self.model.means[comp_idx])
        if not estimate.success:
            return estimate

        world_pose = estimate.transform
        inliers = estimate.extra["inlier_mask"]
        estimate.transform = self.pose.inverse().compose(world_pose)
        self.pose = world_pose
        self._fold_in(subset, world_pose, (obs_idx[inliers], comp_idx[inliers]))
        return estimate

    def _fold_in(self, subset: Dict, pose: RigidTransform, matches):
        points = pose.transform_points(subset["means"])
        covariances = pose.rotate_covariances(subset["covariances"])
        obs_idx, comp_idx = matches if matches is not None else (None, None)
        self.model.update(points, covariances, subset["descriptors"], obs_idx, comp_idx)
