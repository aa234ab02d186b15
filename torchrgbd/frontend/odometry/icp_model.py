from collections import deque
from typing import Any, Callable, Dict, Optional, Tuple

import torch

from ...backend.se3 import DEFAULT_DTYPE, RigidTransform
from ..frame import Frame
from .base import BaseMotionEstimator, MotionEstimate
from .registration import (
    CHI2_3DOF_99,
    build_kdtree,
    gauss_newton_step,
    mahalanobis_squared,
    nearest_neighbors,
)

# Maps moved points, covariances and whether to apply the Mahalanobis gate to
# (source indices, target indices, target means, target covariances)
Associator = Callable[
    [torch.Tensor, torch.Tensor, bool],
    Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor],
]


class CovarianceICPEstimator(BaseMotionEstimator):
    """
    Covariance-weighted ICP against a model of the most recent frames.

    The model holds the valid keypoint distributions of the last
    ``model_window`` frames in the world frame. Correspondences are chosen
    by Mahalanobis distance under the combined covariance and the pose is
    refined by Gauss-Newton on SE(3), so confident near points weigh more
    than noisy far ones. The first ``coarse_iterations`` associate on
    Euclidean distance alone: before the estimate has converged, correct
    pairs are typically many standard deviations apart.
    """

    name = "icp_model"

    def __init__(self, config: Dict = None):
        """
        Initialize covariance-weighted ICP.

        Args:
            config: Configuration dictionary with the following keys:
                - max_iterations: Maximum number of Gauss-Newton iterations
                - convergence_threshold: Stop when the update falls below this value
                - distance_threshold: Euclidean search radius for candidates
                - mahalanobis_gate: Largest accepted squared Mahalanobis distance
                - coarse_iterations: Leading iterations that skip the Mahalanobis gate
                - num_candidates: Nearest neighbours examined per point
                - model_window: Number of recent frames kept in the model
                - min_correspondences: Minimum number of correspondences
                - max_condition_number: Largest accepted normal matrix condition number
        """
        super().__init__(config)

        self.convergence_threshold = self.config.get("convergence_threshold", 1e-6)
        self.distance_threshold = self.config.get("distance_threshold", 0.15)
        self.mahalanobis_gate = self.config.get("mahalanobis_gate", CHI2_3DOF_99)
        self.coarse_iterations = self.config.get("coarse_iterations", 3)
        self.num_candidates = self.config.get("num_candidates", 5)
        self.model_window = self.config.get("model_window", 5)

        if not 0 <= self.coarse_iterations < self.max_iterations:
            raise ValueError(
                f"coarse_iterations must be in [0, {self.max_iterations}), got {self.coarse_iterations}"
            )

        # World pose of the last registered frame
        self.pose = RigidTransform.identity()
        self.window = deque(maxlen=self.model_window)

    def reset(self):
        super().reset()
        self.pose = RigidTransform.identity()
        self.window.clear()

    def set_reference_pose(self, pose: RigidTransform):
        self.pose = pose.clone()

    def resync(self, frame: Optional[Frame], pose: RigidTransform):
        super().resync(frame, pose)
        if frame is not None and self.model_size == 0:
            self._seed(frame.valid_subset())

    def apply_correction(self, delta: RigidTransform):
        self.pose = delta.compose(self.pose)
        self.window = deque(
            [(delta.transform_points(m), delta.rotate_covariances(c)) for m, c in self.window],
            maxlen=self.model_window,
        )

    @property
    def model_size(self) -> int:
        return sum(m.shape[0] for m, _ in self.window)

    def estimate_motion(
        self,
        frame: Frame,
        reference: Any = None,
        initial_guess: Optional[RigidTransform] = None,
    ) -> MotionEstimate:
        self._check_frame(frame)
        subset = frame.valid_subset()
        source, source_cov = subset["means"], subset["covariances"]
        guess = initial_guess if initial_guess is not None else RigidTransform.identity()

        reference_frame = self._resolve_reference(reference)
        if reference_frame is not None:
            # Pairwise registration, the model is left untouched
            target = reference_frame.valid_subset()
            associate = self._make_associator(target["means"], target["covariances"])
            return self.register(source, source_cov, guess, associate)

        if not self.window:
            self._seed(subset)
            self.logger.info(f"Model initialized with {source.shape[0]} points")
            return MotionEstimate(RigidTransform.identity(), True, message="initialized")

        target_means = torch.cat([m for m, _ in self.window])
        target_covs = torch.cat([c for _, c in self.window])
        associate = self._make_associator(target_means, target_covs)

        estimate = self.register(source, source_cov, self.pose.compose(guess), associate)
        if not estimate.success:
            return estimate

        world_pose = estimate.transform
        estimate.transform = self.pose.inverse().compose(world_pose)
        self.pose = world_pose
        self._add_to_model(source, source_cov, world_pose)
        return estimate

    def _seed(self, subset: Dict):
        """Start the model from a frame at the current pose."""
        self._add_to_model(subset["means"], subset["covariances"], self.pose)

    def _add_to_model(self, source: torch.Tensor, source_cov: torch.Tensor, pose: RigidTransform):
        self.window.append((pose.transform_points(source), pose.rotate_covariances(source_cov)))

    def _make_associator(
        self, target_means: torch.Tensor, target_covs: torch.Tensor
    ) -> Associator:
        """Build a Mahalanobis nearest-neighbour associator over a target set."""
        tree = build_kdtree(target_means) if target_means.shape[0] > 0 else None
        k = min(self.num_candidates, target_means.shape[0])

        def associate(points: torch.Tensor, covariances: torch.Tensor, gated: bool = True):
            empty = torch.zeros(0, dtype=torch.long)
            if tree is None or points.shape[0] == 0:
                return empty, empty, target_means, target_covs

            distances, indices = nearest_neighbors(tree, points, self.distance_threshold, k=k)
            if k == 1:
                distances, indices = distances[:, None], indices[:, None]

            found = torch.isfinite(distances)
            safe = torch.where(found, indices, torch.zeros_like(indices))
            if not gated:
                src_idx = torch.nonzero(found[:, 0]).squeeze(1)
                return src_idx, safe[src_idx, 0], target_means, target_covs

            n = points.shape[0]
            d2 = torch.full((n, k), float("inf"), dtype=DEFAULT_DTYPE)
            rows, cols = torch.nonzero(found, as_tuple=True)
            if rows.numel() > 0:
                d2[rows, cols] = mahalanobis_squared(
                    points[rows],
                    covariances[rows],
                    target_means[safe[rows, cols]],
                    target_covs[safe[rows, cols]],
                )

            best_d2, best_col = torch.min(d2, dim=1)
            valid = best_d2 < self.mahalanobis_gate
            src_idx = torch.nonzero(valid).squeeze(1)
            tgt_idx = safe[src_idx, best_col[src_idx]]
            return src_idx, tgt_idx, target_means, target_covs

        return associate

    def register(
        self,
        source: torch.Tensor,
        source_cov: torch.Tensor,
        initial: RigidTransform,
        associate: Associator,
    ) -> MotionEstimate:
        """
        Gauss-Newton registration of source distributions onto a target set.

        Args:
            source: Source means (N, 3) in the frame's coordinates
            source_cov: Source covariances (N, 3, 3)
            initial: Initial source-to-target transform
            associate: Callable returning (source indices, target indices,
                target means, target covariances) for moved source points,
                with or without the Mahalanobis gate

        Returns:
            MotionEstimate with the source-to-target transform
        """
        if source.shape[0] < self.min_correspondences:
            return MotionEstimate.failure(
                f"Not enough valid points: {source.shape[0]}", source.shape[0]
            )

        transform = initial.clone()
        num_correspondences = 0
        converged = False
        iteration = 0
        for iteration in range(1, self.max_iterations + 1):
            moved = transform.transform_points(source)
            moved_cov = transform.rotate_covariances(source_cov)
            gated = iteration > self.coarse_iterations
            src_idx, tgt_idx, target_means, target_covs = associate(moved, moved_cov, gated)
            num_correspondences = src_idx.shape[0]

            if num_correspondences < self.min_correspondences:
                self.logger.warning(
                    f"Not enough correspondences: {num_correspondences} < {self.min_correspondences}"
                )
                return MotionEstimate.failure(
                    "not enough correspondences", num_correspondences, iteration
                )

            updated, _ = gauss_newton_step(
                source[src_idx],
                source_cov[src_idx],
                target_means[tgt_idx],
                target_covs[tgt_idx],
                transform,
                self.max_condition_number,
            )
            if updated is None:
                self.logger.warning("Normal matrix is ill-conditioned")
                return MotionEstimate.failure("ill-conditioned", num_correspondences, iteration)

            delta = updated.compose(transform.inverse())
            transform = updated
            if gated and (
                delta.translation_norm() < self.convergence_threshold
                and delta.rotation_angle() < self.convergence_threshold
            ):
                converged = True
                break

        if not converged:
            return MotionEstimate.failure(
                f"did not converge in {self.max_iterations} iterations",
                num_correspondences,
                iteration,
            )

        moved = transform.transform_points(source)
        src_idx, tgt_idx, target_means, _ = associate(
            moved, transform.rotate_covariances(source_cov), True
        )
        residuals = target_means[tgt_idx] - moved[src_idx]
        fitness = (
            torch.mean(torch.sum(residuals**2, dim=1)).item() if src_idx.numel() > 0 else float("inf")
        )
        return MotionEstimate(
            transform,
            True,
            num_correspondences=num_correspondences,
            num_inliers=int(src_idx.shape[0]),
            fitness=fitness,
            iterations=iteration,
        )
