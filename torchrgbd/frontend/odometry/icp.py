from typing import Any, Dict, Optional, Tuple

import torch

from ...backend.se3 import RigidTransform
from ..frame import Frame
from .base import BaseMotionEstimator, MotionEstimate
from .registration import build_kdtree, nearest_neighbors, rigid_transform_svd


class ICPEstimator(BaseMotionEstimator):
    """
    Iterative Closest Point (ICP) registration of feature point clouds.

    Correspondences are Euclidean nearest neighbours; each iteration solves a
    point-to-point least-squares rigid update.
    """

    name = "icp"

    def __init__(self, config: Dict = None):
        """
        Initialize ICP estimator.

        Args:
            config: Configuration dictionary with the following keys:
                - max_iterations: Maximum number of iterations
                - distance_threshold: Maximum correspondence distance
                - convergence_threshold: Stop when the incremental translation
                  and rotation fall below this value
                - min_correspondences: Minimum number of point correspondences
        """
        super().__init__(config)

        self.distance_threshold = self.config.get("distance_threshold", 0.15)
        self.convergence_threshold = self.config.get("convergence_threshold", 1e-6)

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

        # Track the previous frame whatever the outcome
        if reference is None:
            self.previous_frame = frame

        if reference_frame is None:
            self.logger.info("No reference frame yet, initializing")
            return MotionEstimate(
                RigidTransform.identity(), True, message="initialized"
            )

        source = frame.construct_feature_point_cloud()
        target = reference_frame.construct_feature_point_cloud()
        return self.align(source, target, initial_guess)

    def align(
        self,
        source: torch.Tensor,
        target: torch.Tensor,
        initial_guess: Optional[RigidTransform] = None,
        distance_threshold: Optional[float] = None,
    ) -> MotionEstimate:
        """
        Align a source point cloud to a target point cloud.

        Args:
            source: Source points (N, 3)
            target: Target points (M, 3)
            initial_guess: Initial source-to-target transform
            distance_threshold: Override of the correspondence distance

        Returns:
            MotionEstimate with the source-to-target transform
        """
        distance_threshold = (
            distance_threshold if distance_threshold is not None else self.distance_threshold
        )
        if source.shape[0] < self.min_correspondences or target.shape[0] < self.min_correspondences:
            return MotionEstimate.failure(
                f"Not enough points: {source.shape[0]} source, {target.shape[0]} target",
                num_correspondences=min(source.shape[0], target.shape[0]),
            )

        transform = initial_guess.clone() if initial_guess is not None else RigidTransform.identity()
        tree = build_kdtree(target)

        converged = False
        iteration = 0
        num_correspondences = 0
        for iteration in range(1, self.max_iterations + 1):
            moved = transform.transform_points(source)
            src_idx, tgt_idx, _ = self._find_correspondences(tree, moved, distance_threshold)
            num_correspondences = src_idx.shape[0]

            if num_correspondences < self.min_correspondences:
                self.logger.warning(
                    f"Not enough correspondences: {num_correspondences} < {self.min_correspondences}"
                )
                return MotionEstimate.failure(
                    "not enough correspondences", num_correspondences, iteration
                )

            delta = rigid_transform_svd(moved[src_idx], target[tgt_idx])
            if delta is None:
                return MotionEstimate.failure(
                    "degenerate correspondences", num_correspondences, iteration
                )

            transform = delta.compose(transform)

            if (
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

        # Score the final estimate
        moved = transform.transform_points(source)
        src_idx, tgt_idx, distances = self._find_correspondences(tree, moved, distance_threshold)
        fitness = torch.mean(distances**2).item() if distances.numel() > 0 else float("inf")

        self.logger.debug(
            f"ICP converged after {iteration} iterations with {src_idx.shape[0]} inliers"
        )
        return MotionEstimate(
            transform,
            True,
            num_correspondences=num_correspondences,
            num_inliers=int(src_idx.shape[0]),
            fitness=fitness,
            iterations=iteration,
        )

    def _find_correspondences(
        self, tree, source_points: torch.Tensor, distance_threshold: float
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Find nearest neighbor correspondences between point clouds.

        Returns:
            Tuple of (source_indices, target_indices, distances)
        """
        distances, indices = nearest_neighbors(tree, source_points, distance_threshold)
        valid_mask = torch.isfinite(distances)
        source_indices = torch.arange(source_points.shape[0])[valid_mask]
        return source_indices, indices[valid_mask], distances[valid_mask]
