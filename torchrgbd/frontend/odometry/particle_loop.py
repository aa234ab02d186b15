from typing import Any, Callable, Dict, List, Optional

import torch

from ...backend.se3 import DEFAULT_DTYPE, RigidTransform
from ..frame import Frame
from .base import BaseMotionEstimator, MotionEstimate
from .icp import ICPEstimator
from .ransac import RansacEstimator
from .registration import build_kdtree, nearest_neighbors


class ParticleLoopEstimator(BaseMotionEstimator):
    """
    Particle filter verification of loop-closure candidates.

    A set of weighted pose hypotheses is seeded from the initial guess and,
    when descriptors allow it, from a RANSAC hypothesis. Each round perturbs
    the particles, scores them by a truncated nearest-neighbour alignment
    cost against the candidate keyframe and resamples them systematically
    while the perturbation noise is annealed. The best particle is refined
    by ICP and accepted only if enough points end up as inliers.
    """

    name = "particle_loop"

    def __init__(self, config: Dict = None):
        """
        Initialize the particle filter verifier.

        Args:
            config: Configuration dictionary with the following keys:
                - num_particles: Number of pose hypotheses
                - num_rounds: Perturb/score/resample rounds
                - translation_noise: Initial perturbation std-dev (metres)
                - rotation_noise: Initial perturbation std-dev (radians)
                - annealing: Noise decay factor per round
                - truncation_distance: Residual cap in the alignment cost
                - inlier_threshold: Inlier distance after refinement
                - min_inlier_ratio: Minimum inlier fraction for acceptance
                - use_ransac_seed: Seed particles from descriptor RANSAC
                - icp: Configuration of the refining ICP
                - ransac: Configuration of the seeding RANSAC
                - seed: Seed of the sampling generator
        """
        super().__init__(config)

        self.num_particles = self.config.get("num_particles", 100)
        self.num_rounds = self.config.get("num_rounds", 15)
        self.translation_noise = self.config.get("translation_noise", 0.05)
        self.rotation_noise = self.config.get("rotation_noise", 0.05)
        self.annealing = self.config.get("annealing", 0.7)
        self.truncation_distance = self.config.get("truncation_distance", 0.1)
        self.inlier_threshold = self.config.get("inlier_threshold", 0.05)
        self.min_inlier_ratio = self.config.get("min_inlier_ratio", 0.3)
        self.use_ransac_seed = self.config.get("use_ransac_seed", True)

        if self.num_particles < 1:
            raise ValueError(f"num_particles must be positive, got {self.num_particles}")

        icp_config = dict(self.config.get("icp", {}))
        icp_config.setdefault("min_correspondences", self.min_correspondences)
        icp_config.setdefault("distance_threshold", self.truncation_distance)
        self.icp = ICPEstimator(icp_config)

        ransac_config = dict(self.config.get("ransac", {}))
        ransac_config.setdefault("min_correspondences", self.min_correspondences)
        self.ransac = RansacEstimator(ransac_config)

        self.generator = torch.Generator()
        self.generator.manual_seed(self.config.get("seed", 0))

    def estimate_motion(
        self,
        frame: Frame,
        reference: Any = None,
        initial_guess: Optional[RigidTransform] = None,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> MotionEstimate:
        """
        Verify a loop-closure candidate.

        Args:
            frame: Query frame
            reference: Candidate Frame or Keyframe
            initial_guess: Prior query-to-candidate transform, usually from
                the current pose estimates
            should_abort: Polled between rounds; returning True abandons the
                verification with a failed estimate

        Returns:
            MotionEstimate with the query-to-candidate transform
        """
        self._check_frame(frame)
        reference_frame = self._resolve_reference(reference)
        if reference_frame is None:
            raise ValueError("Loop verification needs a reference keyframe")

        source_subset = frame.valid_subset()
        target_subset = reference_frame.valid_subset()
        source = source_subset["means"]
        target = target_subset["means"]
        if source.shape[0] < self.min_correspondences or target.shape[0] < self.min_correspondences:
            return MotionEstimate.failure(
                "not enough valid points", min(source.shape[0], target.shape[0])
            )

        guess = initial_guess if initial_guess is not None else RigidTransform.identity()
        seeds = [guess]
        if self.use_ransac_seed and source_subset["descriptors"].shape[1] > 0:
            src_idx, tgt_idx = self.ransac.matcher.match_indices(
                source_subset["descriptors"], target_subset["descriptors"]
            )
            seeded = self.ransac.solve(source[src_idx], target[tgt_idx])
            if seeded.success:
                seeds.append(seeded.transform)

        particles = [seeds[i % len(seeds)].clone() for i in range(self.num_particles)]
        tree = build_kdtree(target)

        translation_noise = self.translation_noise
        rotation_noise = self.rotation_noise
        best = seeds[0]
        best_cost = self._cost(tree, source, best)
        for seed in seeds[1:]:
            cost = self._cost(tree, source, seed)
            if cost < best_cost:
                best, best_cost = seed, cost

        for round_idx in range(1, self.num_rounds + 1):
            if should_abort is not None and should_abort():
                self.logger.info(f"Verification aborted after {round_idx - 1} rounds")
                return MotionEstimate.failure("aborted", iterations=round_idx - 1)

            particles = [
                self._perturb(p, translation_noise, rotation_noise) for p in particles
            ]
            costs = torch.tensor(
                [self._cost(tree, source, p) for p in particles], dtype=DEFAULT_DTYPE
            )

            min_cost, min_idx = torch.min(costs, dim=0)
            if min_cost.item() < best_cost:
                best_cost = min_cost.item()
                best = particles[min_idx.item()]

            # Costs are mean squared residuals; normalize by the truncation scale
            weights = torch.exp(-(costs - min_cost) / (self.truncation_distance**2 / 10.0))
            particles = self._resample(particles, weights)

            translation_noise *= self.annealing
            rotation_noise *= self.annealing

        refined = self.icp.align(source, target, best, self.truncation_distance)
        transform = refined.transform if refined.success else best

        distances, _ = nearest_neighbors(tree, transform.transform_points(source))
        inliers = distances < self.inlier_threshold
        num_inliers = int(inliers.sum().item())
        inlier_ratio = num_inliers / source.shape[0]
        fitness = (
            torch.mean(distances[inliers] ** 2).item() if num_inliers > 0 else float("inf")
        )

        success = inlier_ratio >= self.min_inlier_ratio and num_inliers >= self.min_correspondences
        self.logger.debug(
            f"Loop verification: {num_inliers}/{source.shape[0]} inliers "
            f"(ratio {inlier_ratio:.2f}), cost {best_cost:.5f}"
        )
        return MotionEstimate(
            transform,
            success,
            num_correspondences=int(source.shape[0]),
            num_inliers=num_inliers,
            fitness=fitness,
            iterations=self.num_rounds,
            message="" if success else f"inlier ratio {inlier_ratio:.2f} below {self.min_inlier_ratio}",
        )

    def _cost(self, tree, source: torch.Tensor, transform: RigidTransform) -> float:
        """Mean squared nearest-neighbour distance, truncated per point."""
        distances, _ = nearest_neighbors(tree, transform.transform_points(source))
        truncated = torch.clamp(distances, max=self.truncation_distance)
        return torch.mean(truncated**2).item()

    def _perturb(
        self, transform: RigidTransform, translation_noise: float, rotation_noise: float
    ) -> RigidTransform:
        noise = torch.randn(6, generator=self.generator, dtype=DEFAULT_DTYPE)
        noise[:3] *= translation_noise
        noise[3:] *= rotation_noise
        return RigidTransform.exp(noise).compose(transform)

    def _resample(
        self, particles: List[RigidTransform], weights: torch.Tensor
    ) -> List[RigidTransform]:
        """
        Resample particles based on their weights.

        This uses the systematic resampling algorithm for lower variance.
        """
        n = len(particles)

        # Compute cumulative sum of weights, scaled to [0, 1]
        cumsum = torch.cumsum(weights, dim=0)
        cumsum = cumsum / cumsum[-1]

        # Draw starting point from uniform distribution
        u = torch.rand(1, generator=self.generator, dtype=DEFAULT_DTYPE).item() / n

        new_particles = []
        i = 0
        for _ in range(n):
            while i < n - 1 and u > cumsum[i]:
                i += 1
            new_particles.append(particles[i].clone())
            u += 1.0 / n

        return new_particles
