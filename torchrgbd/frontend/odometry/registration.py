"""
Shared geometry for the motion estimation strategies.

All functions work on float64 tensors. Point sets are (N, 3), covariance
sets are (N, 3, 3); ``source`` points are mapped onto ``target`` points.
"""
from typing import Optional, Tuple

import numpy as np
import torch
from scipy.spatial import cKDTree

from ...backend.se3 import RigidTransform, batch_skew_symmetric

# 99% quantile of the chi-square distribution with 3 degrees of freedom
CHI2_3DOF_99 = 11.345


def rigid_transform_svd(
    source: torch.Tensor,
    target: torch.Tensor,
    weights: Optional[torch.Tensor] = None,
    min_singular_ratio: float = 1e-6,
) -> Optional[RigidTransform]:
    """
    Least-squares rigid transform mapping ``source`` onto ``target``.

    Args:
        source: Source points (N, 3)
        target: Target points (N, 3)
        weights: Optional per-point weights (N,)
        min_singular_ratio: Smallest accepted ratio between the second and
            the first singular value of the centred source points

    Returns:
        RigidTransform, or None when the points are coincident or collinear
    """
    if source.shape[0] < 3:
        return None

    if weights is None:
        weights = torch.ones(source.shape[0], dtype=source.dtype, device=source.device)
    w = weights / weights.sum()

    # Compute centroids
    source_centroid = torch.sum(w[:, None] * source, dim=0)
    target_centroid = torch.sum(w[:, None] * target, dim=0)

    centered_source = source - source_centroid
    centered_target = target - target_centroid

    # Collinear or coincident points do not constrain the rotation
    spread = torch.linalg.svdvals(centered_source * torch.sqrt(w)[:, None])
    if spread[0] <= 0 or spread[1] / spread[0] < min_singular_ratio:
        return None

    covariance = torch.matmul((w[:, None] * centered_source).t(), centered_target)
    U, _, Vh = torch.linalg.svd(covariance)
    V = Vh.t()

    # Ensure proper rotation matrix (det = 1)
    D = torch.eye(3, dtype=source.dtype, device=source.device)
    D[2, 2] = torch.sign(torch.det(torch.matmul(V, U.t())))
    rotation = torch.matmul(V, torch.matmul(D, U.t()))

    translation = target_centroid - torch.matmul(rotation, source_centroid)
    return RigidTransform(rotation, translation)


def is_degenerate_sample(points: torch.Tensor, min_area: float = 1e-6) -> bool:
    """
    Check whether a 3-point sample is coincident or collinear.

    Args:
        points: Sample points (3, 3)
        min_area: Smallest accepted triangle area
    """
    cross = torch.linalg.cross(points[1] - points[0], points[2] - points[0])
    return 0.5 * torch.norm(cross).item() < min_area


def build_kdtree(points: torch.Tensor) -> cKDTree:
    """KD-tree over a point set for Euclidean nearest-neighbour queries."""
    return cKDTree(points.detach().cpu().numpy())


def nearest_neighbors(
    tree: cKDTree, query: torch.Tensor, max_distance: float = float("inf"), k: int = 1
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Query nearest neighbours within a distance bound.

    Args:
        tree: KD-tree over the target points
        query: Query points (N, 3)
        max_distance: Neighbours further than this are reported as missing
        k: Number of neighbours

    Returns:
        Tuple of (distances, indices); shapes (N,) for k == 1, (N, k)
        otherwise. Missing neighbours have an infinite distance and the
        index ``tree.n``.
    """
    distances, indices = tree.query(
        query.detach().cpu().numpy(), k=k, distance_upper_bound=max_distance
    )
    return (
        torch.from_numpy(np.asarray(distances, dtype=np.float64)),
        torch.from_numpy(np.asarray(indices, dtype=np.int64)),
    )


def mahalanobis_squared(
    source: torch.Tensor,
    source_cov: torch.Tensor,
    target: torch.Tensor,
    target_cov: torch.Tensor,
) -> torch.Tensor:
    """
    Squared Mahalanobis distances of paired points under their summed covariance.

    Returns:
        Distances (N,)
    """
    diff = (target - source).unsqueeze(-1)
    combined = source_cov + target_cov
    solved = torch.linalg.solve(combined, diff)
    return torch.matmul(diff.transpose(1, 2), solved).reshape(-1)


def gauss_newton_step(
    source: torch.Tensor,
    source_cov: torch.Tensor,
    target: torch.Tensor,
    target_cov: torch.Tensor,
    transform: RigidTransform,
    max_condition_number: float = 1e8,
) -> Tuple[Optional[RigidTransform], float]:
    """
    One Gauss-Newton step of covariance-weighted registration on SE(3).

    Minimises sum_i r_i^T W_i r_i with r_i = t_i - T s_i and
    W_i = (R S_i R^T + S_t_i)^-1, linearising T <- exp(xi) * T.

    Args:
        source: Source points (N, 3) in their own frame
        source_cov: Source covariances (N, 3, 3)
        target: Target points (N, 3)
        target_cov: Target covariances (N, 3, 3)
        transform: Current source-to-target estimate
        max_condition_number: Largest accepted condition number of the
            normal matrix

    Returns:
        Tuple of (updated transform or None if ill-conditioned, cost at the
        current estimate)
    """
    moved = transform.transform_points(source)
    residuals = (target - moved).unsqueeze(-1)  # (N, 3, 1)
    W = torch.linalg.inv(transform.rotate_covariances(source_cov) + target_cov)

    n = source.shape[0]
    J = torch.zeros((n, 3, 6), dtype=source.dtype, device=source.device)
    J[:, :, :3] = torch.eye(3, dtype=source.dtype, device=source.device)
    J[:, :, 3:] = -batch_skew_symmetric(moved)

    JtW = torch.matmul(J.transpose(1, 2), W)
    H = torch.matmul(JtW, J).sum(dim=0)
    g = torch.matmul(JtW, residuals).sum(dim=0).reshape(6)
    cost = torch.matmul(residuals.transpose(1, 2), torch.matmul(W, residuals)).sum().item()

    if not torch.isfinite(H).all() or torch.linalg.cond(H).item() > max_condition_number:
        return None, cost

    xi = torch.linalg.solve(H, g)
    return RigidTransform.exp(xi).compose(transform), cost


def fuse_gaussians(
    mean_a: torch.Tensor,
    cov_a: torch.Tensor,
    mean_b: torch.Tensor,
    cov_b: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Kalman fusion of paired Gaussians (a is the prior, b the observation).

    Returns:
        Tuple of (fused means (N, 3), fused covariances (N, 3, 3))
    """
    gain = torch.matmul(cov_a, torch.linalg.inv(cov_a + cov_b))
    mean = mean_a + torch.matmul(gain, (mean_b - mean_a).unsqueeze(-1)).squeeze(-1)
    eye = torch.eye(3, dtype=cov_a.dtype, device=cov_a.device)
    cov = torch.matmul(eye - gain, cov_a)
    # Keep the result symmetric
    cov = 0.5 * (cov + cov.transpose(1, 2))
    return mean, cov

