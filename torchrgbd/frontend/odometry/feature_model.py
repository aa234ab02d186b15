import logging
from typing import Optional, Tuple

import torch

from ...backend.se3 import DEFAULT_DTYPE, RigidTransform
from .registration import (
    CHI2_3DOF_99,
    build_kdtree,
    fuse_gaussians,
    mahalanobis_squared,
    nearest_neighbors,
)


class FeatureModel:
    """
    Persistent Gaussian mixture of 3D landmarks in the world frame.

    Each component has a mean, a covariance, a descriptor and the update
    index at which it was last observed. Matched observations are fused
    with a Kalman update, unmatched ones become new components, components
    unseen for more than ``max_age`` updates are dropped and the model is
    capped at ``max_model_size`` components, evicting the oldest-seen first.
    """

    def __init__(
        self,
        max_model_size: int = 3000,
        max_age: int = 20,
        max_association_distance: float = 0.3,
        mahalanobis_gate: float = CHI2_3DOF_99,
    ):
        self.max_model_size = max_model_size
        self.max_age = max_age
        self.max_association_distance = max_association_distance
        self.mahalanobis_gate = mahalanobis_gate
        self.logger = logging.getLogger(self.__class__.__name__)
        self.clear()

    def clear(self):
        self.means = torch.zeros((0, 3), dtype=DEFAULT_DTYPE)
        self.covariances = torch.zeros((0, 3, 3), dtype=DEFAULT_DTYPE)
        self.descriptors: Optional[torch.Tensor] = None
        self.last_seen = torch.zeros(0, dtype=torch.long)
        self.update_count = 0
        self._tree = None

    def __len__(self) -> int:
        return self.means.shape[0]

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def _kdtree(self):
        if self._tree is None:
            self._tree = build_kdtree(self.means)
        return self._tree

    def associate(
        self, points: torch.Tensor, covariances: torch.Tensor, gate: Optional[float] = None
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Associate world-frame observations with model components.

        Candidates are the Euclidean nearest components within
        ``max_association_distance``; they are kept when the squared
        Mahalanobis distance passes the gate, ``mahalanobis_gate`` unless
        ``gate`` overrides it. Each component is used by at most one
        observation (the closest).

        Returns:
            Tuple of (observation indices, component indices, squared
            Mahalanobis distances)
        """
        empty = torch.zeros(0, dtype=torch.long)
        if self.is_empty or points.shape[0] == 0:
            return empty, empty, torch.zeros(0, dtype=DEFAULT_DTYPE)

        distances, indices = nearest_neighbors(
            self._kdtree(), points, self.max_association_distance
        )
        found = torch.isfinite(distances)
        obs_idx = torch.nonzero(found).squeeze(1)
        comp_idx = indices[found]
        if obs_idx.numel() == 0:
            return empty, empty, torch.zeros(0, dtype=DEFAULT_DTYPE)

        d2 = mahalanobis_squared(
            points[obs_idx], covariances[obs_idx], self.means[comp_idx], self.covariances[comp_idx]
        )
        gated = d2 < (self.mahalanobis_gate if gate is None else gate)
        obs_idx, comp_idx, d2 = obs_idx[gated], comp_idx[gated], d2[gated]

        # One observation per component, the closest one wins
        order = torch.argsort(d2)
        obs_idx, comp_idx, d2 = obs_idx[order], comp_idx[order], d2[order]
        seen = set()
        keep = []
        for i, c in enumerate(comp_idx.tolist()):
            if c not in seen:
                seen.add(c)
                keep.append(i)
        keep = torch.tensor(keep, dtype=torch.long)
        return obs_idx[keep], comp_idx[keep], d2[keep]

    def match_descriptors(self, descriptors: torch.Tensor, matcher) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Match observation descriptors against component descriptors.

        Returns:
            Tuple of (observation indices, component indices)
        """
        if self.is_empty or self.descriptors is None or descriptors.shape[0] == 0:
            empty = torch.zeros(0, dtype=torch.long)
            return empty, empty
        return matcher.match_indices(descriptors, self.descriptors)

    def update(
        self,
        points: torch.Tensor,
        covariances: torch.Tensor,
        descriptors: Optional[torch.Tensor] = None,
        obs_idx: Optional[torch.Tensor] = None,
        comp_idx: Optional[torch.Tensor] = None,
    ):
        """
        Fold a set of world-frame observations into the model.

        Args:
            points: Observations (N, 3)
            covariances: Observation covariances (N, 3, 3)
            descriptors: Observation descriptors (N, D)
            obs_idx: Observations matched to existing components
            comp_idx: The components they were matched to
        """
        self.update_count += 1
        n = points.shape[0]
        matched = torch.zeros(n, dtype=torch.bool)

        if obs_idx is not None and obs_idx.numel() > 0:
            fused_means, fused_covs = fuse_gaussians(
                self.means[comp_idx],
                self.covariances[comp_idx],
                points[obs_idx],
                covariances[obs_idx],
            )
            self.means[comp_idx] = fused_means
            self.covariances[comp_idx] = fused_covs
            if descriptors is not None and self.descriptors is not None:
                self.descriptors[comp_idx] = descriptors[obs_idx].to(self.descriptors.dtype)
            self.last_seen[comp_idx] = self.update_count
            matched[obs_idx] = True

        new = ~matched
        if new.any():
            self._add(
                points[new],
                covariances[new],
                descriptors[new] if descriptors is not None else None,
            )

        self._age_out()
        self._cap()
        self._tree = None

    def _add(self, points, covariances, descriptors):
        self.means = torch.cat([self.means, points.to(DEFAULT_DTYPE)])
        self.covariances = torch.cat([self.covariances, covariances.to(DEFAULT_DTYPE)])
        self.last_seen = torch.cat(
            [self.last_seen, torch.full((points.shape[0],), self.update_count, dtype=torch.long)]
        )
        if descriptors is not None:
            if self.descriptors is None or self.descriptors.shape[1] != descriptors.shape[1]:
                # Components without descriptors get zero rows
                self.descriptors = torch.zeros(
                    (len(self) - points.shape[0], descriptors.shape[1]), dtype=descriptors.dtype
                )
            self.descriptors = torch.cat([self.descriptors, descriptors])
        elif self.descriptors is not None:
            filler = torch.zeros(
                (points.shape[0], self.descriptors.shape[1]), dtype=self.descriptors.dtype
            )
            self.descriptors = torch.cat([self.descriptors, filler])

    def _keep(self, mask: torch.Tensor):
        self.means = self.means[mask]
        self.covariances = self.covariances[mask]
        self.last_seen = self.last_seen[mask]
        if self.descriptors is not None:
            self.descriptors = self.descriptors[mask]

    def _age_out(self):
        stale = (self.update_count - self.last_seen) > self.max_age
        if stale.any():
            self.logger.debug(f"Aging out {int(stale.sum())} model components")
            self._keep(~stale)

    def _cap(self):
        excess = len(self) - self.max_model_size
        if excess <= 0:
            return
        # Stable sort keeps insertion order among equally old components
        order = torch.argsort(self.last_seen, stable=True)
        mask = torch.ones(len(self), dtype=torch.bool)
        mask[order[:excess]] = False
        self._keep(mask)

    def transform(self, delta: RigidTransform):
        """Apply a rigid world-frame correction to every component."""
        if self.is_empty:
            return
        self.means = delta.transform_points(self.means)
        self.covariances = delta.rotate_covariances(self.covariances)
        self._tree = None
