from enum import Enum
from typing import List, Optional, Tuple

import torch
import torch.nn.functional as F

# Number of set bits for every byte value
_POPCOUNT_TABLE = torch.tensor([bin(i).count("1") for i in range(256)], dtype=torch.int64)


class MatchingMethod(Enum):
    """Enum for different matching methods."""

    NEAREST_NEIGHBOR = 1
    RATIO_TEST = 2
    MUTUAL_NEAREST = 3


class Match:
    """Represents a match between two keypoints."""

    def __init__(self, query_idx: int, train_idx: int, distance: float):
        """
        Initialize a match.

        Args:
            query_idx: Index of the keypoint in the query set
            train_idx: Index of the keypoint in the train set
            distance: Distance between the descriptors
        """
        self.query_idx = query_idx
        self.train_idx = train_idx
        self.distance = distance

    def __repr__(self) -> str:
        return f"Match(query_idx={self.query_idx}, train_idx={self.train_idx}, distance={self.distance:.4f})"


class FeatureMatcher:
    """Brute-force descriptor matcher (Hamming for binary, cosine for float)."""

    def __init__(
        self,
        method: MatchingMethod = MatchingMethod.MUTUAL_NEAREST,
        ratio_threshold: float = 0.8,
        max_distance: float = float("inf"),
    ):
        """
        Initialize feature matcher.

        Args:
            method: Method for matching features
            ratio_threshold: Threshold for the ratio test
            max_distance: Maximum allowable distance between matched descriptors
        """
        self.method = method
        self.ratio_threshold = ratio_threshold
        self.max_distance = max_distance

    def match(
        self,
        query_descriptors: torch.Tensor,
        train_descriptors: torch.Tensor,
        query_mask: Optional[torch.Tensor] = None,
        train_mask: Optional[torch.Tensor] = None,
    ) -> List[Match]:
        """
        Match descriptors between two sets.

        Args:
            query_descriptors: Descriptors of the query set (N, D)
            train_descriptors: Descriptors of the train set (M, D)
            query_mask: Boolean mask for query descriptors (N,)
            train_mask: Boolean mask for train descriptors (M,)

        Returns:
            List of Match objects, indices refer to the unmasked sets
        """
        if query_mask is not None:
            query_indices = torch.nonzero(query_mask).squeeze(1)
            query_descriptors = query_descriptors[query_indices]
        else:
            query_indices = torch.arange(query_descriptors.shape[0])

        if train_mask is not None:
            train_indices = torch.nonzero(train_mask).squeeze(1)
            train_descriptors = train_descriptors[train_indices]
        else:
            train_indices = torch.arange(train_descriptors.shape[0])

        matches = self._match(query_descriptors, train_descriptors)

        for match in matches:
            match.query_idx = query_indices[match.query_idx].item()
            match.train_idx = train_indices[match.train_idx].item()

        return matches

    def match_indices(
        self,
        query_descriptors: torch.Tensor,
        train_descriptors: torch.Tensor,
        query_mask: Optional[torch.Tensor] = None,
        train_mask: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Match descriptors and return the matched index pairs as tensors.

        Returns:
            Tuple of (query_indices, train_indices), both (K,) long tensors
        """
        matches = self.match(query_descriptors, train_descriptors, query_mask, train_mask)
        query_idx = torch.tensor([m.query_idx for m in matches], dtype=torch.long)
        train_idx = torch.tensor([m.train_idx for m in matches], dtype=torch.long)
        return query_idx, train_idx

    def _match(
        self, query_descriptors: torch.Tensor, train_descriptors: torch.Tensor
    ) -> List[Match]:
        # Handle empty descriptor sets
        if query_descriptors.shape[0] == 0 or train_descriptors.shape[0] == 0:
            return []

        distances = self.distance_matrix(query_descriptors, train_descriptors)
        k = min(2, distances.shape[1])
        top_distances, top_indices = torch.topk(distances, k, dim=1, largest=False)

        matches = []
        if self.method == MatchingMethod.RATIO_TEST and k >= 2:
            for i in range(top_distances.shape[0]):
                if top_distances[i, 0] < self.ratio_threshold * top_distances[i, 1]:
                    matches.append(
                        Match(i, top_indices[i, 0].item(), top_distances[i, 0].item())
                    )

        elif self.method == MatchingMethod.MUTUAL_NEAREST:
            reverse = torch.argmin(distances, dim=0)
            for i in range(top_distances.shape[0]):
                t_idx = top_indices[i, 0].item()
                if reverse[t_idx].item() == i:
                    matches.append(Match(i, t_idx, top_distances[i, 0].item()))

        else:
            for i in range(top_distances.shape[0]):
                matches.append(
                    Match(i, top_indices[i, 0].item(), top_distances[i, 0].item())
                )

        # Filter by max distance
        return [m for m in matches if m.distance <= self.max_distance]

    @staticmethod
    def distance_matrix(query: torch.Tensor, train: torch.Tensor) -> torch.Tensor:
        """
        Pairwise descriptor distances.

        Binary (uint8) descriptors use the Hamming distance; float
        descriptors use one minus the cosine similarity.

        Args:
            query: Query descriptors (N, D)
            train: Train descriptors (M, D)

        Returns:
            Distance matrix (N, M)
        """
        if query.dtype == torch.uint8:
            xor = torch.bitwise_xor(query.unsqueeze(1), train.unsqueeze(0))
            return _POPCOUNT_TABLE.to(xor.device)[xor.long()].sum(dim=2).float()

        query_norm = F.normalize(query.float(), p=2, dim=1)
        train_norm = F.normalize(train.float(), p=2, dim=1)
        return 1.0 - torch.mm(query_norm, train_norm.t())
