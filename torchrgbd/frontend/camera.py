from dataclasses import dataclass
from typing import Dict

import numpy as np
import torch


@dataclass(frozen=True)
class CameraIntrinsics:
    """
    Pinhole intrinsics shared by the registered RGB and depth images.

    Both images are assumed rectified and expressed in the RGB camera frame.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int

    def __post_init__(self):
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(f"Focal lengths must be positive, got ({self.fx}, {self.fy})")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"Image size must be positive, got ({self.width}, {self.height})"
            )

    @classmethod
    def from_matrix(cls, K, width: int, height: int) -> "CameraIntrinsics":
        """
        Create intrinsics from a 3x3 camera matrix.

        Args:
            K: Camera matrix as NumPy array, tensor or nested list
            width: Image width in pixels
            height: Image height in pixels
        """
        if isinstance(K, torch.Tensor):
            K = K.detach().cpu().numpy()
        K = np.asarray(K, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"Expected 3x3 camera matrix, got {K.shape}")
        return cls(
            float(K[0, 0]), float(K[1, 1]), float(K[0, 2]), float(K[1, 2]), int(width), int(height)
        )

    def as_matrix(self) -> np.ndarray:
        """Return the 3x3 camera matrix."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "fx": float(self.fx),
            "fy": float(self.fy),
            "cx": float(self.cx),
            "cy": float(self.cy),
            "width": int(self.width),
            "height": int(self.height),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CameraIntrinsics":
        """Create from dictionary."""
        return cls(
            fx=float(data["fx"]),
            fy=float(data["fy"]),
            cx=float(data["cx"]),
            cy=float(data["cy"]),
            width=int(data["width"]),
            height=int(data["height"]),
        )
