"""
Depth noise models for RGB-D sensors.

A raw depth reading is turned into a 3D Gaussian: the mean is the
back-projected point and the covariance follows from a quadratic model of
the axial noise (Khoshelham and Elberink, "Accuracy and Resolution of Kinect
Depth Data for Indoor Mapping Applications", Sensors 2012) propagated through
the pinhole back-projection together with a small pixel noise.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import numpy as np
import torch

from ..backend.se3 import DEFAULT_DTYPE
from .camera import CameraIntrinsics


class BaseDepthModel(ABC):
    """Base class for per-pixel depth uncertainty models."""

    # std_dev(z) = Z_STDEV_CONSTANT * z^2, in metres
    Z_STDEV_CONSTANT = 1.425e-3

    def __init__(self, pixel_stdev: float = 1.0, z_stdev_constant: Optional[float] = None):
        """
        Initialize depth model.

        Args:
            pixel_stdev: Standard deviation of the keypoint location, in pixels
            z_stdev_constant: Override for the quadratic noise constant
        """
        self.pixel_stdev = pixel_stdev
        self.z_stdev_constant = (
            z_stdev_constant if z_stdev_constant is not None else self.Z_STDEV_CONSTANT
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    def get_stdev_z(self, z):
        """Standard deviation of z for a depth (scalar or array), in metres."""
        return self.z_stdev_constant * np.square(z)

    def get_var_z(self, z):
        """Variance of z for a depth (scalar or array), in metres^2."""
        return np.square(self.get_stdev_z(z))

    @abstractmethod
    def depth_distribution(
        self, depth: np.ndarray, u: np.ndarray, v: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Compute the z distribution for a set of pixels.

        Args:
            depth: Depth image in metres (H, W); 0 marks missing data
            u: Integer column coordinates (N,)
            v: Integer row coordinates (N,)

        Returns:
            Tuple of (z_mean, z_var); both are 0 where depth is missing
        """
        pass

    def compute(
        self,
        depth: np.ndarray,
        pixels: np.ndarray,
        intrinsics: CameraIntrinsics,
        device: Optional[torch.device] = None,
    ) -> Dict[str, torch.Tensor]:
        """
        Compute 3D Gaussians for a set of keypoint locations.

        Args:
            depth: Depth image in metres (H, W)
            pixels: Keypoint coordinates (N, 2) as (x, y)
            intrinsics: Camera intrinsics
            device: PyTorch device for the outputs

        Returns:
            Dictionary with:
                - means: 3D means (N, 3)
                - covariances: 3x3 covariances (N, 3, 3)
                - z_mean: depth means (N,)
                - z_stdev: depth standard deviations (N,)
        """
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        n = pixels.shape[0]
        height, width = depth.shape[:2]

        u = np.rint(pixels[:, 0]).astype(np.int64)
        v = np.rint(pixels[:, 1]).astype(np.int64)
        in_image = (u >= 0) & (u < width) & (v >= 0) & (v < height)

        z_mean = np.zeros(n, dtype=np.float64)
        z_var = np.zeros(n, dtype=np.float64)
        if np.any(in_image):
            z_mean[in_image], z_var[in_image] = self.depth_distribution(
                depth, u[in_image], v[in_image]
            )

        # Back-projection and first-order covariance propagation of (u, v, z)
        du = u - intrinsics.cx
        dv = v - intrinsics.cy
        means = np.stack(
            [du * z_mean / intrinsics.fx, dv * z_mean / intrinsics.fy, z_mean], axis=1
        )

        J = np.zeros((n, 3, 3), dtype=np.float64)
        J[:, 0, 0] = z_mean / intrinsics.fx
        J[:, 0, 2] = du / intrinsics.fx
        J[:, 1, 1] = z_mean / intrinsics.fy
        J[:, 1, 2] = dv / intrinsics.fy
        J[:, 2, 2] = 1.0

        var_px = self.pixel_stdev**2
        S = np.zeros((n, 3, 3), dtype=np.float64)
        S[:, 0, 0] = var_px
        S[:, 1, 1] = var_px
        S[:, 2, 2] = z_var
        covariances = J @ S @ np.transpose(J, (0, 2, 1))

        return {
            "means": torch.tensor(means, dtype=DEFAULT_DTYPE, device=device),
            "covariances": torch.tensor(covariances, dtype=DEFAULT_DTYPE, device=device),
            "z_mean": torch.tensor(z_mean, dtype=DEFAULT_DTYPE, device=device),
            "z_stdev": torch.tensor(np.sqrt(z_var), dtype=DEFAULT_DTYPE, device=device),
        }

    def distribution(
        self, depth: np.ndarray, u: float, v: float, intrinsics: CameraIntrinsics
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Compute the 3D Gaussian of a single pixel.

        Returns:
            Tuple of (mean (3,), covariance (3, 3))
        """
        result = self.compute(depth, np.array([[u, v]]), intrinsics)
        return result["means"][0], result["covariances"][0]


class QuadraticDepthModel(BaseDepthModel):
    """Depth variance grows with the fourth power of z (std-dev quadratic in z)."""

    def depth_distribution(
        self, depth: np.ndarray, u: np.ndarray, v: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        z = depth[v, u].astype(np.float64)
        valid = np.isfinite(z) & (z > 0)
        z_mean = np.where(valid, z, 0.0)
        z_var = np.where(valid, self.get_var_z(z_mean), 0.0)
        return z_mean, z_var


class GaussianMixtureDepthModel(QuadraticDepthModel):
    """
    Gaussian mixture over the 3x3 pixel neighbourhood.

    Each neighbour contributes a quadratic-model Gaussian weighted by its
    proximity (4 centre, 2 edge neighbours, 1 corners). Neighbours whose depth
    disagrees with the centre by more than ``agreement_sigmas`` standard
    deviations get zero weight. Pixels on the image border or with any
    missing neighbour use the plain quadratic model.
    """

    KERNEL = np.array([[1.0, 2.0, 1.0], [2.0, 4.0, 2.0], [1.0, 2.0, 1.0]])

    def __init__(
        self,
        pixel_stdev: float = 1.0,
        z_stdev_constant: Optional[float] = None,
        agreement_sigmas: Optional[float] = 3.0,
    ):
        super().__init__(pixel_stdev, z_stdev_constant)
        self.agreement_sigmas = agreement_sigmas

    def depth_distribution(
        self, depth: np.ndarray, u: np.ndarray, v: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        z_mean, z_var = super().depth_distribution(depth, u, v)

        height, width = depth.shape[:2]
        interior = (u >= 1) & (u < width - 1) & (v >= 1) & (v < height - 1) & (z_mean > 0)
        if not np.any(interior):
            return z_mean, z_var

        idx = np.nonzero(interior)[0]
        offsets = np.arange(-1, 2)
        rows = v[idx, None, None] + offsets[None, :, None]
        cols = u[idx, None, None] + offsets[None, None, :]
        patch = depth[rows, cols].astype(np.float64)  # (M, 3, 3)

        # Missing neighbours fall back to the quadratic model
        complete = np.all(np.isfinite(patch) & (patch > 0), axis=(1, 2))
        idx = idx[complete]
        patch = patch[complete]
        if idx.size == 0:
            return z_mean, z_var

        weights = np.broadcast_to(self.KERNEL, patch.shape).copy()
        if self.agreement_sigmas is not None:
            z_center = patch[:, 1, 1]
            gate = self.agreement_sigmas * self.get_stdev_z(z_center)
            disagree = np.abs(patch - z_center[:, None, None]) > gate[:, None, None]
            weights[disagree] = 0.0

        w_sum = weights.sum(axis=(1, 2))
        mix_mean = (weights * patch).sum(axis=(1, 2)) / w_sum
        second_moment = (weights * (self.get_var_z(patch) + patch**2)).sum(axis=(1, 2)) / w_sum
        mix_var = np.maximum(second_moment - mix_mean**2, 0.0)

        z_mean[idx] = mix_mean
        z_var[idx] = mix_var
        return z_mean, z_var


def create_depth_model(config: Dict = None) -> BaseDepthModel:
    """
    Build a depth model from configuration.

    Args:
        config: Configuration dictionary with the following keys:
            - depth_model: 'quadratic' or 'mixture'
            - pixel_stdev: Keypoint location noise in pixels
            - agreement_sigmas: Depth agreement gate for the mixture model
    """
    config = config if config is not None else {}
    model_type = config.get("depth_model", "mixture")
    pixel_stdev = config.get("pixel_stdev", 1.0)

    if model_type == "quadratic":
        return QuadraticDepthModel(pixel_stdev=pixel_stdev)
    if model_type == "mixture":
        return GaussianMixtureDepthModel(
            pixel_stdev=pixel_stdev,
            agreement_sigmas=config.get("agreement_sigmas", 3.0),
        )
    raise ValueError(f"Unknown depth model: {model_type}")
