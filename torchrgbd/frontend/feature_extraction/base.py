from typing import List, Tuple, Union

import numpy as np
import torch


class KeyPoint:
    """2D image feature location with the detector attributes OpenCV reports."""

    def __init__(
        self,
        x: float,
        y: float,
        response: float = 0.0,
        size: float = 1.0,
        angle: float = -1.0,
        octave: int = 0,
    ):
        self.x = x
        self.y = y
        self.response = response  # Strength of the keypoint
        self.size = size  # Diameter of the meaningful keypoint neighborhood
        self.angle = angle  # Orientation in degrees (-1 if not applicable)
        self.octave = octave  # Pyramid layer the keypoint was extracted from

    def pt(self) -> Tuple[float, float]:
        """Pixel coordinates as (x, y)."""
        return (self.x, self.y)

    def __repr__(self) -> str:
        return f"KeyPoint(x={self.x:.1f}, y={self.y:.1f})"


class BaseFeatureExtractor:
    """Base class for feature extraction.

    Feature sources supply, per image, an ordered list of keypoints and a
    descriptor tensor with one row per keypoint."""

    def __init__(self, max_features: int = 1000):
        self.max_features = max_features

    def extract(self, image: Union[np.ndarray, torch.Tensor]) -> List[KeyPoint]:
        """
        Extract features from image.

        Args:
            image: RGB image (H, W, 3) or grayscale image (H, W)

        Returns:
            List of KeyPoint objects
        """
        raise NotImplementedError("Subclasses must implement extract method")

    def compute_descriptors(
        self, image: Union[np.ndarray, torch.Tensor], keypoints: List[KeyPoint]
    ) -> Tuple[List[KeyPoint], torch.Tensor]:
        """
        Compute descriptors for keypoints.

        Args:
            image: RGB image (H, W, 3) or grayscale image (H, W)
            keypoints: List of KeyPoint objects

        Returns:
            Tuple of (keypoints kept by the descriptor, descriptors (N, D))
        """
        raise NotImplementedError(
            "Subclasses must implement compute_descriptors method"
        )

    def detect_and_compute(
        self, image: Union[np.ndarray, torch.Tensor]
    ) -> Tuple[List[KeyPoint], torch.Tensor]:
        """
        Extract features and compute descriptors.

        Returns:
            Tuple of (keypoints, descriptors) of equal length
        """
        keypoints = self.extract(image)
        return self.compute_descriptors(image, keypoints)

    def _preprocess_image(self, image: Union[np.ndarray, torch.Tensor]) -> np.ndarray:
        """Convert an image to a uint8 grayscale NumPy array."""
        if isinstance(image, torch.Tensor):
            image = image.detach().cpu().numpy()
            # (C, H, W) tensors are moved to channel-last
            if image.ndim == 3 and image.shape[0] in (1, 3):
                image = np.transpose(image, (1, 2, 0))

        image = np.asarray(image)
        if image.ndim == 3:
            if image.shape[2] == 1:
                image = image[:, :, 0]
            else:
                image = (
                    0.299 * image[:, :, 0] + 0.587 * image[:, :, 1] + 0.114 * image[:, :, 2]
                )

        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)

        return image
