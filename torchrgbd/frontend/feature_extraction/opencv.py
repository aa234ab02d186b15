import logging
from enum import Enum
from typing import List, Tuple, Union

import cv2
import numpy as np
import torch

from .base import BaseFeatureExtractor, KeyPoint


class DetectorType(Enum):
    """Keypoint detectors available through OpenCV."""

    ORB = "ORB"
    GFT = "GFT"
    FAST = "FAST"
    SIFT = "SIFT"


class OpenCVFeatureExtractor(BaseFeatureExtractor):
    """
    Feature source backed by OpenCV detectors.

    Detection is delegated to OpenCV; descriptors come from ORB (binary,
    uint8) except for SIFT, which describes its own keypoints (float32).
    """

    def __init__(
        self,
        detector: Union[str, DetectorType] = DetectorType.ORB,
        max_features: int = 1000,
        smooth: int = 0,
        fast_threshold: int = 20,
        gft_quality: float = 0.01,
        gft_min_distance: float = 5.0,
    ):
        """
        Initialize the extractor.

        Args:
            detector: Detector type ('ORB', 'GFT', 'FAST' or 'SIFT')
            max_features: Maximum number of keypoints per image
            smooth: Gaussian blur kernel half-size applied before detection (0 = off)
            fast_threshold: Intensity threshold for FAST
            gft_quality: Quality level for good-features-to-track
            gft_min_distance: Minimum distance between GFT corners
        """
        super().__init__(max_features)
        self.detector_type = DetectorType(detector) if isinstance(detector, str) else detector
        self.smooth = smooth
        self.fast_threshold = fast_threshold
        self.gft_quality = gft_quality
        self.gft_min_distance = gft_min_distance

        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info(f"Creating {self.detector_type.value} detector")

        if self.detector_type == DetectorType.SIFT:
            self._describer = cv2.SIFT_create(nfeatures=max_features)
        else:
            self._describer = cv2.ORB_create(nfeatures=max_features)

    def extract(self, image) -> List[KeyPoint]:
        gray = self._prepare(image)
        return [self._from_cv(kp) for kp in self._detect(gray)]

    def compute_descriptors(
        self, image, keypoints: List[KeyPoint]
    ) -> Tuple[List[KeyPoint], torch.Tensor]:
        gray = self._prepare(image)
        cv_keypoints = [self._to_cv(kp) for kp in keypoints]
        return self._describe(gray, cv_keypoints)

    def detect_and_compute(self, image) -> Tuple[List[KeyPoint], torch.Tensor]:
        gray = self._prepare(image)
        return self._describe(gray, self._detect(gray))

    def _prepare(self, image) -> np.ndarray:
        gray = self._preprocess_image(image)
        if self.smooth > 0:
            k = 2 * self.smooth + 1
            gray = cv2.GaussianBlur(gray, (k, k), 0)
        return gray

    def _detect(self, gray: np.ndarray) -> List[cv2.KeyPoint]:
        if self.detector_type == DetectorType.ORB:
            return list(self._describer.detect(gray, None))
        if self.detector_type == DetectorType.SIFT:
            return list(self._describer.detect(gray, None))
        if self.detector_type == DetectorType.FAST:
            fast = cv2.FastFeatureDetector_create(threshold=self.fast_threshold)
            keypoints = sorted(fast.detect(gray, None), key=lambda k: -k.response)
            return keypoints[: self.max_features]

        corners = cv2.goodFeaturesToTrack(
            gray, self.max_features, self.gft_quality, self.gft_min_distance
        )
        if corners is None:
            return []
        return [cv2.KeyPoint(float(x), float(y), 7.0) for x, y in corners.reshape(-1, 2)]

    def _describe(
        self, gray: np.ndarray, cv_keypoints: List[cv2.KeyPoint]
    ) -> Tuple[List[KeyPoint], torch.Tensor]:
        if not cv_keypoints:
            return [], self._empty_descriptors()

        # The describer may drop keypoints too close to the border
        cv_keypoints, descriptors = self._describer.compute(gray, cv_keypoints)
        if descriptors is None or len(cv_keypoints) == 0:
            return [], self._empty_descriptors()

        keypoints = [self._from_cv(kp) for kp in cv_keypoints]
        return keypoints, torch.from_numpy(np.ascontiguousarray(descriptors))

    def _empty_descriptors(self) -> torch.Tensor:
        if self.detector_type == DetectorType.SIFT:
            return torch.zeros((0, 128), dtype=torch.float32)
        return torch.zeros((0, 32), dtype=torch.uint8)

    @staticmethod
    def _from_cv(kp: cv2.KeyPoint) -> KeyPoint:
        return KeyPoint(
            x=float(kp.pt[0]),
            y=float(kp.pt[1]),
            response=float(kp.response),
            size=float(kp.size),
            angle=float(kp.angle),
            octave=int(kp.octave),
        )

    @staticmethod
    def _to_cv(kp: KeyPoint) -> cv2.KeyPoint:
        return cv2.KeyPoint(
            float(kp.x), float(kp.y), float(kp.size), float(kp.angle), float(kp.response), int(kp.octave)
        )
