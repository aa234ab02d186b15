import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import torch
import yaml

from ..backend.se3 import DEFAULT_DTYPE
from .camera import CameraIntrinsics
from .depth_model import BaseDepthModel, create_depth_model
from .feature_extraction import KeyPoint

logger = logging.getLogger(__name__)

RGB_FILE = "rgb.png"
DEPTH_PNG_FILE = "depth.png"
DEPTH_NPY_FILE = "depth.npy"
META_FILE = "meta.yml"
INTRINSICS_KEYS = ("fx", "fy", "cx", "cy", "width", "height")


class Frame:
    """
    A synchronized RGB-D image pair with its features.

    Holds the images, the keypoints and descriptors supplied by a feature
    source and, once ``compute_distributions`` has run, a validity flag, a
    3D mean and a 3x3 covariance per keypoint. All per-keypoint sequences
    are indexed identically. The distributions are computed once; after
    that the frame is treated as read-only.
    """

    def __init__(
        self,
        rgb: Optional[np.ndarray],
        depth: Optional[np.ndarray],
        intrinsics: CameraIntrinsics,
        keypoints: Union[Sequence[KeyPoint], np.ndarray, None] = None,
        descriptors: Optional[torch.Tensor] = None,
        timestamp: float = 0.0,
        frame_id: str = "",
        depth_scale: Optional[float] = None,
    ):
        """
        Initialize a frame.

        Args:
            rgb: Color image (H, W, 3), uint8, RGB channel order
            depth: Depth image (H, W); uint16 in units of ``depth_scale``
                metres or float in metres. 0 or NaN marks missing data
            intrinsics: Camera intrinsics shared by both images
            keypoints: KeyPoint list or (N, 2) array of pixel coordinates
            descriptors: Descriptor tensor (N, D), one row per keypoint
            timestamp: Acquisition time in seconds
            frame_id: Coordinate frame identifier of the camera
            depth_scale: Metres per depth unit; defaults to 0.001 for
                integer depth images and 1.0 for float ones
        """
        if rgb is not None and depth is not None and rgb.shape[:2] != depth.shape[:2]:
            raise ValueError(
                f"RGB and depth sizes differ: {rgb.shape[:2]} vs {depth.shape[:2]}"
            )

        self.rgb = rgb
        self.depth = depth
        self.intrinsics = intrinsics
        self.timestamp = float(timestamp)
        self.frame_id = frame_id

        if depth_scale is None:
            depth_scale = 0.001 if depth is not None and np.issubdtype(depth.dtype, np.integer) else 1.0
        self.depth_scale = float(depth_scale)

        self.keypoints = self._as_keypoints(keypoints)
        n = len(self.keypoints)
        if descriptors is None:
            descriptors = torch.zeros((n, 0), dtype=torch.uint8)
        elif not isinstance(descriptors, torch.Tensor):
            descriptors = torch.from_numpy(np.asarray(descriptors))
        if descriptors.shape[0] != n:
            raise ValueError(
                f"Got {descriptors.shape[0]} descriptors for {n} keypoints"
            )
        self.descriptors = descriptors

        # Filled by compute_distributions
        self.kp_valid: Optional[torch.Tensor] = None
        self.kp_means: Optional[torch.Tensor] = None
        self.kp_covariances: Optional[torch.Tensor] = None

    @staticmethod
    def _as_keypoints(keypoints) -> List[KeyPoint]:
        if keypoints is None:
            return []
        if isinstance(keypoints, (np.ndarray, torch.Tensor)):
            coords = np.asarray(keypoints, dtype=np.float64).reshape(-1, 2)
            return [KeyPoint(float(x), float(y)) for x, y in coords]
        return list(keypoints)

    @classmethod
    def from_distributions(
        cls,
        means: torch.Tensor,
        covariances: Optional[torch.Tensor] = None,
        descriptors: Optional[torch.Tensor] = None,
        intrinsics: Optional[CameraIntrinsics] = None,
        timestamp: float = 0.0,
        frame_id: str = "",
    ) -> "Frame":
        """
        Build a frame directly from 3D keypoint distributions.

        Used for point clouds that do not come from an image pair. Every
        keypoint is valid; keypoint pixels are the projections of the means
        when intrinsics are given.

        Args:
            means: Keypoint means (N, 3) in the camera frame
            covariances: Covariances (N, 3, 3); isotropic 1e-4 if omitted
            descriptors: Descriptors (N, D)
            intrinsics: Camera intrinsics
        """
        means = torch.as_tensor(means, dtype=DEFAULT_DTYPE)
        n = means.shape[0]
        if covariances is None:
            covariances = torch.eye(3, dtype=DEFAULT_DTYPE).repeat(n, 1, 1) * 1e-4
        covariances = torch.as_tensor(covariances, dtype=DEFAULT_DTYPE)
        if covariances.shape != (n, 3, 3):
            raise ValueError(f"Expected covariances of shape ({n}, 3, 3)")

        if intrinsics is None:
            intrinsics = CameraIntrinsics(525.0, 525.0, 319.5, 239.5, 640, 480)
        z = torch.clamp(means[:, 2], min=1e-6)
        pixels = torch.stack(
            [
                means[:, 0] * intrinsics.fx / z + intrinsics.cx,
                means[:, 1] * intrinsics.fy / z + intrinsics.cy,
            ],
            dim=1,
        )

        frame = cls(
            None, None, intrinsics, pixels.numpy(), descriptors, timestamp, frame_id, 1.0
        )
        frame.kp_means = means.clone()
        frame.kp_covariances = covariances.clone()
        frame.kp_valid = torch.ones(n, dtype=torch.bool)
        return frame

    @property
    def num_keypoints(self) -> int:
        return len(self.keypoints)

    @property
    def has_distributions(self) -> bool:
        return self.kp_valid is not None

    @property
    def n_valid_keypoints(self) -> int:
        """Number of keypoints with a valid 3D distribution."""
        if self.kp_valid is None:
            return 0
        return int(self.kp_valid.sum().item())

    def depth_in_metres(self) -> np.ndarray:
        """Depth image as float64 metres, with missing readings set to 0."""
        if self.depth is None:
            raise ValueError("Frame has no depth image")
        depth = self.depth.astype(np.float64) * self.depth_scale
        depth[~np.isfinite(depth)] = 0.0
        return depth

    def keypoint_array(self) -> np.ndarray:
        """Keypoint pixel coordinates (N, 2) as (x, y)."""
        if not self.keypoints:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([kp.pt() for kp in self.keypoints], dtype=np.float64)

    def compute_distributions(
        self,
        max_range: float = 5.5,
        max_stdev: float = 0.03,
        model: Optional[BaseDepthModel] = None,
    ) -> "Frame":
        """
        Compute the 3D Gaussian of every keypoint.

        A keypoint is valid iff its depth is present, its mean z is at most
        ``max_range`` and its modelled depth standard deviation is at most
        ``max_stdev``.

        Args:
            max_range: Maximum depth in metres
            max_stdev: Maximum depth standard deviation in metres
            model: Depth uncertainty model (Gaussian mixture by default)

        Returns:
            The frame itself
        """
        if self.has_distributions:
            raise RuntimeError("Distributions have already been computed for this frame")
        model = model if model is not None else create_depth_model()

        result = model.compute(self.depth_in_metres(), self.keypoint_array(), self.intrinsics)
        z_mean = result["z_mean"]
        valid = (z_mean > 0) & (z_mean <= max_range) & (result["z_stdev"] <= max_stdev)

        self.kp_means = result["means"]
        self.kp_covariances = result["covariances"]
        self.kp_valid = valid
        return self

    def _require_distributions(self):
        if not self.has_distributions:
            raise RuntimeError("compute_distributions must be called first")

    def construct_feature_point_cloud(
        self, include_covariances: bool = False, include_colors: bool = False
    ) -> Union[torch.Tensor, Tuple[torch.Tensor, ...]]:
        """
        Reduce the frame to the 3D means of its valid keypoints.

        Args:
            include_covariances: Also return the (M, 3, 3) covariances
            include_colors: Also return the (M, 3) uint8 RGB colours

        Returns:
            Points (M, 3), or a tuple (points, [covariances], [colors])
            when extra outputs are requested
        """
        self._require_distributions()
        points = self.kp_means[self.kp_valid]
        if not include_covariances and not include_colors:
            return points

        outputs = [points]
        if include_covariances:
            outputs.append(self.kp_covariances[self.kp_valid])
        if include_colors:
            outputs.append(self._keypoint_colors()[self.kp_valid])
        return tuple(outputs)

    def _keypoint_colors(self) -> torch.Tensor:
        n = self.num_keypoints
        if self.rgb is None or n == 0:
            return torch.zeros((n, 3), dtype=torch.uint8)
        height, width = self.rgb.shape[:2]
        pixels = np.rint(self.keypoint_array()).astype(np.int64)
        u = np.clip(pixels[:, 0], 0, width - 1)
        v = np.clip(pixels[:, 1], 0, height - 1)
        return torch.from_numpy(np.ascontiguousarray(self.rgb[v, u, :3]))

    def valid_subset(self) -> Dict[str, torch.Tensor]:
        """
        Return the valid keypoints' data.

        Returns:
            Dictionary with:
                - means: (M, 3)
                - covariances: (M, 3, 3)
                - descriptors: (M, D)
                - indices: (M,) indices into the full keypoint list
        """
        self._require_distributions()
        indices = torch.nonzero(self.kp_valid).squeeze(1)
        return {
            "means": self.kp_means[indices],
            "covariances": self.kp_covariances[indices],
            "descriptors": self.descriptors[indices],
            "indices": indices,
        }

    def __repr__(self) -> str:
        return (
            f"Frame(t={self.timestamp:.3f}, id='{self.frame_id}', "
            f"keypoints={self.num_keypoints}, valid={self.n_valid_keypoints})"
        )

    @staticmethod
    def save(frame: "Frame", path: Union[str, Path]):
        """
        Write a frame's images and header to a directory.

        The directory holds ``rgb.png``, ``depth.png`` (integer depth) or
        ``depth.npy`` (float depth) and ``meta.yml``. Files are written to a
        temporary sibling directory that is renamed into place, so a failed
        save never leaves a partial directory behind.

        Args:
            frame: Frame to save
            path: Target directory; replaced if it exists

        Raises:
            FileNotFoundError: If the parent directory does not exist
            OSError: If a file cannot be written
        """
        if frame.rgb is None or frame.depth is None:
            raise ValueError("Only frames with RGB and depth images can be saved")

        path = Path(path)
        parent = path.parent
        if not parent.is_dir():
            raise FileNotFoundError(f"Parent directory does not exist: {parent}")

        tmp_dir = Path(tempfile.mkdtemp(prefix=f".{path.name}.", dir=parent))
        try:
            bgr = cv2.cvtColor(frame.rgb, cv2.COLOR_RGB2BGR)
            if not cv2.imwrite(str(tmp_dir / RGB_FILE), bgr):
                raise OSError(f"Could not write {RGB_FILE}")

            if frame.depth.dtype == np.uint16:
                depth_file = DEPTH_PNG_FILE
                if not cv2.imwrite(str(tmp_dir / depth_file), frame.depth):
                    raise OSError(f"Could not write {depth_file}")
            else:
                depth_file = DEPTH_NPY_FILE
                np.save(tmp_dir / depth_file, frame.depth)

            meta = {
                "timestamp": frame.timestamp,
                "frame_id": frame.frame_id,
                "depth_scale": frame.depth_scale,
                "depth_file": depth_file,
                "intrinsics": frame.intrinsics.to_dict(),
            }
            with open(tmp_dir / META_FILE, "w") as f:
                yaml.safe_dump(meta, f, default_flow_style=False)

            if path.exists():
                stale = Path(tempfile.mkdtemp(prefix=f".{path.name}.old.", dir=parent))
                os.rmdir(stale)
                os.replace(path, stale)
                os.replace(tmp_dir, path)
                shutil.rmtree(stale, ignore_errors=True)
            else:
                os.replace(tmp_dir, path)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        logger.debug(f"Saved frame {frame.frame_id}@{frame.timestamp:.3f} to {path}")

    @staticmethod
    def load(path: Union[str, Path]) -> "Frame":
        """
        Read a frame written by ``save``.

        Keypoints are not stored; the returned frame has none.

        Raises:
            FileNotFoundError: If the directory or a required file is missing
            OSError: If an image cannot be decoded
            ValueError: If the header is not a mapping with complete intrinsics
        """
        path = Path(path)
        if not path.is_dir():
            raise FileNotFoundError(f"Frame directory does not exist: {path}")

        meta_path = path / META_FILE
        rgb_path = path / RGB_FILE
        for required in (meta_path, rgb_path):
            if not required.is_file():
                raise FileNotFoundError(f"Missing frame file: {required}")

        with open(meta_path, "r") as f:
            meta = yaml.safe_load(f)
        if not isinstance(meta, dict) or not isinstance(meta.get("intrinsics"), dict):
            raise ValueError(f"Frame header without intrinsics: {meta_path}")
        missing = [k for k in INTRINSICS_KEYS if k not in meta["intrinsics"]]
        if missing:
            raise ValueError(f"Frame header {meta_path} lacks intrinsics {missing}")

        depth_path = path / meta.get("depth_file", DEPTH_PNG_FILE)
        if not depth_path.is_file():
            raise FileNotFoundError(f"Missing frame file: {depth_path}")

        bgr = cv2.imread(str(rgb_path), cv2.IMREAD_COLOR)
        if bgr is None:
            raise OSError(f"Could not decode {rgb_path}")
        rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)

        if depth_path.suffix == ".npy":
            depth = np.load(depth_path)
        else:
            depth = cv2.imread(str(depth_path), cv2.IMREAD_UNCHANGED)
            if depth is None:
                raise OSError(f"Could not decode {depth_path}")

        return Frame(
            rgb,
            depth,
            CameraIntrinsics.from_dict(meta["intrinsics"]),
            timestamp=meta.get("timestamp", 0.0),
            frame_id=meta.get("frame_id", ""),
            depth_scale=meta.get("depth_scale"),
        )
