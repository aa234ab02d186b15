import numpy as np
import pytest
import torch

from torchrgbd.backend.se3 import DEFAULT_DTYPE, RigidTransform
from torchrgbd.frontend.camera import CameraIntrinsics
from torchrgbd.frontend.frame import Frame

WIDTH, HEIGHT = 640, 480


@pytest.fixture
def intrinsics():
    return CameraIntrinsics(525.0, 525.0, 319.5, 239.5, WIDTH, HEIGHT)


@pytest.fixture
def scene_points():
    """Jittered 6x6x6 grid in front of the camera (no two points closer than ~0.19 m)."""
    generator = torch.Generator().manual_seed(0)
    axis = torch.arange(6, dtype=DEFAULT_DTYPE) * 0.25
    gx, gy, gz = torch.meshgrid(axis - 0.625, axis - 0.625, axis + 1.0, indexing="ij")
    grid = torch.stack([gx.reshape(-1), gy.reshape(-1), gz.reshape(-1)], dim=1)
    jitter = (torch.rand(grid.shape, generator=generator, dtype=DEFAULT_DTYPE) - 0.5) * 0.06
    return grid + jitter


@pytest.fixture
def scene_descriptors(scene_points):
    generator = torch.Generator().manual_seed(1)
    return torch.randint(
        0, 256, (scene_points.shape[0], 32), generator=generator, dtype=torch.uint8
    )


@pytest.fixture
def small_motion():
    return RigidTransform.from_elements(0.008, -0.006, 0.01, 0.02, -0.015, 0.02)


@pytest.fixture
def make_frame():
    """Factory for a frame observing world points from a camera pose."""

    def make(points, pose=None, descriptors=None, cov=1e-3, timestamp=0.0):
        camera_points = pose.inverse().transform_points(points) if pose is not None else points
        covariances = torch.eye(3, dtype=DEFAULT_DTYPE).repeat(points.shape[0], 1, 1) * cov
        return Frame.from_distributions(
            camera_points, covariances, descriptors, timestamp=timestamp
        )

    return make


@pytest.fixture
def render_rgbd(intrinsics):
    """
    Factory rendering world points into a sparse float depth image.

    Returns (rgb, depth, keypoints) where every keypoint sits on an integer
    pixel holding its depth. Points projecting onto an occupied pixel or
    outside the image are skipped.
    """

    def render(points, pose=None):
        camera_points = pose.inverse().transform_points(points) if pose is not None else points
        camera_points = camera_points.numpy()

        depth = np.zeros((HEIGHT, WIDTH), dtype=np.float32)
        keypoints = []
        for x, y, z in camera_points:
            if z <= 0:
                continue
            u = int(round(intrinsics.fx * x / z + intrinsics.cx))
            v = int(round(intrinsics.fy * y / z + intrinsics.cy))
            if not (0 <= u < WIDTH and 0 <= v < HEIGHT) or depth[v, u] > 0:
                continue
            depth[v, u] = z
            keypoints.append((u, v))

        rgb = np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)
        return rgb, depth, np.array(keypoints, dtype=np.float64).reshape(-1, 2)

    return render


@pytest.fixture
def random_scene():
    """Random points in a volume seen by a camera at the origin."""
    generator = torch.Generator().manual_seed(2)
    points = torch.rand((300, 3), generator=generator, dtype=DEFAULT_DTYPE)
    scale = torch.tensor([2.0, 1.4, 1.5], dtype=DEFAULT_DTYPE)
    offset = torch.tensor([-1.0, -0.7, 1.5], dtype=DEFAULT_DTYPE)
    return points * scale + offset
