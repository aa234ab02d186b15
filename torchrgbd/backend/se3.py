from typing import Optional

import numpy as np
import torch

# All geometry in the library is carried in double precision.
DEFAULT_DTYPE = torch.float64


class RigidTransform:
    """
    Rigid body transformation in SE(3).

    Holds a 3x3 rotation and a 3D translation. Instances are treated as
    values: every operation returns a new transform and never mutates
    the operands.
    """

    def __init__(self, rotation: torch.Tensor, translation: torch.Tensor):
        """
        Initialize rigid transformation.

        Args:
            rotation: 3x3 rotation matrix
            translation: 3D translation vector
        """
        if rotation.shape != (3, 3):
            raise ValueError(f"Expected 3x3 rotation matrix, got {tuple(rotation.shape)}")
        if translation.shape != (3,):
            raise ValueError(
                f"Expected 3D translation vector, got {tuple(translation.shape)}"
            )

        self.rotation = rotation
        self.translation = translation

    @property
    def device(self) -> torch.device:
        """Get device of tensors."""
        return self.rotation.device

    @property
    def dtype(self) -> torch.dtype:
        """Get dtype of tensors."""
        return self.rotation.dtype

    @classmethod
    def from_matrix(cls, matrix: torch.Tensor) -> "RigidTransform":
        """
        Create transform from a 4x4 homogeneous matrix.

        Args:
            matrix: 4x4 transformation matrix

        Returns:
            RigidTransform object
        """
        if matrix.shape != (4, 4):
            raise ValueError(f"Expected 4x4 matrix, got {tuple(matrix.shape)}")

        return cls(matrix[:3, :3].clone(), matrix[:3, 3].clone())

    @classmethod
    def from_numpy(
        cls,
        rotation: np.ndarray,
        translation: np.ndarray,
        device: Optional[torch.device] = None,
    ) -> "RigidTransform":
        """
        Create transform from NumPy arrays.

        Args:
            rotation: Rotation matrix as NumPy array
            translation: Translation vector as NumPy array
            device: PyTorch device

        Returns:
            RigidTransform object
        """
        rot_tensor = torch.tensor(rotation, dtype=DEFAULT_DTYPE, device=device)
        trans_tensor = torch.tensor(translation, dtype=DEFAULT_DTYPE, device=device)
        return cls(rot_tensor, trans_tensor)

    @classmethod
    def from_elements(
        cls,
        rx: float,
        ry: float,
        rz: float,
        tx: float,
        ty: float,
        tz: float,
        device: Optional[torch.device] = None,
    ) -> "RigidTransform":
        """
        Create transform from individual rotation and translation elements.

        Args:
            rx, ry, rz: Rotation angles around x, y, z axes (in radians)
            tx, ty, tz: Translation along x, y, z axes
            device: PyTorch device

        Returns:
            RigidTransform object
        """
        device = device or torch.device("cpu")

        Rx = torch.tensor(
            [[1, 0, 0], [0, np.cos(rx), -np.sin(rx)], [0, np.sin(rx), np.cos(rx)]],
            dtype=DEFAULT_DTYPE,
            device=device,
        )
        Ry = torch.tensor(
            [[np.cos(ry), 0, np.sin(ry)], [0, 1, 0], [-np.sin(ry), 0, np.cos(ry)]],
            dtype=DEFAULT_DTYPE,
            device=device,
        )
        Rz = torch.tensor(
            [[np.cos(rz), -np.sin(rz), 0], [np.sin(rz), np.cos(rz), 0], [0, 0, 1]],
            dtype=DEFAULT_DTYPE,
            device=device,
        )

        R = torch.matmul(Rz, torch.matmul(Ry, Rx))
        t = torch.tensor([tx, ty, tz], dtype=DEFAULT_DTYPE, device=device)

        return cls(R, t)

    @classmethod
    def identity(
        cls, device: Optional[torch.device] = None, dtype: torch.dtype = DEFAULT_DTYPE
    ) -> "RigidTransform":
        """
        Create identity transformation.

        Args:
            device: PyTorch device
            dtype: Tensor dtype

        Returns:
            Identity transform
        """
        device = device or torch.device("cpu")
        return cls(
            torch.eye(3, dtype=dtype, device=device),
            torch.zeros(3, dtype=dtype, device=device),
        )

    @classmethod
    def exp(cls, xi: torch.Tensor) -> "RigidTransform":
        """
        Exponential map from se(3) to SE(3).

        Args:
            xi: 6D twist coordinates (v, omega); the first 3 elements are
                translation components, the last 3 rotation components

        Returns:
            RigidTransform object
        """
        if xi.shape != (6,):
            raise ValueError(f"Expected 6D vector, got {tuple(xi.shape)}")

        eye = torch.eye(3, dtype=xi.dtype, device=xi.device)
        v = xi[:3]
        omega = xi[3:]
        theta = torch.norm(omega)

        if theta < 1e-10:
            # First order
            R = eye + skew_symmetric(omega)
            V = eye
        else:
            K = skew_symmetric(omega / theta)
            K2 = torch.matmul(K, K)
            R = eye + torch.sin(theta) * K + (1 - torch.cos(theta)) * K2
            V = (
                eye
                + (1 - torch.cos(theta)) / theta * K
                + (theta - torch.sin(theta)) / theta * K2
            )

        return cls(R, torch.matmul(V, v))

    def to_matrix(self) -> torch.Tensor:
        """
        Convert to 4x4 transformation matrix.

        Returns:
            4x4 transformation matrix
        """
        matrix = torch.eye(4, dtype=self.dtype, device=self.device)
        matrix[:3, :3] = self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def transform_point(self, point: torch.Tensor) -> torch.Tensor:
        """Transform a single 3D point."""
        return torch.matmul(self.rotation, point) + self.translation

    def transform_points(self, points: torch.Tensor) -> torch.Tensor:
        """
        Transform multiple 3D points.

        Args:
            points: Tensor of shape (N, 3)

        Returns:
            Transformed points of shape (N, 3)
        """
        return torch.matmul(points, self.rotation.t()) + self.translation

    def rotate_covariances(self, covariances: torch.Tensor) -> torch.Tensor:
        """
        Rotate a batch of 3x3 covariance matrices into the target frame.

        Args:
            covariances: Tensor of shape (N, 3, 3)

        Returns:
            R * C * R^T for every matrix, shape (N, 3, 3)
        """
        return torch.matmul(torch.matmul(self.rotation, covariances), self.rotation.t())

    def inverse(self) -> "RigidTransform":
        """Compute the inverse transformation."""
        R_inv = self.rotation.t()
        t_inv = -torch.matmul(R_inv, self.translation)
        return RigidTransform(R_inv, t_inv)

    def compose(self, other: "RigidTransform") -> "RigidTransform":
        """
        Compose with another transformation: self * other

        Args:
            other: Another RigidTransform

        Returns:
            Composed transformation
        """
        R = torch.matmul(self.rotation, other.rotation)
        t = torch.matmul(self.rotation, other.translation) + self.translation
        return RigidTransform(R, t)

    def translation_norm(self) -> float:
        """Length of the translation component."""
        return torch.norm(self.translation).item()

    def rotation_angle(self) -> float:
        """Rotation angle in radians, taken from the trace of the rotation."""
        cos_theta = (torch.trace(self.rotation) - 1.0) / 2.0
        return torch.acos(torch.clamp(cos_theta, -1.0, 1.0)).item()

    def clone(self) -> "RigidTransform":
        return RigidTransform(self.rotation.clone(), self.translation.clone())

    def to(self, device: torch.device) -> "RigidTransform":
        return RigidTransform(self.rotation.to(device), self.translation.to(device))

    def allclose(self, other: "RigidTransform", atol: float = 1e-6) -> bool:
        """Check element-wise closeness with another transform."""
        return torch.allclose(
            self.rotation, other.rotation.to(self.dtype), atol=atol
        ) and torch.allclose(self.translation, other.translation.to(self.dtype), atol=atol)

    def __repr__(self) -> str:
        return f"RigidTransform(R=\n{self.rotation},\nt={self.translation})"


def skew_symmetric(v: torch.Tensor) -> torch.Tensor:
    """
    Create a skew-symmetric matrix from a 3D vector.

    Args:
        v: 3D vector

    Returns:
        3x3 skew-symmetric matrix
    """
    zero = torch.zeros((), dtype=v.dtype, device=v.device)
    return torch.stack(
        [
            torch.stack([zero, -v[2], v[1]]),
            torch.stack([v[2], zero, -v[0]]),
            torch.stack([-v[1], v[0], zero]),
        ]
    )


def batch_skew_symmetric(v: torch.Tensor) -> torch.Tensor:
    """
    Skew-symmetric matrices for a batch of vectors.

    Args:
        v: Tensor of shape (N, 3)

    Returns:
        Tensor of shape (N, 3, 3)
    """
    S = torch.zeros((v.shape[0], 3, 3), dtype=v.dtype, device=v.device)
    S[:, 0, 1] = -v[:, 2]
    S[:, 0, 2] = v[:, 1]
    S[:, 1, 0] = v[:, 2]
    S[:, 1, 2] = -v[:, 0]
    S[:, 2, 0] = -v[:, 1]
    S[:, 2, 1] = v[:, 0]
    return S


def rotation_matrix_to_quaternion(R: torch.Tensor) -> torch.Tensor:
    """
    Convert rotation matrix to quaternion.

    Args:
        R: 3x3 rotation matrix

    Returns:
        Quaternion [w, x, y, z] where w is the scalar part
    """
    trace = torch.trace(R)

    if trace > 0:
        s = 0.5 / torch.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (R[2, 1] - R[1, 2]) * s
        y = (R[0, 2] - R[2, 0]) * s
        z = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * torch.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * torch.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * torch.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s

    return torch.stack([w, x, y, z])
