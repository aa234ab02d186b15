import math
import unittest

import numpy as np
import torch

from torchrgbd.backend.se3 import (
    DEFAULT_DTYPE,
    RigidTransform,
    batch_skew_symmetric,
    rotation_matrix_to_quaternion,
    skew_symmetric,
)


class TestRigidTransform(unittest.TestCase):
    def setUp(self):
        self.transform = RigidTransform.from_elements(0.1, -0.2, 0.3, 1.0, 2.0, -0.5)

    def test_identity(self):
        identity = RigidTransform.identity()
        self.assertEqual(identity.dtype, DEFAULT_DTYPE)
        self.assertTrue(torch.equal(identity.rotation, torch.eye(3, dtype=DEFAULT_DTYPE)))
        self.assertEqual(identity.translation_norm(), 0.0)
        self.assertAlmostEqual(identity.rotation_angle(), 0.0)

    def test_invalid_shapes(self):
        with self.assertRaises(ValueError):
            RigidTransform(torch.eye(4), torch.zeros(3))
        with self.assertRaises(ValueError):
            RigidTransform(torch.eye(3), torch.zeros(4))
        with self.assertRaises(ValueError):
            RigidTransform.from_matrix(torch.eye(3))

    def test_compose_with_inverse_is_identity(self):
        result = self.transform.compose(self.transform.inverse())
        self.assertTrue(result.allclose(RigidTransform.identity(), atol=1e-12))

    def test_matrix_round_trip(self):
        matrix = self.transform.to_matrix()
        self.assertEqual(matrix.shape, (4, 4))
        self.assertTrue(RigidTransform.from_matrix(matrix).allclose(self.transform))

    def test_transform_points_matches_single_point(self):
        points = torch.tensor([[0.0, 0.0, 1.0], [1.0, -1.0, 2.0]], dtype=DEFAULT_DTYPE)
        batch = self.transform.transform_points(points)
        for i in range(points.shape[0]):
            self.assertTrue(torch.allclose(batch[i], self.transform.transform_point(points[i])))

    def test_compose_order(self):
        # (A * B)(p) == A(B(p))
        other = RigidTransform.from_elements(0.0, 0.5, 0.0, 0.0, 0.0, 1.0)
        point = torch.tensor([0.3, 0.2, 0.1], dtype=DEFAULT_DTYPE)
        composed = self.transform.compose(other).transform_point(point)
        chained = self.transform.transform_point(other.transform_point(point))
        self.assertTrue(torch.allclose(composed, chained))

    def test_rotate_covariances(self):
        covariances = torch.diag(torch.tensor([1.0, 2.0, 3.0], dtype=DEFAULT_DTYPE))[None]
        rotated = self.transform.rotate_covariances(covariances)
        # Eigenvalues are preserved by a rotation
        eigenvalues = torch.linalg.eigvalsh(rotated[0])
        self.assertTrue(
            torch.allclose(eigenvalues, torch.tensor([1.0, 2.0, 3.0], dtype=DEFAULT_DTYPE))
        )

    def test_exp_zero_is_identity(self):
        result = RigidTransform.exp(torch.zeros(6, dtype=DEFAULT_DTYPE))
        self.assertTrue(result.allclose(RigidTransform.identity()))

    def test_exp_rotation_angle(self):
        xi = torch.tensor([0.0, 0.0, 0.0, 0.0, 0.0, 0.4], dtype=DEFAULT_DTYPE)
        result = RigidTransform.exp(xi)
        self.assertAlmostEqual(result.rotation_angle(), 0.4, places=10)
        expected = RigidTransform.from_elements(0.0, 0.0, 0.4, 0.0, 0.0, 0.0)
        self.assertTrue(result.allclose(expected))

    def test_exp_pure_translation(self):
        xi = torch.tensor([0.1, -0.2, 0.3, 0.0, 0.0, 0.0], dtype=DEFAULT_DTYPE)
        result = RigidTransform.exp(xi)
        self.assertTrue(torch.allclose(result.translation, xi[:3]))

    def test_exp_invalid_shape(self):
        with self.assertRaises(ValueError):
            RigidTransform.exp(torch.zeros(3))

    def test_from_numpy(self):
        transform = RigidTransform.from_numpy(np.eye(3), np.array([1.0, 2.0, 3.0]))
        self.assertEqual(transform.dtype, DEFAULT_DTYPE)
        self.assertAlmostEqual(transform.translation_norm(), math.sqrt(14.0))

    def test_clone_is_independent(self):
        copy = self.transform.clone()
        copy.translation[0] = 100.0
        self.assertNotEqual(self.transform.translation[0].item(), 100.0)


class TestHelpers(unittest.TestCase):
    def test_skew_symmetric_cross_product(self):
        a = torch.tensor([1.0, 2.0, 3.0], dtype=DEFAULT_DTYPE)
        b = torch.tensor([-1.0, 0.5, 2.0], dtype=DEFAULT_DTYPE)
        self.assertTrue(torch.allclose(skew_symmetric(a) @ b, torch.linalg.cross(a, b)))

    def test_batch_skew_symmetric(self):
        v = torch.tensor([[1.0, 2.0, 3.0], [0.0, -1.0, 4.0]], dtype=DEFAULT_DTYPE)
        batch = batch_skew_symmetric(v)
        for i in range(v.shape[0]):
            self.assertTrue(torch.allclose(batch[i], skew_symmetric(v[i])))

    def test_quaternion_identity(self):
        q = rotation_matrix_to_quaternion(torch.eye(3, dtype=DEFAULT_DTYPE))
        self.assertTrue(torch.allclose(q, torch.tensor([1.0, 0.0, 0.0, 0.0], dtype=DEFAULT_DTYPE)))

    def test_quaternion_half_turn(self):
        rotation = RigidTransform.from_elements(0.0, 0.0, math.pi, 0.0, 0.0, 0.0).rotation
        q = rotation_matrix_to_quaternion(rotation)
        self.assertAlmostEqual(abs(q[3].item()), 1.0, places=6)
        self.assertAlmostEqual(q[0].item(), 0.0, places=6)
