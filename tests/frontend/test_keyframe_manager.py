import math
import unittest

import torch

from torchrgbd.backend.se3 import DEFAULT_DTYPE, RigidTransform
from torchrgbd.backend.trajectory import EdgeKind, Trajectory
from torchrgbd.frontend.frame import Frame
from torchrgbd.frontend.keyframe import KeyframeManager, PromotionMetric
from torchrgbd.frontend.odometry import MotionEstimate


def translation(x=0.0, y=0.0, z=0.0):
    return RigidTransform.from_elements(0.0, 0.0, 0.0, x, y, z)


def make_frame(n=100, timestamp=0.0):
    generator = torch.Generator().manual_seed(0)
    means = torch.rand((n, 3), generator=generator, dtype=DEFAULT_DTYPE) + 1.0
    return Frame.from_distributions(means, timestamp=timestamp)


def estimate(num_correspondences=100, success=True):
    return MotionEstimate(
        RigidTransform.identity(), success, num_correspondences=num_correspondences
    )


class TestKeyframeManager(unittest.TestCase):
    def setUp(self):
        self.trajectory = Trajectory()
        self.manager = KeyframeManager(self.trajectory)
        self.frame_index = 0

    def process(self, pose, est=None, frame_index=None):
        if frame_index is None:
            self.frame_index += 1
            frame_index = self.frame_index
        with self.trajectory.write():
            return self.manager.process(make_frame(timestamp=frame_index), pose, est, frame_index)

    def test_defaults(self):
        self.assertAlmostEqual(self.manager.kf_dist_eps, 0.10)
        self.assertAlmostEqual(self.manager.kf_angle_eps, math.radians(10.0))
        self.assertEqual(self.manager.promotion_metric, PromotionMetric.DISPLACEMENT)

    def test_first_frame_becomes_keyframe(self):
        keyframe = self.process(translation())
        self.assertEqual(keyframe.id, 0)
        self.assertEqual(self.manager.active_keyframe_id, 0)
        self.assertEqual(self.manager.num_keyframes, 1)

    def test_promotion_on_translation(self):
        self.process(translation())
        self.assertIsNone(self.process(translation(x=0.05), estimate()))
        keyframe = self.process(translation(x=0.12), estimate())

        self.assertIsNotNone(keyframe)
        self.assertEqual(keyframe.id, 1)
        self.assertEqual(self.manager.active_keyframe_id, 1)

        edges = self.manager.get_edges(1)
        self.assertEqual(len(edges), 1)
        self.assertEqual((edges[0].source, edges[0].target), (0, 1))
        self.assertEqual(edges[0].kind, EdgeKind.SEQUENTIAL)
        self.assertTrue(edges[0].transform.allclose(translation(x=0.12)))

    def test_displacement_measured_from_active_keyframe(self):
        self.process(translation())
        self.process(translation(x=0.12), estimate())
        self.assertIsNone(self.process(translation(x=0.2), estimate()))
        self.assertIsNotNone(self.process(translation(x=0.23), estimate()))

    def test_promotion_on_rotation(self):
        self.process(translation())
        small = RigidTransform.from_elements(0.0, math.radians(5), 0.0, 0.0, 0.0, 0.0)
        large = RigidTransform.from_elements(0.0, math.radians(15), 0.0, 0.0, 0.0, 0.0)
        self.assertIsNone(self.process(small, estimate()))
        self.assertIsNotNone(self.process(large, estimate()))

    def test_failed_estimate_never_promotes(self):
        self.process(translation())
        self.assertIsNone(self.process(translation(x=1.0), estimate(success=False)))
        self.assertIsNone(self.process(translation(x=1.0), None))
        self.assertEqual(self.manager.num_keyframes, 1)

    def test_at_most_one_promotion_per_frame(self):
        self.process(translation(), frame_index=1)
        keyframe = self.process(translation(x=0.5), estimate(), frame_index=2)
        self.assertIsNotNone(keyframe)
        self.assertIsNone(self.process(translation(x=1.0), estimate(), frame_index=2))

    def test_overlap_metric(self):
        manager = KeyframeManager(self.trajectory, {"promotion_metric": "overlap"})
        self.manager = manager
        self.process(translation())

        # Large motion but high overlap
        self.assertIsNone(self.process(translation(x=1.0), estimate(num_correspondences=90)))
        # No motion but low overlap
        self.assertIsNotNone(self.process(translation(), estimate(num_correspondences=30)))

    def test_any_metric(self):
        self.manager = KeyframeManager(self.trajectory, {"promotion_metric": "any"})
        self.process(translation())
        self.assertIsNotNone(self.process(translation(x=1.0), estimate(num_correspondences=90)))
        self.assertIsNotNone(self.process(translation(x=1.0), estimate(num_correspondences=10)))

    def test_invalid_metric(self):
        with self.assertRaises(ValueError):
            KeyframeManager(self.trajectory, {"promotion_metric": "entropy"})

    def test_queries(self):
        self.process(translation())
        self.process(translation(x=0.5), estimate())
        self.process(translation(x=1.0), estimate())

        self.assertEqual([kf.id for kf in self.manager.get_all_keyframes()], [0, 1, 2])
        self.assertEqual(self.manager.graph_distance(0, 2), 2)
        near = self.manager.get_keyframes_near(translation(x=0.9), 0.45)
        self.assertEqual([kf.id for kf, _ in near], [2, 1])

    def test_relative_to_active(self):
        self.process(translation(x=1.0))
        relative = self.manager.relative_to_active(translation(x=1.5, y=0.5))
        self.assertTrue(relative.allclose(translation(x=0.5, y=0.5)))

    def test_reset(self):
        self.process(translation())
        self.manager.reset()
        self.assertIsNone(self.manager.active_keyframe)
        # The graph itself keeps its keyframes
        self.assertEqual(self.process(translation()).id, 1)
