import unittest

import pytest
import torch

from torchrgbd.backend.se3 import DEFAULT_DTYPE, RigidTransform
from torchrgbd.frontend.odometry import (
    CovarianceICPEstimator,
    FeatureModel,
    ProbabilisticModelEstimator,
)


class TestCovarianceICP:
    def test_tracks_against_model(self, make_frame, scene_points, small_motion):
        estimator = CovarianceICPEstimator()
        first = estimator.estimate_motion(make_frame(scene_points))
        assert first.success and first.message == "initialized"
        assert estimator.model_size == scene_points.shape[0]

        estimate = estimator.estimate_motion(make_frame(scene_points, small_motion))
        assert estimate.success
        assert estimate.transform.allclose(small_motion, atol=1e-6)
        assert estimator.pose.allclose(small_motion, atol=1e-6)

        # The third frame is expressed relative to the second
        two_steps = small_motion.compose(small_motion)
        estimate = estimator.estimate_motion(make_frame(scene_points, two_steps))
        assert estimate.success
        assert estimate.transform.allclose(small_motion, atol=1e-6)
        assert estimator.pose.allclose(two_steps, atol=1e-6)

    def test_window_is_bounded(self, make_frame, scene_points):
        estimator = CovarianceICPEstimator({"model_window": 2})
        for _ in range(4):
            assert estimator.estimate_motion(make_frame(scene_points)).success
        assert len(estimator.window) == 2

    def test_pairwise_leaves_model_untouched(self, make_frame, scene_points, small_motion):
        estimator = CovarianceICPEstimator()
        reference = make_frame(scene_points)
        estimator.estimate_motion(reference)

        estimate = estimator.estimate_motion(make_frame(scene_points, small_motion), reference)
        assert estimate.success
        assert estimate.transform.allclose(small_motion, atol=1e-6)
        assert estimator.model_size == scene_points.shape[0]
        assert estimator.pose.allclose(RigidTransform.identity())

    def test_tracks_with_tight_covariances(self, make_frame, scene_points):
        # A 5 cm step is far outside the gate at 1 mm noise, the leading
        # Euclidean iterations bring it within reach
        estimator = CovarianceICPEstimator()
        estimator.estimate_motion(make_frame(scene_points, cov=1e-6))
        offset = RigidTransform.from_elements(0.0, 0.0, 0.0, 0.05, 0.0, 0.0)
        estimate = estimator.estimate_motion(make_frame(scene_points, offset, cov=1e-6))
        assert estimate.success
        assert estimate.transform.allclose(offset, atol=1e-6)

    def test_gating_from_first_iteration_loses_track(self, make_frame, scene_points):
        estimator = CovarianceICPEstimator({"coarse_iterations": 0})
        estimator.estimate_motion(make_frame(scene_points, cov=1e-6))
        offset = RigidTransform.from_elements(0.0, 0.0, 0.0, 0.05, 0.0, 0.0)
        estimate = estimator.estimate_motion(make_frame(scene_points, offset, cov=1e-6))
        assert not estimate.success
        assert estimate.message == "not enough correspondences"

    @pytest.mark.parametrize("estimator_cls", [CovarianceICPEstimator, ProbabilisticModelEstimator])
    def test_tracks_typical_handheld_step(self, make_frame, scene_points, estimator_cls):
        # 2.2 cm and 0.005 rad per frame with 3 mm keypoint noise
        estimator = estimator_cls()
        step = RigidTransform.from_elements(0.0, 0.005, 0.0, 0.022, 0.0, 0.01)
        pose = RigidTransform.identity()
        estimator.estimate_motion(make_frame(scene_points, cov=1e-5))
        for _ in range(4):
            pose = pose.compose(step)
            estimate = estimator.estimate_motion(make_frame(scene_points, pose, cov=1e-5))
            assert estimate.success
            assert estimate.transform.allclose(step, atol=1e-6)
        assert estimator.pose.allclose(pose, atol=1e-6)

    def test_gate_rejects_displaced_points(self, make_frame, scene_points):
        estimator = CovarianceICPEstimator()
        estimator.estimate_motion(make_frame(scene_points, cov=1e-4))
        moved = scene_points.clone()
        moved[:40, 0] += 0.1
        estimate = estimator.estimate_motion(make_frame(moved, cov=1e-4))
        assert estimate.success
        assert estimate.transform.allclose(RigidTransform.identity(), atol=1e-6)
        assert estimate.num_inliers == scene_points.shape[0] - 40

    def test_resync_seeds_empty_model(self, make_frame, scene_points, small_motion):
        estimator = CovarianceICPEstimator()
        estimator.resync(make_frame(scene_points, small_motion), small_motion)
        assert estimator.model_size == scene_points.shape[0]

        two_steps = small_motion.compose(small_motion)
        estimate = estimator.estimate_motion(make_frame(scene_points, two_steps))
        assert estimate.success
        assert estimate.transform.allclose(small_motion, atol=1e-6)

    def test_apply_correction(self, make_frame, scene_points):
        estimator = CovarianceICPEstimator()
        estimator.estimate_motion(make_frame(scene_points))
        delta = RigidTransform.from_elements(0.0, 0.0, 0.1, 0.5, 0.0, 0.0)
        estimator.apply_correction(delta)

        assert estimator.pose.allclose(delta)
        means, _ = estimator.window[0]
        assert torch.allclose(means, delta.transform_points(scene_points))

    def test_reset(self, make_frame, scene_points):
        estimator = CovarianceICPEstimator()
        estimator.estimate_motion(make_frame(scene_points))
        estimator.reset()
        assert estimator.model_size == 0


class TestProbabilisticModel:
    def test_tracks_and_fuses(self, make_frame, scene_points, small_motion):
        estimator = ProbabilisticModelEstimator()
        estimator.estimate_motion(make_frame(scene_points))
        n = scene_points.shape[0]
        assert estimator.model_size == n

        estimate = estimator.estimate_motion(make_frame(scene_points, small_motion))
        assert estimate.success
        assert estimate.transform.allclose(small_motion, atol=1e-6)
        assert estimate.extra["model_size"] == n

        # Every component was observed twice, so its covariance shrank
        assert torch.all(estimator.model.covariances[:, 0, 0] < 1e-3)
        assert torch.all(estimator.model.last_seen == estimator.model.update_count)

    def test_unmatched_points_extend_model(self, make_frame, scene_points):
        estimator = ProbabilisticModelEstimator()
        estimator.estimate_motion(make_frame(scene_points[:150]))
        estimate = estimator.estimate_motion(make_frame(scene_points))
        assert estimate.success
        assert estimator.model_size == scene_points.shape[0]

    def test_apply_correction_moves_model(self, make_frame, scene_points):
        estimator = ProbabilisticModelEstimator()
        estimator.estimate_motion(make_frame(scene_points))
        delta = RigidTransform.from_elements(0.0, 0.0, 0.0, 0.0, 1.0, 0.0)
        estimator.apply_correction(delta)
        assert torch.allclose(estimator.model.means, delta.transform_points(scene_points))
        assert estimator.pose.allclose(delta)

    def test_pairwise_mode(self, make_frame, scene_points, small_motion):
        estimator = ProbabilisticModelEstimator()
        reference = make_frame(scene_points)
        estimate = estimator.estimate_motion(make_frame(scene_points, small_motion), reference)
        assert estimate.success
        assert estimator.model.is_empty


class TestFeatureModel(unittest.TestCase):
    def setUp(self):
        self.points = torch.tensor(
            [[0.0, 0.0, 1.0], [1.0, 0.0, 1.0], [0.0, 1.0, 1.0], [1.0, 1.0, 1.0]],
            dtype=DEFAULT_DTYPE,
        )
        self.covariances = torch.eye(3, dtype=DEFAULT_DTYPE).repeat(4, 1, 1) * 1e-3

    def test_associate_one_observation_per_component(self):
        model = FeatureModel()
        model.update(self.points, self.covariances)

        observations = torch.tensor(
            [[0.01, 0.0, 1.0], [0.0, 0.01, 1.0], [5.0, 5.0, 5.0]], dtype=DEFAULT_DTYPE
        )
        obs_idx, comp_idx, d2 = model.associate(observations, self.covariances[:3])
        self.assertEqual(comp_idx.tolist(), [0])
        self.assertEqual(len(obs_idx), 1)
        self.assertEqual(d2.shape, (1,))

    def test_associate_gate_override(self):
        model = FeatureModel()
        model.update(self.points, self.covariances)

        observation = torch.tensor([[0.2, 0.0, 1.0]], dtype=DEFAULT_DTYPE)
        obs_idx, _, _ = model.associate(observation, self.covariances[:1])
        self.assertEqual(len(obs_idx), 0)

        obs_idx, comp_idx, d2 = model.associate(observation, self.covariances[:1], float("inf"))
        self.assertEqual(comp_idx.tolist(), [0])
        self.assertAlmostEqual(d2.item(), 20.0)

    def test_age_out(self):
        model = FeatureModel(max_age=2)
        model.update(self.points[:1], self.covariances[:1])
        for _ in range(3):
            model.update(self.points[1:2], self.covariances[1:2], None, *self._match(model, 1))
        # Component 0 was last seen three updates ago
        self.assertEqual(len(model), 1)
        self.assertTrue(torch.allclose(model.means[0], self.points[1]))

    def test_cap_evicts_oldest(self):
        model = FeatureModel(max_model_size=3)
        model.update(self.points[:2], self.covariances[:2])
        model.update(self.points[2:], self.covariances[2:])
        self.assertEqual(len(model), 3)
        # The first inserted component of the oldest update goes first
        self.assertTrue(torch.allclose(model.means[0], self.points[1]))

    def test_descriptors_follow_components(self):
        model = FeatureModel()
        descriptors = torch.arange(16, dtype=torch.uint8).reshape(4, 4)
        model.update(self.points[:2], self.covariances[:2])
        model.update(self.points[2:], self.covariances[2:], descriptors[2:])
        self.assertEqual(model.descriptors.shape, (4, 4))
        self.assertTrue(torch.equal(model.descriptors[2:], descriptors[2:]))
        self.assertTrue(torch.all(model.descriptors[:2] == 0))

    def test_transform(self):
        model = FeatureModel()
        model.update(self.points, self.covariances)
        delta = RigidTransform.from_elements(0.0, 0.0, 0.0, 1.0, 2.0, 3.0)
        model.transform(delta)
        self.assertTrue(torch.allclose(model.means, self.points + torch.tensor([1.0, 2.0, 3.0], dtype=DEFAULT_DTYPE)))

    def _match(self, model, point_index):
        obs_idx, comp_idx, _ = model.associate(
            self.points[point_index : point_index + 1],
            self.covariances[point_index : point_index + 1],
        )
        return obs_idx, comp_idx


def test_invalid_min_correspondences():
    with pytest.raises(ValueError):
        CovarianceICPEstimator({"min_correspondences": 1})


@pytest.mark.parametrize("coarse_iterations", [-1, 30])
def test_invalid_coarse_iterations(coarse_iterations):
    with pytest.raises(ValueError):
        CovarianceICPEstimator({"coarse_iterations": coarse_iterations})
