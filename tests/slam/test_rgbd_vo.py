from unittest.mock import MagicMock

import pytest

from torchrgbd.backend.se3 import RigidTransform
from torchrgbd.frontend.loop_closure import LoopClosureEvent, LoopClosureStatus
from torchrgbd.slam.rgbd_vo import RGBDVisualOdometry, RGBDVOStatus

# Frame-to-frame ICP without the loop-closure worker
ICP_CONFIG = {"registration": {"type": "icp"}, "loop_closure": {"enabled": False}}


def step(dx=0.02):
    return RigidTransform.from_elements(0.0, 0.005, 0.0, dx, 0.0, 0.01)


def queued_events(*events):
    """Loop-closure stand-in whose events are handed out once."""
    pending = list(events)
    coordinator = MagicMock()

    def poll_events():
        drained = list(pending)
        pending.clear()
        return drained

    coordinator.poll_events.side_effect = poll_events
    return coordinator


@pytest.fixture
def feed(render_rgbd, random_scene, intrinsics):
    """Render the scene from a camera pose and push it through the pipeline."""

    def process(vo, pose, timestamp, max_keypoints=None):
        rgb, depth, keypoints = render_rgbd(random_scene, pose)
        if max_keypoints is not None:
            keypoints = keypoints[:max_keypoints]
        return vo.process_frame(rgb, depth, intrinsics, timestamp, keypoints=keypoints)

    return process


class TestRGBDVisualOdometry:
    def test_first_frame(self, feed):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        result = feed(vo, RigidTransform.identity(), 0.0)

        assert result["status"] == RGBDVOStatus.INITIALIZING
        assert result["success"]
        assert result["keyframe"].id == 0
        assert result["relative_pose"].allclose(RigidTransform.identity())
        assert result["num_valid"] > 200
        assert result["frame_idx"] == 1

    def test_tracks_motion(self, feed):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        motion = step()
        feed(vo, RigidTransform.identity(), 0.0)
        result = feed(vo, motion, 0.1)

        assert result["status"] == RGBDVOStatus.TRACKING
        assert result["relative_pose"].allclose(motion, atol=1e-2)
        assert vo.get_pose().allclose(motion, atol=1e-2)

        result = feed(vo, motion.compose(motion), 0.2)
        assert result["pose"].allclose(motion.compose(motion), atol=2e-2)

    @pytest.mark.parametrize("timestamp", [0.05, 0.1])
    def test_rejects_frames_not_after_the_last(self, feed, timestamp):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        feed(vo, RigidTransform.identity(), 0.0)
        feed(vo, step(), 0.1)
        pose = vo.get_pose()
        version = vo.get_snapshot().version

        result = feed(vo, step(0.5), timestamp)

        assert result["status"] == RGBDVOStatus.REJECTED
        assert result["relative_pose"] is None
        assert not result["success"]
        assert vo.get_pose().allclose(pose, atol=0.0)
        assert vo.get_snapshot().version == version
        assert vo.frame_idx == 2
        assert vo.last_timestamp == 0.1
        # The rejected frame does not change the status of the pipeline
        assert vo.status == RGBDVOStatus.TRACKING

    def test_identity_policy_on_failure(self, feed):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        feed(vo, RigidTransform.identity(), 0.0)
        result = feed(vo, step(), 0.1, max_keypoints=5)

        assert result["status"] == RGBDVOStatus.LOST
        assert not result["success"]
        assert result["relative_pose"].allclose(RigidTransform.identity())
        assert result["keyframe"] is None
        assert vo.get_pose().allclose(RigidTransform.identity())

    def test_constant_velocity_policy_on_failure(self, feed):
        config = {
            "registration": {"type": "icp", "failure_policy": "constant_velocity"},
            "loop_closure": {"enabled": False},
        }
        vo = RGBDVisualOdometry(config)
        motion = step()
        feed(vo, RigidTransform.identity(), 0.0)
        tracked = feed(vo, motion, 0.1)["relative_pose"]

        result = feed(vo, motion.compose(motion), 0.2, max_keypoints=5)
        assert result["status"] == RGBDVOStatus.LOST
        assert result["relative_pose"].allclose(tracked)
        assert vo.get_pose().allclose(tracked.compose(tracked), atol=1e-9)

    def test_invalid_failure_policy(self):
        with pytest.raises(ValueError):
            RGBDVisualOdometry({"registration": {"failure_policy": "stop"}})

    def test_set_strategy_validation(self):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        with pytest.raises(ValueError):
            vo.set_strategy("orb_slam")
        with pytest.raises(ValueError):
            vo.set_strategy("particle_loop")
        assert vo.strategy == "icp"

    def test_set_strategy_keeps_instances(self):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        icp = vo.estimator
        vo.set_strategy("ransac")
        vo.set_strategy("icp")
        assert vo.estimator is icp
        assert set(vo.estimators) == {"icp", "ransac"}

    def test_switch_to_model_strategy_mid_sequence(self, feed):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        motion = step()
        feed(vo, RigidTransform.identity(), 0.0)
        feed(vo, motion, 0.1)

        vo.set_strategy("icp_model")
        assert vo.estimator.model_size > 0

        two_steps = motion.compose(motion)
        result = feed(vo, two_steps, 0.2)
        assert result["status"] == RGBDVOStatus.TRACKING
        assert result["relative_pose"].allclose(motion, atol=1e-2)
        assert vo.get_pose().allclose(two_steps, atol=2e-2)

    def test_keyframe_promotion(self, feed):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        keyframes = []
        for i in range(5):
            pose = RigidTransform.from_elements(0.0, 0.0, 0.0, 0.04 * i, 0.0, 0.0)
            result = feed(vo, pose, 0.1 * i)
            keyframes.append(result["keyframe"].id if result["keyframe"] is not None else None)

        assert keyframes == [0, None, None, 1, None]
        snapshot = vo.get_snapshot()
        assert snapshot.num_keyframes == 2
        assert len(snapshot.edges) == 1
        assert snapshot.keyframe_poses[1].allclose(
            RigidTransform.from_elements(0.0, 0.0, 0.0, 0.12, 0.0, 0.0), atol=1e-2
        )

    def test_loop_corrections_reach_every_strategy(self):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        correction = RigidTransform.from_elements(0.0, 0.0, 0.0, 0.1, 0.0, 0.0)
        accepted = LoopClosureEvent(LoopClosureStatus.ACCEPTED, 7, 1, correction=correction)
        rejected = LoopClosureEvent(LoopClosureStatus.REJECTED, 7, 2)

        vo.loop_closure = MagicMock()
        vo.loop_closure.poll_events.return_value = [accepted, rejected]
        vo.estimators = {"icp": MagicMock(), "ransac": MagicMock()}

        assert vo._drain_loop_events() == [accepted, rejected]
        for estimator in vo.estimators.values():
            estimator.apply_correction.assert_called_once_with(correction)

    def test_failure_after_loop_correction_applies_it_once(self, feed):
        config = {"registration": {"type": "icp_model"}, "loop_closure": {"enabled": False}}
        vo = RGBDVisualOdometry(config)
        feed(vo, RigidTransform.identity(), 0.0)

        # A loop closure rebased the trajectory, its event is still queued
        correction = RigidTransform.from_elements(0.0, 0.0, 0.0, 0.3, 0.0, 0.0)
        vo.trajectory.apply_loop_correction({0: correction})
        event = LoopClosureEvent(LoopClosureStatus.ACCEPTED, 0, 0, correction=correction)
        vo.loop_closure = queued_events(event)

        result = feed(vo, RigidTransform.identity(), 0.1, max_keypoints=5)
        assert result["status"] == RGBDVOStatus.LOST
        assert result["loop_closures"] == [event]
        assert vo.get_pose().allclose(correction, atol=1e-9)
        assert vo.estimator.pose.allclose(correction, atol=1e-9)

        # The model moved with the correction, so tracking resumes in place
        result = feed(vo, RigidTransform.identity(), 0.2)
        assert result["status"] == RGBDVOStatus.TRACKING
        assert result["loop_closures"] == []
        assert vo.get_pose().allclose(correction, atol=1e-2)

    def test_switch_strategy_with_queued_loop_correction(self, feed):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        motion = step()
        feed(vo, RigidTransform.identity(), 0.0)
        feed(vo, motion, 0.1)

        correction = RigidTransform.from_elements(0.0, 0.0, 0.0, 0.3, 0.0, 0.0)
        vo.trajectory.apply_loop_correction({0: correction})
        event = LoopClosureEvent(LoopClosureStatus.ACCEPTED, 0, 0, correction=correction)
        vo.loop_closure = queued_events(event)

        vo.set_strategy("icp_model")
        assert vo.estimator.pose.allclose(vo.get_pose(), atol=1e-9)

        two_steps = motion.compose(motion)
        result = feed(vo, two_steps, 0.2)
        assert result["loop_closures"] == [event]
        assert result["status"] == RGBDVOStatus.TRACKING
        assert result["relative_pose"].allclose(motion, atol=1e-2)
        assert vo.get_pose().allclose(correction.compose(two_steps), atol=2e-2)

    def test_default_strategy_tracks_handheld_motion(self, feed):
        vo = RGBDVisualOdometry({"loop_closure": {"enabled": False}})
        assert vo.strategy == "icp_prob_model"

        motion = step(0.022)
        pose = RigidTransform.identity()
        statuses = [feed(vo, pose, 0.0)["status"]]
        for i in range(1, 6):
            pose = pose.compose(motion)
            result = feed(vo, pose, 0.1 * i)
            statuses.append(result["status"])
            assert result["relative_pose"].allclose(motion, atol=1e-2)

        assert statuses == [RGBDVOStatus.INITIALIZING] + [RGBDVOStatus.TRACKING] * 5
        assert vo.get_pose().allclose(pose, atol=2e-2)

    def test_context_manager_runs_loop_worker(self):
        with RGBDVisualOdometry({"registration": {"type": "icp"}}) as vo:
            assert vo.loop_closure.is_running
        assert not vo.loop_closure.is_running

    def test_without_loop_closure(self):
        with RGBDVisualOdometry(ICP_CONFIG) as vo:
            assert vo.loop_closure is None
            assert vo._drain_loop_events() == []

    def test_snapshot(self, feed):
        vo = RGBDVisualOdometry(ICP_CONFIG)
        feed(vo, RigidTransform.identity(), 0.0)
        snapshot = vo.get_snapshot()
        assert snapshot.num_keyframes == 1
        assert snapshot.global_pose.allclose(vo.get_pose())
