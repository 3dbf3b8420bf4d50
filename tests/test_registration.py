"""
Tests for arraycal.calibration.registration (pure planning).
"""

import numpy as np
import pytest

from arraycal.calibration.registration import RegistryView, TargetState, plan_detection
from arraycal.geometry import PoseSE3
from arraycal.types import Detection, FiducialSighting


@pytest.fixture
def lookup(scene):
    return scene.catalog().lookup


def view_with(scene, cameras=(), fiducials=()):
    return RegistryView(
        cameras={name: scene.cameras[name] for name in cameras},
        fiducials={name: scene.fiducials[name] for name in fiducials},
    )


class TestAnchor:
    def test_first_fiducial_anchors_at_identity(self, scene, lookup, config):
        plan = plan_detection(scene.detection("C0", 0.0, ["F0"]), RegistryView(), lookup, config)
        assert plan.camera is None
        assert "C0" in plan.deferred
        assert len(plan.fiducials) == 1
        init = plan.fiducials[0]
        assert init.name == "F0"
        assert init.anchor
        assert init.pose.allclose(PoseSE3.identity())
        assert plan.observations == ()

    def test_anchor_ignores_stored_pose(self, scene, config):
        stored = PoseSE3(np.eye(3), [0.5, 0.0, 0.0])
        catalog = scene.catalog()
        catalog.add("F0", scene.fiducials["F0"][1], stored)
        plan = plan_detection(scene.detection("C0", 0.0, ["F0"]), RegistryView(), catalog.lookup, config)
        assert plan.fiducials[0].anchor
        assert plan.fiducials[0].pose.allclose(PoseSE3.identity())
        assert plan.fiducials[0].prior_pose is None

    def test_only_one_anchor_per_detection(self, scene, lookup, config):
        plan = plan_detection(scene.detection("C0", 0.0, ["F0", "F1"]), RegistryView(), lookup, config)
        assert [init.name for init in plan.fiducials] == ["F0"]
        assert "F1" in plan.deferred


class TestCameraInitialization:
    def test_camera_solved_against_registered_fiducial(self, scene, lookup, config):
        view = view_with(scene, fiducials=["F0"])
        plan = plan_detection(scene.detection("C0", 1.0, ["F0"]), view, lookup, config)
        assert plan.camera is not None
        assert plan.camera.pose.allclose(scene.cameras["C0"], atol=1e-6)
        assert [(o.camera, o.fiducial) for o in plan.observations] == [("C0", "F0")]

    def test_camera_deferred_without_registered_fiducials(self, scene, lookup, config):
        view = view_with(scene, fiducials=["F0"])
        plan = plan_detection(scene.detection("C1", 1.0, ["F1"]), view, lookup, config)
        assert plan.camera is None
        assert "C1" in plan.deferred
        assert "F1" in plan.deferred
        assert plan.is_empty

    def test_min_fiducials_per_image(self, scene, lookup):
        from arraycal.config import CalibratorConfig

        config = CalibratorConfig(min_fiducials_per_image=2)
        view = view_with(scene, fiducials=["F0"])
        plan = plan_detection(scene.detection("C0", 1.0, ["F0"]), view, lookup, config)
        assert plan.camera is None
        assert "C0" in plan.deferred

    def test_registered_camera_not_reinitialized(self, scene, lookup, config):
        view = view_with(scene, cameras=["C0"], fiducials=["F0"])
        plan = plan_detection(scene.detection("C0", 1.0, ["F0"]), view, lookup, config)
        assert plan.camera is None
        assert len(plan.observations) == 1


class TestFiducialInitialization:
    def test_relative_to_registered_camera(self, scene, lookup, config):
        view = view_with(scene, cameras=["C0"], fiducials=["F0"])
        plan = plan_detection(scene.detection("C0", 1.0, ["F0", "F1"]), view, lookup, config)
        assert [init.name for init in plan.fiducials] == ["F1"]
        init = plan.fiducials[0]
        assert not init.anchor
        assert init.prior_pose is None
        assert init.pose.allclose(scene.fiducials["F1"][0], atol=1e-6)
        assert [o.fiducial for o in plan.observations] == ["F0", "F1"]

    def test_camera_and_fiducial_in_same_detection(self, scene, lookup, config):
        view = view_with(scene, fiducials=["F0"])
        plan = plan_detection(scene.detection("C1", 1.0, ["F0", "F1"]), view, lookup, config)
        assert plan.camera is not None
        assert [init.name for init in plan.fiducials] == ["F1"]
        assert len(plan.observations) == 2

    def test_stored_pose_becomes_soft_prior(self, scene, config):
        catalog = scene.catalog(with_poses=("F1",))
        view = view_with(scene, cameras=["C0"], fiducials=["F0"])
        plan = plan_detection(scene.detection("C0", 1.0, ["F1"]), view, catalog.lookup, config)
        assert plan.fiducials[0].prior_pose.allclose(scene.fiducials["F1"][0])

    def test_unknown_geometry_skipped(self, scene, lookup, config):
        view = view_with(scene, cameras=["C0"], fiducials=["F0"])
        detection = Detection(
            "C0",
            1.0,
            scene.detection("C0", 1.0, ["F0"]).sightings
            + (FiducialSighting("mystery", np.zeros((4, 2))),),
        )
        plan = plan_detection(detection, view, lookup, config)
        assert "mystery" in plan.skipped
        assert plan.fiducials == ()
        assert len(plan.observations) == 1

    def test_point_count_mismatch_skipped(self, scene, lookup, config):
        view = view_with(scene, cameras=["C0"], fiducials=["F0"])
        full = scene.detection("C0", 1.0, ["F0"]).sightings[0]
        detection = Detection("C0", 1.0, (FiducialSighting("F0", full.points[:4]),))
        plan = plan_detection(detection, view, lookup, config)
        assert "F0" in plan.skipped
        assert plan.observations == ()


class TestTargets:
    def test_new_target(self, scene, lookup, config):
        view = view_with(scene, cameras=["C0"], fiducials=["F0"])
        plan = plan_detection(scene.detection("C0", 2.0, ["F0", "T"]), view, lookup, config)
        assert len(plan.targets) == 1
        step = plan.targets[0]
        assert step.new_target
        assert step.pose.allclose(scene.targets["T"][0](2.0), atol=1e-6)
        target_obs = [o for o in plan.observations if o.fiducial == "T"]
        assert len(target_obs) == 1
        assert target_obs[0].timestamp == 2.0
        assert plan.fiducials == ()

    def test_target_deferred_without_camera(self, scene, lookup, config):
        plan = plan_detection(scene.detection("C0", 2.0, ["T"]), RegistryView(), lookup, config)
        assert plan.targets == ()
        assert "T" in plan.deferred
        assert plan.fiducials == ()

    def test_existing_timestamp_reuses_node(self, scene, lookup, config):
        trajectory, info = scene.targets["T"]
        state = TargetState(info, 2.0, trajectory(2.0), np.zeros(6), frozenset({2.0}))
        view = RegistryView(
            cameras={"C1": scene.cameras["C1"]},
            fiducials={"F0": scene.fiducials["F0"]},
            targets={"T": state},
        )
        plan = plan_detection(scene.detection("C1", 2.0, ["T"]), view, lookup, config)
        assert plan.targets[0].pose is None
        assert [o.timestamp for o in plan.observations] == [2.0]

    def test_stale_timestamp_skipped(self, scene, lookup, config):
        trajectory, info = scene.targets["T"]
        state = TargetState(info, 3.0, trajectory(3.0), np.zeros(6), frozenset({3.0}))
        view = RegistryView(cameras={"C0": scene.cameras["C0"]}, targets={"T": state})
        plan = plan_detection(scene.detection("C0", 2.0, ["T"]), view, lookup, config)
        assert plan.targets == ()
        assert "T" in plan.skipped
