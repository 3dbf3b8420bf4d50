"""
Tests for arraycal.types dataclasses and arraycal.registry.
"""

import numpy as np
import pytest

from arraycal.errors import DuplicateRegistration, MalformedCalibration, MalformedDetection
from arraycal.registry import Registries, Registry
from arraycal.types import (
    Detection,
    FiducialInfo,
    FiducialRegistration,
    FiducialSighting,
    NodeHandle,
    TargetRegistration,
    validate_detection,
)


class TestValidateDetection:
    def test_valid_copies_as_float(self):
        detection = Detection("C0", 1, (FiducialSighting("F0", [[1, 2], [3, 4], [5, 6], [7, 8]]),))
        valid = validate_detection(detection)
        assert valid.timestamp == 1.0
        assert valid.sightings[0].points.dtype == np.float64
        assert valid.sightings[0].points.shape == (4, 2)
        assert valid.fiducials == ["F0"]

    def test_no_sightings_is_valid(self):
        assert validate_detection(Detection("C0", 0.0)).sightings == ()

    @pytest.mark.parametrize(
        "detection",
        [
            Detection("", 0.0),
            Detection("C0", float("nan")),
            Detection("C0", 0.0, (FiducialSighting("F0", np.zeros((4, 3))),)),
            Detection("C0", 0.0, (FiducialSighting("F0", np.zeros((0, 2))),)),
            Detection("C0", 0.0, (FiducialSighting("F0", np.zeros(8)),)),
            Detection("C0", 0.0, (FiducialSighting("F0", [[0.0, np.inf]] * 4),)),
        ],
    )
    def test_rejected(self, detection):
        with pytest.raises(MalformedDetection):
            validate_detection(detection)


class TestFiducialInfo:
    def test_from_axes(self):
        info = FiducialInfo.from_axes([0.0, 1.0], [2.0, 3.0], [4.0, 5.0])
        np.testing.assert_array_equal(info.points, [[0.0, 2.0, 4.0], [1.0, 3.0, 5.0]])
        assert info.n_points == 2

    def test_empty(self):
        assert FiducialInfo.from_axes([], [], []).n_points == 0
        assert FiducialInfo(np.zeros((0, 3))).n_points == 0

    def test_bad_shape(self):
        with pytest.raises(MalformedCalibration):
            FiducialInfo(np.zeros((4, 2)))

    def test_frozen(self, block_info):
        with pytest.raises(AttributeError):
            block_info.points = np.zeros((1, 3))


class TestRegistrations:
    def test_node_handle_equality(self):
        assert NodeHandle(3, "pose") == NodeHandle(3, "pose")
        assert NodeHandle(3, "pose") != NodeHandle(3, "points")

    def test_target_last_timestamp(self, block_info):
        target = TargetRegistration("T", NodeHandle(0, "points"), block_info)
        assert target.last_timestamp is None
        target.poses[2.0] = NodeHandle(1, "pose")
        target.poses[1.0] = NodeHandle(2, "pose")
        assert target.last_timestamp == 2.0


class TestRegistry:
    def test_register_once(self, block_info):
        registry = Registry("fiducial")
        record = FiducialRegistration("F0", NodeHandle(0, "pose"), NodeHandle(1, "points"), block_info)
        registry.register("F0", record)
        with pytest.raises(DuplicateRegistration):
            registry.register("F0", record)
        assert registry["F0"] is record
        assert registry.get("F1") is None
        assert "F0" in registry
        assert len(registry) == 1
        assert registry.names() == {"F0"}

    def test_anchor(self, block_info):
        registries = Registries()
        assert registries.anchor is None
        registries.fiducials.register(
            "F1", FiducialRegistration("F1", NodeHandle(0, "pose"), NodeHandle(1, "points"), block_info)
        )
        registries.fiducials.register(
            "F0",
            FiducialRegistration("F0", NodeHandle(2, "pose"), NodeHandle(3, "points"), block_info, anchored=True),
        )
        assert registries.anchor == "F0"
