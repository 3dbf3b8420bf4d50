"""
Lazy registration planning.

plan_detection is a pure function of (current registrations, one detection)
that decides which cameras, fiducials and target poses can be registered now
and which observations can be attached. It never touches the graph; the
calibrator applies the plan. Identifiers that lack context are simply left
out and retried on the next detection that mentions them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Mapping

import numpy as np

from ..errors import InsufficientCorrespondences
from ..geometry import PoseSE3, integrate_velocity
from ..types import CameraModel, Detection, FiducialInfo, FiducialPrior, FiducialSighting
from .pose_solver import solve_pose

if TYPE_CHECKING:
    from ..config import CalibratorConfig


# ============================================================================
# Inputs
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class TargetState:
    """Latest estimate of a moving target's pose chain."""

    info: FiducialInfo
    last_timestamp: float
    last_pose: PoseSE3
    velocity: np.ndarray
    timestamps: frozenset[float] = frozenset()


@dataclass(frozen=True, slots=True, eq=False)
class RegistryView:
    """
    Current estimates of everything already registered.
    """

    cameras: Mapping[str, PoseSE3] = field(default_factory=dict)
    fiducials: Mapping[str, tuple[PoseSE3, FiducialInfo]] = field(default_factory=dict)
    targets: Mapping[str, TargetState] = field(default_factory=dict)


PriorLookup = Callable[[str], "FiducialPrior | None"]


# ============================================================================
# Outputs
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class CameraInit:
    name: str
    pose: PoseSE3
    model: CameraModel | None = None


@dataclass(frozen=True, slots=True, eq=False)
class FiducialInit:
    name: str
    pose: PoseSE3
    info: FiducialInfo
    prior_pose: PoseSE3 | None = None  # soft prior target, if stored
    anchor: bool = False


@dataclass(frozen=True, slots=True, eq=False)
class TargetStep:
    name: str
    timestamp: float
    pose: PoseSE3 | None  # None when a node for this timestamp already exists
    info: FiducialInfo
    new_target: bool = False


@dataclass(frozen=True, slots=True, eq=False)
class Observation:
    camera: str
    fiducial: str
    image_points: np.ndarray
    timestamp: float | None = None  # set for target observations


@dataclass(frozen=True, slots=True, eq=False)
class DetectionPlan:
    source: str
    timestamp: float
    camera: CameraInit | None = None
    fiducials: tuple[FiducialInit, ...] = ()
    targets: tuple[TargetStep, ...] = ()
    observations: tuple[Observation, ...] = ()
    failed: tuple[str, ...] = ()  # geometric solve failures
    deferred: tuple[str, ...] = ()  # not enough context yet
    skipped: tuple[str, ...] = ()  # no geometry or mismatched point counts

    @property
    def is_empty(self) -> bool:
        return not (self.camera or self.fiducials or self.targets or self.observations)


# ============================================================================
# Planning
# ============================================================================

_OK, _DEFERRED, _FAILED = "ok", "deferred", "failed"


def initialize_camera(
    detection: Detection,
    view: RegistryView,
    config: CalibratorConfig,
) -> tuple[CameraInit | None, str]:
    """
    Solve a camera pose against every registered fiducial in the detection.

    Returns:
        (CameraInit or None, status) with status "ok", "deferred" (too few
        registered fiducials/points) or "failed" (solve failed)
    """
    model = config.camera_model(detection.source)
    object_points = []
    image_points = []

    for sighting in detection.sightings:
        known = view.fiducials.get(sighting.fiducial)
        if known is None:
            continue
        pose, info = known
        if info.n_points != len(sighting.points):
            continue
        object_points.append(pose.transform_points(info.points))
        image_points.append(sighting.points)

    n_points = sum(len(p) for p in image_points)
    if len(object_points) < config.min_fiducials_per_image or n_points < config.min_points_per_image:
        return None, _DEFERRED

    try:
        world_in_camera = solve_pose(
            np.vstack(object_points),
            np.vstack(image_points),
            camera=model,
            min_points=config.min_points_per_image,
            max_error=config.max_init_error,
        )
    except InsufficientCorrespondences:
        return None, _DEFERRED

    if world_in_camera is None:
        return None, _FAILED

    return CameraInit(detection.source, world_in_camera.inverse(), model), _OK


def _solve_relative(
    info: FiducialInfo,
    sighting: FiducialSighting,
    camera_pose: PoseSE3,
    model: CameraModel | None,
    config: CalibratorConfig,
    guess: PoseSE3 | None = None,
) -> PoseSE3 | None:
    """World pose of a fiducial seen by a registered camera, or None."""
    try:
        relative = solve_pose(
            info.points,
            sighting.points,
            guess=guess,
            camera=model,
            max_error=config.max_init_error,
        )
    except InsufficientCorrespondences:
        return None
    if relative is None:
        return None
    return camera_pose * relative


def _step_target(
    sighting: FiducialSighting,
    timestamp: float,
    state: TargetState | None,
    lookup: PriorLookup,
    camera_pose: PoseSE3 | None,
    model: CameraModel | None,
    config: CalibratorConfig,
) -> tuple[TargetStep | None, str]:
    if state is not None:
        info = state.info
    else:
        prior = lookup(sighting.fiducial)
        if prior is None:
            return None, "skipped"
        info = prior.info

    if info.n_points != len(sighting.points):
        return None, "skipped"
    if state is not None and timestamp in state.timestamps:
        return TargetStep(sighting.fiducial, timestamp, None, info), _OK
    if state is not None and timestamp < state.last_timestamp:
        return None, "skipped"
    if camera_pose is None:
        return None, _DEFERRED

    guess = None
    if state is not None:
        predicted = integrate_velocity(
            state.last_pose, state.velocity, timestamp - state.last_timestamp
        )
        guess = camera_pose.inverse() * predicted

    pose = _solve_relative(info, sighting, camera_pose, model, config, guess=guess)
    if pose is None:
        return None, _FAILED
    return TargetStep(sighting.fiducial, timestamp, pose, info, new_target=state is None), _OK


def plan_detection(
    detection: Detection,
    view: RegistryView,
    lookup: PriorLookup,
    config: CalibratorConfig,
) -> DetectionPlan:
    """
    Decide what one detection registers and which observations it adds.

    Order matters: the camera is attempted first against fiducials that were
    registered before this detection, then every unregistered fiducial named
    in the detection, then the observations.

    Args:
        detection: Validated detection
        view: Current estimates of registered entities
        lookup: Calibration store lookup (geometry + optional stored pose)
        config: Calibrator configuration

    Returns:
        DetectionPlan describing the registrations and factors to add
    """
    source = detection.source
    model = config.camera_model(source)
    target_names = set(config.target_names)
    failed, deferred, skipped = [], [], []

    # Camera
    camera_init = None
    camera_pose = view.cameras.get(source)
    if camera_pose is None:
        camera_init, status = initialize_camera(detection, view, config)
        if camera_init is not None:
            camera_pose = camera_init.pose
        elif status == _FAILED:
            failed.append(source)
        else:
            deferred.append(source)

    # Fiducials and targets
    planned: dict[str, tuple[PoseSE3, FiducialInfo]] = {}
    fiducial_inits = []
    target_steps: dict[str, TargetStep] = {}

    for sighting in detection.sightings:
        name = sighting.fiducial

        if name in target_names:
            if name in target_steps:
                continue
            step, status = _step_target(
                sighting,
                detection.timestamp,
                view.targets.get(name),
                lookup,
                camera_pose,
                model,
                config,
            )
            if step is not None:
                target_steps[name] = step
            elif status == _FAILED:
                failed.append(name)
            elif status == _DEFERRED:
                deferred.append(name)
            else:
                skipped.append(name)
            continue

        if name in view.fiducials or name in planned:
            continue

        prior = lookup(name)
        if prior is None or prior.info.n_points != len(sighting.points):
            skipped.append(name)
            continue

        if not view.fiducials and not planned:
            # First fiducial of the run holds the reference frame
            init = FiducialInit(name, PoseSE3.identity(), prior.info, anchor=True)
        elif camera_pose is None:
            deferred.append(name)
            continue
        else:
            pose = _solve_relative(prior.info, sighting, camera_pose, model, config)
            if pose is None:
                failed.append(name)
                continue
            init = FiducialInit(name, pose, prior.info, prior_pose=prior.pose)

        fiducial_inits.append(init)
        planned[name] = (init.pose, init.info)

    # Observations
    observations = []
    if camera_pose is not None:
        for sighting in detection.sightings:
            name = sighting.fiducial
            if name in target_steps:
                observations.append(
                    Observation(source, name, sighting.points, timestamp=detection.timestamp)
                )
                continue
            known = view.fiducials.get(name) or planned.get(name)
            if known is None:
                continue
            if known[1].n_points != len(sighting.points):
                skipped.append(name)
                continue
            observations.append(Observation(source, name, sighting.points))

    return DetectionPlan(
        source=source,
        timestamp=detection.timestamp,
        camera=camera_init,
        fiducials=tuple(fiducial_inits),
        targets=tuple(target_steps.values()),
        observations=tuple(observations),
        failed=tuple(failed),
        deferred=tuple(deferred),
        skipped=tuple(skipped),
    )
