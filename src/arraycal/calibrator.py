"""
Incremental array calibration.

ArrayCalibrator consumes buffered detections, registers cameras, fiducials
and targets the first time there is enough context to seed them, adds
observation factors to the estimation graph and runs a batch optimization
every batch_period observations.

Two locks:
- buffer.lock guards the detection buffer (held only during push/drain)
- _opt_lock guards the registries and the graph (held for all of
  process_until, optimize and extract)
The buffer lock may be taken while holding the optimization lock, never the
other way round, so producers are never blocked by a running solve.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from types import MappingProxyType

import numpy as np

from .buffer import DetectionBuffer
from .calibration.graph import (
    BetweenFactor,
    GraphBackend,
    LeastSquaresGraph,
    ObservationFactor,
    OptimizationSummary,
)
from .calibration.registration import (
    DetectionPlan,
    RegistryView,
    TargetState,
    TargetStep,
    plan_detection,
)
from .config import CalibratorConfig, FiducialCatalog, write_array_calibration
from .errors import CalibrationWriteError, MalformedDetection
from .geometry import relative_velocity
from .registry import Registries
from .types import (
    CalibrationSnapshot,
    CameraCalibration,
    CameraRegistration,
    Detection,
    FiducialCalibration,
    FiducialInfo,
    FiducialRegistration,
    TargetCalibration,
    TargetRegistration,
    validate_detection,
)

logger = logging.getLogger(__name__)

# Lower bound on the time step scaling a target's motion covariance
MIN_MOTION_DT = 1e-3


class ArrayCalibrator:
    """
    Incremental graph builder for a camera/fiducial array.

    Args:
        config: Calibrator settings
        catalog: Calibration store lookup for fiducial geometry and stored
            poses; defaults to one built from config
        graph: Estimation graph backend; defaults to LeastSquaresGraph
    """

    def __init__(
        self,
        config: CalibratorConfig | None = None,
        catalog: FiducialCatalog | None = None,
        graph: GraphBackend | None = None,
    ):
        self.config = config or CalibratorConfig()
        self.catalog = catalog if catalog is not None else FiducialCatalog.from_config(self.config)
        self.graph = graph if graph is not None else LeastSquaresGraph(max_nfev=self.config.max_iterations)
        self.buffer = DetectionBuffer(self.config.buffer_capacity)
        self.registries = Registries()

        self._opt_lock = threading.Lock()
        self._pending = 0  # observation factors since the last batch
        self.observations = 0
        self.optimizations = 0
        self.processed = 0
        self.last_summary: OptimizationSummary | None = None

    # ------------------------------------------------------------------
    # Ingestion (buffer lock only)
    # ------------------------------------------------------------------

    def buffer_detection(self, detection: Detection) -> bool:
        """
        Validate a detection and queue it for the next process_until.

        Malformed detections are counted and logged, never raised.

        Returns:
            True if the detection was buffered
        """
        try:
            detection = validate_detection(detection)
        except MalformedDetection as exc:
            count = self.buffer.record_rejection()
            logger.warning(
                "Rejected detection #%d: %s", count, exc, extra={"source": detection.source or "-"}
            )
            return False
        self.buffer.push(detection.source, detection.timestamp, detection)
        return True

    @property
    def rejected(self) -> int:
        return self.buffer.rejected

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def process_until(self, now: float) -> int:
        """
        Process every buffered detection at or before now - max_lag.

        Args:
            now: Current time in the detections' time base

        Returns:
            Number of detections drained
        """
        cutoff = now - self.config.max_lag
        with self._opt_lock:
            drained = self.buffer.drain_up_to(cutoff)
            for entry in drained:
                self._process(entry.detection)
                if self._pending >= self.config.batch_period:
                    self._optimize()
        return len(drained)

    def optimize(self) -> OptimizationSummary:
        """Run a batch optimization now, regardless of the batch counter."""
        with self._opt_lock:
            return self._optimize()

    def _process(self, detection: Detection) -> DetectionPlan:
        plan = plan_detection(detection, self._view(), self.catalog.lookup, self.config)
        self._apply(plan)
        self.processed += 1
        return plan

    def _view(self) -> RegistryView:
        cameras = {
            name: self.graph.get_estimate(reg.extrinsics) for name, reg in self.registries.cameras.items()
        }
        fiducials = {
            name: (self.graph.get_estimate(reg.extrinsics), self._current_info(reg.intrinsics, reg.info))
            for name, reg in self.registries.fiducials.items()
        }
        targets = {}
        for name, reg in self.registries.targets.items():
            last = reg.last_timestamp
            if last is None:
                continue
            targets[name] = TargetState(
                info=reg.info,
                last_timestamp=last,
                last_pose=self.graph.get_estimate(reg.poses[last]),
                velocity=reg.velocity,
                timestamps=frozenset(reg.poses),
            )
        return RegistryView(cameras, fiducials, targets)

    def _current_info(self, node, info: FiducialInfo) -> FiducialInfo:
        if not self.config.estimate_fiducial_intrinsics:
            return info
        return FiducialInfo(self.graph.get_estimate(node))

    def _points_node(self, info: FiducialInfo):
        estimate = self.config.estimate_fiducial_intrinsics
        node = self.graph.add_node(info.points, fixed=not estimate)
        if estimate:
            self.graph.add_prior(node, info.points, self.config.intrinsics_variance)
        return node

    def _apply(self, plan: DetectionPlan) -> None:
        source = plan.source
        extra = {"source": source}

        for name in plan.failed:
            logger.warning("Single-frame solve failed for %s @ %.3f", name, plan.timestamp, extra=extra)
        for name in plan.deferred:
            logger.debug("Not enough context to initialize %s yet", name, extra=extra)
        for name in plan.skipped:
            logger.debug("Ignoring sighting of %s: no matching geometry", name, extra=extra)

        if plan.camera is not None:
            node = self.graph.add_node(plan.camera.pose)
            self.registries.cameras.register(
                plan.camera.name,
                CameraRegistration(plan.camera.name, node, plan.camera.model, source),
            )
            logger.info("Registered camera %s", plan.camera.name, extra=extra)

        for init in plan.fiducials:
            pose_node = self.graph.add_node(init.pose)
            prior = None
            if init.anchor:
                self.graph.add_prior(pose_node, init.pose)
            elif init.prior_pose is not None:
                prior = self.graph.add_prior(pose_node, init.prior_pose, self.config.prior_covariance)
            self.registries.fiducials.register(
                init.name,
                FiducialRegistration(
                    init.name,
                    pose_node,
                    self._points_node(init.info),
                    init.info,
                    prior=prior,
                    anchored=init.anchor,
                ),
            )
            logger.info(
                "Registered fiducial %s%s",
                init.name,
                " as reference frame anchor" if init.anchor else "",
                extra=extra,
            )

        for step in plan.targets:
            self._apply_target_step(step, extra)

        for obs in plan.observations:
            camera = self.registries.cameras[obs.camera]
            if obs.timestamp is not None:
                target = self.registries.targets[obs.fiducial]
                pose_node, points_node = target.poses[obs.timestamp], target.intrinsics
            else:
                fiducial = self.registries.fiducials[obs.fiducial]
                pose_node, points_node = fiducial.extrinsics, fiducial.intrinsics
            self.graph.add_factor(
                ObservationFactor(
                    camera.extrinsics,
                    pose_node,
                    points_node,
                    obs.image_points,
                    self.config.image_variance,
                    camera.intrinsics,
                )
            )
            self.observations += 1
            self._pending += 1

    def _apply_target_step(self, step: TargetStep, extra: dict) -> None:
        reg = self.registries.targets.get(step.name)
        if reg is None:
            reg = self.registries.targets.register(
                step.name,
                TargetRegistration(step.name, self._points_node(step.info), step.info),
            )
            logger.info("Registered target %s", step.name, extra=extra)
        if step.pose is None:
            return

        previous = reg.last_timestamp
        node = self.graph.add_node(step.pose)
        if previous is not None:
            dt = step.timestamp - previous
            previous_node = reg.poses[previous]
            covariance = np.asarray(self.config.motion_covariance) * max(dt, MIN_MOTION_DT)
            self.graph.add_factor(BetweenFactor(previous_node, node, covariance))
            reg.velocity = relative_velocity(self.graph.get_estimate(previous_node), step.pose, dt)
        reg.poses[step.timestamp] = node

    def _optimize(self) -> OptimizationSummary:
        summary = self.graph.optimize()
        self._pending = 0
        self.optimizations += 1
        self.last_summary = summary
        self._refresh_velocities()
        logger.info(
            "Batch optimization %d: cost %.6g -> %.6g in %d evaluations (%d params, %d residuals)",
            self.optimizations,
            summary.initial_cost,
            summary.final_cost,
            summary.evaluations,
            summary.n_params,
            summary.n_residuals,
        )
        if not summary.success:
            logger.warning("Batch optimization did not converge: %s", summary.message)
        return summary

    def _refresh_velocities(self) -> None:
        for _, reg in self.registries.targets.items():
            stamps = sorted(reg.poses)
            if len(stamps) < 2:
                continue
            reg.velocity = relative_velocity(
                self.graph.get_estimate(reg.poses[stamps[-2]]),
                self.graph.get_estimate(reg.poses[stamps[-1]]),
                stamps[-1] - stamps[-2],
            )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def extract(self) -> CalibrationSnapshot:
        """
        Consistent copy of every registered estimate.

        Taken under the optimization lock, so it never reflects a graph
        mid-update.
        """
        with self._opt_lock:
            cameras = {
                name: CameraCalibration(name, self.graph.get_estimate(reg.extrinsics), reg.intrinsics)
                for name, reg in self.registries.cameras.items()
            }
            fiducials = {
                name: FiducialCalibration(
                    name,
                    self.graph.get_estimate(reg.extrinsics),
                    self._current_info(reg.intrinsics, reg.info),
                    reg.anchored,
                )
                for name, reg in self.registries.fiducials.items()
            }
            targets = {
                name: TargetCalibration(
                    name,
                    self._current_info(reg.intrinsics, reg.info),
                    tuple((t, self.graph.get_estimate(reg.poses[t])) for t in sorted(reg.poses)),
                )
                for name, reg in self.registries.targets.items()
            }
            return CalibrationSnapshot(
                reference_frame=self.config.reference_frame,
                cameras=MappingProxyType(cameras),
                fiducials=MappingProxyType(fiducials),
                targets=MappingProxyType(targets),
                observations=self.observations,
            )

    def save(self, path: Path | None = None) -> Path:
        """
        Write the current snapshot to the calibration store.

        Args:
            path: Destination; defaults to config.output_path

        Returns:
            Path written

        Raises:
            CalibrationWriteError: the file could not be written; any
                previously written file is left intact
        """
        path = Path(path or self.config.output_path)
        snapshot = self.extract()
        try:
            write_array_calibration(path, snapshot)
        except CalibrationWriteError:
            logger.error("Failed to write calibration to %s", path)
            raise
        logger.info(
            "Wrote calibration (%d cameras, %d fiducials, %d targets) to %s",
            len(snapshot.cameras),
            len(snapshot.fiducials),
            len(snapshot.targets),
            path,
        )
        return path

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_registered(self, name: str) -> bool:
        with self._opt_lock:
            return (
                name in self.registries.cameras
                or name in self.registries.fiducials
                or name in self.registries.targets
            )

    @property
    def cameras(self) -> frozenset[str]:
        with self._opt_lock:
            return self.registries.cameras.names()

    @property
    def fiducials(self) -> frozenset[str]:
        with self._opt_lock:
            return self.registries.fiducials.names()

    @property
    def targets(self) -> frozenset[str]:
        with self._opt_lock:
            return self.registries.targets.names()

    @property
    def anchor(self) -> str | None:
        with self._opt_lock:
            return self.registries.anchor

    @property
    def pending_observations(self) -> int:
        return self._pending

    def summary(self) -> str:
        """Human readable listing of every registration and its estimate."""
        return format_snapshot(self.extract(), stats={
            "processed": self.processed,
            "rejected": self.rejected,
            "evicted": self.buffer.evicted,
            "optimizations": self.optimizations,
        })


def format_snapshot(snapshot: CalibrationSnapshot, stats: dict | None = None) -> str:
    """
    Render a snapshot as text, one line per entity.

    Poses are shown as translation and unit quaternion (w, x, y, z).
    """

    def pose_text(pose) -> str:
        t = np.round(pose.translation, 4).tolist()
        q = np.round(pose.quaternion(), 4).tolist()
        return f"t={t} q={q}"

    lines = [f"Reference frame: {snapshot.reference_frame}"]
    if stats:
        lines.append("  " + ", ".join(f"{key}={value}" for key, value in stats.items()))
    lines.append(f"  observations={snapshot.observations}")

    lines.append(f"Cameras ({len(snapshot.cameras)}):")
    for name in sorted(snapshot.cameras):
        lines.append(f"  {name}: {pose_text(snapshot.cameras[name].extrinsics)}")

    lines.append(f"Fiducials ({len(snapshot.fiducials)}):")
    for name in sorted(snapshot.fiducials):
        fid = snapshot.fiducials[name]
        anchor = " [anchor]" if fid.anchored else ""
        lines.append(f"  {name}{anchor}: {pose_text(fid.extrinsics)} points={fid.intrinsics.n_points}")

    if snapshot.targets:
        lines.append(f"Targets ({len(snapshot.targets)}):")
        for name in sorted(snapshot.targets):
            target = snapshot.targets[name]
            latest = target.latest
            if latest is None:
                lines.append(f"  {name}: no poses")
            else:
                lines.append(
                    f"  {name}: {len(target.trajectory)} poses, latest @ {latest[0]:.3f} {pose_text(latest[1])}"
                )

    return "\n".join(lines)
