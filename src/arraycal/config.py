"""
Configuration loading/saving and the calibration store.

Pure functions operating on dataclasses.
- TOML for calibrator configuration
- TOML for fiducial and array calibration files
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import rtoml

from .calibration.pose_solver import MIN_CORRESPONDENCES
from .errors import CalibrationWriteError, MalformedCalibration
from .geometry import PoseSE3
from .types import (
    CalibrationSnapshot,
    CameraCalibration,
    CameraModel,
    FiducialCalibration,
    FiducialInfo,
    FiducialPrior,
    TargetCalibration,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Calibrator Configuration
# ============================================================================


def _diagonal(values, name: str) -> tuple[float, ...]:
    values = tuple(float(v) for v in values)
    if len(values) != 6 or any(v <= 0 for v in values):
        raise ValueError(f"{name} must be 6 positive values (angular then linear), got {values}")
    return values


@dataclass(frozen=True)
class CalibratorConfig:
    """
    Calibrator settings.
    Corresponds to the top level of the calibrator TOML file.

    Covariances are diagonals ordered [angular x3, linear x3].
    """

    reference_frame: str = "fiducial_array"
    batch_period: int = 10  # observation factors between batch solves
    max_lag: float = 0.5  # seconds a source may trail the processing cutoff
    update_rate: float = 2.0  # Hz
    min_fiducials_per_image: int = 1
    min_points_per_image: int = 4
    image_variance: float = 1e-4
    prior_covariance: tuple[float, ...] = (0.01, 0.01, 0.01, 0.01, 0.01, 0.01)
    estimate_fiducial_intrinsics: bool = False
    intrinsics_variance: float = 1e-6
    motion_covariance: tuple[float, ...] = (0.1, 0.1, 0.1, 0.1, 0.1, 0.1)
    target_names: tuple[str, ...] = ()
    buffer_capacity: int = 0  # 0 = unbounded
    max_iterations: int = 100
    max_init_error: float | None = None
    output_path: str = "calibration.toml"
    fiducial_priors: str | None = None
    fiducial_dir: str | None = None
    cameras: dict[str, CameraModel] = field(default_factory=dict)
    log_level: str = "INFO"

    def __post_init__(self):
        if self.batch_period < 1:
            raise ValueError(f"batch_period must be >= 1, got {self.batch_period}")
        if self.max_lag < 0:
            raise ValueError(f"max_lag must be >= 0, got {self.max_lag}")
        if self.update_rate <= 0:
            raise ValueError(f"update_rate must be > 0, got {self.update_rate}")
        if self.min_fiducials_per_image < 1:
            raise ValueError("min_fiducials_per_image must be >= 1")
        if self.min_points_per_image < MIN_CORRESPONDENCES:
            raise ValueError(f"min_points_per_image must be >= {MIN_CORRESPONDENCES}")
        if self.image_variance <= 0 or self.intrinsics_variance <= 0:
            raise ValueError("Variances must be positive")
        if self.buffer_capacity < 0:
            raise ValueError("buffer_capacity must be >= 0")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.max_init_error is not None and self.max_init_error <= 0:
            raise ValueError("max_init_error must be > 0 when set")
        object.__setattr__(self, "prior_covariance", _diagonal(self.prior_covariance, "prior_covariance"))
        object.__setattr__(self, "motion_covariance", _diagonal(self.motion_covariance, "motion_covariance"))
        object.__setattr__(self, "target_names", tuple(self.target_names))
        if logging.getLevelName(self.log_level.upper()) not in (
            logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL,
        ):
            raise ValueError(f"Invalid log level: {self.log_level}")

    def camera_model(self, name: str) -> CameraModel | None:
        return self.cameras.get(name)


def load_calibrator_config(path: Path) -> CalibratorConfig:
    """
    Load calibrator configuration from TOML file.

    Args:
        path: Path to the config file

    Returns:
        CalibratorConfig dataclass

    Raises:
        FileNotFoundError: path does not exist
        ValueError: invalid values
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    data = rtoml.load(path)
    defaults = CalibratorConfig()

    cameras = {}
    for name, cam_data in data.get("cameras", {}).items():
        cameras[name] = camera_model_from_dict(cam_data, f"cameras.{name}")

    return CalibratorConfig(
        reference_frame=str(data.get("reference_frame", defaults.reference_frame)),
        batch_period=int(data.get("batch_period", defaults.batch_period)),
        max_lag=float(data.get("max_lag", defaults.max_lag)),
        update_rate=float(data.get("update_rate", defaults.update_rate)),
        min_fiducials_per_image=int(data.get("min_fiducials_per_image", defaults.min_fiducials_per_image)),
        min_points_per_image=int(data.get("min_points_per_image", defaults.min_points_per_image)),
        image_variance=float(data.get("image_variance", defaults.image_variance)),
        prior_covariance=tuple(data.get("prior_covariance", defaults.prior_covariance)),
        estimate_fiducial_intrinsics=bool(
            data.get("estimate_fiducial_intrinsics", defaults.estimate_fiducial_intrinsics)
        ),
        intrinsics_variance=float(data.get("intrinsics_variance", defaults.intrinsics_variance)),
        motion_covariance=tuple(data.get("motion_covariance", defaults.motion_covariance)),
        target_names=tuple(str(n) for n in data.get("target_names", defaults.target_names)),
        buffer_capacity=int(data.get("buffer_capacity", defaults.buffer_capacity)),
        max_iterations=int(data.get("max_iterations", defaults.max_iterations)),
        max_init_error=(
            float(data["max_init_error"]) if "max_init_error" in data else defaults.max_init_error
        ),
        output_path=str(data.get("output_path", defaults.output_path)),
        fiducial_priors=data.get("fiducial_priors", defaults.fiducial_priors),
        fiducial_dir=data.get("fiducial_dir", defaults.fiducial_dir),
        cameras=cameras,
        log_level=str(data.get("log_level", defaults.log_level)),
    )


def save_calibrator_config(config: CalibratorConfig, path: Path) -> None:
    """
    Save calibrator configuration to TOML file.

    Args:
        config: CalibratorConfig dataclass
        path: Path to save the config file
    """
    data = {
        "reference_frame": config.reference_frame,
        "batch_period": config.batch_period,
        "max_lag": config.max_lag,
        "update_rate": config.update_rate,
        "min_fiducials_per_image": config.min_fiducials_per_image,
        "min_points_per_image": config.min_points_per_image,
        "image_variance": config.image_variance,
        "prior_covariance": list(config.prior_covariance),
        "estimate_fiducial_intrinsics": config.estimate_fiducial_intrinsics,
        "intrinsics_variance": config.intrinsics_variance,
        "buffer_capacity": config.buffer_capacity,
        "max_iterations": config.max_iterations,
        "output_path": config.output_path,
        "log_level": config.log_level,
        "target_names": list(config.target_names),
        "motion_covariance": list(config.motion_covariance),
    }
    # TOML has no null
    if config.max_init_error is not None:
        data["max_init_error"] = config.max_init_error
    if config.fiducial_priors is not None:
        data["fiducial_priors"] = config.fiducial_priors
    if config.fiducial_dir is not None:
        data["fiducial_dir"] = config.fiducial_dir

    # Tables after plain values
    data["cameras"] = {}
    for name, model in config.cameras.items():
        data["cameras"][name] = {
            "matrix": np.asarray(model.matrix, dtype=np.float64).tolist(),
            "distortion": np.asarray(model.distortion, dtype=np.float64).ravel().tolist(),
        }

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


# ============================================================================
# Fiducial Calibration Files
# ============================================================================


def fiducial_to_dict(info: FiducialInfo) -> dict:
    """
    intrinsics:
      points_x: [x0, x1, ...]
      points_y: [y0, y1, ...]
      points_z: [z0, z1, ...]
    """
    return {
        "intrinsics": {
            "points_x": info.points[:, 0].tolist(),
            "points_y": info.points[:, 1].tolist(),
            "points_z": info.points[:, 2].tolist(),
        }
    }


def fiducial_from_dict(data: dict) -> FiducialInfo:
    """
    Raises:
        MalformedCalibration: missing point fields or mismatched lengths
    """
    intrinsics = data.get("intrinsics")
    if not isinstance(intrinsics, dict) or not all(
        key in intrinsics for key in ("points_x", "points_y", "points_z")
    ):
        raise MalformedCalibration("Missing intrinsics.points_x/points_y/points_z")
    return FiducialInfo.from_axes(
        intrinsics["points_x"], intrinsics["points_y"], intrinsics["points_z"]
    )


def pose_to_dict(pose: PoseSE3) -> dict:
    # Rodrigues (3 params) for compact storage
    rvec, tvec = pose.to_rvec_tvec()
    return {"rotation": rvec.tolist(), "translation": tvec.tolist()}


def pose_from_dict(data: dict) -> PoseSE3:
    try:
        rotation = np.asarray(data["rotation"], dtype=np.float64)
        translation = np.asarray(data["translation"], dtype=np.float64)
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedCalibration(f"Invalid pose entry: {exc}") from exc
    if rotation.shape != (3,) or translation.shape != (3,):
        raise MalformedCalibration("Pose rotation and translation must have 3 elements")
    return PoseSE3.from_rvec_tvec(rotation, translation)


def camera_model_from_dict(data: dict, key: str) -> CameraModel:
    try:
        matrix = np.asarray(data["matrix"], dtype=np.float64)
        distortion = np.asarray(data.get("distortion", [0.0] * 5), dtype=np.float64).ravel()
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedCalibration(f"Invalid camera model {key}: {exc}") from exc
    if matrix.shape != (3, 3):
        raise MalformedCalibration(f"{key}.matrix must be 3x3")
    return CameraModel(matrix=matrix, distortion=distortion)


def _atomic_write(path: Path, text: str) -> None:
    """
    Write text to a temp file beside path, then replace path with it.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as exc:
        raise CalibrationWriteError(f"Could not write {path}: {exc}") from exc


def write_fiducial_calibration(path: Path, info: FiducialInfo) -> None:
    """Write one fiducial's point geometry."""
    _atomic_write(path, rtoml.dumps(fiducial_to_dict(info)))


def read_fiducial_calibration(path: Path) -> FiducialInfo:
    """
    Read one fiducial's point geometry.

    Raises:
        FileNotFoundError: path does not exist
        MalformedCalibration: missing or mismatched point fields
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Fiducial calibration not found: {path}")
    return fiducial_from_dict(rtoml.load(path))


# ============================================================================
# Array Calibration Storage
# ============================================================================


def snapshot_to_dict(snapshot: CalibrationSnapshot) -> dict:
    data = {
        "reference_frame": snapshot.reference_frame,
        "cameras": {},
        "fiducials": {},
        "targets": {},
    }

    for name, cam in snapshot.cameras.items():
        entry = {"extrinsics": pose_to_dict(cam.extrinsics)}
        if cam.intrinsics is not None:
            entry["intrinsics"] = {
                "matrix": np.asarray(cam.intrinsics.matrix, dtype=np.float64).tolist(),
                "distortion": np.asarray(cam.intrinsics.distortion, dtype=np.float64).ravel().tolist(),
            }
        data["cameras"][name] = entry

    for name, fid in snapshot.fiducials.items():
        entry = {"anchored": fid.anchored, "extrinsics": pose_to_dict(fid.extrinsics)}
        entry.update(fiducial_to_dict(fid.intrinsics))
        data["fiducials"][name] = entry

    for name, target in snapshot.targets.items():
        latest = target.latest
        entry = {}
        if latest is not None:
            entry["timestamp"] = latest[0]
            entry["extrinsics"] = pose_to_dict(latest[1])
        entry.update(fiducial_to_dict(target.intrinsics))
        data["targets"][name] = entry

    return data


def write_array_calibration(path: Path, snapshot: CalibrationSnapshot) -> None:
    """
    Save a calibration snapshot.

    The file is replaced atomically; a failed write leaves the previous
    file untouched.

    Raises:
        CalibrationWriteError: the file could not be written
    """
    _atomic_write(path, rtoml.dumps(snapshot_to_dict(snapshot)))


def read_array_calibration(path: Path) -> CalibrationSnapshot:
    """
    Load a calibration written by write_array_calibration.

    Raises:
        FileNotFoundError: path does not exist
        MalformedCalibration: entries with missing/mismatched fields
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Calibration not found: {path}")
    data = rtoml.load(path)

    cameras = {}
    for name, entry in data.get("cameras", {}).items():
        model = None
        if "intrinsics" in entry:
            model = camera_model_from_dict(entry["intrinsics"], f"cameras.{name}.intrinsics")
        cameras[name] = CameraCalibration(name, pose_from_dict(entry.get("extrinsics", {})), model)

    fiducials = {}
    for name, entry in data.get("fiducials", {}).items():
        fiducials[name] = FiducialCalibration(
            name,
            pose_from_dict(entry.get("extrinsics", {})),
            fiducial_from_dict(entry),
            anchored=bool(entry.get("anchored", False)),
        )

    targets = {}
    for name, entry in data.get("targets", {}).items():
        trajectory = ()
        if "extrinsics" in entry:
            trajectory = ((float(entry.get("timestamp", 0.0)), pose_from_dict(entry["extrinsics"])),)
        targets[name] = TargetCalibration(name, fiducial_from_dict(entry), trajectory)

    return CalibrationSnapshot(
        reference_frame=str(data.get("reference_frame", "")),
        cameras=cameras,
        fiducials=fiducials,
        targets=targets,
    )


# ============================================================================
# Fiducial Catalog
# ============================================================================


class FiducialCatalog:
    """
    Read side of the calibration store.

    Looks fiducials up in an array calibration file (geometry + stored pose)
    and/or a directory of per-fiducial files named <name>.toml. Results,
    including misses, are cached. Read failures are logged and treated as
    "no prior".
    """

    def __init__(self, priors_path: Path | None = None, fiducial_dir: Path | None = None):
        self.priors_path = Path(priors_path) if priors_path else None
        self.fiducial_dir = Path(fiducial_dir) if fiducial_dir else None
        self._cache: dict[str, FiducialPrior | None] = {}
        self._array: dict[str, FiducialPrior] | None = None

    @classmethod
    def from_config(cls, config: CalibratorConfig) -> FiducialCatalog:
        return cls(config.fiducial_priors, config.fiducial_dir)

    def add(self, name: str, info: FiducialInfo, pose: PoseSE3 | None = None) -> None:
        """Register geometry directly, ahead of any file lookup."""
        self._cache[name] = FiducialPrior(info, pose)

    def __call__(self, name: str) -> FiducialPrior | None:
        return self.lookup(name)

    def lookup(self, name: str) -> FiducialPrior | None:
        if name not in self._cache:
            self._cache[name] = self._find(name)
        return self._cache[name]

    def _load_array(self) -> dict[str, FiducialPrior]:
        if self._array is not None:
            return self._array
        self._array = {}
        if self.priors_path is None:
            return self._array
        try:
            data = rtoml.load(self.priors_path)
        except (OSError, rtoml.TomlParsingError) as exc:
            logger.warning("Could not read fiducial priors %s: %s", self.priors_path, exc)
            return self._array

        for name, entry in data.get("fiducials", {}).items():
            try:
                info = fiducial_from_dict(entry)
                pose = pose_from_dict(entry["extrinsics"]) if "extrinsics" in entry else None
            except MalformedCalibration as exc:
                logger.warning("Ignoring stored fiducial %s: %s", name, exc)
                continue
            self._array[name] = FiducialPrior(info, pose)
        return self._array

    def _find(self, name: str) -> FiducialPrior | None:
        prior = self._load_array().get(name)
        if prior is not None:
            return prior

        if self.fiducial_dir is None:
            logger.warning("No calibration for fiducial %s", name)
            return None
        path = self.fiducial_dir / f"{name}.toml"
        if not path.exists():
            logger.warning("No calibration for fiducial %s", name)
            return None
        try:
            data = rtoml.load(path)
            info = fiducial_from_dict(data)
            pose = pose_from_dict(data["extrinsics"]) if "extrinsics" in data else None
        except (OSError, rtoml.TomlParsingError, MalformedCalibration) as exc:
            logger.warning("Could not read fiducial calibration %s: %s", path, exc)
            return None
        return FiducialPrior(info, pose)
