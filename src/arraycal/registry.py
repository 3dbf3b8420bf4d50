"""
Per-kind registries mapping identifiers to registration records.

Records are created once and never removed during a run.
"""

from __future__ import annotations

from typing import Generic, Iterator, TypeVar

from .errors import DuplicateRegistration
from .types import CameraRegistration, FiducialRegistration, TargetRegistration

R = TypeVar("R")


class Registry(Generic[R]):
    def __init__(self, kind: str):
        self.kind = kind
        self._records: dict[str, R] = {}

    def register(self, name: str, record: R) -> R:
        if name in self._records:
            raise DuplicateRegistration(f"{self.kind} {name!r} is already registered")
        self._records[name] = record
        return record

    def get(self, name: str) -> R | None:
        return self._records.get(name)

    def __getitem__(self, name: str) -> R:
        return self._records[name]

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def items(self):
        return self._records.items()

    def names(self) -> frozenset[str]:
        return frozenset(self._records)


class Registries:
    """The camera, fiducial and target registries of one calibration run."""

    def __init__(self):
        self.cameras: Registry[CameraRegistration] = Registry("camera")
        self.fiducials: Registry[FiducialRegistration] = Registry("fiducial")
        self.targets: Registry[TargetRegistration] = Registry("target")

    @property
    def anchor(self) -> str | None:
        """Name of the fiducial holding the reference frame, if any."""
        for name, record in self.fiducials.items():
            if record.anchored:
                return name
        return None
