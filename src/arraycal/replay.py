"""
Detection log ingestion.

A detection log is a CSV file with header source,timestamp,fiducial,x,y.
Consecutive rows sharing (source, timestamp) form one detection; within it,
consecutive rows of one fiducial form that sighting's ordered point list.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Callable, Iterable

import numpy as np

from .errors import MalformedDetection
from .types import Detection, FiducialSighting

logger = logging.getLogger(__name__)

LOG_COLUMNS = ["source", "timestamp", "fiducial", "x", "y"]


def write_detection_log(path: Path, detections: Iterable[Detection]) -> int:
    """
    Write detections as one CSV row per image point.

    Returns:
        Number of detections written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(LOG_COLUMNS)
        for detection in detections:
            for sighting in detection.sightings:
                for x, y in np.asarray(sighting.points, dtype=np.float64).reshape(-1, 2):
                    writer.writerow(
                        [detection.source, repr(float(detection.timestamp)), sighting.fiducial, repr(float(x)), repr(float(y))]
                    )
            count += 1
    return count


def read_detection_log(path: Path) -> list[Detection]:
    """
    Load a detection log written by write_detection_log.

    Raises:
        FileNotFoundError: path does not exist
        MalformedDetection: missing columns or non-numeric values
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Detection log not found: {path}")

    detections: list[Detection] = []
    key = None
    sightings: list[tuple[str, list[tuple[float, float]]]] = []

    def flush():
        if key is not None:
            detections.append(
                Detection(
                    key[0],
                    key[1],
                    tuple(FiducialSighting(name, np.array(points, dtype=np.float64)) for name, points in sightings),
                )
            )

    with open(path, newline="") as f:
        reader = csv.DictReader(f)
        missing = set(LOG_COLUMNS) - set(reader.fieldnames or [])
        if missing:
            raise MalformedDetection(f"Detection log {path} missing columns: {sorted(missing)}")

        for line, row in enumerate(reader, start=2):
            try:
                timestamp = float(row["timestamp"])
                point = (float(row["x"]), float(row["y"]))
            except (TypeError, ValueError) as exc:
                raise MalformedDetection(f"{path}:{line}: {exc}") from exc

            row_key = (row["source"], timestamp)
            if row_key != key:
                flush()
                key = row_key
                sightings = []

            if sightings and sightings[-1][0] == row["fiducial"]:
                sightings[-1][1].append(point)
            else:
                sightings.append((row["fiducial"], [point]))

    flush()
    logger.info("Read %d detections from %s", len(detections), path)
    return detections


def replay(
    detections: Iterable[Detection],
    buffer_detection: Callable[[Detection], bool],
    process_until: Callable[[float], int],
) -> int:
    """
    Feed recorded detections through a calibrator in timestamp order.

    Time advances with the log: after each detection is buffered the
    processing cutoff moves to its timestamp.

    Returns:
        Number of detections accepted
    """
    accepted = 0
    for detection in sorted(detections, key=lambda d: d.timestamp):
        if buffer_detection(detection):
            accepted += 1
        process_until(detection.timestamp)
    return accepted
