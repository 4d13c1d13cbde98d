"""Camera pose loading.

This module parses the per-image calibration records of a posed dataset
(templeRing / Middlebury ``*_par.txt`` layout) and derives the 3x4 projection
matrix of every image.

Each record line reads::

    <image_id> k11 k12 k13 k21 k22 k23 k31 k32 k33 r11 ... r33 t1 t2 t3

The first line of the file is a header and is not parsed as a record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np

from sparsecloud.errors import DatasetError, PoseFormatError

logger = logging.getLogger(__name__)

N_FIELDS = 1 + 9 + 9 + 3


@dataclass(frozen=True)
class CameraPose:
    """Calibration of one image.

    Attributes:
        image_id: Identifier of the image in the pose file
        K: 3x3 intrinsic matrix
        R: 3x3 rotation matrix
        t: translation vector (3,)
    """

    image_id: str
    K: np.ndarray
    R: np.ndarray
    t: np.ndarray

    @property
    def extrinsic(self) -> np.ndarray:
        """3x4 matrix [R|t]."""
        return np.hstack((self.R, self.t.reshape(3, 1)))

    @property
    def projection(self) -> np.ndarray:
        """3x4 projection matrix P = K @ [R|t]."""
        return self.K @ self.extrinsic

    @property
    def position(self) -> np.ndarray:
        """Raw translation vector, as handed to the viewer."""
        return self.t.copy()

    @property
    def center(self) -> np.ndarray:
        """Optical center -R.T @ t in world coordinates."""
        return -self.R.T @ self.t


def parse_pose_line(line: str, path: str = "<string>", line_number: int = 0) -> CameraPose:
    """Parse a single pose record.

    Args:
        line: Record line
        path: File the line comes from, for error messages
        line_number: 1-based line number, for error messages

    Returns:
        Parsed camera pose
    """
    fields = line.split()
    if len(fields) != N_FIELDS:
        raise PoseFormatError(
            path, line_number,
            f"expected {N_FIELDS} fields (id, 9 K, 9 R, 3 t), got {len(fields)}"
        )

    image_id = fields[0]
    groups = (("K", fields[1:10]), ("R", fields[10:19]), ("t", fields[19:22]))
    values = {}
    for name, raw in groups:
        try:
            values[name] = np.array([float(v) for v in raw], dtype=np.float64)
        except ValueError as e:
            raise PoseFormatError(
                path, line_number,
                f"failed to parse float value for {name} of {image_id}: {e}"
            ) from e
        if not np.all(np.isfinite(values[name])):
            raise PoseFormatError(
                path, line_number,
                f"non-finite value for {name} of {image_id}: {' '.join(raw)}"
            )

    return CameraPose(
        image_id=image_id,
        K=values["K"].reshape(3, 3),
        R=values["R"].reshape(3, 3),
        t=values["t"],
    )


def parse_poses(text: str, path: str = "<string>") -> List[CameraPose]:
    """Parse the contents of a pose file.

    Args:
        text: Full file contents, header line included
        path: File name used in error messages

    Returns:
        List of camera poses in file order
    """
    lines = text.splitlines()
    if not lines:
        return []

    header = lines[0].strip()
    poses = []
    for line_number, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        pose = parse_pose_line(line, path, line_number)

        logger.debug(f"\tExtracted values for {pose.image_id}:")
        logger.debug(f"\t\tk: {pose.K.ravel().tolist()}")
        logger.debug(f"\t\trt: {pose.extrinsic.ravel().tolist()}")
        logger.debug(f"\t\t -> {pose.projection.ravel().tolist()}")
        poses.append(pose)

    if header.isdigit() and int(header) != len(poses):
        logger.warning(
            f"{path}: header announces {int(header)} poses but {len(poses)} were found"
        )

    return poses


def load_poses(pose_file_path: Union[str, Path]) -> Tuple[List[CameraPose], List[np.ndarray]]:
    """Load all camera poses from a pose file.

    Records are bound to images purely by position: the file's row order must
    match the sorted order of the image files.

    Args:
        pose_file_path: Path to the pose file

    Returns:
        Tuple of (poses, camera_positions) where camera_positions are the raw
        translation vectors of each pose
    """
    pose_file_path = Path(pose_file_path)
    if not pose_file_path.is_file():
        raise DatasetError(f"Pose file not found: {pose_file_path}")

    logger.info("Extracting pose data for images")
    text = pose_file_path.read_text()
    poses = parse_poses(text, str(pose_file_path))
    camera_positions = [pose.position for pose in poses]
    logger.info(f"Extracted pose data for {len(poses)} images")

    return poses, camera_positions
