"""Sparse reconstruction driver.

This module runs the pipeline over an ordered image sequence: features are
detected once per image, every pair of consecutive images (i, i+1) is matched
and each surviving correspondence is triangulated into a colored point.

Only adjacent views are compared, so the work grows linearly with the number
of images; correspondences between non-adjacent views are never found.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from tqdm import tqdm

from sparsecloud.config import load_config
from sparsecloud.errors import ColorSampleError, PoseCountMismatchError, ReconstructionCancelled
from sparsecloud.feature import (
    Detector,
    ImageFeatures,
    Match,
    create_detector,
    detect_features,
    display_matches,
    match_features,
    matches_to_array,
)
from sparsecloud.geometry import Point3D, triangulate_matches
from sparsecloud.pose import CameraPose

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PairResult:
    """Matches and points of one adjacent image pair.

    ``points`` holds one entry per match, degenerate points included.
    """

    left: int
    right: int
    matches: List[Match]
    match_points: np.ndarray
    points: List[Point3D]

    @property
    def n_degenerate(self) -> int:
        return sum(1 for p in self.points if not p.valid)


@dataclass(eq=False)
class Reconstruction:
    """Result of a reconstruction run."""

    pairs: List[PairResult]
    camera_positions: List[np.ndarray]
    projections: List[np.ndarray]
    drop_degenerate: bool = field(default=False)

    @property
    def points(self) -> List[Point3D]:
        """Accumulated points in pair-processing order."""
        return [
            p for pair in self.pairs for p in pair.points
            if p.valid or not self.drop_degenerate
        ]

    @property
    def n_degenerate(self) -> int:
        return sum(pair.n_degenerate for pair in self.pairs)

    def observations(self) -> Tuple[np.ndarray, Dict[Tuple[int, int], np.ndarray]]:
        """Every triangulated point with the keypoints it was built from.

        Returns:
            Tuple of (points3d, observations) where points3d is an Nx3 array of
            all points (degenerate ones are NaN) and observations maps
            (image_idx, point_idx) to the observed 2D keypoint
        """
        positions = []
        observations = {}
        for pair in self.pairs:
            for point, row in zip(pair.points, pair.match_points):
                idx = len(positions)
                positions.append(point.position)
                if point.valid:
                    observations[(pair.left, idx)] = row[:2]
                    observations[(pair.right, idx)] = row[2:]

        points3d = np.array(positions).reshape(-1, 3)
        return points3d, observations

    def to_array(self) -> np.ndarray:
        """Nx6 array of points [x, y, z, r, g, b]."""
        points = self.points
        if not points:
            return np.zeros((0, 6))
        return np.array([np.concatenate((p.position, p.color)) for p in points])


def adjacent_pairs(n_images: int) -> List[Tuple[int, int]]:
    """Index pairs of consecutive images, (0, 1), (1, 2), ..."""
    return [(i, i + 1) for i in range(n_images - 1)]


def prepare_output_dir(output_dir: Optional[Union[str, Path]]) -> Optional[Path]:
    """Make sure the debug output directory exists.

    Returns:
        The directory, or None when debug output is disabled or the directory
        could not be created
    """
    if output_dir is None:
        return None

    output_dir = Path(output_dir)
    if output_dir.is_dir():
        return output_dir

    try:
        output_dir.mkdir(parents=True)
    except OSError as e:
        logger.error(f"Failed to create output directory {output_dir}, no images will be generated: {e}")
        return None
    return output_dir


def save_match_image(
    output_dir: Path,
    left: int,
    right: int,
    image1: np.ndarray,
    image2: np.ndarray,
    match_points: np.ndarray,
    extension: str = "png",
) -> Optional[Path]:
    """Write the match visualization of a pair to ``<left>-<right>.<ext>``."""
    path = output_dir / f"{left}-{right}.{extension}"
    vis = display_matches(image1, image2, match_points)
    try:
        written = cv2.imwrite(str(path), vis)
    except cv2.error as e:
        # Raised instead of returning False, e.g. for an unknown extension
        logger.warning(f"Failed to write match image {path}: {e}")
        return None
    if not written:
        logger.warning(f"Failed to write match image {path}")
        return None
    return path


def process_pair(
    left: int,
    right: int,
    images: Sequence[np.ndarray],
    projections: Sequence[np.ndarray],
    features: Sequence[ImageFeatures],
    config: Dict,
    output_dir: Optional[Path] = None,
) -> PairResult:
    """Match one adjacent pair and triangulate its correspondences.

    Args:
        left: Index of the left image
        right: Index of the right image
        images: All images (BGR)
        projections: 3x4 projection matrix of every image
        features: Features of every image
        config: Configuration dictionary
        output_dir: Debug output directory, None to skip the match image

    Returns:
        PairResult with one point per match
    """
    logger.debug(f"\tmatching between {left} and {right}")
    matcher_config = config["matcher"]
    matches = match_features(
        features[left],
        features[right],
        ratio=matcher_config["ratio"],
        max_matches=matcher_config["max_matches"],
        algorithm=matcher_config["algorithm"],
        flann_trees=matcher_config["flann_trees"],
        flann_checks=matcher_config["flann_checks"],
    )
    match_points = matches_to_array(features[left], features[right], matches)

    if output_dir is not None:
        save_match_image(
            output_dir, left, right, images[left], images[right], match_points,
            extension=config["reconstruction"]["debug_extension"],
        )

    try:
        points = triangulate_matches(
            projections[left],
            projections[right],
            images[left],
            images[right],
            match_points,
            eps=config["triangulation"]["eps"],
            image_indices=(left, right),
        )
    except ColorSampleError as e:
        logger.error(f"Triangulation failed for pair ({left}, {right}): {e}")
        raise

    result = PairResult(left, right, matches, match_points, points)
    if result.n_degenerate:
        logger.warning(
            f"Pair ({left}, {right}): {result.n_degenerate}/{len(points)} "
            f"degenerate triangulations"
        )
    return result


def reconstruct(
    images: Sequence[np.ndarray],
    poses: Sequence[CameraPose],
    features: Optional[Sequence[ImageFeatures]] = None,
    detector: Optional[Detector] = None,
    config: Optional[Dict] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Reconstruction:
    """Run sparse reconstruction over an ordered image sequence.

    Args:
        images: Images (BGR) in dataset order
        poses: One camera pose per image, in the same order
        features: Precomputed features per image; detected when None
        detector: Feature detector used when features are not given
        config: Configuration dictionary, defaults when None
        cancel_event: Event checked before each pair; when set, the run stops

    Returns:
        Reconstruction holding every pair's matches and points
    """
    if config is None:
        config = load_config()
    recon_config = config["reconstruction"]

    if len(images) != len(poses):
        raise PoseCountMismatchError(len(images), len(poses))

    projections = [pose.projection for pose in poses]
    camera_positions = [pose.position for pose in poses]

    if features is None:
        if detector is None:
            detector = create_detector(
                config["feature"]["method"], config["feature"]["n_features"]
            )
        features = detect_features(images, detector, progress=recon_config["progress"])
    elif len(features) != len(images):
        raise ValueError(f"Got {len(features)} feature sets for {len(images)} images")

    output_dir = prepare_output_dir(recon_config["output_dir"])
    pairs = adjacent_pairs(len(images))
    workers = max(1, int(recon_config["workers"]))

    def run_pair(left: int, right: int) -> PairResult:
        if cancel_event is not None and cancel_event.is_set():
            raise ReconstructionCancelled(f"Reconstruction cancelled before pair ({left}, {right})")
        return process_pair(left, right, images, projections, features, config, output_dir)

    logger.info(f"Generating points from {len(pairs)} adjacent pairs")
    progress = tqdm(total=len(pairs), desc="Matching pairs", disable=not recon_config["progress"])
    with progress:
        if workers == 1:
            results = []
            for left, right in pairs:
                results.append(run_pair(left, right))
                progress.update(1)
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(run_pair, left, right) for left, right in pairs]
                results = []
                try:
                    for future in futures:
                        results.append(future.result())
                        progress.update(1)
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

    reconstruction = Reconstruction(
        pairs=results,
        camera_positions=camera_positions,
        projections=projections,
        drop_degenerate=config["triangulation"]["drop_degenerate"],
    )
    logger.info(
        f"Generated {len(reconstruction.points)} points "
        f"({reconstruction.n_degenerate} degenerate)"
    )
    return reconstruction


def generate_point_cloud(
    images: Sequence[np.ndarray],
    poses: Sequence[CameraPose],
    **kwargs,
) -> Tuple[List[Point3D], List[np.ndarray]]:
    """Reconstruct the point cloud handed to the viewer.

    Args:
        images: Images (BGR) in dataset order
        poses: One camera pose per image, in the same order
        **kwargs: Forwarded to ``reconstruct``

    Returns:
        Tuple of (points, camera_positions) where camera_positions are the raw
        pose translation vectors
    """
    reconstruction = reconstruct(images, poses, **kwargs)
    return reconstruction.points, reconstruction.camera_positions
