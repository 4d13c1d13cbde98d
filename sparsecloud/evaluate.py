"""Evaluation metrics for sparse reconstruction.

This module implements quality metrics for the triangulated point cloud,
namely reprojection error against the observed keypoints, together with
timing utilities for the pipeline stages.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)


def reprojection_rmse(
    projections: Sequence[np.ndarray],
    points3d: np.ndarray,
    observations: Dict[Tuple[int, int], np.ndarray],
) -> float:
    """Calculate the root mean square reprojection error.

    Args:
        projections: List of 3x4 projection matrices, one per image
        points3d: Nx3 array of 3D points
        observations: Dictionary mapping (image_idx, point_idx) to 2D observations

    Returns:
        Root mean square reprojection error in pixels
    """
    if not observations:
        logger.warning("No observations provided for reprojection error calculation")
        return float('inf')

    squared_errors = []
    for (img_idx, pt_idx), obs_pt in observations.items():
        if img_idx >= len(projections) or pt_idx >= len(points3d):
            continue

        point3d = points3d[pt_idx]
        if not np.all(np.isfinite(point3d)):
            continue

        p = projections[img_idx] @ np.append(point3d, 1.0)

        # Skip points on the camera plane
        if abs(p[2]) < 1e-12:
            continue

        error = np.asarray(obs_pt) - p[:2] / p[2]
        squared_errors.append(np.sum(error ** 2))

    if not squared_errors:
        logger.warning("No valid reprojections for error calculation")
        return float('inf')

    return float(np.sqrt(np.mean(squared_errors)))


class Timer:
    """Wall-clock timer for one pipeline stage.

    Used as a context manager around a stage; ``elapsed`` then holds the
    stage duration that goes into the metrics report::

        with Timer("Reconstruction") as timer:
            reconstruction = reconstruct(images, poses)
        metrics.update_stage_timing("reconstruction", timer.elapsed)
    """

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None

    def start(self) -> None:
        """(Re)start timing; a previous stop is forgotten."""
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Freeze the stage duration and log it at debug level.

        Returns:
            Stage duration in seconds, 0.0 if the timer never started
        """
        if self.start_time is None:
            self.logger.warning(f"{self.name}: stopped before it was started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name} took {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    @property
    def elapsed(self) -> float:
        """Seconds since start; fixed once the timer is stopped."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class ReconstructionMetrics:
    """Class for calculating and storing reconstruction metrics."""

    def __init__(self):
        self.metrics = {
            "n_images": 0,
            "n_pairs": 0,
            "matches_per_pair": {},
            "n_points": 0,
            "n_degenerate": 0,
            "rmse_reproj_px": None,
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict]) -> None:
        """Update a specific metric.

        Args:
            metric_name: Name of the metric to update
            value: New value for the metric
        """
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        """Update timing for a specific pipeline stage.

        Args:
            stage_name: Name of the pipeline stage
            time_s: Time in seconds
        """
        self.metrics["stage_timings"][stage_name] = time_s

    def compute_sparse_metrics(self, reconstruction) -> None:
        """Compute metrics of a finished reconstruction.

        Args:
            reconstruction: ``sparsecloud.reconstruct.Reconstruction``
        """
        self.metrics["n_images"] = len(reconstruction.camera_positions)
        self.metrics["n_pairs"] = len(reconstruction.pairs)
        self.metrics["matches_per_pair"] = {
            f"{pair.left}-{pair.right}": len(pair.matches) for pair in reconstruction.pairs
        }
        self.metrics["n_points"] = len(reconstruction.points)
        self.metrics["n_degenerate"] = reconstruction.n_degenerate

        points3d, observations = reconstruction.observations()
        if observations:
            self.metrics["rmse_reproj_px"] = reprojection_rmse(
                reconstruction.projections, points3d, observations
            )

    def to_dict(self) -> Dict:
        """Convert metrics to dictionary.

        Returns:
            Dictionary of metrics
        """
        return self.metrics.copy()

    def summary(self) -> str:
        """Generate a human-readable summary of metrics.

        Returns:
            Summary string
        """
        lines = [
            "Reconstruction Metrics:",
            f"  Images: {self.metrics['n_images']}",
            f"  Adjacent pairs: {self.metrics['n_pairs']}",
            f"  Points: {self.metrics['n_points']}",
            f"  Degenerate points: {self.metrics['n_degenerate']}",
        ]

        if self.metrics["rmse_reproj_px"] is not None:
            lines.append(f"  Reprojection RMSE: {self.metrics['rmse_reproj_px']:.4f} px")

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)
