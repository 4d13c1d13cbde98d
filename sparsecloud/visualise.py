"""Point cloud export and viewer handoff.

This module converts the reconstructed points to Open3D geometry, writes
them to disk and opens the interactive Open3D viewer with markers at the
camera positions.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import open3d as o3d

from sparsecloud.geometry import Point3D

logger = logging.getLogger(__name__)


def points_to_arrays(points: Sequence[Point3D]) -> Tuple[np.ndarray, np.ndarray]:
    """Split points into position and color arrays.

    Degenerate points are left out.

    Returns:
        Tuple of (Nx3 positions, Nx3 RGB colors in [0, 1])
    """
    valid = [p for p in points if p.valid]
    if not valid:
        return np.zeros((0, 3)), np.zeros((0, 3))
    positions = np.array([p.position for p in valid], dtype=np.float64)
    colors = np.array([p.color for p in valid], dtype=np.float64)
    return positions, colors


def array_to_pcd(
    points: np.ndarray,
    colors: Optional[np.ndarray] = None
) -> o3d.geometry.PointCloud:
    """Convert numpy arrays to Open3D point cloud.

    Args:
        points: Nx3 array of point coordinates
        colors: Nx3 array of RGB colors in [0, 1] (optional)

    Returns:
        Open3D PointCloud object
    """
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(points)

    if colors is not None and len(colors) > 0:
        pcd.colors = o3d.utility.Vector3dVector(colors)

    return pcd


def save_point_cloud(path: Union[str, Path], points: Sequence[Point3D]) -> Path:
    """Write points to a point cloud file (format from the extension, e.g. .ply).

    Args:
        path: Output file path
        points: Reconstructed points

    Returns:
        Path of the written file
    """
    path = Path(path)
    positions, colors = points_to_arrays(points)
    pcd = array_to_pcd(positions, colors)
    if not o3d.io.write_point_cloud(str(path), pcd):
        raise OSError(f"Failed to write point cloud to {path}")
    logger.info(f"Saved {len(positions)} points to {path}")
    return path


def create_camera_markers(
    camera_positions: Sequence[np.ndarray],
    radius: float = 0.01,
) -> List[o3d.geometry.TriangleMesh]:
    """Create one colored sphere per camera position.

    Colors follow the viridis colormap in image order.
    """
    markers = []
    for i, position in enumerate(camera_positions):
        hue = float(i) / max(1, len(camera_positions) - 1)
        color = plt.cm.viridis(hue)[:3]

        sphere = o3d.geometry.TriangleMesh.create_sphere(radius=radius)
        sphere.translate(np.asarray(position, dtype=np.float64))
        sphere.paint_uniform_color(color)
        markers.append(sphere)

    return markers


def show(
    points: Sequence[Point3D],
    camera_positions: Sequence[np.ndarray] = (),
    window_size: Tuple[int, int] = (1280, 720),
    window_name: str = "Point cloud viewer",
) -> None:
    """Open the interactive viewer on a reconstructed point cloud.

    Args:
        points: Reconstructed points
        camera_positions: Camera positions, drawn as markers
        window_size: Visualization window size
        window_name: Window title
    """
    positions, colors = points_to_arrays(points)

    # Scale camera markers to the extent of the cloud
    extent = np.ptp(positions, axis=0).max() if len(positions) > 1 else 1.0
    radius = max(extent * 0.01, 1e-3)

    vis = o3d.visualization.Visualizer()
    vis.create_window(window_name=window_name, width=window_size[0], height=window_size[1])

    vis.add_geometry(array_to_pcd(positions, colors))
    for marker in create_camera_markers(camera_positions, radius=radius):
        vis.add_geometry(marker)

    opt = vis.get_render_option()
    opt.background_color = np.array([0.1, 0.1, 0.1])
    opt.point_size = 3.0

    vis.run()
    vis.destroy_window()
