"""Geometric functions for two-view triangulation.

This module implements the linear algebra of the reconstruction: projection
matrices from calibration, DLT triangulation through the SVD null space,
detection of degenerate configurations, and color fusion of the two source
pixels of a triangulated point.

Images are expected in OpenCV's BGR channel order; all colors produced here
are RGB in [0, 1].
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import linalg

from sparsecloud.errors import ColorSampleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Point3D:
    """Triangulated point.

    Attributes:
        position: World coordinates (3,), NaN when the point is degenerate
        color: RGB color (3,) in [0, 1]
        valid: False when the triangulation was degenerate
    """

    position: np.ndarray
    color: np.ndarray
    valid: bool = field(default=True)


def projection_matrix(K: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Build the 3x4 projection matrix P = K @ [R|t].

    Args:
        K: 3x3 intrinsic matrix
        R: 3x3 rotation matrix
        t: Translation vector (3,)

    Returns:
        3x4 projection matrix
    """
    return np.asarray(K, dtype=np.float64) @ np.hstack(
        (np.asarray(R, dtype=np.float64), np.asarray(t, dtype=np.float64).reshape(3, 1))
    )


def project_point(P: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Project a 3D point with a projection matrix.

    Args:
        P: 3x4 projection matrix
        X: 3D point (3,) or homogeneous point (4,)

    Returns:
        Pixel coordinates [x, y]
    """
    X = np.asarray(X, dtype=np.float64)
    if X.shape[0] == 3:
        X = np.append(X, 1.0)
    p = P @ X
    return p[:2] / p[2]


def camera_center(P: np.ndarray) -> np.ndarray:
    """Homogeneous camera center of a projection matrix.

    The center spans the right null space of P. The returned vector has unit
    norm and is defined up to sign.
    """
    _, _, Vt = linalg.svd(P)
    return Vt[-1]


def has_baseline(P1: np.ndarray, P2: np.ndarray, eps: float = 1e-9) -> bool:
    """Check that two cameras do not share the same center.

    Two views with a common center have zero parallax and cannot triangulate.
    """
    C1 = camera_center(P1)
    C2 = camera_center(P2)
    if abs(C1[3]) <= eps or abs(C2[3]) <= eps:
        # Centers at infinity, compare directions
        return 1.0 - abs(float(C1 @ C2)) > eps

    c1 = C1[:3] / C1[3]
    c2 = C2[:3] / C2[3]
    scale = max(1.0, np.linalg.norm(c1), np.linalg.norm(c2))
    return bool(np.linalg.norm(c1 - c2) > eps * scale)


def triangulate_point(P1: np.ndarray, P2: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """Triangulate a 3D point from two image points and camera matrices.

    Implements the linear (DLT) triangulation: the four equations
    ``u * P[2] - P[0] = 0`` and ``v * P[2] - P[1] = 0`` of both views are
    stacked into A and ``A @ X = 0`` is solved through SVD.

    Args:
        P1: 3x4 projection matrix of the first camera
        P2: 3x4 projection matrix of the second camera
        x1: 2D point in the first image [x,y]
        x2: 2D point in the second image [x,y]

    Returns:
        Homogeneous coordinates of the 3D point [X,Y,Z,W] with unit norm
    """
    A = np.zeros((4, 4))
    A[0] = x1[0] * P1[2, :] - P1[0, :]
    A[1] = x1[1] * P1[2, :] - P1[1, :]
    A[2] = x2[0] * P2[2, :] - P2[0, :]
    A[3] = x2[1] * P2[2, :] - P2[1, :]

    # Last right singular vector
    _, _, Vt = linalg.svd(A)
    return Vt[-1]


def dehomogenize(X: np.ndarray, eps: float = 1e-9) -> Optional[np.ndarray]:
    """Convert a homogeneous point to 3D coordinates.

    Args:
        X: Homogeneous point [X,Y,Z,W]
        eps: Threshold on |W| relative to the norm of X

    Returns:
        3D point, or None when the point lies at (or near) infinity
    """
    norm = np.linalg.norm(X)
    if not np.isfinite(norm) or norm == 0 or abs(X[3]) <= eps * norm:
        return None
    return X[:3] / X[3]


def sample_color(image: np.ndarray, point: Sequence[float], image_index: Optional[int] = None) -> np.ndarray:
    """Read the pixel under a keypoint.

    The keypoint is rounded down to integer pixel coordinates. Coordinates
    outside the image raise ``ColorSampleError``; they are never clamped.

    Args:
        image: HxWx3 image
        point: Keypoint [x, y]
        image_index: Index of the image, for error messages

    Returns:
        Channel values of the pixel, in the image's channel order
    """
    x, y = float(point[0]), float(point[1])
    if not (np.isfinite(x) and np.isfinite(y)):
        raise ColorSampleError((x, y), image.shape, image_index)

    col, row = int(np.floor(x)), int(np.floor(y))
    h, w = image.shape[:2]
    if not (0 <= col < w and 0 <= row < h):
        raise ColorSampleError((col, row), image.shape, image_index)

    pixel = image[row, col]
    if np.ndim(pixel) == 0:
        pixel = np.repeat(pixel, 3)
    return np.asarray(pixel, dtype=np.float64)


def fuse_colors(bgr1: np.ndarray, bgr2: np.ndarray) -> np.ndarray:
    """Average two 8-bit BGR samples into an RGB color in [0, 1]."""
    bgr = (np.asarray(bgr1, dtype=np.float64) + np.asarray(bgr2, dtype=np.float64)) / (2.0 * 255.0)
    return np.clip(bgr[::-1], 0.0, 1.0)


def triangulate_match(
    P1: np.ndarray,
    P2: np.ndarray,
    image1: np.ndarray,
    image2: np.ndarray,
    x1: np.ndarray,
    x2: np.ndarray,
    eps: float = 1e-9,
    image_indices: Optional[Tuple[int, int]] = None,
    baseline: Optional[bool] = None,
) -> Point3D:
    """Triangulate one correspondence into a colored 3D point.

    Args:
        P1: 3x4 projection matrix of the first camera
        P2: 3x4 projection matrix of the second camera
        image1: First image (BGR)
        image2: Second image (BGR)
        x1: Keypoint in the first image [x,y]
        x2: Keypoint in the second image [x,y]
        eps: Degeneracy threshold
        image_indices: Indices of the two images, for error messages
        baseline: Precomputed result of ``has_baseline(P1, P2, eps)``

    Returns:
        Point3D, flagged invalid with a NaN position when degenerate
    """
    idx1, idx2 = image_indices if image_indices is not None else (None, None)
    color = fuse_colors(
        sample_color(image1, x1, idx1),
        sample_color(image2, x2, idx2),
    )

    if baseline is None:
        baseline = has_baseline(P1, P2, eps)

    position = None
    if baseline:
        X = triangulate_point(P1, P2, x1, x2)
        position = dehomogenize(X, eps)

    if position is None:
        return Point3D(np.full(3, np.nan), color, valid=False)
    return Point3D(position, color)


def triangulate_matches(
    P1: np.ndarray,
    P2: np.ndarray,
    image1: np.ndarray,
    image2: np.ndarray,
    match_points: np.ndarray,
    eps: float = 1e-9,
    image_indices: Optional[Tuple[int, int]] = None,
) -> List[Point3D]:
    """Triangulate every correspondence of an image pair.

    Args:
        P1: 3x4 projection matrix of the first camera
        P2: 3x4 projection matrix of the second camera
        image1: First image (BGR)
        image2: Second image (BGR)
        match_points: Nx4 array of point correspondences [x1,y1,x2,y2]
        eps: Degeneracy threshold
        image_indices: Indices of the two images, for error messages

    Returns:
        One Point3D per correspondence, in match order
    """
    baseline = has_baseline(P1, P2, eps)
    if not baseline:
        logger.warning(
            f"Cameras {image_indices} share the same center, "
            f"all {len(match_points)} points are degenerate"
        )

    return [
        triangulate_match(
            P1, P2, image1, image2, row[:2], row[2:],
            eps=eps, image_indices=image_indices, baseline=baseline,
        )
        for row in match_points
    ]
