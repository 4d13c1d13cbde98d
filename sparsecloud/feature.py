"""Feature detection and matching module.

This module wraps OpenCV's SIFT detector as the per-image feature source and
implements correspondence search between two views: k=2 nearest neighbour
search (exact KD-tree or FLANN), Lowe's ratio test, sorting by descriptor
distance and truncation to the best matches.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import cv2
import numpy as np
from scipy import spatial
from tqdm import tqdm

logger = logging.getLogger(__name__)

FLANN_INDEX_KDTREE = 1


@dataclass(eq=False)
class ImageFeatures:
    """Keypoints and descriptors of one image.

    Attributes:
        keypoints: Nx2 array of pixel coordinates (x, y)
        descriptors: NxD array of descriptor vectors
    """

    keypoints: np.ndarray
    descriptors: np.ndarray

    def __post_init__(self):
        self.keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 2)
        self.descriptors = np.asarray(self.descriptors, dtype=np.float32)
        if self.descriptors.ndim != 2:
            raise ValueError(f"Descriptors must be NxD, got shape {self.descriptors.shape}")
        if len(self.keypoints) != len(self.descriptors):
            raise ValueError(
                f"Got {len(self.keypoints)} keypoints but {len(self.descriptors)} descriptors"
            )

    def __len__(self) -> int:
        return len(self.keypoints)

    @classmethod
    def empty(cls, dim: int = 128) -> "ImageFeatures":
        return cls(np.zeros((0, 2)), np.zeros((0, dim), dtype=np.float32))


@dataclass(frozen=True)
class Match:
    """Correspondence between two keypoints.

    Attributes:
        query_idx: Keypoint index in the left image
        train_idx: Keypoint index in the right image
        distance: L2 distance between the two descriptors
    """

    query_idx: int
    train_idx: int
    distance: float


Detector = Callable[[np.ndarray], ImageFeatures]


class SiftDetector:
    """SIFT keypoint detector producing ``ImageFeatures``."""

    def __init__(self, n_features: int = 0):
        self.detector = cv2.SIFT_create(nfeatures=n_features)

    def __call__(self, image: np.ndarray) -> ImageFeatures:
        if len(image.shape) == 3 and image.shape[2] == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image

        kp, des = self.detector.detectAndCompute(gray, None)
        if des is None or len(kp) == 0:
            return ImageFeatures.empty(self.detector.descriptorSize())

        return ImageFeatures(np.array([k.pt for k in kp]), des)


def create_detector(method: str = "sift", n_features: int = 0) -> Detector:
    """Create the feature detector named in the configuration.

    Args:
        method: Feature detection method
        n_features: Maximum number of features, 0 for unlimited

    Returns:
        Callable mapping a BGR image to its ``ImageFeatures``
    """
    if method.lower() == "sift":
        return SiftDetector(n_features=n_features)
    raise ValueError(f"Unknown feature detection method: {method}")


def detect_features(
    images: Sequence[np.ndarray],
    detector: Optional[Detector] = None,
    progress: bool = True,
) -> List[ImageFeatures]:
    """Detect keypoints and descriptors in every image.

    Args:
        images: Input images (BGR)
        detector: Feature detector, SIFT when None
        progress: Whether to display a progress bar

    Returns:
        One ``ImageFeatures`` per image, in image order
    """
    if detector is None:
        detector = create_detector()

    start_time = time.perf_counter()
    logger.info("Finding keypoints in images")
    features = []
    for i, img in enumerate(tqdm(images, desc="Detecting features", disable=not progress)):
        feats = detector(img)
        logger.debug(f"\tFound {len(feats)} keypoints in image #{i}")
        features.append(feats)
    elapsed_time = time.perf_counter() - start_time
    logger.info(f"Computed keypoints in all images (elapsed time: {elapsed_time:.2f}s)")

    return features


def _knn_kdtree(des1: np.ndarray, des2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    tree = spatial.cKDTree(des2)
    distances, indices = tree.query(des1, k=2)
    return distances, indices


def _knn_flann(
    des1: np.ndarray, des2: np.ndarray, trees: int, checks: int
) -> tuple[np.ndarray, np.ndarray]:
    index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=trees)
    search_params = dict(checks=checks)
    flann = cv2.FlannBasedMatcher(index_params, search_params)

    knn = flann.knnMatch(des1, des2, k=2)
    distances = np.full((len(des1), 2), np.inf)
    indices = np.full((len(des1), 2), len(des2), dtype=np.int64)
    for pair in knn:
        for rank, m in enumerate(pair[:2]):
            distances[m.queryIdx, rank] = m.distance
            indices[m.queryIdx, rank] = m.trainIdx
    return distances, indices


def match_features(
    left: ImageFeatures,
    right: ImageFeatures,
    ratio: float = 0.7,
    max_matches: int = 100,
    algorithm: str = "kdtree",
    flann_trees: int = 5,
    flann_checks: int = 50,
) -> List[Match]:
    """Match descriptors of two images.

    For every left descriptor the two nearest right descriptors are found.
    The nearest is kept only if ``best < ratio * second_best``. Survivors are
    sorted by ascending distance and at most ``max_matches`` are returned.

    Args:
        left: Features of the left image (queries)
        right: Features of the right image (train set)
        ratio: Lowe's ratio test threshold
        max_matches: Maximum number of matches returned
        algorithm: "kdtree" for exact search, "flann" for OpenCV FLANN
        flann_trees: Number of randomized trees for FLANN
        flann_checks: Number of leaf checks for FLANN

    Returns:
        Matches sorted by ascending distance
    """
    # Two neighbours are needed for the ratio test
    if len(left) == 0 or len(right) < 2:
        return []

    des1 = np.ascontiguousarray(left.descriptors, dtype=np.float32)
    des2 = np.ascontiguousarray(right.descriptors, dtype=np.float32)
    if des1.shape[1] != des2.shape[1]:
        raise ValueError(
            f"Descriptor dimensions differ: {des1.shape[1]} vs {des2.shape[1]}"
        )

    if algorithm == "kdtree":
        distances, indices = _knn_kdtree(des1, des2)
    elif algorithm == "flann":
        distances, indices = _knn_flann(des1, des2, flann_trees, flann_checks)
    else:
        raise ValueError(f"Unknown matching algorithm: {algorithm}")

    # Apply Lowe's ratio test
    best = distances[:, 0]
    second = distances[:, 1]
    keep = np.isfinite(second) & (best < ratio * second)

    query_idx = np.nonzero(keep)[0]
    order = np.argsort(best[query_idx], kind="stable")[:max_matches]

    matches = [
        Match(int(q), int(indices[q, 0]), float(best[q]))
        for q in query_idx[order]
    ]

    logger.debug(f"\tfound {len(matches)} matches ({int(keep.sum())} passed ratio test)")
    return matches


def matches_to_array(
    left: ImageFeatures, right: ImageFeatures, matches: Sequence[Match]
) -> np.ndarray:
    """Convert matches to an Nx4 array of point correspondences [x1,y1,x2,y2]."""
    if not matches:
        return np.zeros((0, 4))
    pts1 = left.keypoints[[m.query_idx for m in matches]]
    pts2 = right.keypoints[[m.train_idx for m in matches]]
    return np.hstack((pts1, pts2))


def display_matches(
    img1: np.ndarray, img2: np.ndarray, match_points: np.ndarray, seed: int = 0
) -> np.ndarray:
    """Draw matched features between two images side by side.

    Args:
        img1: Left image (BGR or grayscale)
        img2: Right image (BGR or grayscale)
        match_points: Nx4 array of point correspondences [x1,y1,x2,y2]
        seed: Seed of the per-match colors

    Returns:
        Visualization image with matches drawn between the image pair
    """
    if len(img1.shape) == 2:
        img1 = cv2.cvtColor(img1, cv2.COLOR_GRAY2BGR)
    if len(img2.shape) == 2:
        img2 = cv2.cvtColor(img2, cv2.COLOR_GRAY2BGR)

    h1, w1 = img1.shape[:2]
    h2, w2 = img2.shape[:2]
    vis = np.zeros((max(h1, h2), w1 + w2, 3), dtype=np.uint8)
    vis[:h1, :w1] = img1
    vis[:h2, w1:w1 + w2] = img2

    rng = np.random.default_rng(seed)
    for x1, y1, x2, y2 in match_points:
        pt1 = (int(x1), int(y1))
        pt2 = (int(x2) + w1, int(y2))
        color = rng.integers(0, 255, 3).tolist()

        cv2.line(vis, pt1, pt2, color, 1)
        cv2.circle(vis, pt1, 3, color, -1)
        cv2.circle(vis, pt2, 3, color, -1)

    return vis
