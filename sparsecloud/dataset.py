"""Dataset loading.

A dataset is a folder of images plus one pose file. Images are taken in
lexicographic path order and bound to pose records by position.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from tqdm import tqdm

from sparsecloud.errors import DatasetError, PoseCountMismatchError
from sparsecloud.pose import CameraPose, load_poses

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("png", "jpg", "jpeg")


def list_image_files(
    data_dir: Union[str, Path],
    extensions: Sequence[str] = IMAGE_EXTENSIONS,
    exclude: Sequence[str] = (),
) -> List[Path]:
    """List image files of a folder in lexicographic order.

    Args:
        data_dir: Folder to scan (not recursive)
        extensions: Accepted extensions, case-insensitive, without the dot
        exclude: File names to leave out

    Returns:
        Sorted list of image paths
    """
    data_dir = Path(data_dir)
    try:
        entries = sorted(p for p in data_dir.iterdir() if p.is_file())
    except OSError as e:
        raise DatasetError(f"Failed to read files in {data_dir}: {e}") from e

    accepted = {ext.lower().lstrip(".") for ext in extensions}
    image_files = []
    for path in entries:
        if path.name in exclude:
            continue
        if path.suffix.lower().lstrip(".") not in accepted:
            logger.debug(f"\tskipping {path.name}: not an image")
            continue
        image_files.append(path)

    return image_files


def read_images(image_files: Sequence[Union[str, Path]], progress: bool = True) -> List[np.ndarray]:
    """Read images from disk.

    Args:
        image_files: Paths of the images, in dataset order
        progress: Whether to display a progress bar

    Returns:
        List of HxWx3 uint8 images in BGR order
    """
    images = []
    for image_file in tqdm(image_files, desc="Reading images", disable=not progress):
        image = cv2.imread(str(image_file), cv2.IMREAD_COLOR)
        if image is None:
            raise DatasetError(f"Failed to decode image {image_file}")
        logger.debug(f"\tloaded {image_file}")
        images.append(image)

    return images


def load_dataset(
    data_dir: Union[str, Path],
    pose_file: str = "pose.txt",
    extensions: Sequence[str] = IMAGE_EXTENSIONS,
    progress: bool = True,
) -> Tuple[List[np.ndarray], List[CameraPose], List[Path]]:
    """Load the images and camera poses of a dataset folder.

    Args:
        data_dir: Folder containing the images and the pose file
        pose_file: Name (not path) of the pose file inside ``data_dir``
        extensions: Accepted image extensions
        progress: Whether to display a progress bar

    Returns:
        Tuple of (images, poses, image_paths)
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise DatasetError(f"Data folder not found: {data_dir}")

    pose_path = data_dir / pose_file
    if not pose_path.is_file():
        raise DatasetError(f"Failed to find pose file {pose_file} in {data_dir}")
    logger.info(f"Found pose file {pose_path}")

    poses, _ = load_poses(pose_path)

    logger.info(f"Loading images from {data_dir}")
    image_files = list_image_files(data_dir, extensions, exclude=(pose_file,))
    if not image_files:
        raise DatasetError(f"No images found in {data_dir}")

    if len(image_files) != len(poses):
        raise PoseCountMismatchError(len(image_files), len(poses))

    check_pose_order(poses, image_files)

    images = read_images(image_files, progress=progress)
    logger.info(f"Loaded {len(images)} images")
    if images:
        logger.info(f"Image dimensions: {images[0].shape}")

    return images, poses, image_files


def check_pose_order(poses: Sequence[CameraPose], image_files: Sequence[Path]) -> Optional[int]:
    """Warn when pose identifiers do not follow the image order.

    Poses are still bound by position; this only reports the first mismatch.

    Returns:
        Index of the first mismatch, or None
    """
    for i, (pose, path) in enumerate(zip(poses, image_files)):
        if pose.image_id not in (path.name, path.stem):
            logger.warning(
                f"Pose #{i} is for {pose.image_id} but image #{i} is {path.name}; "
                f"poses are bound to images by position"
            )
            return i
    return None
