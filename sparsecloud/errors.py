"""Exceptions raised by the reconstruction pipeline."""

from __future__ import annotations

from typing import Optional, Tuple


class ReconstructionError(Exception):
    """Base class for every fatal pipeline error."""


class ConfigError(ReconstructionError):
    """Configuration file missing or malformed."""


class DatasetError(ReconstructionError):
    """Input directory, image or pose file could not be loaded."""


class PoseFormatError(DatasetError, ValueError):
    """A pose record could not be parsed."""

    def __init__(self, path: str, line_number: int, message: str):
        self.path = path
        self.line_number = line_number
        super().__init__(f"{path}:{line_number}: {message}")


class PoseCountMismatchError(ReconstructionError, ValueError):
    """Number of images and number of camera poses differ."""

    def __init__(self, n_images: int, n_poses: int):
        self.n_images = n_images
        self.n_poses = n_poses
        super().__init__(
            f"Got {n_images} images but {n_poses} camera poses; "
            f"the pose file must contain exactly one record per image"
        )


class ColorSampleError(ReconstructionError, IndexError):
    """A keypoint falls outside the image it is sampled from."""

    def __init__(
        self,
        pixel: Tuple[int, int],
        shape: Tuple[int, ...],
        image_index: Optional[int] = None,
    ):
        self.pixel = pixel
        self.shape = shape
        self.image_index = image_index
        where = f"image #{image_index}" if image_index is not None else "image"
        super().__init__(
            f"Pixel (x={pixel[0]}, y={pixel[1]}) is outside {where} "
            f"of size {shape[1]}x{shape[0]}"
        )


class ReconstructionCancelled(ReconstructionError):
    """Reconstruction stopped through its cancellation event."""
