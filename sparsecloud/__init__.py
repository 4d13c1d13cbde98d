"""Sparse colored point clouds from calibrated image sequences.

A Python project that turns a folder of posed 2D photos into a sparse 3D point
cloud by matching adjacent views and triangulating every correspondence.
"""

from __future__ import annotations

__version__ = "0.1.0"
