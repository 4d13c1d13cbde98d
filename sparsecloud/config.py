"""Configuration loading.

Defaults live in ``DEFAULT_CONFIG``; a YAML file only needs to contain the
keys it overrides.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from sparsecloud.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "dataset": {
        "pose_file": "pose.txt",
        "image_extensions": ["png", "jpg", "jpeg"],
    },
    "feature": {
        "method": "sift",
        "n_features": 0,
    },
    "matcher": {
        "algorithm": "kdtree",
        "ratio": 0.7,
        "max_matches": 100,
        "flann_trees": 5,
        "flann_checks": 50,
    },
    "triangulation": {
        "eps": 1e-9,
        "drop_degenerate": False,
    },
    "reconstruction": {
        "workers": 1,
        "output_dir": "out",
        "debug_extension": "png",
        "progress": True,
    },
    "logging": {
        "level": "INFO",
    },
}


def _merge(base: Dict, overrides: Dict) -> Dict:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict:
    """Load configuration, merging a YAML file over the defaults.

    Args:
        config_path: Path to a YAML configuration file. When None, the
            defaults are returned unchanged.

    Returns:
        Configuration dictionary
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path is None:
        return config

    config_path = Path(config_path)
    if not config_path.is_file():
        raise ConfigError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        try:
            overrides = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if overrides is None:
        return config
    if not isinstance(overrides, dict):
        raise ConfigError(f"{config_path} must contain a mapping at top level")

    unknown = sorted(set(overrides) - set(DEFAULT_CONFIG))
    if unknown:
        raise ConfigError(f"Unknown configuration sections in {config_path}: {unknown}")

    logger.debug(f"Loaded configuration from {config_path}")
    return _merge(config, overrides)
