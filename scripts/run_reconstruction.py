#!/usr/bin/env python3
"""
Sparse Reconstruction Pipeline

This script reconstructs a colored sparse point cloud from a folder of posed
images: it loads the pose file and the images, matches every pair of
consecutive images, triangulates the matches and saves (or shows) the result.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from sparsecloud import evaluate, visualise
from sparsecloud.config import load_config
from sparsecloud.dataset import load_dataset
from sparsecloud.errors import ReconstructionError
from sparsecloud.reconstruct import Reconstruction, reconstruct

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

logger = logging.getLogger("pipeline")


def setup_logging(level: str = "INFO") -> None:
    """Log to the console at the given level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
        ],
    )


def save_results(
    output_dir: str,
    reconstruction: Reconstruction,
    metrics: Optional[Dict] = None
) -> None:
    """Save reconstruction results to output directory.

    Args:
        output_dir: Path to output directory
        reconstruction: Finished reconstruction
        metrics: Reconstruction metrics (optional)
    """
    logger.info(f"Saving results to {output_dir}")
    os.makedirs(output_dir, exist_ok=True)

    # Colored point cloud
    visualise.save_point_cloud(os.path.join(output_dir, "points.ply"), reconstruction.points)
    np.save(os.path.join(output_dir, "points.npy"), reconstruction.to_array())

    # Raw camera positions
    np.save(os.path.join(output_dir, "cameras.npy"), np.array(reconstruction.camera_positions))

    if metrics is not None:
        with open(os.path.join(output_dir, "report.json"), "w") as f:
            json.dump(metrics, f, indent=2)

    logger.info("Results saved successfully")


def run_pipeline(
    data_dir: str,
    output_dir: str,
    config: Dict,
    view: bool = False,
) -> Dict:
    """Run the sparse reconstruction pipeline.

    Args:
        data_dir: Folder with the images and the pose file
        output_dir: Path to the results directory
        config: Configuration dictionary
        view: Whether to open the viewer at the end

    Returns:
        Dictionary of reconstruction metrics
    """
    pipeline_timer = evaluate.Timer("Pipeline")
    pipeline_timer.start()

    os.makedirs(output_dir, exist_ok=True)

    # Set up file logging
    file_handler = logging.FileHandler(os.path.join(output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)

    metrics = evaluate.ReconstructionMetrics()
    progress = config["reconstruction"]["progress"]

    try:
        # === Stage 1: Load dataset ===
        with evaluate.Timer("Load Dataset") as timer:
            images, poses, _ = load_dataset(
                data_dir,
                pose_file=config["dataset"]["pose_file"],
                extensions=config["dataset"]["image_extensions"],
                progress=progress,
            )
        metrics.update_stage_timing("load_dataset", timer.elapsed)

        # === Stage 2: Match and triangulate ===
        with evaluate.Timer("Reconstruction") as timer:
            reconstruction = reconstruct(images, poses, config=config)
        metrics.update_stage_timing("reconstruction", timer.elapsed)

        metrics.compute_sparse_metrics(reconstruction)

        # === Stage 3: Save results ===
        with evaluate.Timer("Save Results") as timer:
            metrics.update("runtime_s", pipeline_timer.elapsed)
            metrics_dict = metrics.to_dict()
            metrics_dict["datetime"] = datetime.datetime.now().isoformat()
            save_results(output_dir, reconstruction, metrics_dict)
        metrics.update_stage_timing("save_results", timer.elapsed)

        logger.info("\n" + metrics.summary())

        # === Stage 4: Viewer (optional) ===
        if view:
            visualise.show(reconstruction.points, reconstruction.camera_positions)
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()

    return metrics.to_dict()


def main():
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Sparse Reconstruction Pipeline")
    parser.add_argument(
        "--data-path", "-d", dest="data_dir", required=True,
        help="Path to the folder containing the images and the pose file"
    )
    parser.add_argument(
        "--pose-file", "-p", dest="pose_file", default=None,
        help="Name (not path) of the pose file inside the data folder (default: pose.txt)"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/run1",
        help="Path to results directory"
    )
    parser.add_argument(
        "--debug-dir", dest="debug_dir", default=None,
        help="Directory for match images, 'none' to disable (default: out)"
    )
    parser.add_argument(
        "--matcher", "-m", dest="matcher", default=None,
        choices=["kdtree", "flann"],
        help="Nearest neighbour search used for matching"
    )
    parser.add_argument(
        "--workers", "-w", dest="workers", type=int, default=None,
        help="Number of image pairs processed in parallel"
    )
    parser.add_argument(
        "--view", "-v", dest="view", action="store_true",
        help="Open the point cloud viewer when done"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file (default: config.yaml at the repository root)"
    )
    parser.add_argument(
        "--log-level", dest="log_level", default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )

    args = parser.parse_args()

    # Default config path
    config_path = args.config_path
    if config_path is None and DEFAULT_CONFIG_PATH.is_file():
        config_path = DEFAULT_CONFIG_PATH

    try:
        config = load_config(config_path)
    except ReconstructionError as e:
        setup_logging()
        logger.error(f"Error loading configuration: {e}")
        sys.exit(1)

    # Update configuration with command-line arguments
    if args.pose_file is not None:
        config["dataset"]["pose_file"] = args.pose_file
    if args.debug_dir is not None:
        config["reconstruction"]["output_dir"] = None if args.debug_dir.lower() == "none" else args.debug_dir
    if args.matcher is not None:
        config["matcher"]["algorithm"] = args.matcher
    if args.workers is not None:
        config["reconstruction"]["workers"] = args.workers
    if args.log_level is not None:
        config["logging"]["level"] = args.log_level

    setup_logging(config["logging"]["level"])

    try:
        run_pipeline(args.data_dir, args.output_dir, config, view=args.view)
    except ReconstructionError as e:
        logger.exception(f"Error running pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
