"""Tests for the reconstruction driver.

This module runs the driver on synthetic posed scenes with engineered
descriptors, so the exact set of correspondences, and therefore the
exact point cloud, is known in advance.
"""

import shutil
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from sparsecloud import feature, reconstruct
from sparsecloud.config import load_config
from sparsecloud.errors import ColorSampleError, PoseCountMismatchError, ReconstructionCancelled
from sparsecloud.feature import ImageFeatures
from tests.scene import chain_dims, make_pose, make_scene


def quiet_config(**reconstruction):
    """Default config without progress bars or debug images."""
    config = load_config()
    config["reconstruction"]["output_dir"] = None
    config["reconstruction"]["progress"] = False
    config["reconstruction"].update(reconstruction)
    return config


class TestReconstruction(unittest.TestCase):
    """Test the pipeline over an image sequence."""

    def setUp(self):
        self.images, self.poses, self.features, self.points3d = make_scene()
        self.config = quiet_config()

    def test_three_view_scene(self):
        """Test that 5 + 3 true correspondences give exactly 8 points."""
        points, camera_positions = reconstruct.generate_point_cloud(
            self.images, self.poses, features=self.features, config=self.config
        )

        self.assertEqual(len(points), 8)
        self.assertEqual(len(camera_positions), 3)

        # Points come in pair order: dims 0-4 from (0,1), then 5-7 from (1,2)
        expected = self.points3d[[0, 1, 2, 3, 4, 5, 6, 7]]
        np.testing.assert_allclose([p.position for p in points], expected, atol=1e-3)

        for p in points:
            self.assertTrue(p.valid)
            self.assertTrue(np.all(p.color >= 0.0) and np.all(p.color <= 1.0))

    def test_camera_positions_are_translations(self):
        """Test that camera positions are the raw pose translations."""
        _, camera_positions = reconstruct.generate_point_cloud(
            self.images, self.poses, features=self.features, config=self.config
        )
        for position, pose in zip(camera_positions, self.poses):
            np.testing.assert_allclose(position, pose.t)

    def test_colors_from_source_pixels(self):
        """Test that each color averages its two floored source pixels."""
        rec = reconstruct.reconstruct(
            self.images, self.poses, features=self.features, config=self.config
        )
        pair = rec.pairs[0]
        for point, (x1, y1, x2, y2) in zip(pair.points, pair.match_points):
            bgr1 = self.images[0][int(np.floor(y1)), int(np.floor(x1))].astype(float)
            bgr2 = self.images[1][int(np.floor(y2)), int(np.floor(x2))].astype(float)
            expected = ((bgr1 + bgr2) / (2 * 255.0))[::-1]
            np.testing.assert_allclose(point.color, expected)

    def test_no_direct_comparison_of_first_and_last(self):
        """Test that images 0 and 2 are never matched together."""
        rec = reconstruct.reconstruct(
            self.images, self.poses, features=self.features, config=self.config
        )
        self.assertEqual([(p.left, p.right) for p in rec.pairs], [(0, 1), (1, 2)])
        self.assertEqual([len(p.matches) for p in rec.pairs], [5, 3])

    def test_count_mismatch(self):
        """Test that a missing pose aborts before any detection."""
        detector = mock.Mock()
        with self.assertRaises(PoseCountMismatchError) as ctx:
            reconstruct.reconstruct(
                self.images, self.poses[:2], detector=detector, config=self.config
            )
        detector.assert_not_called()
        self.assertEqual(ctx.exception.n_images, 3)
        self.assertEqual(ctx.exception.n_poses, 2)

        with self.assertRaises(PoseCountMismatchError):
            reconstruct.reconstruct(
                self.images[:2], self.poses, features=self.features[:2], config=self.config
            )

    def test_feature_count_mismatch(self):
        """Test that precomputed features must cover every image."""
        with self.assertRaises(ValueError):
            reconstruct.reconstruct(
                self.images, self.poses, features=self.features[:2], config=self.config
            )

    def test_detector_called_once_per_image(self):
        """Test the detection phase with an injected detector."""
        by_image = {id(img): feats for img, feats in zip(self.images, self.features)}
        detector = mock.Mock(side_effect=lambda img: by_image[id(img)])

        points, _ = reconstruct.generate_point_cloud(
            self.images, self.poses, detector=detector, config=self.config
        )

        self.assertEqual(detector.call_count, 3)
        self.assertEqual(len(points), 8)

    def test_single_image(self):
        """Test that one image gives no pairs and no points."""
        rec = reconstruct.reconstruct(
            self.images[:1], self.poses[:1], features=self.features[:1], config=self.config
        )
        self.assertEqual(rec.pairs, [])
        self.assertEqual(rec.points, [])
        self.assertEqual(len(rec.camera_positions), 1)

    def test_empty_feature_set(self):
        """Test that an image without keypoints yields no matches."""
        features = list(self.features)
        features[1] = ImageFeatures.empty(32)

        rec = reconstruct.reconstruct(
            self.images, self.poses, features=features, config=self.config
        )
        self.assertEqual([len(p.matches) for p in rec.pairs], [0, 0])
        self.assertEqual(rec.points, [])

    def test_out_of_bounds_keypoint_aborts(self):
        """Test that a keypoint on the image border aborts the run."""
        features = list(self.features)
        keypoints = features[1].keypoints.copy()
        keypoints[0] = [64.0, 10.0]
        features[1] = ImageFeatures(keypoints, features[1].descriptors)

        with self.assertRaises(ColorSampleError) as ctx:
            reconstruct.reconstruct(
                self.images, self.poses, features=features, config=self.config
            )
        self.assertEqual(ctx.exception.image_index, 1)

    def test_observations(self):
        """Test reprojection bookkeeping of the result."""
        rec = reconstruct.reconstruct(
            self.images, self.poses, features=self.features, config=self.config
        )
        points3d, observations = rec.observations()

        self.assertEqual(points3d.shape, (8, 3))
        self.assertEqual(len(observations), 16)
        self.assertIn((0, 0), observations)
        self.assertIn((2, 7), observations)
        self.assertEqual(rec.to_array().shape, (8, 6))


class TestSlidingWindow(unittest.TestCase):
    """Test that only consecutive images are matched."""

    def test_n_minus_one_pairs(self):
        """Test that N images give exactly N-1 adjacent pairs."""
        n = 5
        images, poses, features, points3d = make_scene(chain_dims(n))

        with mock.patch.object(
            reconstruct, "match_features", wraps=feature.match_features
        ) as spy:
            rec = reconstruct.reconstruct(
                images, poses, features=features, config=quiet_config()
            )

        self.assertEqual(spy.call_count, n - 1)
        for call in spy.call_args_list:
            left, right = call.args[0], call.args[1]
            i = next(k for k, f in enumerate(features) if f is left)
            j = next(k for k, f in enumerate(features) if f is right)
            self.assertEqual(j - i, 1)

        self.assertEqual(len(rec.points), 3 * (n - 1))
        np.testing.assert_allclose(
            [p.position for p in rec.points], points3d[: 3 * (n - 1)], atol=1e-3
        )

    def test_adjacent_pairs(self):
        self.assertEqual(reconstruct.adjacent_pairs(4), [(0, 1), (1, 2), (2, 3)])
        self.assertEqual(reconstruct.adjacent_pairs(1), [])
        self.assertEqual(reconstruct.adjacent_pairs(0), [])


class TestParallel(unittest.TestCase):
    """Test parallel processing of pairs."""

    def setUp(self):
        self.images, self.poses, self.features, _ = make_scene(chain_dims(6))

    def test_parallel_matches_sequential(self):
        """Test that worker count does not change the merged result."""
        sequential = reconstruct.reconstruct(
            self.images, self.poses, features=self.features, config=quiet_config()
        )
        parallel = reconstruct.reconstruct(
            self.images, self.poses, features=self.features, config=quiet_config(workers=4)
        )

        self.assertEqual(
            [(p.left, p.right) for p in parallel.pairs],
            [(p.left, p.right) for p in sequential.pairs],
        )
        np.testing.assert_allclose(parallel.to_array(), sequential.to_array())

    def test_cancelled_before_first_pair(self):
        """Test that a set cancellation event stops the run."""
        for workers in (1, 3):
            event = threading.Event()
            event.set()
            with self.assertRaises(ReconstructionCancelled):
                reconstruct.reconstruct(
                    self.images, self.poses, features=self.features,
                    config=quiet_config(workers=workers), cancel_event=event,
                )

    def test_cancelled_between_pairs(self):
        """Test cancellation requested while a pair is processed."""
        event = threading.Event()
        original = reconstruct.process_pair

        def process_then_cancel(*args, **kwargs):
            result = original(*args, **kwargs)
            event.set()
            return result

        with mock.patch.object(reconstruct, "process_pair", side_effect=process_then_cancel) as spy:
            with self.assertRaises(ReconstructionCancelled):
                reconstruct.reconstruct(
                    self.images, self.poses, features=self.features,
                    config=quiet_config(), cancel_event=event,
                )
        self.assertEqual(spy.call_count, 1)


class TestDegenerate(unittest.TestCase):
    """Test handling of zero-parallax pairs."""

    def setUp(self):
        self.images, poses, self.features, _ = make_scene()
        # Second camera at the same place as the first
        self.poses = [poses[0], make_pose(0), poses[2]]

    def test_degenerate_points_flagged(self):
        """Test that zero parallax yields flagged, non-finite points."""
        with self.assertLogs("sparsecloud.reconstruct", level="WARNING"):
            rec = reconstruct.reconstruct(
                self.images, self.poses, features=self.features, config=quiet_config()
            )

        self.assertEqual(len(rec.points), 8)
        self.assertEqual(rec.n_degenerate, 5)
        for p in rec.pairs[0].points:
            self.assertFalse(p.valid)
            self.assertFalse(np.any(np.isfinite(p.position)))

    def test_degenerate_points_dropped(self):
        """Test removal of degenerate points when configured."""
        config = quiet_config()
        config["triangulation"]["drop_degenerate"] = True

        rec = reconstruct.reconstruct(
            self.images, self.poses, features=self.features, config=config
        )

        self.assertEqual(len(rec.points), 3)
        self.assertTrue(all(p.valid for p in rec.points))


class TestDebugOutput(unittest.TestCase):
    """Test debug match images."""

    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.images, self.poses, self.features, _ = make_scene()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def test_match_images_written(self):
        """Test one image per adjacent pair, named <left>-<right>.png."""
        out_dir = self.tmp_dir / "out"
        config = quiet_config(output_dir=str(out_dir))

        reconstruct.reconstruct(self.images, self.poses, features=self.features, config=config)

        self.assertEqual(sorted(p.name for p in out_dir.iterdir()), ["0-1.png", "1-2.png"])

    def test_output_dir_failure_is_recoverable(self):
        """Test that an uncreatable directory only disables debug images."""
        blocker = self.tmp_dir / "file.txt"
        blocker.write_text("not a directory")
        config = quiet_config(output_dir=str(blocker / "out"))

        with self.assertLogs("sparsecloud.reconstruct", level="ERROR"):
            points, _ = reconstruct.generate_point_cloud(
                self.images, self.poses, features=self.features, config=config
            )

        self.assertEqual(len(points), 8)
        self.assertFalse((blocker / "out").exists())

    def test_unwritable_image_format_is_recoverable(self):
        """Test that a match image OpenCV cannot encode is skipped with a warning."""
        out_dir = self.tmp_dir / "out"
        config = quiet_config(output_dir=str(out_dir), debug_extension="xyz")

        with self.assertLogs("sparsecloud.reconstruct", level="WARNING") as logs:
            points, _ = reconstruct.generate_point_cloud(
                self.images, self.poses, features=self.features, config=config
            )

        self.assertEqual(len(points), 8)
        self.assertEqual(list(out_dir.iterdir()), [])
        self.assertTrue(any("0-1.xyz" in line for line in logs.output))

    def test_prepare_output_dir(self):
        self.assertIsNone(reconstruct.prepare_output_dir(None))
        self.assertEqual(reconstruct.prepare_output_dir(self.tmp_dir), self.tmp_dir)

        nested = self.tmp_dir / "a" / "b"
        self.assertEqual(reconstruct.prepare_output_dir(nested), nested)
        self.assertTrue(nested.is_dir())


if __name__ == "__main__":
    unittest.main()
