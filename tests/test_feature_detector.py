"""Tests for ORB feature extraction."""

import numpy as np
import pytest

from pyvio import LoopClosureDetectorParams
from pyvio.frontend import FeatureDetector, Features


class TestFeatures:
    """Test suite for the Features container."""

    def test_defaults_are_empty(self):
        features = Features()

        assert len(features) == 0
        assert features.points.shape == (0, 2)
        assert features.descriptors.shape == (0, 32)
        assert features.descriptors.dtype == np.uint8

    def test_subset_keeps_order(self):
        features = Features(
            points=[[1.0, 1.0], [2.0, 2.0], [3.0, 3.0]],
            descriptors=np.arange(3 * 32).reshape(3, 32) % 256,
            responses=[0.1, 0.2, 0.3],
        )

        subset = features.subset(np.array([2, 0]))

        np.testing.assert_array_equal(subset.points, [[3.0, 3.0], [1.0, 1.0]])
        np.testing.assert_array_equal(subset.descriptors, features.descriptors[[2, 0]])
        np.testing.assert_allclose(subset.responses, [0.3, 0.1])
        assert len(features.subset(np.empty(0, dtype=np.int64))) == 0

    def test_rejects_mismatched_rows(self):
        with pytest.raises(ValueError, match="Features have 2 points, 1 descriptors"):
            Features(
                points=np.zeros((2, 2)),
                descriptors=np.zeros((1, 32), dtype=np.uint8),
                responses=np.zeros(2),
            )


class TestFeatureDetector:
    """Test suite for FeatureDetector."""

    def test_detect_on_texture(self, textured_image):
        """Test that a textured image yields consistent points and descriptors."""
        features = FeatureDetector(n_features=200).detect(textured_image)

        assert len(features) > 20
        assert features.descriptors.shape == (len(features), 32)
        assert features.descriptors.dtype == np.uint8
        height, width = textured_image.shape
        assert np.all((features.points >= 0) & (features.points < [width, height]))

    def test_detect_on_flat_image(self):
        """Test that an image without corners gives empty, well-shaped features."""
        features = FeatureDetector().detect(np.full((120, 160), 128, dtype=np.uint8))

        assert len(features) == 0
        assert features.descriptors.shape == (0, 32)

    def test_detect_respects_mask(self, textured_image):
        mask = np.zeros_like(textured_image)
        mask[:, 320:] = 255

        features = FeatureDetector(n_features=200).detect(textured_image, mask)

        assert len(features) > 0
        assert np.all(features.points[:, 0] >= 320 - 1)

    def test_detect_stereo(self, textured_image, shift):
        detector = FeatureDetector(n_features=100)
        left, right = detector.detect_stereo(textured_image, shift(textured_image, -8.0, 0.0))

        assert len(left) > 0
        assert len(right) > 0

    def test_rejects_empty_image(self):
        with pytest.raises(ValueError, match="empty image"):
            FeatureDetector().detect(np.empty((0, 0), dtype=np.uint8))

    def test_from_params(self):
        params = LoopClosureDetectorParams(n_features=150)
        assert FeatureDetector.from_params(params).n_features == 150

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError, match="scale_factor must be > 1"):
            FeatureDetector(scale_factor=1.0)
        with pytest.raises(ValueError, match="must be positive"):
            FeatureDetector(n_features=0)
