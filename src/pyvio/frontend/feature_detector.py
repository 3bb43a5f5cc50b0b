"""ORB features for place recognition and LCD stereo matching.

The loop closure detector extracts ORB on both rectified images of a
keyframe, matches them across the pair and keeps the descriptors of the
stereo-matched left features for its bag-of-words queries. The vocabulary
training script extracts the same features from single images.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np

from ..config import LoopClosureDetectorParams

ORB_DESCRIPTOR_BYTES = 32


def empty_descriptors() -> np.ndarray:
    """Return a (0, 32) uint8 descriptor matrix."""
    return np.empty((0, ORB_DESCRIPTOR_BYTES), dtype=np.uint8)


@dataclass
class Features:
    """ORB features of one image.

    Every row of ``points`` has a descriptor row; an image without features
    yields empty arrays rather than None.

    Attributes:
        points: Nx2 pixel coordinates (float32)
        descriptors: Nx32 binary descriptors (uint8)
        responses: (N,) detector responses
    """

    points: np.ndarray = field(default_factory=lambda: np.empty((0, 2), dtype=np.float32))
    descriptors: np.ndarray = field(default_factory=empty_descriptors)
    responses: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float32))

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float32).reshape(-1, 2)
        self.descriptors = np.asarray(self.descriptors, dtype=np.uint8).reshape(
            -1, ORB_DESCRIPTOR_BYTES
        )
        self.responses = np.asarray(self.responses, dtype=np.float32).reshape(-1)
        if not len(self.points) == len(self.descriptors) == len(self.responses):
            raise ValueError(
                f"Features have {len(self.points)} points, {len(self.descriptors)} "
                f"descriptors and {len(self.responses)} responses"
            )

    def subset(self, indices: np.ndarray) -> Features:
        """Return the features selected by ``indices``, in that order."""
        indices = np.asarray(indices, dtype=np.int64).reshape(-1)
        return Features(
            points=self.points[indices],
            descriptors=self.descriptors[indices],
            responses=self.responses[indices],
        )

    def __len__(self) -> int:
        return len(self.points)


class FeatureDetector:
    """ORB detector shared by the LCD frame builder and vocabulary training."""

    def __init__(
        self,
        n_features: int = 500,
        scale_factor: float = 1.2,
        n_levels: int = 8,
        edge_threshold: int = 31,
        fast_threshold: int = 20,
    ) -> None:
        """Initialize the ORB extractor.

        Args:
            n_features: Maximum features kept per image (best responses first)
            scale_factor: Pyramid decimation ratio, greater than 1
            n_levels: Number of pyramid levels
            edge_threshold: Border in pixels where no features are detected
            fast_threshold: FAST corner threshold

        Raises:
            ValueError: If a parameter is out of range
        """
        if n_features <= 0 or n_levels <= 0:
            raise ValueError(
                f"n_features and n_levels must be positive, got {n_features} and {n_levels}"
            )
        if scale_factor <= 1.0:
            raise ValueError(f"scale_factor must be > 1, got {scale_factor}")
        self._orb = cv2.ORB_create(
            nfeatures=n_features,
            scaleFactor=scale_factor,
            nlevels=n_levels,
            edgeThreshold=edge_threshold,
            fastThreshold=fast_threshold,
        )
        self._n_features = n_features

    @classmethod
    def from_params(cls, params: LoopClosureDetectorParams) -> FeatureDetector:
        """Build the detector configured by the loop closure parameters."""
        return cls(
            n_features=params.n_features,
            scale_factor=params.scale_factor,
            n_levels=params.n_levels,
            edge_threshold=params.edge_threshold,
            fast_threshold=params.fast_threshold,
        )

    def detect(self, image: np.ndarray, mask: np.ndarray | None = None) -> Features:
        """Detect ORB features in a grayscale image.

        Args:
            image: Grayscale uint8 image
            mask: Optional mask, 255 where features may be detected

        Raises:
            ValueError: If the image is empty
        """
        if image is None or image.size == 0:
            raise ValueError("Cannot detect features in an empty image")

        keypoints, descriptors = self._orb.detectAndCompute(image, mask)
        if descriptors is None or not keypoints:
            return Features()
        return Features(
            points=np.array([kp.pt for kp in keypoints], dtype=np.float32),
            descriptors=descriptors,
            responses=np.array([kp.response for kp in keypoints], dtype=np.float32),
        )

    def detect_stereo(
        self, left_image: np.ndarray, right_image: np.ndarray
    ) -> tuple[Features, Features]:
        """Detect features in both images of a rectified stereo pair."""
        return self.detect(left_image), self.detect(right_image)

    @property
    def n_features(self) -> int:
        """Return the maximum number of features per image."""
        return self._n_features
