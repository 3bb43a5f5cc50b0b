"""Sparse stereo matching on rectified image pairs.

Two flavours are offered:

- ``match_keypoints`` tracks given left keypoints into the right image with
  pyramidal Lucas-Kanade (used for tracked frames)
- ``match_features`` matches ORB descriptors between both images (used by
  the loop closure detector, which needs descriptors anyway)

Both apply the rectified-stereo checks: matches must lie on the same image
row (within ``epipolar_threshold``) and have a disparity inside
``[min_disparity, max_disparity]``.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .feature_detector import Features
from .frame import KeypointStatus


@dataclass
class StereoMatches:
    """Container for stereo feature matches.

    Attributes:
        left_indices: Indices into the left features of each match
        pts_left: Nx2 array of matched points in left image
        pts_right: Nx2 array of matched points in right image
        disparities: N array of disparity values (u_left - u_right)
        match_distances: N array of descriptor distances (Hamming)
    """

    left_indices: np.ndarray
    pts_left: np.ndarray
    pts_right: np.ndarray
    disparities: np.ndarray
    match_distances: np.ndarray

    @classmethod
    def empty(cls) -> StereoMatches:
        return cls(
            left_indices=np.empty(0, dtype=np.int64),
            pts_left=np.empty((0, 2), dtype=np.float32),
            pts_right=np.empty((0, 2), dtype=np.float32),
            disparities=np.empty(0, dtype=np.float32),
            match_distances=np.empty(0, dtype=np.float32),
        )

    def __len__(self) -> int:
        """Return number of matches."""
        return len(self.pts_left)


class StereoMatcher:
    """Sparse matcher for rectified stereo pairs."""

    def __init__(
        self,
        cross_check: bool = True,
        max_hamming_distance: int = 50,
        epipolar_threshold: float = 2.0,
        min_disparity: float = 1.0,
        max_disparity: float = 200.0,
        klt_win_size: int = 21,
        klt_max_level: int = 3,
    ) -> None:
        """Initialize stereo matcher.

        Args:
            cross_check: Accept a descriptor match (i, j) only if j's best match is i
            max_hamming_distance: Maximum Hamming distance for a descriptor match
            epipolar_threshold: Maximum row difference (pixels) between
                left and right matches
            min_disparity: Minimum valid disparity in pixels
            max_disparity: Maximum valid disparity in pixels
            klt_win_size: Lucas-Kanade window side for keypoint matching
            klt_max_level: Lucas-Kanade pyramid depth for keypoint matching
        """
        if min_disparity < 0 or max_disparity <= min_disparity:
            raise ValueError(
                f"Invalid disparity range [{min_disparity}, {max_disparity}]"
            )
        self._bf_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=cross_check)
        self._max_distance = max_hamming_distance
        self._epipolar_threshold = epipolar_threshold
        self._min_disparity = min_disparity
        self._max_disparity = max_disparity
        self._klt_win_size = klt_win_size
        self._klt_max_level = klt_max_level

    def match_keypoints(
        self,
        left_image: np.ndarray,
        right_image: np.ndarray,
        left_keypoints: np.ndarray,
    ) -> tuple[np.ndarray, list[KeypointStatus]]:
        """Find the right-image counterparts of left keypoints.

        Args:
            left_image: Rectified left grayscale image
            right_image: Rectified right grayscale image
            left_keypoints: Nx2 left keypoints

        Returns:
            Tuple of (Nx2 right keypoints, N statuses). Entries without a
            VALID status hold the left keypoint coordinates.
        """
        left_keypoints = np.asarray(left_keypoints, dtype=np.float32).reshape(-1, 2)
        n = len(left_keypoints)
        right_keypoints = left_keypoints.copy()
        statuses = [KeypointStatus.NO_RIGHT_RECT] * n
        if n == 0:
            return right_keypoints, statuses

        height, width = left_image.shape[:2]
        inside = (
            (left_keypoints[:, 0] >= 0)
            & (left_keypoints[:, 1] >= 0)
            & (left_keypoints[:, 0] <= width - 1)
            & (left_keypoints[:, 1] <= height - 1)
        )

        tracked, status, _ = cv2.calcOpticalFlowPyrLK(
            left_image,
            right_image,
            left_keypoints.reshape(-1, 1, 2),
            None,
            winSize=(self._klt_win_size, self._klt_win_size),
            maxLevel=self._klt_max_level,
        )
        tracked = tracked.reshape(-1, 2)
        status = status.reshape(-1).astype(bool)

        for i in range(n):
            if not inside[i]:
                statuses[i] = KeypointStatus.NO_LEFT_RECT
                continue
            if not status[i]:
                continue

            # Step 1: epipolar constraint (same row after rectification)
            if abs(tracked[i, 1] - left_keypoints[i, 1]) > self._epipolar_threshold:
                continue

            # Step 2: disparity range
            disparity = left_keypoints[i, 0] - tracked[i, 0]
            if disparity < self._min_disparity or disparity > self._max_disparity:
                continue

            right_keypoints[i] = (tracked[i, 0], left_keypoints[i, 1])
            statuses[i] = KeypointStatus.VALID

        return right_keypoints, statuses

    def match_features(
        self, features_left: Features, features_right: Features
    ) -> StereoMatches:
        """Match ORB features between rectified stereo images.

        Applies three filtering stages:
        1. Hamming distance threshold (descriptor similarity)
        2. Epipolar constraint (y-coordinates must match in rectified images)
        3. Disparity range (depth must be reasonable)

        Args:
            features_left: Features from rectified left image
            features_right: Features from rectified right image

        Returns:
            StereoMatches containing filtered correspondences
        """
        if len(features_left) == 0 or len(features_right) == 0:
            return StereoMatches.empty()

        matches = self._bf_matcher.match(
            features_left.descriptors, features_right.descriptors
        )
        if len(matches) == 0:
            return StereoMatches.empty()

        return self._filter_matches(matches, features_left.points, features_right.points)

    def _filter_matches(
        self,
        matches: list[cv2.DMatch],
        pts_left: np.ndarray,
        pts_right: np.ndarray,
    ) -> StereoMatches:
        left_indices = []
        filtered_left = []
        filtered_right = []
        filtered_disparities = []
        filtered_distances = []

        for match in sorted(matches, key=lambda m: m.queryIdx):
            pt_left = pts_left[match.queryIdx]
            pt_right = pts_right[match.trainIdx]

            if match.distance > self._max_distance:
                continue

            if abs(pt_left[1] - pt_right[1]) > self._epipolar_threshold:
                continue

            disparity = pt_left[0] - pt_right[0]
            if disparity < self._min_disparity or disparity > self._max_disparity:
                continue

            left_indices.append(match.queryIdx)
            filtered_left.append(pt_left)
            filtered_right.append(pt_right)
            filtered_disparities.append(disparity)
            filtered_distances.append(match.distance)

        if len(filtered_left) == 0:
            return StereoMatches.empty()

        return StereoMatches(
            left_indices=np.array(left_indices, dtype=np.int64),
            pts_left=np.array(filtered_left, dtype=np.float32),
            pts_right=np.array(filtered_right, dtype=np.float32),
            disparities=np.array(filtered_disparities, dtype=np.float32),
            match_distances=np.array(filtered_distances, dtype=np.float32),
        )
