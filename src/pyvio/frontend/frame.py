"""Mono and stereo frames carrying tracked keypoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from .camera import StereoCameraModel
    from .stereo_matcher import StereoMatcher


class KeypointStatus(Enum):
    """Status of the right-image counterpart of a left keypoint."""

    VALID = "VALID"
    NO_LEFT_RECT = "NO_LEFT_RECT"
    NO_RIGHT_RECT = "NO_RIGHT_RECT"
    NO_DEPTH = "NO_DEPTH"
    FAILED_ARUN = "FAILED_ARUN"


def _empty(shape: tuple[int, ...], dtype) -> np.ndarray:
    return np.empty(shape, dtype=dtype)


@dataclass
class Frame:
    """A single camera image with its tracked keypoints.

    The per-keypoint arrays are parallel: entry ``i`` of ``landmarks``,
    ``landmarks_age``, ``scores`` and ``versors`` describes keypoint ``i``.
    A landmark id of -1 marks a keypoint with no landmark (or one discarded
    as an outlier).

    Attributes:
        id: Frame identifier
        timestamp: Timestamp in nanoseconds
        image: Grayscale image (uint8), None once released
        keypoints: Nx2 pixel coordinates (float32)
        landmarks: (N,) landmark ids (int64)
        landmarks_age: (N,) number of frames each landmark has been tracked
        scores: (N,) corner scores
        versors: Nx3 unit bearing vectors in the camera frame
    """

    id: int
    timestamp: int
    image: np.ndarray | None = None
    keypoints: np.ndarray = field(default_factory=lambda: _empty((0, 2), np.float32))
    landmarks: np.ndarray = field(default_factory=lambda: _empty((0,), np.int64))
    landmarks_age: np.ndarray = field(default_factory=lambda: _empty((0,), np.int64))
    scores: np.ndarray = field(default_factory=lambda: _empty((0,), np.float64))
    versors: np.ndarray = field(default_factory=lambda: _empty((0, 3), np.float64))

    def __post_init__(self) -> None:
        self.keypoints = np.asarray(self.keypoints, dtype=np.float32).reshape(-1, 2)
        self.landmarks = np.asarray(self.landmarks, dtype=np.int64).reshape(-1)
        self.landmarks_age = np.asarray(self.landmarks_age, dtype=np.int64).reshape(-1)
        self.scores = np.asarray(self.scores, dtype=np.float64).reshape(-1)
        self.versors = np.asarray(self.versors, dtype=np.float64).reshape(-1, 3)

        n = len(self.keypoints)
        for name in ("landmarks", "landmarks_age", "scores", "versors"):
            if len(getattr(self, name)) != n:
                raise ValueError(
                    f"Frame {self.id}: {name} has {len(getattr(self, name))} "
                    f"entries for {n} keypoints"
                )

    def __len__(self) -> int:
        """Return number of keypoints."""
        return len(self.keypoints)

    def add_keypoints(
        self,
        keypoints: np.ndarray,
        landmark_ids: np.ndarray,
        scores: np.ndarray,
        versors: np.ndarray,
    ) -> None:
        """Append newly detected keypoints with age 1."""
        keypoints = np.asarray(keypoints, dtype=np.float32).reshape(-1, 2)
        self.keypoints = np.vstack([self.keypoints, keypoints])
        self.landmarks = np.concatenate(
            [self.landmarks, np.asarray(landmark_ids, dtype=np.int64).reshape(-1)]
        )
        self.landmarks_age = np.concatenate(
            [self.landmarks_age, np.ones(len(keypoints), dtype=np.int64)]
        )
        self.scores = np.concatenate(
            [self.scores, np.asarray(scores, dtype=np.float64).reshape(-1)]
        )
        self.versors = np.vstack(
            [self.versors, np.asarray(versors, dtype=np.float64).reshape(-1, 3)]
        )

    def keep(self, mask: np.ndarray) -> None:
        """Drop every keypoint whose mask entry is False."""
        mask = np.asarray(mask, dtype=bool)
        self.keypoints = self.keypoints[mask]
        self.landmarks = self.landmarks[mask]
        self.landmarks_age = self.landmarks_age[mask]
        self.scores = self.scores[mask]
        self.versors = self.versors[mask]

    @property
    def valid_indices(self) -> np.ndarray:
        """Indices of keypoints that still carry a landmark."""
        return np.flatnonzero(self.landmarks != -1)


@dataclass
class StereoFrame:
    """A rectified stereo pair built around a tracked left frame.

    Right keypoints, statuses, depths and 3D points are parallel to the
    left frame's keypoints. Only entries with status VALID carry a depth
    and a 3D point; all others hold zeros.

    Attributes:
        id: Frame identifier (same as the left frame)
        timestamp: Timestamp in nanoseconds
        left_frame: Left camera frame
        right_image: Right grayscale image
        right_keypoints: Nx2 matched right keypoints
        right_keypoints_status: Status of each right keypoint
        keypoints_depth: (N,) depth of each left keypoint
        keypoints_3d: Nx3 points in the left camera frame
    """

    id: int
    timestamp: int
    left_frame: Frame
    right_image: np.ndarray | None = None
    right_keypoints: np.ndarray = field(default_factory=lambda: _empty((0, 2), np.float32))
    right_keypoints_status: list[KeypointStatus] = field(default_factory=list)
    keypoints_depth: np.ndarray = field(default_factory=lambda: _empty((0,), np.float64))
    keypoints_3d: np.ndarray = field(default_factory=lambda: _empty((0, 3), np.float64))

    def __post_init__(self) -> None:
        self.right_keypoints = np.asarray(self.right_keypoints, dtype=np.float32).reshape(-1, 2)
        self.keypoints_depth = np.asarray(self.keypoints_depth, dtype=np.float64).reshape(-1)
        self.keypoints_3d = np.asarray(self.keypoints_3d, dtype=np.float64).reshape(-1, 3)
        self.right_keypoints_status = list(self.right_keypoints_status)

        n = len(self.left_frame)
        sizes = {
            "right_keypoints": len(self.right_keypoints),
            "right_keypoints_status": len(self.right_keypoints_status),
            "keypoints_depth": len(self.keypoints_depth),
            "keypoints_3d": len(self.keypoints_3d),
        }
        for name, size in sizes.items():
            if size != n:
                raise ValueError(
                    f"StereoFrame {self.id}: {name} has {size} entries for "
                    f"{n} left keypoints"
                )

    @classmethod
    def from_left_frame(
        cls,
        left_frame: Frame,
        right_image: np.ndarray,
        stereo_camera: StereoCameraModel,
        matcher: StereoMatcher,
    ) -> StereoFrame:
        """Match the left keypoints into the right image and triangulate them.

        Args:
            left_frame: Left frame with detected/tracked keypoints and image
            right_image: Rectified right grayscale image
            stereo_camera: Rectified stereo model used for back-projection
            matcher: Stereo matcher used to find right keypoints

        Returns:
            A StereoFrame whose VALID entries carry depth and 3D points
        """
        if left_frame.image is None:
            raise ValueError(f"Frame {left_frame.id} has no image to match from")

        right_kps, statuses = matcher.match_keypoints(
            left_frame.image, right_image, left_frame.keypoints
        )
        points, has_depth = stereo_camera.backproject_points(left_frame.keypoints, right_kps)

        depth = np.zeros(len(left_frame), dtype=np.float64)
        for i, status in enumerate(statuses):
            if status != KeypointStatus.VALID:
                points[i] = 0.0
            elif not has_depth[i]:
                statuses[i] = KeypointStatus.NO_DEPTH
                points[i] = 0.0
            else:
                depth[i] = points[i, 2]

        return cls(
            id=left_frame.id,
            timestamp=left_frame.timestamp,
            left_frame=left_frame,
            right_image=right_image,
            right_keypoints=right_kps,
            right_keypoints_status=statuses,
            keypoints_depth=depth,
            keypoints_3d=points,
        )

    def __len__(self) -> int:
        """Return number of (left) keypoints."""
        return len(self.left_frame)

    @property
    def left_keypoints(self) -> np.ndarray:
        """Return Nx2 left keypoints."""
        return self.left_frame.keypoints

    @property
    def valid_mask(self) -> np.ndarray:
        """Boolean mask of keypoints with a VALID right counterpart."""
        return np.array(
            [s == KeypointStatus.VALID for s in self.right_keypoints_status], dtype=bool
        )
