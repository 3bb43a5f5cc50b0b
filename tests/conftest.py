"""Shared fixtures: camera models, synthetic scenes and textured images."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from pyvio.frontend import CameraParams, Frame, KeypointStatus, SE3, StereoCameraModel, StereoFrame
from pyvio.frontend.pose import rotation_from_rvec


@pytest.fixture
def camera() -> CameraParams:
    """EuRoC-like left camera."""
    return CameraParams(fx=450.0, fy=450.0, cx=320.0, cy=240.0, width=640, height=480)


@pytest.fixture
def stereo_camera(camera: CameraParams) -> StereoCameraModel:
    return StereoCameraModel(left=camera, baseline=0.11)


@pytest.fixture
def ref_T_cur() -> SE3:
    """Ground-truth motion between a reference and a current frame."""
    return SE3(
        rotation=rotation_from_rvec(np.array([0.02, -0.04, 0.01])),
        translation=np.array([0.3, -0.02, 0.05]),
    )


@pytest.fixture
def scene_points():
    """Factory for random 3D points in front of a camera."""

    def _make(n: int, seed: int = 0, z_range: tuple[float, float] = (3.0, 7.0)) -> np.ndarray:
        rng = np.random.default_rng(seed)
        z = rng.uniform(z_range[0], z_range[1], n)
        x = rng.uniform(-0.45, 0.45, n) * z
        y = rng.uniform(-0.35, 0.35, n) * z
        return np.column_stack([x, y, z])

    return _make


@pytest.fixture
def make_frame(camera: CameraParams):
    """Factory for a mono frame observing camera-frame points."""

    def _make(frame_id: int, points: np.ndarray, landmark_ids: np.ndarray | None = None) -> Frame:
        keypoints = camera.project(points)
        if landmark_ids is None:
            landmark_ids = np.arange(len(points))
        return Frame(
            id=frame_id,
            timestamp=frame_id * 50_000_000,
            keypoints=keypoints,
            landmarks=landmark_ids,
            landmarks_age=np.ones(len(points), dtype=np.int64),
            scores=np.ones(len(points)),
            versors=camera.calibrate_pixels(keypoints),
        )

    return _make


@pytest.fixture
def make_stereo_frame(stereo_camera: StereoCameraModel, make_frame):
    """Factory for a stereo frame with exact projections of camera-frame points."""

    def _make(
        frame_id: int,
        points: np.ndarray,
        landmark_ids: np.ndarray | None = None,
        point_noise: np.ndarray | None = None,
    ) -> StereoFrame:
        left_frame = make_frame(frame_id, points, landmark_ids)
        right = np.array([stereo_camera.project(p)[1:] for p in points])
        points_3d = points.copy() if point_noise is None else points + point_noise
        return StereoFrame(
            id=frame_id,
            timestamp=left_frame.timestamp,
            left_frame=left_frame,
            right_keypoints=right,
            right_keypoints_status=[KeypointStatus.VALID] * len(points),
            keypoints_depth=points_3d[:, 2],
            keypoints_3d=points_3d,
        )

    return _make


@pytest.fixture
def textured_image() -> np.ndarray:
    """Smooth random texture with plenty of corners (480x640, uint8)."""
    rng = np.random.default_rng(7)
    noise = rng.integers(0, 256, size=(480, 640)).astype(np.float32)
    blurred = cv2.GaussianBlur(noise, (0, 0), 2.0)
    return cv2.normalize(blurred, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)


def shift_image(image: np.ndarray, dx: float, dy: float) -> np.ndarray:
    """Translate an image content by (dx, dy) pixels."""
    M = np.array([[1.0, 0.0, dx], [0.0, 1.0, dy]])
    return cv2.warpAffine(
        image, M, (image.shape[1], image.shape[0]), borderMode=cv2.BORDER_REFLECT
    )


@pytest.fixture
def shift():
    return shift_image
