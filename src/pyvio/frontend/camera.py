"""Pinhole and rectified stereo camera models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import numpy as np

from .pose import SE3


@dataclass
class CameraParams:
    """Intrinsics of a rectified pinhole camera.

    Attributes:
        fx: Focal length x (pixels)
        fy: Focal length y (pixels)
        cx: Principal point x (pixels)
        cy: Principal point y (pixels)
        width: Image width (pixels)
        height: Image height (pixels)
        body_pose_cam: Extrinsics B_T_cam (camera frame expressed in body frame)
    """

    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    body_pose_cam: SE3 = field(default_factory=SE3.identity)

    def __post_init__(self) -> None:
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(f"Focal lengths must be positive, got {self.fx}, {self.fy}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"Image size must be positive, got {self.width}x{self.height}"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CameraParams:
        """Build camera parameters from a parsed YAML mapping.

        Expected keys: ``intrinsics`` ([fx, fy, cx, cy]), ``resolution``
        ([width, height]) and optionally ``T_BS`` (16 row-major values).

        Raises:
            ValueError: If a required key is missing or malformed
        """
        intrinsics = data.get("intrinsics")
        if intrinsics is None or len(intrinsics) != 4:
            raise ValueError("Camera 'intrinsics' must be [fx, fy, cx, cy]")

        resolution = data.get("resolution")
        if resolution is None or len(resolution) != 2:
            raise ValueError("Camera 'resolution' must be [width, height]")

        body_pose_cam = SE3.identity()
        T_BS = data.get("T_BS")
        if T_BS is not None:
            if len(T_BS) != 16:
                raise ValueError("Camera 'T_BS' must hold 16 values")
            body_pose_cam = SE3.from_matrix(np.asarray(T_BS, dtype=np.float64).reshape(4, 4))

        return cls(
            fx=float(intrinsics[0]),
            fy=float(intrinsics[1]),
            cx=float(intrinsics[2]),
            cy=float(intrinsics[3]),
            width=int(resolution[0]),
            height=int(resolution[1]),
            body_pose_cam=body_pose_cam,
        )

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def calibrate_pixels(self, keypoints: np.ndarray) -> np.ndarray:
        """Back-project pixels to unit bearing vectors (versors).

        Args:
            keypoints: Nx2 array of pixel coordinates

        Returns:
            Nx3 array of unit vectors in the camera frame
        """
        keypoints = np.asarray(keypoints, dtype=np.float64).reshape(-1, 2)
        rays = np.column_stack(
            [
                (keypoints[:, 0] - self.cx) / self.fx,
                (keypoints[:, 1] - self.cy) / self.fy,
                np.ones(len(keypoints)),
            ]
        )
        return rays / np.linalg.norm(rays, axis=1, keepdims=True)

    def project(self, points: np.ndarray) -> np.ndarray:
        """Project Nx3 camera-frame points to Nx2 pixels (no depth check)."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return np.column_stack(
            [
                self.fx * points[:, 0] / points[:, 2] + self.cx,
                self.fy * points[:, 1] / points[:, 2] + self.cy,
            ]
        )

    def in_image(self, keypoints: np.ndarray, border: float = 0.0) -> np.ndarray:
        """Return a boolean mask of keypoints lying inside the image."""
        keypoints = np.asarray(keypoints, dtype=np.float64).reshape(-1, 2)
        return (
            (keypoints[:, 0] >= border)
            & (keypoints[:, 1] >= border)
            & (keypoints[:, 0] <= self.width - 1 - border)
            & (keypoints[:, 1] <= self.height - 1 - border)
        )

    @property
    def image_size(self) -> tuple[int, int]:
        """Return image size as (width, height)."""
        return (self.width, self.height)


@dataclass
class StereoCameraModel:
    """Rectified stereo pair: left camera intrinsics plus baseline.

    A stereo observation is the triple (u_left, u_right, v). After
    rectification both cameras share intrinsics and image rows, so:

        Z = fx * b / d,  X = (u_left - cx) * Z / fx,  Y = (v - cy) * Z / fy

    with disparity d = u_left - u_right.
    """

    left: CameraParams
    baseline: float
    min_disparity: float = 0.1

    def __post_init__(self) -> None:
        if self.baseline <= 0:
            raise ValueError(f"Stereo baseline must be positive, got {self.baseline}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StereoCameraModel:
        """Build a stereo model from ``{"left": {...}, "baseline": b}``."""
        if "left" not in data or "baseline" not in data:
            raise ValueError("Stereo camera needs 'left' and 'baseline' entries")
        return cls(
            left=CameraParams.from_dict(data["left"]),
            baseline=float(data["baseline"]),
            min_disparity=float(data.get("min_disparity", 0.1)),
        )

    def backproject(self, u_left: float, u_right: float, v: float) -> np.ndarray:
        """Triangulate a single stereo observation into the left camera frame."""
        point, _ = self.backproject_with_jacobian(u_left, u_right, v)
        return point

    def backproject_with_jacobian(
        self, u_left: float, u_right: float, v: float
    ) -> tuple[np.ndarray, np.ndarray]:
        """Triangulate a stereo observation and return d(X,Y,Z)/d(uL,uR,v).

        Raises:
            ValueError: If the disparity is below ``min_disparity``
        """
        fx, fy = self.left.fx, self.left.fy
        cx, cy = self.left.cx, self.left.cy
        b = self.baseline

        d = float(u_left - u_right)
        if d < self.min_disparity:
            raise ValueError(f"Disparity {d:.4f} below minimum {self.min_disparity}")

        du = u_left - cx
        dv = v - cy
        point = np.array([b * du / d, fx * b * dv / (fy * d), fx * b / d])

        d2 = d * d
        J = np.array(
            [
                [b / d - b * du / d2, b * du / d2, 0.0],
                [-fx * b * dv / (fy * d2), fx * b * dv / (fy * d2), fx * b / (fy * d)],
                [-fx * b / d2, fx * b / d2, 0.0],
            ]
        )
        return point, J

    def backproject_points(
        self, left_kps: np.ndarray, right_kps: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Triangulate matched rectified keypoints.

        Args:
            left_kps: Nx2 left keypoints
            right_kps: Nx2 right keypoints (same rows)

        Returns:
            Tuple of (Nx3 points, (N,) bool valid mask). Invalid rows are zero.
        """
        left_kps = np.asarray(left_kps, dtype=np.float64).reshape(-1, 2)
        right_kps = np.asarray(right_kps, dtype=np.float64).reshape(-1, 2)
        disparity = left_kps[:, 0] - right_kps[:, 0]
        valid = disparity >= self.min_disparity

        points = np.zeros((len(left_kps), 3), dtype=np.float64)
        if np.any(valid):
            d = disparity[valid]
            Z = self.left.fx * self.baseline / d
            points[valid, 0] = (left_kps[valid, 0] - self.left.cx) * Z / self.left.fx
            points[valid, 1] = (left_kps[valid, 1] - self.left.cy) * Z / self.left.fy
            points[valid, 2] = Z
        return points, valid

    def project(self, point: np.ndarray) -> tuple[float, float, float]:
        """Project a left-camera-frame point to (u_left, u_right, v)."""
        X, Y, Z = np.asarray(point, dtype=np.float64).flatten()
        u_left = self.left.fx * X / Z + self.left.cx
        u_right = self.left.fx * (X - self.baseline) / Z + self.left.cx
        v = self.left.fy * Y / Z + self.left.cy
        return float(u_left), float(u_right), float(v)
