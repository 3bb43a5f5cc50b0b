"""Keypoint position predictors used to seed KLT tracking."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np

from ..config import OpticalFlowPredictorType

logger = logging.getLogger(__name__)


def _as_keypoints(keypoints: np.ndarray) -> np.ndarray:
    keypoints = np.asarray(keypoints, dtype=np.float32)
    if keypoints.ndim != 2 or keypoints.shape[1] != 2:
        raise ValueError(f"Keypoints must be Nx2, got {keypoints.shape}")
    return keypoints


class OpticalFlowPredictor(ABC):
    """Predicts where keypoints of the previous frame appear in the next one."""

    @abstractmethod
    def predict_flow(self, prev_kps: np.ndarray) -> np.ndarray:
        """Return Nx2 predicted keypoints for Nx2 previous keypoints."""

    def update_inter_frame_rotation(self, R: np.ndarray) -> None:
        """Set the rotation between the previous and next frame (no-op by default)."""


class StaticOpticalFlowPredictor(OpticalFlowPredictor):
    """Predicts no motion: keypoints stay where they were."""

    def predict_flow(self, prev_kps: np.ndarray) -> np.ndarray:
        return _as_keypoints(prev_kps).copy()


class RotationalOpticalFlowPredictor(OpticalFlowPredictor):
    """Predicts keypoint motion from a pure inter-frame rotation.

    A rotation ``R`` (previous camera expressed in the next camera) induces
    the infinite homography ``H = K R K^-1``. Keypoints whose predicted
    homogeneous depth is not positive (the ray rotates behind the camera)
    keep their previous position.
    """

    def __init__(self, camera_matrix: np.ndarray) -> None:
        camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
        if camera_matrix.shape != (3, 3):
            raise ValueError(f"Camera matrix must be 3x3, got {camera_matrix.shape}")
        self._K = camera_matrix
        self._K_inv = np.linalg.inv(camera_matrix)
        self._R = np.eye(3)
        self._rotation_set = False

    def update_inter_frame_rotation(self, R: np.ndarray) -> None:
        R = np.asarray(R, dtype=np.float64)
        if R.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {R.shape}")
        self._R = R
        self._rotation_set = True

    def predict_flow(self, prev_kps: np.ndarray) -> np.ndarray:
        prev_kps = _as_keypoints(prev_kps)
        if not self._rotation_set:
            logger.warning("Inter-frame rotation not set, predicting from identity")
        if len(prev_kps) == 0:
            return prev_kps.copy()

        H = self._K @ self._R @ self._K_inv
        homogeneous = np.column_stack([prev_kps.astype(np.float64), np.ones(len(prev_kps))])
        projected = homogeneous @ H.T

        next_kps = prev_kps.copy()
        in_front = projected[:, 2] > 0
        next_kps[in_front] = projected[in_front, :2] / projected[in_front, 2:3]
        return next_kps

    @property
    def rotation(self) -> np.ndarray:
        """Return the current inter-frame rotation."""
        return self._R.copy()


class OpticalFlowPredictorFactory:
    """Builds optical flow predictors from their configured type."""

    @staticmethod
    def make(
        predictor_type: OpticalFlowPredictorType,
        camera_matrix: np.ndarray | None = None,
    ) -> OpticalFlowPredictor:
        """Create a predictor.

        Raises:
            ValueError: If the type is unknown or a rotational predictor is
                requested without a camera matrix
        """
        if predictor_type == OpticalFlowPredictorType.STATIC:
            return StaticOpticalFlowPredictor()
        if predictor_type == OpticalFlowPredictorType.ROTATIONAL:
            if camera_matrix is None:
                raise ValueError("Rotational predictor requires a camera matrix")
            return RotationalOpticalFlowPredictor(camera_matrix)
        raise ValueError(f"Unknown optical flow predictor type: {predictor_type!r}")
