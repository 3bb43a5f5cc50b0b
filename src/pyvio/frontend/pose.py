"""SE(3) pose representation for rigid body transformations."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


def rotation_angle(R: np.ndarray) -> float:
    """Extract rotation angle from a 3x3 rotation matrix.

    Uses the trace formula: trace(R) = 1 + 2*cos(theta)

    Args:
        R: 3x3 rotation matrix

    Returns:
        Rotation angle in radians [0, pi]
    """
    cos_theta = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    return float(np.arccos(cos_theta))


def rotation_from_rvec(rvec: np.ndarray) -> np.ndarray:
    """Convert a Rodrigues (axis * angle) vector to a 3x3 rotation matrix."""
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return R


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation) in SE(3).

    Relative poses in this package follow the ``a_T_b`` naming: a pose
    ``ref_T_cur`` maps points expressed in the ``cur`` frame into the
    ``ref`` frame:

        p_ref = R @ p_cur + t

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: 3D translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Create identity transformation (no rotation, no translation)."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create SE3 from 4x4 homogeneous transformation matrix.

        Args:
            T: 4x4 transformation matrix of the form:
               [[R  t]
                [0  1]]

        Returns:
            SE3 transformation
        """
        T = np.asarray(T)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create SE3 from OpenCV Rodrigues vector and translation.

        Args:
            rvec: 3D Rodrigues rotation vector (axis * angle)
            tvec: 3D translation vector

        Returns:
            SE3 transformation
        """
        return cls(rotation=rotation_from_rvec(rvec), translation=tvec)

    def inverse(self) -> SE3:
        """Compute the inverse transformation T^{-1}.

        For T = [R, t], the inverse is [R^T, -R^T @ t].
        """
        R_inv = self.rotation.T
        return SE3(rotation=R_inv, translation=-R_inv @ self.translation)

    def compose(self, other: SE3) -> SE3:
        """Compose with another transformation: self @ other.

        Example:
            W_T_prev.compose(prev_T_cur) gives W_T_cur

        Args:
            other: SE3 transformation to compose with

        Returns:
            Composed SE3 transformation (self @ other)
        """
        R = self.rotation @ other.rotation
        t = self.rotation @ other.translation + self.translation
        return SE3(rotation=R, translation=t)

    def between(self, other: SE3) -> SE3:
        """Relative transform from self to other: self^{-1} @ other.

        For absolute poses W_T_a and W_T_b this returns a_T_b.
        """
        return self.inverse().compose(other)

    def log(self) -> np.ndarray:
        """Return a 6D tangent vector [rotation_vector, translation]."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return np.concatenate([rvec.flatten(), self.translation])

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the transformation to an Nx3 array of points."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, 3)

        if points.shape[1] != 3:
            raise ValueError(f"Points must be Nx3, got {points.shape}")

        return (self.rotation @ points.T).T + self.translation

    def is_close(
        self, other: SE3, rot_tol: float = 1e-6, trans_tol: float = 1e-6
    ) -> bool:
        """Check whether two poses agree within angular and metric tolerances.

        Args:
            other: Pose to compare against
            rot_tol: Maximum rotation angle difference (radians)
            trans_tol: Maximum translation difference (same units as poses)
        """
        delta = self.between(other)
        return (
            rotation_angle(delta.rotation) <= rot_tol
            and float(np.linalg.norm(self.translation - other.translation))
            <= trans_tol
        )

    def __repr__(self) -> str:
        """Return string representation."""
        pos = self.translation
        angle = np.degrees(rotation_angle(self.rotation))
        return (
            f"SE3(position=[{pos[0]:.3f}, {pos[1]:.3f}, {pos[2]:.3f}], "
            f"angle={angle:.2f}deg)"
        )

    def __matmul__(self, other: SE3) -> SE3:
        """Matrix multiplication operator for composition."""
        return self.compose(other)
