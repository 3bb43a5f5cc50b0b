"""Pose graph optimization for global drift correction.

Odometry factors chain consecutive keyframes; loop closure factors tie a
query keyframe to an earlier one. Whenever a loop closure arrives all poses
are optimized jointly, distributing the accumulated drift over the
trajectory. Only poses are optimized (no landmarks).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..frontend.pose import SE3
from .definitions import LoopClosureFactor, NoiseModel, OdometryFactor

logger = logging.getLogger(__name__)

Factor = OdometryFactor | LoopClosureFactor


@dataclass(frozen=True)
class PoseEdge:
    """A relative constraint between two keys.

    Attributes:
        from_key: Source key
        to_key: Target key
        measurement: Measured relative transform from_T_to
        noise: Noise model of the measurement
        is_loop: Whether this is a loop closure edge
    """

    from_key: int
    to_key: int
    measurement: SE3
    noise: NoiseModel
    is_loop: bool = False


def _copy_pose(pose: SE3) -> SE3:
    return SE3(rotation=pose.rotation.copy(), translation=pose.translation.copy())


class PoseGraph:
    """Pose graph fed with odometry and loop closure factors.

    ``add_factor`` returns the current (values, factors) snapshot:
    the estimated pose of every key and all factors added so far.
    """

    def __init__(self, max_iterations: int = 50) -> None:
        """Initialize empty pose graph.

        Args:
            max_iterations: Solver evaluations per optimized parameter
        """
        self._max_iterations = max_iterations
        self._values: dict[int, SE3] = {}
        self._odometry: dict[int, SE3] = {}
        self._factors: list[Factor] = []
        self._edges: list[PoseEdge] = []
        self._anchor_key: int | None = None
        self._last_key: int | None = None

    def add_factor(self, factor: Factor) -> tuple[dict[int, SE3], tuple[Factor, ...]]:
        """Add a factor, optimizing on loop closures.

        Raises:
            ValueError: On repeated odometry keys or loop factors between
                unknown keys
        """
        if isinstance(factor, OdometryFactor):
            self._add_odometry(factor)
        elif isinstance(factor, LoopClosureFactor):
            self._add_loop_closure(factor)
        else:
            raise ValueError(f"Unsupported factor type: {type(factor).__name__}")
        return self.values, self.factors

    def _add_odometry(self, factor: OdometryFactor) -> None:
        key = factor.cur_key
        if key in self._values:
            raise ValueError(f"Key {key} already has an odometry factor")

        pose = factor.W_Pose_Blkf
        if self._last_key is None:
            # First keyframe anchors the graph
            self._anchor_key = key
            self._values[key] = _copy_pose(pose)
        else:
            measurement = self._odometry[self._last_key].between(pose)
            self._edges.append(
                PoseEdge(from_key=self._last_key, to_key=key, measurement=measurement, noise=factor.noise)
            )
            self._values[key] = self._values[self._last_key].compose(measurement)

        self._odometry[key] = _copy_pose(pose)
        self._factors.append(factor)
        self._last_key = key

    def _add_loop_closure(self, factor: LoopClosureFactor) -> None:
        for key in (factor.ref_key, factor.cur_key):
            if key not in self._values:
                raise ValueError(f"Loop closure references unknown key {key}")

        self._edges.append(
            PoseEdge(
                from_key=factor.ref_key,
                to_key=factor.cur_key,
                measurement=factor.ref_Pose_cur,
                noise=factor.noise,
                is_loop=True,
            )
        )
        self._factors.append(factor)
        self.optimize()

    def optimize(self) -> dict[int, SE3]:
        """Optimize all poses with the anchor pose held fixed.

        Returns:
            Dictionary of optimized poses (key -> SE3)
        """
        if len(self._values) < 2 or not self._edges:
            return self.values

        # The anchor comes first and stays fixed (gauge freedom)
        free_keys = [k for k in sorted(self._values) if k != self._anchor_key]
        key_to_idx = {k: i for i, k in enumerate(free_keys)}
        anchor = self._values[self._anchor_key]

        x0 = np.concatenate([self._values[k].log() for k in free_keys])
        n_params = len(x0)
        n_residuals = 6 * len(self._edges)

        jac_sparsity = lil_matrix((n_residuals, n_params), dtype=np.float64)
        for e_idx, edge in enumerate(self._edges):
            rows = slice(6 * e_idx, 6 * e_idx + 6)
            for key in (edge.from_key, edge.to_key):
                if key in key_to_idx:
                    cols = slice(6 * key_to_idx[key], 6 * key_to_idx[key] + 6)
                    jac_sparsity[rows, cols] = 1

        def unpack(params: np.ndarray) -> dict[int, SE3]:
            poses = {self._anchor_key: anchor}
            for key, i in key_to_idx.items():
                R, _ = cv2.Rodrigues(params[6 * i : 6 * i + 3])
                poses[key] = SE3(rotation=R, translation=params[6 * i + 3 : 6 * i + 6])
            return poses

        def residuals(params: np.ndarray) -> np.ndarray:
            poses = unpack(params)
            out = np.empty(n_residuals)
            for e_idx, edge in enumerate(self._edges):
                predicted = poses[edge.from_key].between(poses[edge.to_key])
                error = predicted.between(edge.measurement).log()
                out[6 * e_idx : 6 * e_idx + 6] = error * edge.noise.sqrt_information
            return out

        result = least_squares(
            residuals,
            x0,
            method="trf",
            jac_sparsity=jac_sparsity.tocsr(),
            ftol=1e-8,
            max_nfev=self._max_iterations * n_params,
        )
        logger.info(
            "Pose graph optimized: %d poses, %d edges, cost %.3e -> %.3e",
            len(self._values),
            len(self._edges),
            0.5 * float(np.sum(residuals(x0) ** 2)),
            float(result.cost),
        )

        self._values = unpack(result.x)
        return self.values

    def get_pose(self, key: int) -> SE3 | None:
        """Return the current estimate of a key, None if unknown."""
        pose = self._values.get(key)
        return None if pose is None else _copy_pose(pose)

    def get_odometry_pose(self, key: int) -> SE3 | None:
        """Return the odometry pose a key was added with, None if unknown."""
        pose = self._odometry.get(key)
        return None if pose is None else _copy_pose(pose)

    @property
    def values(self) -> dict[int, SE3]:
        """Get all pose estimates (copies)."""
        return {k: _copy_pose(v) for k, v in self._values.items()}

    @property
    def factors(self) -> tuple[Factor, ...]:
        """Get all factors in insertion order."""
        return tuple(self._factors)

    @property
    def last_key(self) -> int | None:
        """Key of the latest odometry factor."""
        return self._last_key

    @property
    def num_poses(self) -> int:
        """Number of poses in graph."""
        return len(self._values)

    @property
    def num_loop_closures(self) -> int:
        """Number of loop closure edges."""
        return sum(1 for e in self._edges if e.is_loop)
