"""Data model of the loop closure detector."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from ..frontend.pose import SE3


class LCDStatus(Enum):
    """Outcome of a loop closure query, in the order the checks run."""

    LOOP_DETECTED = "LOOP_DETECTED"
    NO_MATCHES = "NO_MATCHES"
    LOW_NSS_FACTOR = "LOW_NSS_FACTOR"
    LOW_SCORE = "LOW_SCORE"
    NO_GROUPS = "NO_GROUPS"
    FAILED_TEMPORAL_CONSTRAINT = "FAILED_TEMPORAL_CONSTRAINT"
    FAILED_GEOM_VERIFICATION = "FAILED_GEOM_VERIFICATION"
    FAILED_POSE_RECOVERY = "FAILED_POSE_RECOVERY"


@dataclass(frozen=True, eq=False)
class LCDFrame:
    """Immutable place-recognition snapshot of a keyframe.

    Per-keypoint arrays are parallel: keypoint ``i`` has 3D point
    ``keypoints_3d[i]`` (left camera frame), descriptor
    ``descriptors_mat[i]`` and bearing vector ``versors[i]``.

    Attributes:
        timestamp: Keyframe timestamp (nanoseconds)
        id: Frame id inside the detector's store
        id_kf: Id of the owning keyframe
        keypoints: Nx2 left keypoints
        keypoints_3d: Nx3 triangulated points
        descriptors_vec: Descriptor rows, one per keypoint
        descriptors_mat: Nx32 descriptor matrix (uint8)
        versors: Nx3 unit bearing vectors
    """

    timestamp: int
    id: int
    id_kf: int
    keypoints: np.ndarray
    keypoints_3d: np.ndarray
    descriptors_vec: tuple[np.ndarray, ...]
    descriptors_mat: np.ndarray
    versors: np.ndarray

    def __post_init__(self) -> None:
        n = len(self.keypoints)
        sizes = {
            "keypoints_3d": len(self.keypoints_3d),
            "descriptors_vec": len(self.descriptors_vec),
            "descriptors_mat": len(self.descriptors_mat),
            "versors": len(self.versors),
        }
        for name, size in sizes.items():
            if size != n:
                raise ValueError(f"LCDFrame {self.id}: {name} has {size} rows for {n} keypoints")

    @classmethod
    def create(
        cls,
        timestamp: int,
        frame_id: int,
        id_kf: int,
        keypoints: np.ndarray,
        keypoints_3d: np.ndarray,
        descriptors: np.ndarray,
        versors: np.ndarray,
    ) -> LCDFrame:
        """Build a frame from arrays, copying them."""
        descriptors = np.array(descriptors, dtype=np.uint8)
        if descriptors.size == 0:
            descriptors = np.empty((0, 32), dtype=np.uint8)
        elif descriptors.ndim != 2:
            descriptors = descriptors.reshape(len(keypoints), -1)
        return cls(
            timestamp=timestamp,
            id=frame_id,
            id_kf=id_kf,
            keypoints=np.array(keypoints, dtype=np.float32).reshape(-1, 2),
            keypoints_3d=np.array(keypoints_3d, dtype=np.float64).reshape(-1, 3),
            descriptors_vec=tuple(descriptors[i] for i in range(len(descriptors))),
            descriptors_mat=descriptors,
            versors=np.array(versors, dtype=np.float64).reshape(-1, 3),
        )

    def __len__(self) -> int:
        return len(self.keypoints)


@dataclass
class MatchIsland:
    """A contiguous range of frame ids similar to a query.

    Islands compare solely by ``island_score``.
    """

    start_id: int
    end_id: int
    island_score: float = 0.0
    best_id: int = 0
    best_score: float = 0.0

    def __post_init__(self) -> None:
        if self.end_id < self.start_id:
            raise ValueError(f"Island end {self.end_id} before start {self.start_id}")

    def size(self) -> int:
        return self.end_id - self.start_id + 1

    def clear(self) -> None:
        self.start_id = 0
        self.end_id = 0
        self.island_score = 0.0
        self.best_id = 0
        self.best_score = 0.0

    def __lt__(self, other: MatchIsland) -> bool:
        return self.island_score < other.island_score

    def __gt__(self, other: MatchIsland) -> bool:
        return self.island_score > other.island_score


@dataclass(frozen=True)
class LoopResult:
    """Outcome of one loop closure query.

    Attributes:
        status: First check that failed, or LOOP_DETECTED
        query_id: Store id of the query frame
        match_id: Store id of the matched frame (-1 if none)
        relative_pose: match_T_query in the body frame (identity unless a loop)
    """

    status: LCDStatus
    query_id: int
    match_id: int = -1
    relative_pose: SE3 = field(default_factory=SE3.identity)

    def is_loop(self) -> bool:
        return self.status == LCDStatus.LOOP_DETECTED

    @staticmethod
    def as_string(status: LCDStatus) -> str:
        return status.value


@dataclass
class LcdDebugInfo:
    """Diagnostics of the last loop closure query."""

    timestamp: int = 0
    loop_result: LoopResult | None = None

    mono_input_size: int = 0
    mono_inliers: int = 0
    mono_iter: int = 0

    stereo_input_size: int = 0
    stereo_inliers: int = 0
    stereo_iter: int = 0

    pgo_size: int = 0
    pgo_lc_count: int = 0
    pgo_lc_inliers: int = 0


@dataclass(frozen=True)
class NoiseModel:
    """Diagonal Gaussian noise on a pose, rotation first.

    Attributes:
        sigmas: 6-vector of standard deviations [rx, ry, rz, tx, ty, tz]
    """

    sigmas: np.ndarray

    def __post_init__(self) -> None:
        sigmas = np.asarray(self.sigmas, dtype=np.float64).reshape(-1)
        if sigmas.shape != (6,):
            raise ValueError(f"Noise model needs 6 sigmas, got {sigmas.shape}")
        if np.any(sigmas <= 0):
            raise ValueError("Noise sigmas must be positive")
        object.__setattr__(self, "sigmas", sigmas)

    @classmethod
    def from_sigmas(cls, rot_sigma: float, trans_sigma: float) -> NoiseModel:
        return cls(np.array([rot_sigma] * 3 + [trans_sigma] * 3))

    @classmethod
    def from_inliers(cls, rot_sigma: float, trans_sigma: float, n_inliers: int) -> NoiseModel:
        """Noise of an estimate supported by ``n_inliers`` correspondences.

        Sigmas shrink as 1 / sqrt(n_inliers).
        """
        scale = 1.0 / np.sqrt(max(int(n_inliers), 1))
        return cls.from_sigmas(rot_sigma * scale, trans_sigma * scale)

    @property
    def information(self) -> np.ndarray:
        """Return the 6x6 information matrix."""
        return np.diag(1.0 / self.sigmas**2)

    @property
    def sqrt_information(self) -> np.ndarray:
        """Return the diagonal of the square-root information matrix."""
        return 1.0 / self.sigmas


@dataclass(frozen=True)
class OdometryFactor:
    """Absolute pose estimate of a keyframe."""

    cur_key: int
    W_Pose_Blkf: SE3
    noise: NoiseModel


@dataclass(frozen=True)
class LoopClosureFactor:
    """Relative pose between a matched (ref) and query (cur) keyframe."""

    ref_key: int
    cur_key: int
    ref_Pose_cur: SE3
    noise: NoiseModel
