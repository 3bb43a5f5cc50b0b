"""Parameters for the tracker and the loop closure detector.

Both parameter sets are plain dataclasses that validate themselves on
construction and can be loaded from YAML files::

    params = LoopClosureDetectorParams.from_yaml("config/lcd.yaml")

Enum-valued entries accept their names as strings (``geom_check: NISTER``).
An unknown option name is a configuration fault and raises ``ValueError``;
nothing falls back to a default silently.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, TypeVar

import yaml

_ParamsT = TypeVar("_ParamsT")


class OpticalFlowPredictorType(Enum):
    """Strategy used to seed the KLT search in the next frame."""

    STATIC = 0
    ROTATIONAL = 1


class GeomVerifOption(Enum):
    """Geometric verification applied to loop closure candidates."""

    NISTER = 0
    NONE = 1


class PoseRecoveryOption(Enum):
    """How the metric relative pose of a loop closure is recovered."""

    RANSAC_ARUN = 0
    GIVEN_ROT = 1


class IslandScoring(Enum):
    """Aggregation of member scores into an island score."""

    SUM = 0
    MEAN = 1
    MAX = 2


def _coerce_enum(enum_type: type[Enum], value: Any, key: str) -> Enum:
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        try:
            return enum_type[value.strip().upper()]
        except KeyError:
            pass
    elif isinstance(value, int) and not isinstance(value, bool):
        try:
            return enum_type(value)
        except ValueError:
            pass
    options = ", ".join(member.name for member in enum_type)
    raise ValueError(f"Unknown {key} option: {value!r} (expected one of {options})")


def _params_from_dict(cls: type[_ParamsT], data: Mapping[str, Any]) -> _ParamsT:
    """Instantiate a params dataclass from a mapping, rejecting unknown keys."""
    if not isinstance(data, Mapping):
        raise ValueError(f"{cls.__name__} expects a mapping, got {type(data).__name__}")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")

    defaults = cls()
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        default = getattr(defaults, key)
        if isinstance(default, Enum):
            value = _coerce_enum(type(default), value, key)
        kwargs[key] = value
    return cls(**kwargs)


def _load_yaml(path: str | Path) -> Mapping[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Parameter file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Parameter file {path} must contain a mapping")
    return data


def _check_positive(owner: str, **values: float) -> None:
    for name, value in values.items():
        if value <= 0:
            raise ValueError(f"{owner}.{name} must be positive, got {value}")


def _check_unit_interval(owner: str, **values: float) -> None:
    for name, value in values.items():
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"{owner}.{name} must lie in [0, 1], got {value}")


@dataclass
class TrackerParams:
    """Feature detection, KLT tracking and outlier rejection parameters.

    Attributes:
        klt_win_size: KLT search window side (pixels)
        klt_max_iter: KLT iterations per pyramid level
        klt_max_level: Highest pyramid level used by KLT (0-based)
        klt_eps: KLT convergence threshold
        max_feature_age: Tracks older than this many frames are dropped
        max_features_per_frame: Target number of live features per frame
        quality_level: Relative corner quality for goodFeaturesToTrack
        min_distance: Minimum pixel distance between features
        block_size: Corner detector neighbourhood size
        use_harris_detector: Use Harris instead of Shi-Tomasi scores
        k: Harris free parameter
        enable_subpixel_refinement: Refine new corners with cornerSubPix
        optical_flow_predictor_type: Seeding strategy for KLT
        ransac_threshold_mono: Inlier threshold on the normalized image
            plane (distance to the epipolar line, ~ pixels / focal length)
        ransac_threshold_stereo: Inlier threshold for 3D-3D residuals (meters)
        ransac_threshold_stereo_given_rotation: Squared Mahalanobis inlier
            threshold for the one-point translation RANSAC (chi2, 3 dof)
        ransac_max_iterations: RANSAC iteration cap
        ransac_probability: Desired probability of drawing an outlier-free sample
        ransac_randomize: Seed RANSAC from entropy instead of a fixed seed
        min_nr_mono_inliers: Fewer mono inliers flag FEW_MATCHES
        min_nr_stereo_inliers: Fewer stereo inliers flag FEW_MATCHES
        disparity_threshold: Median pixel disparity below which the mono
            geometry is flagged LOW_DISPARITY
        stereo_pixel_sigma: Pixel standard deviation of (uL, uR, v) used to
            propagate stereo point covariances
    """

    klt_win_size: int = 24
    klt_max_iter: int = 30
    klt_max_level: int = 4
    klt_eps: float = 0.1
    max_feature_age: int = 25

    max_features_per_frame: int = 400
    quality_level: float = 0.001
    min_distance: float = 10.0
    block_size: int = 3
    use_harris_detector: bool = False
    k: float = 0.04
    enable_subpixel_refinement: bool = False

    optical_flow_predictor_type: OpticalFlowPredictorType = OpticalFlowPredictorType.STATIC

    ransac_threshold_mono: float = 1.0e-3
    ransac_threshold_stereo: float = 0.3
    ransac_threshold_stereo_given_rotation: float = 7.815
    ransac_max_iterations: int = 100
    ransac_probability: float = 0.995
    ransac_randomize: bool = True

    min_nr_mono_inliers: int = 10
    min_nr_stereo_inliers: int = 5
    disparity_threshold: float = 0.5
    stereo_pixel_sigma: float = 1.0

    def __post_init__(self) -> None:
        if not isinstance(self.optical_flow_predictor_type, OpticalFlowPredictorType):
            self.optical_flow_predictor_type = _coerce_enum(
                OpticalFlowPredictorType,
                self.optical_flow_predictor_type,
                "optical_flow_predictor_type",
            )
        _check_positive(
            "TrackerParams",
            klt_win_size=self.klt_win_size,
            klt_max_iter=self.klt_max_iter,
            klt_eps=self.klt_eps,
            max_feature_age=self.max_feature_age,
            quality_level=self.quality_level,
            block_size=self.block_size,
            ransac_threshold_mono=self.ransac_threshold_mono,
            ransac_threshold_stereo=self.ransac_threshold_stereo,
            ransac_threshold_stereo_given_rotation=self.ransac_threshold_stereo_given_rotation,
            ransac_max_iterations=self.ransac_max_iterations,
            stereo_pixel_sigma=self.stereo_pixel_sigma,
        )
        _check_unit_interval("TrackerParams", ransac_probability=self.ransac_probability)
        if self.klt_max_level < 0:
            raise ValueError(f"TrackerParams.klt_max_level must be >= 0, got {self.klt_max_level}")
        if self.max_features_per_frame < 0:
            raise ValueError("TrackerParams.max_features_per_frame must be >= 0")
        if self.min_distance < 0:
            raise ValueError("TrackerParams.min_distance must be >= 0")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TrackerParams:
        """Create parameters from a mapping (unknown keys raise ValueError)."""
        return _params_from_dict(cls, data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> TrackerParams:
        """Load parameters from a YAML file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file contents are invalid
        """
        return cls.from_dict(_load_yaml(path))


@dataclass
class LoopClosureDetectorParams:
    """Loop closure detection, verification and pose-graph parameters.

    Attributes:
        n_features: ORB features extracted per keyframe
        scale_factor: ORB pyramid decimation ratio
        n_levels: ORB pyramid levels
        edge_threshold: ORB border margin
        fast_threshold: ORB FAST threshold
        stereo_epipolar_threshold: Row tolerance for left/right ORB matches
        stereo_min_disparity: Minimum disparity for left/right ORB matches
        stereo_max_disparity: Maximum disparity for left/right ORB matches
        use_nss: Normalize candidate scores by the query's self-similarity
        min_nss_factor: Minimum normalized score of the top candidate
        min_score: Minimum raw similarity score of the top candidate
        max_db_results: Maximum candidates requested from the place index
        island_scoring: Aggregation of member scores into island scores
        min_matches_per_island: Minimum island length (frames)
        max_intraisland_gap: Candidates closer than this join one island
        dist_local: Minimum frame-id gap between query and match
        min_temporal_matches: Consecutive consistent queries required
        max_nrFrames_between_queries: Queries further apart restart debouncing
        max_nrFrames_between_islands: Islands closer than this are consistent
        geom_check: Geometric verification option
        min_correspondences: Minimum descriptor matches for verification
        lowe_ratio: Lowe ratio used for verification matches
        max_ransac_iterations_mono: Iteration cap of the five-point RANSAC
        ransac_probability_mono: Five-point RANSAC confidence
        ransac_threshold_mono: Five-point threshold on the normalized plane
        ransac_inlier_threshold_mono: Minimum inlier ratio after five-point
        ransac_randomize_mono: Seed the five-point RANSAC from entropy
        pose_recovery_option: Pose recovery option
        max_ransac_iterations_stereo: Iteration cap of the 3D-3D RANSAC
        ransac_probability_stereo: 3D-3D RANSAC confidence
        ransac_threshold_stereo: 3D-3D inlier threshold (meters)
        ransac_inlier_threshold_stereo: Minimum inlier ratio after 3D-3D
        ransac_randomize_stereo: Seed the 3D-3D RANSAC from entropy
        odom_rot_sigma: Odometry factor rotation sigma (radians)
        odom_trans_sigma: Odometry factor translation sigma (meters)
        loop_rot_sigma: Loop factor rotation sigma for a single inlier
        loop_trans_sigma: Loop factor translation sigma for a single inlier
        pgo_max_iterations: Pose graph solver iterations per parameter
    """

    n_features: int = 500
    scale_factor: float = 1.2
    n_levels: int = 8
    edge_threshold: int = 31
    fast_threshold: int = 20
    stereo_epipolar_threshold: float = 2.0
    stereo_min_disparity: float = 1.0
    stereo_max_disparity: float = 200.0

    use_nss: bool = True
    min_nss_factor: float = 0.1
    min_score: float = 0.05
    max_db_results: int = 50

    island_scoring: IslandScoring = IslandScoring.SUM
    min_matches_per_island: int = 1
    max_intraisland_gap: int = 3

    dist_local: int = 20
    min_temporal_matches: int = 1
    max_nrFrames_between_queries: int = 2
    max_nrFrames_between_islands: int = 3

    geom_check: GeomVerifOption = GeomVerifOption.NISTER
    min_correspondences: int = 12
    lowe_ratio: float = 0.7
    max_ransac_iterations_mono: int = 500
    ransac_probability_mono: float = 0.99
    ransac_threshold_mono: float = 1.0e-3
    ransac_inlier_threshold_mono: float = 0.5
    ransac_randomize_mono: bool = True

    pose_recovery_option: PoseRecoveryOption = PoseRecoveryOption.RANSAC_ARUN
    max_ransac_iterations_stereo: int = 500
    ransac_probability_stereo: float = 0.995
    ransac_threshold_stereo: float = 0.15
    ransac_inlier_threshold_stereo: float = 0.5
    ransac_randomize_stereo: bool = True

    odom_rot_sigma: float = 0.01
    odom_trans_sigma: float = 0.1
    loop_rot_sigma: float = 0.05
    loop_trans_sigma: float = 0.5
    pgo_max_iterations: int = 50

    def __post_init__(self) -> None:
        for name, enum_type in (
            ("island_scoring", IslandScoring),
            ("geom_check", GeomVerifOption),
            ("pose_recovery_option", PoseRecoveryOption),
        ):
            value = getattr(self, name)
            if not isinstance(value, enum_type):
                setattr(self, name, _coerce_enum(enum_type, value, name))

        _check_positive(
            "LoopClosureDetectorParams",
            n_features=self.n_features,
            max_db_results=self.max_db_results,
            min_matches_per_island=self.min_matches_per_island,
            max_intraisland_gap=self.max_intraisland_gap,
            min_temporal_matches=self.min_temporal_matches,
            min_correspondences=self.min_correspondences,
            lowe_ratio=self.lowe_ratio,
            max_ransac_iterations_mono=self.max_ransac_iterations_mono,
            ransac_threshold_mono=self.ransac_threshold_mono,
            max_ransac_iterations_stereo=self.max_ransac_iterations_stereo,
            ransac_threshold_stereo=self.ransac_threshold_stereo,
            odom_rot_sigma=self.odom_rot_sigma,
            odom_trans_sigma=self.odom_trans_sigma,
            loop_rot_sigma=self.loop_rot_sigma,
            loop_trans_sigma=self.loop_trans_sigma,
            pgo_max_iterations=self.pgo_max_iterations,
        )
        _check_unit_interval(
            "LoopClosureDetectorParams",
            ransac_probability_mono=self.ransac_probability_mono,
            ransac_inlier_threshold_mono=self.ransac_inlier_threshold_mono,
            ransac_probability_stereo=self.ransac_probability_stereo,
            ransac_inlier_threshold_stereo=self.ransac_inlier_threshold_stereo,
        )
        if self.lowe_ratio > 1.0:
            raise ValueError(f"LoopClosureDetectorParams.lowe_ratio must be <= 1, got {self.lowe_ratio}")
        if self.dist_local < 0:
            raise ValueError("LoopClosureDetectorParams.dist_local must be >= 0")
        if self.min_nss_factor < 0 or self.min_score < 0:
            raise ValueError("LoopClosureDetectorParams score thresholds must be >= 0")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LoopClosureDetectorParams:
        """Create parameters from a mapping (unknown keys raise ValueError)."""
        return _params_from_dict(cls, data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> LoopClosureDetectorParams:
        """Load parameters from a YAML file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file contents are invalid
        """
        return cls.from_dict(_load_yaml(path))
