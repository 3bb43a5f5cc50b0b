"""pyvio: feature tracking and loop closure detection for stereo visual odometry.

Components:
- frontend: camera models, frames, optical flow prediction, RANSAC
  outlier rejection and the feature tracker
- loop_closure: place recognition, temporal islands, loop verification
  and pose graph optimization
- config: parameter dataclasses loadable from YAML
"""

from .config import (
    GeomVerifOption,
    IslandScoring,
    LoopClosureDetectorParams,
    OpticalFlowPredictorType,
    PoseRecoveryOption,
    TrackerParams,
)

__version__ = "0.1.0"

__all__ = [
    "TrackerParams",
    "LoopClosureDetectorParams",
    "OpticalFlowPredictorType",
    "GeomVerifOption",
    "PoseRecoveryOption",
    "IslandScoring",
]
