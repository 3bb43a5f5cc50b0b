"""Frontend components: cameras, frames and the feature tracker."""

from .camera import CameraParams, StereoCameraModel
from .feature_detector import FeatureDetector, Features
from .frame import Frame, KeypointStatus, StereoFrame
from .optical_flow_predictor import (
    OpticalFlowPredictor,
    OpticalFlowPredictorFactory,
    RotationalOpticalFlowPredictor,
    StaticOpticalFlowPredictor,
)
from .pose import SE3
from .stereo_matcher import StereoMatcher, StereoMatches
from .tracker import Tracker
from .tracker_definitions import DebugTrackerInfo, TrackingStatus

__all__ = [
    # Pose
    "SE3",
    # Camera
    "CameraParams",
    "StereoCameraModel",
    # Frames
    "Frame",
    "StereoFrame",
    "KeypointStatus",
    # Features
    "FeatureDetector",
    "Features",
    "StereoMatcher",
    "StereoMatches",
    # Prediction
    "OpticalFlowPredictor",
    "OpticalFlowPredictorFactory",
    "StaticOpticalFlowPredictor",
    "RotationalOpticalFlowPredictor",
    # Tracking
    "Tracker",
    "TrackingStatus",
    "DebugTrackerInfo",
]
