"""Tracking status and debug counters reported by the tracker."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TrackingStatus(Enum):
    """Outcome of a geometric outlier rejection call."""

    VALID = "VALID"
    LOW_DISPARITY = "LOW_DISPARITY"
    FEW_MATCHES = "FEW_MATCHES"
    INVALID = "INVALID"
    DISABLED = "DISABLED"


@dataclass
class DebugTrackerInfo:
    """Counters and timings of the last tracker calls.

    Timings are in milliseconds.
    """

    nr_detected_features: int = 0
    nr_tracked_features: int = 0
    need_n_corners: int = 0
    extracted_corners: int = 0

    nr_mono_inliers: int = 0
    nr_mono_putatives: int = 0
    mono_ransac_iters: int = 0

    nr_stereo_inliers: int = 0
    nr_stereo_putatives: int = 0
    stereo_ransac_iters: int = 0

    nr_valid_rkp: int = 0
    nr_no_left_rect_rkp: int = 0
    nr_no_right_rect_rkp: int = 0
    nr_no_depth_rkp: int = 0
    nr_failed_arun_rkp: int = 0

    feature_detection_time: float = 0.0
    feature_tracking_time: float = 0.0
    mono_ransac_time: float = 0.0
    stereo_ransac_time: float = 0.0

    def reset_right_keypoint_counts(self) -> None:
        self.nr_valid_rkp = 0
        self.nr_no_left_rect_rkp = 0
        self.nr_no_right_rect_rkp = 0
        self.nr_no_depth_rkp = 0
        self.nr_failed_arun_rkp = 0
