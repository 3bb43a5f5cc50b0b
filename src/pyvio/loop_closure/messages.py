"""Payloads crossing the loop closure detector's boundary.

Both payloads are immutable and own their data by value.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..frontend.frame import StereoFrame
from ..frontend.pose import SE3
from .definitions import LoopClosureFactor, OdometryFactor

Factor = OdometryFactor | LoopClosureFactor


@dataclass(frozen=True)
class LoopClosureDetectorInputPayload:
    """A keyframe handed to the detector.

    Attributes:
        timestamp_kf: Keyframe timestamp (nanoseconds)
        cur_kf_id: Keyframe id, strictly increasing across payloads
        stereo_frame: Stereo frame with left and right images
        W_Pose_Blkf: Current estimate of the keyframe's body pose in world
    """

    timestamp_kf: int
    cur_kf_id: int
    stereo_frame: StereoFrame
    W_Pose_Blkf: SE3


@dataclass(frozen=True)
class LoopClosureDetectorOutputPayload:
    """Detector output for one keyframe.

    Attributes:
        is_loop_closure: True if a loop was detected for this keyframe
        timestamp_kf: Timestamp of the processed keyframe
        timestamp_query: Timestamp of the query frame (0 without a loop)
        timestamp_match: Timestamp of the matched frame (0 without a loop)
        id_match: Keyframe id of the match (-1 without a loop)
        id_recent: Keyframe id of the query (-1 without a loop)
        relative_pose: match_T_query in the body frame
        W_Pose_Map: Drift correction between odometry and optimized poses
        W_Pose_Blkf_corrected: Optimized pose of the processed keyframe
        states: Optimized keyframe poses by keyframe id
        nfg: Factors added so far, in insertion order
    """

    is_loop_closure: bool
    timestamp_kf: int
    timestamp_query: int = 0
    timestamp_match: int = 0
    id_match: int = -1
    id_recent: int = -1
    relative_pose: SE3 = field(default_factory=SE3.identity)
    W_Pose_Map: SE3 = field(default_factory=SE3.identity)
    W_Pose_Blkf_corrected: SE3 = field(default_factory=SE3.identity)
    states: dict[int, SE3] = field(default_factory=dict)
    nfg: tuple[Factor, ...] = ()
