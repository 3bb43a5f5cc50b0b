"""Loop closure detection.

Detects when the camera revisits a previously seen place and feeds the
resulting constraints to a pose graph that corrects accumulated drift.

Key components:
- VisualVocabulary: Bag of Visual Words for image similarity
- PlaceIndex / PlaceDatabase: Index of visited places
- compute_islands: Temporal grouping of candidates
- LoopClosureDetector: Ordered detection and verification pipeline
- PoseGraph: Global pose optimization
"""

from .definitions import (
    LCDFrame,
    LCDStatus,
    LcdDebugInfo,
    LoopClosureFactor,
    LoopResult,
    MatchIsland,
    NoiseModel,
    OdometryFactor,
)
from .frame_store import LCDFrameStore
from .islands import compute_islands, select_best_island
from .loop_detector import LoopClosureDetector
from .messages import LoopClosureDetectorInputPayload, LoopClosureDetectorOutputPayload
from .place_recognition import PlaceDatabase, PlaceIndex, QueryResult
from .pose_graph import PoseEdge, PoseGraph
from .vocabulary import VisualVocabulary

__all__ = [
    # Vocabulary
    "VisualVocabulary",
    # Place Recognition
    "PlaceIndex",
    "PlaceDatabase",
    "QueryResult",
    # Data model
    "LCDFrame",
    "LCDFrameStore",
    "LCDStatus",
    "LcdDebugInfo",
    "LoopResult",
    "MatchIsland",
    "NoiseModel",
    "OdometryFactor",
    "LoopClosureFactor",
    # Islands
    "compute_islands",
    "select_best_island",
    # Pose Graph
    "PoseGraph",
    "PoseEdge",
    # Detector
    "LoopClosureDetector",
    # Messages
    "LoopClosureDetectorInputPayload",
    "LoopClosureDetectorOutputPayload",
]
