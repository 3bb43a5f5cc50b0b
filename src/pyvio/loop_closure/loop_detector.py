"""Loop closure detector combining place recognition and geometric verification.

For every keyframe the detector:
1. Extracts ORB features, matches them across the stereo pair and stores
   an ``LCDFrame`` (keypoints, 3D points, descriptors, bearing vectors)
2. Queries the place index and runs the ordered checks of ``detect_loop``;
   the first failing check determines the ``LCDStatus``
3. Emits an odometry factor for every keyframe and a loop closure factor
   for every detected loop to the pose graph

Frame ids inside the detector are store indices (0, 1, 2, ...); the
keyframe id of each frame is kept as ``LCDFrame.id_kf`` and used as the
pose-graph key.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import cv2
import numpy as np

from ..config import GeomVerifOption, LoopClosureDetectorParams, PoseRecoveryOption
from ..frontend.camera import StereoCameraModel
from ..frontend.feature_detector import FeatureDetector
from ..frontend.frame import StereoFrame
from ..frontend.pose import SE3
from ..frontend.ransac import estimate_arun, estimate_essential_five_point, make_rng
from ..frontend.stereo_matcher import StereoMatcher
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
from .messages import LoopClosureDetectorInputPayload, LoopClosureDetectorOutputPayload
from .place_recognition import PlaceDatabase, PlaceIndex
from .pose_graph import Factor, PoseGraph
from .vocabulary import VisualVocabulary

logger = logging.getLogger(__name__)


class LoopClosureDetector:
    """Detects loop closures and feeds the pose graph."""

    def __init__(
        self,
        params: LoopClosureDetectorParams,
        stereo_camera: StereoCameraModel,
        place_index: PlaceIndex,
        pose_graph: PoseGraph | None = None,
    ) -> None:
        """Initialize loop closure detector.

        Args:
            params: Detector parameters
            stereo_camera: Rectified stereo model (intrinsics, baseline, extrinsics)
            place_index: Index queried for candidates
            pose_graph: Pose graph receiving factors (a new one if None)

        Raises:
            ValueError: If an option is unknown or the index lacks the
                PlaceIndex methods
        """
        if not isinstance(params.geom_check, GeomVerifOption):
            raise ValueError(f"Unknown geometric verification option: {params.geom_check!r}")
        if not isinstance(params.pose_recovery_option, PoseRecoveryOption):
            raise ValueError(f"Unknown pose recovery option: {params.pose_recovery_option!r}")
        if not isinstance(place_index, PlaceIndex):
            raise ValueError(f"{type(place_index).__name__} does not implement PlaceIndex")

        self._params = params
        self._stereo_camera = stereo_camera
        self._place_index = place_index
        self._pose_graph = pose_graph if pose_graph is not None else PoseGraph(
            max_iterations=params.pgo_max_iterations
        )

        self._feature_detector = FeatureDetector.from_params(params)
        self._stereo_matcher = StereoMatcher(
            epipolar_threshold=params.stereo_epipolar_threshold,
            min_disparity=params.stereo_min_disparity,
            max_disparity=params.stereo_max_disparity,
        )
        self._descriptor_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)

        self._frames = LCDFrameStore()
        self._debug_info = LcdDebugInfo()

        # Temporal consistency state, carried across queries
        self._temporal_entries = 0
        self._latest_matched_island: MatchIsland | None = None
        self._latest_query_id = -1

        self._last_kf_id: int | None = None

    @classmethod
    def from_vocabulary_path(
        cls,
        params: LoopClosureDetectorParams,
        stereo_camera: StereoCameraModel,
        vocabulary_path: str | Path,
        pose_graph: PoseGraph | None = None,
    ) -> LoopClosureDetector:
        """Create a detector backed by a bag-of-words database.

        Args:
            params: Detector parameters
            stereo_camera: Rectified stereo model
            vocabulary_path: Path to vocabulary .npz file
            pose_graph: Optional pose graph

        Returns:
            Configured LoopClosureDetector
        """
        vocabulary = VisualVocabulary.load(vocabulary_path)
        return cls(params, stereo_camera, PlaceDatabase(vocabulary), pose_graph)

    # ------------------------------------------------------------------
    # Pipeline entry point
    # ------------------------------------------------------------------

    def spin_once(
        self, input_payload: LoopClosureDetectorInputPayload
    ) -> LoopClosureDetectorOutputPayload:
        """Process one keyframe end to end.

        A keyframe that raises leaves the frame store, the place index and
        the pose graph untouched, so it can be resubmitted.

        Raises:
            ValueError: If keyframe ids are not strictly increasing or the
                stereo frame is missing an image
        """
        kf_id = input_payload.cur_kf_id
        if self._last_kf_id is not None and kf_id <= self._last_kf_id:
            raise ValueError(
                f"Keyframe ids must increase: got {kf_id} after {self._last_kf_id}"
            )

        # Step 1: store and index the keyframe
        frame_id = self.process_and_add_frame(
            input_payload.stereo_frame, id_kf=kf_id, timestamp=input_payload.timestamp_kf
        )

        # Step 2: odometry factor for every keyframe
        odometry_noise = NoiseModel.from_sigmas(
            self._params.odom_rot_sigma, self._params.odom_trans_sigma
        )
        self._pose_graph.add_factor(
            OdometryFactor(
                cur_key=kf_id, W_Pose_Blkf=input_payload.W_Pose_Blkf, noise=odometry_noise
            )
        )
        self._last_kf_id = kf_id

        # Step 3: place recognition and verification
        loop_result = self.detect_loop(frame_id)

        # Step 4: loop closure factor
        if not loop_result.is_loop():
            return LoopClosureDetectorOutputPayload(
                is_loop_closure=False,
                timestamp_kf=input_payload.timestamp_kf,
                W_Pose_Map=self.get_w_pose_map(),
                W_Pose_Blkf_corrected=self._pose_graph.get_pose(kf_id),
                states=self.get_pgo_trajectory(),
                nfg=self.get_pgo_nfg(),
            )

        match_frame = self._frames[loop_result.match_id]
        query_frame = self._frames[loop_result.query_id]
        n_inliers = self._debug_info.stereo_inliers
        loop_factor = LoopClosureFactor(
            ref_key=match_frame.id_kf,
            cur_key=query_frame.id_kf,
            ref_Pose_cur=loop_result.relative_pose,
            noise=NoiseModel.from_inliers(
                self._params.loop_rot_sigma, self._params.loop_trans_sigma, n_inliers
            ),
        )
        self._pose_graph.add_factor(loop_factor)
        self._debug_info.pgo_size = self._pose_graph.num_poses
        self._debug_info.pgo_lc_count = self._pose_graph.num_loop_closures
        self._debug_info.pgo_lc_inliers = n_inliers

        logger.info(
            "Loop closure: keyframe %d -> %d (%d inliers)",
            query_frame.id_kf,
            match_frame.id_kf,
            n_inliers,
        )
        return LoopClosureDetectorOutputPayload(
            is_loop_closure=True,
            timestamp_kf=input_payload.timestamp_kf,
            timestamp_query=query_frame.timestamp,
            timestamp_match=match_frame.timestamp,
            id_match=match_frame.id_kf,
            id_recent=query_frame.id_kf,
            relative_pose=loop_result.relative_pose,
            W_Pose_Map=self.get_w_pose_map(),
            W_Pose_Blkf_corrected=self._pose_graph.get_pose(kf_id),
            states=self.get_pgo_trajectory(),
            nfg=self.get_pgo_nfg(),
        )

    # ------------------------------------------------------------------
    # Frame database
    # ------------------------------------------------------------------

    def process_and_add_frame(
        self,
        stereo_frame: StereoFrame,
        id_kf: int | None = None,
        timestamp: int | None = None,
    ) -> int:
        """Build an LCD frame from a stereo pair and store it.

        ORB features of the left image are matched into the right image;
        only stereo-matched features with a valid depth are kept.

        Returns:
            Id of the new frame
        """
        left_image = stereo_frame.left_frame.image
        right_image = stereo_frame.right_image
        if left_image is None or right_image is None:
            raise ValueError(f"Stereo frame {stereo_frame.id} is missing an image")

        features_left, features_right = self._feature_detector.detect_stereo(
            left_image, right_image
        )
        matches = self._stereo_matcher.match_features(features_left, features_right)

        points_3d, valid = self._stereo_camera.backproject_points(
            matches.pts_left, matches.pts_right
        )
        kept = features_left.subset(matches.left_indices[valid])
        keypoints = matches.pts_left[valid]

        frame = LCDFrame.create(
            timestamp=stereo_frame.timestamp if timestamp is None else timestamp,
            frame_id=self._frames.next_id,
            id_kf=stereo_frame.id if id_kf is None else id_kf,
            keypoints=keypoints,
            keypoints_3d=points_3d[valid],
            descriptors=kept.descriptors,
            versors=self._stereo_camera.left.calibrate_pixels(keypoints),
        )
        logger.debug(
            "LCD frame %d: %d ORB features, %d stereo matches",
            frame.id,
            len(features_left),
            len(frame),
        )
        return self.add_lcd_frame(frame)

    def add_lcd_frame(self, lcd_frame: LCDFrame) -> int:
        """Store a prebuilt LCD frame and index its descriptors.

        Raises:
            ValueError: If the frame id is not the store's next id
        """
        if lcd_frame.id != self._frames.next_id:
            raise ValueError(
                f"Expected LCD frame id {self._frames.next_id}, got {lcd_frame.id}"
            )
        self._place_index.add(lcd_frame.id, lcd_frame.descriptors_mat)
        return self._frames.add(lcd_frame)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_loop(self, frame_id: int) -> LoopResult:
        """Run the ordered loop closure checks for a stored frame."""
        query_frame = self._frames[frame_id]
        debug_info = LcdDebugInfo(timestamp=query_frame.timestamp)
        result = self._detect(query_frame, debug_info)

        debug_info.loop_result = result
        debug_info.pgo_size = self._pose_graph.num_poses
        debug_info.pgo_lc_count = self._pose_graph.num_loop_closures
        self._debug_info = debug_info

        logger.debug(
            "LCD query %d: %s (match %d)",
            frame_id,
            LoopResult.as_string(result.status),
            result.match_id,
        )
        return result

    def _detect(self, query_frame: LCDFrame, debug_info: LcdDebugInfo) -> LoopResult:
        params = self._params
        query_id = query_frame.id

        # Step 1: candidates, excluding the query and its recent past
        max_frame_id = query_id - max(params.dist_local, 1)
        candidates = []
        if max_frame_id >= 0:
            candidates = self._place_index.query(
                query_frame.descriptors_mat, max_frame_id, params.max_db_results
            )
        if not candidates:
            return LoopResult(LCDStatus.NO_MATCHES, query_id)

        top = max(candidates, key=lambda c: c.score)

        # Step 2: normalized similarity against the previous frame
        nss = 1.0
        if params.use_nss:
            nss = 0.0
            if query_id > 0:
                nss = self._place_index.similarity(
                    query_frame.descriptors_mat, self._frames[query_id - 1].descriptors_mat
                )
            if nss <= 0.0 or top.score / nss < params.min_nss_factor:
                return LoopResult(LCDStatus.LOW_NSS_FACTOR, query_id)

        # Step 3: absolute score
        if top.score < params.min_score:
            return LoopResult(LCDStatus.LOW_SCORE, query_id)

        # Step 4: islands of surviving candidates
        survivors = [
            c
            for c in candidates
            if c.score >= params.min_score
            and (not params.use_nss or c.score / nss >= params.min_nss_factor)
        ]
        islands = compute_islands(
            survivors,
            max_intraisland_gap=params.max_intraisland_gap,
            min_matches_per_island=params.min_matches_per_island,
            scoring=params.island_scoring,
        )
        best_island = select_best_island(islands)
        if best_island is None:
            return LoopResult(LCDStatus.NO_GROUPS, query_id)
        match_id = best_island.best_id

        # Step 5: temporal constraint
        if not self._check_temporal_constraint(query_id, best_island):
            return LoopResult(LCDStatus.FAILED_TEMPORAL_CONSTRAINT, query_id, match_id)

        # Step 6: geometric verification
        match_frame = self._frames[match_id]
        verified, camMatch_T_camQuery_mono = self.geometric_verification(
            match_frame, query_frame, debug_info
        )
        if not verified:
            return LoopResult(LCDStatus.FAILED_GEOM_VERIFICATION, query_id, match_id)

        # Step 7: metric pose recovery
        recovered, camMatch_T_camQuery = self.recover_pose(
            match_frame, query_frame, camMatch_T_camQuery_mono, debug_info
        )
        if not recovered:
            return LoopResult(LCDStatus.FAILED_POSE_RECOVERY, query_id, match_id)

        # Step 8: express the relative pose in the body frame
        B_T_cam = self._stereo_camera.left.body_pose_cam
        bodyMatch_T_bodyQuery = B_T_cam @ camMatch_T_camQuery @ B_T_cam.inverse()
        return LoopResult(LCDStatus.LOOP_DETECTED, query_id, match_id, bodyMatch_T_bodyQuery)

    def _check_temporal_constraint(self, query_id: int, island: MatchIsland) -> bool:
        """Debounce loop candidates over consecutive queries.

        A match closer than ``dist_local`` frames to the query fails and
        resets the count. Otherwise the count grows while successive queries
        (at most ``max_nrFrames_between_queries`` apart) hit overlapping or
        nearby islands, and restarts at 1 when they do not.
        """
        params = self._params
        if query_id - island.best_id < params.dist_local:
            self._temporal_entries = 0
            return False

        previous = self._latest_matched_island
        if (
            self._temporal_entries == 0
            or previous is None
            or query_id - self._latest_query_id > params.max_nrFrames_between_queries
        ):
            self._temporal_entries = 1
        else:
            overlap = (
                island.start_id <= previous.end_id and previous.start_id <= island.end_id
            )
            gap = min(
                abs(previous.start_id - island.end_id),
                abs(island.start_id - previous.end_id),
            )
            if overlap or gap <= params.max_nrFrames_between_islands:
                self._temporal_entries += 1
            else:
                self._temporal_entries = 1

        self._latest_matched_island = dataclasses.replace(island)
        self._latest_query_id = query_id
        return self._temporal_entries >= params.min_temporal_matches

    def compute_matched_indices(
        self, query_frame: LCDFrame, match_frame: LCDFrame, lowe_ratio: float
    ) -> tuple[np.ndarray, np.ndarray]:
        """Match descriptors of two frames with Lowe's ratio test.

        A ratio of 1.0 or more keeps every nearest neighbour.

        Returns:
            Tuple of (query indices, match indices)
        """
        empty = np.empty(0, dtype=np.int64)
        if len(query_frame) == 0 or len(match_frame) == 0:
            return empty, empty

        knn_matches = self._descriptor_matcher.knnMatch(
            query_frame.descriptors_mat, match_frame.descriptors_mat, k=2
        )
        i_query, i_match = [], []
        for match_pair in knn_matches:
            if len(match_pair) == 0:
                continue
            best = match_pair[0]
            if lowe_ratio < 1.0:
                if len(match_pair) < 2 or best.distance >= lowe_ratio * match_pair[1].distance:
                    continue
            i_query.append(best.queryIdx)
            i_match.append(best.trainIdx)
        return np.asarray(i_query, dtype=np.int64), np.asarray(i_match, dtype=np.int64)

    def geometric_verification(
        self, match_frame: LCDFrame, query_frame: LCDFrame, debug_info: LcdDebugInfo
    ) -> tuple[bool, SE3]:
        """Check that the candidate pair admits a consistent epipolar geometry.

        Returns:
            Tuple of (verified, camMatch_T_camQuery up to scale)
        """
        params = self._params
        if params.geom_check == GeomVerifOption.NONE:
            return True, SE3.identity()
        if params.geom_check != GeomVerifOption.NISTER:
            raise ValueError(f"Unknown geometric verification option: {params.geom_check!r}")

        i_query, i_match = self.compute_matched_indices(
            query_frame, match_frame, params.lowe_ratio
        )
        debug_info.mono_input_size = len(i_query)
        if len(i_query) < params.min_correspondences:
            return False, SE3.identity()

        result = estimate_essential_five_point(
            match_frame.versors[i_match],
            query_frame.versors[i_query],
            threshold=params.ransac_threshold_mono,
            max_iterations=params.max_ransac_iterations_mono,
            probability=params.ransac_probability_mono,
            randomize=params.ransac_randomize_mono,
        )
        debug_info.mono_inliers = result.num_inliers
        debug_info.mono_iter = result.iterations
        if not result.success:
            return False, SE3.identity()

        inlier_ratio = result.num_inliers / len(i_query)
        if (
            inlier_ratio < params.ransac_inlier_threshold_mono
            or result.iterations >= params.max_ransac_iterations_mono
        ):
            return False, SE3.identity()
        return True, result.pose

    def recover_pose(
        self,
        match_frame: LCDFrame,
        query_frame: LCDFrame,
        camMatch_T_camQuery_mono: SE3,
        debug_info: LcdDebugInfo,
    ) -> tuple[bool, SE3]:
        """Recover the metric relative pose from the stereo 3D points.

        Returns:
            Tuple of (recovered, camMatch_T_camQuery)
        """
        params = self._params
        i_query, i_match = self.compute_matched_indices(query_frame, match_frame, 1.0)
        points_query = query_frame.keypoints_3d[i_query]
        points_match = match_frame.keypoints_3d[i_match]
        debug_info.stereo_input_size = len(i_query)

        if params.pose_recovery_option == PoseRecoveryOption.RANSAC_ARUN:
            return self._recover_pose_arun(points_match, points_query, debug_info)
        if params.pose_recovery_option == PoseRecoveryOption.GIVEN_ROT:
            return self._recover_pose_given_rotation(
                points_match, points_query, camMatch_T_camQuery_mono.rotation, debug_info
            )
        raise ValueError(f"Unknown pose recovery option: {params.pose_recovery_option!r}")

    def _recover_pose_arun(
        self, points_match: np.ndarray, points_query: np.ndarray, debug_info: LcdDebugInfo
    ) -> tuple[bool, SE3]:
        params = self._params
        if len(points_match) < 3:
            return False, SE3.identity()

        result = estimate_arun(
            points_match,
            points_query,
            threshold=params.ransac_threshold_stereo,
            max_iterations=params.max_ransac_iterations_stereo,
            probability=params.ransac_probability_stereo,
            rng=make_rng(params.ransac_randomize_stereo),
        )
        debug_info.stereo_inliers = result.num_inliers
        debug_info.stereo_iter = result.iterations
        if not result.success:
            return False, SE3.identity()

        inlier_ratio = result.num_inliers / len(points_match)
        if (
            inlier_ratio < params.ransac_inlier_threshold_stereo
            or result.iterations >= params.max_ransac_iterations_stereo
        ):
            return False, SE3.identity()
        return True, result.pose

    def _recover_pose_given_rotation(
        self,
        points_match: np.ndarray,
        points_query: np.ndarray,
        R: np.ndarray,
        debug_info: LcdDebugInfo,
    ) -> tuple[bool, SE3]:
        """Translation as the component-wise median of p_match - R p_query."""
        params = self._params
        if len(points_match) == 0:
            return False, SE3.identity()

        translations = points_match - points_query @ R.T
        t = np.median(translations, axis=0)
        inliers = np.linalg.norm(translations - t, axis=1) < params.ransac_threshold_stereo
        n_inliers = int(np.count_nonzero(inliers))
        debug_info.stereo_inliers = n_inliers
        debug_info.stereo_iter = 1

        if n_inliers / len(points_match) < params.ransac_inlier_threshold_stereo:
            return False, SE3.identity()
        return True, SE3(rotation=R, translation=t)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_lcd_debug_info(self) -> LcdDebugInfo:
        """Return a copy of the last query's diagnostics."""
        return dataclasses.replace(self._debug_info)

    def get_pgo_trajectory(self) -> dict[int, SE3]:
        """Return the optimized pose of every keyframe."""
        return self._pose_graph.values

    def get_pgo_nfg(self) -> tuple[Factor, ...]:
        """Return every factor added to the pose graph."""
        return self._pose_graph.factors

    def get_w_pose_map(self) -> SE3:
        """Return the drift correction ``W_T_corrected * W_T_odometry^-1`` of the latest keyframe."""
        key = self._pose_graph.last_key
        if key is None:
            return SE3.identity()
        corrected = self._pose_graph.get_pose(key)
        odometry = self._pose_graph.get_odometry_pose(key)
        return corrected @ odometry.inverse()

    @property
    def frames(self) -> LCDFrameStore:
        """Return the LCD frame store."""
        return self._frames

    @property
    def temporal_entries(self) -> int:
        """Return the current temporal consistency count."""
        return self._temporal_entries
