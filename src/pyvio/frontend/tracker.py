"""Feature tracker with geometric outlier rejection.

The tracker keeps a stream of frames supplied with persistent landmarks:

1. ``feature_detection`` tops a frame up with new corners
2. ``feature_tracking`` follows the landmarks of a reference frame into the
   current frame with pyramidal Lucas-Kanade flow
3. ``geometric_outlier_rejection_*`` estimate the relative pose
   ``ref_T_cur`` with RANSAC and discard the correspondences that disagree

Rejected correspondences are marked rather than deleted: a mono outlier
loses its landmark id (-1) in the current frame, a stereo outlier gets the
right keypoint status FAILED_ARUN with zero depth and 3D point.
"""

from __future__ import annotations

import dataclasses
import logging
import time

import cv2
import numpy as np

from ..config import TrackerParams
from .camera import CameraParams, StereoCameraModel
from .frame import Frame, KeypointStatus, StereoFrame
from .optical_flow_predictor import OpticalFlowPredictorFactory
from .pose import SE3
from .ransac import (
    estimate_arun,
    estimate_essential_five_point,
    estimate_translation_given_rotation,
    estimate_translation_mahalanobis,
    make_rng,
)
from .tracker_definitions import DebugTrackerInfo, TrackingStatus

logger = logging.getLogger(__name__)

KeypointMatch = tuple[int, int]


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class Tracker:
    """Detects, tracks and geometrically verifies keypoints across frames."""

    def __init__(
        self,
        params: TrackerParams,
        camera: CameraParams,
        cam_mask: np.ndarray | None = None,
        stereo_camera: StereoCameraModel | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            params: Tracker parameters
            camera: Left (or mono) camera intrinsics
            cam_mask: Optional uint8 mask of the image (255 = usable)
            stereo_camera: Stereo model, required for the stereo
                given-rotation rejection (point covariances)

        Raises:
            ValueError: If the mask size does not match the camera
        """
        self._params = params
        self._camera = camera
        self._stereo_camera = stereo_camera

        if cam_mask is None:
            cam_mask = np.full((camera.height, camera.width), 255, dtype=np.uint8)
        cam_mask = np.asarray(cam_mask, dtype=np.uint8)
        if cam_mask.shape != (camera.height, camera.width):
            raise ValueError(
                f"Camera mask must be {camera.height}x{camera.width}, got {cam_mask.shape}"
            )
        self._cam_mask = cam_mask

        self._predictor = OpticalFlowPredictorFactory.make(
            params.optical_flow_predictor_type, camera.to_matrix()
        )
        self._landmark_count = 0
        self._debug_info = DebugTrackerInfo()

        pixel_sigma = params.stereo_pixel_sigma
        self._stereo_pixel_covariance = (pixel_sigma**2) * np.eye(3)

    # ------------------------------------------------------------------
    # Detection and tracking
    # ------------------------------------------------------------------

    def feature_detection(self, frame: Frame) -> None:
        """Top up a frame with new corners away from its existing keypoints.

        Existing landmarks are aged by one. New corners receive fresh,
        increasing landmark ids and age 1.
        """
        if frame.image is None:
            raise ValueError(f"Frame {frame.id} has no image")
        start = time.perf_counter()

        valid = frame.valid_indices
        frame.landmarks_age[valid] += 1

        need_n_corners = self._params.max_features_per_frame - len(valid)
        self._debug_info.need_n_corners = max(need_n_corners, 0)

        n_new = 0
        if need_n_corners > 0:
            mask = self._cam_mask.copy()
            radius = int(round(self._params.min_distance))
            if radius > 0:
                for u, v in frame.keypoints[valid]:
                    cv2.circle(mask, (int(round(u)), int(round(v))), radius, 0, -1)

            keypoints, scores = self.detect_corners(frame, mask, need_n_corners)
            n_new = len(keypoints)
            if n_new > 0:
                ids = np.arange(self._landmark_count, self._landmark_count + n_new)
                self._landmark_count += n_new
                frame.add_keypoints(
                    keypoints, ids, scores, self._camera.calibrate_pixels(keypoints)
                )

        self._debug_info.extracted_corners = n_new
        self._debug_info.nr_detected_features = n_new
        self._debug_info.feature_detection_time = _elapsed_ms(start)
        logger.debug(
            "Frame %d: needed %d corners, extracted %d", frame.id, need_n_corners, n_new
        )

    def detect_corners(
        self, frame: Frame, mask: np.ndarray, need_n_corners: int
    ) -> tuple[np.ndarray, np.ndarray]:
        """Extract up to ``need_n_corners`` corners inside ``mask``.

        Returns:
            Tuple of (Nx2 keypoints, (N,) corner scores)
        """
        if need_n_corners <= 0:
            return np.empty((0, 2), dtype=np.float32), np.empty(0)

        image = frame.image
        corners = cv2.goodFeaturesToTrack(
            image,
            maxCorners=int(need_n_corners),
            qualityLevel=self._params.quality_level,
            minDistance=self._params.min_distance,
            mask=mask,
            blockSize=self._params.block_size,
            useHarrisDetector=self._params.use_harris_detector,
            k=self._params.k,
        )
        if corners is None or len(corners) == 0:
            return np.empty((0, 2), dtype=np.float32), np.empty(0)

        corners = corners.astype(np.float32)
        if self._params.enable_subpixel_refinement:
            criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_COUNT, 10, 0.01)
            corners = cv2.cornerSubPix(image, corners, (5, 5), (-1, -1), criteria)
        keypoints = corners.reshape(-1, 2)

        if self._params.use_harris_detector:
            response = cv2.cornerHarris(image, self._params.block_size, 3, self._params.k)
        else:
            response = cv2.cornerMinEigenVal(image, self._params.block_size)
        cols = np.clip(np.round(keypoints[:, 0]).astype(int), 0, image.shape[1] - 1)
        rows = np.clip(np.round(keypoints[:, 1]).astype(int), 0, image.shape[0] - 1)
        scores = response[rows, cols].astype(np.float64)

        return keypoints, scores

    def feature_tracking(self, ref_frame: Frame, cur_frame: Frame) -> None:
        """Track the landmarks of ``ref_frame`` into ``cur_frame``.

        ``cur_frame`` is refilled with the surviving tracks (same landmark
        ids, ages and scores). Tracks that fail, leave the image or exceed
        ``max_feature_age`` are dropped and marked -1 in ``ref_frame``.
        """
        if ref_frame.image is None or cur_frame.image is None:
            raise ValueError("Both frames need images for feature tracking")
        start = time.perf_counter()

        valid = ref_frame.valid_indices
        prev_kps = ref_frame.keypoints[valid]

        keep = np.zeros(len(valid), dtype=bool)
        tracked = np.empty((0, 2), dtype=np.float32)
        if len(valid) > 0:
            predicted = self._predictor.predict_flow(prev_kps)
            criteria = (
                cv2.TERM_CRITERIA_COUNT + cv2.TERM_CRITERIA_EPS,
                self._params.klt_max_iter,
                self._params.klt_eps,
            )
            tracked, status, _ = cv2.calcOpticalFlowPyrLK(
                ref_frame.image,
                cur_frame.image,
                prev_kps.reshape(-1, 1, 2),
                predicted.reshape(-1, 1, 2).copy(),
                winSize=(self._params.klt_win_size, self._params.klt_win_size),
                maxLevel=self._params.klt_max_level,
                criteria=criteria,
                flags=cv2.OPTFLOW_USE_INITIAL_FLOW,
            )
            tracked = tracked.reshape(-1, 2)
            keep = (
                status.reshape(-1).astype(bool)
                & self._camera.in_image(tracked)
                & (ref_frame.landmarks_age[valid] <= self._params.max_feature_age)
            )
            ref_frame.landmarks[valid[~keep]] = -1

        kept = valid[keep]
        cur_frame.keypoints = tracked[keep].astype(np.float32).reshape(-1, 2)
        cur_frame.landmarks = ref_frame.landmarks[kept].copy()
        cur_frame.landmarks_age = ref_frame.landmarks_age[kept].copy()
        cur_frame.scores = ref_frame.scores[kept].copy()
        cur_frame.versors = self._camera.calibrate_pixels(cur_frame.keypoints)

        self._debug_info.nr_tracked_features = len(kept)
        self._debug_info.feature_tracking_time = _elapsed_ms(start)
        logger.debug(
            "Tracked %d of %d landmarks from frame %d to %d",
            len(kept),
            len(valid),
            ref_frame.id,
            cur_frame.id,
        )

    def update_inter_frame_rotation(self, R: np.ndarray) -> None:
        """Forward the rotation between tracked frames to the predictor."""
        self._predictor.update_inter_frame_rotation(R)

    # ------------------------------------------------------------------
    # Geometric outlier rejection
    # ------------------------------------------------------------------

    def geometric_outlier_rejection_mono(
        self, ref_frame: Frame, cur_frame: Frame
    ) -> tuple[TrackingStatus, SE3]:
        """Five-point RANSAC between two frames.

        Returns:
            Tuple of (status, ref_T_cur with unit translation)
        """
        start = time.perf_counter()
        matches = self.find_matching_keypoints(ref_frame, cur_frame)
        self._debug_info.nr_mono_putatives = len(matches)

        if len(matches) < 5:
            logger.debug("Mono RANSAC skipped: %d correspondences", len(matches))
            self._record_mono(0, 0, start)
            return TrackingStatus.FEW_MATCHES, SE3.identity()

        ref_idx, cur_idx = self._split(matches)
        result = estimate_essential_five_point(
            ref_frame.versors[ref_idx],
            cur_frame.versors[cur_idx],
            threshold=self._params.ransac_threshold_mono,
            max_iterations=self._params.ransac_max_iterations,
            probability=self._params.ransac_probability,
            randomize=self._params.ransac_randomize,
        )
        return self._finish_mono(ref_frame, cur_frame, matches, result, start)

    def geometric_outlier_rejection_mono_given_rotation(
        self, ref_frame: Frame, cur_frame: Frame, R: np.ndarray
    ) -> tuple[TrackingStatus, SE3]:
        """Two-point translation RANSAC with the rotation ref_R_cur fixed.

        Returns:
            Tuple of (status, ref_T_cur with unit translation)
        """
        start = time.perf_counter()
        matches = self.find_matching_keypoints(ref_frame, cur_frame)
        self._debug_info.nr_mono_putatives = len(matches)

        if len(matches) < 2:
            logger.debug("Mono given-rotation RANSAC skipped: %d correspondences", len(matches))
            self._record_mono(0, 0, start)
            return TrackingStatus.FEW_MATCHES, SE3.identity()

        ref_idx, cur_idx = self._split(matches)
        result = estimate_translation_given_rotation(
            ref_frame.versors[ref_idx],
            cur_frame.versors[cur_idx],
            R,
            threshold=self._params.ransac_threshold_mono,
            max_iterations=self._params.ransac_max_iterations,
            probability=self._params.ransac_probability,
            rng=make_rng(self._params.ransac_randomize),
        )
        return self._finish_mono(ref_frame, cur_frame, matches, result, start)

    def _finish_mono(self, ref_frame, cur_frame, matches, result, start):
        if not result.success:
            self._record_mono(0, result.iterations, start)
            return TrackingStatus.INVALID, SE3.identity()

        inlier_matches = self.remove_outliers_mono(
            ref_frame, cur_frame, matches, np.flatnonzero(result.inliers), result.iterations
        )
        self._debug_info.mono_ransac_time = _elapsed_ms(start)

        if len(inlier_matches) < self._params.min_nr_mono_inliers:
            status = TrackingStatus.FEW_MATCHES
        else:
            disparity = self.compute_median_disparity(
                ref_frame.keypoints, cur_frame.keypoints, inlier_matches
            )
            if disparity < self._params.disparity_threshold:
                status = TrackingStatus.LOW_DISPARITY
            else:
                status = TrackingStatus.VALID

        logger.debug(
            "Mono rejection %d->%d: %s (%d/%d inliers)",
            ref_frame.id,
            cur_frame.id,
            status.value,
            len(inlier_matches),
            len(matches),
        )
        return status, result.pose

    def geometric_outlier_rejection_stereo(
        self, ref_stereo_frame: StereoFrame, cur_stereo_frame: StereoFrame
    ) -> tuple[TrackingStatus, SE3]:
        """Three-point Arun RANSAC on the stereo 3D points.

        Returns:
            Tuple of (status, metric ref_T_cur)
        """
        start = time.perf_counter()
        matches = self.find_matching_stereo_keypoints(ref_stereo_frame, cur_stereo_frame)
        self._debug_info.nr_stereo_putatives = len(matches)

        if len(matches) < 3:
            logger.debug("Stereo RANSAC skipped: %d correspondences", len(matches))
            self._record_stereo(0, 0, start)
            return TrackingStatus.FEW_MATCHES, SE3.identity()

        ref_idx, cur_idx = self._split(matches)
        result = estimate_arun(
            ref_stereo_frame.keypoints_3d[ref_idx],
            cur_stereo_frame.keypoints_3d[cur_idx],
            threshold=self._params.ransac_threshold_stereo,
            max_iterations=self._params.ransac_max_iterations,
            probability=self._params.ransac_probability,
            rng=make_rng(self._params.ransac_randomize),
        )
        if not result.success:
            self._record_stereo(0, result.iterations, start)
            return TrackingStatus.INVALID, SE3.identity()

        inlier_matches = self.remove_outliers_stereo(
            ref_stereo_frame,
            cur_stereo_frame,
            matches,
            np.flatnonzero(result.inliers),
            result.iterations,
        )
        self._debug_info.stereo_ransac_time = _elapsed_ms(start)
        status = (
            TrackingStatus.FEW_MATCHES
            if len(inlier_matches) < self._params.min_nr_stereo_inliers
            else TrackingStatus.VALID
        )
        logger.debug(
            "Stereo rejection %d->%d: %s (%d/%d inliers)",
            ref_stereo_frame.id,
            cur_stereo_frame.id,
            status.value,
            len(inlier_matches),
            len(matches),
        )
        return status, result.pose

    def geometric_outlier_rejection_stereo_given_rotation(
        self,
        ref_stereo_frame: StereoFrame,
        cur_stereo_frame: StereoFrame,
        R: np.ndarray,
    ) -> tuple[tuple[TrackingStatus, SE3], np.ndarray]:
        """One-point translation consensus with the rotation ref_R_cur fixed.

        Returns:
            ((status, ref_T_cur), 3x3 translation covariance)

        Raises:
            ValueError: If the tracker was built without a stereo camera
        """
        if self._stereo_camera is None:
            raise ValueError("Stereo given-rotation rejection needs a stereo camera")
        R = np.asarray(R, dtype=np.float64)
        start = time.perf_counter()
        matches = self.find_matching_stereo_keypoints(ref_stereo_frame, cur_stereo_frame)
        self._debug_info.nr_stereo_putatives = len(matches)

        if len(matches) == 0:
            self._record_stereo(0, 0, start)
            return (TrackingStatus.FEW_MATCHES, SE3(R, np.zeros(3))), np.zeros((3, 3))

        translations = np.empty((len(matches), 3))
        covariances = np.empty((len(matches), 3, 3))
        for k, (i_ref, i_cur) in enumerate(matches):
            p_ref, cov_ref = self.get_point3_and_covariance(
                ref_stereo_frame, self._stereo_camera, i_ref, self._stereo_pixel_covariance
            )
            p_cur, cov_cur = self.get_point3_and_covariance(
                cur_stereo_frame,
                self._stereo_camera,
                i_cur,
                self._stereo_pixel_covariance,
                rotation=R,
            )
            translations[k] = p_ref - p_cur
            covariances[k] = cov_ref + cov_cur

        result = estimate_translation_mahalanobis(
            translations,
            covariances,
            R,
            threshold=self._params.ransac_threshold_stereo_given_rotation,
        )
        if not result.success:
            self._record_stereo(0, result.iterations, start)
            return (TrackingStatus.INVALID, SE3(R, np.zeros(3))), np.zeros((3, 3))

        inlier_matches = self.remove_outliers_stereo(
            ref_stereo_frame,
            cur_stereo_frame,
            matches,
            np.flatnonzero(result.inliers),
            result.iterations,
        )
        self._debug_info.stereo_ransac_time = _elapsed_ms(start)
        status = (
            TrackingStatus.FEW_MATCHES
            if len(inlier_matches) < self._params.min_nr_stereo_inliers
            else TrackingStatus.VALID
        )
        return (status, result.pose), result.covariance

    # ------------------------------------------------------------------
    # Outlier bookkeeping
    # ------------------------------------------------------------------

    def remove_outliers_mono(
        self,
        ref_frame: Frame,
        cur_frame: Frame,
        matches: list[KeypointMatch],
        inliers: np.ndarray,
        iterations: int,
    ) -> list[KeypointMatch]:
        """Discard mono outliers by clearing their landmark in ``cur_frame``.

        Args:
            matches: Putative (ref_index, cur_index) correspondences
            inliers: Indices into ``matches`` of the RANSAC inliers
            iterations: RANSAC iterations, recorded in the debug info

        Returns:
            The inlier correspondences
        """
        for k in self.find_outliers(matches, inliers):
            cur_frame.landmarks[matches[k][1]] = -1

        inlier_matches = [matches[k] for k in sorted(set(int(i) for i in inliers))]
        self._debug_info.nr_mono_inliers = len(inlier_matches)
        self._debug_info.nr_mono_putatives = len(matches)
        self._debug_info.mono_ransac_iters = int(iterations)
        return inlier_matches

    def remove_outliers_stereo(
        self,
        ref_stereo_frame: StereoFrame,
        cur_stereo_frame: StereoFrame,
        matches: list[KeypointMatch],
        inliers: np.ndarray,
        iterations: int,
    ) -> list[KeypointMatch]:
        """Discard stereo outliers by invalidating their right keypoint in both frames.

        Returns:
            The inlier correspondences
        """
        for k in self.find_outliers(matches, inliers):
            i_ref, i_cur = matches[k]
            for stereo_frame, index in ((ref_stereo_frame, i_ref), (cur_stereo_frame, i_cur)):
                stereo_frame.right_keypoints_status[index] = KeypointStatus.FAILED_ARUN
                stereo_frame.keypoints_depth[index] = 0.0
                stereo_frame.keypoints_3d[index] = 0.0

        inlier_matches = [matches[k] for k in sorted(set(int(i) for i in inliers))]
        self._debug_info.nr_stereo_inliers = len(inlier_matches)
        self._debug_info.nr_stereo_putatives = len(matches)
        self._debug_info.stereo_ransac_iters = int(iterations)
        return inlier_matches

    def check_status_right_keypoints(self, statuses: list[KeypointStatus]) -> None:
        """Count the right keypoint statuses into the debug info."""
        info = self._debug_info
        info.reset_right_keypoint_counts()
        for status in statuses:
            if status == KeypointStatus.VALID:
                info.nr_valid_rkp += 1
            elif status == KeypointStatus.NO_LEFT_RECT:
                info.nr_no_left_rect_rkp += 1
            elif status == KeypointStatus.NO_RIGHT_RECT:
                info.nr_no_right_rect_rkp += 1
            elif status == KeypointStatus.NO_DEPTH:
                info.nr_no_depth_rkp += 1
            elif status == KeypointStatus.FAILED_ARUN:
                info.nr_failed_arun_rkp += 1

    # ------------------------------------------------------------------
    # Static helpers
    # ------------------------------------------------------------------

    @staticmethod
    def find_outliers(matches: list[KeypointMatch], inliers: np.ndarray) -> list[int]:
        """Return the indices into ``matches`` that are not inliers."""
        inlier_set = set(int(i) for i in np.asarray(inliers).reshape(-1))
        return [k for k in range(len(matches)) if k not in inlier_set]

    @staticmethod
    def find_matching_keypoints(ref_frame: Frame, cur_frame: Frame) -> list[KeypointMatch]:
        """Pair keypoints of two frames that observe the same landmark.

        Returns:
            (ref_index, cur_index) pairs ordered by current index
        """
        ref_index = {int(lmk): i for i, lmk in enumerate(ref_frame.landmarks) if lmk != -1}
        matches = []
        for i_cur, lmk in enumerate(cur_frame.landmarks):
            if lmk == -1:
                continue
            i_ref = ref_index.get(int(lmk))
            if i_ref is not None:
                matches.append((i_ref, i_cur))
        return matches

    @staticmethod
    def find_matching_stereo_keypoints(
        ref_stereo_frame: StereoFrame,
        cur_stereo_frame: StereoFrame,
        matches_mono: list[KeypointMatch] | None = None,
    ) -> list[KeypointMatch]:
        """Keep the mono matches whose right keypoints are VALID in both frames."""
        if matches_mono is None:
            matches_mono = Tracker.find_matching_keypoints(
                ref_stereo_frame.left_frame, cur_stereo_frame.left_frame
            )
        ref_status = ref_stereo_frame.right_keypoints_status
        cur_status = cur_stereo_frame.right_keypoints_status
        return [
            (i_ref, i_cur)
            for i_ref, i_cur in matches_mono
            if ref_status[i_ref] == KeypointStatus.VALID
            and cur_status[i_cur] == KeypointStatus.VALID
        ]

    @staticmethod
    def compute_median_disparity(
        ref_keypoints: np.ndarray,
        cur_keypoints: np.ndarray,
        matches: list[KeypointMatch],
    ) -> float:
        """Median pixel displacement of matched keypoints (0 for no matches)."""
        if len(matches) == 0:
            logger.warning("No correspondences to compute median disparity")
            return 0.0
        ref_idx = [m[0] for m in matches]
        cur_idx = [m[1] for m in matches]
        ref_kps = np.asarray(ref_keypoints, dtype=np.float64)[ref_idx]
        cur_kps = np.asarray(cur_keypoints, dtype=np.float64)[cur_idx]
        return float(np.median(np.linalg.norm(ref_kps - cur_kps, axis=1)))

    @staticmethod
    def get_point3_and_covariance(
        stereo_frame: StereoFrame,
        stereo_camera: StereoCameraModel,
        index: int,
        pixel_covariance: np.ndarray,
        rotation: np.ndarray | None = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Triangulate keypoint ``index`` and propagate its pixel covariance.

        The covariance of (uL, uR, v) is mapped through the back-projection
        Jacobian: ``C = J Sigma J^T``. With ``rotation`` the point and its
        covariance are rotated: ``R p``, ``R C R^T``.

        Raises:
            ValueError: If the keypoint's disparity is too small
        """
        u_left, v = stereo_frame.left_keypoints[index]
        u_right = stereo_frame.right_keypoints[index, 0]
        point, J = stereo_camera.backproject_with_jacobian(
            float(u_left), float(u_right), float(v)
        )
        covariance = J @ np.asarray(pixel_covariance, dtype=np.float64) @ J.T
        if rotation is not None:
            rotation = np.asarray(rotation, dtype=np.float64)
            point = rotation @ point
            covariance = rotation @ covariance @ rotation.T
        return point, covariance

    @staticmethod
    def _split(matches: list[KeypointMatch]) -> tuple[np.ndarray, np.ndarray]:
        pairs = np.asarray(matches, dtype=np.int64).reshape(-1, 2)
        return pairs[:, 0], pairs[:, 1]

    def _record_mono(self, inliers: int, iterations: int, start: float) -> None:
        self._debug_info.nr_mono_inliers = inliers
        self._debug_info.mono_ransac_iters = iterations
        self._debug_info.mono_ransac_time = _elapsed_ms(start)

    def _record_stereo(self, inliers: int, iterations: int, start: float) -> None:
        self._debug_info.nr_stereo_inliers = inliers
        self._debug_info.stereo_ransac_iters = iterations
        self._debug_info.stereo_ransac_time = _elapsed_ms(start)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_tracker_debug_info(self) -> DebugTrackerInfo:
        """Return a copy of the debug counters."""
        return dataclasses.replace(self._debug_info)

    @property
    def landmark_count(self) -> int:
        """Return the next landmark id to be assigned."""
        return self._landmark_count

    @property
    def cam_mask(self) -> np.ndarray:
        """Return the detection mask."""
        return self._cam_mask

    @property
    def params(self) -> TrackerParams:
        """Return tracker parameters."""
        return self._params
