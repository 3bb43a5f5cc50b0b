"""Tests for the loop closure detector."""

import numpy as np
import pytest

from pyvio import GeomVerifOption, LoopClosureDetectorParams, PoseRecoveryOption
from pyvio.frontend import SE3, CameraParams, Frame, StereoCameraModel, StereoFrame
from pyvio.loop_closure import (
    LCDFrame,
    LCDStatus,
    LoopClosureDetector,
    LoopClosureDetectorInputPayload,
    LoopClosureFactor,
    LoopResult,
    OdometryFactor,
    QueryResult,
)

N_LOOP_POINTS = 60


class InMemoryPlaceIndex:
    """Place index returning preset candidates."""

    def __init__(self) -> None:
        self.results: list[QueryResult] = []
        self.nss = 1.0
        self.added: list[int] = []
        self.queries: list[int] = []

    def add(self, frame_id, descriptors):
        self.added.append(frame_id)

    def query(self, descriptors, max_frame_id, max_results=None):
        self.queries.append(max_frame_id)
        return list(self.results)

    def similarity(self, descriptors_a, descriptors_b):
        return self.nss


@pytest.fixture
def match_T_query() -> SE3:
    return SE3.from_rvec_tvec(np.array([0.05, -0.1, 0.02]), np.array([0.4, 0.05, -0.2]))


@pytest.fixture
def place_index() -> InMemoryPlaceIndex:
    return InMemoryPlaceIndex()


@pytest.fixture
def params() -> LoopClosureDetectorParams:
    return LoopClosureDetectorParams(ransac_randomize_mono=False, ransac_randomize_stereo=False)


@pytest.fixture
def make_lcd_frame(camera: CameraParams):
    """Factory for LCD frames observing camera-frame points."""

    def _make(
        frame_id: int,
        points: np.ndarray,
        descriptors: np.ndarray,
        id_kf: int | None = None,
        timestamp: int | None = None,
    ):
        keypoints = camera.project(points)
        return LCDFrame.create(
            timestamp=1000 * frame_id if timestamp is None else timestamp,
            frame_id=frame_id,
            id_kf=frame_id if id_kf is None else id_kf,
            keypoints=keypoints,
            keypoints_3d=points,
            descriptors=descriptors,
            versors=camera.calibrate_pixels(keypoints),
        )

    return _make


@pytest.fixture
def loop_scene(scene_points, match_T_query: SE3):
    """Points seen from the match and the query camera with shared descriptors."""
    points_match = scene_points(N_LOOP_POINTS, seed=21)
    points_query = match_T_query.inverse().transform_points(points_match)
    descriptors = np.random.default_rng(22).integers(0, 256, size=(N_LOOP_POINTS, 32), dtype=np.uint8)
    return points_match, points_query, descriptors


@pytest.fixture
def populate(scene_points, make_lcd_frame, loop_scene):
    """Fill a detector with filler frames and views of the loop scene."""

    def _populate(detector: LoopClosureDetector, n_frames: int, match_ids, query_ids) -> None:
        points_match, points_query, descriptors = loop_scene
        rng = np.random.default_rng(23)
        for frame_id in range(n_frames):
            if frame_id in match_ids:
                frame = make_lcd_frame(frame_id, points_match, descriptors)
            elif frame_id in query_ids:
                frame = make_lcd_frame(frame_id, points_query, descriptors)
            else:
                filler = rng.integers(0, 256, size=(20, 32), dtype=np.uint8)
                frame = make_lcd_frame(frame_id, scene_points(20, seed=frame_id), filler)
            detector.add_lcd_frame(frame)

    return _populate


@pytest.fixture
def detector(params, stereo_camera, place_index) -> LoopClosureDetector:
    return LoopClosureDetector(params, stereo_camera, place_index)


class TestLCDFrame:
    """Test suite for LCD frames and loop results."""

    def test_create_without_features(self):
        frame = LCDFrame.create(0, 0, 10, np.empty((0, 2)), np.empty((0, 3)), [], np.empty((0, 3)))

        assert len(frame) == 0
        assert frame.descriptors_mat.shape == (0, 32)
        assert frame.descriptors_vec == ()

    def test_create_rejects_mismatched_arrays(self, loop_scene):
        points, _, descriptors = loop_scene
        with pytest.raises(ValueError, match="keypoints_3d has 59 rows for 60 keypoints"):
            LCDFrame.create(0, 0, 0, np.zeros((60, 2)), points[:59], descriptors, np.zeros((60, 3)))

    def test_loop_result_defaults(self):
        result = LoopResult(LCDStatus.NO_GROUPS, query_id=4)

        assert not result.is_loop()
        assert result.match_id == -1
        assert result.relative_pose.is_close(SE3.identity())
        assert LoopResult.as_string(result.status) == "NO_GROUPS"


class TestLoopClosureDetectorInit:
    """Test suite for detector construction and the frame database."""

    def test_rejects_non_place_index(self, params, stereo_camera):
        with pytest.raises(ValueError, match="does not implement PlaceIndex"):
            LoopClosureDetector(params, stereo_camera, object())

    def test_add_lcd_frame_indexes_descriptors(
        self, detector: LoopClosureDetector, place_index, make_lcd_frame, loop_scene
    ):
        points, _, descriptors = loop_scene
        assert detector.add_lcd_frame(make_lcd_frame(0, points, descriptors)) == 0

        assert place_index.added == [0]
        assert len(detector.frames) == 1

    def test_add_lcd_frame_requires_next_id(
        self, detector: LoopClosureDetector, make_lcd_frame, loop_scene
    ):
        points, _, descriptors = loop_scene
        with pytest.raises(ValueError, match="Expected LCD frame id 0, got 4"):
            detector.add_lcd_frame(make_lcd_frame(4, points, descriptors))

    def test_process_and_add_frame(self, detector: LoopClosureDetector, textured_image, shift, stereo_camera):
        """Test LCD frame construction from a stereo pair."""
        disparity = 8.0
        left_frame = Frame(id=7, timestamp=777, image=textured_image)
        stereo_frame = StereoFrame(
            id=7,
            timestamp=777,
            left_frame=left_frame,
            right_image=shift(textured_image, -disparity, 0.0),
        )

        frame_id = detector.process_and_add_frame(stereo_frame, id_kf=70, timestamp=999)

        frame = detector.frames[frame_id]
        assert frame_id == 0
        assert frame.id_kf == 70
        assert frame.timestamp == 999
        assert len(frame) > 10
        assert frame.descriptors_mat.shape == (len(frame), 32)
        expected_depth = stereo_camera.left.fx * stereo_camera.baseline / disparity
        assert np.median(frame.keypoints_3d[:, 2]) == pytest.approx(expected_depth, rel=0.05)
        np.testing.assert_allclose(np.linalg.norm(frame.versors, axis=1), 1.0)

    def test_process_and_add_frame_requires_images(self, detector: LoopClosureDetector):
        stereo_frame = StereoFrame(id=0, timestamp=0, left_frame=Frame(id=0, timestamp=0))
        with pytest.raises(ValueError, match="missing an image"):
            detector.process_and_add_frame(stereo_frame)


class TestDetectLoop:
    """Test suite for the ordered loop closure checks."""

    def test_no_matches(self, detector, place_index, populate):
        populate(detector, 30, match_ids=[], query_ids=[])

        assert detector.detect_loop(29).status == LCDStatus.NO_MATCHES

    def test_recent_query_skips_the_index(self, detector, place_index, populate):
        """Test that queries without frames older than dist_local find nothing."""
        populate(detector, 10, match_ids=[], query_ids=[])
        place_index.results = [QueryResult(2, 0.9)]

        assert detector.detect_loop(9).status == LCDStatus.NO_MATCHES
        assert place_index.queries == []

    def test_loop_detected(self, detector, place_index, populate, match_T_query: SE3):
        """Test a full detection with verification and metric pose recovery."""
        populate(detector, 201, match_ids=[5], query_ids=[200])
        place_index.results = [QueryResult(5, 0.9)]

        result = detector.detect_loop(200)

        assert result.status == LCDStatus.LOOP_DETECTED
        assert result.is_loop()
        assert (result.query_id, result.match_id) == (200, 5)
        assert result.relative_pose.is_close(match_T_query, 1e-6, 1e-6)
        assert place_index.queries == [180]

        info = detector.get_lcd_debug_info()
        assert info.mono_input_size == N_LOOP_POINTS
        assert info.mono_inliers == N_LOOP_POINTS
        assert info.stereo_inliers == N_LOOP_POINTS
        assert info.loop_result is result

    def test_relative_pose_in_body_frame(self, params, place_index, populate, match_T_query: SE3):
        """Test that the camera relative pose is conjugated by the extrinsics."""
        B_T_cam = SE3.from_rvec_tvec(np.array([0.0, 0.0, np.pi / 2]), np.array([0.1, 0.0, 0.05]))
        camera = CameraParams(
            fx=450.0, fy=450.0, cx=320.0, cy=240.0, width=640, height=480, body_pose_cam=B_T_cam
        )
        detector = LoopClosureDetector(
            params, StereoCameraModel(left=camera, baseline=0.11), place_index
        )
        populate(detector, 30, match_ids=[2], query_ids=[29])
        place_index.results = [QueryResult(2, 0.9)]

        result = detector.detect_loop(29)

        expected = B_T_cam @ match_T_query @ B_T_cam.inverse()
        assert result.status == LCDStatus.LOOP_DETECTED
        assert result.relative_pose.is_close(expected, 1e-6, 1e-6)

    def test_low_nss_factor(self, detector, place_index, populate):
        populate(detector, 30, match_ids=[], query_ids=[])
        place_index.results = [QueryResult(3, 0.9)]

        place_index.nss = 10.0
        assert detector.detect_loop(29).status == LCDStatus.LOW_NSS_FACTOR

        place_index.nss = 0.0
        assert detector.detect_loop(29).status == LCDStatus.LOW_NSS_FACTOR

    def test_low_score(self, stereo_camera, place_index, populate):
        params = LoopClosureDetectorParams(use_nss=False, min_score=0.05)
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        populate(detector, 30, match_ids=[], query_ids=[])
        place_index.results = [QueryResult(3, 0.01)]

        assert detector.detect_loop(29).status == LCDStatus.LOW_SCORE

    def test_no_groups(self, stereo_camera, place_index, populate):
        params = LoopClosureDetectorParams(min_matches_per_island=2)
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        populate(detector, 30, match_ids=[], query_ids=[])
        place_index.results = [QueryResult(3, 0.9)]

        assert detector.detect_loop(29).status == LCDStatus.NO_GROUPS

    def test_match_too_recent_fails_temporal_constraint(self, detector, place_index, populate):
        """Test that a match inside dist_local of the query is rejected."""
        populate(detector, 201, match_ids=[190], query_ids=[200])
        place_index.results = [QueryResult(190, 0.9)]

        result = detector.detect_loop(200)

        assert result.status == LCDStatus.FAILED_TEMPORAL_CONSTRAINT
        assert result.match_id == 190
        assert detector.temporal_entries == 0

    def test_temporal_constraint_needs_consecutive_queries(
        self, stereo_camera, place_index, populate
    ):
        """Test debouncing over consecutive consistent queries."""
        params = LoopClosureDetectorParams(
            min_temporal_matches=2, ransac_randomize_mono=False, ransac_randomize_stereo=False
        )
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        populate(detector, 201, match_ids=[5], query_ids=[199, 200])
        place_index.results = [QueryResult(5, 0.9)]

        assert detector.detect_loop(199).status == LCDStatus.FAILED_TEMPORAL_CONSTRAINT
        assert detector.temporal_entries == 1
        assert detector.detect_loop(200).status == LCDStatus.LOOP_DETECTED
        assert detector.temporal_entries == 2

    def test_adjacent_match_fails_temporal_constraint(self, stereo_camera, place_index, populate):
        """Test that a confident match one frame before the query is not a loop."""
        params = LoopClosureDetectorParams(
            min_temporal_matches=3, ransac_randomize_mono=False, ransac_randomize_stereo=False
        )
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        populate(detector, 201, match_ids=[199], query_ids=[200])
        place_index.results = [QueryResult(199, 0.9)]

        result = detector.detect_loop(200)

        assert result.status == LCDStatus.FAILED_TEMPORAL_CONSTRAINT
        assert result.match_id == 199
        assert detector.temporal_entries == 0

    def test_single_query_below_min_temporal_matches(self, stereo_camera, place_index, populate):
        params = LoopClosureDetectorParams(min_temporal_matches=3)
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        populate(detector, 201, match_ids=[5], query_ids=[200])
        place_index.results = [QueryResult(5, 0.9)]

        assert detector.detect_loop(200).status == LCDStatus.FAILED_TEMPORAL_CONSTRAINT

    def test_unrelated_match_fails_geometric_verification(self, detector, place_index, populate):
        populate(detector, 201, match_ids=[5], query_ids=[200])
        place_index.results = [QueryResult(6, 0.9)]

        result = detector.detect_loop(200)

        assert result.status == LCDStatus.FAILED_GEOM_VERIFICATION
        assert result.match_id == 6
        assert result.relative_pose.is_close(SE3.identity())

    def test_inconsistent_points_fail_pose_recovery(
        self, stereo_camera, place_index, make_lcd_frame, loop_scene, scene_points
    ):
        """Test that 3D points disagreeing with the match fail Arun recovery."""
        params = LoopClosureDetectorParams(
            geom_check=GeomVerifOption.NONE, dist_local=1, ransac_randomize_stereo=False
        )
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        points_match, _, descriptors = loop_scene
        detector.add_lcd_frame(make_lcd_frame(0, points_match, descriptors))
        detector.add_lcd_frame(make_lcd_frame(1, scene_points(N_LOOP_POINTS, seed=99), descriptors))
        place_index.results = [QueryResult(0, 0.9)]

        assert detector.detect_loop(1).status == LCDStatus.FAILED_POSE_RECOVERY

    def test_given_rotation_pose_recovery(self, stereo_camera, place_index, populate, match_T_query: SE3):
        params = LoopClosureDetectorParams(
            pose_recovery_option=PoseRecoveryOption.GIVEN_ROT,
            ransac_randomize_mono=False,
        )
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        populate(detector, 201, match_ids=[5], query_ids=[200])
        place_index.results = [QueryResult(5, 0.9)]

        result = detector.detect_loop(200)

        assert result.status == LCDStatus.LOOP_DETECTED
        assert result.relative_pose.is_close(match_T_query, 1e-3, 1e-3)

    def test_compute_matched_indices(self, detector, make_lcd_frame, loop_scene):
        """Test descriptor matching with and without the ratio test."""
        points_match, points_query, descriptors = loop_scene
        order = np.random.default_rng(3).permutation(N_LOOP_POINTS)
        query = make_lcd_frame(1, points_query[order], descriptors[order])
        match = make_lcd_frame(0, points_match, descriptors)

        i_query, i_match = detector.compute_matched_indices(query, match, 0.7)
        np.testing.assert_array_equal(i_match, order[i_query])
        assert len(i_query) == N_LOOP_POINTS

        i_query, _ = detector.compute_matched_indices(query, match, 1.0)
        assert len(i_query) == N_LOOP_POINTS


class TestSpinOnce:
    """Test suite for the keyframe pipeline entry point."""

    @pytest.fixture
    def pipeline(self, stereo_camera, place_index, make_lcd_frame, loop_scene, scene_points, monkeypatch):
        """Detector whose frame extraction is replaced by synthetic LCD frames."""
        params = LoopClosureDetectorParams(
            dist_local=3, ransac_randomize_mono=False, ransac_randomize_stereo=False
        )
        detector = LoopClosureDetector(params, stereo_camera, place_index)
        points_match, points_query, descriptors = loop_scene
        rng = np.random.default_rng(31)

        def fake_process_and_add_frame(stereo_frame, id_kf=None, timestamp=None):
            frame_id = detector.frames.next_id
            if frame_id == 1:
                points, frame_descriptors = points_match, descriptors
            elif frame_id == 9:
                points, frame_descriptors = points_query, descriptors
            else:
                points = scene_points(20, seed=100 + frame_id)
                frame_descriptors = rng.integers(0, 256, size=(20, 32), dtype=np.uint8)
            frame = make_lcd_frame(
                frame_id, points, frame_descriptors, id_kf=id_kf, timestamp=timestamp
            )
            return detector.add_lcd_frame(frame)

        monkeypatch.setattr(detector, "process_and_add_frame", fake_process_and_add_frame)
        return detector

    @staticmethod
    def _payload(kf_id: int) -> LoopClosureDetectorInputPayload:
        timestamp = 1000 * kf_id
        return LoopClosureDetectorInputPayload(
            timestamp_kf=timestamp,
            cur_kf_id=kf_id,
            stereo_frame=StereoFrame(
                id=kf_id, timestamp=timestamp, left_frame=Frame(id=kf_id, timestamp=timestamp)
            ),
            W_Pose_Blkf=SE3(rotation=np.eye(3), translation=np.array([0.55 * kf_id, 0.0, 0.0])),
        )

    def test_emits_odometry_and_loop_factors(self, pipeline: LoopClosureDetector, place_index):
        """Test factors, keyframe ids and drift correction over a short sequence."""
        kf_ids = [100 + 2 * i for i in range(10)]
        outputs = [pipeline.spin_once(self._payload(kf_id)) for kf_id in kf_ids[:-1]]
        place_index.results = [QueryResult(1, 0.9)]
        last = pipeline.spin_once(self._payload(kf_ids[-1]))

        assert not any(out.is_loop_closure for out in outputs)
        assert outputs[-1].W_Pose_Map.is_close(SE3.identity(), 1e-9, 1e-9)
        assert len(outputs[-1].nfg) == 9

        assert last.is_loop_closure
        assert (last.id_match, last.id_recent) == (102, 118)
        assert (last.timestamp_match, last.timestamp_query) == (102_000, 118_000)
        assert last.timestamp_kf == 118_000
        assert sorted(last.states) == kf_ids
        assert len(last.nfg) == 11
        assert all(isinstance(f, OdometryFactor) for f in last.nfg[:10])
        loop_factor = last.nfg[-1]
        assert isinstance(loop_factor, LoopClosureFactor)
        assert (loop_factor.ref_key, loop_factor.cur_key) == (102, 118)
        assert not last.W_Pose_Map.is_close(SE3.identity(), 1e-3, 1e-3)
        assert last.W_Pose_Blkf_corrected.is_close(last.states[118], 1e-12, 1e-12)

    def test_rejects_non_increasing_keyframe_ids(self, pipeline: LoopClosureDetector):
        pipeline.spin_once(self._payload(100))
        with pytest.raises(ValueError, match="Keyframe ids must increase"):
            pipeline.spin_once(self._payload(100))


class TestSpinOnceWithImages:
    """Test suite for spin_once on real stereo images."""

    @staticmethod
    def _payload(kf_id: int, left=None, right=None) -> LoopClosureDetectorInputPayload:
        timestamp = 1000 * kf_id
        return LoopClosureDetectorInputPayload(
            timestamp_kf=timestamp,
            cur_kf_id=kf_id,
            stereo_frame=StereoFrame(
                id=kf_id,
                timestamp=timestamp,
                left_frame=Frame(id=kf_id, timestamp=timestamp, image=left),
                right_image=right,
            ),
            W_Pose_Blkf=SE3(rotation=np.eye(3), translation=np.array([0.5 * kf_id, 0.0, 0.0])),
        )

    @pytest.fixture
    def stereo_images(self, textured_image, shift):
        return textured_image, shift(textured_image, -8.0, 0.0)

    def test_extracts_frames_and_odometry(self, detector: LoopClosureDetector, place_index, stereo_images):
        """Test ORB extraction, indexing and odometry for consecutive keyframes."""
        outputs = [detector.spin_once(self._payload(kf_id, *stereo_images)) for kf_id in (10, 11)]

        assert not any(out.is_loop_closure for out in outputs)
        assert place_index.added == [0, 1]
        assert [frame.id_kf for frame in detector.frames] == [10, 11]
        assert [frame.timestamp for frame in detector.frames] == [10_000, 11_000]
        assert all(len(frame) > 10 for frame in detector.frames)
        assert len(outputs[-1].nfg) == 2
        assert sorted(outputs[-1].states) == [10, 11]
        assert outputs[-1].W_Pose_Map.is_close(SE3.identity(), 1e-9, 1e-9)
        assert detector.get_lcd_debug_info().loop_result.status == LCDStatus.NO_MATCHES

    def test_failed_keyframe_leaves_no_trace(
        self, detector: LoopClosureDetector, place_index, stereo_images
    ):
        """Test that a keyframe without images changes nothing and can be resubmitted."""
        with pytest.raises(ValueError, match="missing an image"):
            detector.spin_once(self._payload(10))

        assert detector.get_pgo_nfg() == ()
        assert len(detector.frames) == 0
        assert place_index.added == []

        output = detector.spin_once(self._payload(10, *stereo_images))

        assert len(output.nfg) == 1
        assert len(detector.frames) == 1
