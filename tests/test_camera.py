"""Tests for pose and camera models."""

import numpy as np
import pytest

from pyvio.frontend import SE3, CameraParams, StereoCameraModel
from pyvio.frontend.pose import rotation_angle, rotation_from_rvec


class TestSE3:
    """Test suite for SE3 poses."""

    def test_between_recovers_relative_pose(self, ref_T_cur: SE3):
        """Test that between() of two absolute poses gives the relative one."""
        W_T_ref = SE3.from_rvec_tvec(np.array([0.0, 0.3, 0.0]), np.array([1.0, 2.0, 0.5]))
        W_T_cur = W_T_ref @ ref_T_cur

        assert W_T_ref.between(W_T_cur).is_close(ref_T_cur, 1e-9, 1e-9)

    def test_inverse_composes_to_identity(self, ref_T_cur: SE3):
        """Test that a pose composed with its inverse is the identity."""
        assert (ref_T_cur @ ref_T_cur.inverse()).is_close(SE3.identity(), 1e-12, 1e-12)

    def test_transform_points_maps_cur_into_ref(self, ref_T_cur: SE3):
        """Test the p_ref = R p_cur + t convention."""
        p_cur = np.array([[0.0, 0.0, 1.0], [1.0, -1.0, 4.0]])
        p_ref = ref_T_cur.transform_points(p_cur)

        np.testing.assert_allclose(p_ref[1], ref_T_cur.rotation @ p_cur[1] + ref_T_cur.translation)

    def test_log_round_trip(self):
        """Test that log() returns the Rodrigues vector and translation."""
        rvec = np.array([0.1, -0.2, 0.05])
        pose = SE3.from_rvec_tvec(rvec, np.array([1.0, 2.0, 3.0]))

        np.testing.assert_allclose(pose.log(), [0.1, -0.2, 0.05, 1.0, 2.0, 3.0], atol=1e-9)
        assert rotation_angle(rotation_from_rvec(rvec)) == pytest.approx(np.linalg.norm(rvec))

    def test_invalid_shapes(self):
        """Test that malformed rotations and translations are rejected."""
        with pytest.raises(ValueError, match="Rotation must be 3x3"):
            SE3(rotation=np.eye(2), translation=np.zeros(3))
        with pytest.raises(ValueError, match="Translation must be"):
            SE3(rotation=np.eye(3), translation=np.zeros(2))


class TestCameraParams:
    """Test suite for pinhole intrinsics."""

    def test_versors_are_unit_and_reproject(self, camera: CameraParams):
        """Test that calibrated pixels are unit rays projecting back to the pixel."""
        pixels = np.array([[320.0, 240.0], [10.0, 470.0], [600.5, 33.25]])
        versors = camera.calibrate_pixels(pixels)

        np.testing.assert_allclose(np.linalg.norm(versors, axis=1), 1.0)
        np.testing.assert_allclose(camera.project(versors), pixels, atol=1e-9)
        np.testing.assert_allclose(versors[0], [0.0, 0.0, 1.0])

    def test_in_image(self, camera: CameraParams):
        """Test the image bounds check."""
        mask = camera.in_image(np.array([[0.0, 0.0], [639.0, 479.0], [-0.5, 10.0], [640.0, 10.0]]))
        assert mask.tolist() == [True, True, False, False]

    def test_from_dict(self):
        """Test building intrinsics and extrinsics from a YAML-like mapping."""
        T_BS = np.eye(4)
        T_BS[:3, 3] = [0.1, 0.2, 0.3]
        camera = CameraParams.from_dict(
            {
                "intrinsics": [458.6, 457.3, 367.2, 248.4],
                "resolution": [752, 480],
                "T_BS": T_BS.flatten().tolist(),
            }
        )

        assert camera.image_size == (752, 480)
        np.testing.assert_allclose(camera.body_pose_cam.translation, [0.1, 0.2, 0.3])

    def test_from_dict_missing_intrinsics(self):
        """Test that a missing intrinsics entry raises an error."""
        with pytest.raises(ValueError, match="intrinsics"):
            CameraParams.from_dict({"resolution": [752, 480]})

    def test_invalid_focal_length(self):
        """Test that non-positive focal lengths are rejected."""
        with pytest.raises(ValueError, match="Focal lengths must be positive"):
            CameraParams(fx=0.0, fy=1.0, cx=0.0, cy=0.0, width=10, height=10)


class TestStereoCameraModel:
    """Test suite for the rectified stereo model."""

    def test_backproject_inverts_project(self, stereo_camera: StereoCameraModel):
        """Test that triangulating a projected point recovers it."""
        point = np.array([0.4, -0.3, 3.5])
        u_left, u_right, v = stereo_camera.project(point)

        np.testing.assert_allclose(stereo_camera.backproject(u_left, u_right, v), point, atol=1e-9)

    def test_jacobian_matches_finite_differences(self, stereo_camera: StereoCameraModel):
        """Test the analytic back-projection Jacobian numerically."""
        obs = np.array(stereo_camera.project(np.array([0.7, 0.2, 4.0])))
        _, J = stereo_camera.backproject_with_jacobian(*obs)

        eps = 1e-5
        J_num = np.zeros((3, 3))
        for k in range(3):
            delta = np.zeros(3)
            delta[k] = eps
            plus = stereo_camera.backproject(*(obs + delta))
            minus = stereo_camera.backproject(*(obs - delta))
            J_num[:, k] = (plus - minus) / (2 * eps)

        np.testing.assert_allclose(J, J_num, rtol=1e-5, atol=1e-8)

    def test_backproject_rejects_small_disparity(self, stereo_camera: StereoCameraModel):
        """Test that a disparity below the minimum raises an error."""
        with pytest.raises(ValueError, match="below minimum"):
            stereo_camera.backproject(100.0, 100.05, 50.0)

    def test_backproject_points_flags_invalid_rows(self, stereo_camera: StereoCameraModel):
        """Test that rows without disparity are zero and flagged invalid."""
        left = np.array([[300.0, 200.0], [300.0, 200.0]])
        right = np.array([[290.0, 200.0], [301.0, 200.0]])
        points, valid = stereo_camera.backproject_points(left, right)

        assert valid.tolist() == [True, False]
        assert points[0, 2] == pytest.approx(450.0 * 0.11 / 10.0)
        np.testing.assert_array_equal(points[1], 0.0)

    def test_invalid_baseline(self, camera: CameraParams):
        """Test that a non-positive baseline is rejected."""
        with pytest.raises(ValueError, match="baseline must be positive"):
            StereoCameraModel(left=camera, baseline=0.0)
