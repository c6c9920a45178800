"""Tests for the pinhole camera model: distortion, projection, Jacobian."""

from __future__ import annotations

import cv2
import numpy as np
import pytest
import torch

from depthfusion import CameraIntrinsics, Pose, create_camera, make_intrinsics, rvec_to_matrix
from depthfusion.transforms import twist_to_pose

DIST = [0.1, -0.05, 0.002, -0.001, 0.01]


@pytest.fixture
def distorted_camera(device: torch.device):
    return create_camera(
        make_intrinsics(640, 480, fx=500.0, fy=520.0, cx=320.0, cy=240.0, dist_coeffs=DIST, device=device)
    )


class TestDistortion:
    def test_project_matches_opencv(self, distorted_camera) -> None:
        """Pixels agree with cv2.projectPoints for the same intrinsics."""
        pts = torch.tensor(
            [[0.1, -0.2, 1.0], [-0.3, 0.25, 2.0], [0.0, 0.0, 1.5], [0.4, 0.3, 1.2]],
            device=distorted_camera.device,
        )
        pixels, valid = distorted_camera.project(pts)
        assert valid.all()

        expected, _ = cv2.projectPoints(
            pts.cpu().numpy().astype(np.float64),
            np.zeros(3),
            np.zeros(3),
            distorted_camera.K.cpu().numpy().astype(np.float64),
            np.array(DIST, dtype=np.float64),
        )
        expected = torch.from_numpy(expected.squeeze(1).astype(np.float32))
        torch.testing.assert_close(pixels.cpu(), expected, atol=1e-3, rtol=0)

    def test_undistort_inverts_distort(self, distorted_camera) -> None:
        npx = torch.tensor(
            [[0.0, 0.0], [0.2, -0.1], [-0.4, 0.3], [0.5, 0.45]],
            dtype=torch.float64,
            device=distorted_camera.device,
        )
        undist, valid = distorted_camera.undistort(distorted_camera.distort(npx))
        assert valid.all()
        torch.testing.assert_close(undist, npx, atol=1e-8, rtol=0)

    def test_undistort_without_distortion_is_identity(self, device: torch.device) -> None:
        camera = create_camera(make_intrinsics(64, 48, device=device))
        npx = torch.tensor([[0.3, -0.2]], device=device)
        undist, valid = camera.undistort(npx)
        assert valid.all()
        torch.testing.assert_close(undist, npx)


class TestProjection:
    def test_unproject_scaled_by_depth_reprojects(self, distorted_camera) -> None:
        pixels = torch.tensor(
            [[10.0, 20.0], [320.0, 240.0], [600.0, 400.0]], device=distorted_camera.device
        )
        rays, valid = distorted_camera.unproject(pixels)
        assert valid.all()
        torch.testing.assert_close(rays[:, 2], torch.ones(3, device=distorted_camera.device))

        points = rays * 2.5
        reproj, in_front = distorted_camera.project(points)
        assert in_front.all()
        torch.testing.assert_close(reproj, pixels, atol=1e-3, rtol=0)

    def test_points_behind_camera_invalid(self, distorted_camera) -> None:
        pts = torch.tensor([[0.0, 0.0, -1.0], [0.0, 0.0, 0.0], [0.1, 0.1, 1.0]], device=distorted_camera.device)
        _, valid = distorted_camera.project(pts)
        assert valid.tolist() == [False, False, True]

    def test_points_past_distortion_fold_invalid(self, device: torch.device) -> None:
        """Barrel distortion folds back past r^2 = 1 / (3 * 0.3); those points are rejected."""
        camera = create_camera(
            make_intrinsics(80, 60, fx=70.0, fy=70.0, dist_coeffs=[-0.3, 0.0, 0.0, 0.0, 0.0], device=device)
        )
        pts = torch.tensor([[0.3, 0.2, 1.0], [1.0, 0.0, 1.0], [2.0, 0.0, 1.0], [0.0, -3.0, 1.5]], device=device)
        pixels, valid = camera.project(pts)
        assert valid.tolist() == [True, True, False, False]
        # without the check the 2.0 point would fold back into the image
        assert 0 <= pixels[2, 0] < camera.width

    def test_undistorted_camera_has_no_radius_limit(self, device: torch.device) -> None:
        camera = create_camera(make_intrinsics(64, 48, device=device))
        _, valid = camera.project(torch.tensor([[50.0, 0.0, 1.0]], device=device))
        assert valid.all()

    def test_principal_point_projects_to_center(self, device: torch.device) -> None:
        camera = create_camera(make_intrinsics(64, 48, device=device))
        pixels, _ = camera.project(torch.tensor([[0.0, 0.0, 3.0]], device=device))
        torch.testing.assert_close(pixels, torch.tensor([[31.5, 23.5]], device=device))

    def test_pixel_grid_layout(self, device: torch.device) -> None:
        camera = create_camera(make_intrinsics(4, 3, device=device))
        grid = camera.pixel_grid()
        assert grid.shape == (3, 4, 2)
        assert grid[2, 1].tolist() == [1.0, 2.0]


class TestJacobian:
    def test_matches_finite_differences(self, distorted_camera) -> None:
        device = distorted_camera.device
        pose = Pose(
            R=rvec_to_matrix(torch.tensor([0.05, -0.1, 0.02], dtype=torch.float64, device=device)),
            t=torch.tensor([0.1, -0.05, 1.5], dtype=torch.float64, device=device),
        )
        points = torch.tensor(
            [[0.1, 0.2, 0.3], [-0.2, 0.1, -0.1]], dtype=torch.float64, device=device
        )
        J = distorted_camera.jacobian(pose, points)
        assert J.shape == (2, 2, 6)

        eps = 1e-6
        for k in range(6):
            delta = torch.zeros(6, dtype=torch.float64, device=device)
            delta[k] = eps
            R_plus, t_plus = twist_to_pose(delta)
            R_minus, t_minus = twist_to_pose(-delta)
            p_plus = Pose(R=R_plus, t=t_plus).compose(pose)
            p_minus = Pose(R=R_minus, t=t_minus).compose(pose)
            pix_plus, _ = distorted_camera.project(p_plus.transform(points))
            pix_minus, _ = distorted_camera.project(p_minus.transform(points))
            numeric = (pix_plus - pix_minus) / (2 * eps)
            torch.testing.assert_close(J[:, :, k], numeric, atol=1e-3, rtol=1e-4)


class TestConstruction:
    def test_rescale_preserves_focal_ratio(self, device: torch.device) -> None:
        camera = create_camera(make_intrinsics(640, 480, fx=500.0, fy=500.0, device=device))
        half = camera.pyrdown()
        assert half.image_size == (320, 240)
        assert half.fx == pytest.approx(250.0)
        assert half.cx == pytest.approx(camera.cx * 0.5)
        assert half.fx / half.width == pytest.approx(camera.fx / camera.width)

    def test_default_focal_length(self) -> None:
        intr = make_intrinsics(100, 50)
        assert intr.K[0, 0].item() == pytest.approx(120.0)
        assert intr.K[0, 2].item() == pytest.approx(49.5)

    def test_bad_K_shape_raises(self) -> None:
        intr = CameraIntrinsics(K=torch.eye(2), dist_coeffs=torch.zeros(5, dtype=torch.float64), image_size=(4, 4))
        with pytest.raises(ValueError, match="K must have shape"):
            create_camera(intr)

    def test_bad_dist_shape_raises(self) -> None:
        intr = make_intrinsics(4, 4)
        intr.dist_coeffs = torch.zeros(4, dtype=torch.float64)
        with pytest.raises(ValueError, match="dist_coeffs"):
            create_camera(intr)

    def test_non_positive_size_raises(self) -> None:
        intr = make_intrinsics(4, 4)
        intr.image_size = (0, 4)
        with pytest.raises(ValueError, match="image_size"):
            create_camera(intr)
