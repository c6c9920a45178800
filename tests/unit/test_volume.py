"""Tests for the TSDF volume: layout, sampling and projective integration."""

from __future__ import annotations

import pytest
import torch

from depthfusion import Pose, TsdfVolume, create_camera, make_intrinsics, update_tsdf


@pytest.fixture
def frontal_volume(device, make_camera, viewer_pose) -> TsdfVolume:
    """Volume with one frontal plane at world z = 0 fused in."""
    camera = make_camera()
    volume = TsdfVolume(64, 0.02, device=device)
    depth = torch.ones(camera.height, camera.width, device=device)
    update_tsdf(volume, camera, viewer_pose, depth)
    return volume


class TestLayout:
    def test_voxel_centers_symmetric(self, device: torch.device) -> None:
        volume = TsdfVolume(4, 0.5, device=device)
        centers = volume.voxel_centers()
        assert centers.shape == (4, 4, 4, 3)
        torch.testing.assert_close(
            centers[0, 1, 3], torch.tensor([-0.75, -0.25, 0.75], device=device)
        )
        lo, hi = volume.bounds()
        torch.testing.assert_close(lo, torch.full((3,), -0.75, device=device))
        torch.testing.assert_close(hi, torch.full((3,), 0.75, device=device))

    def test_default_truncation(self) -> None:
        volume = TsdfVolume(8, 0.05)
        assert volume.truncation == pytest.approx(0.2)
        assert volume.num_observed() == 0

    def test_world_to_grid_hits_centers(self, device: torch.device) -> None:
        volume = TsdfVolume(8, 0.1, device=device)
        g = volume.world_to_grid(volume.voxel_centers()[2, 5, 7].unsqueeze(0))
        torch.testing.assert_close(g, torch.tensor([[2.0, 5.0, 7.0]], device=device))

    @pytest.mark.parametrize(
        ("kwargs", "match"),
        [
            ({"size": 1, "unit": 0.1}, "size"),
            ({"size": 8, "unit": 0.0}, "unit"),
            ({"size": 8, "unit": 0.1, "max_weight": 0.5}, "max_weight"),
            ({"size": 8, "unit": 0.1, "truncation": -1.0}, "truncation"),
        ],
    )
    def test_invalid_parameters_raise(self, kwargs, match) -> None:
        with pytest.raises(ValueError, match=match):
            TsdfVolume(**kwargs)


class TestIntegration:
    def test_plane_distances(self, frontal_volume: TsdfVolume) -> None:
        observed = frontal_volume.observed()
        assert observed.any()
        z = frontal_volume.voxel_centers()[..., 2]
        # measured depth 1 minus camera z (1 + world z)
        torch.testing.assert_close(
            frontal_volume.dist[observed], -z[observed], atol=1e-5, rtol=0
        )
        assert (frontal_volume.weight[observed] == 1.0).all()

    def test_only_truncation_band_is_touched(self, frontal_volume: TsdfVolume) -> None:
        z = frontal_volume.voxel_centers()[..., 2]
        observed = frontal_volume.observed()
        assert (z[observed].abs() <= frontal_volume.truncation + 1e-6).all()
        assert (frontal_volume.dist.abs() <= frontal_volume.truncation).all()

    def test_surface_voxels_near_zero(self, frontal_volume: TsdfVolume) -> None:
        center = frontal_volume.size // 2
        column = frontal_volume.dist[center, center]
        weight = frontal_volume.weight[center, center]
        nearest = column[weight > 0].abs().min()
        assert nearest <= frontal_volume.unit

    def test_repeat_keeps_distance_and_adds_weight(
        self, device, make_camera, viewer_pose
    ) -> None:
        camera = make_camera()
        volume = TsdfVolume(64, 0.02, device=device)
        depth = torch.ones(camera.height, camera.width, device=device)
        first = update_tsdf(volume, camera, viewer_pose, depth)
        dist = volume.dist.clone()
        second = update_tsdf(volume, camera, viewer_pose, depth)
        assert first == second == volume.num_observed()
        torch.testing.assert_close(volume.dist, dist)
        assert (volume.weight[volume.observed()] == 2.0).all()

    def test_weight_saturates(self, device, make_camera, viewer_pose) -> None:
        camera = make_camera()
        volume = TsdfVolume(32, 0.04, max_weight=3.0, device=device)
        depth = torch.ones(camera.height, camera.width, device=device)
        for _ in range(5):
            update_tsdf(volume, camera, viewer_pose, depth)
        assert volume.weight.max().item() == 3.0

    def test_running_average(self, device, make_camera, viewer_pose) -> None:
        camera = make_camera()
        volume = TsdfVolume(64, 0.02, device=device)
        ones = torch.ones(camera.height, camera.width, device=device)
        update_tsdf(volume, camera, viewer_pose, ones)
        update_tsdf(volume, camera, viewer_pose, ones * 1.02)
        center = volume.size // 2
        # voxel centred at world z = 0.01: sdf -0.01 then +0.01
        assert volume.dist[center, center, center].item() == pytest.approx(0.0, abs=1e-5)
        assert volume.weight[center, center, center].item() == 2.0

    def test_barrel_distortion_stays_inside_frustum(self, device) -> None:
        """Voxels far off-axis must not fold back into the image and pick up depth."""
        camera = create_camera(
            make_intrinsics(80, 60, fx=70.0, fy=70.0, dist_coeffs=[-0.3, 0.0, 0.0, 0.0, 0.0], device=device)
        )
        volume = TsdfVolume(128, 0.04, device=device)
        identity = Pose.identity(device=device)
        update_tsdf(volume, camera, identity, torch.ones(camera.height, camera.width, device=device))

        centers = volume.voxel_centers()[volume.observed()]
        assert centers.shape[0] > 0
        npx = centers[:, :2] / centers[:, 2:]
        # image corners sit at normalized radius of at most ~1.0 after undistortion
        assert npx.abs().max() < 1.1
        assert (npx.norm(dim=-1) < 1.1).all()

    def test_zero_depth_skips_voxels(self, device, make_camera, viewer_pose) -> None:
        camera = make_camera()
        volume = TsdfVolume(64, 0.02, device=device)
        depth = torch.zeros(camera.height, camera.width, device=device)
        assert update_tsdf(volume, camera, viewer_pose, depth) == 0
        assert volume.num_observed() == 0


class TestSampling:
    def test_unobserved_sample_invalid(self, device: torch.device) -> None:
        volume = TsdfVolume(8, 0.1, device=device)
        _, valid = volume.sample(torch.zeros(1, 3, device=device))
        assert not valid.any()

    def test_outside_volume_invalid(self, frontal_volume: TsdfVolume) -> None:
        points = torch.tensor([[0.0, 0.0, 5.0]], device=frontal_volume.device)
        _, valid = frontal_volume.sample(points)
        assert not valid.any()

    def test_trilinear_between_centers(self, frontal_volume: TsdfVolume) -> None:
        points = torch.tensor([[0.0, 0.0, 0.005]], device=frontal_volume.device)
        dist, valid = frontal_volume.sample(points)
        assert valid.all()
        assert dist.item() == pytest.approx(-0.005, abs=1e-5)

    def test_gradient_points_toward_camera(self, frontal_volume: TsdfVolume) -> None:
        points = torch.tensor([[0.0, 0.0, 0.0], [0.05, -0.03, 0.01]], device=frontal_volume.device)
        grad, valid = frontal_volume.gradient(points)
        assert valid.all()
        expected = torch.tensor([0.0, 0.0, -1.0], device=frontal_volume.device).expand(2, 3)
        torch.testing.assert_close(grad, expected, atol=1e-4, rtol=0)
