"""Shared fixtures: device parametrisation and synthetic depth scenes."""

from __future__ import annotations

from typing import Callable

import pytest
import torch

from depthfusion import PinholeCamera, Pose, create_camera, make_intrinsics

# Three planes n . X = c (world frame) enclosing a camera at the origin: two
# walls meeting in a vertical crease and a floor. Together they constrain all
# six pose parameters.
CORNER_PLANES: list[tuple[tuple[float, float, float], float]] = [
    ((0.5, 0.0, 1.0), 1.2),
    ((-0.5, 0.0, 1.0), 1.2),
    ((0.0, 0.6, 1.0), 1.3),
]


@pytest.fixture(
    params=[
        "cpu",
        pytest.param(
            "cuda",
            marks=pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available"),
        ),
    ]
)
def device(request) -> torch.device:
    """Run the test on CPU and, when available, on CUDA."""
    return torch.device(request.param)


def render_planes(
    camera: PinholeCamera,
    pose: Pose,
    planes: list[tuple[tuple[float, float, float], float]],
) -> torch.Tensor:
    """Depth image of the nearest plane hit by each pixel ray.

    Planes are given in world coordinates as (normal, offset) with
    ``normal . X = offset``; the normal need not be unit length.
    """
    rays, _ = camera.unproject(camera.pixel_grid().reshape(-1, 2))
    depth = torch.full((rays.shape[0],), float("inf"), device=rays.device)
    R, t = pose.R.to(rays.device), pose.t.to(rays.device)
    for normal, offset in planes:
        m = R @ torch.tensor(normal, dtype=torch.float32, device=rays.device)
        denom = rays @ m
        z = (offset + m @ t) / denom
        hit = (denom > 1e-9) & (z > 0)
        depth = torch.where(hit, torch.minimum(depth, z), depth)
    depth = torch.where(torch.isfinite(depth), depth, torch.zeros_like(depth))
    return depth.reshape(camera.height, camera.width)


@pytest.fixture
def make_camera(device: torch.device) -> Callable[..., PinholeCamera]:
    """Factory for distortion-free cameras on the test device."""

    def _make(width: int = 80, height: int = 60, f: float = 70.0) -> PinholeCamera:
        return create_camera(make_intrinsics(width, height, fx=f, fy=f, device=device))

    return _make


@pytest.fixture
def corner_depth() -> Callable[[PinholeCamera, Pose], torch.Tensor]:
    """Render the three-plane corner scene from a world-to-camera pose.

    The planes are placed so that a camera at world (0, 0, -1) sees them
    between roughly 0.9 and 1.3 m away, inside a 1.28 m volume centred at the
    origin.
    """
    shifted = [(n, c - n[2]) for n, c in CORNER_PLANES]

    def _render(camera: PinholeCamera, pose: Pose) -> torch.Tensor:
        return render_planes(camera, pose, shifted)

    return _render


@pytest.fixture
def viewer_pose(device: torch.device) -> Pose:
    """Camera at world (0, 0, -1) looking along +Z."""
    return Pose(
        R=torch.eye(3, device=device),
        t=torch.tensor([0.0, 0.0, 1.0], device=device),
    )
