"""Projective point-to-plane ICP between a live map and a ray-cast reference."""

from __future__ import annotations

import logging

import torch

from .camera import PinholeCamera
from .transforms import compose_poses, solve_weighted_least_squares, twist_to_pose
from .types import PointNormalMap, Pose

logger = logging.getLogger(__name__)

# Tukey biweight tuning constant and MAD-to-sigma factor
_TUKEY_C = 4.685
_MAD_SCALE = 1.4826


def sample_live_points(pnmap: PointNormalMap, stride: int = 4) -> torch.Tensor:
    """Valid points on a regular grid of every ``stride``-th pixel.

    A border of ``stride`` pixels is left out on every side.

    Returns:
        Camera-frame points, shape (N, 3).
    """
    h, w = pnmap.height, pnmap.width
    points = pnmap.points[stride : h - stride : stride, stride : w - stride : stride]
    valid = pnmap.valid[stride : h - stride : stride, stride : w - stride : stride]
    return points[valid]


def tukey_weights(residual: torch.Tensor, scale_floor: float = 1e-3) -> torch.Tensor:
    """Tukey biweights scaled by the median absolute residual."""
    mad = residual.abs().median()
    c = max(_TUKEY_C * _MAD_SCALE * float(mad), scale_floor)
    u = residual / c
    return torch.where(u.abs() < 1.0, (1.0 - u * u) ** 2, torch.zeros_like(u))


def calc_icp(
    camera: PinholeCamera,
    reference: PointNormalMap,
    points: torch.Tensor,
    max_iterations: int = 20,
    min_correspondences: int = 50,
    convergence: float = 1e-6,
    robust_scale_floor: float = 1e-3,
) -> Pose | None:
    """Align live points to a reference point+normal map.

    Each iteration transforms the live points by the running estimate,
    projects them into the reference image and pairs them with the reference
    entry at the nearest pixel. The point-to-plane residuals are linearised
    around the estimate, solved with Tukey weights, and the resulting
    increment is composed onto the estimate.

    Args:
        camera: Camera model of the reference map.
        reference: Reference map, camera frame of the reference view.
        points: Live camera-frame points, shape (N, 3).
        max_iterations: Upper bound on iterations.
        min_correspondences: Iterations with fewer pairs abort tracking.
        convergence: Stop once the increment norm falls below this.
        robust_scale_floor: Lower bound on the Tukey cutoff, in depth units.

    Returns:
        Pose mapping live camera coordinates into reference camera
        coordinates, or None if tracking failed.
    """
    R = torch.eye(3, dtype=points.dtype, device=points.device)
    t = torch.zeros(3, dtype=points.dtype, device=points.device)

    for it in range(max_iterations):
        q = points @ R.T + t
        pixels, in_front = camera.project(q)
        u = torch.round(pixels[:, 0]).long()
        v = torch.round(pixels[:, 1]).long()
        ref_p, ref_n, paired = reference.sample(u, v)
        paired &= in_front

        count = int(paired.sum().item())
        if count < min_correspondences:
            logger.debug(f"ICP iteration {it}: {count} correspondences, need {min_correspondences}")
            return None

        q, ref_p, ref_n = q[paired], ref_p[paired], ref_n[paired]
        residual = ((q - ref_p) * ref_n).sum(dim=-1)
        J = torch.cat([torch.linalg.cross(q, ref_n, dim=-1), ref_n], dim=-1)

        delta = solve_weighted_least_squares(J, residual, tukey_weights(residual, robust_scale_floor))
        if delta is None:
            logger.debug(f"ICP iteration {it}: singular system")
            return None

        dR, dt = twist_to_pose(delta)
        R, t = compose_poses(R, t, dR, dt)

        if float(delta.norm()) < convergence:
            break

    logger.debug(f"ICP finished after {it + 1} iterations")
    return Pose(R=R, t=t)


def update_pose(
    pose: Pose,
    camera: PinholeCamera,
    pnmap: PointNormalMap,
    cast: PointNormalMap,
    stride: int = 4,
    max_iterations: int = 20,
    min_correspondences: int = 50,
    convergence: float = 1e-6,
    robust_scale_floor: float = 1e-3,
) -> Pose | None:
    """Track the live frame ``pnmap`` against the cast rendered at ``pose``.

    Returns:
        The live frame's world-to-camera pose, or None when tracking failed.
    """
    points = sample_live_points(pnmap, stride)
    if points.shape[0] < min_correspondences:
        logger.debug(f"Only {points.shape[0]} live samples, need {min_correspondences}")
        return None

    delta = calc_icp(
        camera,
        cast,
        points,
        max_iterations=max_iterations,
        min_correspondences=min_correspondences,
        convergence=convergence,
        robust_scale_floor=robust_scale_floor,
    )
    if delta is None:
        return None
    return delta.inverse().compose(pose.to(device=points.device, dtype=points.dtype))
