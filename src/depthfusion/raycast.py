"""Ray casting of the TSDF volume into a predicted point+normal map."""

from __future__ import annotations

import logging
import math

import torch

from .camera import PinholeCamera
from .intersect import ray_box_intersection
from .types import PointNormalMap, Pose
from .volume import TsdfVolume

logger = logging.getLogger(__name__)

# Fraction of the sampled distance that is safe to skip in one step
_STEP_SHRINK = 0.8


def ray_cast(
    volume: TsdfVolume,
    camera: PinholeCamera,
    pose: Pose,
    min_step: float | None = None,
    near: float = 0.0,
) -> PointNormalMap:
    """Render the surface stored in ``volume`` as seen from ``pose``.

    One ray per pixel is marched from the camera centre through the volume,
    clipped to the voxel lattice and to ``near``. The step is ``min_step``
    near the surface, ``0.8 * d`` where an observed positive distance ``d``
    allows it, and half the truncation band in unobserved space. A hit is a
    change from positive to non-positive distance between two consecutive
    observed samples; the crossing is refined by linear interpolation and the
    normal is the normalised distance gradient there.

    Rays that leave the volume, that only meet unobserved space, that pass
    behind an observed surface without a clean crossing, or whose gradient
    is degenerate, give invalid entries. Negative samples met before any
    positive one (a camera starting inside the band) are skipped.

    Args:
        volume: TSDF volume.
        camera: Camera model of the output map.
        pose: World-to-camera pose to render from.
        min_step: Smallest march step in world units. Defaults to half a voxel.
        near: Samples closer than this distance along the ray are not tested.

    Returns:
        PointNormalMap in the camera frame of ``pose``, shape (H, W).
    """
    device = volume.device
    h, w = camera.height, camera.width
    pose = pose.to(device=device, dtype=torch.float32)
    min_step = 0.5 * volume.unit if min_step is None else float(min_step)
    free_step = max(min_step, 0.5 * volume.truncation)

    rays_cam, ray_ok = camera.unproject(camera.pixel_grid().reshape(-1, 2).to(device))
    dirs_cam = rays_cam / rays_cam.norm(dim=-1, keepdim=True)
    directions = dirs_cam @ pose.R  # R.T @ d for every row
    origins = pose.C.expand_as(directions)

    box_min, box_max = volume.bounds()
    t_near, t_far, box_ok = ray_box_intersection(origins, directions, box_min, box_max)
    t = t_near.clamp(min=near)
    active = ray_ok & box_ok & (t <= t_far)

    n = directions.shape[0]
    prev_t = t.clone()
    prev_d = torch.zeros(n, dtype=torch.float32, device=device)
    prev_ok = torch.zeros(n, dtype=torch.bool, device=device)
    seen_front = torch.zeros(n, dtype=torch.bool, device=device)
    hit = torch.zeros(n, dtype=torch.bool, device=device)
    hit_t = torch.zeros(n, dtype=torch.float32, device=device)

    if active.any():
        span = float((t_far - t)[active].max())
        max_iter = int(math.ceil(span / min_step)) + 1
    else:
        max_iter = 0

    for _ in range(max_iter):
        idx = active.nonzero().squeeze(1)
        if idx.numel() == 0:
            break

        t_cur = t[idx]
        d, ok = volume.sample(origins[idx] + t_cur.unsqueeze(-1) * directions[idx])
        d_prev = prev_d[idx]

        crossing = prev_ok[idx] & ok & (d_prev > 0) & (d <= 0)
        frac = d_prev / torch.where(crossing, d_prev - d, torch.ones_like(d))
        t_cross = prev_t[idx] + frac * (t_cur - prev_t[idx])
        hit[idx[crossing]] = True
        hit_t[idx[crossing]] = t_cross[crossing]

        # passed behind a surface without two observed samples around it
        behind = ok & (d < 0) & seen_front[idx] & ~crossing
        seen_front[idx] |= ok & (d > 0)

        step = torch.full_like(d, min_step)
        step = torch.where(ok & (d > 0), torch.clamp(_STEP_SHRINK * d, min=min_step), step)
        step = torch.where(ok, step, torch.full_like(d, free_step))

        prev_t[idx] = t_cur
        prev_d[idx] = d
        prev_ok[idx] = ok
        t[idx] = t_cur + step

        done = crossing | behind | (t[idx] > t_far[idx])
        active[idx[done]] = False

    out = PointNormalMap.empty(h, w, device=device)
    idx = hit.nonzero().squeeze(1)
    if idx.numel() == 0:
        logger.debug("Ray cast produced no surface points")
        return out

    p_world = origins[idx] + hit_t[idx].unsqueeze(-1) * directions[idx]
    grad, grad_ok = volume.gradient(p_world)
    length = grad.norm(dim=-1)
    good = grad_ok & (length > 0)
    idx, p_world = idx[good], p_world[good]
    n_world = grad[good] / length[good].unsqueeze(-1)

    rows, cols = idx // w, idx % w
    out.points[rows, cols] = pose.transform(p_world)
    out.normals[rows, cols] = n_world @ pose.R.T
    out.valid[rows, cols] = True
    logger.debug(f"Ray cast {idx.numel()}/{n} valid pixels")
    return out
