"""Depth image preprocessing: bilateral filter, pyramid, point/normal maps.

Depth images are (H, W) float tensors of camera-frame Z in metres where 0
marks a missing measurement. Every pass below is a vectorised expression over
all pixels, so it runs on whatever device the depth image lives on.
"""

from __future__ import annotations

import math

import torch
import torch.nn.functional as F

from .camera import PinholeCamera
from .types import PointNormalMap


# Range weights are tabulated at this many steps per sigma_range
_RANGE_TABLE_SCALE = 10.0
_RANGE_TABLE_SIZE = 100

_PYRDOWN_KERNEL = ((1.0, 2.0, 1.0), (2.0, 4.0, 2.0), (1.0, 2.0, 1.0))


def _check_depth(depth: torch.Tensor) -> None:
    if depth.ndim != 2:
        raise ValueError(f"depth must have shape (H, W), got {tuple(depth.shape)}.")


def _spatial_kernel(radius: int, sigma: float, depth: torch.Tensor) -> torch.Tensor:
    offsets = torch.arange(-radius, radius + 1, dtype=depth.dtype, device=depth.device)
    r2 = offsets.view(-1, 1) ** 2 + offsets.view(1, -1) ** 2
    return torch.exp(-r2 / (2.0 * sigma * sigma)) / (math.sqrt(2.0 * math.pi) * sigma)


def _filter_radius(sigma_spatial: float) -> int:
    """Window radius ``3 * sigma_spatial`` rounded half up."""
    return int(math.floor(3.0 * sigma_spatial + 0.5))


def _range_table(depth: torch.Tensor) -> torch.Tensor:
    i = torch.arange(_RANGE_TABLE_SIZE, dtype=depth.dtype, device=depth.device)
    return torch.exp(-((i / _RANGE_TABLE_SCALE) ** 2) / 2.0)


def bilateral_filter_depth(
    depth: torch.Tensor,
    sigma_spatial: float = 0.8,
    sigma_range: float = 0.01,
) -> torch.Tensor:
    """Edge-preserving smoothing of a depth image.

    Each valid pixel becomes the weighted mean of the valid pixels in a
    ``(2r + 1)^2`` window, with ``r = 3 * sigma_spatial`` rounded half up.
    The weight is a spatial Gaussian times a range weight looked up in a
    100-entry table indexed by ``10 * |d - d_center| / sigma_range``, also
    rounded half up; neighbours beyond the end of the table, and zero-depth
    neighbours, contribute nothing.

    Args:
        depth: Depth image, shape (H, W).
        sigma_spatial: Spatial standard deviation in pixels.
        sigma_range: Range standard deviation in depth units.

    Returns:
        Filtered depth image, shape (H, W). Pixels that are zero in ``depth``
        stay zero. ``depth`` itself is never modified.
    """
    _check_depth(depth)
    radius = _filter_radius(sigma_spatial)
    kernel = _spatial_kernel(radius, sigma_spatial, depth)
    table = _range_table(depth)

    h, w = depth.shape
    padded = F.pad(depth[None, None], (radius, radius, radius, radius), value=0.0)[0, 0]

    acc = torch.zeros_like(depth)
    norm = torch.zeros_like(depth)
    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            nb = padded[radius + dy : radius + dy + h, radius + dx : radius + dx + w]
            idx = torch.floor(_RANGE_TABLE_SCALE * (nb - depth).abs() / sigma_range + 0.5)
            usable = (nb != 0) & (idx < _RANGE_TABLE_SIZE)
            b = table[idx.clamp(max=_RANGE_TABLE_SIZE - 1).long()]
            weight = torch.where(usable, kernel[dy + radius, dx + radius] * b, torch.zeros_like(b))
            acc += weight * nb
            norm += weight

    keep = (depth != 0) & (norm > 0)
    return torch.where(keep, acc / torch.where(keep, norm, torch.ones_like(norm)), torch.zeros_like(depth))


def pyrdown_depth(depth: torch.Tensor) -> torch.Tensor:
    """Half-resolution depth image.

    Output pixel (u, v) is the weighted mean over the 3x3 neighbourhood of
    source pixel (2u, 2v) with kernel [[1,2,1],[2,4,2],[1,2,1]], skipping zero
    and out-of-image samples and renormalising by the weights actually used.
    The output is zero whenever source pixel (2u, 2v) is zero.

    Args:
        depth: Depth image, shape (H, W).

    Returns:
        Depth image of shape ((H + 1) // 2, (W + 1) // 2).
    """
    _check_depth(depth)
    h, w = depth.shape
    oh, ow = (h + 1) // 2, (w + 1) // 2
    padded = F.pad(depth[None, None], (1, 1, 1, 1), value=0.0)[0, 0]

    acc = torch.zeros(oh, ow, dtype=depth.dtype, device=depth.device)
    norm = torch.zeros_like(acc)
    for ky in range(3):
        for kx in range(3):
            nb = padded[ky::2, kx::2][:oh, :ow]
            k = _PYRDOWN_KERNEL[ky][kx]
            used = nb != 0
            acc += torch.where(used, k * nb, torch.zeros_like(nb))
            norm += used.to(depth.dtype) * k

    keep = (depth[::2, ::2] != 0) & (norm > 0)
    return torch.where(keep, acc / torch.where(keep, norm, torch.ones_like(norm)), torch.zeros_like(acc))


def _back_project(camera: PinholeCamera, depth: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Camera-frame points of every pixel and the per-pixel validity mask."""
    h, w = depth.shape
    if (w, h) != tuple(camera.image_size):
        raise ValueError(
            f"depth shape {(h, w)} does not match camera image size {camera.image_size}."
        )
    pixels = camera.pixel_grid(dtype=depth.dtype).reshape(-1, 2)
    rays, ray_valid = camera.unproject(pixels)
    points = rays.reshape(h, w, 3) * depth.unsqueeze(-1)
    valid = (depth != 0) & ray_valid.reshape(h, w)
    return points, valid


def _with_neighbours(valid: torch.Tensor) -> torch.Tensor:
    """Pixels that are valid together with their right and down neighbours."""
    out = torch.zeros_like(valid)
    out[:-1, :-1] = valid[:-1, :-1] & valid[:-1, 1:] & valid[1:, :-1]
    return out


def depth_to_points(camera: PinholeCamera, depth: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Back-project a depth image to camera-frame points.

    A pixel is valid only when it and its right and down neighbours hold
    depth, matching the validity of :func:`depth_to_point_normals`.

    Returns:
        points: shape (H, W, 3); zero where invalid. ``points[..., 2]``
            equals ``depth`` exactly at valid pixels.
        valid: shape (H, W), bool.
    """
    _check_depth(depth)
    points, valid = _back_project(camera, depth)
    valid = _with_neighbours(valid)
    points = torch.where(valid.unsqueeze(-1), points, torch.zeros_like(points))
    return points, valid


def depth_to_point_normals(camera: PinholeCamera, depth: torch.Tensor) -> PointNormalMap:
    """Convert a depth image into a camera-frame point+normal map.

    The normal at (u, v) is ``normalize(cross(P(u, v+1) - P(u, v),
    P(u+1, v) - P(u, v)))``, which points toward the camera for a surface
    facing it. The last row and column are always invalid.
    """
    _check_depth(depth)
    points, valid = _back_project(camera, depth)
    valid = _with_neighbours(valid)

    normals = torch.zeros_like(points)
    center = points[:-1, :-1]
    right = points[:-1, 1:] - center
    down = points[1:, :-1] - center
    cross = torch.linalg.cross(down, right, dim=-1)
    length = cross.norm(dim=-1, keepdim=True)
    normals[:-1, :-1] = cross / length.clamp(min=1e-12)

    # zero-area triangles have no usable normal
    valid[:-1, :-1] &= length.squeeze(-1) > 0

    mask = valid.unsqueeze(-1)
    return PointNormalMap(
        points=torch.where(mask, points, torch.zeros_like(points)),
        normals=torch.where(mask, normals, torch.zeros_like(normals)),
        valid=valid,
    )


def points_to_depth(points: torch.Tensor, valid: torch.Tensor | None = None) -> torch.Tensor:
    """Z-component of a point map, shape (H, W); zero where ``valid`` is False."""
    z = points[..., 2]
    if valid is None:
        return z.clone()
    return torch.where(valid, z, torch.zeros_like(z))


def point_normals_to_depth(pnmap: PointNormalMap) -> torch.Tensor:
    """Z-component of a point+normal map, shape (H, W); zero where invalid."""
    return pnmap.depth()
