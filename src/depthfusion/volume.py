"""Truncated signed distance volume and its projective integration."""

from __future__ import annotations

import logging

import torch

from .camera import PinholeCamera
from .types import Pose

logger = logging.getLogger(__name__)

# Trilinear corner offsets in (x, y, z) order
_CORNERS = (
    (0, 0, 0), (1, 0, 0), (0, 1, 0), (1, 1, 0),
    (0, 0, 1), (1, 0, 1), (0, 1, 1), (1, 1, 1),
)


class TsdfVolume:
    """Fixed-extent cubic grid of signed distances and confidence weights.

    Voxel (ix, iy, iz) is centred at ``(i + 0.5 - size / 2) * unit`` on each
    axis, so the cube is centred at the world origin. Distances are positive
    in front of the surface (toward the sensor), negative behind it, and are
    clamped to ``[-truncation, truncation]``. A voxel with zero weight is
    unobserved; its distance value carries no meaning.

    Args:
        size: Number of voxels along each axis.
        unit: Edge length of one voxel in world units.
        truncation: Half-width of the truncation band. Defaults to 4 voxels.
        max_weight: Saturation value of the per-voxel weight.
        device: Device for the voxel tensors.
    """

    def __init__(
        self,
        size: int,
        unit: float,
        truncation: float | None = None,
        max_weight: float = 64.0,
        device: torch.device | str | None = None,
    ) -> None:
        if size < 2:
            raise ValueError(f"size must be at least 2, got {size}.")
        if unit <= 0:
            raise ValueError(f"unit must be positive, got {unit}.")
        if max_weight < 1.0:
            raise ValueError(f"max_weight must be at least 1, got {max_weight}.")

        self.size = int(size)
        self.unit = float(unit)
        self.truncation = float(truncation) if truncation is not None else 4.0 * self.unit
        if self.truncation <= 0:
            raise ValueError(f"truncation must be positive, got {self.truncation}.")
        self.max_weight = float(max_weight)

        self.dist = torch.zeros(size, size, size, dtype=torch.float32, device=device)
        self.weight = torch.zeros(size, size, size, dtype=torch.float32, device=device)
        self._centers: torch.Tensor | None = None

    @property
    def device(self) -> torch.device:
        return self.dist.device

    def zero(self) -> None:
        """Mark every voxel unobserved."""
        self.dist.zero_()
        self.weight.zero_()

    def observed(self) -> torch.Tensor:
        return self.weight > 0

    def num_observed(self) -> int:
        return int(self.observed().sum().item())

    def bounds(self) -> tuple[torch.Tensor, torch.Tensor]:
        """World-space min/max corners of the voxel-centre lattice, each shape (3,)."""
        half = (self.size / 2.0 - 0.5) * self.unit
        lo = torch.full((3,), -half, dtype=torch.float32, device=self.device)
        return lo, -lo

    def voxel_centers(self) -> torch.Tensor:
        """World-space centres of all voxels, shape (size, size, size, 3)."""
        if self._centers is None:
            idx = torch.arange(self.size, dtype=torch.float32, device=self.device)
            coords = (idx + 0.5 - self.size / 2.0) * self.unit
            gx, gy, gz = torch.meshgrid(coords, coords, coords, indexing="ij")
            self._centers = torch.stack([gx, gy, gz], dim=-1)
        return self._centers

    def world_to_grid(self, points: torch.Tensor) -> torch.Tensor:
        """Continuous voxel index of world points; voxel centres map to integers."""
        return points / self.unit + (self.size / 2.0 - 0.5)

    def in_bounds(self, points: torch.Tensor) -> torch.Tensor:
        """True where a world point lies within the voxel-centre lattice."""
        g = self.world_to_grid(points)
        return ((g >= 0) & (g <= self.size - 1)).all(dim=-1)

    def sample(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Trilinearly interpolate the distance field at world points.

        Args:
            points: World points, shape (N, 3).

        Returns:
            dist: Interpolated distance, shape (N,). Zero where invalid.
            valid: Boolean mask, shape (N,). True only when the point lies
                inside the lattice and all eight surrounding voxels are
                observed.
        """
        g = self.world_to_grid(points)
        inside = ((g >= 0) & (g <= self.size - 1)).all(dim=-1)
        g = g.clamp(0, self.size - 1)
        base = g.floor().clamp(max=self.size - 2).long()
        frac = g - base.to(g.dtype)

        flat_dist = self.dist.reshape(-1)
        flat_weight = self.weight.reshape(-1)
        stride = torch.tensor([self.size * self.size, self.size, 1], device=g.device)

        dist = torch.zeros_like(g[:, 0])
        observed = inside.clone()
        for ox, oy, oz in _CORNERS:
            offset = torch.tensor([ox, oy, oz], device=g.device)
            flat = ((base + offset) * stride).sum(dim=-1)
            wx = frac[:, 0] if ox else 1.0 - frac[:, 0]
            wy = frac[:, 1] if oy else 1.0 - frac[:, 1]
            wz = frac[:, 2] if oz else 1.0 - frac[:, 2]
            dist = dist + wx * wy * wz * flat_dist[flat]
            observed &= flat_weight[flat] > 0

        return torch.where(observed, dist, torch.zeros_like(dist)), observed

    def gradient(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Central-difference gradient of the trilinear field, step one voxel.

        Returns:
            grad: shape (N, 3). Zero where invalid.
            valid: shape (N,). True where all six neighbour samples are valid.
        """
        grad = torch.zeros_like(points)
        valid = torch.ones(points.shape[0], dtype=torch.bool, device=points.device)
        for axis in range(3):
            step = torch.zeros(3, dtype=points.dtype, device=points.device)
            step[axis] = self.unit
            d_pos, v_pos = self.sample(points + step)
            d_neg, v_neg = self.sample(points - step)
            grad[:, axis] = (d_pos - d_neg) / (2.0 * self.unit)
            valid &= v_pos & v_neg
        return torch.where(valid.unsqueeze(-1), grad, torch.zeros_like(grad)), valid


def update_tsdf(
    volume: TsdfVolume,
    camera: PinholeCamera,
    pose: Pose,
    depth: torch.Tensor,
) -> int:
    """Fuse one depth image into the volume.

    Every voxel centre is transformed by ``pose``, projected through the
    camera and matched with the nearest depth pixel. Voxels that project
    outside the image, behind the camera or onto a zero depth are skipped.
    The signed distance ``depth - z`` is fused only when it lies within the
    truncation band, as a running weighted average with one unit of weight
    per observation; the weight saturates at ``volume.max_weight``.

    Args:
        volume: Volume to update in place.
        camera: Camera model matching ``depth``.
        pose: World-to-camera pose of the depth image.
        depth: Depth image, shape (H, W).

    Returns:
        Number of voxels updated.
    """
    h, w = depth.shape
    pose = pose.to(device=volume.device, dtype=torch.float32)
    depth = depth.to(device=volume.device, dtype=torch.float32)

    p_cam = pose.transform(volume.voxel_centers().reshape(-1, 3))
    pixels, in_front = camera.project(p_cam)
    u = torch.round(pixels[:, 0])
    v = torch.round(pixels[:, 1])
    inside = in_front & (u >= 0) & (u < w) & (v >= 0) & (v < h)
    ui = u.clamp(0, w - 1).long()
    vi = v.clamp(0, h - 1).long()

    measured = depth[vi, ui]
    sdf = measured - p_cam[:, 2]
    update = inside & (measured > 0) & (sdf.abs() <= volume.truncation)

    dist = volume.dist.view(-1)
    weight = volume.weight.view(-1)
    w_old = weight[update]
    fused = (w_old * dist[update] + sdf[update]) / (w_old + 1.0)
    dist[update] = fused.clamp(-volume.truncation, volume.truncation)
    weight[update] = (w_old + 1.0).clamp(max=volume.max_weight)

    count = int(update.sum().item())
    logger.debug(f"Integrated depth into {count} voxels")
    return count
