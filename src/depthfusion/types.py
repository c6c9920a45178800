"""Shared geometry types for all DepthFusion modules.

Coordinate system: OpenCV camera convention (+X right, +Y down, +Z forward).
Poses map world to camera: p_cam = R @ p_world + t.
Depth images store the camera-frame Z of each pixel in metres; 0 means no
measurement.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias

import torch

from .transforms import camera_center, compose_poses, invert_pose, transform_points

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

Vec2: TypeAlias = torch.Tensor
"""Shape (2,) or (N, 2), float32. 2D vector or batch of 2D vectors."""

Vec3: TypeAlias = torch.Tensor
"""Shape (3,) or (N, 3), float32. 3D vector or batch of 3D vectors."""

Mat3: TypeAlias = torch.Tensor
"""Shape (3, 3), float32. 3x3 matrix."""

DepthImage: TypeAlias = torch.Tensor
"""Shape (H, W), float32. Camera-frame Z in metres, 0 where invalid."""

# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class CameraIntrinsics:
    """Intrinsic camera parameters.

    Attributes:
        K: Intrinsic matrix, shape (3, 3), float32.
        dist_coeffs: Distortion coefficients, shape (5,), float64, in OpenCV
            order (k1, k2, p1, p2, k3).
        image_size: (width, height) in pixels.
    """

    K: torch.Tensor  # (3, 3), float32
    dist_coeffs: torch.Tensor  # (5,), float64
    image_size: tuple[int, int]  # (width, height)


@dataclass
class Pose:
    """Rigid world-to-camera transform.

    Attributes:
        R: Rotation matrix (world to camera), shape (3, 3), float32.
        t: Translation vector (world to camera), shape (3,), float32.
            Transform: p_cam = R @ p_world + t.
    """

    R: torch.Tensor  # (3, 3), float32
    t: torch.Tensor  # (3,), float32

    @classmethod
    def identity(
        cls,
        dtype: torch.dtype = torch.float32,
        device: torch.device | str | None = None,
    ) -> Pose:
        return cls(
            R=torch.eye(3, dtype=dtype, device=device),
            t=torch.zeros(3, dtype=dtype, device=device),
        )

    @property
    def C(self) -> torch.Tensor:
        """Camera center in world coordinates, shape (3,)."""
        return camera_center(self.R, self.t)

    def compose(self, other: Pose) -> Pose:
        """Return ``self`` applied after ``other`` (``self * other``)."""
        R, t = compose_poses(other.R, other.t, self.R, self.t)
        return Pose(R=R, t=t)

    def inverse(self) -> Pose:
        R, t = invert_pose(self.R, self.t)
        return Pose(R=R, t=t)

    def transform(self, points: torch.Tensor) -> torch.Tensor:
        """Map points of shape (..., 3) through this pose."""
        return transform_points(self.R, self.t, points)

    def to(self, device: torch.device | str | None = None, dtype: torch.dtype | None = None) -> Pose:
        return Pose(R=self.R.to(device=device, dtype=dtype), t=self.t.to(device=device, dtype=dtype))


@dataclass
class PointNormalMap:
    """Dense per-pixel camera-space points and unit normals.

    Invalid entries hold zero point and zero normal, and are flagged False in
    ``valid``. Consumers must test ``valid`` rather than the zero sentinel.

    Attributes:
        points: Camera-frame positions, shape (H, W, 3), float32.
        normals: Unit normals pointing toward the camera, shape (H, W, 3).
        valid: Boolean validity mask, shape (H, W).
    """

    points: torch.Tensor  # (H, W, 3)
    normals: torch.Tensor  # (H, W, 3)
    valid: torch.Tensor  # (H, W), bool

    @classmethod
    def empty(
        cls,
        height: int,
        width: int,
        dtype: torch.dtype = torch.float32,
        device: torch.device | str | None = None,
    ) -> PointNormalMap:
        return cls(
            points=torch.zeros(height, width, 3, dtype=dtype, device=device),
            normals=torch.zeros(height, width, 3, dtype=dtype, device=device),
            valid=torch.zeros(height, width, dtype=torch.bool, device=device),
        )

    @property
    def height(self) -> int:
        return self.valid.shape[0]

    @property
    def width(self) -> int:
        return self.valid.shape[1]

    def depth(self) -> torch.Tensor:
        """Z-component of every point, shape (H, W); 0 where invalid."""
        return torch.where(self.valid, self.points[..., 2], torch.zeros_like(self.points[..., 2]))

    def in_bounds(self, u: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
        """Boolean mask of integer pixel coordinates inside the map."""
        return (u >= 0) & (u < self.width) & (v >= 0) & (v < self.height)

    def sample(
        self, u: torch.Tensor, v: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Gather entries at integer pixel coordinates with bounds checking.

        Args:
            u: Column indices, shape (N,), integer dtype.
            v: Row indices, shape (N,), integer dtype.

        Returns:
            points: shape (N, 3); zero where out of bounds or invalid.
            normals: shape (N, 3); zero where out of bounds or invalid.
            valid: shape (N,); False where out of bounds or invalid.
        """
        inside = self.in_bounds(u, v)
        uc = u.clamp(0, self.width - 1)
        vc = v.clamp(0, self.height - 1)
        valid = inside & self.valid[vc, uc]
        mask = valid.unsqueeze(-1)
        points = torch.where(mask, self.points[vc, uc], torch.zeros_like(self.points[vc, uc]))
        normals = torch.where(mask, self.normals[vc, uc], torch.zeros_like(self.normals[vc, uc]))
        return points, normals, valid
