"""Pinhole camera model with radial/tangential distortion.

Distortion follows the OpenCV (k1, k2, p1, p2, k3) model and is evaluated in
pure PyTorch so every pass stays on the device of the intrinsics. Pixel
centers sit at integer coordinates.
"""

from __future__ import annotations

import torch

from .types import CameraIntrinsics, Pose
from .transforms import skew

# Newton undistortion settings
_UNDISTORT_MAX_ITER = 10
_UNDISTORT_EPS = 1e-10
_UNDISTORT_TOL = 1e-6

# Largest squared normalized radius scanned for a fold in the radial model
_FOLD_SCAN_R2 = 100.0
_FOLD_SCAN_STEPS = 4096


class PinholeCamera:
    """Pinhole camera model with OpenCV radial/tangential distortion.

    All inputs are camera-frame quantities; poses are passed explicitly where
    world-frame points are involved.

    Args:
        intrinsics: Camera intrinsic parameters (K, dist_coeffs, image_size).
    """

    def __init__(self, intrinsics: CameraIntrinsics) -> None:
        self._device = intrinsics.K.device
        self.K = intrinsics.K  # (3, 3) float32
        self.dist_coeffs = intrinsics.dist_coeffs  # (5,) float64
        self.image_size = intrinsics.image_size

        K = self.K.detach().double().cpu()
        self.fx = float(K[0, 0])
        self.fy = float(K[1, 1])
        self.cx = float(K[0, 2])
        self.cy = float(K[1, 2])
        self.k1, self.k2, self.p1, self.p2, self.k3 = (
            float(c) for c in self.dist_coeffs.detach().cpu()
        )
        self._max_r2 = self._monotonic_r2_limit()

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def width(self) -> int:
        return self.image_size[0]

    @property
    def height(self) -> int:
        return self.image_size[1]

    @property
    def intrinsics(self) -> CameraIntrinsics:
        return CameraIntrinsics(K=self.K, dist_coeffs=self.dist_coeffs, image_size=self.image_size)

    @property
    def has_distortion(self) -> bool:
        return any(c != 0.0 for c in (self.k1, self.k2, self.p1, self.p2, self.k3))

    def _monotonic_r2_limit(self) -> float:
        """Squared radius where the radial distortion stops increasing.

        Beyond it the distorted radius folds back toward the centre, so points
        out there would land inside the image. Infinite without distortion.
        """
        if not self.has_distortion:
            return float("inf")
        r2 = torch.linspace(0.0, _FOLD_SCAN_R2, _FOLD_SCAN_STEPS + 1, dtype=torch.float64)
        # d(r * k(r)) / dr
        slope = 1.0 + r2 * (3.0 * self.k1 + r2 * (5.0 * self.k2 + r2 * 7.0 * self.k3))
        folded = (slope <= 0).nonzero()
        if folded.numel() == 0:
            return _FOLD_SCAN_R2
        return float(r2[folded[0, 0]])

    # -----------------------------------------------------------------------
    # Distortion
    # -----------------------------------------------------------------------

    def distort(self, npx: torch.Tensor) -> torch.Tensor:
        """Apply lens distortion to normalized coordinates, shape (N, 2)."""
        x, y = npx[..., 0], npx[..., 1]
        x2, y2, xy = x * x, y * y, x * y
        r2 = x2 + y2
        k = 1.0 + r2 * (self.k1 + r2 * (self.k2 + r2 * self.k3))
        xd = x * k + self.p1 * (2.0 * xy) + self.p2 * (2.0 * x2 + r2)
        yd = y * k + self.p1 * (2.0 * y2 + r2) + self.p2 * (2.0 * xy)
        return torch.stack([xd, yd], dim=-1)

    def distortion_jacobian(self, npx: torch.Tensor) -> torch.Tensor:
        """Jacobian of :meth:`distort` w.r.t. its input, shape (N, 2, 2)."""
        x, y = npx[..., 0], npx[..., 1]
        x2, y2, xy = x * x, y * y, x * y
        r2 = x2 + y2
        r4 = r2 * r2
        k = 1.0 + self.k1 * r2 + self.k2 * r4 + self.k3 * r4 * r2
        dk = 2.0 * self.k1 + 4.0 * self.k2 * r2 + 6.0 * self.k3 * r4

        j00 = x2 * dk + k + 2.0 * self.p1 * y + 6.0 * self.p2 * x
        j11 = y2 * dk + k + 6.0 * self.p1 * y + 2.0 * self.p2 * x
        j01 = xy * dk + 2.0 * self.p1 * x + 2.0 * self.p2 * y
        return torch.stack(
            [torch.stack([j00, j01], dim=-1), torch.stack([j01, j11], dim=-1)],
            dim=-2,
        )

    def undistort(self, npx: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Invert :meth:`distort` by Newton iteration.

        At most 10 steps; elements whose residual drops below 1e-10 stop
        updating. Elements with a singular Jacobian or a residual above 1e-6
        after the loop are flagged invalid.

        Args:
            npx: Distorted normalized coordinates, shape (N, 2).

        Returns:
            undist: Undistorted normalized coordinates, shape (N, 2).
            valid: Boolean mask, shape (N,).
        """
        if not self.has_distortion:
            return npx.clone(), torch.ones(npx.shape[:-1], dtype=torch.bool, device=npx.device)

        undist = npx.clone()
        singular = torch.zeros(npx.shape[:-1], dtype=torch.bool, device=npx.device)
        for _ in range(_UNDISTORT_MAX_ITER):
            err = npx - self.distort(undist)
            active = err.norm(dim=-1) >= _UNDISTORT_EPS
            if not active.any():
                break

            J = self.distortion_jacobian(undist)
            det = J[..., 0, 0] * J[..., 1, 1] - J[..., 0, 1] * J[..., 1, 0]
            ok = det.abs() > _UNDISTORT_EPS
            singular |= active & ~ok
            safe_det = torch.where(ok, det, torch.ones_like(det))

            # 2x2 inverse applied to the residual
            dx = (J[..., 1, 1] * err[..., 0] - J[..., 0, 1] * err[..., 1]) / safe_det
            dy = (J[..., 0, 0] * err[..., 1] - J[..., 1, 0] * err[..., 0]) / safe_det
            step = torch.stack([dx, dy], dim=-1)
            update = (active & ok & ~singular).unsqueeze(-1)
            undist = torch.where(update, undist + step, undist)

        residual = (npx - self.distort(undist)).norm(dim=-1)
        valid = ~singular & (residual < _UNDISTORT_TOL) & torch.isfinite(undist).all(dim=-1)
        return undist, valid

    # -----------------------------------------------------------------------
    # Pixel <-> normalized
    # -----------------------------------------------------------------------

    def normalized_to_pixel(self, npx: torch.Tensor) -> torch.Tensor:
        """Apply K to (already distorted) normalized coordinates."""
        u = npx[..., 0] * self.fx + self.cx
        v = npx[..., 1] * self.fy + self.cy
        return torch.stack([u, v], dim=-1)

    def pixel_to_normalized(self, pixels: torch.Tensor) -> torch.Tensor:
        """Apply K^-1 to pixel coordinates (no undistortion)."""
        x = (pixels[..., 0] - self.cx) / self.fx
        y = (pixels[..., 1] - self.cy) / self.fy
        return torch.stack([x, y], dim=-1)

    # -----------------------------------------------------------------------
    # Projection
    # -----------------------------------------------------------------------

    def project_normalized(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Perspective division of camera-frame points.

        Args:
            points: Camera-frame 3D points, shape (N, 3).

        Returns:
            npx: Undistorted normalized coordinates, shape (N, 2). Zero where
                invalid.
            valid: Boolean mask, shape (N,). True where z > 0.
        """
        z = points[..., 2]
        valid = z > 0
        safe_z = torch.where(valid, z, torch.ones_like(z))
        npx = points[..., :2] / safe_z.unsqueeze(-1)
        npx = torch.where(valid.unsqueeze(-1), npx, torch.zeros_like(npx))
        return npx, valid

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project camera-frame 3D points to distorted pixel coordinates.

        Args:
            points: Camera-frame 3D points, shape (N, 3).

        Returns:
            pixels: Distorted pixel coordinates, shape (N, 2).
            valid: Boolean mask, shape (N,). True where z > 0 and the point
                lies inside the monotonic range of the distortion model.
        """
        npx, valid = self.project_normalized(points)
        valid = valid & ((npx * npx).sum(dim=-1) < self._max_r2)
        return self.normalized_to_pixel(self.distort(npx)), valid

    def unproject(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Back-project pixel coordinates to camera-frame rays.

        Rays are returned as (x, y, 1) rather than unit vectors, so that
        ``rays * depth`` is the point whose Z equals ``depth``.

        Args:
            pixels: Pixel coordinates, shape (N, 2).

        Returns:
            rays: Camera-frame rays with unit Z, shape (N, 3).
            valid: Boolean mask, shape (N,). False where undistortion failed.
        """
        npx, valid = self.undistort(self.pixel_to_normalized(pixels))
        rays = torch.cat([npx, torch.ones_like(npx[..., :1])], dim=-1)
        return rays, valid

    def pixel_grid(self, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        """Integer pixel centers of the full image, shape (H, W, 2) as (u, v)."""
        v, u = torch.meshgrid(
            torch.arange(self.height, dtype=dtype, device=self._device),
            torch.arange(self.width, dtype=dtype, device=self._device),
            indexing="ij",
        )
        return torch.stack([u, v], dim=-1)

    def jacobian(self, pose: Pose, points: torch.Tensor) -> torch.Tensor:
        """Pixel Jacobian w.r.t. a left-multiplied small pose update.

        The update (rx, ry, rz, tx, ty, tz) acts on camera-frame points as
        ``p' = p + r x p + t`` with ``p = pose.R @ X + pose.t``.

        Args:
            pose: World-to-camera pose.
            points: World-frame 3D points, shape (N, 3).

        Returns:
            Jacobian of the distorted pixel coordinates, shape (N, 2, 6).
        """
        p = pose.transform(points)
        x, y, z = p[..., 0], p[..., 1], p[..., 2]
        inv_z = 1.0 / z
        zero = torch.zeros_like(z)

        # d(npx) / d(p)
        j_proj = torch.stack(
            [
                torch.stack([inv_z, zero, -x * inv_z * inv_z], dim=-1),
                torch.stack([zero, inv_z, -y * inv_z * inv_z], dim=-1),
            ],
            dim=-2,
        )
        npx = p[..., :2] * inv_z.unsqueeze(-1)
        j_dist = self.distortion_jacobian(npx)
        focal = torch.tensor([self.fx, self.fy], dtype=p.dtype, device=p.device)
        j_pix = focal.view(2, 1) * (j_dist @ j_proj)  # (N, 2, 3)

        # d(p) / d(delta)
        eye = torch.eye(3, dtype=p.dtype, device=p.device).expand(p.shape[0], 3, 3)
        j_pose = torch.cat([-skew(p), eye], dim=-1)  # (N, 3, 6)
        return j_pix @ j_pose

    # -----------------------------------------------------------------------
    # Resolution changes
    # -----------------------------------------------------------------------

    def rescale(self, scale_x: float, scale_y: float) -> PinholeCamera:
        """Return a camera for an image resized by (scale_x, scale_y).

        Focal lengths and principal point scale with the image, so the ratio
        of focal length to pixel size is preserved.
        """
        K = self.K.clone()
        K[0, 0] *= scale_x
        K[0, 2] *= scale_x
        K[1, 1] *= scale_y
        K[1, 2] *= scale_y
        size = (round(self.width * scale_x), round(self.height * scale_y))
        return PinholeCamera(CameraIntrinsics(K=K, dist_coeffs=self.dist_coeffs, image_size=size))

    def pyrdown(self) -> PinholeCamera:
        """Camera for a half-resolution image."""
        return self.rescale(0.5, 0.5)


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_intrinsics(
    width: int,
    height: int,
    fx: float | None = None,
    fy: float | None = None,
    cx: float | None = None,
    cy: float | None = None,
    dist_coeffs: list[float] | None = None,
    device: torch.device | str | None = None,
) -> CameraIntrinsics:
    """Build intrinsics from scalar parameters.

    Missing focal lengths default to ``0.8 * (width + height)``, an empirical
    value that is close enough for most consumer depth sensors. Missing
    principal point defaults to the image center ``((w - 1) / 2, (h - 1) / 2)``.
    """
    f = 0.8 * (width + height)
    fx = f if fx is None else fx
    fy = f if fy is None else fy
    cx = (width - 1) * 0.5 if cx is None else cx
    cy = (height - 1) * 0.5 if cy is None else cy
    K = torch.tensor(
        [[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=torch.float32, device=device
    )
    coeffs = torch.tensor(
        dist_coeffs if dist_coeffs is not None else [0.0] * 5, dtype=torch.float64, device=device
    )
    return CameraIntrinsics(K=K, dist_coeffs=coeffs, image_size=(int(width), int(height)))


def create_camera(intrinsics: CameraIntrinsics) -> PinholeCamera:
    """Create a camera model from intrinsic parameters.

    This is the only public construction API for camera models. Validates
    tensor shapes before constructing the model.

    Raises:
        ValueError: If K or dist_coeffs have incorrect shapes, or the image
            size is not positive.
    """
    if intrinsics.K.shape != (3, 3):
        raise ValueError(f"K must have shape (3, 3), got {tuple(intrinsics.K.shape)}.")
    if intrinsics.dist_coeffs.shape != (5,):
        raise ValueError(
            f"dist_coeffs must have shape (5,), got {tuple(intrinsics.dist_coeffs.shape)}."
        )
    width, height = intrinsics.image_size
    if width <= 0 or height <= 0:
        raise ValueError(f"image_size must be positive, got {intrinsics.image_size}.")
    if intrinsics.K[0, 0] == 0 or intrinsics.K[1, 1] == 0:
        raise ValueError("Focal lengths in K must be non-zero.")
    return PinholeCamera(intrinsics)
