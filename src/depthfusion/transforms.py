"""Rotation, pose and small linear-solve utilities.

All functions are pure PyTorch with no NumPy or OpenCV dependencies, so they
are device-agnostic. Poses are world-to-camera: p_cam = R @ p_world + t.
"""

from __future__ import annotations

import torch


def skew(v: torch.Tensor) -> torch.Tensor:
    """Skew-symmetric cross-product matrix of ``v``.

    Args:
        v: Vector of shape (3,) or batch of shape (N, 3).

    Returns:
        Matrix of shape (3, 3) or (N, 3, 3) such that ``skew(v) @ w == v x w``.
    """
    zero = torch.zeros_like(v[..., 0])
    x, y, z = v[..., 0], v[..., 1], v[..., 2]
    rows = [
        torch.stack([zero, -z, y], dim=-1),
        torch.stack([z, zero, -x], dim=-1),
        torch.stack([-y, x, zero], dim=-1),
    ]
    return torch.stack(rows, dim=-2)


def rvec_to_matrix(rvec: torch.Tensor) -> torch.Tensor:
    """Convert a Rodrigues rotation vector to a rotation matrix.

    Uses the Rodrigues formula:
        R = cos(theta)*I + sin(theta)*K + (1 - cos(theta))*(k outer k)
    where theta = ||rvec||, k = rvec / theta and K = skew(k).

    Edge cases:
        - theta < 1e-10: returns identity matrix.

    Args:
        rvec: Rodrigues rotation vector, shape (3,).

    Returns:
        R: Rotation matrix, shape (3, 3), same dtype and device as rvec.
    """
    theta = torch.linalg.norm(rvec)
    eye3 = torch.eye(3, dtype=rvec.dtype, device=rvec.device)

    if theta < 1e-10:
        return eye3

    k = rvec / theta
    cos_a = torch.cos(theta)
    sin_a = torch.sin(theta)
    return cos_a * eye3 + sin_a * skew(k) + (1 - cos_a) * torch.outer(k, k)


def matrix_to_rvec(R: torch.Tensor) -> torch.Tensor:
    """Convert a rotation matrix to a Rodrigues rotation vector.

    Inverse of rvec_to_matrix. Handles the degenerate cases at theta = 0 and
    theta = pi.

    Args:
        R: Rotation matrix, shape (3, 3).

    Returns:
        rvec: Rodrigues rotation vector, shape (3,), same dtype and device as R.
    """
    trace = R[0, 0] + R[1, 1] + R[2, 2]
    cos_theta = torch.clamp((trace - 1.0) / 2.0, -1.0, 1.0)
    theta = torch.acos(cos_theta)

    if theta < 1e-10:
        return torch.zeros(3, dtype=R.dtype, device=R.device)

    if theta > torch.pi - 1e-6:
        # sin(theta) ~ 0: recover the axis from the diagonal instead
        k = torch.sqrt(torch.clamp((torch.diag(R) + 1.0) / 2.0, min=0.0))
        if R[0, 1] + R[1, 0] < 0:
            k[1] = -k[1]
        if R[0, 2] + R[2, 0] < 0:
            k[2] = -k[2]
        k = k / torch.linalg.norm(k).clamp(min=1e-12)
        return theta * k

    skew_part = (R - R.T) / (2.0 * torch.sin(theta))
    k = torch.stack([skew_part[2, 1], skew_part[0, 2], skew_part[1, 0]])
    return theta * k


def twist_to_pose(delta: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Convert a 6-vector pose increment into a rigid transform.

    Args:
        delta: (rx, ry, rz, tx, ty, tz), shape (6,). The rotation part is a
            Rodrigues vector, the translation part is applied after rotation.

    Returns:
        R: Rotation matrix, shape (3, 3).
        t: Translation vector, shape (3,).
    """
    return rvec_to_matrix(delta[:3]), delta[3:].clone()


def compose_poses(
    R1: torch.Tensor,
    t1: torch.Tensor,
    R2: torch.Tensor,
    t2: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Compose two rigid transforms: (R2, t2) after (R1, t1).

    Given:
        p1 = R1 @ p0 + t1
        p2 = R2 @ p1 + t2

    the composed transform is:
        p2 = (R2 @ R1) @ p0 + (R2 @ t1 + t2)

    Returns:
        R: Composed rotation matrix, shape (3, 3).
        t: Composed translation vector, shape (3,).
    """
    return R2 @ R1, R2 @ t1 + t2


def invert_pose(
    R: torch.Tensor,
    t: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Invert a rigid transform.

    Given p_cam = R @ p_world + t, the inverse gives:
        p_world = R.T @ p_cam - R.T @ t

    Returns:
        R_inv: Inverse rotation matrix, shape (3, 3).
        t_inv: Inverse translation vector, shape (3,).
    """
    return R.T, -R.T @ t


def camera_center(R: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
    """Camera center in world coordinates, C = -R.T @ t."""
    return -R.T @ t


def transform_points(R: torch.Tensor, t: torch.Tensor, points: torch.Tensor) -> torch.Tensor:
    """Apply ``R @ p + t`` to points of shape (..., 3)."""
    return points @ R.T + t


def solve_weighted_least_squares(
    J: torch.Tensor,
    residual: torch.Tensor,
    weights: torch.Tensor | None = None,
    rcond: float = 1e-9,
) -> torch.Tensor | None:
    """Solve ``min_x sum_i w_i (J_i x + r_i)^2`` through the normal equations.

    The per-row contributions are reduced as ``J.T @ (w * J)`` in float64, so
    rows can be accumulated independently.

    Args:
        J: Jacobian, shape (N, M).
        residual: Residual vector, shape (N,).
        weights: Non-negative row weights, shape (N,). Defaults to ones.
        rcond: Systems whose smallest/largest eigenvalue ratio is below this
            are treated as singular.

    Returns:
        Update ``x`` of shape (M,) in the dtype of ``J``, or None when the
        system is singular or ill-conditioned.
    """
    J64 = J.to(torch.float64)
    r64 = residual.to(torch.float64)
    w64 = torch.ones_like(r64) if weights is None else weights.to(torch.float64)

    A = J64.T @ (w64.unsqueeze(1) * J64)
    b = -(J64.T @ (w64 * r64))

    eigvals = torch.linalg.eigvalsh(A)
    if not torch.isfinite(eigvals).all() or eigvals[-1] <= 0:
        return None
    if eigvals[0] / eigvals[-1] < rcond:
        return None

    x, info = torch.linalg.solve_ex(A, b)
    if info.item() != 0 or not torch.isfinite(x).all():
        return None
    return x.to(J.dtype)
