"""Undistortion remap maps and depth image remapping."""

from __future__ import annotations

import cv2
import numpy as np
import torch

from .types import CameraIntrinsics


def compute_undistortion_maps(
    intrinsics: CameraIntrinsics,
) -> tuple[np.ndarray, np.ndarray]:
    """Compute undistortion remap maps that keep the original camera matrix.

    Using ``K`` itself as the new camera matrix means an undistorted depth
    image can be fed to a distortion-free copy of the same camera.

    This is a non-differentiable OpenCV boundary operation. The returned maps
    are CPU NumPy arrays intended for use with :func:`undistort_depth`.

    Args:
        intrinsics: Camera intrinsic parameters.

    Returns:
        Tuple ``(map_x, map_y)`` of ``np.float32`` arrays each with shape
        ``(height, width)`` suitable for ``cv2.remap``.
    """
    K = intrinsics.K.detach().cpu().numpy().astype(np.float64)
    dist = intrinsics.dist_coeffs.detach().cpu().numpy().astype(np.float64)
    map_x, map_y = cv2.initUndistortRectifyMap(
        K, dist, None, K, intrinsics.image_size, cv2.CV_32FC1
    )
    return map_x, map_y


def undistort_depth(
    depth: torch.Tensor,
    maps: tuple[np.ndarray, np.ndarray],
) -> torch.Tensor:
    """Undistort a depth image using precomputed remap maps.

    Nearest-neighbour sampling is used so that depths are never blended
    across object boundaries; pixels that map outside the source image
    become 0 (no measurement).

    Args:
        depth: Depth image of shape ``(H, W)``, float32, any device.
        maps: ``(map_x, map_y)`` tuple as returned by
            :func:`compute_undistortion_maps`.

    Returns:
        Undistorted depth image of the same shape, dtype and device.
    """
    device = depth.device
    map_x, map_y = maps

    depth_np = depth.detach().cpu().numpy().astype(np.float32)
    result = cv2.remap(
        depth_np,
        map_x,
        map_y,
        cv2.INTER_NEAREST,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0.0,
    )
    return torch.from_numpy(result).to(device=device, dtype=depth.dtype)
