"""CameraModel protocol defining the projection/back-projection interface."""

from typing import Protocol, runtime_checkable

import torch

from ..types import Pose


@runtime_checkable
class CameraModel(Protocol):
    """Protocol for camera models consumed by the fusion pipeline.

    Any class implementing these methods with the correct signatures
    satisfies this protocol structurally; no import of ``CameraModel`` is
    needed in the implementing class. All methods are pure functions of the
    model's immutable parameters.
    """

    image_size: tuple[int, int]

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project camera-frame points, shape (N, 3), to pixels (N, 2) and a validity mask."""
        ...

    def unproject(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Back-project pixels, shape (N, 2), to unit-Z rays (N, 3) and a validity mask."""
        ...

    def distort(self, npx: torch.Tensor) -> torch.Tensor:
        """Apply lens distortion to normalized coordinates, shape (N, 2)."""
        ...

    def undistort(self, npx: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Invert lens distortion; returns coordinates and a validity mask."""
        ...

    def jacobian(self, pose: Pose, points: torch.Tensor) -> torch.Tensor:
        """Pixel Jacobian w.r.t. a 6-parameter pose update, shape (N, 2, 6)."""
        ...
