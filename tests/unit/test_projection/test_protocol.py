"""Protocol compliance tests for CameraModel (structural subtyping, isinstance).

Tests verify that:
- ``PinholeCamera`` satisfies the protocol (positive).
- A dummy class with every member satisfies the protocol (positive).
- Classes missing a required member do NOT satisfy the protocol (negative).
"""

from __future__ import annotations

import torch

from depthfusion import CameraModel, create_camera, make_intrinsics

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _DummyCamera:
    """Dummy model that satisfies CameraModel structurally."""

    image_size = (4, 3)

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        n = points.shape[0]
        return torch.zeros(n, 2), torch.ones(n, dtype=torch.bool)

    def unproject(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        n = pixels.shape[0]
        return torch.zeros(n, 3), torch.ones(n, dtype=torch.bool)

    def distort(self, npx: torch.Tensor) -> torch.Tensor:
        return npx

    def undistort(self, npx: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        return npx, torch.ones(npx.shape[0], dtype=torch.bool)

    def jacobian(self, pose, points: torch.Tensor) -> torch.Tensor:
        return torch.zeros(points.shape[0], 2, 6)


# ---------------------------------------------------------------------------
# Protocol compliance tests
# ---------------------------------------------------------------------------


class TestProtocolCompliance:
    """Protocol compliance tests, positive and negative cases."""

    def test_pinhole_camera_satisfies_protocol(self) -> None:
        camera = create_camera(make_intrinsics(64, 48))
        assert isinstance(camera, CameraModel), (
            "PinholeCamera must satisfy CameraModel via isinstance() runtime check."
        )

    def test_dummy_class_satisfies_protocol(self) -> None:
        assert isinstance(_DummyCamera(), CameraModel)

    def test_missing_unproject(self) -> None:
        class _NoUnproject(_DummyCamera):
            unproject = None

        assert not isinstance(_NoUnproject(), CameraModel)

    def test_missing_jacobian(self) -> None:
        class _OnlyProject:
            image_size = (4, 3)

            def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
                n = points.shape[0]
                return torch.zeros(n, 2), torch.ones(n, dtype=torch.bool)

        assert not isinstance(_OnlyProject(), CameraModel)
