"""KinectFusion session: preprocess, track, integrate and ray cast per frame.

A session is a small state machine:

    Uninitialized --init()--> Lost --execute() ok--> Tracking
    Tracking --execute() tracking failure / reset()--> Lost

Entering a frame in ``Lost`` discards the reconstruction and bootstraps it
again from the last trusted pose (the base pose after ``init``). The volume
lives in the ``Lost`` and ``Tracking`` states, so there is no map to read
before ``init``.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, TypeAlias

import torch

from .camera import PinholeCamera
from .config import FusionConfig
from .depth import bilateral_filter_depth, depth_to_point_normals
from .raycast import ray_cast
from .tracking import update_pose
from .transforms import matrix_to_rvec
from .types import PointNormalMap, Pose
from .volume import TsdfVolume, update_tsdf

logger = logging.getLogger(__name__)


class FusionState(Enum):
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"
    LOST = "lost"


@dataclass(frozen=True)
class Uninitialized:
    """No volume or camera yet."""


@dataclass(frozen=True)
class Lost:
    """Tracking is not trusted; ``pose`` is the last trusted pose."""

    pose: Pose
    volume: TsdfVolume


@dataclass(frozen=True)
class Tracking:
    """Valid pose, the map and the surface prediction rendered from it."""

    pose: Pose
    cast: PointNormalMap
    volume: TsdfVolume


SessionState: TypeAlias = Uninitialized | Lost | Tracking


class KinectFusion:
    """Dense reconstruction session over a stream of depth images.

    Frames must be fed one at a time; ``execute`` is not re-entrant and the
    accessors are only meaningful between frames.

    Args:
        config: Session parameters. Defaults to :class:`FusionConfig()`.
    """

    def __init__(self, config: FusionConfig | None = None) -> None:
        self.config = config if config is not None else FusionConfig()
        self.config.validate()
        self._state: SessionState = Uninitialized()
        self._camera: PinholeCamera | None = None
        self.frame_count = 0
        self.lost_count = 0

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def init(
        self,
        size: int | None,
        unit: float | None,
        camera: PinholeCamera,
        base_pose: Pose,
    ) -> None:
        """Allocate a zeroed volume and start in ``Lost`` at ``base_pose``.

        Args:
            size: Voxels per axis; None takes ``config.tsdf.size``.
            unit: Voxel edge length; None takes ``config.tsdf.unit``.
            camera: Camera model of the incoming depth images.
            base_pose: World-to-camera pose used to bootstrap the first frame.
        """
        tsdf = self.config.tsdf
        volume = TsdfVolume(
            size=tsdf.size if size is None else size,
            unit=tsdf.unit if unit is None else unit,
            truncation=tsdf.truncation,
            max_weight=tsdf.max_weight,
            device=camera.device,
        )
        self._camera = camera
        self._state = Lost(pose=base_pose.to(device=camera.device, dtype=torch.float32), volume=volume)
        self.frame_count = 0
        self.lost_count = 0
        logger.info(
            f"Session initialised: {volume.size}^3 voxels of {volume.unit} m, "
            f"image {camera.width}x{camera.height}"
        )

    def reset(self) -> None:
        """Drop to ``Lost`` without touching the volume or the last pose."""
        if isinstance(self._state, Tracking):
            self._state = Lost(pose=self._state.pose, volume=self._state.volume)
            logger.info("Session reset; tracking will re-bootstrap on the next frame")

    # -----------------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------------

    @property
    def state(self) -> FusionState:
        if isinstance(self._state, Tracking):
            return FusionState.TRACKING
        if isinstance(self._state, Lost):
            return FusionState.LOST
        return FusionState.UNINITIALIZED

    @property
    def session_state(self) -> SessionState:
        return self._state

    def valid(self) -> bool:
        return isinstance(self._state, Tracking)

    def get_camera(self) -> PinholeCamera | None:
        return self._camera

    def get_pose(self) -> Pose | None:
        return self._state.pose if isinstance(self._state, Tracking) else None

    def get_cast(self) -> PointNormalMap | None:
        return self._state.cast if isinstance(self._state, Tracking) else None

    def get_map(self) -> TsdfVolume | None:
        return self._state.volume if isinstance(self._state, Tracking) else None

    # -----------------------------------------------------------------------
    # Per-frame pipeline
    # -----------------------------------------------------------------------

    @contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        t0 = time.perf_counter()
        yield
        logger.debug(f"[frame {self.frame_count}] {name}: {(time.perf_counter() - t0) * 1e3:.1f} ms")

    def _log_motion(self, previous: Pose, current: Pose) -> None:
        """Log the frame-to-frame camera motion as rotation angle and translation."""
        step = current.compose(previous.inverse())
        angle = float(matrix_to_rvec(step.R).norm())
        shift = float((current.C - previous.C).norm())
        logger.debug(f"[frame {self.frame_count}] moved {shift * 1e3:.1f} mm, rotated {angle:.4f} rad")

    def execute(self, depth: torch.Tensor) -> bool:
        """Process one depth image.

        Args:
            depth: Raw depth image, shape (H, W) matching the camera.

        Returns:
            True when the frame was tracked, integrated and ray cast. False
            when the session is uninitialised, the image size is wrong (state
            untouched), or tracking failed (state becomes ``Lost``; volume and
            last pose are kept, nothing is integrated).
        """
        state = self._state
        if isinstance(state, Uninitialized):
            logger.warning("execute() called before init(); frame rejected")
            return False

        camera = self._camera
        volume = state.volume
        expected = (camera.height, camera.width)
        if depth.ndim != 2 or tuple(depth.shape) != expected:
            logger.warning(f"Depth shape {tuple(depth.shape)} does not match camera {expected}; frame rejected")
            return False

        depth = depth.to(device=camera.device, dtype=torch.float32)
        self.frame_count += 1

        if isinstance(state, Lost):
            volume.zero()
            pose = state.pose
        else:
            with self._stage("measurement"):
                bilateral = self.config.bilateral
                filtered = bilateral_filter_depth(depth, bilateral.sigma_spatial, bilateral.sigma_range)
                pnmap = depth_to_point_normals(camera, filtered)

            with self._stage("update pose"):
                tracker = self.config.tracker
                tracked = update_pose(
                    state.pose,
                    camera,
                    pnmap,
                    state.cast,
                    stride=tracker.stride,
                    max_iterations=tracker.max_iterations,
                    min_correspondences=tracker.min_correspondences,
                    convergence=tracker.convergence,
                    robust_scale_floor=tracker.robust_scale_floor,
                )

            if tracked is None:
                self._state = Lost(pose=state.pose, volume=volume)
                self.lost_count += 1
                logger.warning(f"[frame {self.frame_count}] Tracking lost")
                return False
            pose = tracked
            self._log_motion(state.pose, pose)

        with self._stage("update map"):
            update_tsdf(volume, camera, pose, depth)

        with self._stage("ray casting"):
            cast = ray_cast(volume, camera, pose, self.config.raycast.min_step, self.config.raycast.near)

        if isinstance(state, Lost):
            logger.info(f"[frame {self.frame_count}] Tracking (re)started")
        self._state = Tracking(pose=pose, cast=cast, volume=volume)
        return True
