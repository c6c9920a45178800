"""Fusion session configuration and its JSON loader."""

from __future__ import annotations

import json
import warnings
from dataclasses import dataclass, field, fields
from pathlib import Path

import torch

from .types import CameraIntrinsics, Pose

# Known supported version; warn on others but still attempt load
_KNOWN_VERSION = "1.0"


@dataclass
class BilateralConfig:
    """Depth bilateral filter parameters.

    Attributes:
        sigma_spatial: Spatial standard deviation in pixels.
        sigma_range: Range standard deviation in depth units (metres).
    """

    sigma_spatial: float = 0.8
    sigma_range: float = 0.01


@dataclass
class TsdfConfig:
    """Volume geometry and fusion parameters.

    Attributes:
        size: Voxels along each axis of the cube.
        unit: Voxel edge length in metres.
        truncation: Truncation band half-width; None means 4 voxels.
        max_weight: Per-voxel weight saturation.
    """

    size: int = 128
    unit: float = 0.01
    truncation: float | None = None
    max_weight: float = 64.0


@dataclass
class RaycastConfig:
    """Ray marching parameters.

    Attributes:
        min_step: Smallest march step in metres; None means half a voxel.
        near: Near-plane distance along each ray.
    """

    min_step: float | None = None
    near: float = 0.0


@dataclass
class TrackerConfig:
    """Projective ICP parameters."""

    stride: int = 4
    max_iterations: int = 20
    min_correspondences: int = 50
    convergence: float = 1e-6
    robust_scale_floor: float = 1e-3


@dataclass
class FusionConfig:
    """All tunables of a fusion session."""

    bilateral: BilateralConfig = field(default_factory=BilateralConfig)
    tsdf: TsdfConfig = field(default_factory=TsdfConfig)
    raycast: RaycastConfig = field(default_factory=RaycastConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If any parameter is out of range.
        """
        positive = {
            "bilateral.sigma_spatial": self.bilateral.sigma_spatial,
            "bilateral.sigma_range": self.bilateral.sigma_range,
            "tsdf.unit": self.tsdf.unit,
            "tracker.stride": self.tracker.stride,
            "tracker.max_iterations": self.tracker.max_iterations,
            "tracker.min_correspondences": self.tracker.min_correspondences,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}.")
        if self.tsdf.size < 2:
            raise ValueError(f"tsdf.size must be at least 2, got {self.tsdf.size}.")
        if self.tsdf.truncation is not None and self.tsdf.truncation <= 0:
            raise ValueError(f"tsdf.truncation must be positive, got {self.tsdf.truncation}.")
        if self.tsdf.max_weight < 1.0:
            raise ValueError(f"tsdf.max_weight must be at least 1, got {self.tsdf.max_weight}.")
        if self.raycast.min_step is not None and self.raycast.min_step <= 0:
            raise ValueError(f"raycast.min_step must be positive, got {self.raycast.min_step}.")
        if self.raycast.near < 0:
            raise ValueError(f"raycast.near must be non-negative, got {self.raycast.near}.")


def _parse_section(name: str, cls: type, raw: dict | None):
    """Build one config dataclass from a dict, warning on unknown keys."""
    if raw is None:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        warnings.warn(
            f"Unknown keys in {name!r} section ignored: {unknown}.",
            UserWarning,
            stacklevel=3,
        )
    return cls(**{k: v for k, v in raw.items() if k in known})


def _read_source(source: str | Path | dict) -> dict:
    if isinstance(source, dict):
        return source
    path = Path(source)
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


_SECTIONS = {
    "bilateral": BilateralConfig,
    "tsdf": TsdfConfig,
    "raycast": RaycastConfig,
    "tracker": TrackerConfig,
}


def load_fusion_config(source: str | Path | dict) -> FusionConfig:
    """Load a fusion configuration from a JSON file or a pre-parsed dict.

    Behaviour:
    - Unknown ``version`` values produce a :class:`UserWarning` but load proceeds.
    - Missing sections take their defaults.
    - Unknown sections and unknown keys inside a section produce a
      :class:`UserWarning` and are ignored.
    - ``camera`` and ``base_pose`` sections are accepted silently; load them
      with :func:`load_camera_intrinsics` and :func:`load_pose`.

    Args:
        source: File path (``str`` or :class:`~pathlib.Path`) or ``dict``.

    Returns:
        Validated FusionConfig.

    Raises:
        FileNotFoundError: If ``source`` is a path that does not exist.
        ValueError: If any value is out of range.
    """
    raw = _read_source(source)

    version = raw.get("version")
    if version is not None and version != _KNOWN_VERSION:
        warnings.warn(
            f"Unknown config version {version!r}; expected {_KNOWN_VERSION!r}. "
            "Attempting to load anyway.",
            UserWarning,
            stacklevel=2,
        )

    unknown = sorted(set(raw) - set(_SECTIONS) - {"version", "camera", "base_pose"})
    if unknown:
        warnings.warn(f"Unknown config sections ignored: {unknown}.", UserWarning, stacklevel=2)

    config = FusionConfig(
        **{name: _parse_section(name, cls, raw.get(name)) for name, cls in _SECTIONS.items()}
    )
    config.validate()
    return config


def load_camera_intrinsics(source: str | Path | dict) -> CameraIntrinsics:
    """Parse camera intrinsics.

    Accepts either the intrinsics dict itself (``K``, ``image_size`` and
    optional ``dist_coeffs``) or a full config whose ``camera`` section holds
    it. Missing ``dist_coeffs`` mean no distortion.

    Raises:
        KeyError: If ``K`` or ``image_size`` is missing.
    """
    raw = _read_source(source)
    raw = raw.get("camera", raw)
    K = torch.tensor(raw["K"], dtype=torch.float32)
    dist_coeffs = torch.tensor(raw.get("dist_coeffs", [0.0] * 5), dtype=torch.float64)
    w, h = raw["image_size"]
    return CameraIntrinsics(K=K, dist_coeffs=dist_coeffs, image_size=(int(w), int(h)))


def load_pose(source: str | Path | dict) -> Pose:
    """Parse a world-to-camera pose from ``{"R": ..., "t": ...}``.

    Accepts either the pose dict itself or a full config whose ``base_pose``
    section holds it. ``t`` with shape (3, 1) is normalised to (3,).
    """
    raw = _read_source(source)
    raw = raw.get("base_pose", raw)
    R = torch.tensor(raw["R"], dtype=torch.float32)
    t = torch.tensor(raw["t"], dtype=torch.float32)
    if t.ndim == 2 and t.shape == (3, 1):
        t = t.squeeze(1)
    return Pose(R=R, t=t)
