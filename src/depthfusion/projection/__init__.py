"""Camera projection interfaces."""

from .protocol import CameraModel

__all__ = ["CameraModel"]
