"""DepthFusion: real-time dense surface reconstruction from depth streams."""

from importlib.metadata import PackageNotFoundError, version

from .camera import PinholeCamera, create_camera, make_intrinsics
from .config import (
    BilateralConfig,
    FusionConfig,
    RaycastConfig,
    TrackerConfig,
    TsdfConfig,
    load_camera_intrinsics,
    load_fusion_config,
    load_pose,
)
from .depth import (
    bilateral_filter_depth,
    depth_to_point_normals,
    depth_to_points,
    point_normals_to_depth,
    points_to_depth,
    pyrdown_depth,
)
from .fusion import FusionState, KinectFusion
from .intersect import ray_box_intersection
from .logging import setup_logging
from .projection import CameraModel
from .raycast import ray_cast
from .tracking import calc_icp, sample_live_points, update_pose
from .transforms import (
    camera_center,
    compose_poses,
    invert_pose,
    matrix_to_rvec,
    rvec_to_matrix,
    solve_weighted_least_squares,
    transform_points,
    twist_to_pose,
)
from .types import (
    CameraIntrinsics,
    DepthImage,
    Mat3,
    PointNormalMap,
    Pose,
    Vec2,
    Vec3,
)
from .undistortion import compute_undistortion_maps, undistort_depth
from .volume import TsdfVolume, update_tsdf

__all__ = [
    "BilateralConfig",
    "CameraIntrinsics",
    "CameraModel",
    "DepthImage",
    "FusionConfig",
    "FusionState",
    "KinectFusion",
    "Mat3",
    "PinholeCamera",
    "PointNormalMap",
    "Pose",
    "RaycastConfig",
    "TrackerConfig",
    "TsdfConfig",
    "TsdfVolume",
    "Vec2",
    "Vec3",
    "bilateral_filter_depth",
    "calc_icp",
    "camera_center",
    "compose_poses",
    "compute_undistortion_maps",
    "create_camera",
    "depth_to_point_normals",
    "depth_to_points",
    "invert_pose",
    "load_camera_intrinsics",
    "load_fusion_config",
    "load_pose",
    "make_intrinsics",
    "matrix_to_rvec",
    "point_normals_to_depth",
    "points_to_depth",
    "pyrdown_depth",
    "ray_box_intersection",
    "ray_cast",
    "rvec_to_matrix",
    "sample_live_points",
    "setup_logging",
    "solve_weighted_least_squares",
    "transform_points",
    "twist_to_pose",
    "undistort_depth",
    "update_pose",
    "update_tsdf",
]

try:
    __version__ = version(__name__)
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"
