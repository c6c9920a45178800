"""Ray versus axis-aligned box intersection."""

import torch


def ray_box_intersection(
    origins: torch.Tensor,
    directions: torch.Tensor,
    box_min: torch.Tensor,
    box_max: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Compute entry and exit distances of rays through an axis-aligned box.

    Uses the slab method: for each axis the ray parameter range inside the
    pair of planes x = box_min[i] and x = box_max[i] is intersected with the
    ranges of the other axes.

    Args:
        origins: Ray origins, shape (N, 3).
        directions: Ray directions, shape (N, 3). Need not be normalized; the
            returned distances are in units of ``directions``.
        box_min: Minimum corner of the box, shape (3,).
        box_max: Maximum corner of the box, shape (3,).

    Returns:
        t_near: Entry parameter, shape (N,). May be negative when the origin
            lies inside the box.
        t_far: Exit parameter, shape (N,).
        valid: Boolean mask, shape (N,). False when the ray misses the box
            or the box lies entirely behind the origin (t_far < 0).
    """
    # Axis-parallel components never cross their slab planes
    parallel = directions.abs() < 1e-12
    safe_dir = torch.where(parallel, torch.ones_like(directions), directions)

    t0 = (box_min - origins) / safe_dir
    t1 = (box_max - origins) / safe_dir
    t_lo = torch.minimum(t0, t1)
    t_hi = torch.maximum(t0, t1)

    inside_slab = (origins >= box_min) & (origins <= box_max)
    inf = torch.full_like(t_lo, float("inf"))
    t_lo = torch.where(parallel, torch.where(inside_slab, -inf, inf), t_lo)
    t_hi = torch.where(parallel, torch.where(inside_slab, inf, -inf), t_hi)

    t_near = t_lo.max(dim=-1).values
    t_far = t_hi.min(dim=-1).values
    valid = (t_near <= t_far) & (t_far >= 0.0)
    return t_near, t_far, valid
