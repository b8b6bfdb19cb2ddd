from collections.abc import Sequence

import numpy as np

from cosmos.schemas import EmbeddingHint
from cosmos.settings import Settings

Point = Sequence[float]


def _direction(theta_deg: float, phi_deg: float) -> np.ndarray:
    theta = np.radians(theta_deg)
    phi = np.radians(phi_deg)
    return np.array([np.sin(phi) * np.cos(theta), np.cos(phi), np.sin(phi) * np.sin(theta)], dtype=np.float64)


def angular_distance(a: Point, b: Point) -> float:
    """Great-circle angle in degrees between two [theta, phi, r_offset] points."""
    dot = float(np.dot(_direction(a[0], a[1]), _direction(b[0], b[1])))
    return float(np.degrees(np.arccos(np.clip(dot, -1.0, 1.0))))


def in_range(value: float, bounds: tuple[float, float]) -> bool:
    return bounds[0] <= value <= bounds[1]


def within_layout_bounds(point: Point, settings: Settings) -> bool:
    return (
        in_range(point[0], settings.theta_range)
        and in_range(point[1], settings.phi_range)
        and in_range(point[2], settings.r_offset_range)
    )


def spherical_mean(points: Sequence[Point], settings: Settings) -> tuple[float, float, float]:
    if not points:
        raise ValueError("Cannot average an empty set of points.")
    total = np.sum([_direction(p[0], p[1]) for p in points], axis=0)
    norm = np.linalg.norm(total)
    if norm == 0:
        first = points[0]
        return float(first[0]), float(first[1]), float(first[2])
    unit = total / norm
    theta = float(np.degrees(np.arctan2(unit[2], unit[0]))) % 360.0
    phi = float(np.degrees(np.arccos(np.clip(unit[1], -1.0, 1.0))))
    r_offset = float(np.mean([p[2] for p in points]))
    theta = float(np.clip(theta, *settings.theta_range))
    phi = float(np.clip(phi, *settings.phi_range))
    r_offset = float(np.clip(r_offset, *settings.r_offset_range))
    return theta, phi, r_offset


def hint_position(hint: EmbeddingHint, settings: Settings) -> tuple[float, float, float]:
    """Rough placement from an embedding hint, used before the layout call has run."""
    theta_min, theta_max = settings.theta_range
    phi_min, phi_max = settings.phi_range
    r_min, r_max = settings.r_offset_range
    # Opinion extremes end up half a turn apart.
    theta = theta_min + (hint.opinion_axis + 1.0) / 2.0 * (theta_max - theta_min) / 2.0
    phi = phi_min + (1.0 - hint.abstraction) / 2.0 * (phi_max - phi_min)
    r_offset = float(np.clip(hint.novelty, r_min, r_max))
    return float(theta), float(phi), r_offset
