"""
Rotation calibration of a roughly cropped plate.

The plate is thresholded to find colonies, each colony is dilated into its
footprint and the footprints are joined into the rough shape of the lattice.
That shape is rotated through a range of candidate angles. The calibrated
angle minimizes the variance of the row-wise pixel counts of the rotated shape
over the rows it occupies: once the lattice is axis aligned every occupied row
carries the same number of pixels, while an oblique lattice produces ramps at
its top and bottom edges.

Footprints are placed at their sub-pixel centroids and rows are sampled at
sub-pixel spacing, so the score changes smoothly with the angle instead of
jumping with the pixel grid.

Angles are in degrees, positive values rotate the plate clockwise.
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np
from loguru import logger
from skimage import measure, morphology

from colony_segmentation import ROUGH_PROFILE, SegmentationProfile, threshold_mask

# %% ------------------------------------ Constants ------------------------------------ #
FOOTPRINT_POINTS = 64  # vertices of the polygon standing in for a round footprint


# %% ------------------------------------ Dataclass ------------------------------------ #
@dataclass(frozen=True)
class RotationConfig:
    """Configuration for the rotation angle search."""
    profile: SegmentationProfile = ROUGH_PROFILE
    dilation_radius: int = 3  # expands each colony to approximate its footprint
    min_foreground: float = 0.001  # foreground fraction needed to attempt calibration
    min_footprint_fraction: float = 0.25  # footprints smaller than this share of the median are specks
    row_resolution: float = 0.1  # spacing of the sampled rows in pixels
    tie_tolerance: float = 1e-6  # relative tolerance for equal variances

    def __post_init__(self):
        if self.row_resolution <= 0:
            raise ValueError(f"Row resolution must be positive, got {self.row_resolution}")


# %% ------------------------------------ Functions ------------------------------------ #
def rotate_image(image: np.ndarray, angle: float, order: int = 1, fill: float = 0.0) -> np.ndarray:
    """
    Rotate an image clockwise by ``angle`` degrees.

    The output canvas is enlarged so that the whole rotated image fits; the
    uncovered corners are filled with ``fill``.

    Args:
        image: 2D image.
        angle: Clockwise rotation in degrees.
        order: 0 for nearest neighbour, 1 for bilinear interpolation.
        fill: Value of pixels outside the source image.

    Returns:
        Rotated float image.
    """
    if angle % 360 == 0:
        return np.array(image, dtype=float)
    image = np.asarray(image, dtype=np.float32)

    h, w = image.shape[:2]
    center = ((w - 1) / 2, (h - 1) / 2)
    # OpenCV treats positive angles as counter-clockwise
    matrix = cv2.getRotationMatrix2D(center, -angle, 1.0)
    cos_a, sin_a = abs(matrix[0, 0]), abs(matrix[0, 1])
    new_w = int(np.ceil(h * sin_a + w * cos_a - 1e-6))
    new_h = int(np.ceil(h * cos_a + w * sin_a - 1e-6))
    matrix[0, 2] += (new_w - 1) / 2 - center[0]
    matrix[1, 2] += (new_h - 1) / 2 - center[1]

    interpolation = cv2.INTER_NEAREST if order == 0 else cv2.INTER_LINEAR
    rotated = cv2.warpAffine(
        image, matrix, (new_w, new_h),
        flags=interpolation,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=float(fill),
    )
    return rotated.astype(float)


def rotate_points(points: np.ndarray, angle_deg: float, center: np.ndarray) -> np.ndarray:
    """Rotate (x, y) points clockwise around a center, matching ``rotate_image``."""
    angle_rad = np.radians(angle_deg)
    cos_a, sin_a = np.cos(angle_rad), np.sin(angle_rad)

    pts_centered = np.asarray(points, dtype=float) - center

    rotated = np.zeros_like(pts_centered)
    rotated[:, 0] = pts_centered[:, 0] * cos_a - pts_centered[:, 1] * sin_a
    rotated[:, 1] = pts_centered[:, 0] * sin_a + pts_centered[:, 1] * cos_a

    return rotated + center


def candidate_angles(initial_angle: float, search_range: float, step: float) -> np.ndarray:
    """Angles from ``initial_angle - search_range / 2`` to ``initial_angle + search_range / 2``."""
    if step <= 0:
        raise ValueError(f"Rotation step must be positive, got {step}")
    half = search_range / 2
    offsets = np.arange(-half, half + step / 2, step)
    return np.round(initial_angle + offsets, 6)


def colony_footprints(plate: np.ndarray, config: RotationConfig) -> tuple[np.ndarray, float]:
    """
    Centroids (x, y) of the dilated colonies and their common footprint radius.

    Returns an empty (0, 2) array when the plate has too little foreground.
    """
    mask = threshold_mask(plate, config.profile)
    if mask.mean() < config.min_foreground:
        return np.empty((0, 2)), 0.0

    dilated = morphology.dilation(mask.astype(np.uint8), morphology.disk(config.dilation_radius)) > 0
    regions = measure.regionprops(measure.label(dilated))
    areas = np.array([region.area for region in regions], dtype=float)
    keep = areas >= config.min_footprint_fraction * np.median(areas)

    centers = np.array([
        (region.centroid[1], region.centroid[0])  # regionprops returns (row, col)
        for region, kept in zip(regions, keep) if kept
    ])
    radius = float(np.sqrt(np.median(areas[keep]) / np.pi))
    return centers, radius


def lattice_shape(plate: np.ndarray, config: RotationConfig) -> np.ndarray:
    """Convex hull vertices (x, y) of the colony footprints; empty without foreground."""
    centers, radius = colony_footprints(plate, config)
    if len(centers) == 0:
        return centers

    theta = np.linspace(0, 2 * np.pi, FOOTPRINT_POINTS, endpoint=False)
    outline = radius * np.column_stack([np.cos(theta), np.sin(theta)])
    points = (centers[:, None, :] + outline[None, :, :]).reshape(-1, 2)
    hull = cv2.convexHull(points.astype(np.float32))
    return hull[:, 0, :].astype(float)


def row_widths(hull: np.ndarray, angle: float, resolution: float = 0.1) -> np.ndarray:
    """Pixel count of every row of the hull rotated by ``angle``, rows sampled every ``resolution`` pixels."""
    rotated = rotate_points(hull, angle, hull.mean(axis=0))
    x, y = rotated[:, 0], rotated[:, 1]
    x_next, y_next = np.roll(x, -1), np.roll(y, -1)

    top, bottom = y.min(), y.max()
    n_rows = max(1, int(np.ceil((bottom - top) / resolution)))
    rows = (top + (np.arange(n_rows) + 0.5) * (bottom - top) / n_rows)[:, None]

    # every sampled row crosses the convex outline at its left and right edges
    low, high = np.minimum(y, y_next), np.maximum(y, y_next)
    crosses = (rows >= low) & (rows <= high) & (high > low)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = (rows - y) / (y_next - y)
        xs = np.where(crosses, x + t * (x_next - x), np.nan)
    return np.nanmax(xs, axis=1) - np.nanmin(xs, axis=1)


def row_sum_variance(hull: np.ndarray, angle: float, resolution: float = 0.1) -> float:
    """Variance of the row-wise pixel counts of the rotated lattice shape over the rows it occupies."""
    return float(np.var(row_widths(hull, angle, resolution)))


def search_rotation(
    plate: np.ndarray,
    initial_angle: float = 0.0,
    search_range: float = 6.0,
    step: float = 0.2,
    config: RotationConfig | None = None,
) -> tuple[float, bool]:
    """Run the angle search; the flag is True when calibration fell back to ``initial_angle``."""
    if config is None:
        config = RotationConfig()

    seeded = rotate_image(plate, initial_angle, fill=float(np.median(plate)))
    hull = lattice_shape(seeded, config)
    if len(hull) == 0:
        logger.warning(
            f"No foreground detected for rotation calibration, keeping seed angle {initial_angle}"
        )
        return float(initial_angle), True

    angles = candidate_angles(initial_angle, search_range, step)
    variances = np.array([
        row_sum_variance(hull, angle - initial_angle, config.row_resolution)
        for angle in angles
    ])

    best = variances.min()
    tied = np.isclose(variances, best, rtol=config.tie_tolerance, atol=1e-12)
    chosen = min(angles[tied], key=lambda a: (abs(a - initial_angle), a))
    logger.debug(f"Rotation calibrated to {chosen:.2f} deg (row-sum variance {best:.2f})")
    return float(chosen), False


def optimize_rotation(
    plate: np.ndarray,
    initial_angle: float = 0.0,
    search_range: float = 6.0,
    step: float = 0.2,
    config: RotationConfig | None = None,
) -> float:
    """
    Find the rotation that axis-aligns the plate's colony lattice.

    Candidates are searched around ``initial_angle``; ties within
    ``config.tie_tolerance`` of the minimum variance resolve to the smallest
    deviation from ``initial_angle``. A plate without detectable foreground
    keeps ``initial_angle``.

    Args:
        plate: Greyscale plate image in [0, 1], colonies brighter than background.
        initial_angle: Seed rotation in degrees clockwise.
        search_range: Width of the explored angle interval in degrees.
        step: Angle increment in degrees.
        config: Rotation configuration.

    Returns:
        Calibrated rotation angle in degrees clockwise.
    """
    angle, _ = search_rotation(plate, initial_angle, search_range, step, config)
    return angle
