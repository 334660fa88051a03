"""
Plate boundary detection.

rough_crop isolates every plate of a multi-plate template from the contrast
between plates and the gaps separating them. fine_crop finds the tightest box
around the colonies of one rotated plate. calibrate_plate runs the rotation
search followed by the fine crop and apply_calibration replays a calibration
on the plate it was measured on.
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

import numpy as np
from loguru import logger
from skimage import morphology
from skimage.filters import threshold_otsu

from plate_models import Rectangle, RotationResult, normalize_pad
from plate_rotation import RotationConfig, rotate_image, search_rotation
from utils import contiguous_regions

# %% ------------------------------------ Constants ------------------------------------ #
MIN_PLATE_FRACTION = 0.05  # runs shorter than this share of the image are gaps, not plates
INTENSITY_DECIMALS = 6  # interpolation noise below this resolution is ignored when ranking pixels


# %% ------------------------------------ Fine crop ------------------------------------ #
def fine_crop(
    rotated_image: np.ndarray,
    thresh: float = 0.03,
    pad: int | tuple[int, int, int, int] = 5,
    open_radius: int = 1,
) -> Rectangle:
    """
    Tightest rectangle around the brightest ``thresh`` fraction of pixels, plus a margin.

    Args:
        rotated_image: Rotated plate with colonies brighter than background.
        thresh: Target fraction of foreground pixels.
        pad: Margin in pixels, one int or (left, right, top, bottom).
        open_radius: Radius of the opening that removes isolated bright pixels.

    Returns:
        Rectangle clamped to the image. A blank image yields its full extent.
    """
    if not 0 < thresh < 1:
        raise ValueError(f"Foreground fraction must be in (0, 1), got {thresh}")
    image = np.round(np.asarray(rotated_image, dtype=float), INTENSITY_DECIMALS)
    pad_l, pad_r, pad_t, pad_b = normalize_pad(pad)

    cutoff = np.quantile(image, 1 - thresh)
    mask = image >= cutoff
    if open_radius > 0:
        opened = morphology.opening(mask.astype(np.uint8), morphology.disk(open_radius)) > 0
        if opened.any():
            mask = opened
        else:
            logger.warning("Fine crop foreground vanished after opening, using the unfiltered mask")

    if mask.all() or not mask.any():
        logger.warning("No distinct foreground for fine crop, using the full image extent")
        return Rectangle.full(image.shape)

    rows = np.flatnonzero(mask.any(axis=1))
    cols = np.flatnonzero(mask.any(axis=0))
    bounds = Rectangle(int(cols[0]), int(cols[-1]), int(rows[0]), int(rows[-1]))
    return bounds.pad(pad_l, pad_r, pad_t, pad_b).clamp(image.shape)


def calibrate_plate(
    plate: np.ndarray,
    initial_angle: float = 90.0,
    search_range: float = 6.0,
    step: float = 0.2,
    pad: int | tuple[int, int, int, int] = 5,
    thresh: float = 0.03,
    invert: bool = False,
    config: RotationConfig | None = None,
) -> RotationResult:
    """
    Calibrate the rotation angle of one plate and its fine crop at that angle.

    Args:
        plate: Roughly cropped plate image.
        initial_angle: Seed rotation in degrees clockwise.
        search_range: Width of the explored angle interval in degrees.
        step: Angle increment in degrees.
        pad: Fine crop margin.
        thresh: Fine crop foreground fraction.
        invert: Invert intensities first (dark colonies on a light plate).
        config: Rotation configuration.

    Returns:
        RotationResult with the angle, the fine crop and whether the angle fell back to the seed.
    """
    image = np.asarray(plate, dtype=float)
    if invert:
        image = 1 - image
    angle, degraded = search_rotation(image, initial_angle, search_range, step, config)
    rotated = rotate_image(image, angle, fill=float(np.median(image)))
    fine = fine_crop(rotated, thresh=thresh, pad=pad)
    logger.debug(f"Plate calibrated: rotate={angle:.2f}, fine crop {fine}")
    return RotationResult(angle=angle, fine=fine, degraded=degraded)


def apply_calibration(plate: np.ndarray, result: RotationResult, invert: bool = False) -> np.ndarray:
    """Invert, rotate and fine-crop a roughly cropped plate with a stored calibration."""
    image = np.asarray(plate, dtype=float)
    if invert:
        image = 1 - image
    rotated = rotate_image(image, result.angle, fill=float(np.median(image)))
    return result.fine.clamp(rotated.shape).crop(rotated)


# %% ------------------------------------ Rough crop ------------------------------------ #
def _plate_runs(profile: np.ndarray, thresh: float) -> np.ndarray:
    runs = contiguous_regions(profile > thresh)
    min_length = max(1, int(MIN_PLATE_FRACTION * len(profile)))
    return runs[(runs[:, 1] - runs[:, 0]) >= min_length]


def rough_crop(
    image: np.ndarray,
    thresh: float = 0.03,
    invert: bool = True,
    pad: int | tuple[int, int, int, int] = 0,
) -> list[Rectangle]:
    """
    Locate every plate of a multi-plate template image.

    With ``invert=True`` plates are light and the region between plates is
    dark, and the other way round with ``invert=False``. Column and row
    profiles of the plate mask are thresholded at ``thresh``; every pair of a
    row run and a column run is one plate position.

    Args:
        image: Greyscale template image.
        thresh: Minimum fraction of plate pixels for a row or column to belong to a plate.
        invert: Plates are lighter than the gaps between them.
        pad: Margin in pixels, one int or (left, right, top, bottom).

    Returns:
        Rectangles ordered row-major, position 1 first (top-left).
    """
    image = np.asarray(image, dtype=float)
    plates = image if invert else 1 - image
    pad_l, pad_r, pad_t, pad_b = normalize_pad(pad)

    try:
        cutoff = threshold_otsu(plates)
    except ValueError:
        logger.warning("Otsu threshold failed on a uniform template, no plates found")
        return []
    mask = plates > cutoff

    row_runs = _plate_runs(mask.mean(axis=1), thresh)
    col_runs = _plate_runs(mask.mean(axis=0), thresh)
    rects = [
        Rectangle(int(c0), int(c1 - 1), int(r0), int(r1 - 1)).pad(pad_l, pad_r, pad_t, pad_b).clamp(image.shape)
        for r0, r1 in row_runs
        for c0, c1 in col_runs
    ]
    logger.info(f"Rough crop found {len(row_runs)} x {len(col_runs)} plate positions")
    return rects
