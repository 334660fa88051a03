"""
Colony size measurement inside calibrated selection boxes.

The plate-wide background threshold separates the two intensity clusters of a
fine-cropped plate (agar and colonies). A colony's size is the number of
pixels of its selection box brighter than both that threshold and the local
background estimated during grid location, capped at a maximum background.
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

import numpy as np
import pandas as pd
from loguru import logger
from scipy.cluster.vq import kmeans2

from plate_models import Rectangle

# %% ------------------------------------ Constants ------------------------------------ #
MAX_BACKGROUND = 0.5  # local backgrounds above this come from overgrown neighbours


# %% ------------------------------------ Functions ------------------------------------ #
def background_threshold(plate: np.ndarray) -> float:
    """Midpoint between the two k-means cluster centers of the pixel intensities."""
    values = np.asarray(plate, dtype=float).ravel()
    if np.ptp(values) == 0:
        return float(values[0])
    # start from the extremes so that both clusters are populated
    initial = np.array([[values.min()], [values.max()]])
    centers, _ = kmeans2(values[:, None], initial, minit="matrix")
    return float(centers.mean())


def plate_background(plate: np.ndarray, threshold: float) -> float:
    """Mean intensity of the pixels below ``threshold``; NaN when there are none."""
    values = np.asarray(plate, dtype=float).ravel()
    below = values[values < threshold]
    if below.size == 0:
        return float("nan")
    return float(below.mean())


def measure_colony(plate: np.ndarray, rect: Rectangle, background: float, threshold: float) -> float:
    """Number of pixels in ``rect`` brighter than ``max(background, threshold)``."""
    box = rect.clamp(plate.shape).crop(np.asarray(plate, dtype=float))
    cutoff = max(background, threshold)
    return float(np.count_nonzero(box > cutoff))


def measure_colonies(
    plate: np.ndarray,
    grid_frame: pd.DataFrame,
    threshold: float | None = None,
    max_background: float = MAX_BACKGROUND,
) -> pd.Series:
    """
    Measure every colony of a located grid.

    Local backgrounds above ``max_background`` are capped at it. A cell
    without a local background uses the mean intensity of the plate below the
    threshold instead.

    Args:
        plate: Fine-cropped plate with colonies brighter than background.
        grid_frame: Grid table with l, r, t, b and background columns.
        threshold: Plate background threshold, estimated with k-means when None.
        max_background: Upper limit of the local background, in [0, 1].

    Returns:
        Colony sizes named "size", indexed like ``grid_frame``.
    """
    if not 0 <= max_background <= 1:
        raise ValueError(f"Maximum background must be in [0, 1], got {max_background}")
    if threshold is None:
        threshold = background_threshold(plate)
    logger.debug(f"Measuring {len(grid_frame)} colonies, background threshold {threshold:.3f}")

    backgrounds = grid_frame["background"].astype(float)
    if backgrounds.isna().any():
        backgrounds = backgrounds.fillna(plate_background(plate, threshold))
    capped = int((backgrounds > max_background).sum())
    if capped:
        logger.warning(f"{capped} local backgrounds above {max_background} were capped")
    backgrounds = backgrounds.clip(upper=max_background)

    sizes = [
        measure_colony(
            plate,
            Rectangle(int(row.l), int(row.r), int(row.t), int(row.b)),
            background,
            threshold,
        )
        for row, background in zip(grid_frame.itertuples(index=False), backgrounds)
    ]
    return pd.Series(sizes, index=grid_frame.index, name="size", dtype=float)
