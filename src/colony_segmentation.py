"""
Foreground object segmentation for photographed colony plates.

Pipeline: contrast window rescale -> Gaussian blur -> adaptive local threshold
-> distance transform + watershed -> per-object shape features.

Two tuning profiles are kept side by side. ROUGH_PROFILE is used for rough
object detection while calibrating the rotation angle, GRID_PROFILE is used to
locate the colony grid on a fine-cropped plate (larger blur so that spotted
sub-colonies merge into a single object). They were tuned independently and
should not be unified.

Usage:
    objects = segment(plate, GRID_PROFILE)
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from loguru import logger
from scipy import ndimage
from skimage import exposure, measure
from skimage.feature import peak_local_max
from skimage.filters import gaussian, threshold_local
from skimage.segmentation import watershed

from plate_models import DetectedObject

# %% ------------------------------------ Constants ------------------------------------ #
MAX_ECCENTRICITY = 0.8  # elongated streaks are segmentation artifacts, not colonies


# %% ------------------------------------ Dataclass ------------------------------------ #
@dataclass(frozen=True)
class SegmentationProfile:
    """Tuning parameters for one segmentation pass."""
    in_range: tuple[float, float] = (0.1, 0.8)  # contrast window mapped onto [0, 1]
    sigma: float = 6.0  # Gaussian blur sigma in pixels
    window: int = 15  # half width/height of the adaptive threshold window
    offset: float = 0.05  # intensity above the local mean needed for foreground
    split_min_distance: int = 5  # minimum distance between watershed seeds
    max_eccentricity: float = MAX_ECCENTRICITY
    min_area: int = 1

    def __post_init__(self):
        low, high = self.in_range
        if not low < high:
            raise ValueError(f"Invalid contrast window: {self.in_range}")
        if self.window < 1:
            raise ValueError("Threshold window must be at least 1 pixel")


ROUGH_PROFILE = SegmentationProfile(sigma=2.0, offset=0.05)
GRID_PROFILE = SegmentationProfile(sigma=6.0, offset=0.05)


# %% ------------------------------------ Functions ------------------------------------ #
def rescale(image: np.ndarray, in_range: tuple[float, float] = (0.1, 0.8)) -> np.ndarray:
    """Map the contrast window onto [0, 1], clipping values outside of it."""
    return exposure.rescale_intensity(
        np.asarray(image, dtype=float), in_range=in_range, out_range=(0.0, 1.0)
    )


def threshold_mask(image: np.ndarray, profile: SegmentationProfile = GRID_PROFILE) -> np.ndarray:
    """
    Binary foreground mask tolerant of uneven illumination.

    A pixel is foreground when its blurred intensity exceeds the mean of its
    (2 * window + 1) square neighbourhood by more than ``profile.offset``.

    Args:
        image: Greyscale image with intensities in [0, 1].
        profile: Segmentation tuning profile.

    Returns:
        Boolean mask with the same shape as ``image``.
    """
    rescaled = rescale(image, profile.in_range)
    blurred = gaussian(rescaled, sigma=profile.sigma, preserve_range=True)
    local_mean = threshold_local(blurred, block_size=2 * profile.window + 1, method="mean", offset=0)
    return blurred > local_mean + profile.offset


def label_objects(mask: np.ndarray, min_distance: int = 5) -> np.ndarray:
    """Label connected foreground, splitting touching objects with a distance-map watershed."""
    if not mask.any():
        return np.zeros(mask.shape, dtype=np.int32)

    components = measure.label(mask)
    dist_map = ndimage.distance_transform_edt(mask)
    coords = peak_local_max(
        dist_map,
        min_distance=min_distance,
        labels=components,
        exclude_border=False,
    )
    markers = np.zeros(mask.shape, dtype=np.int32)
    markers[tuple(coords.T)] = np.arange(1, len(coords) + 1)
    labels = watershed(-dist_map, markers, mask=mask)

    # components without a seed keep their connected-component label
    unseeded = mask & (labels == 0)
    if unseeded.any():
        extra = measure.label(unseeded)
        labels = np.where(extra > 0, extra + labels.max(), labels)

    return labels.astype(np.int32)


def object_features(
    labels: np.ndarray,
    max_eccentricity: float = MAX_ECCENTRICITY,
    min_area: int = 1,
) -> list[DetectedObject]:
    """Centroid, area and eccentricity of every labeled object, dropping elongated artifacts."""
    objects = []
    for prop in measure.regionprops(labels):
        if prop.area < min_area or prop.eccentricity >= max_eccentricity:
            continue
        y, x = prop.centroid  # regionprops returns (row, col)
        objects.append(DetectedObject(
            x=float(x),
            y=float(y),
            area=int(prop.area),
            eccentricity=float(prop.eccentricity),
        ))
    return objects


def segment(image: np.ndarray, profile: SegmentationProfile = GRID_PROFILE) -> list[DetectedObject]:
    """Detect foreground objects. Returns an empty list when nothing is found."""
    mask = threshold_mask(image, profile)
    labels = label_objects(mask, profile.split_min_distance)
    objects = object_features(labels, profile.max_eccentricity, profile.min_area)
    logger.debug(
        f"Segmented {labels.max()} objects, kept {len(objects)} "
        f"(eccentricity < {profile.max_eccentricity})"
    )
    return objects
