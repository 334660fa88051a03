"""
Colony grid location on a fine-cropped plate.

The plate is segmented with GRID_PROFILE, the marginal foreground density of
the threshold mask gives the row and column breaks of the lattice and every
detected object is binned into its (colony_row, colony_col) cell. Cells
without an object are imputed in two passes: a smoothing spline of y along
each row, then one of x along each column. Lines with fewer than four detected
centers are not fitted and their missing centers take the lattice midpoint.
Each cell gets a square selection box and a background intensity estimated
from the box corners and smoothed over the plate with loess.

Usage:
    grid = locate_grid(fine_cropped_plate, radius_fraction=0.9)
    if grid is not None:
        table = grid.to_frame()
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from loguru import logger
from scipy.interpolate import UnivariateSpline
from scipy.spatial.distance import cdist
from sklearn.linear_model import LinearRegression
from sklearn.preprocessing import PolynomialFeatures

from colony_segmentation import GRID_PROFILE, SegmentationProfile, label_objects, object_features, threshold_mask
from plate_models import DetectedObject, Grid, GridCell, LatticeAxis, Rectangle
from utils import contiguous_regions

# %% ------------------------------------ Constants ------------------------------------ #
EDGE_MODES = ("mid", "band")
LATTICE_COLUMNS = ["colony_row", "colony_col", "x", "y"]
MIN_SPLINE_KNOTS = 4  # sparser lines take the lattice midpoint instead of a fitted center


# %% ------------------------------------ Dataclass ------------------------------------ #
@dataclass(frozen=True)
class GridConfig:
    """Configuration for grid location."""
    profile: SegmentationProfile = GRID_PROFILE
    thresh: float = 0.07  # foreground fraction of a row/column inside a lattice band
    edges: str = "mid"  # "mid": outer breaks half a gap outside the bands, "band": at the band edges
    min_band: int = 2  # bands narrower than this many pixels are noise
    keep_largest_object: bool = True  # several objects in a cell: keep the largest, else average them
    spline_smoothing: float = 1.0  # allowed squared residual per center, in pixels
    loess_span: float = 0.3
    loess_degree: int = 2

    def __post_init__(self):
        if self.edges not in EDGE_MODES:
            raise ValueError(f"Unknown edge mode '{self.edges}', expected one of {EDGE_MODES}")
        if not 0 < self.loess_span <= 1:
            raise ValueError(f"Loess span must be in (0, 1], got {self.loess_span}")
        if self.loess_degree not in (1, 2):
            raise ValueError(f"Loess degree must be 1 or 2, got {self.loess_degree}")


# %% ------------------------------------ Lattice breaks ------------------------------------ #
def grid_breaks(
    mask: np.ndarray,
    axis: str,
    thresh: float = 0.07,
    edges: str = "mid",
    min_band: int = 2,
) -> LatticeAxis | None:
    """
    Estimate the lattice breaks of one image dimension from the foreground density.

    Args:
        mask: Binary foreground mask.
        axis: "row" for breaks along y, "col" for breaks along x.
        thresh: Foreground fraction above which a row/column belongs to a band.
        edges: Placement of the outer breaks, "mid" or "band".
        min_band: Minimum band width in pixels.

    Returns:
        LatticeAxis, or None when no band is found.
    """
    if axis not in ("row", "col"):
        raise ValueError(f"Axis must be 'row' or 'col', got '{axis}'")
    if edges not in EDGE_MODES:
        raise ValueError(f"Unknown edge mode '{edges}', expected one of {EDGE_MODES}")

    profile = np.asarray(mask, dtype=float).mean(axis=1 if axis == "row" else 0)
    bands = contiguous_regions(profile > thresh)
    bands = bands[(bands[:, 1] - bands[:, 0]) >= min_band]
    if len(bands) == 0:
        return None

    first = bands[:, 0].astype(float)
    last = bands[:, 1].astype(float) - 1
    inner = (last[:-1] + first[1:]) / 2

    if edges == "band":
        outer = 0.0
    elif len(bands) > 1:
        outer = float(np.mean(first[1:] - last[:-1])) / 2
    else:
        outer = (last[0] - first[0] + 1) / 2

    upper = len(profile) - 1
    low = max(0.0, first[0] - outer)
    high = min(float(upper), last[-1] + outer)
    if high <= low:
        return None
    return LatticeAxis(np.r_[low, inner, high])


# %% ------------------------------------ Lattice ------------------------------------ #
def bin_objects(
    objects: list[DetectedObject],
    rows: LatticeAxis,
    cols: LatticeAxis,
    keep_largest: bool = True,
) -> pd.DataFrame:
    """One center per occupied lattice cell; objects outside the breaks are dropped."""
    if not objects:
        return pd.DataFrame(columns=LATTICE_COLUMNS)

    objs = pd.DataFrame([vars(obj) for obj in objects])
    objs["colony_row"] = rows.bin(objs["y"].to_numpy())
    objs["colony_col"] = cols.bin(objs["x"].to_numpy())
    objs = objs[(objs["colony_row"] > 0) & (objs["colony_col"] > 0)]

    if keep_largest:
        cells = (
            objs.sort_values("area", ascending=False, kind="stable")
            .drop_duplicates(["colony_row", "colony_col"], keep="first")
        )
    else:
        cells = objs.groupby(["colony_row", "colony_col"], as_index=False)[["x", "y"]].mean()
    return cells[LATTICE_COLUMNS].reset_index(drop=True)


def build_lattice(cells: pd.DataFrame, n_rows: int, n_cols: int) -> pd.DataFrame:
    """Every (colony_row, colony_col) combination, with NaN centers where no object was found."""
    index = pd.MultiIndex.from_product(
        [range(1, n_rows + 1), range(1, n_cols + 1)], names=["colony_row", "colony_col"]
    )
    lattice = (
        cells.astype({"colony_row": int, "colony_col": int})
        .set_index(["colony_row", "colony_col"])[["x", "y"]]
        .astype(float)
        .reindex(index)
        .reset_index()
    )
    return lattice


# %% ------------------------------------ Imputation ------------------------------------ #
def _spline_fill(positions: np.ndarray, values: np.ndarray, fallback: float, smoothing: float) -> np.ndarray:
    """
    Smoothing spline through the known values, evaluated at every position.

    Lines with fewer than MIN_SPLINE_KNOTS known values are not fitted: their
    known values are kept and the missing ones take ``fallback``. Outside the
    known positions the spline is held at its boundary value.
    """
    known = ~np.isnan(values)
    n_known = int(known.sum())
    if n_known < MIN_SPLINE_KNOTS:
        return np.where(known, values, fallback)
    spline = UnivariateSpline(positions[known], values[known], k=3, s=smoothing * n_known, ext="const")
    return spline(positions)


def _impute_lines(
    lattice: pd.DataFrame,
    line: str,
    position: str,
    coord: str,
    axis: LatticeAxis,
    smoothing: float,
) -> pd.DataFrame:
    imputed = lattice.sort_values([line, position]).copy()
    for number, group in imputed.groupby(line):
        imputed.loc[group.index, coord] = _spline_fill(
            group[position].to_numpy(dtype=float),
            group[coord].to_numpy(dtype=float),
            axis.centers[int(number) - 1],
            smoothing,
        )
    return imputed.sort_values(["colony_row", "colony_col"]).reset_index(drop=True)


def impute_rowwise(lattice: pd.DataFrame, rows: LatticeAxis, smoothing: float = 1.0) -> pd.DataFrame:
    """Fit y along each row against the column index; sparse rows fall back to the row midpoint."""
    return _impute_lines(lattice, "colony_row", "colony_col", "y", rows, smoothing)


def impute_columnwise(lattice: pd.DataFrame, cols: LatticeAxis, smoothing: float = 1.0) -> pd.DataFrame:
    """Fit x along each column against the row index; sparse columns fall back to the column midpoint."""
    return _impute_lines(lattice, "colony_col", "colony_row", "x", cols, smoothing)


# %% ------------------------------------ Selection & background ------------------------------------ #
def selection_radius(rows: LatticeAxis, cols: LatticeAxis, radius_fraction: float = 0.9) -> int:
    """Half width of a selection box: ``radius_fraction`` of half the mean lattice spacing."""
    return max(1, int(round((rows.spacing + cols.spacing) / 4 * radius_fraction)))


def corner_background(image: np.ndarray, rect: Rectangle) -> float:
    """Mean of the two middle values of the four corner intensities of a box."""
    return float(np.median([image[r, c] for r, c in rect.corners()]))


def loess_smooth(points: np.ndarray, values: np.ndarray, span: float = 0.3, degree: int = 2) -> np.ndarray:
    """
    Local polynomial regression evaluated at the sample points.

    Each point is fitted from its ``span`` nearest neighbours with tricube
    weights on the unnormalized predictors. The neighbourhood is never smaller
    than the number of polynomial terms plus one.

    Args:
        points: (n, d) predictor coordinates.
        values: (n,) responses.
        span: Fraction of points in each local neighbourhood.
        degree: Polynomial degree of the local fits.

    Returns:
        (n,) smoothed values.
    """
    points = np.asarray(points, dtype=float)
    values = np.asarray(values, dtype=float)
    n = len(values)
    if n == 0:
        return values.copy()

    poly = PolynomialFeatures(degree=degree, include_bias=False)
    n_terms = poly.fit(points[:1]).n_output_features_ + 1
    q = min(n, max(int(np.floor(n * span)), n_terms + 1))
    distances = cdist(points, points)

    smoothed = np.empty(n)
    for i in range(n):
        order = np.argsort(distances[i], kind="stable")[:q]
        reach = distances[i, order[-1]]
        scaled = distances[i, order] / reach if reach > 0 else np.zeros(q)
        weights = np.clip(1 - scaled ** 3, 0, None) ** 3
        if np.count_nonzero(weights) < 2:
            smoothed[i] = values[i]
            continue
        # centered on the query point, the local fit evaluated there is its intercept
        design = poly.transform(points[order] - points[i])
        model = LinearRegression().fit(design, values[order], sample_weight=weights)
        smoothed[i] = model.intercept_
    return smoothed


# %% ------------------------------------ Grid location ------------------------------------ #
def detect_lattice(
    image: np.ndarray,
    config: GridConfig | None = None,
) -> tuple[LatticeAxis, LatticeAxis, pd.DataFrame] | None:
    """
    Lattice axes and the dense lattice of detected centers, before imputation.

    Returns:
        (rows, cols, lattice) with NaN centers for empty cells, or None when
        no row or column band is found.
    """
    if config is None:
        config = GridConfig()

    mask = threshold_mask(image, config.profile)
    rows = grid_breaks(mask, "row", config.thresh, config.edges, config.min_band)
    cols = grid_breaks(mask, "col", config.thresh, config.edges, config.min_band)
    if rows is None or cols is None:
        logger.debug("No lattice bands found on plate")
        return None

    labels = label_objects(mask, config.profile.split_min_distance)
    objects = object_features(labels, config.profile.max_eccentricity, config.profile.min_area)
    cells = bin_objects(objects, rows, cols, config.keep_largest_object)
    logger.debug(f"Lattice {len(rows)} x {len(cols)}, {len(cells)} cells occupied by {len(objects)} objects")
    return rows, cols, build_lattice(cells, len(rows), len(cols))


def locate_grid(
    image: np.ndarray,
    radius_fraction: float = 0.9,
    config: GridConfig | None = None,
) -> Grid | None:
    """
    Locate the colony grid and the background intensity of every cell.

    Args:
        image: Fine-cropped plate with colonies brighter than background, values in [0, 1].
        radius_fraction: Selection box half width as a fraction of half the lattice spacing.
        config: Grid location configuration.

    Returns:
        Dense Grid, or None when no row or column band is found.
    """
    if config is None:
        config = GridConfig()
    image = np.asarray(image, dtype=float)

    detected = detect_lattice(image, config)
    if detected is None:
        return None
    rows, cols, lattice = detected

    lattice = impute_rowwise(lattice, rows, config.spline_smoothing)
    lattice = impute_columnwise(lattice, cols, config.spline_smoothing)
    lattice[["x", "y"]] = lattice[["x", "y"]].round()

    radius = selection_radius(rows, cols, radius_fraction)
    selections = [
        Rectangle.from_bounds(x - radius, x + radius, y - radius, y + radius, image.shape)
        for x, y in zip(lattice["x"], lattice["y"])
    ]
    samples = np.array([corner_background(image, rect) for rect in selections])
    background = loess_smooth(
        lattice[["colony_row", "colony_col"]].to_numpy(dtype=float),
        samples,
        span=config.loess_span,
        degree=config.loess_degree,
    )
    background = np.clip(background, image.min(), image.max())

    grid_cells = [
        GridCell(
            colony_row=int(row.colony_row),
            colony_col=int(row.colony_col),
            x=float(row.x),
            y=float(row.y),
            selection=rect,
            background=float(bg),
        )
        for row, rect, bg in zip(lattice.itertuples(index=False), selections, background)
    ]
    return Grid(rows=rows, cols=cols, radius=radius, cells=grid_cells)
