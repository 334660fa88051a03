"""Tests for colony grid location."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from grid_locator import (
    GridConfig,
    bin_objects,
    build_lattice,
    corner_background,
    detect_lattice,
    grid_breaks,
    impute_columnwise,
    impute_rowwise,
    locate_grid,
    loess_smooth,
    selection_radius,
)
from plate_models import DetectedObject, LatticeAxis, Rectangle


# ---------------------------------------------------------------------------
# Lattice breaks
# ---------------------------------------------------------------------------


class TestGridBreaks:
    @pytest.fixture
    def mask(self):
        mask = np.zeros((60, 30), dtype=bool)
        mask[10:20, :] = True
        mask[40:50, :] = True
        return mask

    def test_mid_edges(self, mask):
        rows = grid_breaks(mask, "row")
        assert rows.breaks.tolist() == pytest.approx([0, 29.5, 59])

    def test_band_edges(self, mask):
        rows = grid_breaks(mask, "row", edges="band")
        assert rows.breaks.tolist() == pytest.approx([10, 29.5, 49])

    def test_single_band(self):
        mask = np.zeros((40, 40), dtype=bool)
        mask[:, 10:20] = True
        cols = grid_breaks(mask, "col")
        assert cols.breaks.tolist() == pytest.approx([5, 24])

    def test_empty_mask(self):
        assert grid_breaks(np.zeros((20, 20), dtype=bool), "row") is None

    def test_invalid_axis(self, mask):
        with pytest.raises(ValueError):
            grid_breaks(mask, "diagonal")

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            GridConfig(edges="outer")


# ---------------------------------------------------------------------------
# Binning and lattice
# ---------------------------------------------------------------------------


AXIS = LatticeAxis(np.array([0, 10, 20]))


def test_bin_objects_keeps_largest():
    objects = [
        DetectedObject(x=4, y=4, area=10, eccentricity=0.1),
        DetectedObject(x=6, y=6, area=50, eccentricity=0.1),
        DetectedObject(x=15, y=5, area=20, eccentricity=0.1),
        DetectedObject(x=35, y=5, area=90, eccentricity=0.1),
    ]
    cells = bin_objects(objects, AXIS, AXIS, keep_largest=True)
    assert len(cells) == 2
    first = cells[(cells.colony_row == 1) & (cells.colony_col == 1)].iloc[0]
    assert (first.x, first.y) == (6, 6)


def test_bin_objects_can_average():
    objects = [
        DetectedObject(x=4, y=4, area=10, eccentricity=0.1),
        DetectedObject(x=6, y=8, area=50, eccentricity=0.1),
    ]
    cells = bin_objects(objects, AXIS, AXIS, keep_largest=False)
    assert cells.loc[0, ["x", "y"]].tolist() == [5, 6]


def test_build_lattice_is_dense():
    cells = pd.DataFrame({"colony_row": [1], "colony_col": [2], "x": [15.0], "y": [5.0]})
    lattice = build_lattice(cells, 2, 3)
    assert len(lattice) == 6
    assert lattice["x"].isna().sum() == 5
    assert lattice.loc[1, "x"] == 15.0


# ---------------------------------------------------------------------------
# Imputation
# ---------------------------------------------------------------------------


ROWS = LatticeAxis(np.arange(10, 111, 20))  # centers 20, 40, ..., 100
COLS = LatticeAxis(np.arange(5, 66, 10))  # centers 10, 20, ..., 60


@pytest.fixture
def lattice():
    """5 x 6 lattice whose rows slope down by half a pixel per column."""
    rows, cols = np.meshgrid(np.arange(1, 6), np.arange(1, 7), indexing="ij")
    return pd.DataFrame({
        "colony_row": rows.ravel(),
        "colony_col": cols.ravel(),
        "x": 10.0 * cols.ravel(),
        "y": 20.0 * rows.ravel() + 0.5 * cols.ravel(),
    })


def _cell(frame, row, col):
    return frame[(frame.colony_row == row) & (frame.colony_col == col)].iloc[0]


def _blank(frame, cells):
    gapped = frame.copy()
    for row, col in cells:
        gapped.loc[(gapped.colony_row == row) & (gapped.colony_col == col), ["x", "y"]] = np.nan
    return gapped


class TestImputation:
    def test_complete_lattice_is_unchanged(self, lattice):
        imputed = impute_columnwise(impute_rowwise(lattice, ROWS), COLS)
        np.testing.assert_allclose(imputed[["x", "y"]], lattice[["x", "y"]], atol=1e-6)

    def test_rowwise_fills_y_from_row_neighbours(self, lattice):
        gapped = _blank(lattice, [(2, 3)])
        cell = _cell(impute_rowwise(gapped, ROWS), 2, 3)
        assert cell.y == pytest.approx(41.5)
        assert np.isnan(cell.x)
        # input is left untouched
        assert gapped[["x", "y"]].isna().sum().sum() == 2

    def test_columnwise_fills_x_from_column_neighbours(self, lattice):
        gapped = _blank(lattice, [(2, 1)])
        cell = _cell(impute_columnwise(gapped, COLS), 2, 1)
        assert cell.x == pytest.approx(10)
        assert np.isnan(cell.y)

    def test_sparse_row_falls_back_to_midpoint(self, lattice):
        gapped = _blank(lattice, [(1, col) for col in range(3, 7)])
        imputed = impute_rowwise(gapped, ROWS)
        row = imputed[imputed.colony_row == 1].set_index("colony_col")
        assert row.loc[[1, 2], "y"].tolist() == [20.5, 21.0]
        assert row.loc[[3, 4, 5, 6], "y"].tolist() == [20.0] * 4

    def test_sparse_column_falls_back_to_midpoint(self, lattice):
        gapped = _blank(lattice, [(row, 4) for row in (1, 2, 3)])
        imputed = impute_columnwise(gapped, COLS)
        column = imputed[imputed.colony_col == 4].set_index("colony_row")
        assert column.loc[[1, 2, 3], "x"].tolist() == [40.0] * 3
        assert column.loc[[4, 5], "x"].tolist() == [40.0] * 2

    def test_spline_is_not_extrapolated(self, lattice):
        gapped = _blank(lattice, [(2, 5), (2, 6)])
        imputed = impute_rowwise(gapped, ROWS)
        assert _cell(imputed, 2, 5).y == pytest.approx(42)
        assert _cell(imputed, 2, 6).y == pytest.approx(42)

    def test_both_passes_fill_every_center(self, lattice):
        gapped = _blank(lattice, [(1, 1), (3, 4), (5, 6)])
        imputed = impute_columnwise(impute_rowwise(gapped, ROWS), COLS)
        assert not imputed[["x", "y"]].isna().any().any()
        np.testing.assert_allclose(imputed[["x", "y"]], lattice[["x", "y"]], atol=0.5)


# ---------------------------------------------------------------------------
# Selection and background
# ---------------------------------------------------------------------------


def test_selection_radius():
    axis = LatticeAxis(np.array([0, 40, 80]))
    assert selection_radius(axis, axis, 0.9) == 18


def test_corner_background_is_mean_of_middle_corners():
    image = np.zeros((10, 10))
    image[0, 0], image[0, 9], image[9, 0], image[9, 9] = 0.1, 0.2, 0.3, 0.9
    assert corner_background(image, Rectangle(0, 9, 0, 9)) == pytest.approx(0.25)


class TestLoess:
    @pytest.fixture
    def points(self):
        rows, cols = np.meshgrid(np.arange(1, 9), np.arange(1, 13), indexing="ij")
        return np.column_stack([rows.ravel(), cols.ravel()]).astype(float)

    def test_constant_is_preserved(self, points):
        smoothed = loess_smooth(points, np.full(len(points), 0.3))
        np.testing.assert_allclose(smoothed, 0.3, atol=1e-9)

    def test_plane_is_reproduced(self, points):
        values = 0.1 + 0.01 * points[:, 0] + 0.02 * points[:, 1]
        np.testing.assert_allclose(loess_smooth(points, values), values, atol=1e-6)

    def test_outlier_is_damped(self, points):
        values = np.full(len(points), 0.2)
        values[40] = 0.8
        smoothed = loess_smooth(points, values)
        assert smoothed[40] < 0.8


# ---------------------------------------------------------------------------
# Grid location
# ---------------------------------------------------------------------------


class TestLocateGrid:
    def test_synthetic_plate(self, grid_plate, grid_centers):
        grid = locate_grid(grid_plate, radius_fraction=0.9)
        assert grid is not None
        assert grid.shape == (4, 3)
        assert grid.radius == 18
        for (r, c), (x, y) in grid_centers.items():
            cell = grid.cell(r, c)
            assert cell.x == pytest.approx(x, abs=1)
            assert cell.y == pytest.approx(y, abs=1)
            assert cell.background == pytest.approx(0.2, abs=1e-6)

    def test_selections_inside_image(self, grid_plate):
        grid = locate_grid(grid_plate)
        h, w = grid_plate.shape
        for cell in grid.cells:
            rect = cell.selection
            assert 0 <= rect.left <= rect.right < w
            assert 0 <= rect.top <= rect.bottom < h

    def test_frame_is_dense(self, grid_plate):
        frame = locate_grid(grid_plate).to_frame()
        pairs = set(zip(frame.colony_row, frame.colony_col))
        assert pairs == {(r, c) for r in range(1, 5) for c in range(1, 4)}

    def test_blanked_colony_is_imputed(self, make_plate, grid_centers):
        centers = dict(grid_centers)
        del centers[(2, 2)]
        plate = make_plate((170, 130), centers.values())
        grid = locate_grid(plate)
        assert grid is not None
        assert len(grid) == 12

        rows, cols, detected = detect_lattice(plate)
        assert _cell(detected, 2, 2)[["x", "y"]].isna().all()
        expected = _cell(impute_columnwise(impute_rowwise(detected, rows), cols).round(), 2, 2)
        cell = grid.cell(2, 2)
        assert (cell.x, cell.y) == (expected.x, expected.y)
        assert cell.x == pytest.approx(65, abs=1)
        assert cell.y == pytest.approx(65, abs=1)

    def test_blank_plate(self, blank_plate):
        assert locate_grid(blank_plate) is None

    def test_background_is_smooth_on_gradient(self, make_plate):
        shape = (250, 370)
        gradient = 0.2 + 0.2 * np.tile(np.arange(shape[1]) / shape[1], (shape[0], 1))
        centers = [(20 + 30 * c, 20 + 30 * r) for r in range(8) for c in range(12)]
        plate = make_plate(shape, centers, radius=7, background=gradient)

        grid = locate_grid(plate)
        assert grid is not None
        assert grid.shape == (8, 12)

        background = grid.to_frame().pivot(index="colony_row", columns="colony_col", values="background").to_numpy()
        assert background.min() >= plate.min() and background.max() <= plate.max()
        limit = 0.1 * (plate.max() - plate.min())
        assert np.abs(np.diff(background, axis=0)).max() < limit
        assert np.abs(np.diff(background, axis=1)).max() < limit


# ---------------------------------------------------------------------------
# 8 x 12 plates with uneven growth
# ---------------------------------------------------------------------------


WIDE_SHAPE = (250, 370)


def _wide_centers(missing=()):
    """(colony_row, colony_col) -> (x, y) of an 8 x 12 lattice with 30 px spacing."""
    return {
        (r + 1, c + 1): (20 + 30 * c, 20 + 30 * r)
        for r in range(8)
        for c in range(12)
        if (r + 1, c + 1) not in missing
    }


def _assert_centers(grid, tolerance=2):
    assert grid is not None
    assert grid.shape == (8, 12)
    for (r, c), (x, y) in _wide_centers().items():
        cell = grid.cell(r, c)
        assert abs(cell.x - x) <= tolerance, (r, c, cell.x, x)
        assert abs(cell.y - y) <= tolerance, (r, c, cell.y, y)


class TestUnevenGrowth:
    def test_sparse_row(self, make_plate):
        # row 3 only grew in its first three columns
        missing = {(3, c) for c in range(4, 13)}
        plate = make_plate(WIDE_SHAPE, _wide_centers(missing).values(), radius=7)
        _assert_centers(locate_grid(plate))

    def test_blank_corner(self, make_plate):
        plate = make_plate(WIDE_SHAPE, _wide_centers({(1, 1)}).values(), radius=7)
        grid = locate_grid(plate)
        _assert_centers(grid)
        assert (grid.cell(1, 1).x, grid.cell(1, 1).y) == pytest.approx((20, 20), abs=1)

    def test_scattered_gaps(self, make_plate):
        missing = {(1, 12), (4, 6), (5, 6), (8, 1), (8, 2)}
        plate = make_plate(WIDE_SHAPE, _wide_centers(missing).values(), radius=7)
        _assert_centers(locate_grid(plate))

    def test_noisy_plate(self, make_plate):
        rng = np.random.default_rng(7)
        plate = make_plate(WIDE_SHAPE, _wide_centers().values(), radius=7)
        noisy = np.clip(plate + rng.normal(0, 0.05, plate.shape), 0, 1)
        grid = locate_grid(noisy)
        _assert_centers(grid)
        frame = grid.to_frame()
        assert frame["background"].between(0.1, 0.3).all()
