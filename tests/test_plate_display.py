"""Tests for the review figures."""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt

from grid_locator import locate_grid
from plate_display import PlateRenderer
from plate_models import Rectangle


def test_rough_crop_figure_is_saved(tmp_path: Path, grid_plate):
    renderer = PlateRenderer()
    path = tmp_path / "figures" / "rough.png"
    fig = renderer.show_rough_crop(grid_plate, [Rectangle(0, 50, 0, 60), Rectangle(60, 120, 0, 60)], path)
    assert path.exists()
    assert len(fig.axes[0].patches) == 2
    assert not plt.fignum_exists(fig.number)


def test_plate_figure_draws_every_cell(grid_plate):
    grid = locate_grid(grid_plate)
    fig = PlateRenderer().show_plate(grid_plate, grid, label="template.png 1")
    assert len(fig.axes[0].patches) == len(grid)


def test_plate_figure_without_grid(blank_plate):
    fig = PlateRenderer().show_plate(blank_plate, None)
    assert fig.axes[0].get_title() == "No grid located"

