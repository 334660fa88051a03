"""Shared fixtures: synthetic colony plates drawn with skimage."""

from __future__ import annotations

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from loguru import logger
from skimage.draw import disk

# 4 rows x 3 columns, 40 px spacing, on a fine-cropped plate
GRID_XS = (25, 65, 105)
GRID_YS = (25, 65, 105, 145)
PLATE_SHAPE = (170, 130)
COLONY_RADIUS = 9
BACKGROUND = 0.2
COLONY = 0.9


def draw_plate(shape, centers, radius=COLONY_RADIUS, background=BACKGROUND, colony=COLONY):
    """Plate with a disc drawn at every (x, y) center."""
    if np.isscalar(background):
        plate = np.full(shape, background, dtype=float)
    else:
        plate = np.array(background, dtype=float)
    for x, y in centers:
        rr, cc = disk((y, x), radius, shape=shape)
        plate[rr, cc] = colony
    return plate


def lattice_offsets():
    """Ideal (dx, dy) of every cell relative to the lattice center, row-major."""
    return np.array([
        (x - np.mean(GRID_XS), y - np.mean(GRID_YS))
        for y in GRID_YS
        for x in GRID_XS
    ])


def tilt_plate(degrees, shape=(260, 220)):
    """The 4x3 lattice turned ``degrees`` counter-clockwise around the middle of a larger plate."""
    cy, cx = (shape[0] - 1) / 2, (shape[1] - 1) / 2
    theta = np.deg2rad(degrees)
    centers = [
        (cx + dx * np.cos(theta) + dy * np.sin(theta), cy - dx * np.sin(theta) + dy * np.cos(theta))
        for dx, dy in lattice_offsets()
    ]
    return draw_plate(shape, centers)


@pytest.fixture
def make_plate():
    return draw_plate


@pytest.fixture
def grid_centers() -> dict[tuple[int, int], tuple[int, int]]:
    """(colony_row, colony_col) -> (x, y) of the synthetic 4x3 plate."""
    return {
        (r, c): (x, y)
        for r, y in enumerate(GRID_YS, start=1)
        for c, x in enumerate(GRID_XS, start=1)
    }


@pytest.fixture
def grid_plate(grid_centers) -> np.ndarray:
    return draw_plate(PLATE_SHAPE, grid_centers.values())


@pytest.fixture
def blank_plate() -> np.ndarray:
    return np.full(PLATE_SHAPE, 0.5)


@pytest.fixture
def rotated_plate() -> np.ndarray:
    """The 4x3 lattice turned 3 degrees counter-clockwise on a larger plate."""
    return tilt_plate(3.0)


@pytest.fixture
def log_messages():
    """Messages of WARNING level and above logged while the test runs."""
    messages = []
    handler_id = logger.add(lambda msg: messages.append(msg.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)
