"""
Data model shared by the plate calibration pipeline.

All pixel coordinates follow the numpy convention used throughout the project:
axis 0 is the row (y), axis 1 is the column (x), origin at the top-left corner.
Rectangle bounds are inclusive integer pixel indices.
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

from dataclasses import dataclass, field, replace

import numpy as np
import pandas as pd

# %% ------------------------------------ Constants ------------------------------------ #
GRID_COLUMNS = ["colony_row", "colony_col", "x", "y", "l", "r", "t", "b", "background"]


# %% ------------------------------------ Rectangle ------------------------------------ #
@dataclass(frozen=True)
class Rectangle:
    """Inclusive pixel bounds of a crop or selection box."""
    left: int
    right: int
    top: int
    bottom: int

    def __post_init__(self):
        if self.left > self.right or self.top > self.bottom:
            raise ValueError(f"Invalid rectangle bounds: {self}")

    @property
    def width(self) -> int:
        return self.right - self.left + 1

    @property
    def height(self) -> int:
        return self.bottom - self.top + 1

    @classmethod
    def from_bounds(cls, left: float, right: float, top: float, bottom: float, shape: tuple[int, ...]) -> Rectangle:
        """Build a rectangle from possibly out-of-range bounds, clamped to an image of the given shape."""
        h, w = shape[:2]
        l = int(np.clip(round(left), 0, w - 1))
        r = int(np.clip(round(right), 0, w - 1))
        t = int(np.clip(round(top), 0, h - 1))
        b = int(np.clip(round(bottom), 0, h - 1))
        return cls(min(l, r), max(l, r), min(t, b), max(t, b))

    @classmethod
    def full(cls, shape: tuple[int, ...]) -> Rectangle:
        h, w = shape[:2]
        return cls(0, w - 1, 0, h - 1)

    def pad(self, left: int = 0, right: int = 0, top: int = 0, bottom: int = 0) -> Rectangle:
        """Expand the rectangle outward. The result is not clamped."""
        return replace(
            self,
            left=self.left - left,
            right=self.right + right,
            top=self.top - top,
            bottom=self.bottom + bottom,
        )

    def clamp(self, shape: tuple[int, ...]) -> Rectangle:
        return Rectangle.from_bounds(self.left, self.right, self.top, self.bottom, shape)

    def crop(self, image: np.ndarray) -> np.ndarray:
        return image[self.top:self.bottom + 1, self.left:self.right + 1]

    def corners(self) -> tuple[tuple[int, int], ...]:
        """(row, col) indices of the top-left, top-right, bottom-left and bottom-right corners."""
        return (
            (self.top, self.left),
            (self.top, self.right),
            (self.bottom, self.left),
            (self.bottom, self.right),
        )

    def to_record(self, prefix: str) -> dict[str, int]:
        return {
            f"{prefix}_l": self.left,
            f"{prefix}_r": self.right,
            f"{prefix}_t": self.top,
            f"{prefix}_b": self.bottom,
        }


def normalize_pad(pad: int | tuple[int, int, int, int] | list[int]) -> tuple[int, int, int, int]:
    """Return padding as a (left, right, top, bottom) tuple."""
    if np.isscalar(pad):
        return (int(pad),) * 4
    pad = tuple(int(p) for p in pad)
    if len(pad) != 4:
        raise ValueError(f"Padding must have 4 values (left, right, top, bottom), got {pad}")
    return pad


# %% ------------------------------------ Calibration records ------------------------------------ #
@dataclass(frozen=True)
class RotationResult:
    """Calibrated rotation angle (degrees clockwise) and the fine crop measured at that angle."""
    angle: float
    fine: Rectangle
    degraded: bool = False

    def to_record(self) -> dict[str, float | int]:
        return {"rotate": self.angle, **self.fine.to_record("fine")}


@dataclass(frozen=True)
class DetectedObject:
    """Foreground object found by the segmenter."""
    x: float
    y: float
    area: int
    eccentricity: float


# %% ------------------------------------ Lattice ------------------------------------ #
@dataclass(frozen=True)
class LatticeAxis:
    """Break coordinates partitioning one image dimension into lattice cells."""
    breaks: np.ndarray

    def __post_init__(self):
        breaks = np.asarray(self.breaks, dtype=float)
        if breaks.ndim != 1 or len(breaks) < 2:
            raise ValueError("A lattice axis needs at least two breaks")
        if np.any(np.diff(breaks) <= 0):
            raise ValueError(f"Lattice breaks must be strictly increasing: {breaks}")
        object.__setattr__(self, "breaks", breaks)

    def __len__(self) -> int:
        return len(self.breaks) - 1

    @property
    def centers(self) -> np.ndarray:
        return (self.breaks[1:] + self.breaks[:-1]) / 2

    @property
    def spacing(self) -> float:
        return float(np.mean(np.diff(self.breaks)))

    def bin(self, values: np.ndarray) -> np.ndarray:
        """Assign 1-indexed cells to coordinates; 0 marks values outside the breaks.

        Intervals are right-closed, the first one also includes its left edge.
        """
        values = np.asarray(values, dtype=float)
        cells = np.searchsorted(self.breaks, values, side="left")
        cells[values == self.breaks[0]] = 1
        cells[(values < self.breaks[0]) | (values > self.breaks[-1])] = 0
        return cells


@dataclass
class GridCell:
    colony_row: int
    colony_col: int
    x: float
    y: float
    selection: Rectangle
    background: float

    def to_record(self) -> dict[str, float | int]:
        return {
            "colony_row": self.colony_row,
            "colony_col": self.colony_col,
            "x": self.x,
            "y": self.y,
            "l": self.selection.left,
            "r": self.selection.right,
            "t": self.selection.top,
            "b": self.selection.bottom,
            "background": self.background,
        }


@dataclass
class Grid:
    """Dense colony lattice located on one fine-cropped plate."""
    rows: LatticeAxis
    cols: LatticeAxis
    radius: int
    cells: list[GridCell] = field(default_factory=list)

    def __post_init__(self):
        expected = {(r, c) for r in range(1, len(self.rows) + 1) for c in range(1, len(self.cols) + 1)}
        found = {(cell.colony_row, cell.colony_col) for cell in self.cells}
        if found != expected or len(self.cells) != len(expected):
            raise ValueError(
                f"Grid cells do not form a dense {len(self.rows)}x{len(self.cols)} lattice"
            )
        self.cells = sorted(self.cells, key=lambda cell: (cell.colony_row, cell.colony_col))

    @property
    def shape(self) -> tuple[int, int]:
        return len(self.rows), len(self.cols)

    def __len__(self) -> int:
        return len(self.cells)

    def cell(self, colony_row: int, colony_col: int) -> GridCell:
        n_cols = len(self.cols)
        return self.cells[(colony_row - 1) * n_cols + (colony_col - 1)]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([cell.to_record() for cell in self.cells], columns=GRID_COLUMNS)
