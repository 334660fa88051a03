"""
Annotation of a located grid with the strain collection key.

A key plate lists one entry per (row, column) position. A plate printed with
replicates carries every key position as a square block of colonies, so the
number of grid cells must be a perfect-square multiple of the number of key
entries and the grid must have as many rows and columns as the key scaled by
the block size. Replicate numbers run row-major inside a block.
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

import numpy as np
import pandas as pd

# %% ------------------------------------ Constants ------------------------------------ #
KEY_COLUMNS = ["strain_collection_id", "plate", "row", "column"]
LAYOUT_COLUMNS = ["colony_row", "colony_col", "row", "column", "replicate"]


# %% ------------------------------------ Functions ------------------------------------ #
def key_for_plate(key: pd.DataFrame, collection_id: str, plate: int) -> pd.DataFrame:
    """Key entries of one plate of one strain collection."""
    missing = [col for col in KEY_COLUMNS if col not in key.columns]
    if missing:
        raise KeyError(f"Collection key is missing columns: {missing}")
    selected = key[(key["strain_collection_id"] == collection_id) & (key["plate"] == plate)]
    return selected.reset_index(drop=True)


def replicate_layout(key_plate: pd.DataFrame, n_cells: int) -> pd.DataFrame | None:
    """
    Map lattice cells onto key positions and replicate numbers.

    Args:
        key_plate: Key entries of one plate.
        n_cells: Number of cells in the located grid.

    Returns:
        DataFrame with colony_row, colony_col, row, column and replicate, or
        None when ``n_cells`` is not a perfect-square multiple of the key size.
    """
    if len(key_plate) == 0 or n_cells % len(key_plate) != 0:
        return None
    replicates = n_cells // len(key_plate)
    block = int(round(np.sqrt(replicates)))
    if block * block != replicates:
        return None

    key_rows = np.sort(key_plate["row"].unique())
    key_cols = np.sort(key_plate["column"].unique())
    colony_row, colony_col = np.meshgrid(
        np.arange(len(key_rows) * block), np.arange(len(key_cols) * block), indexing="ij"
    )
    colony_row, colony_col = colony_row.ravel(), colony_col.ravel()
    return pd.DataFrame({
        "colony_row": colony_row + 1,
        "colony_col": colony_col + 1,
        "row": key_rows[colony_row // block],
        "column": key_cols[colony_col // block],
        "replicate": (colony_row % block) * block + colony_col % block + 1,
    })[LAYOUT_COLUMNS]


def annotate_grid(grid_frame: pd.DataFrame, key_plate: pd.DataFrame) -> tuple[pd.DataFrame, str | None]:
    """
    Attach key row, column and replicate to every grid cell.

    Returns:
        The annotated grid and None, or the unannotated grid and a warning
        message when the grid size or shape does not match the key.
    """
    layout = replicate_layout(key_plate, len(grid_frame))
    if layout is None:
        message = (
            f"Size of detected colony grid ({len(grid_frame)}) is not a square multiple "
            f"of the number of positions ({len(key_plate)}) in the collection key"
        )
        return grid_frame.copy(), message

    grid_shape = (int(grid_frame["colony_row"].max()), int(grid_frame["colony_col"].max()))
    layout_shape = (int(layout["colony_row"].max()), int(layout["colony_col"].max()))
    if grid_shape != layout_shape:
        message = (
            f"Shape of detected colony grid ({grid_shape[0]} x {grid_shape[1]}) does not match "
            f"the key layout ({layout_shape[0]} x {layout_shape[1]})"
        )
        return grid_frame.copy(), message

    annotated = grid_frame.merge(layout, on=["colony_row", "colony_col"], how="left")
    return annotated, None
