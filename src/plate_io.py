"""
File layout of a calibration batch directory.

A batch directory holds the template images together with the annotation and
collection key tables produced by the annotation step, and receives the crop
and grid calibration tables and the colony measurements.
"""

# %% ------------------------------------ Imports ------------------------------------ #
from pathlib import Path

import numpy as np
import pandas as pd
from loguru import logger
from skimage import io
from skimage.color import rgb2gray, rgba2rgb
from skimage.util import img_as_float

# %% ------------------------------------ Constants ------------------------------------ #
ANNOTATION_FILE = "screenmill-annotations.csv"
KEY_FILE = "screenmill-collection-keys.csv"
CROP_FILE = "screenmill-calibration-crop.csv"
GRID_FILE = "screenmill-calibration-grid.csv"
MEASUREMENT_FILE = "screenmill-measurements.csv"

ANNOTATION_COLUMNS = ["template", "position", "strain_collection_id", "plate"]
CROP_COLUMNS = [
    "template", "position",
    "rough_l", "rough_r", "rough_t", "rough_b",
    "rotate", "fine_l", "fine_r", "fine_t", "fine_b",
    "invert",
]
GRID_TABLE_COLUMNS = [
    "template", "position", "strain_collection_id", "plate", "row", "column", "replicate",
    "colony_row", "colony_col", "x", "y", "l", "r", "t", "b", "background",
]


# %% ------------------------------------ Functions ------------------------------------ #
def read_greyscale(path: Path | str) -> np.ndarray:
    """
    Read an image as a float greyscale array with intensities in [0, 1].

    Raises:
        FileNotFoundError: If the file does not exist.
        IOError: If the image cannot be read.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    try:
        img = io.imread(str(path))
    except Exception as e:
        raise IOError(f"Failed to read image {path}: {e}") from e

    if img.ndim == 3 and img.shape[-1] == 4:
        img = rgba2rgb(img)
    if img.ndim == 3:
        img = rgb2gray(img)
    img = img_as_float(img)
    logger.debug(f"Loaded image: {path.name}, shape={img.shape}")
    return img


def read_annotations(directory: Path | str) -> pd.DataFrame:
    """Distinct (template, position, strain_collection_id, plate) rows of a batch."""
    path = Path(directory) / ANNOTATION_FILE
    if not path.exists():
        raise FileNotFoundError(
            f"Could not find {path}. Please annotate plates before calibrating."
        )
    annotation = pd.read_csv(path)
    missing = [col for col in ANNOTATION_COLUMNS if col not in annotation.columns]
    if missing:
        raise ValueError(f"Annotation table {path} is missing columns: {missing}")
    return annotation[ANNOTATION_COLUMNS].drop_duplicates().reset_index(drop=True)


def read_key(directory: Path | str) -> pd.DataFrame:
    path = Path(directory) / KEY_FILE
    if not path.exists():
        raise FileNotFoundError(f"Could not find collection key {path}.")
    return pd.read_csv(path)


def calibration_exists(directory: Path | str) -> bool:
    directory = Path(directory)
    return (directory / CROP_FILE).exists() or (directory / GRID_FILE).exists()


def write_table(table: pd.DataFrame, path: Path | str, columns: list[str]) -> Path:
    """Write a table with the given leading columns, followed by any extra ones."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ordered = [col for col in columns if col in table.columns]
    extra = [col for col in table.columns if col not in ordered]
    table[ordered + extra].to_csv(path, index=False)
    logger.success(f"Table saved: {path}")
    return path
