"""
Batch crop and grid calibration script.

Calibrates every batch directory below a data folder and measures the colonies
of each calibrated plate.
Usage: python scripts/batch_calibrate.py
"""

import sys
from pathlib import Path
from dataclasses import dataclass

sys.path.append(str(Path(__file__).parent.parent.resolve() / "src"))

import pandas as pd
from loguru import logger
from tqdm import tqdm

from colony_measurement import MAX_BACKGROUND, measure_colonies
from plate_boundary import apply_calibration
from plate_calibration import CalibrationConfig, calibrate
from plate_io import CROP_FILE, GRID_FILE, MEASUREMENT_FILE, read_greyscale, write_table
from plate_models import Rectangle, RotationResult
from utils import configure_logging

# %% ------------------------------------ Configuration ------------------------------------ #

@dataclass
class BatchConfig:
    """Configuration for batch calibration."""
    # Directories
    data_folder: Path = Path("data/plates")
    log_file: Path = Path("logs/batch_calibrate.log")
    measurement_file: str = MEASUREMENT_FILE

    # Calibration parameters
    rotate: float = 90.0
    search_range: float = 6.0
    step: float = 0.2
    invert: bool = True
    display: bool = False
    overwrite: bool = False
    max_background: float = MAX_BACKGROUND

# %% ------------------------------------ Functions ------------------------------------ #

def measure_batch(
    batch: Path,
    measurement_file: str = MEASUREMENT_FILE,
    overwrite: bool = False,
    max_background: float = MAX_BACKGROUND,
) -> Path | None:
    """Measure the colonies of every calibrated plate of one batch directory."""
    target = batch / measurement_file
    if target.exists() and not overwrite:
        logger.info(f"{batch.name} has already been measured, set overwrite to re-measure")
        return None

    crop = pd.read_csv(batch / CROP_FILE)
    grid = pd.read_csv(batch / GRID_FILE)
    if grid.empty:
        logger.warning(f"No colony grid in {batch.name}, nothing to measure")
        return None

    measurements = []
    for template, plates in crop.groupby("template"):
        image = read_greyscale(batch / template)
        for plate in plates.itertuples(index=False):
            rough = Rectangle(plate.rough_l, plate.rough_r, plate.rough_t, plate.rough_b)
            rotation = RotationResult(
                angle=plate.rotate,
                fine=Rectangle(plate.fine_l, plate.fine_r, plate.fine_t, plate.fine_b),
            )
            fine = apply_calibration(rough.crop(image), rotation, bool(plate.invert))
            colonies = grid[(grid["template"] == template) & (grid["position"] == plate.position)]
            sizes = measure_colonies(fine, colonies, max_background=max_background)
            measurements.append(colonies.assign(size=sizes))

    if not measurements:
        return None
    table = pd.concat(measurements, ignore_index=True)
    return write_table(table, target, ["template", "position", "colony_row", "colony_col", "size"])


def main() -> None:
    """Calibrate and measure every batch below the data folder."""
    config = BatchConfig()
    configure_logging(config.log_file)

    batches = [folder for folder in sorted(config.data_folder.iterdir()) if folder.is_dir()]
    logger.info(f"Found {len(batches)} batch folders in {config.data_folder}")

    calibration_config = CalibrationConfig(
        rotate=config.rotate,
        range=config.search_range,
        step=config.step,
        invert=config.invert,
        display=config.display,
        overwrite=config.overwrite,
    )

    failed_batches = []
    for batch in tqdm(batches, desc="Calibrating batches"):
        try:
            calibrate(batch, calibration_config)
        except FileNotFoundError as e:
            logger.error(f"Skipping {batch.name}: {e}")
            failed_batches.append(batch)
            continue
        measure_batch(batch, config.measurement_file, config.overwrite, config.max_background)

    if failed_batches:
        logger.error("*-" * 30 + f"Failed to calibrate {len(failed_batches)} batches:" + " -*" * 30)
        for batch in failed_batches:
            logger.error(f" - {batch}")

if __name__ == "__main__":
    main()
