"""
Crop and grid calibration of a batch of plate images.

For every template image of a batch directory the plates are rough cropped,
each annotated plate position is rotated and fine cropped, its colony grid is
located and annotated with the strain collection key. Failures are isolated
per plate position: a position that cannot be calibrated is logged and
skipped while its siblings carry on.

Usage:
    python src/plate_calibration.py /path/to/batch --rotate 90 --display
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd
from loguru import logger
from tqdm import tqdm

from collection_key import annotate_grid, key_for_plate
from grid_locator import locate_grid
from plate_boundary import apply_calibration, calibrate_plate, rough_crop
from plate_display import PlateRenderer
from plate_io import (
    CROP_COLUMNS,
    CROP_FILE,
    GRID_FILE,
    GRID_TABLE_COLUMNS,
    calibration_exists,
    read_annotations,
    read_greyscale,
    read_key,
    write_table,
)
from plate_models import RotationResult, normalize_pad
from utils import configure_logging

# %% ------------------------------------ Constants ------------------------------------ #
FIGURE_FOLDER = "screenmill-calibration-figures"


# %% ------------------------------------ Dataclass ------------------------------------ #
@dataclass
class CalibrationConfig:
    """Calibration parameters shared by every template of a batch."""
    rotate: float = 90.0  # seed angle in degrees clockwise
    range: float = 6.0  # explored angle interval in degrees
    step: float = 0.2  # angle increment in degrees
    thresh: float = 0.03  # plate pixel fraction marking plate rows/columns in the rough crop
    fine_thresh: float = 0.03  # colony pixel fraction for the fine crop
    invert: bool = True  # plates light, colonies and gaps between plates dark
    rough_pad: tuple[int, int, int, int] = (0, 0, 0, 0)  # left, right, top, bottom
    fine_pad: tuple[int, int, int, int] = (5, 5, 5, 5)
    radius: float = 0.9  # selection box size as a fraction of half the colony spacing
    display: bool = False
    overwrite: bool = False

    def __post_init__(self):
        self.rough_pad = normalize_pad(self.rough_pad)
        self.fine_pad = normalize_pad(self.fine_pad)
        if self.step <= 0:
            raise ValueError(f"Rotation step must be positive, got {self.step}")
        if self.range < 0:
            raise ValueError(f"Rotation range must not be negative, got {self.range}")
        if not 0 < self.thresh < 1 or not 0 < self.fine_thresh < 1:
            raise ValueError("Foreground fractions must be in (0, 1)")
        if self.radius <= 0:
            raise ValueError(f"Selection radius fraction must be positive, got {self.radius}")
        if min(self.rough_pad + self.fine_pad) < 0:
            raise ValueError("Padding must not be negative")


@dataclass
class PositionResult:
    """Calibration of one plate position."""
    position: int
    rotation: RotationResult
    grid: pd.DataFrame | None
    warnings: list[str] = field(default_factory=list)


@dataclass
class TemplateCalibration:
    """Crop and grid tables of one template image."""
    template: str
    crop: pd.DataFrame
    grid: pd.DataFrame
    warnings: list[str] = field(default_factory=list)


# %% ------------------------------------ Functions ------------------------------------ #
def _warn(warnings: list[str], message: str) -> None:
    logger.warning(message)
    warnings.append(message)


def _figure_path(renderer: PlateRenderer, name: str) -> Path | None:
    if renderer.output_dir is None:
        return None
    return Path(renderer.output_dir) / f"{name}.png"


def calibrate_position(
    plate: np.ndarray,
    position: int,
    config: CalibrationConfig,
    key_plate: pd.DataFrame,
    renderer: PlateRenderer | None = None,
    label: str = "",
) -> PositionResult:
    """
    Calibrate rotation, fine crop and colony grid of one roughly cropped plate.

    Args:
        plate: Roughly cropped plate image.
        position: Plate position in its template.
        config: Calibration parameters.
        key_plate: Collection key entries of this plate.
        renderer: Optional renderer drawing the located grid.
        label: Name of the plate used in messages and figures.

    Returns:
        PositionResult; its grid is None when no colony grid was found.
    """
    label = label or f"position {position}"
    warnings: list[str] = []

    rotation = calibrate_plate(
        plate,
        initial_angle=config.rotate,
        search_range=config.range,
        step=config.step,
        pad=config.fine_pad,
        thresh=config.fine_thresh,
        invert=config.invert,
    )
    if rotation.degraded:
        _warn(warnings, f"Rotation of {label} could not be calibrated, kept seed angle {config.rotate}")

    cropped = apply_calibration(plate, rotation, config.invert)
    grid = locate_grid(cropped, radius_fraction=config.radius)

    grid_frame = None
    if grid is None:
        _warn(warnings, f"Failed to locate colony grid for {label}. This plate position has been skipped.")
    else:
        grid_frame, mismatch = annotate_grid(grid.to_frame(), key_plate)
        if mismatch is not None:
            _warn(warnings, f"{mismatch} for {label}")
        logger.debug(f"{label}: {grid.shape[0]} x {grid.shape[1]} colony grid, radius {grid.radius}px")

    if renderer is not None:
        renderer.show_plate(cropped, grid, label, _figure_path(renderer, label.replace(" ", "_")))

    return PositionResult(position=position, rotation=rotation, grid=grid_frame, warnings=warnings)


def calibrate_template(
    image: np.ndarray,
    annotation: pd.DataFrame,
    key: pd.DataFrame,
    config: CalibrationConfig,
    renderer: PlateRenderer | None = None,
) -> TemplateCalibration:
    """
    Calibrate every annotated plate position of one template image.

    Args:
        image: Greyscale template image.
        annotation: Annotation rows of this template.
        key: Collection key of the batch.
        config: Calibration parameters.
        renderer: Optional renderer for rough crops and located grids.

    Returns:
        TemplateCalibration with the crop and grid tables and the warnings raised.
    """
    template = str(annotation["template"].iloc[0]) if len(annotation) else ""
    warnings: list[str] = []
    crop_records = []
    grid_frames = []

    rough = rough_crop(image, config.thresh, config.invert, config.rough_pad)
    positions = annotation["position"].astype(int).tolist()
    if len(rough) > len(positions):
        _warn(
            warnings,
            f"For {template}, keeping positions ({', '.join(map(str, positions))}) of {len(rough)} available.",
        )
    if renderer is not None:
        renderer.show_rough_crop(image, rough, _figure_path(renderer, f"{Path(template).stem}_rough"))

    for row in tqdm(annotation.itertuples(index=False), total=len(annotation), desc=f"Calibrating {template}"):
        position = int(row.position)
        label = f"{template} position {position}"
        if not 1 <= position <= len(rough):
            _warn(warnings, f"{label} was not found by the rough crop ({len(rough)} plates), skipped.")
            continue

        rect = rough[position - 1]
        key_plate = key_for_plate(key, row.strain_collection_id, row.plate)
        result = None
        with logger.catch(message=f"Calibration failed for {label}, position skipped"):
            result = calibrate_position(rect.crop(image), position, config, key_plate, renderer, label)
        if result is None:
            warnings.append(f"Calibration failed for {label}")
            continue

        warnings.extend(result.warnings)
        crop_records.append({
            "template": template,
            "position": position,
            **rect.to_record("rough"),
            **result.rotation.to_record(),
            "invert": config.invert,
        })
        if result.grid is not None:
            grid_frames.append(result.grid.assign(
                template=template,
                position=position,
                strain_collection_id=row.strain_collection_id,
                plate=row.plate,
            ))

    crop = pd.DataFrame(crop_records, columns=CROP_COLUMNS)
    grid = pd.concat(grid_frames, ignore_index=True) if grid_frames else pd.DataFrame(columns=GRID_TABLE_COLUMNS)
    return TemplateCalibration(template=template, crop=crop, grid=grid, warnings=warnings)


@logger.catch(reraise=True)
def calibrate(directory: Path | str, config: CalibrationConfig | None = None) -> Path:
    """
    Calibrate every template of a batch directory and write the calibration tables.

    Args:
        directory: Batch directory with the annotation and collection key tables.
        config: Calibration parameters.

    Returns:
        The batch directory.

    Raises:
        FileNotFoundError: If the directory, the annotation or the key table is missing.
    """
    if config is None:
        config = CalibrationConfig()
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Batch directory not found: {directory}")

    annotation = read_annotations(directory)
    if calibration_exists(directory):
        if not config.overwrite:
            logger.info("This batch has already been calibrated. Set overwrite=True to re-calibrate.")
            return directory
        (directory / CROP_FILE).unlink(missing_ok=True)
        (directory / GRID_FILE).unlink(missing_ok=True)

    key = read_key(directory)
    renderer = PlateRenderer(output_dir=directory / FIGURE_FOLDER) if config.display else None

    start = time.time()
    calibrations = []
    for template, template_annotation in annotation.groupby("template", sort=False):
        try:
            image = read_greyscale(directory / template)
        except (FileNotFoundError, IOError) as e:
            logger.error(f"Skipping template {template}: {e}")
            continue
        logger.info(f"Calibrating {template} ({len(template_annotation)} plate positions)")
        calibrations.append(calibrate_template(image, template_annotation, key, config, renderer))

    crop = pd.concat([c.crop for c in calibrations], ignore_index=True) if calibrations else pd.DataFrame(columns=CROP_COLUMNS)
    grid = pd.concat([c.grid for c in calibrations], ignore_index=True) if calibrations else pd.DataFrame(columns=GRID_TABLE_COLUMNS)
    write_table(crop, directory / CROP_FILE, CROP_COLUMNS)
    write_table(grid, directory / GRID_FILE, GRID_TABLE_COLUMNS)

    n_warnings = sum(len(c.warnings) for c in calibrations)
    logger.success(
        f"Finished calibration of {len(crop)} plates in {time.time() - start:.2f}s ({n_warnings} warnings)"
    )
    return directory


# %% ------------------------------------ Command line ------------------------------------ #
def main() -> None:
    """Command-line interface."""
    parser = argparse.ArgumentParser(
        description='Calibrate plate crops and colony grids of a batch of images',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Calibrate a batch with the default 90 degree seed rotation
  python src/plate_calibration.py data/batch_01

  # Colonies lighter than the plate, re-calibrate and save review figures
  python src/plate_calibration.py data/batch_01 --no-invert --overwrite --display
        """
    )
    parser.add_argument('directory', type=Path, help='Batch directory')
    parser.add_argument('--rotate', type=float, default=90.0, help='Seed rotation in degrees clockwise (default: 90)')
    parser.add_argument('--range', type=float, default=6.0, help='Explored angle range in degrees (default: 6)')
    parser.add_argument('--step', type=float, default=0.2, help='Angle step in degrees (default: 0.2)')
    parser.add_argument('--thresh', type=float, default=0.03, help='Rough crop foreground fraction (default: 0.03)')
    parser.add_argument('--no-invert', action='store_true', help='Colonies are lighter than the plate')
    parser.add_argument('--rough-pad', type=int, nargs=4, default=(0, 0, 0, 0), metavar=('L', 'R', 'T', 'B'))
    parser.add_argument('--fine-pad', type=int, nargs=4, default=(5, 5, 5, 5), metavar=('L', 'R', 'T', 'B'))
    parser.add_argument('--radius', type=float, default=0.9, help='Selection box fraction (default: 0.9)')
    parser.add_argument('--display', action='store_true', help='Save review figures')
    parser.add_argument('--overwrite', action='store_true', help='Overwrite an existing calibration')
    parser.add_argument('--log-file', type=Path, default=None, help='Write a DEBUG log to this file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    args = parser.parse_args()
    configure_logging(args.log_file, level="DEBUG" if args.verbose else "INFO")

    config = CalibrationConfig(
        rotate=args.rotate,
        range=args.range,
        step=args.step,
        thresh=args.thresh,
        invert=not args.no_invert,
        rough_pad=tuple(args.rough_pad),
        fine_pad=tuple(args.fine_pad),
        radius=args.radius,
        display=args.display,
        overwrite=args.overwrite,
    )
    calibrate(args.directory, config)


if __name__ == "__main__":
    main()
