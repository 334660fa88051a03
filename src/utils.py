# %% ------------------------------------ Import libraries ------------------------------------ #
import sys
from pathlib import Path

import numpy as np
from loguru import logger

# %% ------------------------------------ Constants ------------------------------------ #
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module: <20}</cyan>:<cyan>{line: <4}</cyan> - | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {module: <20}:{line: <4} - | {message}"


# %% ------------------------------------ Functions ------------------------------------ #
def configure_logging(log_file: Path | None = None, level: str = "INFO") -> None:
    """Replace the default loguru sink with a coloured console sink and an optional DEBUG file sink."""
    logger.remove()
    logger.add(sys.stdout, format=CONSOLE_FORMAT, level=level)
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(str(log_file), format=FILE_FORMAT, level="DEBUG", mode="w")


def contiguous_regions(condition: np.ndarray) -> np.ndarray:
    """Start and end (exclusive) indices of the contiguous True runs of a 1D boolean array.

    Returns an (n_runs, 2) integer array.
    """
    condition = np.asarray(condition, dtype=bool)
    if condition.size == 0:
        return np.empty((0, 2), dtype=int)

    idx = np.flatnonzero(np.diff(condition.astype(np.int8))) + 1
    if condition[0]:
        idx = np.r_[0, idx]
    if condition[-1]:
        idx = np.r_[idx, condition.size]
    return idx.reshape(-1, 2)
