"""
Review figures for crop and grid calibration.

PlateRenderer holds only drawing options; every call draws on a fresh figure
and leaves global matplotlib settings untouched.
"""

# %% ------------------------------------ Imports ------------------------------------ #
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from loguru import logger
from matplotlib.patches import Rectangle as RectPatch

from plate_models import Grid, Rectangle


# %% ------------------------------------ Functions ------------------------------------ #
def save_figure(fig: plt.Figure, path: Path | str, dpi: int = 150) -> None:
    """Save a matplotlib figure to file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi, bbox_inches='tight')
    logger.success(f"Figure saved: {path}")


def _box(rect: Rectangle, color: str, linewidth: float) -> RectPatch:
    # pixel centers sit on integer coordinates in imshow
    return RectPatch(
        (rect.left - 0.5, rect.top - 0.5), rect.width, rect.height,
        edgecolor=color, fill=False, linewidth=linewidth,
    )


# %% ------------------------------------ Renderer ------------------------------------ #
@dataclass(frozen=True)
class PlateRenderer:
    """Draws rough crops of a template and located grids of single plates."""
    crop_color: str = 'red'
    grid_color: str = 'blue'
    text_color: str = 'red'
    figure_size: tuple[float, float] = (8, 6)
    dpi: int = 150
    show: bool = False
    output_dir: Path | None = None  # folder for saved figures, nothing is saved when None

    def _finish(self, fig: plt.Figure, output_path: Path | str | None) -> plt.Figure:
        fig.tight_layout()
        if output_path:
            save_figure(fig, output_path, self.dpi)
        if self.show:
            plt.show()
        else:
            plt.close(fig)
        return fig

    def show_rough_crop(
        self,
        image: np.ndarray,
        rects: list[Rectangle],
        output_path: Path | str | None = None,
    ) -> plt.Figure:
        """Template image with every rough crop outlined and numbered by position."""
        fig, ax = plt.subplots(figsize=self.figure_size)
        ax.imshow(image, cmap='gray')
        for position, rect in enumerate(rects, start=1):
            ax.add_patch(_box(rect, self.crop_color, 1.5))
            ax.text(
                (rect.left + rect.right) / 2, (rect.top + rect.bottom) / 2, str(position),
                ha='center', va='center', fontsize=14, color=self.text_color,
            )
        ax.set_title(f'Rough crop ({len(rects)} plates)')
        ax.axis('off')
        return self._finish(fig, output_path)

    def show_plate(
        self,
        image: np.ndarray,
        grid: Grid | None,
        label: str = '',
        output_path: Path | str | None = None,
    ) -> plt.Figure:
        """Fine-cropped plate with the selection box of every grid cell."""
        fig, ax = plt.subplots(figsize=self.figure_size)
        ax.imshow(image, cmap='gray')
        if grid is not None:
            for cell in grid.cells:
                ax.add_patch(_box(cell.selection, self.grid_color, 0.8))
        ax.text(
            image.shape[1] / 2, image.shape[0] / 2, label,
            ha='center', va='center', fontsize=14, color=self.text_color,
        )
        title = 'No grid located' if grid is None else f'Grid {grid.shape[0]} x {grid.shape[1]}'
        ax.set_title(title)
        ax.axis('off')
        return self._finish(fig, output_path)
