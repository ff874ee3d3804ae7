"""
Visualization utilities for change detection results.

This module handles:
- Continuous change maps
- Classified change maps with legend and class shares
- Change histograms
- Confusion matrix heatmaps
"""

import logging
import os
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
from matplotlib.colors import ListedColormap
import seaborn as sns
import xarray as xr

from .change import CLASS_NAMES, CLASS_NODATA
from .validation import ConfusionMatrix

logger = logging.getLogger(__name__)


# Decrease, no change, increase
CLASS_COLORS = ['#DC143C', '#FFFFFF', '#228B22']
CLASS_CMAP = ListedColormap(CLASS_COLORS)
CHANGE_CMAP = matplotlib.colors.LinearSegmentedColormap.from_list(
    'change', ['red', 'white', 'green']
)


def _save(fig: plt.Figure, output_path: Optional[str]):
    if output_path:
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
        fig.savefig(output_path, dpi=300, bbox_inches='tight')
        logger.info(f"Saved: {output_path}")


def plot_change_map(
    change: xr.DataArray,
    title: Optional[str] = None,
    vmin: float = -0.5,
    vmax: float = 0.5,
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (8, 8)
) -> plt.Figure:
    """
    Plot a continuous change raster with a diverging red-white-green palette.

    Parameters
    ----------
    change : xr.DataArray
        Output of compute_change()
    title : str, optional
        Custom title; defaults to the raster name
    vmin, vmax : float
        Colour stretch
    output_path : str, optional
        Path to save figure
    figsize : tuple
        Figure size

    Returns
    -------
    plt.Figure
        The generated figure
    """
    fig, ax = plt.subplots(figsize=figsize)

    im = ax.imshow(np.asarray(change.values, dtype=float), cmap=CHANGE_CMAP, vmin=vmin, vmax=vmax)
    ax.set_title(title or str(change.name), fontsize=12, fontweight='bold')
    ax.axis('off')

    cbar = plt.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    cbar.set_label(change.attrs.get('index', 'Index') + ' change', fontsize=9)

    plt.tight_layout()
    _save(fig, output_path)
    return fig


def plot_class_map(
    classified: xr.DataArray,
    title: str = "Change Class",
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (8, 8)
) -> plt.Figure:
    """
    Plot a classified change raster with a Decrease / No Change / Increase legend.

    Masked pixels are left transparent. Class shares are relative to
    valid pixels.
    """
    values = np.asarray(classified.values)
    display = np.ma.masked_equal(values, CLASS_NODATA)

    fig, ax = plt.subplots(figsize=figsize)
    ax.imshow(display, cmap=CLASS_CMAP, vmin=0, vmax=2, interpolation='nearest')
    ax.set_title(title, fontsize=12, fontweight='bold')
    ax.axis('off')

    legend_elements = [
        mpatches.Patch(facecolor=color, edgecolor='black', label=name.title())
        for color, name in zip(CLASS_COLORS, CLASS_NAMES.values())
    ]
    ax.legend(handles=legend_elements, loc='lower right', fontsize=9)

    n_valid = int((values != CLASS_NODATA).sum())
    if n_valid:
        pct_text = "\n".join(
            f"{name.title()}: {100 * (values == value).sum() / n_valid:.1f}%"
            for value, name in CLASS_NAMES.items()
        )
        ax.text(0.02, 0.02, pct_text, transform=ax.transAxes,
                fontsize=9, verticalalignment='bottom',
                bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    plt.tight_layout()
    _save(fig, output_path)
    return fig


def plot_change_histogram(
    histogram: pd.DataFrame,
    title: str = "Change Histogram",
    decrease_threshold: Optional[float] = None,
    increase_threshold: Optional[float] = None,
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (8, 4)
) -> plt.Figure:
    """
    Plot the output of compute_change_histogram(), with optional threshold lines.
    """
    fig, ax = plt.subplots(figsize=figsize)

    if len(histogram):
        centres = (histogram['bucket_min'] + histogram['bucket_max']) / 2
        ax.plot(centres, histogram['count'], marker='o', markersize=3, linewidth=1)

    for threshold in (decrease_threshold, increase_threshold):
        if threshold is not None:
            ax.axvline(threshold, color='gray', linestyle='--', linewidth=1)

    ax.set_title(title, fontsize=12, fontweight='bold')
    ax.set_xlabel('Change', fontsize=10)
    ax.set_ylabel('Frequency', fontsize=10)

    plt.tight_layout()
    _save(fig, output_path)
    return fig


def plot_confusion_matrix(
    matrix: ConfusionMatrix,
    title: str = "Confusion Matrix",
    cmap: str = 'Blues',
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (6, 5)
) -> plt.Figure:
    """
    Plot confusion matrix counts as a heatmap, with accuracy and kappa in the title.
    """
    fig, ax = plt.subplots(figsize=figsize)

    sns.heatmap(
        matrix.to_dataframe(),
        annot=True,
        fmt='d',
        cmap=cmap,
        ax=ax,
        cbar_kws={'label': 'Points'},
        square=True,
        linewidths=0.5
    )

    ax.set_title(
        f"{title}\nOA = {matrix.accuracy():.3f}, kappa = {matrix.kappa():.3f}",
        fontsize=12, fontweight='bold'
    )
    ax.set_xlabel('Predicted', fontsize=10)
    ax.set_ylabel('Reference', fontsize=10)

    plt.tight_layout()
    _save(fig, output_path)
    return fig
