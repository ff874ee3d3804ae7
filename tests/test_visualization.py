import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pytest

from landcover_change.change import classify_change, compute_change_histogram
from landcover_change.validation import ConfusionMatrix
from landcover_change.visualization import (
    plot_change_histogram,
    plot_change_map,
    plot_class_map,
    plot_confusion_matrix,
)

from conftest import make_classified


@pytest.fixture
def change():
    classified = make_classified(np.zeros((4, 4)))
    values = np.linspace(-0.4, 0.4, 16).reshape(4, 4)
    values[0, 0] = np.nan
    out = classified.astype(float).copy(data=values).rename('NDRE1_change')
    out.attrs = {'index': 'NDRE1'}
    return out


def test_plots_are_written(tmp_path, change):
    classified = classify_change(change)
    histogram = compute_change_histogram(change)
    matrix = ConfusionMatrix([[8, 1, 1], [2, 7, 1], [0, 1, 9]])

    figures = [
        plot_change_map(change, output_path=str(tmp_path / "change.png")),
        plot_class_map(classified, output_path=str(tmp_path / "classes.png")),
        plot_change_histogram(histogram, decrease_threshold=-0.1, increase_threshold=0.1,
                              output_path=str(tmp_path / "hist.png")),
        plot_confusion_matrix(matrix, output_path=str(tmp_path / "cm.png")),
    ]
    for fig in figures:
        plt.close(fig)

    for name in ("change.png", "classes.png", "hist.png", "cm.png"):
        assert (tmp_path / name).stat().st_size > 0


def test_class_map_without_valid_pixels(change):
    classified = classify_change(change * np.nan)
    fig = plot_class_map(classified)
    plt.close(fig)
