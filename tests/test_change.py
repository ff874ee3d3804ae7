import numpy as np
import pytest
import xarray as xr

from landcover_change.change import (
    CLASS_NODATA,
    DECREASE,
    INCREASE,
    NO_CHANGE,
    classify_change,
    compute_change,
    compute_change_histogram,
    compute_class_statistics,
)
from landcover_change.exceptions import InputError

from conftest import CRS, X, Y


def _composite(values, window="2019-04-15..2019-06-15"):
    arr = np.asarray(values, dtype=float)
    ny, nx = arr.shape
    ds = xr.Dataset(
        {'NDRE1': (('y', 'x'), arr)},
        coords={'y': Y[:ny], 'x': X[:nx]},
        attrs={'window': window},
    )
    return ds.rio.write_crs(CRS)


def _change(values):
    return _composite(values)['NDRE1'].rename('NDRE1_change')


class TestComputeChange:
    def test_after_minus_before(self):
        before = _composite([[0.5, 0.2], [0.1, 0.0]])
        after = _composite([[0.3, 0.4], [0.1, -0.2]], window="2024-04-15..2024-06-15")
        change = compute_change(before, after, 'NDRE1')

        assert change.name == 'NDRE1_change'
        np.testing.assert_allclose(change.values, [[-0.2, 0.2], [0.0, -0.2]])
        assert change.attrs['before'] == "2019-04-15..2019-06-15"
        assert change.attrs['after'] == "2024-04-15..2024-06-15"

    def test_swapping_inputs_negates(self):
        a = _composite([[0.5, 0.2], [0.1, np.nan]])
        b = _composite([[0.3, 0.4], [0.6, 0.2]])
        forward = compute_change(a, b, 'NDRE1')
        backward = compute_change(b, a, 'NDRE1')
        np.testing.assert_allclose(forward.values, -backward.values)

    def test_nan_propagates_from_either_side(self):
        before = _composite([[np.nan, 0.2]])
        after = _composite([[0.3, np.nan]])
        assert np.isnan(compute_change(before, after, 'NDRE1').values).all()

    def test_missing_index(self):
        with pytest.raises(InputError, match="NDVI"):
            compute_change(_composite([[0.1]]), _composite([[0.2]]), 'NDVI')


class TestClassifyChange:
    def test_three_classes(self):
        classified = classify_change(_change([[-0.15, 0.1, 0.35]]))
        assert classified.values.tolist() == [[DECREASE, NO_CHANGE, INCREASE]]
        assert classified.dtype == np.uint8
        assert classified.name == 'change_class'

    def test_thresholds_are_no_change(self):
        classified = classify_change(_change([[-0.1, 0.0, 0.1]]))
        assert (classified.values == NO_CHANGE).all()

    def test_masked_pixels_keep_nodata(self):
        classified = classify_change(_change([[np.nan, -0.5]]))
        assert classified.values.tolist() == [[CLASS_NODATA, DECREASE]]
        assert classified.rio.nodata == CLASS_NODATA

    def test_every_valid_pixel_gets_a_class(self):
        rng = np.random.default_rng(0)
        values = rng.uniform(-1, 1, size=(8, 8))
        values[rng.random((8, 8)) < 0.2] = np.nan
        classified = classify_change(_change(values)).values

        valid = ~np.isnan(values)
        assert np.isin(classified[valid], [DECREASE, NO_CHANGE, INCREASE]).all()
        assert (classified[~valid] == CLASS_NODATA).all()

    def test_asymmetric_thresholds(self):
        classified = classify_change(_change([[-0.04, -0.06, 0.15, 0.25]]), -0.05, 0.2)
        assert classified.values.tolist() == [[NO_CHANGE, DECREASE, NO_CHANGE, INCREASE]]

    def test_equal_thresholds(self):
        classified = classify_change(_change([[-0.01, 0.0, 0.01]]), 0.0, 0.0)
        assert classified.values.tolist() == [[DECREASE, NO_CHANGE, INCREASE]]

    def test_inverted_thresholds(self):
        with pytest.raises(InputError, match="must not exceed"):
            classify_change(_change([[0.0]]), 0.2, 0.1)

    def test_keeps_crs(self):
        classified = classify_change(_change([[0.0, 0.3]]))
        assert classified.rio.crs.to_epsg() == 32737


class TestHistogram:
    def test_counts_valid_values(self):
        hist = compute_change_histogram(_change([[-0.055, 0.005, 0.005, np.nan]]))
        assert int(hist['count'].sum()) == 3
        assert hist['bucket_min'].iloc[0] <= -0.055
        assert hist['bucket_max'].iloc[-1] > 0.005
        widths = (hist['bucket_max'] - hist['bucket_min']).round(10).unique()
        assert widths.tolist() == pytest.approx([0.01])

    def test_widens_buckets_for_large_range(self):
        hist = compute_change_histogram(_change([[-1.0, 1.0]]))
        assert len(hist) <= 100
        assert int(hist['count'].sum()) == 2

    def test_empty(self):
        hist = compute_change_histogram(_change([[np.nan, np.nan]]))
        assert hist.empty
        assert list(hist.columns) == ['bucket_min', 'bucket_max', 'count']

    @pytest.mark.parametrize("kwargs, match", [
        ({'bin_width': 0.0}, "bin_width"),
        ({'bin_width': -0.01}, "bin_width"),
        ({'bin_width': float('nan')}, "bin_width"),
        ({'max_buckets': 0}, "max_buckets"),
        ({'max_buckets': -5}, "max_buckets"),
    ])
    def test_invalid_bucketing(self, kwargs, match):
        with pytest.raises(InputError, match=match):
            compute_change_histogram(_change([[-0.5, 0.5]]), **kwargs)


class TestClassStatistics:
    def test_counts_and_shares(self):
        classified = classify_change(_change([[-0.5, -0.5, 0.0, 0.5, np.nan]]))
        stats = compute_class_statistics(classified)
        assert stats['total_pixels'] == 5
        assert stats['valid_pixels'] == 4
        assert stats['decrease_pixels'] == 2
        assert stats['no_change_pixels'] == 1
        assert stats['increase_pixels'] == 1
        assert stats['decrease_pct'] == pytest.approx(50.0)
        assert stats['net_change_pixels'] == -1
        assert stats['net_change_pct'] == pytest.approx(-25.0)

    def test_no_valid_pixels(self):
        stats = compute_class_statistics(classify_change(_change([[np.nan]])))
        assert stats['valid_pixels'] == 0
        assert np.isnan(stats['increase_pct'])
