import math

import numpy as np
import pytest

from bibfilter.filters.thresholds import (
    DEFAULT_THETA_EDGES,
    CalibrationAccumulator,
    CalibrationMap,
    ThetaBinning,
    ThresholdEstimator,
    ThresholdTable,
    fold_theta,
)

E4 = [0.01, 0.02, 0.015, 0.03]


def test_binning_edges_and_clamping():
    b = ThetaBinning([0.0, 1.0, 2.0, 3.0])
    assert b.n_bins == 3
    assert b.find_bin(0.0) == 0
    assert b.find_bin(1.0) == 1  # lower edge inclusive
    assert b.find_bin(2.999) == 2
    assert b.find_bin(3.0) == 2  # upper edge belongs to last bin
    assert b.find_bin(-0.5) == 0
    assert b.find_bin(7.0) == 2
    assert b.find_bins(np.array([0.5, 1.5, 2.5])).tolist() == [0, 1, 2]
    with pytest.raises(ValueError):
        ThetaBinning([0.0, 1.0, 1.0])
    with pytest.raises(ValueError):
        ThetaBinning([0.0])


def test_default_edges_cover_full_range():
    b = ThetaBinning()
    assert b.n_bins == 12
    assert math.isclose(DEFAULT_THETA_EDGES[-1], math.pi)
    assert b.find_bin(math.radians(35)) == 1


def test_self_calibrated_threshold_value():
    est = ThresholdEstimator(n_layers=3, n_sigma=3.0)
    theta = math.radians(80)
    table = est.from_hits(E4, [theta] * 4, [1] * 4)
    thr, corr = table.lookup(1, theta)
    assert corr == pytest.approx(np.mean(E4))
    assert thr == pytest.approx(np.mean(E4) + 3 * np.std(E4))
    assert thr == pytest.approx(0.0409, abs=1e-4)
    assert all(e <= thr for e in E4)


def test_threshold_monotone_in_sigma():
    theta = [math.radians(100)] * 4
    values = [ThresholdEstimator(n_layers=1, n_sigma=n).from_hits(E4, theta, [0] * 4).lookup(0, theta[0])[0]
              for n in (0.0, 1.0, 2.0, 3.0, 5.0)]
    assert values == sorted(values)
    assert values[0] == pytest.approx(np.mean(E4))


def test_empty_cells_and_foreign_layers():
    est = ThresholdEstimator(n_layers=2)
    table = est.from_hits([0.1, 0.2, 5.0], [1.0, 1.0, 1.0], [0, 0, 9])
    # layer 9 is outside the table and does not enter the statistics
    assert table.lookup(0, 1.0)[1] == pytest.approx(0.15)
    assert table.lookup(1, 1.0) == (0.0, 0.0)
    assert table.lookup(0, 0.1) == (0.0, 0.0)
    with pytest.raises(IndexError):
        table.lookup(2, 1.0)
    assert not table.has_layer(-1)


def test_flat_threshold_overrides():
    table = ThresholdEstimator(n_layers=1, flat_threshold=0.25).from_hits(E4, [1.0] * 4, [0] * 4)
    assert table.lookup(0, 1.0) == (0.25, pytest.approx(np.mean(E4)))
    assert table.lookup(0, 0.1)[0] == 0.25


def test_table_arrays_readonly():
    table = ThresholdEstimator(n_layers=1).from_hits(E4, [1.0] * 4, [0] * 4)
    with pytest.raises(ValueError):
        table.threshold[0, 0] = 1.0
    with pytest.raises(ValueError):
        ThresholdTable(ThetaBinning([0.0, 1.0]), np.zeros((2, 2)), np.zeros((2, 2)))


def _cmap():
    binning = ThetaBinning([0.0, 0.5, 1.0, 0.5 * math.pi])
    mean = np.array([[0.01, 0.02], [0.03, 0.04], [0.05, 0.06]])
    std = np.full_like(mean, 0.001)
    return CalibrationMap(binning, mean, std)


def test_calibration_table_is_symmetric():
    cmap = _cmap()
    table = ThresholdEstimator(n_layers=2, n_sigma=2.0).from_calibration(cmap)
    assert table.fold
    for theta in (0.2, 0.7, 1.3):
        assert table.lookup(1, theta) == table.lookup(1, math.pi - theta)
    assert table.lookup(0, 0.7) == (pytest.approx(0.032), pytest.approx(0.03))
    assert cmap.mean_at(2, 1) == 0.06 and cmap.stddev_at(0, 0) == 0.001
    assert fold_theta(math.pi - 0.2) == pytest.approx(0.2)


def test_calibration_map_validation():
    b = ThetaBinning([0.0, 1.0])
    with pytest.raises(ValueError):
        CalibrationMap(b, np.zeros((2, 3)), np.zeros((2, 3)))
    with pytest.raises(ValueError):
        CalibrationMap(b, np.zeros((1, 3)), -np.ones((1, 3)))


def test_accumulator_folds_and_averages():
    acc = CalibrationAccumulator(n_layers=2)
    acc.fill([0.01, 0.03], [math.radians(45), math.radians(135)], [0, 0])
    acc.fill([0.02], [math.radians(45)], [1])
    cmap = acc.result()
    b = cmap.binning.find_bin(math.radians(45))
    assert cmap.binning.edges[-1] == pytest.approx(0.5 * math.pi)
    assert cmap.mean_at(b, 0) == pytest.approx(0.02)
    assert cmap.stddev_at(b, 0) == pytest.approx(0.01)
    assert cmap.mean_at(b, 1) == pytest.approx(0.02)
    assert cmap.stddev_at(b, 1) == pytest.approx(0.0, abs=1e-12)
    assert cmap.meta["n_events"] == 2


def test_flat_threshold_overrides_calibration_map():
    table = ThresholdEstimator(n_layers=2, n_sigma=2.0, flat_threshold=0.07).from_calibration(_cmap())
    assert table.lookup(0, 0.7) == (pytest.approx(0.07), pytest.approx(0.03))
    assert table.lookup(1, 1.3) == (pytest.approx(0.07), pytest.approx(0.06))
    assert table.lookup(0, math.pi - 0.7) == table.lookup(0, 0.7)
