"""
bibfilter.filters.thresholds

Per-(layer, θ-bin) dynamic energy thresholds for calorimeter hits.

BIB deposits in a calorimeter cell form a soft, roughly stable energy
population that depends mostly on the layer depth and the polar angle. The
threshold of a (layer, bin) cell is placed N standard deviations above the
mean of that population:

    threshold = mean + N * stddev
    correction = mean

Two sources for (mean, stddev):

- self-calibrating: computed from the hits of the current event;
- calibration map: precomputed (angle bin x layer) table loaded once per run,
  symmetric in θ around π/2 (queries with θ > π/2 use π - θ).
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import math

import numpy as np

from ..utils.logger import get_logger

log = get_logger(__name__)

# Default polar-angle binning of the barrel calorimeter [deg]
DEFAULT_THETA_EDGES_DEG = (0., 30., 40., 50., 60., 70., 90., 110., 120., 130., 140., 150., 180.)
DEFAULT_THETA_EDGES = tuple(math.radians(d) for d in DEFAULT_THETA_EDGES_DEG)


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=np.float64, copy=True)
    a.flags.writeable = False
    return a


# --- Binning -------------------------------------------------------------------

class ThetaBinning:
    """
    Histogram-style binning on a fixed, strictly increasing list of edges.

    Bin i holds edges[i] <= v < edges[i+1]; the last bin is closed at the
    upper edge. Values outside [edges[0], edges[-1]] are clamped to the first
    or last bin.
    """

    __slots__ = ("edges",)

    def __init__(self, edges: Sequence[float] = DEFAULT_THETA_EDGES):
        e = np.asarray(edges, dtype=np.float64)
        if e.ndim != 1 or e.size < 2:
            raise ValueError("Need at least two bin edges")
        if not np.all(np.diff(e) > 0):
            raise ValueError(f"Bin edges must be strictly increasing: {e.tolist()}")
        self.edges = _readonly(e)

    @property
    def n_bins(self) -> int:
        return int(self.edges.size - 1)

    def find_bin(self, value: float) -> int:
        return int(self.find_bins(np.asarray([value], dtype=np.float64))[0])

    def find_bins(self, values: np.ndarray) -> np.ndarray:
        v = np.asarray(values, dtype=np.float64)
        idx = np.searchsorted(self.edges, v, side="right") - 1
        # upper edge belongs to the last bin
        idx = np.where(v == self.edges[-1], self.n_bins - 1, idx)
        out_of_range = (idx < 0) | (idx >= self.n_bins)
        if np.any(out_of_range):
            log.debug("[thresholds] %d value(s) outside [%g, %g], clamped",
                      int(np.count_nonzero(out_of_range)), self.edges[0], self.edges[-1])
        return np.clip(idx, 0, self.n_bins - 1).astype(np.int64)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ThetaBinning) and np.array_equal(self.edges, other.edges)

    def __repr__(self) -> str:
        return f"ThetaBinning(n_bins={self.n_bins}, edges={self.edges.tolist()})"


def fold_theta(theta):
    """Mirror θ > π/2 onto π - θ (maps built symmetric in the barrel)."""
    t = np.asarray(theta, dtype=np.float64)
    folded = np.where(t > 0.5 * np.pi, np.pi - t, t)
    if np.ndim(theta) == 0:
        return float(folded)
    return folded


# --- Tables --------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ThresholdTable:
    """
    threshold[layer, bin] and correction[layer, bin] on a θ binning.

    fold=True for tables built from a symmetric calibration map.
    Arrays are read-only so a run-lifetime table can be shared freely.
    """
    binning: ThetaBinning
    threshold: np.ndarray  # (n_layers, n_bins)
    correction: np.ndarray  # (n_layers, n_bins)
    fold: bool = False

    def __post_init__(self):
        expected = (self.threshold.shape[0], self.binning.n_bins)
        if self.threshold.ndim != 2 or self.threshold.shape != expected:
            raise ValueError(f"threshold shape {self.threshold.shape} does not match binning {self.binning.n_bins}")
        if self.correction.shape != self.threshold.shape:
            raise ValueError("threshold and correction shapes differ")
        object.__setattr__(self, "threshold", _readonly(self.threshold))
        object.__setattr__(self, "correction", _readonly(self.correction))

    @property
    def n_layers(self) -> int:
        return int(self.threshold.shape[0])

    def has_layer(self, layer: int) -> bool:
        return 0 <= layer < self.n_layers

    def bin_of(self, theta: float) -> int:
        return self.binning.find_bin(fold_theta(theta) if self.fold else theta)

    def lookup(self, layer: int, theta: float) -> Tuple[float, float]:
        if not self.has_layer(layer):
            raise IndexError(f"layer {layer} outside table (n_layers={self.n_layers})")
        b = self.bin_of(theta)
        return float(self.threshold[layer, b]), float(self.correction[layer, b])

    def lookup_many(self, layers: np.ndarray, thetas: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        layers = np.asarray(layers, dtype=np.int64)
        thetas = np.asarray(thetas, dtype=np.float64)
        if np.any((layers < 0) | (layers >= self.n_layers)):
            raise IndexError(f"layers outside table (n_layers={self.n_layers})")
        bins = self.binning.find_bins(fold_theta(thetas) if self.fold else thetas)
        return self.threshold[layers, bins], self.correction[layers, bins]


class CalibrationMap:
    """
    Precomputed BIB energy statistics, indexed (angle bin, layer).

    Binned on folded θ; mean_at / stddev_at are the lookups consumed by the
    threshold estimator at start of run.
    """

    def __init__(self, binning: ThetaBinning, mean: np.ndarray, stddev: np.ndarray, meta: Optional[dict] = None):
        mean = np.asarray(mean, dtype=np.float64)
        stddev = np.asarray(stddev, dtype=np.float64)
        if mean.ndim != 2 or mean.shape[0] != binning.n_bins:
            raise ValueError(f"mean must have shape (n_bins={binning.n_bins}, n_layers), got {mean.shape}")
        if stddev.shape != mean.shape:
            raise ValueError(f"stddev shape {stddev.shape} != mean shape {mean.shape}")
        if np.any(stddev < 0):
            raise ValueError("stddev must be non-negative")
        self.binning = binning
        self.mean = _readonly(mean)
        self.stddev = _readonly(stddev)
        self.meta = dict(meta or {})

    @property
    def n_layers(self) -> int:
        return int(self.mean.shape[1])

    def mean_at(self, angle_bin: int, layer: int) -> float:
        return float(self.mean[angle_bin, layer])

    def stddev_at(self, angle_bin: int, layer: int) -> float:
        return float(self.stddev[angle_bin, layer])


# --- Estimator -----------------------------------------------------------------

class ThresholdEstimator:
    """
    Build ThresholdTables either from one event's hits or from a CalibrationMap.

    Parameters
    ----------
    n_layers : int
        Number of calorimeter layers covered by the table.
    binning : ThetaBinning
        Polar-angle bins used in self-calibrating mode.
    n_sigma : float
        Threshold multiplier N in mean + N * stddev.
    flat_threshold : float
        If > 0, replaces every computed threshold; corrections are kept.
    """

    def __init__(
        self,
        n_layers: int = 50,
        binning: ThetaBinning | None = None,
        n_sigma: float = 3.0,
        flat_threshold: float = 0.0,
    ):
        if n_layers <= 0:
            raise ValueError(f"n_layers must be positive, got {n_layers}")
        self.n_layers = int(n_layers)
        self.binning = binning or ThetaBinning()
        self.n_sigma = float(n_sigma)
        self.flat_threshold = float(flat_threshold)

    def _finish(self, binning: ThetaBinning, mean: np.ndarray, std: np.ndarray, fold: bool) -> ThresholdTable:
        threshold = mean + self.n_sigma * std
        if self.flat_threshold > 0:
            threshold = np.full_like(threshold, self.flat_threshold)
        return ThresholdTable(binning=binning, threshold=threshold, correction=mean, fold=fold)

    def from_hits(self, energies, thetas, layers) -> ThresholdTable:
        """
        Self-calibrating table from one event.

        Per (layer, bin) cell: mean and population stddev of the energies
        falling in that cell; empty cells get mean = stddev = 0. Hits on
        layers outside [0, n_layers) do not enter the statistics.
        """
        e = np.asarray(energies, dtype=np.float64)
        t = np.asarray(thetas, dtype=np.float64)
        lay = np.asarray(layers, dtype=np.int64)
        if not (e.shape == t.shape == lay.shape):
            raise ValueError("energies, thetas and layers must have the same length")

        ok = (lay >= 0) & (lay < self.n_layers)
        if not np.all(ok):
            log.warning("[thresholds] %d hit(s) on layers outside [0, %d) ignored",
                        int(np.count_nonzero(~ok)), self.n_layers)
        e, t, lay = e[ok], t[ok], lay[ok]

        nb = self.binning.n_bins
        cell = lay * nb + self.binning.find_bins(t)
        size = self.n_layers * nb
        count = np.bincount(cell, minlength=size).astype(np.float64)
        s1 = np.bincount(cell, weights=e, minlength=size)
        with np.errstate(invalid="ignore", divide="ignore"):
            mean = np.where(count > 0, s1 / count, 0.0)
        # second pass on centred values for a stable variance
        dev = e - mean[cell]
        s2 = np.bincount(cell, weights=dev * dev, minlength=size)
        with np.errstate(invalid="ignore", divide="ignore"):
            var = np.where(count > 0, s2 / count, 0.0)
        std = np.sqrt(np.maximum(var, 0.0))

        return self._finish(self.binning, mean.reshape(self.n_layers, nb), std.reshape(self.n_layers, nb), fold=False)

    def from_calibration(self, cmap: CalibrationMap) -> ThresholdTable:
        """Run-lifetime table from a calibration map (folded θ)."""
        if cmap.n_layers < self.n_layers:
            log.warning("[thresholds] calibration map has %d layers, %d configured; using the map's",
                        cmap.n_layers, self.n_layers)
        mean = np.array([[cmap.mean_at(b, l) for b in range(cmap.binning.n_bins)]
                         for l in range(cmap.n_layers)], dtype=np.float64)
        std = np.array([[cmap.stddev_at(b, l) for b in range(cmap.binning.n_bins)]
                        for l in range(cmap.n_layers)], dtype=np.float64)
        return self._finish(cmap.binning, mean, std, fold=True)


class CalibrationAccumulator:
    """
    Accumulate BIB energy statistics over many events into a CalibrationMap.

    Angles are folded before binning, matching how the map is queried.
    """

    def __init__(self, n_layers: int, binning: ThetaBinning | None = None):
        self.n_layers = int(n_layers)
        self.binning = binning or ThetaBinning([e for e in DEFAULT_THETA_EDGES if e <= 0.5 * math.pi + 1e-12])
        shape = (self.binning.n_bins, self.n_layers)
        self._n = np.zeros(shape, dtype=np.int64)
        self._s1 = np.zeros(shape, dtype=np.float64)
        self._s2 = np.zeros(shape, dtype=np.float64)
        self.n_events = 0

    def fill(self, energies, thetas, layers) -> None:
        e = np.asarray(energies, dtype=np.float64)
        lay = np.asarray(layers, dtype=np.int64)
        ok = (lay >= 0) & (lay < self.n_layers)
        bins = self.binning.find_bins(fold_theta(np.asarray(thetas, dtype=np.float64))[ok])
        np.add.at(self._n, (bins, lay[ok]), 1)
        np.add.at(self._s1, (bins, lay[ok]), e[ok])
        np.add.at(self._s2, (bins, lay[ok]), e[ok] * e[ok])
        self.n_events += 1

    def result(self) -> CalibrationMap:
        n = self._n.astype(np.float64)
        with np.errstate(invalid="ignore", divide="ignore"):
            mean = np.where(n > 0, self._s1 / n, 0.0)
            var = np.where(n > 0, self._s2 / n - mean * mean, 0.0)
        std = np.sqrt(np.maximum(var, 0.0))
        return CalibrationMap(self.binning, mean, std, meta={"n_events": self.n_events})
