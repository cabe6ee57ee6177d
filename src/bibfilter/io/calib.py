from __future__ import annotations
from pathlib import Path
from datetime import datetime, timezone
import json

import h5py
import numpy as np

from bibfilter.filters.thresholds import CalibrationMap, ThetaBinning

FORMAT_VERSION = "1.0"

# Dataset names tried in order, first match wins
_EDGE_KEYS = ("theta_edges", "edges", "angle_edges")
_MEAN_KEYS = ("mean", "bib_mean", "E_mean")
_STD_KEYS = ("stddev", "std", "bib_stddev", "E_stddev")


def _pick(keys, candidates, path: Path, what: str) -> str:
    for k in candidates:
        if k in keys:
            return k
    raise KeyError(
        f"Could not find {what} in {path.name}. "
        f"Expected one of {list(candidates)}. Found keys: {sorted(keys)}"
    )


def load_calibration_map(path: str | Path) -> CalibrationMap:
    """
    Load a BIB calibration map from HDF5 (.h5/.hdf5) or NumPy (.npz).

    Expected content: theta_edges (n_bins+1,), mean and stddev
    (n_bins, n_layers). A missing file raises FileNotFoundError, missing
    datasets raise KeyError; both are fatal for a run.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Calibration map not found: {p}")

    if p.suffix == ".npz":
        with np.load(p, allow_pickle=False) as z:
            keys = set(z.files)
            edges = z[_pick(keys, _EDGE_KEYS, p, "bin edges")].astype(np.float64)
            mean = z[_pick(keys, _MEAN_KEYS, p, "mean table")].astype(np.float64)
            std = z[_pick(keys, _STD_KEYS, p, "stddev table")].astype(np.float64)
            meta = json.loads(str(z["meta"])) if "meta" in keys else {}
    else:
        with h5py.File(p, "r") as f:
            keys = set(f.keys())
            edges = np.array(f[_pick(keys, _EDGE_KEYS, p, "bin edges")], dtype=np.float64)
            mean = np.array(f[_pick(keys, _MEAN_KEYS, p, "mean table")], dtype=np.float64)
            std = np.array(f[_pick(keys, _STD_KEYS, p, "stddev table")], dtype=np.float64)
            meta = {k: (v.item() if hasattr(v, "item") else v) for k, v in f.attrs.items()}

    meta.setdefault("source", str(p))
    return CalibrationMap(ThetaBinning(edges), mean, std, meta=meta)


def write_calibration_map(path: str | Path, cmap: CalibrationMap) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with h5py.File(p, "w") as f:
        f.attrs["format_version"] = FORMAT_VERSION
        f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
        for k, v in cmap.meta.items():
            if isinstance(v, (int, float, str)):
                f.attrs[k] = v
        f.create_dataset("theta_edges", data=cmap.binning.edges)
        f.create_dataset("mean", data=cmap.mean, compression="gzip")
        f.create_dataset("stddev", data=cmap.stddev, compression="gzip")
    return p
