"""
bibfilter.io.adapters

Readers that turn external event sources into bibfilter Events.

- HDF5Adapter: the native ragged store (bibfilter.io.event_store)
- TableAdapter: flat hit tables (CSV / Parquet), one row per hit

Config (example)
----------------
[io]
input_path = "hits.csv"
input_format = "csv"

[io.adapter]
encoding = "system:5,side:-2,layer:6,module:11,sensor:8"   # per-table default
encodings = { EcalBarrelCollectionRec = "system:5,side:-2,module:8,stave:4,layer:9,submodule:4,x:32:-16,y:-16" }
"""
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from bibfilter.geometry.cellid import TRACKER_ENCODING, as_unsigned
from bibfilter.physics.events import Event, HitCollection
from bibfilter.physics.hits import Hit
from bibfilter.io.event_store import iter_events


class BaseAdapter:
    """
    Abstract adapter interface: yield Events, one at a time.
    """

    def iter_events(self, path: str) -> Iterator[Event]:
        raise NotImplementedError


class HDF5Adapter(BaseAdapter):
    def __init__(self, collections: Optional[Sequence[str]] = None):
        self.collections = list(collections) if collections else None

    def iter_events(self, path: str) -> Iterator[Event]:
        yield from iter_events(path, collections=self.collections)


class TableAdapter(BaseAdapter):
    """
    Read one-row-per-hit tables.

    Required columns: event, collection, x, y, z, energy, time, cell_id.
    Optional: run, u, v. Row order within (event, collection) is kept.
    """

    REQUIRED = ("event", "collection", "x", "y", "z", "energy", "time", "cell_id")

    def __init__(
        self,
        fmt: str = "csv",
        encoding: str = TRACKER_ENCODING,
        encodings: Optional[Mapping[str, str]] = None,
    ):
        if fmt not in ("csv", "parquet"):
            raise ValueError(f"Unsupported table format {fmt!r}")
        self.fmt = fmt
        self.encoding = encoding
        self.encodings = dict(encodings or {})

    def _read(self, path: str) -> pd.DataFrame:
        if self.fmt == "csv":
            return pd.read_csv(path)
        return pd.read_parquet(path)

    def iter_events(self, path: str) -> Iterator[Event]:
        df = self._read(path)
        missing = [c for c in self.REQUIRED if c not in df.columns]
        if missing:
            raise KeyError(f"{Path(path).name}: missing columns {missing}")
        for col in ("u", "v"):
            if col not in df.columns:
                df[col] = 0.0
        if "run" not in df.columns:
            df["run"] = 0

        for (run, number), ev_df in df.groupby(["run", "event"], sort=True):
            ev = Event(run=int(run), number=int(number), meta={"source": str(path)})
            for name, c_df in ev_df.groupby("collection", sort=False):
                pos = c_df[["x", "y", "z"]].to_numpy(dtype=float)
                e = c_df["energy"].to_numpy(dtype=float)
                t = c_df["time"].to_numpy(dtype=float)
                # int64 columns carry top-bit IDs as negative values
                cid = c_df["cell_id"].to_numpy()
                u = c_df["u"].to_numpy(dtype=float)
                v = c_df["v"].to_numpy(dtype=float)
                hits = [
                    Hit(position=pos[k].copy(), energy=float(e[k]), time=float(t[k]),
                        cell_id=as_unsigned(cid[k]), u=float(u[k]), v=float(v[k]))
                    for k in range(len(c_df))
                ]
                ev.add(str(name), HitCollection(hits=hits, encoding=self.encodings.get(str(name), self.encoding)))
            yield ev


def make_adapter(fmt: str, options: Optional[Dict[str, Any]] = None) -> BaseAdapter:
    """Factory from [io].input_format and the [io.adapter] table."""
    opts = dict(options or {})
    if fmt == "hdf5":
        return HDF5Adapter(collections=opts.get("collections"))
    if fmt in ("csv", "parquet"):
        return TableAdapter(
            fmt=fmt,
            encoding=opts.get("encoding", TRACKER_ENCODING),
            encodings=opts.get("encodings"),
        )
    raise ValueError(f"Unknown input format {fmt!r}")
