"""
bibfilter.io.event_store

HDF5 event store with ragged (CSR-style) per-collection columns.

Layout
------
/events/run, /events/number          (N_events,) int64
/collections/<name>                  group, attrs: kind (+ encoding | source/target | hits_collection)
    present      (N_events,) bool    collection exists in event i
    event_ptr    (N_events+1,) int64 rows of event i are [ptr[i], ptr[i+1])

  kind = "hits":      x, y, z [mm], energy [GeV], time [ns], cell_id, u, v
  kind = "relations": from_index, to_index, weight
  kind = "tracks":    hit_ptr (N_tracks+1,), hit_index (indices into `hits_collection` of the same event)
  kind = "particles": px, py, pz [GeV], energy, generator_status
"""
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import h5py
import numpy as np

from bibfilter.geometry.cellid import as_unsigned
from bibfilter.physics.events import (
    Event,
    HitCollection,
    ParticleCollection,
    RelationCollection,
    TrackCollection,
)
from bibfilter.physics.hits import Hit, MCParticle, Relation, Track

FORMAT_VERSION = "1.0"

_HIT_COLS = ("x", "y", "z", "energy", "time", "cell_id", "u", "v")
_HIT_DTYPES = {"cell_id": np.uint64}  # 64-bit IDs may use the top bit


def _collection_names(events: Sequence[Event]) -> Dict[str, str]:
    """name -> kind over all events; a name must keep one kind."""
    kinds: Dict[str, str] = {}
    for ev in events:
        for name, coll in ev.collections.items():
            prev = kinds.setdefault(name, coll.kind)
            if prev != coll.kind:
                raise ValueError(f"Collection {name!r} is {prev!r} in one event and {coll.kind!r} in another")
    return kinds


def _ptr(counts: List[int]) -> np.ndarray:
    ptr = np.zeros(len(counts) + 1, dtype=np.int64)
    np.cumsum(counts, out=ptr[1:])
    return ptr


def _write_hits(g: h5py.Group, events: Sequence[Event], name: str) -> None:
    cols: Dict[str, list] = {k: [] for k in _HIT_COLS}
    counts, present, encoding = [], [], ""
    for ev in events:
        coll = ev.collections.get(name)
        present.append(coll is not None)
        hits = coll.hits if coll is not None else []
        if coll is not None and coll.encoding:
            encoding = coll.encoding
        counts.append(len(hits))
        for h in hits:
            cols["x"].append(float(h.position[0]))
            cols["y"].append(float(h.position[1]))
            cols["z"].append(float(h.position[2]))
            cols["energy"].append(h.energy)
            cols["time"].append(h.time)
            cols["cell_id"].append(as_unsigned(h.cell_id))
            cols["u"].append(h.u)
            cols["v"].append(h.v)
    g.attrs["encoding"] = encoding
    g.create_dataset("present", data=np.asarray(present, dtype=bool))
    g.create_dataset("event_ptr", data=_ptr(counts))
    for k, vals in cols.items():
        arr = np.asarray(vals, dtype=_HIT_DTYPES.get(k, np.float64))
        g.create_dataset(k, data=arr, compression="gzip" if arr.size else None)


def _write_relations(g: h5py.Group, events: Sequence[Event], name: str) -> None:
    fr, to, w, counts, present = [], [], [], [], []
    for ev in events:
        coll = ev.collections.get(name)
        present.append(coll is not None)
        rels = coll.relations if coll is not None else []
        if coll is not None:
            g.attrs["source"] = coll.source
            g.attrs["target"] = coll.target
        counts.append(len(rels))
        for r in rels:
            fr.append(r.from_index)
            to.append(r.to_index)
            w.append(r.weight)
    g.create_dataset("present", data=np.asarray(present, dtype=bool))
    g.create_dataset("event_ptr", data=_ptr(counts))
    g.create_dataset("from_index", data=np.asarray(fr, dtype=np.int64))
    g.create_dataset("to_index", data=np.asarray(to, dtype=np.int64))
    g.create_dataset("weight", data=np.asarray(w, dtype=np.float64))


def _write_tracks(g: h5py.Group, events: Sequence[Event], name: str) -> None:
    counts, present, hit_counts, hit_index = [], [], [], []
    hits_name = ""
    for ev in events:
        coll = ev.collections.get(name)
        present.append(coll is not None)
        tracks = coll.tracks if coll is not None else []
        counts.append(len(tracks))
        if not tracks:
            continue
        hits_name = coll.hits_collection
        pool = ev.collections.get(hits_name)
        if not isinstance(pool, HitCollection):
            raise KeyError(f"Tracks {name!r} reference missing hit collection {hits_name!r} in event {ev.number}")
        pos = {id(h): i for i, h in enumerate(pool.hits)}
        for trk in tracks:
            hit_counts.append(len(trk.hits))
            for h in trk.hits:
                try:
                    hit_index.append(pos[id(h)])
                except KeyError:
                    raise KeyError(f"Track hit not found in {hits_name!r} (event {ev.number})") from None
    g.attrs["hits_collection"] = hits_name
    g.create_dataset("present", data=np.asarray(present, dtype=bool))
    g.create_dataset("event_ptr", data=_ptr(counts))
    g.create_dataset("hit_ptr", data=_ptr(hit_counts))
    g.create_dataset("hit_index", data=np.asarray(hit_index, dtype=np.int64))


def _write_particles(g: h5py.Group, events: Sequence[Event], name: str) -> None:
    px, py, pz, e, st, counts, present = [], [], [], [], [], [], []
    for ev in events:
        coll = ev.collections.get(name)
        present.append(coll is not None)
        parts = coll.particles if coll is not None else []
        counts.append(len(parts))
        for p in parts:
            px.append(float(p.momentum[0]))
            py.append(float(p.momentum[1]))
            pz.append(float(p.momentum[2]))
            e.append(p.energy)
            st.append(p.generator_status)
    g.create_dataset("present", data=np.asarray(present, dtype=bool))
    g.create_dataset("event_ptr", data=_ptr(counts))
    for k, vals in (("px", px), ("py", py), ("pz", pz), ("energy", e)):
        g.create_dataset(k, data=np.asarray(vals, dtype=np.float64))
    g.create_dataset("generator_status", data=np.asarray(st, dtype=np.int32))


_WRITERS = {
    "hits": _write_hits,
    "relations": _write_relations,
    "tracks": _write_tracks,
    "particles": _write_particles,
}


def write_events(path: str | Path, events: Sequence[Event], *, meta: Optional[Dict[str, Any]] = None) -> Path:
    """Write all collections of `events` to a new HDF5 file."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    kinds = _collection_names(events)
    with h5py.File(p, "w") as f:
        f.attrs["format_version"] = FORMAT_VERSION
        f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
        for k, v in (meta or {}).items():
            f.attrs[k] = v
        g_ev = f.require_group("events")
        g_ev.create_dataset("run", data=np.asarray([ev.run for ev in events], dtype=np.int64))
        g_ev.create_dataset("number", data=np.asarray([ev.number for ev in events], dtype=np.int64))
        g_coll = f.require_group("collections")
        for name, kind in kinds.items():
            g = g_coll.create_group(name)
            g.attrs["kind"] = kind
            _WRITERS[kind](g, events, name)
    return p


# --- Reading -------------------------------------------------------------------

def _load_group(g: h5py.Group) -> Dict[str, Any]:
    data = {k: np.asarray(g[k]) for k in g.keys()}
    data.update({f"@{k}": (v.decode() if isinstance(v, bytes) else v) for k, v in g.attrs.items()})
    return data


def _hits_at(d: Dict[str, Any], i: int) -> HitCollection:
    a, b = int(d["event_ptr"][i]), int(d["event_ptr"][i + 1])
    hits = [
        Hit(
            position=np.array([d["x"][k], d["y"][k], d["z"][k]], dtype=float),
            energy=float(d["energy"][k]),
            time=float(d["time"][k]),
            cell_id=int(d["cell_id"][k]),
            u=float(d["u"][k]),
            v=float(d["v"][k]),
        )
        for k in range(a, b)
    ]
    return HitCollection(hits=hits, encoding=str(d.get("@encoding", "")))


def _relations_at(d: Dict[str, Any], i: int) -> RelationCollection:
    a, b = int(d["event_ptr"][i]), int(d["event_ptr"][i + 1])
    rels = [Relation(int(d["from_index"][k]), int(d["to_index"][k]), float(d["weight"][k])) for k in range(a, b)]
    return RelationCollection(relations=rels, source=str(d.get("@source", "")), target=str(d.get("@target", "")))


def _particles_at(d: Dict[str, Any], i: int) -> ParticleCollection:
    a, b = int(d["event_ptr"][i]), int(d["event_ptr"][i + 1])
    parts = [
        MCParticle(
            momentum=np.array([d["px"][k], d["py"][k], d["pz"][k]], dtype=float),
            energy=float(d["energy"][k]),
            generator_status=int(d["generator_status"][k]),
        )
        for k in range(a, b)
    ]
    return ParticleCollection(particles=parts)


def _tracks_at(d: Dict[str, Any], i: int, ev: Event) -> TrackCollection:
    hits_name = str(d.get("@hits_collection", ""))
    a, b = int(d["event_ptr"][i]), int(d["event_ptr"][i + 1])
    pool = ev.collections.get(hits_name)
    tracks = []
    for t in range(a, b):
        lo, hi = int(d["hit_ptr"][t]), int(d["hit_ptr"][t + 1])
        if not isinstance(pool, HitCollection):
            raise KeyError(f"Track hit collection {hits_name!r} missing in event {ev.number}")
        tracks.append(Track(hits=tuple(pool.hits[int(k)] for k in d["hit_index"][lo:hi])))
    return TrackCollection(tracks=tracks, hits_collection=hits_name)


def iter_events(path: str | Path, *, collections: Optional[Sequence[str]] = None) -> Iterator[Event]:
    """
    Yield Events from a store written by write_events().

    collections: restrict to these names (default: all).
    """
    p = Path(path)
    with h5py.File(p, "r") as f:
        runs = np.asarray(f["events/run"])
        numbers = np.asarray(f["events/number"])
        g_coll = f["collections"]
        names = list(g_coll.keys()) if collections is None else [n for n in collections if n in g_coll]
        groups = {n: _load_group(g_coll[n]) for n in names}

    # tracks last: they point into hit collections
    order = sorted(names, key=lambda n: groups[n]["@kind"] == "tracks")
    for i in range(len(runs)):
        ev = Event(run=int(runs[i]), number=int(numbers[i]), meta={"source": str(p), "entry_index": i})
        for name in order:
            d = groups[name]
            if not bool(d["present"][i]):
                continue
            kind = d["@kind"]
            if kind == "hits":
                ev.add(name, _hits_at(d, i))
            elif kind == "relations":
                ev.add(name, _relations_at(d, i))
            elif kind == "particles":
                ev.add(name, _particles_at(d, i))
            elif kind == "tracks":
                ev.add(name, _tracks_at(d, i, ev))
            else:
                raise ValueError(f"Unknown collection kind {kind!r} for {name!r}")
        yield ev
