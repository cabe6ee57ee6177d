from pathlib import Path

import h5py
import numpy as np
import pandas as pd
import pytest
from typer.testing import CliRunner

from bibfilter.geometry.cellid import CALO_ENCODING, TRACKER_ENCODING, CellIDDecoder
from bibfilter.io.adapters import TableAdapter, make_adapter
from bibfilter.io.calib import load_calibration_map, write_calibration_map
from bibfilter.io.event_store import iter_events, write_events
from bibfilter.filters.thresholds import CalibrationMap, ThetaBinning
from bibfilter.physics.events import Event, HitCollection, TrackCollection
from bibfilter.physics.hits import Hit
from bibfilter.pipelines.core import app, calibrate_from_store, run_pipeline
from bibfilter.sim.synth import synth_events

N_DOUBLETS = 20


@pytest.fixture
def sample(tmp_path) -> Path:
    events = synth_events(4, n_doublets=N_DOUBLETS, n_calo_layers=10, n_calo_bib=200, seed=11)
    return write_events(tmp_path / "events.h5", events)


def test_event_store_roundtrip(tmp_path):
    events = synth_events(2, seed=3)
    # drop one collection from the second event
    del events[1].collections["MCParticle"]
    path = write_events(tmp_path / "ev.h5", events, meta={"note": "test"})
    back = list(iter_events(path))

    assert [ev.number for ev in back] == [0, 1]
    for orig, ev in zip(events, back):
        assert sorted(ev.names()) == sorted(orig.names())
        a, b = orig.get("VertexBarrelCollection"), ev.get("VertexBarrelCollection")
        assert b.encoding == TRACKER_ENCODING
        assert [h.cell_id for h in b.hits] == [h.cell_id for h in a.hits]
        assert np.allclose([h.position for h in b.hits], [h.position for h in a.hits])
        trk = ev.get("Tracks")
        assert isinstance(trk, TrackCollection) and len(trk) == N_DOUBLETS // 2
        # track hits point into the restored hit pool
        pool_ids = {id(h) for h in b.hits}
        assert all(id(h) in pool_ids for h in trk.used_hits())
        rel = ev.get("EcalBarrelRelationsSimRec")
        assert rel.source == "EcalBarrelCollectionRec" and len(rel) == len(ev.get("EcalBarrelCollectionRec"))
    assert not back[1].get("MCParticle")
    with h5py.File(path, "r") as f:
        assert f.attrs["note"] == "test"

    only = list(iter_events(path, collections=["VertexBarrelCollection"]))
    assert only[0].names() == ["VertexBarrelCollection"]


def test_table_adapter(tmp_path):
    df = pd.DataFrame({
        "event": [0, 0, 0, 1],
        "collection": ["A", "A", "B", "A"],
        "x": [1.0, 2.0, 3.0, 4.0], "y": 0.0, "z": 5.0,
        "energy": [0.1, 0.2, 0.3, 0.4], "time": 0.0, "cell_id": [1, 2, 3, 4],
    })
    path = tmp_path / "hits.csv"
    df.to_csv(path, index=False)
    events = list(make_adapter("csv", {"encodings": {"B": "layer:6"}}).iter_events(str(path)))
    assert [ev.number for ev in events] == [0, 1]
    a = events[0].get("A")
    assert [h.energy for h in a.hits] == [0.1, 0.2] and a.encoding == TRACKER_ENCODING
    assert events[0].get("B").encoding == "layer:6" and events[0].get("B").hits[0].u == 0.0
    with pytest.raises(KeyError):
        list(TableAdapter().iter_events(str(_bad_csv(tmp_path))))
    with pytest.raises(ValueError):
        make_adapter("root")


def _bad_csv(tmp_path):
    p = tmp_path / "bad.csv"
    pd.DataFrame({"event": [0], "x": [1.0]}).to_csv(p, index=False)
    return p


def test_calibration_store_formats(tmp_path):
    binning = ThetaBinning([0.0, 0.5, 0.5 * np.pi])
    cmap = CalibrationMap(binning, np.array([[0.1, 0.2], [0.3, 0.4]]), np.full((2, 2), 0.01), meta={"tag": "x"})
    back = load_calibration_map(write_calibration_map(tmp_path / "m.h5", cmap))
    assert np.array_equal(back.mean, cmap.mean) and back.binning == binning and back.meta["tag"] == "x"

    np.savez(tmp_path / "m.npz", edges=binning.edges, bib_mean=cmap.mean, std=cmap.stddev)
    npz = load_calibration_map(tmp_path / "m.npz")
    assert np.array_equal(npz.stddev, cmap.stddev)

    np.savez(tmp_path / "partial.npz", edges=binning.edges, mean=cmap.mean)
    with pytest.raises(KeyError):
        load_calibration_map(tmp_path / "partial.npz")


def _config(tmp_path, sample, extra=""):
    text = f"""
[run]
diagnostics_level = 0

[io]
input_path = "{sample.name}"
output_path = "out/filtered.h5"

[[filters]]
type = "time"

[[filters]]
type = "doublet"

[[filters]]
type = "dedup"
input = "VertexBarrelCollection"
{extra}
[[filters]]
type = "cone"
"""
    p = tmp_path / "run.toml"
    p.write_text(text)
    return p


def test_pipeline_end_to_end(tmp_path, sample):
    extra = """
[[filters]]
type = "threshold"
n_layers = 10
input_relations = "EcalBarrelRelationsSimRec"
output_relations = "EcalBarrelRelationsSimSel"
"""
    out = run_pipeline(str(_config(tmp_path, sample, extra)))
    assert out == tmp_path.resolve() / "out" / "filtered.h5"

    events = list(iter_events(out))
    assert len(events) == 4
    for ev in events:
        hits = ev.get("VertexBarrelCollection")
        good = ev.get("VertexBarrelGoodCollection")
        assert isinstance(good, HitCollection) and len(good) >= 2 * N_DOUBLETS
        assert len(ev.get("SlimmedHits")) == len(hits) - 2 * (N_DOUBLETS // 2)
        assert len(ev.get("VertexBarrelTimedCollection")) <= len(hits)
        sel = ev.get("EcalBarrelCollectionSel")
        assert len(ev.get("EcalBarrelRelationsSimSel")) == len(sel)
        assert len(ev.get("EcalBarrelRelationsSimConed")) == len(ev.get("EcalBarrelCollectionConed"))
    with h5py.File(out, "r") as f:
        assert "type = \"doublet\"" in f.attrs["config_toml"]


def test_pipeline_with_calibration_map(tmp_path, sample):
    cal = calibrate_from_store(str(sample), str(tmp_path / "calib.h5"), n_layers=10)
    assert load_calibration_map(cal).n_layers == 10
    extra = f"""
[[filters]]
type = "threshold"
n_layers = 10
calibration_path = "{cal.name}"
"""
    cfg = _config(tmp_path, sample, extra)
    cfg.write_text(cfg.read_text().replace("diagnostics_level = 0", "diagnostics_level = 0\nmax_events = 2"))
    events = list(iter_events(run_pipeline(str(cfg))))
    assert len(events) == 2
    assert all(len(ev.get("EcalBarrelCollectionSel")) <= len(ev.get("EcalBarrelCollectionRec")) for ev in events)


def test_cli_synth_and_calibrate(tmp_path):
    runner = CliRunner()
    res = runner.invoke(app, ["synth", str(tmp_path / "s.h5"), "--events", "2", "--seed", "1", "--n-layers", "8"])
    assert res.exit_code == 0, res.output
    res = runner.invoke(app, ["calibrate", str(tmp_path / "s.h5"), str(tmp_path / "c.h5"),
                              "--n-layers", "8", "--edges", "0,45,90", "--diag", "0"])
    assert res.exit_code == 0, res.output
    cmap = load_calibration_map(tmp_path / "c.h5")
    assert cmap.binning.n_bins == 2 and cmap.n_layers == 8


def test_negative_calo_cell_survives_table_and_store(tmp_path, calo_decoder):
    cid = calo_decoder.encode(system=20, layer=3, x=5, y=-7)
    assert cid >= 1 << 63  # y sits in the top bits
    df = pd.DataFrame({
        "event": [0], "collection": ["EcalBarrelCollectionRec"],
        "x": [1500.0], "y": [0.0], "z": [10.0], "energy": [0.2], "time": [5.0],
        "cell_id": np.array([cid], dtype=np.uint64).view(np.int64),
    })
    path = tmp_path / "calo.csv"
    df.to_csv(path, index=False)
    assert pd.read_csv(path)["cell_id"].iloc[0] < 0

    events = list(make_adapter("csv", {"encoding": CALO_ENCODING}).iter_events(str(path)))
    hit = events[0].get("EcalBarrelCollectionRec").hits[0]
    assert hit.cell_id == cid

    back = list(iter_events(write_events(tmp_path / "calo.h5", events)))
    coll = back[0].get("EcalBarrelCollectionRec")
    assert coll.hits[0].cell_id == cid
    fields = CellIDDecoder(coll.encoding).decode(coll.hits[0].cell_id)
    assert (fields["layer"], fields["x"], fields["y"]) == (3, 5, -7)


def test_store_accepts_signed_cell_ids(tmp_path, calo_decoder):
    cid = calo_decoder.encode(system=20, layer=1, y=-1)
    hit = Hit(position=np.array([1.0, 0.0, 0.0]), energy=0.1, time=0.0, cell_id=cid - (1 << 64))
    ev = Event()
    ev.add("Calo", HitCollection([hit], CALO_ENCODING))
    back = list(iter_events(write_events(tmp_path / "s.h5", [ev])))
    assert back[0].get("Calo").hits[0].cell_id == cid
