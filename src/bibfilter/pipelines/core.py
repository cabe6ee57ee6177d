from __future__ import annotations

from itertools import islice
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence
import math

import typer

from bibfilter.config.load import json_dumps, load_config, snapshot_config_toml
from bibfilter.config.schemas import Config
from bibfilter.filters.base import ProcessorBase
from bibfilter.filters.factories import build_registry, make_processor
from bibfilter.filters.thresholds import CalibrationAccumulator, ThetaBinning
from bibfilter.geometry.cellid import CellIDDecoder
from bibfilter.io.adapters import make_adapter
from bibfilter.io.calib import write_calibration_map
from bibfilter.io.event_store import iter_events, write_events
from bibfilter.physics.events import Event, HitCollection
from bibfilter.sim.synth import synth_events
from bibfilter.utils.logger import configure_logging, get_logger

log = get_logger(__name__)


class FilterChain:
    """
    Ordered list of processors applied to each event.

    Outputs of earlier processors are visible to later ones, so a chain can
    e.g. time-select tracker hits and then build doublets from the result.
    """

    def __init__(self, processors: Sequence[ProcessorBase]):
        self.processors: List[ProcessorBase] = list(processors)

    @classmethod
    def from_config(cls, cfg: Config) -> "FilterChain":
        registry = build_registry()
        return cls([make_processor(f, registry) for f in cfg.filters])

    def begin_run(self) -> None:
        for proc in self.processors:
            proc.begin_run()

    def process_event(self, event: Event) -> Event:
        """Run every processor and add its outputs to `event` (in place)."""
        for proc in self.processors:
            for name, coll in proc(event).items():
                # Event.add raises on a name that already exists
                event.add(name, coll)
        return event

    def summaries(self) -> List[str]:
        return [p.summary() for p in self.processors]


def _iter_source_events(cfg: Config) -> Iterable[Event]:
    adapter = make_adapter(cfg.io.input_format, cfg.io.adapter)
    events = adapter.iter_events(str(cfg.io.input_path))
    if cfg.run.max_events is not None:
        events = islice(events, cfg.run.max_events)
    return events


def run_pipeline(cfg_path: str) -> Path:
    """
    Filter every event of the configured input and write the result.

    Parameters
    ----------
    cfg_path : str
        Path to TOML configuration file.

    Returns
    -------
    Path to the written HDF5 event store (input plus filter outputs).
    """
    cfg = load_config(cfg_path)
    configure_logging(cfg.run.diagnostics_level)

    log.info("[run] config = %s", cfg_path)
    log.info("[run] input=%s (%s) -> output=%s", cfg.io.input_path, cfg.io.input_format, cfg.io.output_path)
    log.info("[run] filters: %s", ", ".join(f"{f.type}->{f.output}" for f in cfg.filters) or "(none)")

    chain = FilterChain.from_config(cfg)
    chain.begin_run()

    events: List[Event] = []
    for ev in _iter_source_events(cfg):
        events.append(chain.process_event(ev))
    log.info("[pipeline] processed %d events", len(events))
    for line in chain.summaries():
        log.info("[pipeline] %s", line)

    meta = {
        "config_toml": snapshot_config_toml(cfg_path),
        "filters_json": json_dumps([f.model_dump() for f in cfg.filters]),
        "n_events": len(events),
    }
    out_path = write_events(cfg.io.output_path, events, meta=meta)
    log.info("[pipeline] wrote %s", out_path)
    return out_path


def calibrate_from_store(
    input_path: str,
    output_path: str,
    *,
    collection: str = "EcalBarrelCollectionRec",
    n_layers: int = 50,
    edges: Optional[Sequence[float]] = None,
) -> Path:
    """
    Accumulate a (θ bin x layer) BIB calibration map from the hits of one
    collection over all events of an HDF5 event store.
    """
    acc = CalibrationAccumulator(n_layers, ThetaBinning(edges) if edges is not None else None)
    decoders: Dict[str, CellIDDecoder] = {}
    for ev in iter_events(input_path, collections=[collection]):
        coll = ev.get(collection)
        if not isinstance(coll, HitCollection):
            log.warning("[calibrate] collection %r unavailable in event %d, skipped", collection, ev.number)
            continue
        dec = decoders.setdefault(coll.encoding, CellIDDecoder(coll.encoding))
        acc.fill(
            [h.energy for h in coll.hits],
            [h.theta for h in coll.hits],
            [dec.layer(h) for h in coll.hits],
        )
    cmap = acc.result()
    cmap.meta.update({"collection": collection, "source": str(input_path)})
    log.info("[calibrate] %d events, %d bins x %d layers", acc.n_events, acc.binning.n_bins, n_layers)
    return write_calibration_map(output_path, cmap)


def _parse_edges_deg(text: Optional[str]) -> Optional[List[float]]:
    if not text:
        return None
    return [math.radians(float(tok)) for tok in text.split(",") if tok.strip()]


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

app = typer.Typer(help="BIB hit filtering (bibfilter.pipelines.core)")


@app.command()
def run(
    cfg_path: str = typer.Argument(..., help="Path to TOML config file"),
):
    """
    Apply the configured filter chain to every input event.
    """
    out_path = run_pipeline(cfg_path)
    typer.echo(str(out_path))


@app.command()
def calibrate(
    input_path: str = typer.Argument(..., help="HDF5 event store with BIB-only events"),
    output_path: str = typer.Argument(..., help="Calibration map to write (.h5)"),
    collection: str = typer.Option("EcalBarrelCollectionRec", "--collection", "-c", help="Calorimeter hit collection"),
    n_layers: int = typer.Option(50, "--n-layers", help="Number of calorimeter layers"),
    edges: Optional[str] = typer.Option(
        None,
        "--edges",
        help="Comma-separated θ bin edges [deg] on the folded range, e.g. 0,30,40,50,60,70,90",
    ),
    diagnostics_level: int = typer.Option(1, "--diag", help="0=warnings, 1=summaries, 2=detail"),
):
    """
    Build a BIB calibration map (mean / stddev per θ bin and layer).
    """
    configure_logging(diagnostics_level)
    out = calibrate_from_store(
        input_path, output_path, collection=collection, n_layers=n_layers, edges=_parse_edges_deg(edges),
    )
    typer.echo(str(out))


@app.command()
def synth(
    output_path: str = typer.Argument(..., help="HDF5 event store to write"),
    n_events: int = typer.Option(10, "--events", "-n", help="Number of events"),
    seed: Optional[int] = typer.Option(None, "--seed", help="RNG seed"),
    n_calo_layers: int = typer.Option(50, "--n-layers", help="Number of calorimeter layers"),
):
    """
    Write a synthetic sample (tracker doublets, BIB noise, calorimeter hits).
    """
    events = synth_events(n_events, n_calo_layers=n_calo_layers, seed=seed)
    out = write_events(output_path, events, meta={"generator": "bibfilter synth", "seed": -1 if seed is None else seed})
    typer.echo(str(out))


if __name__ == "__main__":
    app()
