# src/bibfilter/filters/processors.py
"""
Event-level processors, one per filtering mode.

Each wraps one algorithm: it fetches its input collections, runs the
algorithm and returns the output collections. Output hit collections keep
the input encoding; selections keep the input Hit objects (subsets),
the threshold processor emits corrected copies.
"""
from __future__ import annotations
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from bibfilter.geometry.cellid import CALO_ENCODING
from bibfilter.geometry.sensor_index import SensorIndex
from bibfilter.io.calib import load_calibration_map
from bibfilter.physics.events import (
    Collection,
    Event,
    HitCollection,
    ParticleCollection,
    RelationCollection,
    TrackCollection,
)
from bibfilter.physics.hits import Relation
from bibfilter.utils.logger import get_logger

from .base import ProcessorBase
from .classifier import ClassifierSettings, HitClassifier
from .dedup import DedupFilter
from .doublets import DEFAULT_LAYER_PAIRS, DoubletMatcher, LayerPair
from .selectors import ConeSelector, TimeWindowSelector
from .thresholds import (
    DEFAULT_THETA_EDGES,
    ThresholdEstimator,
    ThresholdTable,
    ThetaBinning,
)

log = get_logger(__name__)


def _subset(coll: HitCollection, mask: np.ndarray) -> HitCollection:
    return HitCollection(hits=[h for h, keep in zip(coll.hits, mask) if keep], encoding=coll.encoding)


class DoubletProcessor(ProcessorBase):
    """Tracker hits with a partner in the paired layer."""

    name = "doublet"

    def __init__(
        self,
        input: str = "VertexBarrelCollection",
        output: str = "VertexBarrelGoodCollection",
        layer_pairs: Sequence[LayerPair] = DEFAULT_LAYER_PAIRS,
    ):
        super().__init__()
        self.input = input
        self.output = output
        self.matcher = DoubletMatcher(layer_pairs)

    def process(self, event: Event) -> Dict[str, Collection]:
        coll = self.fetch(event, self.input, HitCollection)
        if coll is None:
            return {}
        index = SensorIndex.build(coll.hits, self.decoder_for(coll))
        mask = self.matcher.classify(coll.hits, index)
        log.debug("[doublet] event %d: %d / %d hits kept", event.number, int(mask.sum()), len(coll))
        return {self.output: _subset(coll, mask)}


class ThresholdProcessor(ProcessorBase):
    """
    Calorimeter hits above the per-(layer, θ) dynamic threshold.

    Self-calibrating when calibration_path is None (table rebuilt every
    event); otherwise the table is built once in begin_run() and reused.
    """

    name = "threshold"
    default_encoding = CALO_ENCODING

    def __init__(
        self,
        input: str = "EcalBarrelCollectionRec",
        output: str = "EcalBarrelCollectionSel",
        input_relations: Optional[str] = None,
        output_relations: Optional[str] = None,
        n_layers: int = 50,
        n_sigma: float = 3.0,
        theta_edges: Sequence[float] = DEFAULT_THETA_EDGES,
        flat_threshold: float = 0.0,
        time_window: Optional[Tuple[float, float]] = None,
        baseline_subtraction: bool = False,
        energy_correction: bool = True,
        calibration_path: Optional[str] = None,
    ):
        super().__init__()
        self.input = input
        self.output = output
        self.input_relations = input_relations
        self.output_relations = output_relations
        self.calibration_path = calibration_path
        self.estimator = ThresholdEstimator(
            n_layers=n_layers,
            binning=ThetaBinning(theta_edges),
            n_sigma=n_sigma,
            flat_threshold=flat_threshold,
        )
        self.classifier = HitClassifier(ClassifierSettings(
            baseline_subtraction=baseline_subtraction,
            energy_correction=energy_correction,
            time_window=tuple(time_window) if time_window is not None else None,
        ))
        self.table: Optional[ThresholdTable] = None

    @property
    def self_calibrating(self) -> bool:
        return self.calibration_path is None

    def begin_run(self) -> None:
        if self.self_calibrating:
            return
        # missing file / datasets propagate: no thresholds, no run
        cmap = load_calibration_map(self.calibration_path)
        self.table = self.estimator.from_calibration(cmap)
        log.info("[threshold] loaded calibration map %s (%d bins x %d layers)",
                 self.calibration_path, cmap.binning.n_bins, cmap.n_layers)

    def process(self, event: Event) -> Dict[str, Collection]:
        coll = self.fetch(event, self.input, HitCollection)
        if coll is None:
            return {}
        relations, rel_coll = None, None
        if self.input_relations is not None:
            rel_coll = self.fetch(event, self.input_relations, RelationCollection)
            if rel_coll is None:
                return {}
            relations = rel_coll.relations

        decoder = self.decoder_for(coll)
        layers = np.fromiter((decoder.layer(h) for h in coll.hits), dtype=np.int64, count=len(coll))

        if self.self_calibrating:
            energies = np.fromiter((h.energy for h in coll.hits), dtype=float, count=len(coll))
            thetas = np.fromiter((h.theta for h in coll.hits), dtype=float, count=len(coll))
            table = self.estimator.from_hits(energies, thetas, layers)
        else:
            if self.table is None:
                raise RuntimeError("[threshold] calibration table not loaded; call begin_run() first")
            table = self.table

        accepted, out_rel, mask = self.classifier.classify_collection(coll.hits, layers, table, relations)
        log.debug("[threshold] event %d: %d / %d hits kept", event.number, len(accepted), len(coll))

        out: Dict[str, Collection] = {self.output: HitCollection(hits=accepted, encoding=coll.encoding)}
        if self.output_relations is not None and rel_coll is not None:
            out[self.output_relations] = RelationCollection(
                relations=out_rel, source=self.output, target=rel_coll.target
            )
        return out


class DedupProcessor(ProcessorBase):
    """Hits not yet used by any reconstructed track."""

    name = "dedup"

    def __init__(self, input: str = "HitsCollection", tracks: str = "Tracks", output: str = "SlimmedHits"):
        super().__init__()
        self.input = input
        self.tracks = tracks
        self.output = output
        self.dedup = DedupFilter()
        self.n_missing = 0

    def process(self, event: Event) -> Dict[str, Collection]:
        coll = self.fetch(event, self.input, HitCollection)
        if coll is None:
            return {}
        trk = self.fetch(event, self.tracks, TrackCollection)
        if trk is None:
            return {}
        decoder = self.decoder_for(coll)
        index = SensorIndex.build(coll.hits, decoder)
        used = trk.used_hits()
        result = self.dedup.filter(coll.hits, used, index, decoder)
        self.n_missing += result.n_missing
        log.debug("[dedup] event %d: tracks=%d total=%d used=%d unused=%d",
                  event.number, len(trk), len(coll), len(used), len(result.remaining))
        return {self.output: HitCollection(hits=result.remaining, encoding=coll.encoding)}

    def summary(self) -> str:
        return f"{super().summary()} missing={self.n_missing}"


class TimeProcessor(ProcessorBase):
    """Tracker hits inside the arrival-time window."""

    name = "time"

    def __init__(
        self,
        input: str = "VertexBarrelCollection",
        output: str = "VertexBarrelTimedCollection",
        t_min: float = -0.15,
        t_max: float = 0.15,
        offset: float = 0.2167,
    ):
        super().__init__()
        self.input = input
        self.output = output
        self.selector = TimeWindowSelector(t_min=t_min, t_max=t_max, offset=offset)

    def process(self, event: Event) -> Dict[str, Collection]:
        coll = self.fetch(event, self.input, HitCollection)
        if coll is None:
            return {}
        return {self.output: _subset(coll, self.selector.select(coll.hits))}


class ConeProcessor(ProcessorBase):
    """Calorimeter hits near generator-level particles, relations carried over."""

    name = "cone"
    default_encoding = CALO_ENCODING

    def __init__(
        self,
        particles: str = "MCParticle",
        input: str = "EcalBarrelCollectionRec",
        input_relations: str = "EcalBarrelRelationsSimRec",
        output: str = "EcalBarrelCollectionConed",
        output_relations: str = "EcalBarrelRelationsSimConed",
        cone_width: float = 0.2,
    ):
        super().__init__()
        self.particles = particles
        self.input = input
        self.input_relations = input_relations
        self.output = output
        self.output_relations = output_relations
        self.selector = ConeSelector(cone_width=cone_width)

    def process(self, event: Event) -> Dict[str, Collection]:
        parts = self.fetch(event, self.particles, ParticleCollection)
        coll = self.fetch(event, self.input, HitCollection)
        rel_coll = self.fetch(event, self.input_relations, RelationCollection)
        if parts is None or coll is None or rel_coll is None:
            return {}

        mask = self.selector.select(coll.hits, parts.particles)
        rel_by_hit = rel_coll.by_source()
        hits, rels = [], []
        for i, keep in enumerate(mask):
            if not keep:
                continue
            for rel in rel_by_hit.get(i, []):
                rels.append(Relation(len(hits), rel.to_index, rel.weight))
            hits.append(coll.hits[i])
        return {
            self.output: HitCollection(hits=hits, encoding=coll.encoding),
            self.output_relations: RelationCollection(relations=rels, source=self.output, target=rel_coll.target),
        }


PROCESSOR_CLASSES = (DoubletProcessor, ThresholdProcessor, DedupProcessor, TimeProcessor, ConeProcessor)
