from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from ..physics.hits import C_MM_PER_NS, Hit, Relation, relations_by_source
from ..utils.logger import get_logger
from .thresholds import ThresholdTable

log = get_logger(__name__)


@dataclass(frozen=True)
class ClassifierSettings:
    """
    baseline_subtraction: compare (E - correction) instead of E to the threshold
    energy_correction: emit accepted hits with E - correction
    time_window: (t_min, t_max) [ns] on t - |r|/c, min inclusive / max exclusive
    """
    baseline_subtraction: bool = False
    energy_correction: bool = True
    time_window: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        if self.time_window is not None:
            lo, hi = self.time_window
            if not lo < hi:
                raise ValueError(f"time_window must satisfy min < max, got {self.time_window}")


class Decision(NamedTuple):
    accept: bool
    corrected_energy: float


def time_of_flight(hit: Hit) -> float:
    """Straight-line flight time from the interaction point [ns]."""
    return hit.radius / C_MM_PER_NS


class HitClassifier:
    """
    Per-hit accept/reject against a ThresholdTable.

    One classifier covers the plain, baseline-subtracted, flat-threshold and
    timed selections; the table carries the thresholds (flat or dynamic) and
    ClassifierSettings picks the rest.
    """

    def __init__(self, settings: ClassifierSettings | None = None):
        self.settings = settings or ClassifierSettings()

    def classify(self, hit: Hit, layer: int, table: ThresholdTable) -> Decision:
        threshold, correction = table.lookup(layer, hit.theta)
        s = self.settings

        effective = hit.energy - correction if s.baseline_subtraction else hit.energy
        accept = effective > threshold

        if accept and s.time_window is not None:
            t_rel = hit.time - time_of_flight(hit)
            lo, hi = s.time_window
            if not (lo <= t_rel < hi):
                log.debug("[classifier] E=%.4g passes, rejected by time t_rel=%.4g", hit.energy, t_rel)
                accept = False

        corrected = hit.energy - correction if s.energy_correction else hit.energy
        return Decision(accept, corrected)

    def classify_collection(
        self,
        hits: Sequence[Hit],
        layers: Sequence[int],
        table: ThresholdTable,
        relations: Optional[Sequence[Relation]] = None,
    ) -> Tuple[List[Hit], List[Relation], np.ndarray]:
        """
        Classify every hit of a collection.

        Returns
        -------
        accepted : list of corrected Hit (new objects, input order)
        out_relations : relations re-pointed to indices in `accepted`, truth
            index and weight preserved, every relation of a hit kept in
            input order (empty if `relations` is None)
        mask : bool array (len(hits),)
        """
        if len(layers) != len(hits):
            raise ValueError(f"{len(layers)} layers for {len(hits)} hits")
        rel_by_hit = relations_by_source(relations) if relations is not None else {}

        mask = np.zeros(len(hits), dtype=bool)
        accepted: List[Hit] = []
        out_relations: List[Relation] = []
        skipped_layers = 0
        for i, (hit, layer) in enumerate(zip(hits, layers)):
            if not table.has_layer(layer):
                skipped_layers += 1
                continue
            decision = self.classify(hit, layer, table)
            if not decision.accept:
                continue
            mask[i] = True
            linked = rel_by_hit.get(i, [])
            for rel in linked:
                out_relations.append(Relation(len(accepted), rel.to_index, rel.weight))
            if not linked and relations is not None:
                log.debug("[classifier] accepted hit %d has no truth relation", i)
            accepted.append(replace(hit, energy=decision.corrected_energy))

        if skipped_layers:
            log.warning("[classifier] %d hit(s) on layers outside threshold table rejected", skipped_layers)
        return accepted, out_relations, mask
