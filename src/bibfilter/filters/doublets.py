# src/bibfilter/filters/doublets.py
"""
Doublet matching for tracker hits.

Vertex-detector layers come in closely spaced pairs. A particle from the
interaction point crosses both members of a pair at nearly the same (θ, φ);
BIB hits are mostly isolated. A hit survives only when the paired layer of
the same sensor has a hit inside the pair's angular window.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Mapping, Sequence, Tuple
import math

import numpy as np

from ..geometry.sensor_index import SensorIndex
from ..physics.hits import Hit, wrap_phi
from ..utils.logger import get_logger
from .acceptance import AcceptanceMap

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class LayerPair:
    """Inner `layer` is matched against `partner`, within (dtheta_cut, dphi_cut) [rad]."""
    layer: int
    partner: int
    dtheta_cut: float
    dphi_cut: float

    def __post_init__(self):
        if self.layer == self.partner:
            raise ValueError(f"Layer {self.layer} cannot be paired with itself")
        if self.dtheta_cut <= 0 or self.dphi_cut <= 0:
            raise ValueError(f"Cuts must be positive, got dtheta={self.dtheta_cut}, dphi={self.dphi_cut}")


# Barrel vertex detector: windows tighten towards the outer pairs
DEFAULT_LAYER_PAIRS: Tuple[LayerPair, ...] = (
    LayerPair(layer=0, partner=1, dtheta_cut=0.010, dphi_cut=0.001),
    LayerPair(layer=2, partner=3, dtheta_cut=0.005, dphi_cut=0.001),
    LayerPair(layer=4, partner=5, dtheta_cut=0.002, dphi_cut=0.001),
    LayerPair(layer=6, partner=7, dtheta_cut=0.001, dphi_cut=0.001),
)


def layer_pairs_from_cfg(rows: Iterable[Mapping | Sequence]) -> Tuple[LayerPair, ...]:
    """Accept dicts ({layer, partner, dtheta_cut, dphi_cut}) or 4-sequences."""
    out = []
    for row in rows:
        if isinstance(row, Mapping):
            out.append(LayerPair(int(row["layer"]), int(row["partner"]),
                                 float(row["dtheta_cut"]), float(row["dphi_cut"])))
        else:
            layer, partner, dth, dph = row
            out.append(LayerPair(int(layer), int(partner), float(dth), float(dph)))
    return tuple(out)


class DoubletMatcher:
    """
    Accept tracker hits that form a doublet with a hit in the paired layer.

    Parameters
    ----------
    layer_pairs : sequence of LayerPair
        Immutable pairing table. Inner layers are the starting points; their
        partners ("outer" members) are only ever accepted through a match
        found from the inner side.
    """

    def __init__(self, layer_pairs: Sequence[LayerPair] = DEFAULT_LAYER_PAIRS):
        pairs = tuple(layer_pairs)
        by_layer: Dict[int, LayerPair] = {}
        for p in pairs:
            if p.layer in by_layer:
                raise ValueError(f"Layer {p.layer} appears twice as inner layer")
            by_layer[p.layer] = p
        outer = frozenset(p.partner for p in pairs)
        clash = outer & set(by_layer)
        if clash:
            raise ValueError(f"Layers {sorted(clash)} are both inner and outer members")
        self.layer_pairs = pairs
        self._by_layer = by_layer
        self.outer_layers: FrozenSet[int] = outer
        self._accepted = AcceptanceMap()

    def classify(self, hits: Sequence[Hit], index: SensorIndex) -> np.ndarray:
        """
        Return a bool array (len(hits),) of accepted hits.

        The decision is a pure function of the hit geometry: any iteration
        order gives the same result and re-running is idempotent.
        """
        n = len(hits)
        if index.n_hits != n:
            raise ValueError(f"SensorIndex covers {index.n_hits} hits, collection has {n}")
        acc = self._accepted
        acc.reset(n)

        # angles once per hit
        theta = np.fromiter((h.theta for h in hits), dtype=float, count=n)
        phi = np.fromiter((h.phi for h in hits), dtype=float, count=n)

        for i in range(n):
            if acc[i]:
                continue
            addr = index.address_of(i)
            if addr.layer in self.outer_layers:
                continue
            pair = self._by_layer.get(addr.layer)
            if pair is None:
                log.debug("[doublet] hit %d on unpaired layer %d", i, addr.layer)
                continue

            candidates = index.get(addr.with_layer(pair.partner))
            if not candidates:
                log.debug("[doublet] hit %d: no hits on partner sensor", i)
                continue

            min_dr = math.inf
            dtheta_closest = dphi_closest = math.inf
            for j in candidates:
                dtheta = theta[j] - theta[i]
                dphi = wrap_phi(phi[i] - phi[j])
                dr = math.hypot(dtheta, dphi)
                if dr < min_dr:
                    min_dr = dr
                    dtheta_closest, dphi_closest = dtheta, dphi
                if abs(dtheta) > pair.dtheta_cut or abs(dphi) > pair.dphi_cut:
                    continue
                acc.accept(j)

            if abs(dtheta_closest) < pair.dtheta_cut and abs(dphi_closest) < pair.dphi_cut:
                acc.accept(i)

        log.debug("[doublet] accepted %d / %d hits", acc.count(), n)
        return acc.to_array()
