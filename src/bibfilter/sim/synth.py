from __future__ import annotations
from typing import List, Sequence
import math

import numpy as np

from ..geometry.cellid import CALO_ENCODING, TRACKER_ENCODING, CellIDDecoder
from ..physics.events import (
    Event,
    HitCollection,
    ParticleCollection,
    RelationCollection,
    TrackCollection,
)
from ..physics.hits import C_MM_PER_NS, Hit, MCParticle, Relation, Track

# Barrel radii of the 8 vertex layers (4 double layers) [mm]
VERTEX_RADII_MM = (30.0, 32.0, 51.0, 53.0, 74.0, 76.0, 102.0, 104.0)
N_LADDERS = 12
CALO_INNER_RADIUS_MM = 1500.0
CALO_LAYER_PITCH_MM = 5.0

TRACKER_SYSTEM = 1
CALO_SYSTEM = 20


def _point(r_t: float, theta: float, phi: float) -> np.ndarray:
    """Point at transverse radius r_t along direction (theta, phi)."""
    return np.array([r_t * math.cos(phi), r_t * math.sin(phi), r_t / math.tan(theta)], dtype=float)


def _ladder(phi: float) -> int:
    return int((phi + math.pi) / (2 * math.pi) * N_LADDERS) % N_LADDERS


def _unit(theta: float, phi: float) -> np.ndarray:
    return np.array([math.sin(theta) * math.cos(phi), math.sin(theta) * math.sin(phi), math.cos(theta)])


def synth_tracker_hits(
    rng: np.random.Generator,
    decoder: CellIDDecoder,
    n_doublets: int,
    n_bib: int,
) -> tuple[list[Hit], list[tuple[int, int]]]:
    """
    Vertex-barrel hits: `n_doublets` in-time pairs on (0,1), (2,3), (4,5),
    (6,7) pointing back to the origin, plus `n_bib` isolated out-of-time hits.

    Returns the hits and the (inner, outer) indices of each doublet.
    """
    hits: list[Hit] = []
    pairs: list[tuple[int, int]] = []

    def make(layer: int, theta: float, phi: float, t: float) -> Hit:
        pos = _point(VERTEX_RADII_MM[layer], theta, phi)
        cid = decoder.encode(system=TRACKER_SYSTEM, side=0, layer=layer, module=_ladder(phi), sensor=0)
        return Hit(position=pos, energy=float(rng.uniform(2e-5, 1e-4)), time=t, cell_id=cid,
                   u=float(rng.uniform(-5, 5)), v=float(rng.uniform(-20, 20)))

    for _ in range(n_doublets):
        inner = int(rng.choice((0, 2, 4, 6)))
        theta = float(rng.uniform(0.6, math.pi - 0.6))
        phi = float(rng.uniform(-math.pi, math.pi))
        for layer in (inner, inner + 1):
            # in time with the bunch crossing after the straight-line flight
            t = VERTEX_RADII_MM[layer] / C_MM_PER_NS - 0.2167 + float(rng.normal(0.0, 0.03))
            hits.append(make(layer, theta, phi, t))
        pairs.append((len(hits) - 2, len(hits) - 1))

    for _ in range(n_bib):
        layer = int(rng.integers(0, len(VERTEX_RADII_MM)))
        theta = float(rng.uniform(0.3, math.pi - 0.3))
        phi = float(rng.uniform(-math.pi, math.pi))
        hits.append(make(layer, theta, phi, float(rng.uniform(-0.5, 2.0))))

    return hits, pairs


def synth_calo_hits(
    rng: np.random.Generator,
    decoder: CellIDDecoder,
    particles: Sequence[MCParticle],
    n_layers: int,
    n_bib: int,
    n_signal_per_particle: int,
    bib_scale: float = 2e-3,
) -> list[Hit]:
    """
    ECal barrel hits: a soft exponential BIB floor spread over all layers
    and angles, plus harder showers along each particle direction.
    """
    hits: list[Hit] = []

    def make(layer: int, theta: float, phi: float, energy: float) -> Hit:
        r_t = CALO_INNER_RADIUS_MM + CALO_LAYER_PITCH_MM * layer
        pos = _point(r_t, theta, phi)
        cid = decoder.encode(system=CALO_SYSTEM, side=0, module=_ladder(phi), layer=layer)
        t = float(np.linalg.norm(pos)) / C_MM_PER_NS + float(rng.normal(0.0, 0.05))
        return Hit(position=pos, energy=energy, time=t, cell_id=cid)

    for _ in range(n_bib):
        hits.append(make(
            int(rng.integers(0, n_layers)),
            float(rng.uniform(0.2, math.pi - 0.2)),
            float(rng.uniform(-math.pi, math.pi)),
            float(rng.exponential(bib_scale)),
        ))

    for p in particles:
        axis = p.momentum / np.linalg.norm(p.momentum)
        theta0 = math.acos(float(np.clip(axis[2], -1.0, 1.0)))
        phi0 = math.atan2(axis[1], axis[0])
        for _ in range(n_signal_per_particle):
            hits.append(make(
                int(rng.integers(0, n_layers)),
                float(np.clip(theta0 + rng.normal(0.0, 0.03), 0.05, math.pi - 0.05)),
                float(phi0 + rng.normal(0.0, 0.03)),
                float(rng.uniform(0.05, 0.5)),
            ))
    return hits


def synth_particles(rng: np.random.Generator, n: int) -> list[MCParticle]:
    """`n` final-state particles plus one intermediate (status 2) per event."""
    out: list[MCParticle] = []
    for k in range(n + 1):
        theta = float(rng.uniform(0.7, math.pi - 0.7))
        phi = float(rng.uniform(-math.pi, math.pi))
        e = float(rng.uniform(5.0, 50.0))
        out.append(MCParticle(momentum=e * _unit(theta, phi), energy=e, generator_status=1 if k < n else 2))
    return out


def synth_events(
    n_events: int,
    *,
    n_doublets: int = 20,
    n_tracker_bib: int = 60,
    n_particles: int = 2,
    n_calo_layers: int = 50,
    n_calo_bib: int = 400,
    n_signal_per_particle: int = 10,
    seed: int | None = None,
) -> List[Event]:
    """
    Generate toy events with the collection names used by the default filters:

    - VertexBarrelCollection (tracker hits) and Tracks (one track per
      doublet in the first half of the doublets)
    - EcalBarrelCollectionRec (calorimeter hits),
      EcalBarrelRelationsSimRec (one relation per calo hit) and MCParticle
    """
    rng = np.random.default_rng(seed)
    trk_dec = CellIDDecoder(TRACKER_ENCODING)
    calo_dec = CellIDDecoder(CALO_ENCODING)

    events: List[Event] = []
    for i in range(n_events):
        ev = Event(run=0, number=i, meta={"generator": "bibfilter.sim.synth"})

        trk_hits, pairs = synth_tracker_hits(rng, trk_dec, n_doublets, n_tracker_bib)
        ev.add("VertexBarrelCollection", HitCollection(hits=trk_hits, encoding=TRACKER_ENCODING))
        tracks = [Track(hits=(trk_hits[a], trk_hits[b])) for a, b in pairs[: len(pairs) // 2]]
        ev.add("Tracks", TrackCollection(tracks=tracks, hits_collection="VertexBarrelCollection"))

        particles = synth_particles(rng, n_particles)
        ev.add("MCParticle", ParticleCollection(particles=particles))

        calo = synth_calo_hits(rng, calo_dec, particles[:n_particles], n_calo_layers,
                               n_calo_bib, n_signal_per_particle)
        ev.add("EcalBarrelCollectionRec", HitCollection(hits=calo, encoding=CALO_ENCODING))
        ev.add("EcalBarrelRelationsSimRec", RelationCollection(
            relations=[Relation(k, k, 1.0) for k in range(len(calo))],
            source="EcalBarrelCollectionRec",
            target="EcalBarrelCollectionSim",
        ))
        events.append(ev)
    return events
