from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Tuple
import math

import numpy as np

# Speed of light in detector units (positions in mm, times in ns)
C_MM_PER_NS = 299.792458


class SensorAddress(NamedTuple):
    """
    Discrete sensor coordinate of a tracker hit.

    Ordered lexicographically (layer, side, ladder, module), so it can be
    used directly as a sorted-map key. Two hits sharing an address sit on
    the same sensor.
    """
    layer: int
    side: int
    ladder: int
    module: int

    def with_layer(self, layer: int) -> "SensorAddress":
        return self._replace(layer=layer)


@dataclass(frozen=True, slots=True, eq=False)
class Hit:
    """
    Canonical detector hit (one entry of a per-event hit collection).

    position: (3,) global position [mm]
    energy: deposited / reconstructed energy [GeV]
    time: hit time [ns]
    cell_id: packed cell identifier, decoded with the collection encoding
    u, v: local sensor coordinates (tracker hits only; 0 for calo hits)

    Hits are never modified in place: corrected hits are new values made
    with dataclasses.replace().
    """
    position: np.ndarray
    energy: float = 0.0
    time: float = 0.0
    cell_id: int = 0
    u: float = 0.0
    v: float = 0.0

    @property
    def theta(self) -> float:
        return polar_angle(self.position)

    @property
    def phi(self) -> float:
        return azimuth(self.position)

    @property
    def radius(self) -> float:
        """Distance from the interaction point [mm]."""
        return float(np.linalg.norm(self.position))

    @property
    def transverse_radius(self) -> float:
        return math.hypot(float(self.position[0]), float(self.position[1]))


@dataclass(frozen=True, slots=True)
class Relation:
    """Weighted link from a reconstructed hit to its originating truth hit."""
    from_index: int
    to_index: int
    weight: float = 1.0


def relations_by_source(relations: Iterable[Relation]) -> Dict[int, List[Relation]]:
    """Group relations by reconstructed-hit index; a hit may link to several truth hits."""
    out: Dict[int, List[Relation]] = {}
    for r in relations:
        out.setdefault(r.from_index, []).append(r)
    return out


@dataclass(frozen=True, slots=True)
class Track:
    """Reconstructed track, reduced to the hits it consumed."""
    hits: Tuple[Hit, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True, eq=False)
class MCParticle:
    momentum: np.ndarray  # (3,) [GeV]
    energy: float = 0.0
    generator_status: int = 1


# --- Angles ------------------------------------------------------------------

def polar_angle(pos) -> float:
    """Polar angle θ in [0, π] measured from +z."""
    x, y, z = float(pos[0]), float(pos[1]), float(pos[2])
    rho = math.hypot(x, y)
    if rho == 0.0 and z == 0.0:
        return 0.0
    return math.atan2(rho, z)


def azimuth(pos) -> float:
    """Azimuth φ in (-π, π]."""
    x, y = float(pos[0]), float(pos[1])
    if x == 0.0 and y == 0.0:
        return 0.0
    return math.atan2(y, x)


def wrap_phi(dphi: float) -> float:
    """Map an azimuthal difference onto [-π, π) (shortest path)."""
    while dphi >= math.pi:
        dphi -= 2.0 * math.pi
    while dphi < -math.pi:
        dphi += 2.0 * math.pi
    return dphi


def opening_angle(a, b) -> float:
    """Angle between two 3-vectors [rad]."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    na = np.linalg.norm(a)
    nb = np.linalg.norm(b)
    if na == 0.0 or nb == 0.0:
        return 0.0
    c = float(a @ b) / (na * nb)
    return math.acos(max(-1.0, min(1.0, c)))
