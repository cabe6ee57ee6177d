# src/bibfilter/filters/selectors.py
"""
Simple per-hit selectors that need no spatial index:

- TimeWindowSelector: tracker hits arriving in time with the bunch crossing
- ConeSelector: calorimeter hits close in angle to a generator-level particle
"""
from __future__ import annotations
from typing import Sequence

import numpy as np

from ..physics.hits import C_MM_PER_NS, Hit, MCParticle, opening_angle
from ..utils.logger import get_logger

log = get_logger(__name__)


class TimeWindowSelector:
    """
    Accept hits with t_min < t - r_T/c + offset < t_max.

    r_T is the transverse radius [mm]; offset aligns the digitizer time
    reference with the bunch crossing.
    """

    def __init__(self, t_min: float = -0.15, t_max: float = 0.15, offset: float = 0.2167):
        if not t_min < t_max:
            raise ValueError(f"t_min must be < t_max, got ({t_min}, {t_max})")
        self.t_min = float(t_min)
        self.t_max = float(t_max)
        self.offset = float(offset)

    def arrival_time(self, hit: Hit) -> float:
        return hit.time - hit.transverse_radius / C_MM_PER_NS + self.offset

    def select(self, hits: Sequence[Hit]) -> np.ndarray:
        t_arr = np.fromiter((self.arrival_time(h) for h in hits), dtype=float, count=len(hits))
        return (t_arr > self.t_min) & (t_arr < self.t_max)


class ConeSelector:
    """
    Keep hits within `cone_width` [rad] of any particle with the requested
    generator status (1 = final-state generator particle).
    """

    def __init__(self, cone_width: float = 0.2, generator_status: int = 1):
        if cone_width <= 0:
            raise ValueError(f"cone_width must be positive, got {cone_width}")
        self.cone_width = float(cone_width)
        self.generator_status = int(generator_status)

    def select(self, hits: Sequence[Hit], particles: Sequence[MCParticle]) -> np.ndarray:
        axes = [p.momentum for p in particles if p.generator_status == self.generator_status]
        mask = np.zeros(len(hits), dtype=bool)
        if not axes:
            log.debug("[cone] no generator-level particles, nothing kept")
            return mask
        for i, h in enumerate(hits):
            for axis in axes:
                if abs(opening_angle(axis, h.position)) < self.cone_width:
                    mask[i] = True
                    break
        return mask
