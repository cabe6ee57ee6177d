from __future__ import annotations
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from ..geometry.cellid import CellIDDecoder
from ..geometry.sensor_index import SensorIndex
from ..physics.hits import Hit
from ..utils.logger import get_logger

log = get_logger(__name__)


@dataclass
class DedupResult:
    remaining: List[Hit]
    removed: np.ndarray  # bool (len(all_hits),)
    n_missing: int = 0  # used hits whose sensor had no entry in the index

    @property
    def n_removed(self) -> int:
        return int(np.count_nonzero(self.removed))


class DedupFilter:
    """
    Drop hits that reconstructed tracks already consumed.

    Used hits come from the same digitization as the pool, so a duplicate is
    a hit on the same sensor with bit-identical local (u, v).
    """

    def filter(
        self,
        all_hits: Sequence[Hit],
        used_hits: Sequence[Hit],
        index: SensorIndex,
        decoder: CellIDDecoder,
    ) -> DedupResult:
        if index.n_hits != len(all_hits):
            raise ValueError(f"SensorIndex covers {index.n_hits} hits, pool has {len(all_hits)}")
        removed = np.zeros(len(all_hits), dtype=bool)
        n_missing = 0

        for k, used in enumerate(used_hits):
            addr = decoder.address(used)
            if addr not in index:
                # used hits are a subset of the pool: should never happen
                log.error("[dedup] used hit %d on sensor %s not found in hit pool", k, tuple(addr))
                n_missing += 1
                continue
            for j in index.get(addr):
                cand = all_hits[j]
                if cand.u == used.u and cand.v == used.v:
                    removed[j] = True

        remaining = [h for h, r in zip(all_hits, removed) if not r]
        log.debug("[dedup] total=%d used=%d removed=%d remaining=%d",
                  len(all_hits), len(used_hits), int(removed.sum()), len(remaining))
        return DedupResult(remaining=remaining, removed=removed, n_missing=n_missing)
