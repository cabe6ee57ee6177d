from __future__ import annotations
import numpy as np


class AcceptanceMap:
    """
    Per-hit accept flags for the current event.

    The backing buffer lives as long as the owning algorithm and only grows;
    reset(n) clears the first n slots and exposes exactly those, so nothing
    decided for a previous event can be read back.
    """

    __slots__ = ("_buf", "_n")

    def __init__(self, capacity: int = 0):
        self._buf = np.zeros(max(int(capacity), 0), dtype=bool)
        self._n = 0

    def reset(self, n_hits: int) -> None:
        n_hits = int(n_hits)
        if n_hits < 0:
            raise ValueError(f"n_hits must be >= 0, got {n_hits}")
        if n_hits > self._buf.size:
            # grow geometrically; new buffer is already cleared
            self._buf = np.zeros(max(n_hits, 2 * self._buf.size), dtype=bool)
        else:
            self._buf[:n_hits] = False
        self._n = n_hits

    def accept(self, i: int) -> None:
        self._check(i)
        self._buf[i] = True

    def __getitem__(self, i: int) -> bool:
        self._check(i)
        return bool(self._buf[i])

    def __len__(self) -> int:
        return self._n

    @property
    def capacity(self) -> int:
        return int(self._buf.size)

    @property
    def mask(self) -> np.ndarray:
        """Read-only view of the current event's flags."""
        view = self._buf[: self._n]
        view.flags.writeable = False
        return view

    def to_array(self) -> np.ndarray:
        return self._buf[: self._n].copy()

    def count(self) -> int:
        return int(np.count_nonzero(self._buf[: self._n]))

    def _check(self, i: int) -> None:
        if not 0 <= i < self._n:
            raise IndexError(f"hit index {i} outside current event (n={self._n})")
