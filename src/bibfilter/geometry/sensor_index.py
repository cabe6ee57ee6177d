from __future__ import annotations
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

from ..physics.hits import Hit, SensorAddress
from .cellid import CellIDDecoder


class SensorIndex:
    """
    Hits of one event grouped by sensor address.

    Maps SensorAddress -> tuple of hit indices (insertion order) and keeps the
    per-hit address list so algorithms can ask for the address of hit i
    without decoding twice. Built once per event and dropped with it.
    """

    __slots__ = ("_by_address", "_addresses")

    def __init__(self, by_address: Dict[SensorAddress, Tuple[int, ...]], addresses: Tuple[SensorAddress, ...]):
        self._by_address = by_address
        self._addresses = addresses

    @classmethod
    def from_addresses(cls, addresses: Iterable[SensorAddress]) -> "SensorIndex":
        groups: Dict[SensorAddress, List[int]] = {}
        addr_list: List[SensorAddress] = []
        for i, addr in enumerate(addresses):
            addr_list.append(addr)
            groups.setdefault(addr, []).append(i)
        return cls({k: tuple(v) for k, v in groups.items()}, tuple(addr_list))

    @classmethod
    def build(cls, hits: Sequence[Hit], decoder: CellIDDecoder) -> "SensorIndex":
        return cls.from_addresses(decoder.address(h) for h in hits)

    def get(self, address: SensorAddress) -> Tuple[int, ...]:
        """Indices of the hits on `address`; empty when the sensor saw nothing."""
        return self._by_address.get(address, ())

    def address_of(self, i: int) -> SensorAddress:
        return self._addresses[i]

    def __contains__(self, address: object) -> bool:
        return address in self._by_address

    def __len__(self) -> int:
        """Number of distinct sensors with at least one hit."""
        return len(self._by_address)

    def __iter__(self) -> Iterator[SensorAddress]:
        return iter(sorted(self._by_address))

    @property
    def n_hits(self) -> int:
        return len(self._addresses)
