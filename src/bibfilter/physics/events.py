# src/bibfilter/physics/events.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Union

from .hits import Hit, MCParticle, Relation, Track, relations_by_source

CollectionKind = Literal["hits", "relations", "tracks", "particles"]


@dataclass(slots=True)
class HitCollection:
    """
    Ordered hits of one detector collection in one event.

    encoding is the cell-ID bit-field description carried as collection
    metadata (e.g. "system:5,side:-2,layer:6,module:11,sensor:8").
    """
    hits: List[Hit] = field(default_factory=list)
    encoding: str = ""
    kind: CollectionKind = "hits"

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self):
        return iter(self.hits)

    def __getitem__(self, i: int) -> Hit:
        return self.hits[i]


@dataclass(slots=True)
class RelationCollection:
    """
    Reco -> truth relations. from_index points into the hit collection named
    by `source`, to_index into the truth collection named by `target`.
    """
    relations: List[Relation] = field(default_factory=list)
    source: str = ""
    target: str = ""
    kind: CollectionKind = "relations"

    def __len__(self) -> int:
        return len(self.relations)

    def __iter__(self):
        return iter(self.relations)

    def by_source(self) -> Dict[int, List[Relation]]:
        return relations_by_source(self.relations)


@dataclass(slots=True)
class TrackCollection:
    tracks: List[Track] = field(default_factory=list)
    hits_collection: str = ""
    kind: CollectionKind = "tracks"

    def __len__(self) -> int:
        return len(self.tracks)

    def __iter__(self):
        return iter(self.tracks)

    def used_hits(self) -> List[Hit]:
        """All hits attached to any track, in track order."""
        return [h for trk in self.tracks for h in trk.hits]


@dataclass(slots=True)
class ParticleCollection:
    particles: List[MCParticle] = field(default_factory=list)
    kind: CollectionKind = "particles"

    def __len__(self) -> int:
        return len(self.particles)

    def __iter__(self):
        return iter(self.particles)


Collection = Union[HitCollection, RelationCollection, TrackCollection, ParticleCollection]


@dataclass(frozen=True, slots=True)
class NotFound:
    """Result of a collection lookup that found nothing under `name`."""
    name: str

    def __bool__(self) -> bool:
        return False


@dataclass(slots=True)
class Event:
    """
    One event as handed over by the host: numbered, with named collections.

    Lookups never raise; get() returns NotFound so callers decide the
    per-event policy.
    """
    run: int = 0
    number: int = 0
    collections: Dict[str, Collection] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str) -> Collection | NotFound:
        coll = self.collections.get(name)
        if coll is None:
            return NotFound(name)
        return coll

    def add(self, name: str, coll: Collection) -> None:
        if name in self.collections:
            raise ValueError(f"Collection {name!r} already exists in event {self.number}")
        self.collections[name] = coll

    def names(self) -> List[str]:
        return list(self.collections)
