"""Base class of the per-event filter processors."""
from __future__ import annotations
from typing import Dict, Optional, Type, TypeVar

from bibfilter.geometry.cellid import CellIDDecoder, TRACKER_ENCODING
from bibfilter.physics.events import Collection, Event, HitCollection, NotFound
from bibfilter.utils.logger import get_logger

log = get_logger(__name__)

C = TypeVar("C")


class ProcessorBase:
    """
    One filtering mode applied to one event at a time.

    Subclasses set `name` (the key used in the [[filters]] config and in the
    registry) and implement process(), which returns the new collections to
    add to the event. Missing inputs are not errors: fetch() logs them and
    process() returns an empty dict for that event.
    """

    name = ""
    # used for collections that carry no encoding metadata
    default_encoding = TRACKER_ENCODING

    def __init__(self):
        self.n_events = 0
        self.n_skipped = 0
        self._decoders: Dict[str, CellIDDecoder] = {}
        self._warned_encoding = False

    def begin_run(self) -> None:
        """Load run-lifetime resources. Called once before the first event."""

    def process(self, event: Event) -> Dict[str, Collection]:
        raise NotImplementedError

    def __call__(self, event: Event) -> Dict[str, Collection]:
        self.n_events += 1
        return self.process(event)

    def fetch(self, event: Event, name: str, kind: Type[C]) -> Optional[C]:
        coll = event.get(name)
        if isinstance(coll, NotFound):
            log.warning("[%s] collection %r unavailable in event %d, skipped", self.name, name, event.number)
            self.n_skipped += 1
            return None
        if not isinstance(coll, kind):
            raise TypeError(f"[{self.name}] collection {name!r} is {type(coll).__name__}, expected {kind.__name__}")
        return coll

    def decoder_for(self, coll: HitCollection) -> CellIDDecoder:
        """Decoders are cached per encoding string."""
        enc = coll.encoding
        if not enc:
            if not self._warned_encoding:
                log.warning("[%s] collection has no cell-ID encoding, assuming %r", self.name, self.default_encoding)
                self._warned_encoding = True
            enc = self.default_encoding
        dec = self._decoders.get(enc)
        if dec is None:
            dec = self._decoders[enc] = CellIDDecoder(enc)
        return dec

    def summary(self) -> str:
        return f"[{self.name}] events={self.n_events} skipped={self.n_skipped}"
