"""
bibfilter.geometry.cellid

Bit-field cell-ID decoding.

A collection carries its encoding as a string such as

    "system:5,side:-2,layer:6,module:11,sensor:8"

Each entry is `name:width` (packed right after the previous field) or
`name:offset:width`. A negative width marks a signed (two's complement)
field. The decoder maps a packed integer to the named fields and back.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Tuple

from ..physics.hits import Hit, SensorAddress

# Default encodings of the tracker / calorimeter barrel collections
TRACKER_ENCODING = "system:5,side:-2,layer:6,module:11,sensor:8"
CALO_ENCODING = "system:5,side:-2,module:8,stave:4,layer:9,submodule:4,x:32:-16,y:-16"

CELL_ID_MASK = (1 << 64) - 1


def as_unsigned(cell_id: int) -> int:
    """Map a signed 64-bit cell ID (top bit set) onto its unsigned value."""
    return int(cell_id) & CELL_ID_MASK


@dataclass(frozen=True, slots=True)
class BitField:
    name: str
    offset: int
    width: int
    signed: bool

    @property
    def mask(self) -> int:
        return ((1 << self.width) - 1) << self.offset

    def decode(self, value: int) -> int:
        raw = (value & self.mask) >> self.offset
        if self.signed and raw & (1 << (self.width - 1)):
            raw -= 1 << self.width
        return raw

    def encode(self, field_value: int) -> int:
        lo, hi = self.limits()
        if not lo <= field_value <= hi:
            raise ValueError(f"Value {field_value} out of range [{lo}, {hi}] for field {self.name!r}")
        return (field_value & ((1 << self.width) - 1)) << self.offset

    def limits(self) -> Tuple[int, int]:
        if self.signed:
            return -(1 << (self.width - 1)), (1 << (self.width - 1)) - 1
        return 0, (1 << self.width) - 1


def parse_encoding(encoding: str) -> List[BitField]:
    fields: List[BitField] = []
    offset = 0
    for tok in encoding.split(","):
        tok = tok.strip()
        if not tok:
            continue
        parts = tok.split(":")
        if len(parts) == 2:
            name, w = parts[0], int(parts[1])
        elif len(parts) == 3:
            name, offset, w = parts[0], int(parts[1]), int(parts[2])
        else:
            raise ValueError(f"Malformed cell-ID field {tok!r} in {encoding!r}")
        if w == 0:
            raise ValueError(f"Zero-width cell-ID field {name!r}")
        fields.append(BitField(name=name.strip(), offset=offset, width=abs(w), signed=w < 0))
        offset += abs(w)
    if offset > 64:
        raise ValueError(f"Encoding {encoding!r} needs {offset} bits (max 64)")
    names = [f.name for f in fields]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate field names in encoding {encoding!r}")
    return fields


class CellIDDecoder:
    """
    Decode packed cell identifiers into named integer fields.

    address() builds the SensorAddress used for hit pairing:
    layer/side are taken as-is, the decoder's `module` field becomes the
    ladder and `sensor` becomes the module.
    """

    def __init__(self, encoding: str = TRACKER_ENCODING):
        self.encoding = encoding
        self._fields: Dict[str, BitField] = {f.name: f for f in parse_encoding(encoding)}

    @property
    def field_names(self) -> List[str]:
        return list(self._fields)

    def decode(self, cell_id: int) -> Dict[str, int]:
        return {name: f.decode(int(cell_id)) for name, f in self._fields.items()}

    def field(self, cell_id: int, name: str) -> int:
        try:
            f = self._fields[name]
        except KeyError:
            raise KeyError(f"Field {name!r} not in encoding {self.encoding!r}") from None
        return f.decode(int(cell_id))

    def encode(self, **values: int) -> int:
        """Pack named field values; unspecified fields are zero."""
        out = 0
        for name, val in values.items():
            try:
                f = self._fields[name]
            except KeyError:
                raise KeyError(f"Field {name!r} not in encoding {self.encoding!r}") from None
            out |= f.encode(int(val))
        return out

    def layer(self, hit: Hit) -> int:
        return self.field(hit.cell_id, "layer")

    def address(self, hit: Hit) -> SensorAddress:
        cid = hit.cell_id
        return SensorAddress(
            layer=self.field(cid, "layer"),
            side=self.field(cid, "side"),
            ladder=self.field(cid, "module"),
            module=self.field(cid, "sensor"),
        )
