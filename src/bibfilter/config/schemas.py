from __future__ import annotations
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from bibfilter.filters.doublets import DEFAULT_LAYER_PAIRS
from bibfilter.filters.thresholds import DEFAULT_THETA_EDGES


class RunCfg(BaseModel):
    """
    Global run controls.

    TOML:

    [run]
    diagnostics_level = 1   # 0=warnings only, 1=summaries, 2=per-hit detail
    max_events = 1000       # optional cap
    """

    diagnostics_level: int = 1
    max_events: Optional[int] = None

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v

    @field_validator("max_events")
    def _positive_cap(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("max_events must be positive")
        return v


class IOCfg(BaseModel):
    """
    Event input / output.

    TOML:

    [io]
    input_path   = "events.h5"
    input_format = "hdf5"       # "hdf5" | "csv" | "parquet"
    output_path  = "filtered.h5"

    [io.adapter]                # format-specific options, e.g. the encoding
    encoding = "system:5,side:-2,layer:6,module:11,sensor:8"
    """

    input_path: str
    input_format: Literal["hdf5", "csv", "parquet"] = "hdf5"
    output_path: str
    adapter: Dict[str, Any] = Field(default_factory=dict)


# --- Filter blocks ([[filters]] array, discriminated on `type`) ---------------

class LayerPairCfg(BaseModel):
    layer: int
    partner: int
    dtheta_cut: float
    dphi_cut: float


def _default_pairs() -> List[LayerPairCfg]:
    return [LayerPairCfg(layer=p.layer, partner=p.partner, dtheta_cut=p.dtheta_cut, dphi_cut=p.dphi_cut)
            for p in DEFAULT_LAYER_PAIRS]


class DoubletFilterCfg(BaseModel):
    type: Literal["doublet"] = "doublet"
    input: str = "VertexBarrelCollection"
    output: str = "VertexBarrelGoodCollection"
    layer_pairs: List[LayerPairCfg] = Field(default_factory=_default_pairs)


class ThresholdFilterCfg(BaseModel):
    """
    Dynamic-threshold calorimeter selection.

    Without calibration_path the thresholds are learned from each event;
    with it, they come from the map loaded once at start of run.
    """
    type: Literal["threshold"] = "threshold"
    input: str = "EcalBarrelCollectionRec"
    output: str = "EcalBarrelCollectionSel"
    input_relations: Optional[str] = None
    output_relations: Optional[str] = None

    n_layers: int = 50
    n_sigma: float = 3.0
    theta_edges: List[float] = Field(default_factory=lambda: list(DEFAULT_THETA_EDGES))
    flat_threshold: float = 0.0
    time_window: Optional[Tuple[float, float]] = None
    baseline_subtraction: bool = False
    energy_correction: bool = True
    calibration_path: Optional[str] = None

    @field_validator("n_layers")
    def _layers_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("n_layers must be positive")
        return v

    @field_validator("theta_edges")
    def _edges_increasing(cls, v: List[float]) -> List[float]:
        if len(v) < 2 or any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError("theta_edges must hold at least two strictly increasing values")
        return v

    @field_validator("time_window")
    def _window_order(cls, v):
        if v is not None and not v[0] < v[1]:
            raise ValueError("time_window must be [min, max] with min < max")
        return v

    @model_validator(mode="after")
    def _relations_paired(self):
        if (self.input_relations is None) != (self.output_relations is None):
            raise ValueError("input_relations and output_relations must be given together")
        return self


class DedupFilterCfg(BaseModel):
    type: Literal["dedup"] = "dedup"
    input: str = "HitsCollection"
    tracks: str = "Tracks"
    output: str = "SlimmedHits"


class TimeFilterCfg(BaseModel):
    type: Literal["time"] = "time"
    input: str = "VertexBarrelCollection"
    output: str = "VertexBarrelTimedCollection"
    t_min: float = -0.15
    t_max: float = 0.15
    offset: float = 0.2167


class ConeFilterCfg(BaseModel):
    type: Literal["cone"] = "cone"
    particles: str = "MCParticle"
    input: str = "EcalBarrelCollectionRec"
    input_relations: str = "EcalBarrelRelationsSimRec"
    output: str = "EcalBarrelCollectionConed"
    output_relations: str = "EcalBarrelRelationsSimConed"
    cone_width: float = 0.2


FilterCfg = Annotated[
    Union[DoubletFilterCfg, ThresholdFilterCfg, DedupFilterCfg, TimeFilterCfg, ConeFilterCfg],
    Field(discriminator="type"),
]


class Config(BaseModel):
    """
    Top-level TOML configuration.
    """

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg
    filters: List[FilterCfg] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_outputs(self):
        seen = set()
        for f in self.filters:
            outs = [f.output] + [getattr(f, "output_relations", None)]
            for name in outs:
                if name is None:
                    continue
                if name in seen:
                    raise ValueError(f"Output collection {name!r} produced by more than one filter")
                seen.add(name)
        return self
