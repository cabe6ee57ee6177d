"""Registry of filter processors, keyed by their `name`."""
from __future__ import annotations
from typing import Dict, Optional, Type

from bibfilter.config.schemas import DoubletFilterCfg, ThresholdFilterCfg

from .base import ProcessorBase
from .doublets import layer_pairs_from_cfg
from .processors import PROCESSOR_CLASSES

Registry = Dict[str, Type[ProcessorBase]]


def build_registry() -> Registry:
    """Explicit name -> class table; no import-time self-registration."""
    registry: Registry = {}
    for cls in PROCESSOR_CLASSES:
        if cls.name in registry:
            raise ValueError(f"Processor name {cls.name!r} registered twice")
        registry[cls.name] = cls
    return registry


def _kwargs(cfg) -> dict:
    kw = cfg.model_dump(exclude={"type"})
    if isinstance(cfg, DoubletFilterCfg):
        kw["layer_pairs"] = layer_pairs_from_cfg(kw["layer_pairs"])
    elif isinstance(cfg, ThresholdFilterCfg):
        kw["theta_edges"] = tuple(kw["theta_edges"])
    return kw


def make_processor(cfg, registry: Optional[Registry] = None) -> ProcessorBase:
    """
    Instantiate the processor named by cfg.type with the remaining fields
    of the [[filters]] block as keyword arguments.
    """
    registry = registry if registry is not None else build_registry()
    try:
        cls = registry[cfg.type]
    except KeyError:
        raise ValueError(
            f"Unknown filter type {cfg.type!r}; known: {sorted(registry)}"
        ) from None
    return cls(**_kwargs(cfg))
