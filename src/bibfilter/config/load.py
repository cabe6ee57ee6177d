from __future__ import annotations
from .schemas import Config
from pathlib import Path
import json

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # py<=310

def load_config(path: str | Path) -> Config:
    p = Path(path)
    data = tomllib.loads(p.read_text())
    cfg = Config(**data)
    # relative paths are taken from the config file's directory
    base = p.resolve().parent
    cfg.io.input_path = str(_resolve(cfg.io.input_path, base))
    cfg.io.output_path = str(_resolve(cfg.io.output_path, base))
    for f in cfg.filters:
        if getattr(f, "calibration_path", None):
            f.calibration_path = str(_resolve(f.calibration_path, base))
    return cfg

def _resolve(raw: str, base: Path) -> Path:
    p = Path(raw)
    return p if p.is_absolute() else (base / p)

def snapshot_config_toml(path: str | Path) -> str:
    """Return the raw TOML text for embedding in HDF5 metadata."""
    return Path(path).read_text()

def json_dumps(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
