from __future__ import annotations
from .schemas import Config, StoreManifest
from pathlib import Path
import json

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # py<=310

def _read_toml(path: str | Path) -> dict:
    p = Path(path)
    return tomllib.loads(p.read_text())

def load_config(path: str | Path) -> Config:
    cfg = Config(**_read_toml(path))
    # Relative paths in the config are relative to the config file
    base = Path(path).parent
    for attr in ("input_path", "output_path"):
        p = Path(getattr(cfg.io, attr))
        if not p.is_absolute():
            setattr(cfg.io, attr, str(base / p))
    store = Path(cfg.store.path)
    if not store.is_absolute():
        cfg.store.path = str(base / store)
    return cfg

def load_manifest(path: str | Path) -> StoreManifest:
    return StoreManifest(**_read_toml(path))

def snapshot_config_toml(path: str | Path) -> str:
    """Return the raw TOML text for embedding in HDF5 metadata."""
    return Path(path).read_text()

def json_dumps(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
