from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path


# -----------------------------
# Config enums and dataclasses
# -----------------------------
class FilterMode(StrEnum):
    AUTO = "auto"            # bilateral if it can be set up, pass-through otherwise
    BILATERAL = "bilateral"  # confidence-gated joint bilateral filter
    NONE = "none"            # rescaled, unfiltered sparse map


@dataclass(frozen=True, slots=True)
class EstimatorConfig:
    # Depth range in scene units (the demo rig works in millimetres)
    min_depth: float = 450.0
    max_depth: float = 800.0
    # f * baseline such that disparity = disparity_coef / depth
    disparity_coef: float = -8013.0
    # I_captured = tau * I_e + I_o, 0 < tau < 1
    tau: float = 0.286
    upsampling: float = 1.0
    scale_mask: float = 0.3
    win_size: int = 61
    thresh_grad: int = 220
    thresh_cost: int = 1
    filter_mode: FilterMode = FilterMode.AUTO


@dataclass(frozen=True, slots=True)
class RectificationConfig:
    # Upsampling used while scattering the inverse table
    scale: float = 6.0
    margin: int = 30


@dataclass(frozen=True, slots=True)
class OutputConfig:
    visuals: bool = False
    colormap: str = "magma"
    depth_name: str = "depth.exr"


# -----------------------------
# Shared config.json loading
# -----------------------------

def _deep_merge(a: dict, b: dict) -> dict:
    """Recursively merge dicts. Values in b win."""
    out = dict(a)
    for k, vb in b.items():
        va = out.get(k)
        if isinstance(va, dict) and isinstance(vb, dict):
            out[k] = _deep_merge(va, vb)
        else:
            out[k] = vb
    return out


def _repo_root() -> Path:
    # .../python/src/birefringent_rgbd/config.py -> repo root
    return Path(__file__).resolve().parents[3]


def _default_config_path() -> Path:
    return _repo_root() / 'config.json'


def _load_config_json(path: Path | None, log: logging.Logger) -> dict:
    if path is None:
        return {}
    if not path.exists():
        log.warning('Config file not found: %s (using built-in defaults)', path)
        return {}
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
        if not isinstance(data, dict):
            raise ValueError('Top-level JSON must be an object')
        return data
    except (OSError, ValueError) as e:
        raise SystemExit(f'Failed to load config.json ({path}): {e}')


def resolve(override, cfg: dict, path: list[str], default):
    """``override`` unless None, else the value at ``path`` in ``cfg``, else ``default``."""
    if override is not None:
        return override
    node = cfg
    for key in path:
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return default if node is None else node


def load_section(path: Path | None, section: str, log: logging.Logger) -> dict:
    """Load config.json and merge its ``common`` block with ``section``.

    When ``path`` is None the repo-level config.json is used if present.
    """
    if path is None:
        candidate = _default_config_path()
        path = candidate if candidate.exists() else None
    cfg_json = _load_config_json(path, log)
    common = cfg_json.get('common', {}) if isinstance(cfg_json, dict) else {}
    sec = cfg_json.get(section, {}) if isinstance(cfg_json, dict) else {}
    if not isinstance(common, dict):
        common = {}
    if not isinstance(sec, dict):
        sec = {}
    return _deep_merge(common, sec)


def estimator_config_from(cfg_all: dict, overrides: dict | None = None) -> EstimatorConfig:
    """Resolve an EstimatorConfig: overrides win over JSON, JSON over defaults."""
    overrides = overrides or {}
    dflt = EstimatorConfig()

    def pick(name: str, cast):
        return cast(resolve(overrides.get(name), cfg_all, ['estimator', name], getattr(dflt, name)))

    return EstimatorConfig(
        min_depth=pick('min_depth', float),
        max_depth=pick('max_depth', float),
        disparity_coef=pick('disparity_coef', float),
        tau=pick('tau', float),
        upsampling=pick('upsampling', float),
        scale_mask=pick('scale_mask', float),
        win_size=pick('win_size', int),
        thresh_grad=pick('thresh_grad', int),
        thresh_cost=pick('thresh_cost', int),
        filter_mode=FilterMode(str(pick('filter_mode', str))),
    )
