# src/omr_autocorrect/defaults.py
from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict

from .config_io import load_config_any


@dataclass(frozen=True)
class DetectionDefaults:
    # Single source of truth for detection / confidence thresholds

    # anchor scan (corner regions)
    corner_fraction: float = 0.20        # each corner region = outer 20% of width and height
    anchor_dark_threshold: int = 80      # avg RGB below this counts as dark
    anchor_dark_ratio: float = 0.70      # window accepted when dark fraction exceeds this
    anchor_min_size: int = 5
    anchor_max_size: int = 20
    anchor_size_step: int = 2
    anchor_grid_step: int = 2

    # bubble sampling
    mark_dark_threshold: int = 120       # avg RGB below this counts as pencil
    min_darkness: float = 0.40           # a bubble at or above this fraction is marked
    sample_radius: int = 15              # max half-size (px) of the sampled square
    confident_margin: float = 0.50       # decision margin that maps to full confidence

    # confidence shaping
    degraded_confidence_cap: float = 0.80
    unanswered_penalty: float = 0.50

    # preprocess
    max_dimension: int = 1200

    def anchor_sizes(self):
        """Candidate window sizes, largest first. Both min and max size are tried."""
        sizes = list(range(self.anchor_min_size, self.anchor_max_size + 1, self.anchor_size_step))
        if sizes and sizes[-1] != self.anchor_max_size:
            sizes.append(self.anchor_max_size)
        return sizes[::-1]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULTS = DetectionDefaults()


def apply_overrides(base: DetectionDefaults = DEFAULTS, **overrides: Any) -> DetectionDefaults:
    # produce an overridden immutable config without mutating DEFAULTS
    known = {f.name for f in fields(DetectionDefaults)}
    unknown = sorted(k for k in overrides if k not in known)
    if unknown:
        raise ValueError(f"Unknown detection setting(s): {', '.join(unknown)}")
    return replace(base, **{k: v for k, v in overrides.items() if v is not None})


def load_defaults(path: str | Path) -> DetectionDefaults:
    """Read overrides from a YAML/JSON file; missing keys keep their default."""
    cfg = load_config_any(path)
    section = cfg.get("detection", cfg)
    if not isinstance(section, dict):
        raise ValueError("'detection' section must be a mapping.")
    return apply_overrides(DEFAULTS, **section)
