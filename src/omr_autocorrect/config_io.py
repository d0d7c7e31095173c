# src/omr_autocorrect/config_io.py
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict

import yaml  # PyYAML

from .errors import LayoutInvalid

if TYPE_CHECKING:
    from .layout import LayoutModel
    from .scorer import AnswerKey


def load_config_any(path: str | Path) -> Dict[str, Any]:
    """
    Prefer YAML, but transparently accept JSON.
    - If extension is .yml/.yaml -> use YAML
    - If extension is .json -> use JSON
    - Otherwise: try YAML first, then JSON
    """
    p = Path(path)
    data = p.read_text(encoding="utf-8")
    ext = p.suffix.lower()

    if ext in {".yml", ".yaml"}:
        cfg = yaml.safe_load(data)
    elif ext == ".json":
        cfg = json.loads(data)
    else:
        # No/unknown extension: prefer YAML, then fallback to JSON
        try:
            cfg = yaml.safe_load(data)
        except yaml.YAMLError:
            cfg = json.loads(data)

    if not isinstance(cfg, dict):
        raise ValueError("Config root must be a mapping/object.")

    return cfg


def dump_any(doc: Any, path: str | Path) -> str:
    """Write `doc` as YAML for .yml/.yaml, JSON otherwise. Returns the path written."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    if p.suffix.lower() in {".yml", ".yaml"}:
        p.write_text(yaml.safe_dump(doc, sort_keys=False, allow_unicode=True), encoding="utf-8")
    else:
        p.write_text(json.dumps(doc, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return str(p)


# ------------------------------------------------------------------------------
# Layout / answer key documents
# ------------------------------------------------------------------------------

def load_layout(path: str | Path) -> "LayoutModel":
    from .layout import LayoutModel

    try:
        doc = load_config_any(path)
    except (ValueError, yaml.YAMLError) as e:
        raise LayoutInvalid(f"{path}: {e}") from e
    return LayoutModel.from_dict(doc)


def save_layout(layout: "LayoutModel", path: str | Path) -> str:
    return dump_any(layout.to_dict(), path)


def load_key_txt(path: str | Path) -> Dict[str, Any]:
    """Plain-text key: one letter per question, in order -> Q1..Qn worth 1 point each."""
    raw = Path(path).read_text(encoding="utf-8")
    letters = [c.upper() for c in re.sub(r"(?i)\bQ\d+\b", "", raw) if c.isalpha()]
    return {
        f"Q{i}": {"correctOption": c, "points": 1, "type": "multiple_choice"}
        for i, c in enumerate(letters, start=1)
    }


def load_answer_key(path: str | Path) -> "AnswerKey":
    from .scorer import AnswerKey

    p = Path(path)
    if p.suffix.lower() == ".txt":
        return AnswerKey.from_dict(load_key_txt(p))
    try:
        doc = load_config_any(p)
    except (ValueError, yaml.YAMLError) as e:
        raise LayoutInvalid(f"{path}: {e}") from e
    return AnswerKey.from_dict(doc)


def dump_json(obj: Any, path: str | Path) -> str:
    """Write a result document as indented JSON regardless of extension."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(obj, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return str(p)
