# src/omr_autocorrect/layout.py
"""
Geometric model of a bubble sheet.

All coordinates live in sheet-template units (595 x 842 for an A4 page at
72 dpi). Nothing here knows about captured images: callers map layout
coordinates into pixels through a Registration (see align_core).

JSON field names mirror the documents produced by the sheet generator, e.g.

    {
      "pageDimensions": {"width": 595, "height": 842, "marginLeft": 178, ...},
      "bubbleDimensions": {"contentWidth": 12, ...},
      "fieldBlocks": {"Q1": {"origin": {"x": 222, "y": 138},
                             "direction": "horizontal",
                             "bubbleValues": ["A", "B", "C", "D", "E"],
                             "bubbleCoordinates": [{"value": "A", "x": 222, ...}],
                             "borderWidth": 1}},
      "anchors": [{"class": "anchor-marker grid-top-left-anchor", "x": 171, "y": 131, ...}]
    }
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import LayoutInvalid

CORNERS = ("top-left", "top-right", "bottom-left", "bottom-right")
_CORNER_RE = re.compile(r"(top|bottom)-(left|right)")


def _num(doc: Mapping[str, Any], key: str, where: str) -> float:
    try:
        return float(doc[key])
    except KeyError:
        raise LayoutInvalid(f"{where}: missing '{key}'") from None
    except (TypeError, ValueError):
        raise LayoutInvalid(f"{where}: '{key}' is not a number ({doc[key]!r})") from None


def _opt_num(doc: Mapping[str, Any], key: str, where: str) -> Optional[float]:
    if doc.get(key) is None:
        return None
    return _num(doc, key, where)


def _opt_str(doc: Mapping[str, Any], key: str) -> Optional[str]:
    v = doc.get(key)
    return None if v is None else str(v)


def _section(doc: Mapping[str, Any], key: str, where: str) -> Mapping[str, Any]:
    sub = doc.get(key)
    if not isinstance(sub, Mapping):
        raise LayoutInvalid(f"{where}: '{key}' must be an object")
    return sub


def corner_of(class_name: str) -> Optional[str]:
    """'anchor-marker grid-top-left-anchor' -> 'top-left'."""
    m = _CORNER_RE.search(class_name or "")
    return f"{m.group(1)}-{m.group(2)}" if m else None


# ------------------------------------------------------------------------------
# Page / bubble geometry
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class PageDimensions:
    width: float
    height: float
    margin_left: float = 0.0
    margin_top: float = 0.0
    margin_bottom: float = 0.0

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "PageDimensions":
        w = "pageDimensions"
        return cls(
            width=_num(doc, "width", w),
            height=_num(doc, "height", w),
            margin_left=_num(doc, "marginLeft", w),
            margin_top=_num(doc, "marginTop", w),
            margin_bottom=_num(doc, "marginBottom", w),
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "width": self.width,
            "height": self.height,
            "marginLeft": self.margin_left,
            "marginTop": self.margin_top,
            "marginBottom": self.margin_bottom,
        }


@dataclass(frozen=True)
class BubbleDimensions:
    content_width: float
    content_height: float
    border_width: float
    total_width: float
    total_height: float

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "BubbleDimensions":
        w = "bubbleDimensions"
        return cls(
            content_width=_num(doc, "contentWidth", w),
            content_height=_num(doc, "contentHeight", w),
            border_width=_num(doc, "borderWidth", w),
            total_width=_num(doc, "totalWidth", w),
            total_height=_num(doc, "totalHeight", w),
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "contentWidth": self.content_width,
            "contentHeight": self.content_height,
            "borderWidth": self.border_width,
            "totalWidth": self.total_width,
            "totalHeight": self.total_height,
        }


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class BubbleCoordinate:
    value: str
    x: float
    y: float
    width: float
    height: float
    fill: Optional[str] = None   # template ground truth ("black"/"other"), never used for detection

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any], where: str) -> "BubbleCoordinate":
        if "value" not in doc:
            raise LayoutInvalid(f"{where}: bubble without 'value'")
        return cls(
            value=str(doc["value"]),
            x=_num(doc, "x", where),
            y=_num(doc, "y", where),
            width=_num(doc, "width", where),
            height=_num(doc, "height", where),
            fill=doc.get("fill"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "value": self.value,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }
        if self.fill is not None:
            out["fill"] = self.fill
        return out


# ------------------------------------------------------------------------------
# Field blocks (tagged union: bubbles vs essay area)
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class BubbleBlock:
    origin: Point
    bubble_values: Tuple[str, ...]
    bubble_coordinates: Tuple[BubbleCoordinate, ...]
    border_width: float = 1.0
    direction: str = "horizontal"
    bubbles_gap: Optional[float] = None
    block_type: Optional[str] = None   # optional "type" tag written by some generators

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "origin": self.origin.to_dict(),
            "direction": self.direction,
            "bubbleValues": list(self.bubble_values),
            "bubbleCoordinates": [b.to_dict() for b in self.bubble_coordinates],
            "borderWidth": self.border_width,
        }
        if self.bubbles_gap is not None:
            out["bubblesGap"] = self.bubbles_gap
        if self.block_type is not None:
            out["type"] = self.block_type
        return out


@dataclass(frozen=True)
class EssayBlock:
    origin: Point
    width: float
    height: float
    border_width: float = 1.0
    direction: str = "none"
    block_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "origin": self.origin.to_dict(),
            "direction": self.direction,
            "bubbleValues": [],
            "bubbleCoordinates": [],
            "borderWidth": self.border_width,
            "essayDimensions": {"width": self.width, "height": self.height},
        }
        if self.block_type is not None:
            out["type"] = self.block_type
        return out


FieldBlock = Union[BubbleBlock, EssayBlock]


def field_block_from_dict(doc: Mapping[str, Any], question_id: str) -> FieldBlock:
    where = f"fieldBlocks[{question_id}]"
    if not isinstance(doc, Mapping):
        raise LayoutInvalid(f"{where} must be an object")
    o = _section(doc, "origin", where)
    origin = Point(_num(o, "x", where + ".origin"), _num(o, "y", where + ".origin"))
    border = _opt_num(doc, "borderWidth", where)
    border = 1.0 if border is None else border
    coords = doc.get("bubbleCoordinates") or []
    essay = doc.get("essayDimensions")

    if coords and essay is not None:
        raise LayoutInvalid(f"{where}: has both bubbleCoordinates and essayDimensions")
    if not coords and essay is None:
        raise LayoutInvalid(f"{where}: has neither bubbleCoordinates nor essayDimensions")

    if essay is not None:
        if not isinstance(essay, Mapping):
            raise LayoutInvalid(f"{where}: essayDimensions must be an object")
        return EssayBlock(
            origin=origin,
            width=_num(essay, "width", where + ".essayDimensions"),
            height=_num(essay, "height", where + ".essayDimensions"),
            border_width=border,
            direction=str(doc.get("direction") or "none"),
            block_type=_opt_str(doc, "type"),
        )

    bubbles = tuple(
        BubbleCoordinate.from_dict(b, f"{where}.bubbleCoordinates[{i}]") for i, b in enumerate(coords)
    )
    values = tuple(str(v) for v in (doc.get("bubbleValues") or [b.value for b in bubbles]))
    return BubbleBlock(
        origin=origin,
        bubble_values=values,
        bubble_coordinates=bubbles,
        border_width=border,
        direction=str(doc.get("direction") or "horizontal"),
        bubbles_gap=_opt_num(doc, "bubblesGap", where),
        block_type=_opt_str(doc, "type"),
    )


# ------------------------------------------------------------------------------
# Anchors
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class AnchorSpec:
    class_name: str
    x: float
    y: float
    width: Optional[float] = None
    height: Optional[float] = None

    @property
    def corner(self) -> Optional[str]:
        return corner_of(self.class_name)

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + (self.width or 0.0) / 2.0, self.y + (self.height or 0.0) / 2.0

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any], where: str) -> "AnchorSpec":
        name = doc.get("class", doc.get("type"))
        if not name:
            raise LayoutInvalid(f"{where}: anchor without 'class'")
        return cls(
            class_name=str(name),
            x=_num(doc, "x", where),
            y=_num(doc, "y", where),
            width=_opt_num(doc, "width", where),
            height=_opt_num(doc, "height", where),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"class": self.class_name, "x": self.x, "y": self.y}
        if self.width is not None:
            out["width"] = self.width
        if self.height is not None:
            out["height"] = self.height
        return out


# ------------------------------------------------------------------------------
# LayoutModel
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class LayoutModel:
    page_dimensions: PageDimensions
    bubble_dimensions: BubbleDimensions
    field_blocks: Dict[str, FieldBlock] = field(default_factory=dict)
    anchors: Tuple[AnchorSpec, ...] = ()

    def __post_init__(self):
        seen = set()
        if len(self.anchors) > 4:
            raise LayoutInvalid(f"at most 4 anchors are meaningful, got {len(self.anchors)}")
        for a in self.anchors:
            c = a.corner
            if c is None:
                raise LayoutInvalid(f"anchor class {a.class_name!r} names no corner")
            if c in seen:
                raise LayoutInvalid(f"two anchors on corner {c}")
            seen.add(c)

    def question_ids(self) -> List[str]:
        return list(self.field_blocks.keys())

    def bubble_blocks(self) -> Iterator[Tuple[str, BubbleBlock]]:
        for qid, block in self.field_blocks.items():
            if isinstance(block, BubbleBlock):
                yield qid, block

    def essay_blocks(self) -> Iterator[Tuple[str, EssayBlock]]:
        for qid, block in self.field_blocks.items():
            if isinstance(block, EssayBlock):
                yield qid, block

    def anchor_for(self, corner: str) -> Optional[AnchorSpec]:
        for a in self.anchors:
            if a.corner == corner:
                return a
        return None

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "LayoutModel":
        if not isinstance(doc, Mapping):
            raise LayoutInvalid("layout document must be an object")
        blocks_doc = doc.get("fieldBlocks") or {}
        if not isinstance(blocks_doc, Mapping):
            raise LayoutInvalid("'fieldBlocks' must be an object keyed by question id")
        anchors_doc = doc.get("anchors") or []
        return cls(
            page_dimensions=PageDimensions.from_dict(_section(doc, "pageDimensions", "layout")),
            bubble_dimensions=BubbleDimensions.from_dict(_section(doc, "bubbleDimensions", "layout")),
            field_blocks={str(q): field_block_from_dict(b, str(q)) for q, b in blocks_doc.items()},
            anchors=tuple(AnchorSpec.from_dict(a, f"anchors[{i}]") for i, a in enumerate(anchors_doc)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageDimensions": self.page_dimensions.to_dict(),
            "bubbleDimensions": self.bubble_dimensions.to_dict(),
            "fieldBlocks": {q: b.to_dict() for q, b in self.field_blocks.items()},
            "anchors": [a.to_dict() for a in self.anchors],
        }


def answer_key_from_layout(layout: LayoutModel, points: float = 1.0) -> Dict[str, Dict[str, Any]]:
    """
    Build an answer-key document from template ground truth: the bubble whose
    fill hint is "black" is the correct option. Essay blocks become essay entries.
    """
    key: Dict[str, Dict[str, Any]] = {}
    for qid, block in layout.field_blocks.items():
        if isinstance(block, EssayBlock):
            key[qid] = {"correctOption": None, "points": points, "type": "essay"}
        elif isinstance(block, BubbleBlock):
            black = [b.value for b in block.bubble_coordinates if b.fill == "black"]
            key[qid] = {
                "correctOption": black[0] if len(black) == 1 else None,
                "points": points,
                "type": "multiple_choice",
            }
        else:
            raise TypeError(f"unsupported field block {type(block).__name__}")
    return key
