# src/omr_autocorrect/layout_extractor.py
"""
Derive a LayoutModel from the HTML sheet template.

The template renders one `.answer-row` per question inside the answer grid:

    <div class="answer-row"><span class="q-number">Q.3:</span>
      <div class="options-bubbles"><div class="bubble">A</div>...</div></div>
    <div class="answer-row"><span class="q-number">Q.4:</span>
      <span class="essay-indicator">Dissertativa</span>
      <div class="essay-line"></div>...</div>
    <div class="anchor-marker grid-top-left-anchor"></div>

Positions are not read from a browser layout engine; they are recomputed from
the fixed geometry the template generator uses (A4 at 72 dpi).
"""
from __future__ import annotations

import logging
import re
from html.parser import HTMLParser
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import LayoutExtractionFailed
from .layout import (
    AnchorSpec,
    BubbleBlock,
    BubbleCoordinate,
    BubbleDimensions,
    EssayBlock,
    FieldBlock,
    LayoutModel,
    PageDimensions,
    Point,
    corner_of,
)

logger = logging.getLogger(__name__)

# ---------- template geometry (points) ----------
PAGE_WIDTH = 595.0
PAGE_HEIGHT = 842.0
BUBBLE_SIZE = 12.0
BORDER_WIDTH = 1.0
BUBBLE_TOTAL = BUBBLE_SIZE + 2 * BORDER_WIDTH
BUBBLE_GAP = 15.5
ROW_GAP = 5.0
Q_NUMBER_WIDTH = 34.0
Q_NUMBER_MARGIN_RIGHT = 10.0
QR_CODE_WIDTH = 120.0
PAGE_PADDING = 58.0
HEADER_HEIGHT = 80.0
GRID_WIDTH = 174.25
ANCHOR_OFFSET = 7.0
ESSAY_LINE_HEIGHT = 2.5
ESSAY_DEFAULT_LINES = 5
ESSAY_WIDTH = 120.0

_VOID_TAGS = {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr"}
_BLACK_VALUES = ("#000000", "#000", "black", "rgb(0,0,0)")


# ------------------------------------------------------------------------------
# Minimal element tree on top of html.parser
# ------------------------------------------------------------------------------

class _Node:
    __slots__ = ("tag", "attrs", "children", "text_parts", "parent")

    def __init__(self, tag: str, attrs: Dict[str, str], parent: Optional["_Node"] = None):
        self.tag = tag
        self.attrs = attrs
        self.children: List["_Node"] = []
        self.text_parts: List[str] = []
        self.parent = parent

    @property
    def classes(self) -> List[str]:
        return self.attrs.get("class", "").split()

    @property
    def style(self) -> str:
        return self.attrs.get("style", "")

    def text(self) -> str:
        return "".join(self.text_parts) + "".join(c.text() for c in self.children)

    def iter(self) -> Iterator["_Node"]:
        for c in self.children:
            yield c
            yield from c.iter()

    def find_all(self, cls: str) -> List["_Node"]:
        return [n for n in self.iter() if cls in n.classes]

    def find(self, cls: str) -> Optional["_Node"]:
        for n in self.iter():
            if cls in n.classes:
                return n
        return None


class _TreeBuilder(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.root = _Node("#document", {})
        self._stack: List[_Node] = [self.root]
        self.css: List[str] = []

    def handle_starttag(self, tag, attrs):
        node = _Node(tag, {k: (v or "") for k, v in attrs}, parent=self._stack[-1])
        self._stack[-1].children.append(node)
        if tag not in _VOID_TAGS:
            self._stack.append(node)

    def handle_startendtag(self, tag, attrs):
        node = _Node(tag, {k: (v or "") for k, v in attrs}, parent=self._stack[-1])
        self._stack[-1].children.append(node)

    def handle_endtag(self, tag):
        # tolerate unclosed children: pop up to the matching open tag
        for i in range(len(self._stack) - 1, 0, -1):
            if self._stack[i].tag == tag:
                del self._stack[i:]
                return

    def handle_data(self, data):
        top = self._stack[-1]
        if top.tag == "style":
            self.css.append(data)
        top.text_parts.append(data)


def parse_markup(markup: str) -> Tuple[_Node, str]:
    builder = _TreeBuilder()
    builder.feed(markup)
    builder.close()
    return builder.root, "\n".join(builder.css)


# ------------------------------------------------------------------------------
# Style helpers
# ------------------------------------------------------------------------------

def _px(style: str, prop: str) -> Optional[float]:
    m = re.search(rf"(?:^|[;\s]){prop}\s*:\s*(-?\d+(?:\.\d+)?)\s*px", style.lower())
    return float(m.group(1)) if m else None


def _declares_black(declarations: str) -> bool:
    flat = re.sub(r"\s+", "", declarations.lower())
    return any(
        re.search(rf"(?:^|;){prop}:{re.escape(value)}(?:;|!|$)", flat)
        for prop in ("background-color", "background")
        for value in _BLACK_VALUES
    )


def is_black_fill(node: _Node, css: str) -> bool:
    """Black background from the inline style or from a `<style>` rule on one of the classes."""
    if _declares_black(node.style):
        return True
    for cls in node.classes:
        for m in re.finditer(rf"\.{re.escape(cls)}(?![\w-])[^{{]*\{{([^}}]*)\}}", css):
            if _declares_black(m.group(1)):
                return True
    return False


def anchor_offset(style: str, corner: str, grid_height: float) -> Tuple[float, float]:
    """Anchor position relative to the grid box; fixed corner offsets when the style has none."""
    left, top = _px(style, "left"), _px(style, "top")
    right, bottom = _px(style, "right"), _px(style, "bottom")
    x = left if left is not None else (GRID_WIDTH - right if right is not None else None)
    y = top if top is not None else (grid_height - bottom if bottom is not None else None)
    if x is None and y is None:
        x = -ANCHOR_OFFSET if corner.endswith("left") else GRID_WIDTH + ANCHOR_OFFSET
        y = -ANCHOR_OFFSET if corner.startswith("top") else grid_height + ANCHOR_OFFSET
    return x or 0.0, y or 0.0


def question_id(row: _Node, position: int) -> str:
    tag = row.find("q-number")
    digits = re.search(r"\d+", tag.text()) if tag is not None else None
    return f"Q{int(digits.group(0))}" if digits else f"Q{position}"


def _r2(v: float) -> float:
    return round(v, 2)


# ------------------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------------------

def extract_layout(markup: str) -> LayoutModel:
    root, css = parse_markup(markup or "")
    rows = root.find_all("answer-row")
    anchor_nodes = [n for n in root.iter() if "anchor-" in n.attrs.get("class", "")]

    missing = []
    if not rows:
        missing.append("answer-row")
    if not any(corner_of(n.attrs.get("class", "")) for n in anchor_nodes):
        missing.append("anchor")
    if missing:
        raise LayoutExtractionFailed(missing)

    grid_height = len(rows) * (BUBBLE_TOTAL + ROW_GAP) - ROW_GAP
    margin_left = PAGE_PADDING + QR_CODE_WIDTH
    margin_top = HEADER_HEIGHT + PAGE_PADDING
    margin_bottom = PAGE_HEIGHT - (margin_top + grid_height + BUBBLE_TOTAL)
    row_x = margin_left + Q_NUMBER_WIDTH + Q_NUMBER_MARGIN_RIGHT

    blocks: Dict[str, FieldBlock] = {}
    y = margin_top
    for position, row in enumerate(rows, start=1):
        qid = question_id(row, position)
        if qid in blocks:
            raise LayoutExtractionFailed(["unique question ids"], f"{qid} appears twice")

        if row.find("essay-indicator") is not None:
            lines = len(row.find_all("essay-line")) or ESSAY_DEFAULT_LINES
            height = lines * ESSAY_LINE_HEIGHT
            blocks[qid] = EssayBlock(
                origin=Point(_r2(row_x), _r2(y)),
                width=ESSAY_WIDTH,
                height=_r2(height),
                border_width=BORDER_WIDTH,
                block_type="essay",
            )
            y += height + ROW_GAP
            continue

        bubbles = row.find_all("bubble")
        if not bubbles:
            logger.debug("answer row %d (%s) has neither bubbles nor an essay area; skipped", position, qid)
            continue

        coords = []
        x = row_x
        for i, b in enumerate(bubbles):
            label = b.text().strip() or chr(ord("A") + i)
            coords.append(BubbleCoordinate(
                value=label, x=_r2(x), y=_r2(y),
                width=BUBBLE_TOTAL, height=BUBBLE_TOTAL,
                fill="black" if is_black_fill(b, css) else "other",
            ))
            x += BUBBLE_TOTAL + BUBBLE_GAP
        blocks[qid] = BubbleBlock(
            origin=Point(_r2(row_x), _r2(y)),
            bubble_values=tuple(c.value for c in coords),
            bubble_coordinates=tuple(coords),
            border_width=BORDER_WIDTH,
            direction="horizontal",
            bubbles_gap=BUBBLE_GAP,
        )
        y += BUBBLE_TOTAL + ROW_GAP

    anchors: List[AnchorSpec] = []
    seen = set()
    for node in anchor_nodes:
        cls = node.attrs.get("class", "")
        corner = corner_of(cls)
        if corner is None:
            continue
        if corner in seen:
            logger.warning("second %s anchor ignored (class %r)", corner, cls)
            continue
        seen.add(corner)
        dx, dy = anchor_offset(node.style, corner, grid_height)
        anchors.append(AnchorSpec(
            class_name=cls,
            x=_r2(dx + margin_left),
            y=_r2(dy + margin_top),
            width=BUBBLE_TOTAL,
            height=BUBBLE_TOTAL,
        ))

    layout = LayoutModel(
        page_dimensions=PageDimensions(
            width=PAGE_WIDTH,
            height=PAGE_HEIGHT,
            margin_left=_r2(margin_left),
            margin_top=_r2(margin_top),
            margin_bottom=_r2(margin_bottom),
        ),
        bubble_dimensions=BubbleDimensions(
            content_width=BUBBLE_SIZE,
            content_height=BUBBLE_SIZE,
            border_width=BORDER_WIDTH,
            total_width=BUBBLE_TOTAL,
            total_height=BUBBLE_TOTAL,
        ),
        field_blocks=blocks,
        anchors=tuple(anchors),
    )
    logger.info("Extracted layout: %d question(s), %d anchor(s)", len(blocks), len(anchors))
    return layout
