from __future__ import annotations

from typing import Dict, Iterable, Optional

import cv2
import numpy as np
import pytest

from omr_autocorrect.layout import LayoutModel

PAGE_W, PAGE_H = 500, 700
OPTIONS = "ABCDE"
QUESTIONS = 4
ALL_CORNERS = ("top-left", "top-right", "bottom-left", "bottom-right")
CORNER_POINTS = {
    "top-left": (0, 0),
    "top-right": (PAGE_W, 0),
    "bottom-left": (0, PAGE_H),
    "bottom-right": (PAGE_W, PAGE_H),
}


def bubble_box(q: int, j: int):
    """Layout rectangle (x, y, w, h) of option j of question q (1-based q)."""
    return 150 + 40 * j, 200 + 40 * (q - 1), 20, 20


def layout_doc() -> Dict:
    blocks = {}
    for q in range(1, QUESTIONS + 1):
        coords = []
        for j, label in enumerate(OPTIONS):
            x, y, w, h = bubble_box(q, j)
            coords.append({"value": label, "x": x, "y": y, "width": w, "height": h})
        x0, y0, _, _ = bubble_box(q, 0)
        blocks[f"Q{q}"] = {
            "origin": {"x": x0, "y": y0},
            "direction": "horizontal",
            "bubbleValues": list(OPTIONS),
            "bubbleCoordinates": coords,
            "borderWidth": 1,
        }
    blocks["Q5"] = {
        "origin": {"x": 150, "y": 400},
        "direction": "none",
        "bubbleValues": [],
        "bubbleCoordinates": [],
        "borderWidth": 1,
        "essayDimensions": {"width": 200, "height": 60},
    }
    return {
        "pageDimensions": {"width": PAGE_W, "height": PAGE_H, "marginLeft": 150, "marginTop": 200, "marginBottom": 240},
        "bubbleDimensions": {"contentWidth": 18, "contentHeight": 18, "borderWidth": 1, "totalWidth": 20, "totalHeight": 20},
        "fieldBlocks": blocks,
        "anchors": [
            {"class": f"anchor-marker grid-{corner}-anchor", "x": x, "y": y}
            for corner, (x, y) in CORNER_POINTS.items()
        ],
    }


def render_sheet(
    marks: Optional[Dict[str, str]] = None,
    corners: Iterable[str] = ALL_CORNERS,
    scale: float = 1.0,
    offset: int = 50,
    anchor_size: int = 10,
) -> np.ndarray:
    """
    White BGR capture of the test layout: image = offset + scale * layout.
    Anchors are solid anchor_size squares, bubbles light-gray outlines,
    marked bubbles dark filled squares.
    """
    marks = marks or {}
    h = int(round(PAGE_H * scale)) + 2 * offset
    w = int(round(PAGE_W * scale)) + 2 * offset
    img = np.full((h, w, 3), 255, dtype=np.uint8)

    def px(v: float) -> int:
        return int(round(offset + v * scale))

    half = anchor_size // 2
    for corner in corners:
        cx, cy = (px(v) for v in CORNER_POINTS[corner])
        img[cy - half:cy - half + anchor_size, cx - half:cx - half + anchor_size] = 20

    for q in range(1, QUESTIONS + 1):
        for j, label in enumerate(OPTIONS):
            x, y, bw, bh = bubble_box(q, j)
            cv2.rectangle(img, (px(x), px(y)), (px(x + bw) - 1, px(y + bh) - 1), (150, 150, 150), 1)
            if label in marks.get(f"Q{q}", ""):
                cv2.rectangle(img, (px(x + 2), px(y + 2)), (px(x + bw - 2) - 1, px(y + bh - 2) - 1), (30, 30, 30), -1)
    return img


@pytest.fixture
def sheet_layout() -> LayoutModel:
    return LayoutModel.from_dict(layout_doc())


@pytest.fixture
def answers() -> Dict[str, str]:
    return {"Q1": "B", "Q2": "AC", "Q3": "", "Q4": "E"}


@pytest.fixture
def sheet_image(answers) -> np.ndarray:
    return render_sheet(answers)


SHEET_HTML = """<html><head><style>
.answer-row .bubble { width: 11px; height: 11px; border: 1px solid #000; }
.correct-answer { background-color: #000; }
.legend { background-color: #0000ff; }
</style></head><body>
<div class="answer-grid-section">
  <div class="anchor-marker grid-top-left-anchor"></div>
  <div class="anchor-marker grid-top-right-anchor"></div>
  <div class="anchor-marker grid-bottom-left-anchor" style="left: 2px; bottom: 3px"></div>
  <div class="anchor-marker grid-bottom-right-anchor"></div>
  <div class="answer-row"><span class="q-number">Q.1:</span>
    <div class="options-bubbles"><div class="bubble">A</div><div class="bubble correct-answer">B</div><div class="bubble legend">C</div></div></div>
  <div class="answer-row"><span class="q-number">Q.2:</span>
    <div class="options-bubbles"><div class="bubble" style="background-color: black"></div><div class="bubble"></div></div></div>
  <div class="answer-row"><span class="q-number">Q.3:</span><span class="essay-indicator">Dissertativa</span>
    <div class="essay-lines"><div class="essay-line"></div><div class="essay-line"></div><div class="essay-line"></div></div></div>
</div>
</body></html>
"""


@pytest.fixture
def sheet_html() -> str:
    return SHEET_HTML
