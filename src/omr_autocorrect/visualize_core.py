# src/omr_autocorrect/visualize_core.py
from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple, Union

import cv2 as cv
import numpy as np

from .align_core import Registration, register
from .anchors import detect_anchors
from .config_io import load_layout
from .defaults import DEFAULTS, DetectionDefaults
from .image_io import load_image
from .layout import BubbleBlock, EssayBlock, LayoutModel
from .marks import DetectionResult
from .scorer import STATUS_VOID, CorrectionResult

Color = Tuple[int, int, int]

# BGR
GREEN: Color = (0, 200, 0)
RED: Color = (0, 0, 255)
ORANGE: Color = (0, 165, 255)
BLUE: Color = (255, 120, 0)
GRAY: Color = (160, 160, 160)
MAGENTA: Color = (200, 0, 200)


def _as_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv.cvtColor(image, cv.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv.cvtColor(image, cv.COLOR_BGRA2BGR)
    return image.copy()


def _rect(reg: Registration, x: float, y: float, w: float, h: float) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    x0, y0, x1, y1 = reg.map_rect(x, y, w, h)
    return (int(round(x0)), int(round(y0))), (int(round(x1)), int(round(y1)))


def _label(img: np.ndarray, text: str, org: Tuple[int, int], color: Color = (0, 255, 255)) -> None:
    cv.putText(img, text, org, cv.FONT_HERSHEY_SIMPLEX, 0.45, (0, 0, 0), 3, cv.LINE_AA)
    cv.putText(img, text, org, cv.FONT_HERSHEY_SIMPLEX, 0.45, color, 1, cv.LINE_AA)


def _draw_anchors(img: np.ndarray, detection_anchors, reg: Registration, layout: LayoutModel) -> None:
    # expected positions as hollow circles, detected ones as filled red dots
    for spec in layout.anchors:
        cx, cy = reg.map_point(*spec.center)
        cv.circle(img, (int(round(cx)), int(round(cy))), 8, GRAY, 1, cv.LINE_AA)
    for a in detection_anchors:
        cv.circle(img, (int(round(a.x)), int(round(a.y))), 4, RED, -1, cv.LINE_AA)


def _draw_essays(img: np.ndarray, layout: LayoutModel, reg: Registration) -> None:
    for qid, block in layout.essay_blocks():
        p0, p1 = _rect(reg, block.origin.x, block.origin.y, block.width, block.height)
        cv.rectangle(img, p0, p1, MAGENTA, 2)
        _label(img, qid, (p0[0], max(12, p0[1] - 4)), MAGENTA)


def draw_feedback(
    image: np.ndarray,
    layout: LayoutModel,
    detection: DetectionResult,
    correction: Optional[CorrectionResult] = None,
) -> np.ndarray:
    """
    Annotated copy of `image`:
      green  = key option
      red    = marked but wrong
      orange = marks of an ANULADA question
      blue   = marked (no key available)
    """
    out = _as_bgr(image)
    reg = register(list(detection.anchors), layout, image.shape)

    for qid, block in layout.field_blocks.items():
        if isinstance(block, EssayBlock):
            continue
        if not isinstance(block, BubbleBlock):
            raise TypeError(f"unsupported field block {type(block).__name__}")

        marked = set(detection.answers.get(qid, ""))
        fb = correction.feedback_for(qid) if correction is not None else None
        for b in block.bubble_coordinates:
            if fb is not None and fb.status == STATUS_VOID and b.value in marked:
                color, thick = ORANGE, 2
            elif fb is not None and b.value == fb.correct:
                color, thick = GREEN, 2
            elif b.value in marked:
                color, thick = (RED if fb is not None else BLUE), 2
            else:
                color, thick = GRAY, 1
            p0, p1 = _rect(reg, b.x, b.y, b.width, b.height)
            cv.rectangle(out, p0, p1, color, thick)

        if block.bubble_coordinates:
            first = block.bubble_coordinates[0]
            p0, _ = _rect(reg, first.x, first.y, first.width, first.height)
            text = f"{qid}:{detection.answers.get(qid, '') or '-'}"
            _label(out, text, (max(0, p0[0] - 70), p0[1] + 10))

    _draw_essays(out, layout, reg)
    _draw_anchors(out, detection.anchors, reg, layout)

    if correction is not None:
        _label(out, f"{correction.score:g}/{correction.max_score:g} ({correction.percentage}%)", (10, 20))
    return out


def overlay_layout(
    input_path: str,
    layout_or_path: Union[str, Path, LayoutModel],
    out_image: str = "layout_overlay.png",
    dpi: int = 300,
    defaults: DetectionDefaults = DEFAULTS,
) -> str:
    """
    Render `input_path` (image or first PDF page), register it against the
    layout and draw every bubble, essay area and anchor. Writes `out_image` (PNG).
    """
    layout = load_layout(layout_or_path) if isinstance(layout_or_path, (str, Path)) else layout_or_path

    img_bgr = load_image(input_path, dpi=dpi)
    anchors = detect_anchors(img_bgr, defaults)
    reg = register(anchors, layout, img_bgr.shape)

    for qid, block in layout.bubble_blocks():
        for b in block.bubble_coordinates:
            p0, p1 = _rect(reg, b.x, b.y, b.width, b.height)
            cv.rectangle(img_bgr, p0, p1, GREEN, 1)
        if block.bubble_coordinates:
            first = block.bubble_coordinates[0]
            p0, _ = _rect(reg, first.x, first.y, first.width, first.height)
            _label(img_bgr, qid, (max(0, p0[0] - 40), p0[1] + 10))
    _draw_essays(img_bgr, layout, reg)
    _draw_anchors(img_bgr, anchors, reg, layout)
    _label(img_bgr, f"{reg.method} ({reg.anchor_count} anchors)", (10, 20))

    out_path = Path(out_image).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    cv.imwrite(str(out_path), img_bgr)
    return str(out_path)
