# src/omr_autocorrect/marks.py
"""
Per-question mark detection.

Every bubble of every BubbleBlock is mapped through the registration and a
square neighbourhood around its centre is sampled. Darkness is the fraction
of sampled pixels whose mean channel value is below `mark_dark_threshold`.

  no bubble >= min_darkness   -> ""            (unanswered)
  exactly one                 -> that label
  several                     -> labels sorted and concatenated ("AC")

A multi-mark answer is returned as is; the scorer turns "AC" into ANULADA.
Essay blocks are not sampled; their image-space rectangles are returned in
`open_response_regions` for manual grading or handwriting recognition.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .align_core import Registration, register
from .anchors import AnchorPoint, detect_anchors
from .defaults import DEFAULTS, DetectionDefaults
from .image_io import brightness
from .layout import BubbleBlock, BubbleCoordinate, EssayBlock, LayoutModel

logger = logging.getLogger(__name__)

REVIEW_THRESHOLD = 0.8


@dataclass(frozen=True)
class DetectionResult:
    answers: Dict[str, str]
    confidence_per_question: Dict[str, float]
    overall_confidence: float
    darkness: Dict[str, Dict[str, float]] = field(default_factory=dict)
    open_response_regions: Dict[str, Dict[str, float]] = field(default_factory=dict)
    anchors: Tuple[AnchorPoint, ...] = ()
    registration_method: str = ""

    def needs_review(self, threshold: float = REVIEW_THRESHOLD) -> bool:
        return self.overall_confidence < threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answers": dict(self.answers),
            "confidencePerQuestion": dict(self.confidence_per_question),
            "overallConfidence": self.overall_confidence,
            "darkness": {q: dict(d) for q, d in self.darkness.items()},
            "openResponseRegions": {q: dict(r) for q, r in self.open_response_regions.items()},
            "anchors": [a.to_dict() for a in self.anchors],
            "registrationMethod": self.registration_method,
        }

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "DetectionResult":
        return cls(
            answers={str(q): str(a or "") for q, a in (doc.get("answers") or {}).items()},
            confidence_per_question={str(q): float(c) for q, c in (doc.get("confidencePerQuestion") or {}).items()},
            overall_confidence=float(doc.get("overallConfidence", 0.0)),
            darkness={str(q): {str(k): float(v) for k, v in d.items()} for q, d in (doc.get("darkness") or {}).items()},
            open_response_regions={
                str(q): {str(k): float(v) for k, v in r.items()}
                for q, r in (doc.get("openResponseRegions") or {}).items()
            },
            anchors=tuple(AnchorPoint.from_dict(a) for a in doc.get("anchors") or []),
            registration_method=str(doc.get("registrationMethod") or ""),
        )


# ------------------------------------------------------------------------------
# Sampling
# ------------------------------------------------------------------------------

def sample_darkness(dark: np.ndarray, registration: Registration, bubble: BubbleCoordinate,
                    sample_radius: float) -> float:
    """Fraction of dark pixels in the square sampled around one bubble."""
    cx, cy = registration.map_point(*bubble.center)
    x0, y0, x1, y1 = registration.map_rect(bubble.x, bubble.y, bubble.width, bubble.height)
    half = max(1.0, min(float(sample_radius), (x1 - x0) / 2.0, (y1 - y0) / 2.0))

    H, W = dark.shape[:2]
    ix0 = max(0, int(round(cx - half)))
    iy0 = max(0, int(round(cy - half)))
    ix1 = min(W, int(round(cx + half)))
    iy1 = min(H, int(round(cy + half)))
    if ix1 <= ix0 or iy1 <= iy0:
        return 0.0
    return float(dark[iy0:iy1, ix0:ix1].mean())


def resolve_marks(scores: Sequence[Tuple[str, float]], min_darkness: float) -> Tuple[str, float]:
    """
    Pick the marked label(s) and the decision margin at the selection boundary:
      blank  -> min_darkness - best
      marked -> weakest selected - strongest unselected
    """
    ranked = sorted((d for _, d in scores), reverse=True)
    chosen = sorted({label for label, d in scores if d >= min_darkness})
    if not chosen:
        return "", min_darkness - (ranked[0] if ranked else 0.0)
    k = len([d for d in ranked if d >= min_darkness])
    runner_up = ranked[k] if k < len(ranked) else 0.0
    return "".join(chosen), ranked[k - 1] - runner_up


def question_confidence(margin: float, anchor_count: int, defaults: DetectionDefaults = DEFAULTS) -> float:
    sharpness = min(1.0, max(0.0, margin / defaults.confident_margin))
    registration_quality = min(1.0, 0.6 + 0.1 * anchor_count)
    return sharpness * registration_quality


def overall_confidence(per_question: Mapping[str, float], answers: Mapping[str, str], anchor_count: int,
                       defaults: DetectionDefaults = DEFAULTS) -> float:
    if not per_question:
        return 0.0
    mean = sum(per_question.values()) / len(per_question)
    unanswered = sum(1 for q in per_question if not answers.get(q))
    overall = mean * (1.0 - defaults.unanswered_penalty * unanswered / len(per_question))
    if anchor_count < 4:
        overall = min(overall, defaults.degraded_confidence_cap)
    return max(0.0, min(1.0, overall))


# ------------------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------------------

def detect(
    image: np.ndarray,
    layout: LayoutModel,
    anchors: Optional[List[AnchorPoint]] = None,
    defaults: DetectionDefaults = DEFAULTS,
    require_anchors: bool = False,
) -> DetectionResult:
    """
    Detect the marked option(s) of every question in `layout`.
    When `anchors` is None they are located in `image` first.
    """
    if anchors is None:
        anchors = detect_anchors(image, defaults)
    reg = register(anchors, layout, image.shape, require_anchors=require_anchors)
    dark = brightness(image) < defaults.mark_dark_threshold

    answers: Dict[str, str] = {}
    confidence: Dict[str, float] = {}
    darkness: Dict[str, Dict[str, float]] = {}
    regions: Dict[str, Dict[str, float]] = {}

    for qid, block in layout.field_blocks.items():
        if isinstance(block, EssayBlock):
            x0, y0, x1, y1 = reg.map_rect(block.origin.x, block.origin.y, block.width, block.height)
            regions[qid] = {
                "x": round(x0, 2), "y": round(y0, 2),
                "width": round(x1 - x0, 2), "height": round(y1 - y0, 2),
            }
            answers[qid] = ""
        elif isinstance(block, BubbleBlock):
            scores = [
                (b.value, sample_darkness(dark, reg, b, defaults.sample_radius))
                for b in block.bubble_coordinates
            ]
            answer, margin = resolve_marks(scores, defaults.min_darkness)
            answers[qid] = answer
            confidence[qid] = round(question_confidence(margin, reg.anchor_count, defaults), 4)
            darkness[qid] = {label: round(d, 4) for label, d in scores}
            logger.debug("%s: %r margin=%.3f darkness=%s", qid, answer, margin, darkness[qid])
        else:
            raise TypeError(f"unsupported field block {type(block).__name__}")

    overall = round(overall_confidence(confidence, answers, reg.anchor_count, defaults), 4)
    logger.info("Detected %d question(s) via %s (%d anchors), confidence %.2f",
                len(confidence), reg.method, reg.anchor_count, overall)
    return DetectionResult(
        answers=answers,
        confidence_per_question=confidence,
        overall_confidence=overall,
        darkness=darkness,
        open_response_regions=regions,
        anchors=tuple(anchors),
        registration_method=reg.method,
    )
