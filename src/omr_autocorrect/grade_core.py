# src/omr_autocorrect/grade_core.py
from __future__ import annotations

import csv
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .anchors import detect_anchors
from .defaults import DEFAULTS, DetectionDefaults
from .errors import OMRError
from .image_io import load_image
from .layout import LayoutModel
from .marks import DetectionResult, detect
from .preprocess import preprocess as preprocess_image
from .qr import SheetQR, read_sheet_qr
from .scorer import AnswerKey, CorrectionResult, score

logger = logging.getLogger(__name__)


def _ensure_dir(path: str) -> None:
    if path and not os.path.isdir(path):
        os.makedirs(path, exist_ok=True)


@dataclass(frozen=True)
class GradedSheet:
    detection: DetectionResult
    correction: Optional[CorrectionResult] = None
    qr: Optional[SheetQR] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detection": self.detection.to_dict(),
            "correction": self.correction.to_dict() if self.correction else None,
            "qr": self.qr.to_dict() if self.qr else None,
        }


@dataclass(frozen=True)
class BatchItem:
    source: str
    sheet: Optional[GradedSheet] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _rescale_detection(detection: DetectionResult, sx: float, sy: float) -> DetectionResult:
    """Map anchors and open-response regions from a downscaled work image back to capture pixels."""
    anchors = tuple(replace(a, x=a.x * sx, y=a.y * sy) for a in detection.anchors)
    regions = {
        qid: {
            "x": round(r["x"] * sx, 2),
            "y": round(r["y"] * sy, 2),
            "width": round(r["width"] * sx, 2),
            "height": round(r["height"] * sy, 2),
        }
        for qid, r in detection.open_response_regions.items()
    }
    return replace(detection, anchors=anchors, open_response_regions=regions)


def grade_image(
    image: np.ndarray,
    layout: LayoutModel,
    key: Optional[AnswerKey] = None,
    defaults: DetectionDefaults = DEFAULTS,
    preprocess: bool = False,
    require_anchors: bool = False,
    read_qr: bool = False,
) -> GradedSheet:
    """
    One submission end to end:
      [preprocess] -> anchors -> marks -> [score against key]
    """
    work = preprocess_image(image, defaults.max_dimension) if preprocess else image
    anchors = detect_anchors(work, defaults)
    detection = detect(work, layout, anchors, defaults, require_anchors=require_anchors)
    if work.shape[:2] != image.shape[:2]:
        # anchors and regions are reported in capture pixels
        detection = _rescale_detection(
            detection, image.shape[1] / work.shape[1], image.shape[0] / work.shape[0]
        )
    correction = score(detection, key) if key is not None else None
    qr = read_sheet_qr(image) if read_qr else None
    return GradedSheet(detection=detection, correction=correction, qr=qr)


def grade_file(
    path: str,
    layout: LayoutModel,
    key: Optional[AnswerKey] = None,
    defaults: DetectionDefaults = DEFAULTS,
    preprocess: bool = False,
    require_anchors: bool = False,
    read_qr: bool = False,
    dpi: int = 300,
) -> GradedSheet:
    image = load_image(path, dpi=dpi)
    logger.info("Grading %s (%dx%d)", path, image.shape[1], image.shape[0])
    return grade_image(image, layout, key, defaults, preprocess=preprocess,
                       require_anchors=require_anchors, read_qr=read_qr)


def grade_batch(
    paths: Sequence[str],
    layout: LayoutModel,
    key: Optional[AnswerKey] = None,
    defaults: DetectionDefaults = DEFAULTS,
    workers: int = 4,
    **options: Any,
) -> List[BatchItem]:
    """
    Grade independent submissions on a thread pool. A failing submission is
    reported in its BatchItem and never stops the others. Results follow the
    order of `paths`.
    """
    def _one(path: str) -> BatchItem:
        try:
            return BatchItem(source=path, sheet=grade_file(path, layout, key, defaults, **options))
        except OMRError as e:
            logger.error("%s: %s", path, e)
            return BatchItem(source=path, error=f"{type(e).__name__}: {e}")

    results: List[Optional[BatchItem]] = [None] * len(paths)
    with ThreadPoolExecutor(max_workers=max(1, workers)) as ex:
        futures = {ex.submit(_one, p): i for i, p in enumerate(paths)}
        for done, fut in enumerate(as_completed(futures), start=1):
            results[futures[fut]] = fut.result()
            logger.debug("batch progress %d/%d", done, len(paths))
    return [r for r in results if r is not None]


def write_results_csv(items: Sequence[BatchItem], key: Optional[AnswerKey], out_csv: str) -> str:
    """One row per sheet: source, Q1..Qn, score, max_score, percentage, confidence, error."""
    if key is not None:
        qids = list(key.keys())
    else:
        qids = []
        for it in items:
            if it.sheet is not None:
                qids.extend(q for q in it.sheet.detection.answers if q not in qids)

    header = ["source"] + qids + ["score", "max_score", "percentage", "confidence", "error"]
    _ensure_dir(os.path.dirname(out_csv) or ".")

    with open(out_csv, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for it in items:
            if it.sheet is None:
                writer.writerow([it.source] + [""] * len(qids) + ["", "", "", "", it.error or ""])
                continue
            det, corr = it.sheet.detection, it.sheet.correction
            row = [it.source] + [det.answers.get(q, "") for q in qids]
            if corr is not None:
                row += [f"{corr.score:g}", f"{corr.max_score:g}", str(corr.percentage)]
            else:
                row += ["", "", ""]
            row += [f"{det.overall_confidence:.2f}", ""]
            writer.writerow(row)

    return out_csv
