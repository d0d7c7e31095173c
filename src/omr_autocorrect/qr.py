# src/omr_autocorrect/qr.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import cv2
import numpy as np

from .preprocess import to_gray

logger = logging.getLogger(__name__)

_SCALES = (1.0, 2.0, 0.5)


@dataclass(frozen=True)
class SheetQR:
    """Payload of the QR code printed on a sheet, e.g. {"examId": ..., "studentId": ..., "version": 1}."""
    raw: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def exam_id(self) -> Optional[str]:
        v = self.data.get("examId")
        return None if v is None else str(v)

    @property
    def student_id(self) -> Optional[str]:
        v = self.data.get("studentId")
        return None if v is None else str(v)

    @property
    def version(self) -> Optional[Any]:
        return self.data.get("version")

    def to_dict(self) -> Dict[str, Any]:
        return {"raw": self.raw, "data": dict(self.data)}


def parse_payload(raw: str) -> SheetQR:
    raw = raw.strip()
    try:
        doc = json.loads(raw)
    except ValueError:
        return SheetQR(raw=raw)
    return SheetQR(raw=raw, data=doc if isinstance(doc, dict) else {})


def read_sheet_qr(image: np.ndarray) -> Optional[SheetQR]:
    """Decode the sheet QR code, trying a few scales. None when no code is readable."""
    detector = cv2.QRCodeDetector()
    gray = to_gray(image)
    for scale in _SCALES:
        candidate = gray if scale == 1.0 else cv2.resize(
            gray, None, fx=scale, fy=scale,
            interpolation=cv2.INTER_CUBIC if scale > 1 else cv2.INTER_AREA,
        )
        try:
            data, _bbox, _ = detector.detectAndDecode(candidate)
        except cv2.error as e:
            logger.debug("QR decode at scale %.1f failed: %s", scale, e)
            continue
        if data and data.strip():
            logger.debug("QR found at scale %.1f: %r", scale, data)
            return parse_payload(data)
    logger.debug("no QR code found")
    return None
