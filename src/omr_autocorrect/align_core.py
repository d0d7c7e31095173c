# src/omr_autocorrect/align_core.py
"""
Registration: mapping layout coordinates onto captured-image pixels.

  4 anchors   -> projective transform (homography) through the four corners
  2-3 anchors -> per-axis scale + offset, least squares (degraded)
  0-1 anchors -> page rectangle stretched over the whole image (degraded)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

import cv2 as cv
import numpy as np

from .anchors import AnchorPoint
from .errors import InsufficientAnchors
from .layout import LayoutModel

logger = logging.getLogger(__name__)

HOMOGRAPHY = "homography"
SCALE_OFFSET = "scale_offset"
PAGE_ESTIMATE = "page_estimate"


@dataclass(frozen=True, eq=False)
class Registration:
    matrix: np.ndarray        # 3x3, layout -> image
    method: str
    anchor_count: int

    @property
    def degraded(self) -> bool:
        return self.method != HOMOGRAPHY

    def map_point(self, x: float, y: float) -> Tuple[float, float]:
        v = self.matrix @ np.array([x, y, 1.0])
        return float(v[0] / v[2]), float(v[1] / v[2])

    def map_rect(self, x: float, y: float, w: float, h: float) -> Tuple[float, float, float, float]:
        """Axis-aligned bounding box (x0, y0, x1, y1) of the mapped rectangle."""
        pts = [self.map_point(px, py) for px, py in ((x, y), (x + w, y), (x, y + h), (x + w, y + h))]
        xs = [p[0] for p in pts]
        ys = [p[1] for p in pts]
        return min(xs), min(ys), max(xs), max(ys)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "anchorCount": self.anchor_count,
            "matrix": [[round(float(v), 6) for v in row] for row in self.matrix],
        }


# ------------------------------------------------------------------------------
# Fitting
# ------------------------------------------------------------------------------

def _scale_offset_matrix(sx: float, ox: float, sy: float, oy: float) -> np.ndarray:
    return np.array([[sx, 0.0, ox], [0.0, sy, oy], [0.0, 0.0, 1.0]], dtype=np.float64)


def page_estimate(layout: LayoutModel, image_shape: Sequence[int]) -> np.ndarray:
    h, w = image_shape[:2]
    pd = layout.page_dimensions
    return _scale_offset_matrix(w / pd.width, 0.0, h / pd.height, 0.0)


def _fit_axis(src: np.ndarray, dst: np.ndarray) -> Tuple[float, float]:
    a = np.stack([src, np.ones_like(src)], axis=1)
    (scale, offset), *_ = np.linalg.lstsq(a, dst, rcond=None)
    return float(scale), float(offset)


def fit_scale_offset(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Least-squares x' = sx*x + ox, y' = sy*y + oy. When all points share one
    coordinate on an axis (e.g. two top anchors), that axis reuses the scale
    of the other one.
    """
    spread = np.ptp(src, axis=0)
    x_ok, y_ok = spread[0] > 1e-6, spread[1] > 1e-6
    if not (x_ok or y_ok):
        raise ValueError("anchors are coincident")
    if x_ok:
        sx, ox = _fit_axis(src[:, 0], dst[:, 0])
    if y_ok:
        sy, oy = _fit_axis(src[:, 1], dst[:, 1])
    if not x_ok:
        sx = sy
        ox = float(np.mean(dst[:, 0] - sx * src[:, 0]))
    if not y_ok:
        sy = sx
        oy = float(np.mean(dst[:, 1] - sy * src[:, 1]))
    return _scale_offset_matrix(sx, ox, sy, oy)


def matched_pairs(anchors: List[AnchorPoint], layout: LayoutModel) -> Tuple[np.ndarray, np.ndarray]:
    """Detected anchors paired with the layout anchor on the same corner."""
    src, dst = [], []
    for a in anchors:
        spec = layout.anchor_for(a.corner)
        if spec is None:
            logger.debug("anchor %s detected but the layout defines none there", a.corner)
            continue
        src.append(spec.center)
        dst.append((a.x, a.y))
    return np.array(src, dtype=np.float64).reshape(-1, 2), np.array(dst, dtype=np.float64).reshape(-1, 2)


def register(anchors: List[AnchorPoint], layout: LayoutModel, image_shape: Sequence[int],
             require_anchors: bool = False) -> Registration:
    src, dst = matched_pairs(anchors, layout)
    n = len(src)

    if n < 4:
        if require_anchors:
            raise InsufficientAnchors(n)
        logger.warning("%s", InsufficientAnchors(n))

    if n == 4:
        H, _ = cv.findHomography(src.reshape(-1, 1, 2), dst.reshape(-1, 1, 2), 0)
        if H is not None:
            return Registration(matrix=H, method=HOMOGRAPHY, anchor_count=n)
        logger.warning("homography through 4 anchors is degenerate; using scale/offset")

    if n >= 2:
        try:
            return Registration(matrix=fit_scale_offset(src, dst), method=SCALE_OFFSET, anchor_count=n)
        except ValueError as e:
            logger.warning("scale/offset fit failed (%s); using page estimate", e)

    return Registration(matrix=page_estimate(layout, image_shape), method=PAGE_ESTIMATE, anchor_count=n)


# ------------------------------------------------------------------------------
# Visual QA
# ------------------------------------------------------------------------------

def warp_to_layout(image: np.ndarray, registration: Registration, layout: LayoutModel,
                   scale: float = 2.0) -> np.ndarray:
    """Resample the capture onto the idealized page canvas (page units x scale)."""
    pd = layout.page_dimensions
    size = (int(round(pd.width * scale)), int(round(pd.height * scale)))
    canvas_to_image = registration.matrix @ np.diag([1.0 / scale, 1.0 / scale, 1.0])
    border = 255 if image.ndim == 2 else (255,) * image.shape[2]
    return cv.warpPerspective(
        image, canvas_to_image, size,
        flags=cv.INTER_LINEAR | cv.WARP_INVERSE_MAP,
        borderMode=cv.BORDER_CONSTANT, borderValue=border,
    )
