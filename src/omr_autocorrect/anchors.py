# src/omr_autocorrect/anchors.py
"""
Corner fiducial detection.

Each corner region (outer `corner_fraction` of width and height) is scanned
for a solid dark square. Windows are tried from the largest candidate size
down, on a coarse grid in row-major order from the region origin; the first
window whose dark-pixel fraction exceeds `anchor_dark_ratio` is taken as the
marker. A later, better-centred window is never considered. The reported
point is the centroid of the dark pixels inside the accepted window.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import cv2
import numpy as np

from .defaults import DEFAULTS, DetectionDefaults
from .image_io import brightness
from .layout import CORNERS

logger = logging.getLogger(__name__)

Region = Tuple[int, int, int, int]  # x0, y0, x1, y1 (exclusive)


@dataclass(frozen=True)
class AnchorPoint:
    corner: str
    x: float
    y: float
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {"class": self.corner, "x": round(self.x, 2), "y": round(self.y, 2), "size": self.size}

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "AnchorPoint":
        return cls(
            corner=str(doc.get("class", doc.get("corner"))),
            x=float(doc["x"]),
            y=float(doc["y"]),
            size=int(doc.get("size", 0)),
        )


def corner_regions(height: int, width: int, fraction: float = DEFAULTS.corner_fraction) -> Dict[str, Region]:
    rw = max(1, int(round(width * fraction)))
    rh = max(1, int(round(height * fraction)))
    return {
        "top-left": (0, 0, rw, rh),
        "top-right": (width - rw, 0, width, rh),
        "bottom-left": (0, height - rh, rw, height),
        "bottom-right": (width - rw, height - rh, width, height),
    }


def _window_sums(integral: np.ndarray, ys: np.ndarray, xs: np.ndarray, size: int) -> np.ndarray:
    y0 = ys[:, None]
    x0 = xs[None, :]
    return (integral[y0 + size, x0 + size] - integral[y0, x0 + size]
            - integral[y0 + size, x0] + integral[y0, x0])


def scan_region(dark: np.ndarray, sizes: List[int], step: int,
                ratio: float) -> Optional[Tuple[float, float, int]]:
    """
    First-match square search over a boolean dark mask.
    Returns (cx, cy, size) in region coordinates, or None.
    """
    h, w = dark.shape[:2]
    integral = cv2.integral(dark.astype(np.uint8))
    step = max(1, int(step))

    for size in sizes:
        if size > h or size > w or size <= 0:
            continue
        ys = np.arange(0, h - size + 1, step)
        xs = np.arange(0, w - size + 1, step)
        sums = _window_sums(integral, ys, xs, size)
        hits = np.argwhere(sums > ratio * size * size)
        if hits.size == 0:
            continue
        iy, ix = hits[0]  # argwhere is row-major: first accepted window in scan order
        y0, x0 = int(ys[iy]), int(xs[ix])
        yy, xx = np.nonzero(dark[y0:y0 + size, x0:x0 + size])
        # +0.5: pixel (i, j) covers [j, j+1) x [i, i+1)
        return x0 + float(xx.mean()) + 0.5, y0 + float(yy.mean()) + 0.5, size
    return None


def detect_anchors(image: np.ndarray, defaults: DetectionDefaults = DEFAULTS) -> List[AnchorPoint]:
    """
    Locate up to four corner markers. Returns them in top-left, top-right,
    bottom-left, bottom-right order, skipping corners where nothing was found.
    """
    lum = brightness(image)
    dark = lum < defaults.anchor_dark_threshold
    h, w = dark.shape[:2]
    sizes = defaults.anchor_sizes()

    found: List[AnchorPoint] = []
    for corner, (x0, y0, x1, y1) in corner_regions(h, w, defaults.corner_fraction).items():
        hit = scan_region(dark[y0:y1, x0:x1], sizes, defaults.anchor_grid_step, defaults.anchor_dark_ratio)
        if hit is None:
            logger.debug("anchor %s: none in region (%d,%d)-(%d,%d)", corner, x0, y0, x1, y1)
            continue
        cx, cy, size = hit
        found.append(AnchorPoint(corner=corner, x=x0 + cx, y=y0 + cy, size=size))
        logger.debug("anchor %s: (%.1f, %.1f) window %d", corner, x0 + cx, y0 + cy, size)

    if len(found) < len(CORNERS):
        logger.warning("Found %d of 4 corner anchors; registration will be degraded", len(found))
    return found
