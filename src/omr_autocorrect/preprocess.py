# src/omr_autocorrect/preprocess.py
from __future__ import annotations

import logging
from typing import Sequence, Union

import cv2
import numpy as np

from .defaults import DEFAULTS

logger = logging.getLogger(__name__)


def downscale(image: np.ndarray, max_dimension: int) -> np.ndarray:
    """Shrink so the longer side is at most max_dimension. Never upscales."""
    h, w = image.shape[:2]
    longest = max(h, w)
    if max_dimension <= 0 or longest <= max_dimension:
        return image
    scale = max_dimension / float(longest)
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(image, size, interpolation=cv2.INTER_AREA)


def to_gray(image: np.ndarray) -> np.ndarray:
    """BGR/BGRA -> 8-bit luma (0.299 R + 0.587 G + 0.114 B)."""
    if image.ndim == 2:
        return image.astype(np.uint8, copy=False)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    if image.shape[2] == 1:
        return image[:, :, 0].astype(np.uint8, copy=False)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def otsu_threshold(histogram: Union[Sequence[float], np.ndarray]) -> int:
    """
    Otsu's threshold over a gray-level histogram.

    Returns t such that levels <= t form the dark class. When several t reach
    the same maximal inter-class variance (e.g. two isolated peaks), the middle
    of that plateau is returned. An empty or single-level histogram yields 127.
    """
    hist = np.asarray(histogram, dtype=np.float64).ravel()
    total = hist.sum()
    if hist.size < 2 or total <= 0:
        return 127

    p = hist / total
    levels = np.arange(hist.size, dtype=np.float64)
    omega = np.cumsum(p)                 # weight of the dark class
    mu = np.cumsum(p * levels)           # first moment of the dark class
    mu_t = mu[-1]

    valid = (omega > 0) & (omega < 1)
    valid &= ~np.isclose(omega, 1.0, rtol=0, atol=1e-12)
    if not valid.any():
        return 127

    between = np.zeros_like(p)
    between[valid] = (mu_t * omega[valid] - mu[valid]) ** 2 / (omega[valid] * (1.0 - omega[valid]))

    best = between[valid].max()
    ties = np.flatnonzero(valid & np.isclose(between, best, rtol=1e-9, atol=0))
    return int((ties[0] + ties[-1]) // 2)


def binarize(gray: np.ndarray, threshold: int) -> np.ndarray:
    return np.where(gray > threshold, 255, 0).astype(np.uint8)


def preprocess(image: np.ndarray, max_dimension: int = DEFAULTS.max_dimension) -> np.ndarray:
    """
    Normalize a capture: size cap, grayscale, Otsu binarization, 3x3 median.
    Returns a uint8 HxW image containing only 0 and 255.
    """
    small = downscale(image, max_dimension)
    gray = to_gray(small)
    hist = np.bincount(gray.ravel(), minlength=256)
    t = otsu_threshold(hist)
    out = cv2.medianBlur(binarize(gray, t), 3)
    logger.debug("preprocess: %s -> %s, otsu=%d", image.shape[:2], out.shape, t)
    return out
