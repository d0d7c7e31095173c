# src/omr_autocorrect/image_io.py
from __future__ import annotations

from pathlib import Path
from typing import Union

import cv2
import fitz  # PyMuPDF
import numpy as np
from PIL import Image

from .errors import ImageDecodeFailed

_BUFFER_MODES = {"RGBA": 4, "RGB": 3, "L": 1}


# ---------- decoding ----------

def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (PNG/JPEG/...) into a BGR array."""
    if not data:
        raise ImageDecodeFailed("empty image payload")
    try:
        img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ImageDecodeFailed(f"could not decode {len(data)} bytes as an image: {e}") from e
    if img is None:
        raise ImageDecodeFailed(f"could not decode {len(data)} bytes as an image")
    return img


def image_from_buffer(buffer: Union[bytes, bytearray, memoryview], width: int, height: int,
                      mode: str = "RGBA") -> np.ndarray:
    """
    Wrap a raw pixel buffer (as handed over by a capture layer) into a BGR
    array, or a 2-D array for mode "L".
    """
    mode = mode.upper()
    if mode not in _BUFFER_MODES:
        raise ImageDecodeFailed(f"unsupported buffer mode {mode!r}")
    if width <= 0 or height <= 0:
        raise ImageDecodeFailed(f"invalid buffer size {width}x{height}")
    expected = width * height * _BUFFER_MODES[mode]
    if len(buffer) != expected:
        raise ImageDecodeFailed(
            f"buffer holds {len(buffer)} bytes, {mode} {width}x{height} needs {expected}"
        )
    try:
        pil = Image.frombuffer(mode, (width, height), bytes(buffer), "raw", mode, 0, 1)
    except ValueError as e:
        raise ImageDecodeFailed(str(e)) from e
    return pil_to_bgr(pil) if mode != "L" else np.array(pil)


def pil_to_bgr(img: Image.Image) -> np.ndarray:
    return cv2.cvtColor(np.array(img.convert("RGB")), cv2.COLOR_RGB2BGR)


def render_pdf_page(pdf_path: str, page_index: int = 0, dpi: int = 300) -> np.ndarray:
    """Rasterize one page of a scanned PDF into a BGR array."""
    zoom = dpi / 72.0
    mat = fitz.Matrix(zoom, zoom)
    try:
        with fitz.open(pdf_path) as doc:
            if page_index >= len(doc):
                raise ImageDecodeFailed(f"{pdf_path}: page {page_index} out of range ({len(doc)} pages)")
            pix = doc.load_page(page_index).get_pixmap(matrix=mat, alpha=False)
            img = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n)
    except (fitz.FileDataError, RuntimeError) as e:
        raise ImageDecodeFailed(f"{pdf_path}: {e}") from e
    return cv2.cvtColor(img[:, :, :3], cv2.COLOR_RGB2BGR)


def load_image(path: str | Path, dpi: int = 300, page: int = 0) -> np.ndarray:
    """
    Load a raster image, or one page of a PDF at the given DPI.
    Returns a BGR image.
    """
    p = Path(path)
    if not p.is_file():
        raise ImageDecodeFailed(f"no such file: {p}")
    if p.suffix.lower() == ".pdf":
        return render_pdf_page(str(p), page_index=page, dpi=dpi)
    # read bytes + imdecode copes with non-ASCII paths where cv2.imread does not
    try:
        data = p.read_bytes()
    except OSError as e:
        raise ImageDecodeFailed(f"could not read image: {p}: {e}") from e
    try:
        return decode_image(data)
    except ImageDecodeFailed as e:
        raise ImageDecodeFailed(f"could not read image: {p}: {e}") from e


# ---------- pixel helpers ----------

def brightness(image: np.ndarray) -> np.ndarray:
    """Per-pixel mean of the colour channels (alpha ignored) as float32, HxW."""
    if image.ndim == 2:
        return image.astype(np.float32)
    if image.ndim == 3 and image.shape[2] in (3, 4):
        return image[:, :, :3].mean(axis=2, dtype=np.float32)
    if image.ndim == 3 and image.shape[2] == 1:
        return image[:, :, 0].astype(np.float32)
    raise ImageDecodeFailed(f"unsupported image shape {image.shape}")


def encode_png(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", image)
    if not ok:
        raise ImageDecodeFailed("PNG encoding failed")
    return buf.tobytes()
