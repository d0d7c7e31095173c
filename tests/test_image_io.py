import cv2
import fitz
import numpy as np
import pytest

from omr_autocorrect.errors import ImageDecodeFailed
from omr_autocorrect.image_io import (
    brightness,
    decode_image,
    encode_png,
    image_from_buffer,
    load_image,
)


def test_png_bytes_decode_to_bgr():
    img = np.zeros((20, 30, 3), dtype=np.uint8)
    img[:, :, 2] = 255  # red
    out = decode_image(encode_png(img))
    assert out.shape == (20, 30, 3)
    assert (out[0, 0] == (0, 0, 255)).all()


def test_garbage_bytes_fail():
    with pytest.raises(ImageDecodeFailed):
        decode_image(b"not an image at all")
    with pytest.raises(ImageDecodeFailed):
        decode_image(b"")


def test_rgba_buffer_becomes_bgr():
    rgba = np.zeros((2, 3, 4), dtype=np.uint8)
    rgba[..., 0] = 200  # R
    rgba[..., 3] = 255
    out = image_from_buffer(rgba.tobytes(), 3, 2, "RGBA")
    assert out.shape == (2, 3, 3)
    assert tuple(out[1, 2]) == (0, 0, 200)


def test_gray_buffer_stays_two_dimensional():
    gray = np.arange(12, dtype=np.uint8).reshape(3, 4)
    out = image_from_buffer(gray.tobytes(), 4, 3, "L")
    assert out.shape == (3, 4)
    assert out[2, 3] == 11


def test_buffer_size_mismatch():
    with pytest.raises(ImageDecodeFailed, match="needs 24"):
        image_from_buffer(b"\x00" * 10, 3, 2, "RGBA")
    with pytest.raises(ImageDecodeFailed):
        image_from_buffer(b"", 0, 0)
    with pytest.raises(ImageDecodeFailed):
        image_from_buffer(b"\x00" * 6, 3, 2, "CMYK")


def test_load_image_from_disk(tmp_path):
    img = np.full((40, 50, 3), 128, dtype=np.uint8)
    p = tmp_path / "scan.png"
    cv2.imwrite(str(p), img)
    assert load_image(p).shape == (40, 50, 3)


def test_load_missing_or_corrupt_file(tmp_path):
    with pytest.raises(ImageDecodeFailed, match="no such file"):
        load_image(tmp_path / "nope.png")
    bad = tmp_path / "bad.jpg"
    bad.write_bytes(b"\x00\x01\x02")
    with pytest.raises(ImageDecodeFailed):
        load_image(bad)


def test_load_empty_or_truncated_file(tmp_path):
    empty = tmp_path / "empty.png"
    empty.write_bytes(b"")
    with pytest.raises(ImageDecodeFailed, match="empty.png"):
        load_image(empty)

    noise = np.random.default_rng(0).integers(0, 256, (40, 50, 3), dtype=np.uint8)
    whole = encode_png(noise)
    cut = tmp_path / "cut.png"
    cut.write_bytes(whole[:len(whole) // 2])
    with pytest.raises(ImageDecodeFailed, match="cut.png"):
        load_image(cut)


def test_pdf_page_is_rendered(tmp_path):
    p = tmp_path / "scan.pdf"
    with fitz.open() as doc:
        page = doc.new_page(width=200, height=100)
        page.draw_rect(fitz.Rect(10, 10, 60, 60), color=(0, 0, 0), fill=(0, 0, 0))
        doc.save(str(p))

    img = load_image(p, dpi=144)
    assert img.shape == (200, 400, 3)
    assert img[60, 60].mean() < 50       # inside the black square (scaled x2)
    assert img[150, 300].mean() > 200    # blank page

    with pytest.raises(ImageDecodeFailed, match="out of range"):
        load_image(p, page=3)


def test_brightness_ignores_alpha():
    rgba = np.zeros((1, 1, 4), dtype=np.uint8)
    rgba[0, 0] = (30, 60, 90, 255)
    assert brightness(rgba)[0, 0] == pytest.approx(60)
    assert brightness(np.full((2, 2), 7, dtype=np.uint8))[1, 1] == 7
