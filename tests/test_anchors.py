import numpy as np
import pytest

from omr_autocorrect.anchors import AnchorPoint, corner_regions, detect_anchors, scan_region
from omr_autocorrect.defaults import apply_overrides

from conftest import render_sheet


def _expected(scale, offset):
    w, h = 500 * scale, 700 * scale
    return {
        "top-left": (offset, offset),
        "top-right": (offset + w, offset),
        "bottom-left": (offset, offset + h),
        "bottom-right": (offset + w, offset + h),
    }


@pytest.mark.parametrize("scale", [1.0, 1.6])
def test_four_anchors_within_two_pixels(scale):
    img = render_sheet({}, scale=scale)
    found = detect_anchors(img)
    assert [a.corner for a in found] == ["top-left", "top-right", "bottom-left", "bottom-right"]
    for a in found:
        ex, ey = _expected(scale, 50)[a.corner]
        assert abs(a.x - ex) <= 2 and abs(a.y - ey) <= 2, a


def test_missing_corner_is_skipped(caplog):
    img = render_sheet({}, corners=("top-left", "bottom-right"))
    with caplog.at_level("WARNING"):
        found = detect_anchors(img)
    assert [a.corner for a in found] == ["top-left", "bottom-right"]
    assert "2 of 4" in caplog.text


def test_blank_image_has_no_anchors():
    assert detect_anchors(np.full((400, 300, 3), 255, dtype=np.uint8)) == []


def test_larger_markers_use_larger_windows():
    img = render_sheet({}, anchor_size=18)
    found = detect_anchors(img)
    assert len(found) == 4
    assert all(a.size == 20 for a in found)


def test_scan_region_first_match_in_row_major_order():
    dark = np.zeros((40, 40), dtype=bool)
    dark[30:36, 4:10] = True     # lower square
    dark[4:10, 24:30] = True     # upper square, reached first
    cx, cy, size = scan_region(dark, [5], step=1, ratio=0.7)
    assert size == 5
    assert 24 <= cx <= 30 and 4 <= cy <= 10


def test_threshold_override_ignores_gray_marks():
    img = render_sheet({})
    img[img == 20] = 100  # anchors drawn mid-gray
    assert detect_anchors(img) == []
    relaxed = apply_overrides(anchor_dark_threshold=120)
    assert len(detect_anchors(img, relaxed)) == 4


def test_corner_regions_cover_outer_fifth():
    regions = corner_regions(800, 600, 0.2)
    assert regions["top-left"] == (0, 0, 120, 160)
    assert regions["bottom-right"] == (480, 640, 600, 800)


def test_anchor_point_dict_round_trip():
    a = AnchorPoint("top-right", 551.25, 49.5, 11)
    assert AnchorPoint.from_dict(a.to_dict()) == a
