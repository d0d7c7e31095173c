import json

import pytest
import yaml

from omr_autocorrect.config_io import (
    dump_any,
    load_answer_key,
    load_config_any,
    load_key_txt,
    load_layout,
    save_layout,
)
from omr_autocorrect.defaults import DEFAULTS, DetectionDefaults, apply_overrides, load_defaults
from omr_autocorrect.errors import LayoutInvalid

from conftest import layout_doc


def test_yaml_and_json_both_load(tmp_path):
    doc = {"detection": {"min_darkness": 0.5}}
    (tmp_path / "a.yaml").write_text(yaml.safe_dump(doc), encoding="utf-8")
    (tmp_path / "a.json").write_text(json.dumps(doc), encoding="utf-8")
    (tmp_path / "a.cfg").write_text(json.dumps(doc), encoding="utf-8")
    for name in ("a.yaml", "a.json", "a.cfg"):
        assert load_config_any(tmp_path / name) == doc


def test_non_mapping_root_rejected(tmp_path):
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config_any(p)


def test_dump_any_picks_format_by_extension(tmp_path):
    doc = {"Q1": {"correctOption": "A"}}
    y = dump_any(doc, tmp_path / "out" / "key.yml")
    j = dump_any(doc, tmp_path / "out" / "key.json")
    assert yaml.safe_load(open(y, encoding="utf-8")) == doc
    assert json.load(open(j, encoding="utf-8")) == doc


def test_layout_file_round_trip(tmp_path, sheet_layout):
    path = save_layout(sheet_layout, tmp_path / "layout.yaml")
    assert load_layout(path) == sheet_layout


def test_invalid_layout_file(tmp_path):
    doc = layout_doc()
    del doc["pageDimensions"]
    p = tmp_path / "broken.json"
    p.write_text(json.dumps(doc), encoding="utf-8")
    with pytest.raises(LayoutInvalid):
        load_layout(p)

    p.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(LayoutInvalid):
        load_layout(p)


def test_txt_key_one_letter_per_question(tmp_path):
    p = tmp_path / "key.txt"
    p.write_text("Q1 a\nQ2 C\nd\n", encoding="utf-8")
    assert load_key_txt(p) == {
        "Q1": {"correctOption": "A", "points": 1, "type": "multiple_choice"},
        "Q2": {"correctOption": "C", "points": 1, "type": "multiple_choice"},
        "Q3": {"correctOption": "D", "points": 1, "type": "multiple_choice"},
    }
    assert load_answer_key(p).total_points == 3


def test_yaml_key_with_shorthand(tmp_path):
    p = tmp_path / "key.yaml"
    p.write_text("Q1: B\nQ2:\n  correctOption: D\n  points: 2\nQ3:\n  type: essay\n  points: 5\n",
                 encoding="utf-8")
    key = load_answer_key(p)
    assert key["Q1"].correct_option == "B"
    assert key["Q2"].points == 2
    assert key.essay_ids() == ["Q3"]
    assert key.total_points == 8


def test_defaults_file_overrides_known_keys(tmp_path):
    p = tmp_path / "detect.yaml"
    p.write_text("detection:\n  min_darkness: 0.55\n  anchor_dark_threshold: 90\n", encoding="utf-8")
    d = load_defaults(p)
    assert d.min_darkness == 0.55
    assert d.anchor_dark_threshold == 90
    assert d.mark_dark_threshold == DEFAULTS.mark_dark_threshold
    # module defaults stay untouched
    assert DEFAULTS.min_darkness == 0.40


def test_defaults_without_section(tmp_path):
    p = tmp_path / "flat.json"
    p.write_text(json.dumps({"max_dimension": 800}), encoding="utf-8")
    assert load_defaults(p).max_dimension == 800


def test_unknown_override_rejected(tmp_path):
    with pytest.raises(ValueError, match="min_darknes"):
        apply_overrides(min_darknes=0.3)
    p = tmp_path / "bad.yaml"
    p.write_text("detection:\n  bubble_radius: 3\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_defaults(p)


def test_none_overrides_are_ignored():
    assert apply_overrides(min_darkness=None) == DEFAULTS


def test_anchor_sizes_largest_first():
    sizes = DEFAULTS.anchor_sizes()
    assert sizes[:2] == [20, 19]
    assert sizes[-1] == 5
    assert sizes == sorted(sizes, reverse=True)
    # max size already on the step grid is not repeated
    assert DetectionDefaults(anchor_max_size=9).anchor_sizes() == [9, 7, 5]
