import logging

import pytest

from omr_autocorrect.errors import LayoutInvalid, UnknownQuestion
from omr_autocorrect.marks import DetectionResult
from omr_autocorrect.scorer import (
    STATUS_CORRECT,
    STATUS_VOID,
    STATUS_WRONG,
    AnswerKey,
    CorrectionResult,
    EssayScore,
    apply_manual_edit,
    finalize_with_essay_scores,
    normalize_answer,
    pending_essays,
    percentage_of,
    score,
)


@pytest.fixture
def mixed_key():
    # 6 points of multiple choice plus a 4-point essay
    return AnswerKey.from_dict({
        "Q1": {"correctOption": "A", "points": 2},
        "Q2": {"correctOption": "C", "points": 2},
        "Q3": {"correctOption": "D", "points": 2},
        "Q4": {"type": "essay", "points": 4},
    })


def test_single_correct_answer():
    key = AnswerKey.from_dict({"q1": {"correct": "B", "points": 2}})
    result = score({"q1": "B"}, key)
    assert result.score == 2
    assert result.max_score == 2
    assert result.percentage == 100
    fb = result.feedback_for("q1")
    assert fb.is_correct
    assert fb.status == STATUS_CORRECT
    assert fb.points_earned == 2


def test_blank_answer_is_wrong():
    key = AnswerKey.from_dict({"q1": {"correct": "B", "points": 2}})
    result = score({"q1": ""}, key)
    assert result.score == 0
    assert result.percentage == 0
    assert result.feedback_for("q1").status == STATUS_WRONG


def test_multiple_marks_are_void():
    key = AnswerKey.from_dict({"q1": {"correct": "B", "points": 2}})
    fb = score({"q1": "AB"}, key).feedback_for("q1")
    assert fb.status == STATUS_VOID
    assert not fb.is_correct
    assert fb.points_earned == 0


def test_missing_answer_counts_as_blank():
    key = AnswerKey.from_dict({"Q1": "A", "Q2": "B"})
    result = score({"Q1": "A"}, key)
    assert result.feedback_for("Q2").detected == ""
    assert result.feedback_for("Q2").status == STATUS_WRONG
    assert result.percentage == 50


def test_accepts_detection_result():
    detection = DetectionResult(
        answers={"Q1": "A", "Q2": "B"},
        confidence_per_question={"Q1": 1.0, "Q2": 1.0},
        overall_confidence=1.0,
    )
    result = score(detection, AnswerKey.from_dict({"Q1": "A", "Q2": "C"}))
    assert result.score == 1
    assert result.max_score == 2


def test_essay_left_open(mixed_key):
    result = score({"Q1": "A", "Q2": "C", "Q3": "B"}, mixed_key)
    assert result.score == 4
    assert result.max_score == 10
    assert result.percentage == 40
    assert result.has_open_questions
    assert [(q.question_id, q.points) for q in result.open_questions] == [("Q4", 4)]
    assert result.feedback_for("Q4") is None
    assert pending_essays(result) == ["Q4"]


def test_finalize_merges_essay_points(mixed_key):
    partial = score({"Q1": "A", "Q2": "C", "Q3": "B"}, mixed_key)
    final = finalize_with_essay_scores(partial, {"Q4": EssayScore(3, "good argument")})
    assert final.score == 7
    assert final.max_score == 10
    assert final.percentage == 70
    assert final.essay_scores["Q4"].feedback == "good argument"
    assert pending_essays(final) == []
    # partial is untouched
    assert partial.score == 4


def test_finalize_is_idempotent(mixed_key):
    partial = score({"Q1": "A"}, mixed_key)
    once = finalize_with_essay_scores(partial, {"Q4": 3})
    twice = finalize_with_essay_scores(once, {"Q4": 3})
    assert once == twice
    assert twice.score == 5


def test_finalize_overwrites_earlier_essay_score(mixed_key):
    partial = score({}, mixed_key)
    first = finalize_with_essay_scores(partial, {"Q4": 1})
    second = finalize_with_essay_scores(first, {"Q4": {"score": 4, "feedback": "regraded"}})
    assert second.score == 4
    assert second.percentage == 40


def test_finalize_with_nothing_keeps_totals(mixed_key):
    partial = score({"Q1": "A"}, mixed_key)
    final = finalize_with_essay_scores(partial, {})
    assert (final.score, final.max_score, final.percentage) == (2, 10, 20)


def test_essay_score_is_clamped(mixed_key, caplog):
    partial = score({}, mixed_key)
    with caplog.at_level(logging.WARNING):
        high = finalize_with_essay_scores(partial, {"Q4": 9})
    assert high.essay_scores["Q4"].score == 4
    assert "clamped" in caplog.text
    low = finalize_with_essay_scores(partial, {"Q4": -2})
    assert low.essay_scores["Q4"].score == 0


def test_finalize_rejects_unknown_or_objective_questions(mixed_key):
    partial = score({}, mixed_key)
    with pytest.raises(UnknownQuestion):
        finalize_with_essay_scores(partial, {"Q9": 1})
    with pytest.raises(UnknownQuestion) as exc:
        finalize_with_essay_scores(partial, {"Q1": 1})
    assert exc.value.question_id == "Q1"


def test_manual_edit_recomputes_totals(mixed_key):
    partial = score({"Q1": "A", "Q2": "C", "Q3": "B"}, mixed_key)
    edited = apply_manual_edit(partial, "Q3", "d")
    assert edited.feedback_for("Q3").status == STATUS_CORRECT
    assert edited.score == 6
    assert edited.percentage == 60
    assert partial.feedback_for("Q3").status == STATUS_WRONG


def test_manual_edit_normalizes_and_is_idempotent(mixed_key):
    partial = score({"Q1": "A"}, mixed_key)
    once = apply_manual_edit(partial, "Q2", "c a")
    assert once.feedback_for("Q2").detected == "AC"
    assert once.feedback_for("Q2").status == STATUS_VOID
    assert apply_manual_edit(once, "Q2", "CA") == once


def test_manual_edit_keeps_merged_essays(mixed_key):
    final = finalize_with_essay_scores(score({}, mixed_key), {"Q4": 2})
    edited = apply_manual_edit(final, "Q1", "A")
    assert edited.score == 4
    assert edited.essay_scores == final.essay_scores


def test_manual_edit_unknown_question(mixed_key):
    partial = score({}, mixed_key)
    with pytest.raises(UnknownQuestion):
        apply_manual_edit(partial, "Q4", "A")
    with pytest.raises(KeyError):
        apply_manual_edit(partial, "Q42", "A")


def test_percentage_rounds_half_up():
    assert percentage_of(1, 8) == 13       # 12.5
    assert percentage_of(2, 3) == 67
    assert percentage_of(1, 3) == 33
    assert percentage_of(0, 0) == 0


def test_normalize_answer():
    assert normalize_answer(" b a b ") == "AB"
    assert normalize_answer(None) == ""
    assert normalize_answer("") == ""


def test_key_entries_validated():
    with pytest.raises(LayoutInvalid):
        AnswerKey.from_dict({"Q1": {"type": "matching"}})
    with pytest.raises(LayoutInvalid):
        AnswerKey.from_dict({"Q1": {"correctOption": "A", "points": -1}})
    with pytest.raises(LayoutInvalid):
        AnswerKey.from_dict({"Q1": {"correctOption": "A", "points": "many"}})
    with pytest.raises(LayoutInvalid):
        AnswerKey.from_dict(["A", "B"])


def test_key_shorthand_and_totals(mixed_key):
    key = AnswerKey.from_dict({"Q1": "b", "Q2": {"correctOption": "C"}})
    assert key["Q1"].correct_option == "B"
    assert key.total_points == 2
    assert mixed_key.total_points == 10
    assert mixed_key.essay_ids() == ["Q4"]
    assert AnswerKey.from_dict(mixed_key.to_dict()).to_dict() == mixed_key.to_dict()


def test_result_document_round_trip(mixed_key):
    final = finalize_with_essay_scores(score({"Q1": "A", "Q2": "AB"}, mixed_key), {"Q4": 3})
    doc = final.to_dict()
    assert doc["maxScore"] == 10
    assert doc["perQuestionFeedback"][1]["status"] == STATUS_VOID
    assert doc["openQuestions"] == [{"questionId": "Q4", "points": 4.0}]
    assert CorrectionResult.from_dict(doc) == final
