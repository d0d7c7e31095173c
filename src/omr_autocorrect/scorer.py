# src/omr_autocorrect/scorer.py
"""
Answer-key comparison and score bookkeeping.

Status rule per multiple-choice question:
  - empty detected answer         -> ERRADA
  - more than one letter detected -> ANULADA (ambiguous mark, scored as zero)
  - equal to the key option       -> CORRETA
  - anything else                 -> ERRADA

Essay questions never go through automatic scoring. They count towards
max_score from the start and are listed as open questions until a later
finalize_with_essay_scores() merge supplies their points.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import LayoutInvalid, UnknownQuestion

logger = logging.getLogger(__name__)

STATUS_CORRECT = "CORRETA"
STATUS_WRONG = "ERRADA"
STATUS_VOID = "ANULADA"

MULTIPLE_CHOICE = "multiple_choice"
ESSAY = "essay"
QUESTION_TYPES = (MULTIPLE_CHOICE, ESSAY)


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def percentage_of(score: float, max_score: float) -> int:
    if max_score <= 0:
        return 0
    return round_half_up(score / max_score * 100.0)


def normalize_answer(raw: Optional[str]) -> str:
    """'ca a' -> 'AC': upper-case letters, deduplicated, sorted."""
    return "".join(sorted({c.upper() for c in (raw or "") if c.isalpha()}))


def question_status(detected: Optional[str], correct: Optional[str]) -> str:
    detected = detected or ""
    if not detected:
        return STATUS_WRONG
    if len(detected) > 1:
        return STATUS_VOID
    if correct is not None and detected == correct:
        return STATUS_CORRECT
    return STATUS_WRONG


# ------------------------------------------------------------------------------
# Answer key
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class AnswerKeyEntry:
    correct_option: Optional[str]
    points: float = 1.0
    type: str = MULTIPLE_CHOICE

    @property
    def is_essay(self) -> bool:
        return self.type == ESSAY

    @classmethod
    def from_dict(cls, doc: Union[str, Mapping[str, Any], None], question_id: str) -> "AnswerKeyEntry":
        # shorthand: {"Q1": "B"} is a one-point multiple choice question
        if doc is None or isinstance(doc, str):
            return cls(correct_option=(doc or "").strip().upper() or None)
        if not isinstance(doc, Mapping):
            raise LayoutInvalid(f"answer key entry {question_id!r} must be a letter or an object")

        qtype = str(doc.get("type") or MULTIPLE_CHOICE)
        if qtype not in QUESTION_TYPES:
            raise LayoutInvalid(f"answer key entry {question_id!r}: unknown type {qtype!r}")
        try:
            points = float(doc.get("points", 1))
        except (TypeError, ValueError):
            raise LayoutInvalid(f"answer key entry {question_id!r}: points must be a number") from None
        if points < 0:
            raise LayoutInvalid(f"answer key entry {question_id!r}: negative points")

        opt = doc.get("correctOption", doc.get("correct"))
        opt = str(opt).strip().upper() if opt not in (None, "") else None
        if qtype == ESSAY:
            opt = None
        return cls(correct_option=opt, points=points, type=qtype)

    def to_dict(self) -> Dict[str, Any]:
        return {"correctOption": self.correct_option, "points": self.points, "type": self.type}


class AnswerKey(Mapping):
    """Read-only mapping question id -> AnswerKeyEntry, in document order."""

    def __init__(self, entries: Optional[Mapping[str, AnswerKeyEntry]] = None):
        self._entries: Dict[str, AnswerKeyEntry] = dict(entries or {})

    def __getitem__(self, question_id: str) -> AnswerKeyEntry:
        return self._entries[question_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"AnswerKey({self._entries!r})"

    @property
    def total_points(self) -> float:
        return sum(e.points for e in self._entries.values())

    def essay_ids(self) -> List[str]:
        return [q for q, e in self._entries.items() if e.is_essay]

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "AnswerKey":
        if not isinstance(doc, Mapping):
            raise LayoutInvalid("answer key must be an object keyed by question id")
        return cls({str(q): AnswerKeyEntry.from_dict(v, str(q)) for q, v in doc.items()})

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {q: e.to_dict() for q, e in self._entries.items()}


# ------------------------------------------------------------------------------
# Result types
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class QuestionFeedback:
    question_id: str
    detected: str
    correct: Optional[str]
    is_correct: bool
    points_earned: float
    points_max: float
    status: str

    @classmethod
    def evaluate(cls, question_id: str, detected: Optional[str], entry: AnswerKeyEntry) -> "QuestionFeedback":
        detected = detected or ""
        status = question_status(detected, entry.correct_option)
        ok = status == STATUS_CORRECT
        return cls(
            question_id=question_id,
            detected=detected,
            correct=entry.correct_option,
            is_correct=ok,
            points_earned=entry.points if ok else 0.0,
            points_max=entry.points,
            status=status,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questionId": self.question_id,
            "detected": self.detected,
            "correct": self.correct,
            "isCorrect": self.is_correct,
            "pointsEarned": self.points_earned,
            "pointsMax": self.points_max,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "QuestionFeedback":
        return cls(
            question_id=str(doc["questionId"]),
            detected=str(doc.get("detected") or ""),
            correct=doc.get("correct"),
            is_correct=bool(doc["isCorrect"]),
            points_earned=float(doc["pointsEarned"]),
            points_max=float(doc["pointsMax"]),
            status=str(doc["status"]),
        )


@dataclass(frozen=True)
class OpenQuestion:
    question_id: str
    points: float

    def to_dict(self) -> Dict[str, Any]:
        return {"questionId": self.question_id, "points": self.points}


@dataclass(frozen=True)
class EssayScore:
    score: float
    feedback: str = ""

    @classmethod
    def coerce(cls, value: Union["EssayScore", float, int, Mapping[str, Any]]) -> "EssayScore":
        if isinstance(value, EssayScore):
            return value
        if isinstance(value, Mapping):
            return cls(score=float(value.get("score", 0)), feedback=str(value.get("feedback") or ""))
        return cls(score=float(value))

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "feedback": self.feedback}


@dataclass(frozen=True)
class CorrectionResult:
    score: float
    max_score: float
    percentage: int
    per_question_feedback: Tuple[QuestionFeedback, ...]
    has_open_questions: bool = False
    open_questions: Tuple[OpenQuestion, ...] = ()
    essay_scores: Dict[str, EssayScore] = field(default_factory=dict)
    auto_score: float = 0.0   # multiple-choice points only; score = auto_score + merged essays

    def feedback_for(self, question_id: str) -> Optional[QuestionFeedback]:
        for fb in self.per_question_feedback:
            if fb.question_id == question_id:
                return fb
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "maxScore": self.max_score,
            "percentage": self.percentage,
            "perQuestionFeedback": [f.to_dict() for f in self.per_question_feedback],
            "hasOpenQuestions": self.has_open_questions,
            "openQuestions": [q.to_dict() for q in self.open_questions],
            "essayScores": {q: s.to_dict() for q, s in self.essay_scores.items()},
            "autoScore": self.auto_score,
        }

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "CorrectionResult":
        feedback = tuple(QuestionFeedback.from_dict(f) for f in doc.get("perQuestionFeedback") or [])
        auto = doc.get("autoScore")
        return cls(
            score=float(doc["score"]),
            max_score=float(doc["maxScore"]),
            percentage=int(doc["percentage"]),
            per_question_feedback=feedback,
            has_open_questions=bool(doc.get("hasOpenQuestions", False)),
            open_questions=tuple(
                OpenQuestion(str(q["questionId"]), float(q.get("points", 0)))
                for q in doc.get("openQuestions") or []
            ),
            essay_scores={str(q): EssayScore.coerce(s) for q, s in (doc.get("essayScores") or {}).items()},
            auto_score=float(auto) if auto is not None else sum(f.points_earned for f in feedback),
        )


# ------------------------------------------------------------------------------
# Operations
# ------------------------------------------------------------------------------

def _answers_of(detected: Any) -> Mapping[str, str]:
    # DetectionResult or a plain {questionId: letters} mapping
    answers = getattr(detected, "answers", detected)
    if not isinstance(answers, Mapping):
        raise TypeError(f"expected a DetectionResult or a mapping, got {type(detected).__name__}")
    return answers


def _totals(feedback: Tuple[QuestionFeedback, ...], essay_scores: Mapping[str, EssayScore],
            max_score: float) -> Tuple[float, float, int]:
    auto = sum(f.points_earned for f in feedback)
    total = auto + sum(s.score for s in essay_scores.values())
    return auto, total, percentage_of(total, max_score)


def score(detected: Any, key: AnswerKey) -> CorrectionResult:
    """Compare detected answers with the key; essays are left open for a later merge."""
    answers = _answers_of(detected)
    feedback: List[QuestionFeedback] = []
    open_qs: List[OpenQuestion] = []

    for qid, entry in key.items():
        if entry.is_essay:
            open_qs.append(OpenQuestion(qid, entry.points))
            continue
        feedback.append(QuestionFeedback.evaluate(qid, answers.get(qid, ""), entry))

    ignored = [q for q in answers if q not in key]
    if ignored:
        logger.debug("Answers without a key entry ignored: %s", ", ".join(ignored))

    fb = tuple(feedback)
    max_score = key.total_points
    auto, total, pct = _totals(fb, {}, max_score)
    result = CorrectionResult(
        score=total,
        max_score=max_score,
        percentage=pct,
        per_question_feedback=fb,
        has_open_questions=bool(open_qs),
        open_questions=tuple(open_qs),
        essay_scores={},
        auto_score=auto,
    )
    logger.info("Scored %d question(s): %s/%s (%d%%), %d open",
                len(fb), result.score, result.max_score, result.percentage, len(open_qs))
    return result


def finalize_with_essay_scores(
    partial: CorrectionResult,
    essay_scores: Mapping[str, Union[EssayScore, float, Mapping[str, Any]]],
) -> CorrectionResult:
    """
    Merge essay scores into a partial result. Earlier merges are kept and
    overwritten per question; essays never scored contribute 0.
    """
    points = {q.question_id: q.points for q in partial.open_questions}
    merged: Dict[str, EssayScore] = dict(partial.essay_scores)

    for qid, raw in essay_scores.items():
        if qid not in points:
            raise UnknownQuestion(qid, "not an essay question of this result")
        s = EssayScore.coerce(raw)
        clamped = min(max(s.score, 0.0), points[qid])
        if clamped != s.score:
            logger.warning("Essay score for %s clamped from %s to %s (max %s)", qid, s.score, clamped, points[qid])
            s = replace(s, score=clamped)
        merged[qid] = s

    auto, total, pct = _totals(partial.per_question_feedback, merged, partial.max_score)
    skipped = [q for q in points if q not in merged]
    if skipped:
        logger.info("Essay question(s) without a score count as 0: %s", ", ".join(skipped))
    return replace(partial, score=total, percentage=pct, essay_scores=merged, auto_score=auto)


def apply_manual_edit(result: CorrectionResult, question_id: str, new_answer: Optional[str]) -> CorrectionResult:
    """Re-derive one question from a human-edited answer string and recompute totals."""
    fb = result.feedback_for(question_id)
    if fb is None:
        raise UnknownQuestion(question_id, "no multiple-choice feedback to edit")

    entry = AnswerKeyEntry(correct_option=fb.correct, points=fb.points_max)
    edited = QuestionFeedback.evaluate(question_id, normalize_answer(new_answer), entry)
    feedback = tuple(edited if f.question_id == question_id else f for f in result.per_question_feedback)

    auto, total, pct = _totals(feedback, result.essay_scores, result.max_score)
    logger.debug("Manual edit %s: %r -> %r (%s)", question_id, fb.detected, edited.detected, edited.status)
    return replace(result, per_question_feedback=feedback, score=total, percentage=pct, auto_score=auto)


def pending_essays(result: CorrectionResult) -> List[str]:
    return [q.question_id for q in result.open_questions if q.question_id not in result.essay_scores]
