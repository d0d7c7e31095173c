# src/omr_autocorrect/errors.py
from __future__ import annotations

from typing import Iterable, List


class OMRError(Exception):
    """Base class for every failure the scoring core reports."""


class LayoutExtractionFailed(OMRError):
    """The sheet template markup lacks elements the layout needs."""

    def __init__(self, missing: Iterable[str], detail: str = ""):
        self.missing: List[str] = list(missing)
        msg = "layout extraction failed: missing " + ", ".join(self.missing)
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class LayoutInvalid(OMRError):
    """A layout or answer-key document does not match the data model."""


class InsufficientAnchors(OMRError):
    def __init__(self, found: int, required: int = 4):
        self.found = found
        self.required = required
        super().__init__(f"found {found} anchor(s), {required} required for full registration")


class ImageDecodeFailed(OMRError):
    """The submitted image could not be turned into pixels."""


class UnknownQuestion(OMRError, KeyError):
    def __init__(self, question_id: str, detail: str = ""):
        self.question_id = question_id
        self.detail = detail
        super().__init__(question_id)

    def __str__(self) -> str:
        msg = f"unknown question {self.question_id!r}"
        return f"{msg}: {self.detail}" if self.detail else msg
