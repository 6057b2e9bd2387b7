"""Duplicate detection for questions extracted from overlapping chunks.

Adjacent chunks share a page, and the model re-extracts the same question
with small differences: re-lettered options, changed casing or spacing,
diacritics rendered differently, or the text cut short at a page boundary.
Questions are compared on a normalized form, first by exact fingerprint,
then by identical text, then by containment of one text in the other.
"""

import logging
import re
import unicodedata
from typing import Iterable, Optional

from backend.questions import Question

log = logging.getLogger(__name__)

FINGERPRINT_SEPARATOR = ":::"
OPTION_SEPARATOR = "|"
MIN_CONTAINMENT_LENGTH = 20

_PUNCTUATION_RE = re.compile(r"[.,;:!?'\"()\[\]{}]")
_WHITESPACE_RE = re.compile(r"\s+")
# "a.", "A)", "1.", "(b)" but not "1.5" or a bare leading letter.
_ENUMERATOR_RE = re.compile(r"^\(?[a-z0-9][.):](?!\d)\s*")

# Letters that do not decompose under NFD.
_FOLD_MAP = str.maketrans({"đ": "d", "Đ": "D", "ø": "o", "Ø": "O", "ł": "l", "Ł": "L"})


def fold_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.translate(_FOLD_MAP))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    text = fold_diacritics(value).lower()
    text = _WHITESPACE_RE.sub(" ", text).strip()
    text = _ENUMERATOR_RE.sub("", text)
    text = _PUNCTUATION_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def fingerprint(question: Question) -> str:
    normalized_question = normalize_text(question.question)
    normalized_options = sorted(normalize_text(option) for option in question.options)
    return normalized_question + FINGERPRINT_SEPARATOR + OPTION_SEPARATOR.join(normalized_options)


def texts_overlap(left: str, right: str) -> bool:
    if len(left) <= MIN_CONTAINMENT_LENGTH or len(right) <= MIN_CONTAINMENT_LENGTH:
        return False
    return left in right or right in left


def is_duplicate(candidate: Question, existing_questions: Iterable[Question]) -> bool:
    return DuplicateIndex(existing_questions).contains(candidate)


class DuplicateIndex:
    """Normalized view of a question list that answers duplicate queries."""

    def __init__(self, questions: Iterable[Question] = ()):
        self._fingerprints: set[str] = set()
        self._texts: set[str] = set()
        self._long_texts: list[str] = []
        for question in questions:
            self.add(question)

    def __len__(self) -> int:
        return len(self._fingerprints)

    def add(self, question: Question) -> None:
        text = normalize_text(question.question)
        self._fingerprints.add(fingerprint(question))
        if text not in self._texts:
            self._texts.add(text)
            if len(text) > MIN_CONTAINMENT_LENGTH:
                self._long_texts.append(text)

    def contains(self, candidate: Question) -> bool:
        if fingerprint(candidate) in self._fingerprints:
            return True
        text = normalize_text(candidate.question)
        if text in self._texts:
            return True
        return any(texts_overlap(text, existing) for existing in self._long_texts)

    def filter_new(self, candidates: Iterable[Question]) -> list[Question]:
        """Keep candidates that duplicate neither the index nor an earlier candidate."""
        fresh: list[Question] = []
        dropped = 0
        for candidate in candidates:
            if self.contains(candidate):
                dropped += 1
                continue
            self.add(candidate)
            fresh.append(candidate)
        if dropped:
            log.debug("Dropped %d duplicate question(s)", dropped)
        return fresh
