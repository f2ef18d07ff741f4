"""Scoring policy deciding whether an extracted word looks like a character name."""

import re
from dataclasses import dataclass
from typing import FrozenSet, List, Sequence

from .text import normalize

STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "في", "من", "الى", "على", "عن", "كيف", "متى", "اين", "ماذا", "هذا", "هذه",
        "ذلك", "تلك", "التي", "الذي", "عند", "مع", "حول", "بين", "خلف", "امام",
        "فوق", "تحت", "داخل", "خارج", "قبل", "بعد", "خلال", "اثناء", "هنا", "هناك",
        "حيث", "لماذا",
        "the", "and", "or", "in", "on", "at", "to", "for", "of", "with", "by",
        "from", "into", "through", "during",
    }
)

NON_NAME_WORDS: FrozenSet[str] = STOP_WORDS | frozenset(
    {"اسم", "كذا", "كذلك", "ايضا"}
    | set("سصضطظعغفقكلمنهوي")
)

_ARABIC_LETTER = "ا-ي"
_NON_LETTER = re.compile(f"[^{_ARABIC_LETTER}]")
_DIGITS_ONLY = re.compile(r"^[0-9]+$")
_NAME_SUFFIX = re.compile(r"(?:كو|كي|تو|رو|مي|ري)$|سا|نا|يو|شي")
_SHAPE_4_8 = re.compile(f"^[{_ARABIC_LETTER}]{{4,8}}$")
_SHAPE_4_6 = re.compile(f"^[{_ARABIC_LETTER}]{{4,6}}$")
_NAME_FINAL = re.compile(r"[هةيوا]$")
_VOWELS = re.compile(r"[اوي]")
_TRIPLED = re.compile(f"([{_ARABIC_LETTER}])\\1\\1")
_STOP_SUBSTRING = re.compile(
    r"هذا|هذه|ذلك|تلك|التي|الذي|عند|مع|في|من|الى|على|كيف|متى|اين|ماذا|اسم"
)

CANDIDATE_THRESHOLD = 0.6


@dataclass
class Classification:
    is_candidate: bool
    confidence: float


@dataclass
class Token:
    surface_form: str
    position: int
    confidence: float
    is_candidate: bool


class HeuristicClassifier:
    """Character-name classifier with a strict and a permissive policy.

    The permissive policy accepts every token with full confidence and is what
    the pipeline runs by default. The strict policy applies the additive
    scoring in :meth:`score`, which is usable on its own either way.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict

    @staticmethod
    def is_stop_word(word: str) -> bool:
        return word.lower() in STOP_WORDS

    def score(self, word: str) -> float:
        if (
            _NON_LETTER.search(word)
            or _DIGITS_ONLY.match(word)
            or self.is_stop_word(word)
        ):
            return 0.0
        if len(word) < 4 or len(word) > 10:
            return 0.0
        if word in NON_NAME_WORDS:
            return 0.0

        score = 0.0
        if _NAME_SUFFIX.search(word):
            score += 0.7
        if _SHAPE_4_8.match(word):
            score += 0.5
        if _NAME_FINAL.search(word):
            score += 0.6
        if 4 <= len(word) <= 8:
            score += 0.5
        consonant_ratio = (len(word) - len(_VOWELS.findall(word))) / len(word)
        if 0.4 <= consonant_ratio <= 0.7:
            score += 0.4
        if _TRIPLED.search(word):
            score -= 0.5
        if _STOP_SUBSTRING.search(word):
            score -= 0.8
        if _SHAPE_4_6.match(word) and not self.is_stop_word(word):
            score += 0.3
        return max(0.0, min(score, 1.0))

    def classify(self, normalized: str) -> Classification:
        if not self.strict:
            return Classification(is_candidate=True, confidence=1.0)
        confidence = self.score(normalized)
        return Classification(is_candidate=confidence > CANDIDATE_THRESHOLD, confidence=confidence)

    def tokens(self, words: Sequence[str]) -> List[Token]:
        result: List[Token] = []
        for position, word in enumerate(words):
            verdict = self.classify(normalize(word))
            result.append(
                Token(
                    surface_form=word,
                    position=position,
                    confidence=verdict.confidence,
                    is_candidate=verdict.is_candidate,
                )
            )
        return result
