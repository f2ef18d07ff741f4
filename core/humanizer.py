"""Human-like reply shaping: deliberate mistakes, corrections and typing delays."""

import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

TYPO_CHARACTERS = ("ا", "و", "ي", "ه", "ة", "ء")


class MistakeKind(str, Enum):
    NONE = "none"
    TYPO = "typo"
    PARTIAL = "partial"
    REORDER = "reorder"
    DELAYED = "delayed"


@dataclass
class MistakeRates:
    mistake: float = 0.3
    typo: float = 0.7
    correct: float = 0.5
    partial_keep: float = 0.7


@dataclass
class TimingProfile:
    base_ms: int = 648
    per_token_ms: int = 648
    variation_ms: int = 405
    delayed_multiplier: int = 3
    correction_min_ms: int = 2000
    correction_max_ms: int = 3000


@dataclass
class ResponsePlan:
    text: str
    token_count: int
    is_mistake: bool = False
    mistake_kind: MistakeKind = MistakeKind.NONE
    original_tokens: List[str] = field(default_factory=list)
    tokens: List[str] = field(default_factory=list)
    correct: bool = False

    @property
    def correction_text(self) -> str:
        return " ".join(self.original_tokens)


def compute_delay(
    token_count: int,
    mistake_kind: MistakeKind = MistakeKind.NONE,
    *,
    rng: Optional[random.Random] = None,
    timing: Optional[TimingProfile] = None,
) -> int:
    """Milliseconds to wait before replying with ``token_count`` names."""

    rng = rng or random.Random()
    timing = timing or TimingProfile()
    jitter = rng.randrange(timing.variation_ms) if timing.variation_ms > 0 else 0
    delay = timing.base_ms + (max(token_count, 1) - 1) * timing.per_token_ms + jitter
    if mistake_kind is MistakeKind.DELAYED:
        delay *= timing.delayed_multiplier
    return delay


def correction_delay(rng: random.Random, timing: TimingProfile) -> float:
    return rng.uniform(timing.correction_min_ms, timing.correction_max_ms)


class MistakeEngine:
    """Perturbs an otherwise correct reply so it reads like a person typed it."""

    def __init__(
        self,
        *,
        rng: Optional[random.Random] = None,
        rates: Optional[MistakeRates] = None,
    ) -> None:
        self.rng = rng or random.Random()
        self.rates = rates or MistakeRates()

    def _typo(self, tokens: List[str]) -> List[str]:
        eligible = [index for index, token in enumerate(tokens) if len(token) > 2]
        if not eligible:
            return tokens
        index = self.rng.choice(eligible)
        token = tokens[index]
        position = self.rng.randrange(len(token))
        replacement = self.rng.choice(TYPO_CHARACTERS)
        tokens[index] = token[:position] + replacement + token[position + 1 :]
        return tokens

    def _partial(self, tokens: List[str]) -> List[str]:
        keep = max(1, math.floor(len(tokens) * self.rates.partial_keep))
        shuffled = list(tokens)
        self.rng.shuffle(shuffled)
        return shuffled[:keep]

    def _reorder(self, tokens: List[str]) -> List[str]:
        shuffled = list(tokens)
        self.rng.shuffle(shuffled)
        return shuffled

    def plan(self, tokens: Sequence[str]) -> ResponsePlan:
        original = list(tokens)
        if self.rng.random() >= self.rates.mistake:
            return ResponsePlan(
                text=" ".join(original),
                token_count=len(original),
                original_tokens=original,
                tokens=list(original),
            )

        mutated = list(original)
        if self.rng.random() < self.rates.typo:
            kind = MistakeKind.TYPO
            mutated = self._typo(mutated)
        else:
            kind = self.rng.choice(
                (MistakeKind.PARTIAL, MistakeKind.REORDER, MistakeKind.DELAYED)
            )
            if kind is MistakeKind.PARTIAL:
                mutated = self._partial(mutated)
            elif kind is MistakeKind.REORDER:
                mutated = self._reorder(mutated)

        return ResponsePlan(
            text=" ".join(mutated),
            token_count=len(mutated),
            is_mistake=True,
            mistake_kind=kind,
            original_tokens=original,
            tokens=mutated,
            correct=self.rng.random() < self.rates.correct,
        )
