import random

import pytest

from core.humanizer import (
    MistakeEngine,
    MistakeKind,
    MistakeRates,
    TimingProfile,
    TYPO_CHARACTERS,
    compute_delay,
    correction_delay,
)

TOKENS = ["غوكو", "ضد", "فيجيتا"]


def test_mistake_and_typo_rates_converge():
    engine = MistakeEngine(rng=random.Random(1234))
    trials = 10_000
    plans = [engine.plan(TOKENS) for _ in range(trials)]
    mistakes = [plan for plan in plans if plan.is_mistake]
    typos = [plan for plan in mistakes if plan.mistake_kind is MistakeKind.TYPO]

    assert len(mistakes) / trials == pytest.approx(0.30, abs=0.02)
    assert len(typos) / len(mistakes) == pytest.approx(0.70, abs=0.03)


def test_correction_rate_among_mistakes():
    engine = MistakeEngine(rng=random.Random(99))
    mistakes = [plan for plan in (engine.plan(TOKENS) for _ in range(10_000)) if plan.is_mistake]
    corrected = sum(1 for plan in mistakes if plan.correct)
    assert corrected / len(mistakes) == pytest.approx(0.5, abs=0.04)
    assert not any(plan.correct for plan in (engine.plan(TOKENS) for _ in range(200)) if not plan.is_mistake)


def test_clean_plan_echoes_tokens():
    engine = MistakeEngine(rng=random.Random(0), rates=MistakeRates(mistake=0.0))
    plan = engine.plan(TOKENS)
    assert not plan.is_mistake
    assert plan.mistake_kind is MistakeKind.NONE
    assert plan.text == "غوكو ضد فيجيتا"
    assert plan.token_count == 3


def test_typo_keeps_count_and_short_tokens():
    engine = MistakeEngine(rng=random.Random(5), rates=MistakeRates(mistake=1.0, typo=1.0))
    for _ in range(500):
        plan = engine.plan(TOKENS)
        assert plan.mistake_kind is MistakeKind.TYPO
        assert len(plan.tokens) == len(TOKENS)
        assert plan.tokens[1] == "ضد"
        changed = [
            (before, after) for before, after in zip(TOKENS, plan.tokens) if before != after
        ]
        assert len(changed) <= 1
        for before, after in changed:
            assert len(after) == len(before)
            diffs = [i for i, (a, b) in enumerate(zip(before, after)) if a != b]
            assert len(diffs) == 1
            assert after[diffs[0]] in TYPO_CHARACTERS
        assert plan.original_tokens == TOKENS


def test_typo_with_only_short_tokens_changes_nothing():
    engine = MistakeEngine(rng=random.Random(3), rates=MistakeRates(mistake=1.0, typo=1.0))
    plan = engine.plan(["ضد", "vs"])
    assert plan.tokens == ["ضد", "vs"]
    assert plan.is_mistake


def test_other_mistakes():
    engine = MistakeEngine(rng=random.Random(11), rates=MistakeRates(mistake=1.0, typo=0.0))
    tokens = ["a1", "b2", "c3", "d4", "e5", "f6", "g7", "h8", "i9", "j10"]
    seen = set()
    for _ in range(300):
        plan = engine.plan(tokens)
        seen.add(plan.mistake_kind)
        assert plan.original_tokens == tokens
        assert plan.correction_text == " ".join(tokens)
        if plan.mistake_kind is MistakeKind.PARTIAL:
            assert len(plan.tokens) == 7
            assert set(plan.tokens) <= set(tokens)
        elif plan.mistake_kind is MistakeKind.REORDER:
            assert sorted(plan.tokens) == sorted(tokens)
        else:
            assert plan.mistake_kind is MistakeKind.DELAYED
            assert plan.tokens == tokens
    assert seen == {MistakeKind.PARTIAL, MistakeKind.REORDER, MistakeKind.DELAYED}


def test_partial_keeps_at_least_one():
    engine = MistakeEngine(rng=random.Random(2), rates=MistakeRates(mistake=1.0, typo=0.0))
    for _ in range(100):
        plan = engine.plan(["غوكو"])
        assert len(plan.tokens) == 1


def test_delay_strictly_increases_with_token_count():
    delays = [compute_delay(n, rng=random.Random(42)) for n in range(1, 8)]
    assert all(earlier < later for earlier, later in zip(delays, delays[1:]))


def test_delayed_mistake_triples_delay():
    for n in (1, 2, 5):
        plain = compute_delay(n, MistakeKind.NONE, rng=random.Random(n))
        delayed = compute_delay(n, MistakeKind.DELAYED, rng=random.Random(n))
        assert delayed == 3 * plain
        assert compute_delay(n, MistakeKind.TYPO, rng=random.Random(n)) == plain


def test_delay_stays_within_profile():
    timing = TimingProfile(base_ms=700, per_token_ms=700, variation_ms=450)
    rng = random.Random(8)
    for _ in range(200):
        delay = compute_delay(3, rng=rng, timing=timing)
        assert 700 + 2 * 700 <= delay < 700 + 2 * 700 + 450


def test_correction_delay_window():
    rng = random.Random(4)
    timing = TimingProfile()
    for _ in range(200):
        assert 2000 <= correction_delay(rng, timing) <= 3000
