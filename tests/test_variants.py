import pytest

from tandem.schemas import GameVariant
from tandem.variants import (
    HintRule,
    accepted_answers,
    canonical_answer,
    get_rules,
    normalize_answer,
)


def test_normalize_answer():
    assert normalize_answer("  fire truck ") == "FIRETRUCK"
    assert normalize_answer("Rock'n'Roll!") == "ROCKNROLL"
    assert normalize_answer("café") == "CAFÉ"
    assert normalize_answer("") == ""
    assert normalize_answer(None) == ""


def test_accepted_answers_first_is_canonical():
    assert accepted_answers("Sun, sunshine ,SUN") == ["SUN", "SUNSHINE"]
    assert accepted_answers(["Moon", "luna"]) == ["MOON", "LUNA"]
    assert canonical_answer("Sun, sunshine") == "SUN"
    assert accepted_answers(None) == []


def test_check_matches_alternates():
    rules = get_rules(GameVariant.EMOJI_PAIR)
    res = rules.check("sunshine", "sun,sunshine")
    assert res.correct and res.canonical == "SUN" and res.alternate_matched
    res = rules.check(" s-u-n ", "sun,sunshine")
    assert res.correct and not res.alternate_matched
    assert not rules.check("moon", "sun").correct
    assert not rules.check("", "sun").correct


def test_hint_rule_is_pure_function_of_correct_count():
    rule = HintRule(base=1, unlock_threshold=1, bonus=1, maximum=2)
    assert rule.unlocked(0) == 1
    assert rule.unlocked(1) == 2
    assert rule.unlocked(4) == 2
    assert rule.unlocked(3, hard_mode=True) == 0


def test_variant_defaults():
    tandem = get_rules("emoji-pair")
    assert tandem.max_mistakes == 4
    assert tandem.hints_unlocked([False] * 4) == 1
    assert tandem.hints_unlocked([True, False, False, False]) == 2
    assert tandem.time_limit_ms is None

    hard = get_rules(GameVariant.EMOJI_PAIR, hard_mode=True)
    assert hard.time_limit_ms == 180_000
    assert hard.max_hints == 0
    assert hard.hints_unlocked([True] * 4) == 0

    mini = get_rules("mini")
    assert mini.max_mistakes is None
    assert not mini.mistakes_exhausted(1000)
    assert mini.max_hints == 2 and mini.hints_unlocked([False] * 5) == 2

    reel = get_rules(GameVariant.GROUPING)
    assert reel.max_mistakes == 4 and reel.group_size == 4 and reel.max_hints == 1


def test_overrides_and_unknown_variant():
    rules = get_rules("tandem", hard_mode=True, hard_mode_time_limit_ms=120_000)
    assert rules.time_limit_ms == 120_000
    assert rules.timed_out(120_001)
    assert not rules.timed_out(120_000)
    with pytest.raises(ValueError):
        get_rules("chess")
