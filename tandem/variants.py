"""
Per-variant rules.

The session state machine is shared by every game; what differs lives here:
mistake budget, hint unlocking, answer checking, terminal detection and the
share-text formatter.
"""
import dataclasses
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from . import share
from .schemas import GameVariant


class ScoringMode(str, Enum):
    TIME = "time"
    TIME_AND_MISTAKES = "time+mistakes"


def normalize_answer(text: Optional[str]) -> str:
    """Case-insensitive form of an answer: trimmed, letters only."""
    if not text:
        return ""
    text = unicodedata.normalize("NFC", text.strip())
    return "".join(ch for ch in text if ch.isalpha()).upper()


def accepted_answers(solution: Any) -> List[str]:
    """Normalized alternates for a slot; the first one is canonical.

    ``solution`` is either a single string, a comma-separated list of
    alternates, or a list of strings.
    """
    if solution is None:
        return []
    if isinstance(solution, str):
        parts = solution.split(",")
    else:
        parts = [str(p) for p in solution]
    out: List[str] = []
    for p in parts:
        n = normalize_answer(p)
        if n and n not in out:
            out.append(n)
    return out


def canonical_answer(solution: Any) -> str:
    answers = accepted_answers(solution)
    return answers[0] if answers else ""


@dataclass(frozen=True)
class CheckResult:
    correct: bool
    canonical: str
    matched: Optional[str] = None
    alternate_matched: bool = False


@dataclass(frozen=True)
class HintRule:
    """``base`` hints up front, ``bonus`` more once ``unlock_threshold``
    slots are correct, never more than ``maximum``."""

    base: int = 1
    unlock_threshold: Optional[int] = None
    bonus: int = 0
    maximum: int = 1

    def unlocked(self, correct_count: int, hard_mode: bool = False) -> int:
        if hard_mode:
            return 0
        total = self.base
        if self.unlock_threshold is not None and correct_count >= self.unlock_threshold:
            total += self.bonus
        return max(0, min(self.maximum, total))


@dataclass(frozen=True)
class VariantRules:
    variant: GameVariant
    max_mistakes: Optional[int]
    hint_rule: HintRule
    scoring_mode: ScoringMode = ScoringMode.TIME
    hard_mode: bool = False
    hard_mode_time_limit_ms: Optional[int] = None
    group_size: int = 4
    share_formatter: Callable[..., str] = share.plain_share_text

    @property
    def max_hints(self) -> int:
        return 0 if self.hard_mode else self.hint_rule.maximum

    @property
    def time_limit_ms(self) -> Optional[int]:
        return self.hard_mode_time_limit_ms if self.hard_mode else None

    def hints_unlocked(self, correct_mask: List[bool]) -> int:
        return self.hint_rule.unlocked(sum(1 for c in correct_mask if c), self.hard_mode)

    def check(self, value: str, solution: Any) -> CheckResult:
        answers = accepted_answers(solution)
        canonical = answers[0] if answers else ""
        guess = normalize_answer(value)
        if guess and guess in answers:
            return CheckResult(True, canonical, guess, guess != canonical)
        return CheckResult(False, canonical)

    def mistakes_exhausted(self, mistakes: int) -> bool:
        return self.max_mistakes is not None and mistakes >= self.max_mistakes

    def timed_out(self, elapsed_ms: int) -> bool:
        limit = self.time_limit_ms
        return limit is not None and elapsed_ms > limit

    def is_terminal(self, session) -> Optional[str]:
        """Terminal status the session should move to, or None."""
        if session.is_complete():
            return "solved"
        if self.mistakes_exhausted(session.mistakes):
            return "failed"
        if self.timed_out(session.elapsed_ms):
            return "failed"
        return None

    def share_text(self, puzzle, outcome, session=None) -> str:
        return self.share_formatter(puzzle, outcome, self, session)


_DEFAULTS = {
    GameVariant.EMOJI_PAIR: VariantRules(
        variant=GameVariant.EMOJI_PAIR,
        max_mistakes=4,
        hint_rule=HintRule(base=1, unlock_threshold=1, bonus=1, maximum=2),
        scoring_mode=ScoringMode.TIME_AND_MISTAKES,
        hard_mode_time_limit_ms=180_000,
        share_formatter=share.tandem_share_text,
    ),
    GameVariant.MINI: VariantRules(
        variant=GameVariant.MINI,
        max_mistakes=None,
        hint_rule=HintRule(base=2, maximum=2),
        scoring_mode=ScoringMode.TIME,
        share_formatter=share.mini_share_text,
    ),
    GameVariant.GROUPING: VariantRules(
        variant=GameVariant.GROUPING,
        max_mistakes=4,
        hint_rule=HintRule(base=1, maximum=1),
        scoring_mode=ScoringMode.TIME_AND_MISTAKES,
        hard_mode_time_limit_ms=180_000,
        group_size=4,
        share_formatter=share.reel_share_text,
    ),
}


def get_rules(variant, hard_mode: bool = False, **overrides) -> VariantRules:
    """Rules for a variant, with hard mode and any field overridden."""
    rules = _DEFAULTS[GameVariant.parse(variant)]
    return dataclasses.replace(rules, hard_mode=hard_mode, **overrides)
