"""
Session state machine: one attempt at one puzzle.

``apply_event`` is synchronous and total. Time is never read here: the host
passes ``now_ms`` with every event and the session only samples it, so the
session never mutates from a background task.

    NotStarted -> Running -> (Solved | Failed | Abandoned)
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import ClockSkew, CoreError, InvariantViolation, UserInputRejected
from .logging_utils import get_logger
from .schemas import GameOutcome, PuzzleDescriptor
from .variants import VariantRules, accepted_answers, normalize_answer

logger = get_logger("tandem.session")


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SOLVED = "solved"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.SOLVED, SessionStatus.FAILED, SessionStatus.ABANDONED)


# Events -------------------------------------------------------------------

@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Tick:
    """Timer sample with no other effect."""


@dataclass(frozen=True)
class HostAbandon:
    pass


@dataclass(frozen=True)
class InputLetter:
    slot: int
    ch: str


@dataclass(frozen=True)
class Backspace:
    slot: int


@dataclass(frozen=True)
class CheckSlot:
    slot: int


@dataclass(frozen=True)
class UseHint:
    slot: Optional[int] = None


@dataclass
class EventResult:
    accepted: bool
    status: SessionStatus
    error: Optional[CoreError] = None
    correct: Optional[bool] = None
    hints_unlocked_changed: bool = False
    one_away: bool = False
    revealed: Optional[str] = None
    outcome: Optional[GameOutcome] = None
    details: Dict[str, Any] = field(default_factory=dict)


def _now_ms() -> int:
    return int(time.time() * 1000)


class BaseSession:
    """Status, timer, mistakes, hints and outcome emission shared by every variant."""

    def __init__(self, puzzle: PuzzleDescriptor, rules: VariantRules):
        if puzzle.variant != rules.variant:
            raise ValueError(f"rules for {rules.variant.value} cannot drive a {puzzle.variant.value} puzzle")
        self.puzzle = puzzle
        self.rules = rules
        self.status = SessionStatus.NOT_STARTED
        self.started_at: Optional[int] = None
        self.elapsed_ms = 0
        self.mistakes = 0
        self.hints_used = 0
        self.hints_unlocked = 0
        self.clock_skews = 0
        self._skew: Optional[ClockSkew] = None
        self.outcome: Optional[GameOutcome] = None
        self._state_listeners: List[Callable[["BaseSession"], Any]] = []
        self._outcome_listeners: List[Callable[[GameOutcome], Any]] = []

    # listeners ----------------------------------------------------------
    def on_state_change(self, cb: Callable[["BaseSession"], Any]) -> None:
        self._state_listeners.append(cb)

    def on_outcome(self, cb: Callable[[GameOutcome], Any]) -> None:
        self._outcome_listeners.append(cb)

    @property
    def variant(self):
        return self.puzzle.variant

    @property
    def puzzle_date(self) -> str:
        return self.puzzle.local_date

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    def is_complete(self) -> bool:
        raise NotImplementedError

    # event loop ---------------------------------------------------------
    def apply_event(self, event, now_ms: Optional[int] = None) -> EventResult:
        now = _now_ms() if now_ms is None else int(now_ms)
        self._skew = None

        if self.status.terminal:
            return self._reject("session is over")

        if isinstance(event, HostAbandon):
            if self.status != SessionStatus.RUNNING:
                return self._reject("only a running session can be abandoned")
            self.sample(now)
            if self.status == SessionStatus.RUNNING:
                self.status = SessionStatus.ABANDONED
                logger.info("session_abandoned", extra={"variant": self.variant.value, "puzzle_date": self.puzzle_date})
            return self._accepted(EventResult(True, self.status))

        if isinstance(event, Tick):
            if self.status == SessionStatus.NOT_STARTED:
                return EventResult(False, self.status)
            self.sample(now)
            return self._accepted(self._result_after_settle(EventResult(True, self.status), now))

        starting = self.status == SessionStatus.NOT_STARTED
        if starting:
            self.started_at = now
            self.status = SessionStatus.RUNNING
            if isinstance(event, Start):
                return self._accepted(EventResult(True, self.status))
        elif isinstance(event, Start):
            return self._reject("session already started")

        self.sample(now)
        if self.status.terminal:
            # the time limit ran out before this input landed
            return self._accepted(EventResult(False, self.status, outcome=self.outcome))

        result = self._handle(event)
        if not result.accepted:
            if starting:
                # a rejected first input does not start the timer
                self.status = SessionStatus.NOT_STARTED
                self.started_at = None
                self.elapsed_ms = 0
                result.status = self.status
            return result
        return self._accepted(self._result_after_settle(result, now))

    def _handle(self, event) -> EventResult:
        return self._reject(f"unsupported event {type(event).__name__}")

    def _reject(self, message: str, **details) -> EventResult:
        return EventResult(False, self.status, error=UserInputRejected(message, **details))

    def _accepted(self, result: EventResult) -> EventResult:
        self._check_invariants()
        result.status = self.status
        if result.error is None and self._skew is not None:
            result.error = self._skew
        if result.outcome is None:
            result.outcome = self.outcome if self.status in (SessionStatus.SOLVED, SessionStatus.FAILED) else None
        for cb in list(self._state_listeners):
            cb(self)
        return result

    def _result_after_settle(self, result: EventResult, now: int) -> EventResult:
        self._settle()
        result.status = self.status
        return result

    # timer --------------------------------------------------------------
    def sample(self, now_ms: int) -> int:
        """Advance ``elapsed_ms`` from a wall-clock sample.

        A sample earlier than the last one (clock moved backwards) is clamped
        so the timer never runs backwards; the clamp is reported as a
        ``ClockSkew`` on the result of the event being applied. Exceeding a
        hard-mode time limit fails the session on the spot.
        """
        if self.status != SessionStatus.RUNNING or self.started_at is None:
            return self.elapsed_ms
        raw = int(now_ms) - self.started_at
        if raw < self.elapsed_ms:
            self.clock_skews += 1
            self._skew = ClockSkew("clock moved backwards", behind_ms=self.elapsed_ms - raw)
            logger.warning("session_clock_skew", extra={"variant": self.variant.value, "puzzle_date": self.puzzle_date})
        else:
            self.elapsed_ms = raw
        if self.rules.timed_out(self.elapsed_ms):
            self.elapsed_ms = self.rules.time_limit_ms
            self._finish(SessionStatus.FAILED)
        return self.elapsed_ms

    # terminal -----------------------------------------------------------
    def _settle(self) -> None:
        if self.status != SessionStatus.RUNNING:
            return
        verdict = self.rules.is_terminal(self)
        if verdict == "solved":
            self._finish(SessionStatus.SOLVED)
        elif verdict == "failed":
            self._finish(SessionStatus.FAILED)

    def _finish(self, status: SessionStatus) -> None:
        if self.outcome is not None:
            return
        self.status = status
        won = status == SessionStatus.SOLVED
        self.outcome = GameOutcome(
            variant=self.variant,
            puzzle_date=self.puzzle_date,
            won=won,
            time_ms=self.elapsed_ms,
            mistakes=self.mistakes,
            hints_used=self.hints_used,
            perfect=won and self.mistakes == 0 and self.hints_used == 0,
        )
        logger.info(
            "session_finished",
            extra={"variant": self.variant.value, "puzzle_date": self.puzzle_date, "status": status.value},
        )
        for cb in list(self._outcome_listeners):
            cb(self.outcome)

    def _check_invariants(self) -> None:
        rules = self.rules
        problems = []
        if self.mistakes < 0 or (rules.max_mistakes is not None and self.mistakes > rules.max_mistakes):
            problems.append("mistakes out of range")
        if not (0 <= self.hints_used <= self.hints_unlocked <= rules.max_hints):
            problems.append("hint budget out of range")
        if self.status == SessionStatus.SOLVED and not self.is_complete():
            problems.append("solved with unsolved slots")
        if self.status == SessionStatus.FAILED and not (
            rules.mistakes_exhausted(self.mistakes)
            or (rules.time_limit_ms is not None and self.elapsed_ms >= rules.time_limit_ms)
        ):
            problems.append("failed without exhausting mistakes or time")
        if problems:
            raise InvariantViolation("; ".join(problems), payload=self.snapshot())

    # persistence --------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        return {
            "variant": self.variant.value,
            "puzzle_date": self.puzzle_date,
            "status": self.status.value,
            "started_at": self.started_at,
            "elapsed_ms": self.elapsed_ms,
            "mistakes": self.mistakes,
            "hints_used": self.hints_used,
            "hints_unlocked": self.hints_unlocked,
            "outcome": self.outcome.model_dump(mode="json") if self.outcome else None,
        }

    def _restore_common(self, data: Dict[str, Any]) -> None:
        self.status = SessionStatus(data.get("status", SessionStatus.NOT_STARTED.value))
        self.started_at = data.get("started_at")
        self.elapsed_ms = int(data.get("elapsed_ms") or 0)
        self.mistakes = int(data.get("mistakes") or 0)
        self.hints_used = int(data.get("hints_used") or 0)
        self.hints_unlocked = int(data.get("hints_unlocked") or self.hints_unlocked)
        if data.get("outcome"):
            self.outcome = GameOutcome.model_validate(data["outcome"])

    @classmethod
    def restore(cls, puzzle: PuzzleDescriptor, rules: VariantRules, data: Dict[str, Any]):
        """Rebuild a session from ``snapshot()``; outcomes are not re-emitted."""
        if data.get("puzzle_date") != puzzle.local_date:
            raise ValueError("snapshot belongs to a different puzzle date")
        session = cls(puzzle, rules)
        session._restore_common(data)
        session._restore_state(data)
        session._check_invariants()
        return session

    def _restore_state(self, data: Dict[str, Any]) -> None:
        pass


class Session(BaseSession):
    """Slot-based session used by the emoji-pair and mini-crossword games.

    Each slot is a row of cells. Letters revealed by hints are locked: typing
    skips over them and backspace never removes them.
    """

    def __init__(self, puzzle: PuzzleDescriptor, rules: VariantRules):
        super().__init__(puzzle, rules)
        solutions = puzzle.solution or []
        if isinstance(solutions, str) or not solutions:
            raise ValueError("puzzle solution must be a non-empty list of slot answers")
        self.solutions: List[Any] = list(solutions)
        self.alternates: List[List[str]] = [accepted_answers(s) for s in self.solutions]
        self.lengths: List[int] = [max((len(a) for a in alts), default=0) for alts in self.alternates]
        self.cells: List[List[Optional[str]]] = [[None] * n for n in self.lengths]
        self.correct_mask: List[bool] = [False] * len(self.solutions)
        self.locked_letters: Dict[int, Dict[int, str]] = {}
        self.hinted_slots: List[int] = []
        self.hints_unlocked = rules.hints_unlocked(self.correct_mask)

    @property
    def total_slots(self) -> int:
        return len(self.solutions)

    @property
    def solved_slots(self) -> int:
        return sum(1 for c in self.correct_mask if c)

    @property
    def answers_state(self) -> List[str]:
        return ["".join(c for c in row if c) for row in self.cells]

    def canonical(self, slot: int) -> str:
        alts = self.alternates[slot]
        return alts[0] if alts else ""

    def is_complete(self) -> bool:
        return bool(self.correct_mask) and all(self.correct_mask)

    def _slot_guard(self, slot: int) -> Optional[EventResult]:
        if not isinstance(slot, int) or not 0 <= slot < self.total_slots:
            return self._reject("no such slot", slot=slot)
        if self.correct_mask[slot]:
            return self._reject("slot already solved", slot=slot)
        return None

    def _handle(self, event) -> EventResult:
        if isinstance(event, InputLetter):
            return self._input(event.slot, event.ch)
        if isinstance(event, Backspace):
            return self._backspace(event.slot)
        if isinstance(event, CheckSlot):
            return self._check(event.slot)
        if isinstance(event, UseHint):
            return self._hint(event.slot)
        return super()._handle(event)

    def _input(self, slot: int, ch: str) -> EventResult:
        rejected = self._slot_guard(slot)
        if rejected:
            return rejected
        letter = normalize_answer(ch)
        if len(letter) != 1:
            return self._reject("not a letter", slot=slot)
        row = self.cells[slot]
        locked = self.locked_letters.get(slot, {})
        for pos, current in enumerate(row):
            if current is None and pos not in locked:
                row[pos] = letter
                return EventResult(True, self.status)
        return self._reject("answer is full", slot=slot)

    def _backspace(self, slot: int) -> EventResult:
        rejected = self._slot_guard(slot)
        if rejected:
            return rejected
        row = self.cells[slot]
        locked = self.locked_letters.get(slot, {})
        for pos in range(len(row) - 1, -1, -1):
            if row[pos] is not None and pos not in locked:
                row[pos] = None
                return EventResult(True, self.status)
        return self._reject("nothing to delete", slot=slot)

    def _check(self, slot: int) -> EventResult:
        rejected = self._slot_guard(slot)
        if rejected:
            return rejected
        value = self.answers_state[slot]
        if not value:
            return self._reject("empty answer", slot=slot)
        result = self.rules.check(value, self.solutions[slot])
        if not result.correct:
            self.mistakes += 1
            return EventResult(True, self.status, correct=False)
        self.correct_mask[slot] = True
        self.cells[slot] = list(result.matched) + [None] * (self.lengths[slot] - len(result.matched))
        before = self.hints_unlocked
        self.hints_unlocked = max(before, self.rules.hints_unlocked(self.correct_mask))
        return EventResult(
            True,
            self.status,
            correct=True,
            hints_unlocked_changed=self.hints_unlocked > before,
            details={"canonical": result.canonical, "alternate_matched": result.alternate_matched},
        )

    def _hint(self, slot: Optional[int]) -> EventResult:
        if self.hints_used >= self.hints_unlocked:
            return self._reject("no hints available")
        if slot is None:
            slot = next((i for i, c in enumerate(self.correct_mask) if not c), None)
            if slot is None:
                return self._reject("all slots solved")
        rejected = self._slot_guard(slot)
        if rejected:
            return rejected
        canonical = self.canonical(slot)
        locked = self.locked_letters.setdefault(slot, {})
        pos = next((i for i in range(len(canonical)) if i not in locked), None)
        if pos is None:
            return self._reject("answer fully revealed", slot=slot)
        locked[pos] = canonical[pos]
        self.cells[slot][pos] = canonical[pos]
        self.hints_used += 1
        if slot not in self.hinted_slots:
            self.hinted_slots.append(slot)
        return EventResult(True, self.status, revealed=canonical[pos], details={"slot": slot, "position": pos})

    def snapshot(self) -> Dict[str, Any]:
        data = super().snapshot()
        data.update({
            "cells": [list(row) for row in self.cells],
            "correct_mask": list(self.correct_mask),
            "locked_letters": {str(s): {str(p): ch for p, ch in pos.items()} for s, pos in self.locked_letters.items()},
            "hinted_slots": list(self.hinted_slots),
        })
        return data

    def _restore_state(self, data: Dict[str, Any]) -> None:
        cells = data.get("cells") or []
        for i, row in enumerate(cells[: self.total_slots]):
            width = self.lengths[i]
            self.cells[i] = (list(row) + [None] * width)[:width]
        mask = data.get("correct_mask") or []
        for i, flag in enumerate(mask[: self.total_slots]):
            self.correct_mask[i] = bool(flag)
        self.locked_letters = {
            int(s): {int(p): ch for p, ch in pos.items()}
            for s, pos in (data.get("locked_letters") or {}).items()
        }
        self.hinted_slots = [int(s) for s in data.get("hinted_slots") or []]
        self.hints_unlocked = max(self.hints_unlocked, self.rules.hints_unlocked(self.correct_mask))
