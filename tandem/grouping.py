"""
Grouping variant (Reel Connections): partition N items into groups of K.
"""
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import DuplicateGuess
from .schemas import PuzzleDescriptor
from .session import BaseSession, EventResult, UseHint
from .variants import VariantRules

DIFFICULTY_ORDER = ["easiest", "easy", "medium", "hardest"]


def difficulty_rank(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    try:
        return DIFFICULTY_ORDER.index(str(value).lower())
    except ValueError:
        return len(DIFFICULTY_ORDER)


@dataclass(frozen=True)
class ToggleItem:
    item: str


@dataclass(frozen=True)
class Submit:
    pass


@dataclass(frozen=True)
class Shuffle:
    seed: Optional[int] = None


class GroupingSession(BaseSession):
    """``selected`` and ``solved_groups`` replace the per-slot answers."""

    def __init__(self, puzzle: PuzzleDescriptor, rules: VariantRules):
        super().__init__(puzzle, rules)
        groups = (puzzle.content or {}).get("groups") or []
        if not groups:
            raise ValueError("grouping puzzle needs content.groups")
        self.groups: List[Dict[str, Any]] = sorted(groups, key=lambda g: difficulty_rank(g.get("difficulty")))
        self.group_of: Dict[str, str] = {}
        for g in self.groups:
            items = list(g.get("items") or [])
            if len(items) != rules.group_size:
                raise ValueError(f"group {g.get('id')} must have {rules.group_size} items")
            for item in items:
                self.group_of[str(item)] = str(g["id"])
        self.items: List[str] = [str(i) for g in groups for i in g["items"]]
        self.selected: List[str] = []
        self.solved_groups: List[str] = []
        self.previous_guesses: List[List[str]] = []
        self.guess_history: List[List[str]] = []
        self.hint_clue: Optional[str] = None
        self.hinted_group: Optional[str] = None
        self.hints_unlocked = rules.hints_unlocked(self.correct_mask)

    @property
    def correct_mask(self) -> List[bool]:
        return [str(g["id"]) in self.solved_groups for g in self.groups]

    @property
    def hinted_slots(self) -> List[int]:
        return []

    def is_complete(self) -> bool:
        return len(self.solved_groups) == len(self.groups)

    def _group(self, group_id: str) -> Dict[str, Any]:
        return next(g for g in self.groups if str(g["id"]) == group_id)

    def _handle(self, event) -> EventResult:
        if isinstance(event, ToggleItem):
            return self._toggle(str(event.item))
        if isinstance(event, Submit):
            return self._submit()
        if isinstance(event, UseHint):
            return self._hint()
        if isinstance(event, Shuffle):
            rng = random.Random(event.seed)
            rng.shuffle(self.items)
            return EventResult(True, self.status)
        return super()._handle(event)

    def _toggle(self, item: str) -> EventResult:
        if item not in self.group_of:
            return self._reject("unknown item", item=item)
        if self.group_of[item] in self.solved_groups:
            return self._reject("item already in a solved group", item=item)
        if item in self.selected:
            self.selected.remove(item)
            return EventResult(True, self.status)
        if len(self.selected) >= self.rules.group_size:
            return self._reject("selection is full", item=item)
        self.selected.append(item)
        return EventResult(True, self.status)

    def _submit(self) -> EventResult:
        size = self.rules.group_size
        if len(self.selected) != size:
            return self._reject(f"select {size} items first")
        key = sorted(self.selected)
        if key in self.previous_guesses:
            return EventResult(False, self.status, error=DuplicateGuess("already guessed", items=key))
        self.previous_guesses.append(key)
        group_ids = [self.group_of[i] for i in self.selected]
        self.guess_history.append([str(self._group(g).get("difficulty", "easiest")) for g in group_ids])

        if len(set(group_ids)) == 1:
            solved = group_ids[0]
            self.solved_groups.append(solved)
            self.items = [i for i in self.items if self.group_of[i] != solved]
            self.selected = []
            self.hints_unlocked = max(self.hints_unlocked, self.rules.hints_unlocked(self.correct_mask))
            return EventResult(True, self.status, correct=True, details={"group_id": solved})

        counts: Dict[str, int] = {}
        for g in group_ids:
            counts[g] = counts.get(g, 0) + 1
        self.mistakes += 1
        self.selected = []
        return EventResult(True, self.status, correct=False, one_away=max(counts.values()) == size - 1)

    def _hint(self) -> EventResult:
        if self.hints_used >= self.hints_unlocked:
            return self._reject("no hints available")
        group = next((g for g in self.groups if str(g["id"]) not in self.solved_groups), None)
        if group is None:
            return self._reject("all groups solved")
        self.hint_clue = group.get("connection")
        self.hinted_group = str(group["id"])
        self.hints_used += 1
        return EventResult(True, self.status, revealed=self.hint_clue, details={"group_id": self.hinted_group})

    def snapshot(self) -> Dict[str, Any]:
        data = super().snapshot()
        data.update({
            "items": list(self.items),
            "selected": list(self.selected),
            "solved_groups": list(self.solved_groups),
            "previous_guesses": [list(g) for g in self.previous_guesses],
            "guess_history": [list(g) for g in self.guess_history],
            "hint_clue": self.hint_clue,
            "hinted_group": self.hinted_group,
        })
        return data

    def _restore_state(self, data: Dict[str, Any]) -> None:
        self.solved_groups = [str(g) for g in data.get("solved_groups") or [] if any(str(x["id"]) == str(g) for x in self.groups)]
        remaining = [str(i) for i in data.get("items") or [] if str(i) in self.group_of]
        if remaining:
            self.items = remaining
        else:
            self.items = [i for i in self.items if self.group_of[i] not in self.solved_groups]
        self.selected = [str(i) for i in data.get("selected") or [] if str(i) in self.group_of]
        self.previous_guesses = [sorted(str(i) for i in g) for g in data.get("previous_guesses") or []]
        self.guess_history = [list(g) for g in data.get("guess_history") or []]
        self.hint_clue = data.get("hint_clue")
        self.hinted_group = data.get("hinted_group")
        self.hints_unlocked = max(self.hints_unlocked, self.rules.hints_unlocked(self.correct_mask))
