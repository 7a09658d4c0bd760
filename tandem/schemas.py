from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .clock import is_valid_date


class GameVariant(str, Enum):
    EMOJI_PAIR = "tandem"
    MINI = "mini"
    GROUPING = "reel"

    @classmethod
    def parse(cls, value: Any) -> "GameVariant":
        """Accept the enum, its wire value, or its descriptive tag."""
        if isinstance(value, cls):
            return value
        aliases = {
            "emoji-pair": cls.EMOJI_PAIR,
            "mini-crossword": cls.MINI,
            "grouping": cls.GROUPING,
        }
        if value in aliases:
            return aliases[value]
        return cls(value)


def _check_date(v: Optional[str]) -> Optional[str]:
    if v is not None and not is_valid_date(v):
        raise ValueError("Date must be in YYYY-MM-DD format")
    return v


class PuzzleDescriptor(BaseModel):
    variant: GameVariant
    local_date: str
    puzzle_number: int = Field(0, ge=0)
    content: Dict[str, Any] = Field(default_factory=dict)
    solution: Any = None

    @field_validator("local_date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)


class GameOutcome(BaseModel):
    variant: GameVariant
    puzzle_date: str
    won: bool
    time_ms: int = Field(..., ge=0)
    mistakes: int = Field(0, ge=0)
    hints_used: int = Field(0, ge=0)
    perfect: bool = False
    # Set on history entries that re-completed an already-solved date
    replay: bool = False

    @field_validator("puzzle_date")
    @classmethod
    def validate_date(cls, v):
        return _check_date(v)


class UserStats(BaseModel):
    """Aggregate history for one (user, variant).

    Unknown fields from older or newer clients are kept so they survive a
    round-trip through storage.
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = 2
    games_played: int = 0
    games_won: int = 0
    current_streak: int = 0
    best_streak: int = 0
    last_completed_date: Optional[str] = None
    best_time_ms: int = 0
    total_time_ms: int = 0
    completed_puzzles: List[str] = Field(default_factory=list)
    history: List[GameOutcome] = Field(default_factory=list)
    hints_used_total: int = 0
    perfect_solves: int = 0
    total_mistakes: int = 0
    updated_at: Optional[str] = None

    @property
    def win_rate(self) -> float:
        if not self.games_played:
            return 0.0
        return round(self.games_won / self.games_played * 100, 1)

    @property
    def average_time_ms(self) -> int:
        if not self.games_won:
            return 0
        return self.total_time_ms // self.games_won


class StatsDelta(BaseModel):
    new_current_streak: int
    new_best_streak: int
    new_best_time_ms: Optional[int] = None
    first_completion_of_date: bool = False
    replay: bool = False
    # keys of milestones this outcome unlocked
    achievements: List[str] = Field(default_factory=list)


class LeaderboardEntry(BaseModel):
    user_id: str
    username: str
    avatar_ref: Optional[str] = None
    score: int
    rank: int
    metadata: Optional[Dict[str, Any]] = None


class LeaderboardPage(BaseModel):
    entries: List[LeaderboardEntry] = Field(default_factory=list)
    user_rank: Optional[int] = None
    user_entry: Optional[LeaderboardEntry] = None
