from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime


class KeyValue(SQLModel, table=True):
    """Row of the local indexed store."""
    key: str = Field(primary_key=True)
    value_json: str = ""
    updated_at: Optional[datetime] = None


class Player(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    avatar_ref: Optional[str] = None
    created_at: Optional[datetime] = None


class Puzzle(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    variant: str = Field(index=True)
    date: str = Field(index=True)  # YYYY-MM-DD
    number: int = 0
    content_json: str = "{}"
    solution_json: str = "null"


class DailyScore(SQLModel, table=True):
    """Best daily time per (player, variant, date); seconds only ever decrease."""
    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(index=True)
    variant: str
    date: str
    seconds: int
    mistakes: int = 0
    submitted_at: Optional[datetime] = None


class StreakScore(SQLModel, table=True):
    """Best streak per (player, variant); days only ever increase."""
    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(index=True)
    variant: str
    days: int
    submitted_at: Optional[datetime] = None


class StatsRow(SQLModel, table=True):
    """Remote record of a player's stats for one variant."""
    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(index=True)
    variant: str
    stats_json: str = "{}"
    games_played: int = 0
    updated_at: Optional[datetime] = None
