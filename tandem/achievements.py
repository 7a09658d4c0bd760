"""
Stat-derived milestones.

Two ladders: best streak (days) and total wins. A milestone is newly unlocked
when the current value reaches its threshold and the last value the player was
credited with did not.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .schemas import UserStats

STREAK = "streak"
WINS = "wins"


@dataclass(frozen=True)
class Achievement:
    key: str
    name: str
    kind: str
    threshold: int
    points: int


def _ladder(kind: str, rows: List[Tuple[str, str, int, int]]) -> Tuple[Achievement, ...]:
    return tuple(Achievement(key, name, kind, threshold, points) for key, name, threshold, points in rows)


STREAK_ACHIEVEMENTS = _ladder(STREAK, [
    ("first_pedal", "First Pedal", 3, 5),
    ("finding_rhythm", "Finding Rhythm", 5, 5),
    ("picking_up_speed", "Picking Up Speed", 7, 10),
    ("steady_cadence", "Steady Cadence", 10, 10),
    ("cruising_along", "Cruising Along", 15, 15),
    ("rolling_hills", "Rolling Hills", 20, 15),
    ("coast_to_coast", "Coast to Coast", 25, 20),
    ("monthly_rider", "Monthly Rider", 30, 25),
    ("swift_cyclist", "Swift Cyclist", 40, 25),
    ("starlight_ride", "Starlight Ride", 50, 30),
    ("seaside_route", "Seaside Route", 60, 30),
    ("summit_seeker", "Summit Seeker", 75, 40),
    ("cross_country", "Cross Country", 90, 40),
    ("century_ride", "Century Ride", 100, 50),
    ("mountain_pass", "Mountain Pass", 125, 60),
    ("pathfinder", "Pathfinder", 150, 60),
    ("coastal_cruiser", "Coastal Cruiser", 175, 75),
    ("horizon_chaser", "Horizon Chaser", 200, 75),
    ("grand_tour", "Grand Tour", 250, 80),
    ("world_traveler", "World Traveler", 300, 100),
    ("round_the_sun", "Round the Sun", 365, 100),
    ("infinite_road", "Infinite Road", 500, 100),
    ("legendary_journey", "Legendary Journey", 1000, 100),
])

WINS_ACHIEVEMENTS = _ladder(WINS, [
    ("first_win", "First Win", 1, 5),
    ("getting_hang", "Getting the Hang of It", 10, 10),
    ("puzzle_pal", "Puzzle Pal", 25, 25),
    ("clever_cookie", "Clever Cookie", 50, 30),
    ("brainy_buddy", "Brainy Buddy", 100, 50),
    ("puzzle_whiz", "Puzzle Whiz", 250, 75),
    ("word_wizard", "Word Wizard", 500, 100),
    ("puzzle_king", "Puzzle King", 1000, 100),
])

LADDERS: Dict[str, Tuple[Achievement, ...]] = {STREAK: STREAK_ACHIEVEMENTS, WINS: WINS_ACHIEVEMENTS}


def _values(stats: UserStats) -> Dict[str, int]:
    return {STREAK: stats.best_streak, WINS: stats.games_won}


def newly_unlocked(stats: UserStats, last_submitted: Optional[Dict[str, int]] = None) -> List[Achievement]:
    """Milestones reached by ``stats`` but not by ``last_submitted``.

    ``last_submitted`` maps ``"streak"``/``"wins"`` to the values the player
    was last credited with; missing entries count as 0.
    """
    last = last_submitted or {}
    out: List[Achievement] = []
    for kind, value in _values(stats).items():
        before = last.get(kind, 0)
        out.extend(a for a in LADDERS[kind] if before < a.threshold <= value)
    return out


def qualifying(stats: UserStats) -> List[Achievement]:
    return newly_unlocked(stats, {})


def next_achievement(kind: str, value: int) -> Optional[Achievement]:
    return next((a for a in LADDERS[kind] if value < a.threshold), None)


def progress(value: int, threshold: int) -> int:
    """Whole percent towards ``threshold``, capped at 100."""
    if value >= threshold:
        return 100
    return max(0, value * 100 // threshold)
