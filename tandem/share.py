"""
Share-text generators.

Output is deterministic, newline separated and has no trailing whitespace.
Each variant has its own pattern; ``share_text`` dispatches on the puzzle's
variant.
"""
from typing import List, Optional

from .clock import parse_date, puzzle_number_for_date

POPCORN = "\U0001F37F"
CROSS = "❌"


def format_time(ms: Optional[int]) -> str:
    """``m:ss`` from milliseconds; negative or missing time reads 0:00."""
    if not ms or ms < 0:
        return "0:00"
    seconds = int(ms) // 1000
    return f"{seconds // 60}:{seconds % 60:02d}"


def us_date(value: str) -> str:
    d = parse_date(value)
    return f"{d.month}/{d.day}/{d.year}"


def _puzzle_number(puzzle) -> str:
    if getattr(puzzle, "puzzle_number", 0):
        return str(puzzle.puzzle_number)
    try:
        return str(puzzle_number_for_date(puzzle.local_date))
    except ValueError:
        return "?"


def _finish(lines: List[str]) -> str:
    return "\n".join(line.rstrip() for line in lines).rstrip()


def reel_share_text(puzzle, outcome, rules=None, session=None) -> str:
    """Reel Connections: one popcorn per unused mistake, crosses from the left."""
    slots = rules.max_mistakes if rules is not None and rules.max_mistakes else 4
    crosses = min(outcome.mistakes, slots)
    lines = [
        f"Reel Connections {us_date(outcome.puzzle_date)}",
        "You won!" if outcome.won else "Better luck next time!",
        CROSS * crosses + POPCORN * (slots - crosses),
        f"Time: {format_time(outcome.time_ms)}",
    ]
    return _finish(lines)


def tandem_share_text(puzzle, outcome, rules=None, session=None) -> str:
    """Daily Tandem: one square per emoji pair, a bulb where a hint was used."""
    hard = bool(rules is not None and rules.hard_mode)
    max_mistakes = rules.max_mistakes if rules is not None and rules.max_mistakes else 4
    if session is not None:
        mask = list(session.correct_mask)
        hinted = set(session.hinted_slots)
    else:
        slots = len(puzzle.solution or []) or 4
        mask = [outcome.won] * slots
        hinted = set()
    solved = sum(1 for c in mask if c)

    lines = [f"Daily Tandem #{_puzzle_number(puzzle)}"]
    if hard:
        lines.append("\U0001F525 HARD MODE - Time's Up!" if not outcome.won and outcome.mistakes < max_mistakes else "\U0001F525 HARD MODE")
    lines.append("\U0001F50D Theme Discovered!" if solved == len(mask) else "❓ Theme Hidden")
    timer = f"⏱️ {format_time(outcome.time_ms)}"
    if hard and rules.hard_mode_time_limit_ms:
        timer += "/" + format_time(rules.hard_mode_time_limit_ms)
    lines.append(f"{timer} | {CROSS} {outcome.mistakes}/{max_mistakes}")
    lines.append("")

    squares = []
    for i, correct in enumerate(mask):
        if not correct:
            squares.append("⬜")
        elif i in hinted:
            squares.append("\U0001F4A1")
        elif hard and solved == len(mask):
            squares.append("\U0001F525")
        else:
            squares.append("\U0001F537")
    lines.append("".join(squares))
    return _finish(lines)


def mini_share_text(puzzle, outcome, rules=None, session=None) -> str:
    lines = [f"Daily Mini #{_puzzle_number(puzzle)}", f"⏰ {format_time(outcome.time_ms)}"]
    if outcome.perfect:
        lines.append("Perfect solve!")
    else:
        parts = []
        if outcome.mistakes:
            parts.append(f"{outcome.mistakes} mistake{'s' if outcome.mistakes > 1 else ''}")
        if outcome.hints_used:
            parts.append(f"{outcome.hints_used} reveal{'s' if outcome.hints_used > 1 else ''}")
        if parts:
            lines.append(" • ".join(parts))
    return _finish(lines)


def plain_share_text(puzzle, outcome, rules=None, session=None) -> str:
    verdict = "Solved" if outcome.won else "Not solved"
    return _finish([f"{puzzle.variant.value} {outcome.puzzle_date}", verdict, f"Time: {format_time(outcome.time_ms)}"])


def share_text(puzzle, outcome, rules=None, session=None) -> str:
    if rules is None:
        from .variants import get_rules
        rules = get_rules(puzzle.variant)
    return rules.share_text(puzzle, outcome, session=session)
