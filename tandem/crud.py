from sqlmodel import Session, select as sqlmodel_select
from passlib.context import CryptContext
from sqlalchemy import desc, func, select as sa_select
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import hmac
import json

from . import config, models
from .stats import merge_stats, migrate_stats

# secret for signing bearer tokens; override with SESSION_SECRET env var in production
_SECRET = config.SESSION_SECRET

pwd = CryptContext(schemes=["bcrypt"], deprecated="auto")
engine = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


# players -------------------------------------------------------------------

def create_player(session: Session, username: str, password: str, avatar_ref: Optional[str] = None):
    if get_player_by_username(session, username):
        return None
    p = models.Player(username=username, password_hash=pwd.hash(password), avatar_ref=avatar_ref, created_at=_now())
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def get_player_by_username(session: Session, username: str):
    return session.exec(sqlmodel_select(models.Player).where(models.Player.username == username)).first()


def authenticate(session: Session, username: str, password: str):
    p = get_player_by_username(session, username)
    if not p or not p.password_hash:
        return None
    if not pwd.verify(password, p.password_hash):
        return None
    return p


def sign_player_token(session: Session, pid: int) -> Optional[str]:
    """Bearer token "pid.sig" for an existing player."""
    if pid is None or session.get(models.Player, pid) is None:
        return None
    val = str(pid)
    sig = hmac.new(_SECRET.encode(), val.encode(), hashlib.sha256).hexdigest()
    return f"{val}.{sig}"


def verify_player_token(session: Session, token: str) -> Optional[int]:
    try:
        pid_s, sig = token.rsplit('.', 1)
        pid = int(pid_s)
    except (AttributeError, ValueError):
        return None
    expected = hmac.new(_SECRET.encode(), pid_s.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return None
    if session.get(models.Player, pid) is None:
        return None
    return pid


# leaderboards ----------------------------------------------------------------

def get_daily_score(session: Session, player_id: int, variant: str, date: str):
    return session.exec(
        sqlmodel_select(models.DailyScore)
        .where(models.DailyScore.player_id == player_id)
        .where(models.DailyScore.variant == variant)
        .where(models.DailyScore.date == date)
    ).first()


def submit_daily_score(session: Session, player_id: int, variant: str, date: str, seconds: int, mistakes: int = 0) -> Tuple[models.DailyScore, bool]:
    """Keep the player's fastest time for the day.

    Returns the stored row and whether this submission improved it. A slower
    or equal time leaves the row untouched.
    """
    row = get_daily_score(session, player_id, variant, date)
    if row is not None and row.seconds <= seconds:
        return row, False
    if row is None:
        row = models.DailyScore(player_id=player_id, variant=variant, date=date, seconds=seconds)
    row.seconds = seconds
    row.mistakes = mistakes
    row.submitted_at = _now()
    session.add(row)
    session.commit()
    session.refresh(row)
    return row, True


def daily_rank(session: Session, variant: str, date: str, seconds: int) -> int:
    """1 + the number of strictly faster times; ties share a rank."""
    faster = session.execute(
        sa_select(func.count(models.DailyScore.id))
        .where(models.DailyScore.variant == variant)
        .where(models.DailyScore.date == date)
        .where(models.DailyScore.seconds < seconds)
    ).scalar() or 0
    return int(faster) + 1


def _ranked(rows, score_of) -> List[Tuple[Any, int]]:
    out = []
    prev = None
    rank = 0
    for idx, row in enumerate(rows, start=1):
        score = score_of(row)
        if score != prev:
            rank = idx
            prev = score
        out.append((row, rank))
    return out


def _entry(player: models.Player, score: int, rank: int, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        'user_id': str(player.id),
        'username': player.username,
        'avatar_ref': player.avatar_ref,
        'score': int(score),
        'rank': rank,
        'metadata': metadata,
    }


def get_daily_leaderboard(session: Session, variant: str, date: str, limit: Optional[int] = 10) -> List[Dict[str, Any]]:
    """Fastest times for one puzzle, earliest submission first among ties."""
    stmt = (
        sa_select(models.DailyScore, models.Player)
        .join(models.Player, models.Player.id == models.DailyScore.player_id)
        .where(models.DailyScore.variant == variant)
        .where(models.DailyScore.date == date)
        .order_by(models.DailyScore.seconds, models.DailyScore.submitted_at, models.DailyScore.id)
    )
    if isinstance(limit, int) and limit > 0:
        stmt = stmt.limit(limit)
    rows = session.execute(stmt).all()
    ranked = _ranked(rows, lambda r: r[0].seconds)
    return [
        _entry(player, score.seconds, rank, {'mistakes': score.mistakes})
        for (score, player), rank in ranked
    ]


def get_streak_score(session: Session, player_id: int, variant: str):
    return session.exec(
        sqlmodel_select(models.StreakScore)
        .where(models.StreakScore.player_id == player_id)
        .where(models.StreakScore.variant == variant)
    ).first()


def submit_streak_score(session: Session, player_id: int, variant: str, days: int) -> Tuple[models.StreakScore, bool]:
    """Keep the player's longest streak; shorter or equal streaks are ignored."""
    row = get_streak_score(session, player_id, variant)
    if row is not None and row.days >= days:
        return row, False
    if row is None:
        row = models.StreakScore(player_id=player_id, variant=variant, days=days)
    row.days = days
    row.submitted_at = _now()
    session.add(row)
    session.commit()
    session.refresh(row)
    return row, True


def streak_rank(session: Session, variant: str, days: int) -> int:
    longer = session.execute(
        sa_select(func.count(models.StreakScore.id))
        .where(models.StreakScore.variant == variant)
        .where(models.StreakScore.days > days)
    ).scalar() or 0
    return int(longer) + 1


def get_streak_leaderboard(session: Session, variant: str, limit: Optional[int] = 10) -> List[Dict[str, Any]]:
    stmt = (
        sa_select(models.StreakScore, models.Player)
        .join(models.Player, models.Player.id == models.StreakScore.player_id)
        .where(models.StreakScore.variant == variant)
        .order_by(desc(models.StreakScore.days), models.StreakScore.submitted_at, models.StreakScore.id)
    )
    if isinstance(limit, int) and limit > 0:
        stmt = stmt.limit(limit)
    rows = session.execute(stmt).all()
    return [
        _entry(player, score.days, rank)
        for (score, player), rank in _ranked(rows, lambda r: r[0].days)
    ]


def get_player_streak_entry(session: Session, player_id: int, variant: str) -> Optional[Dict[str, Any]]:
    row = get_streak_score(session, player_id, variant)
    if row is None:
        return None
    player = session.get(models.Player, player_id)
    return _entry(player, row.days, streak_rank(session, variant, row.days))


# stats -----------------------------------------------------------------------

def get_stats_row(session: Session, player_id: int, variant: str):
    return session.exec(
        sqlmodel_select(models.StatsRow)
        .where(models.StatsRow.player_id == player_id)
        .where(models.StatsRow.variant == variant)
    ).first()


def put_stats(session: Session, player_id: int, variant: str, raw: Dict[str, Any]) -> models.StatsRow:
    """Store a client's stats record, folded into what is already on file.

    Raises ``InvariantViolation`` when the record cannot be made consistent.
    """
    incoming, _ = migrate_stats(raw)
    row = get_stats_row(session, player_id, variant)
    if row is None:
        row = models.StatsRow(player_id=player_id, variant=variant)
        merged = incoming
    else:
        stored, _ = migrate_stats(json.loads(row.stats_json or "{}"))
        merged = merge_stats(stored, incoming)
    now = _now()
    merged.updated_at = incoming.updated_at or now.isoformat()
    row.stats_json = json.dumps(merged.model_dump(mode="json"))
    row.games_played = merged.games_played
    row.updated_at = now
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


# puzzles ---------------------------------------------------------------------

def get_puzzle(session: Session, variant: str, date: str):
    return session.exec(
        sqlmodel_select(models.Puzzle)
        .where(models.Puzzle.variant == variant)
        .where(models.Puzzle.date == date)
    ).first()


def upsert_puzzle(session: Session, variant: str, date: str, content: Dict[str, Any], solution: Any = None, number: int = 0):
    row = get_puzzle(session, variant, date) or models.Puzzle(variant=variant, date=date)
    row.number = number
    row.content_json = json.dumps(content)
    row.solution_json = json.dumps(solution)
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def puzzle_payload(row: models.Puzzle) -> Dict[str, Any]:
    return {
        'variant': row.variant,
        'local_date': row.date,
        'puzzle_number': row.number,
        'content': json.loads(row.content_json or "{}"),
        'solution': json.loads(row.solution_json or "null"),
    }


# accounts --------------------------------------------------------------------

def delete_account(session: Session, player_id: int) -> bool:
    player = session.get(models.Player, player_id)
    if player is None:
        return False
    for table in (models.StatsRow, models.DailyScore, models.StreakScore):
        for row in session.exec(sqlmodel_select(table).where(table.player_id == player_id)).all():
            session.delete(row)
    session.delete(player)
    session.commit()
    return True

