"""
Stats store: per-user, per-variant aggregate history.

The fold itself (``apply_outcome``, ``reconcile_streak``, ``merge_stats``) is
pure and works on ``UserStats`` values. ``StatsStore`` wraps it with the
in-memory cache, serialized local writes and the best-effort remote push.

The live streak only moves forward from the last completed date; archive wins
never extend it. The best streak also takes the longest run in the completed
set, so applying the same outcomes in any order ends with the same completed
set, wins, best streak and best time.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import config
from .achievements import STREAK, WINS, newly_unlocked
from .clock import CalendarClock, add_days, days_between, is_valid_date, previous_day
from .errors import CoreError, InvariantViolation, NetworkFatal, NetworkTransient, SchemaMismatch, StorageUnavailable
from .keys import is_anonymous, stats_key
from .logging_utils import get_logger
from .retry import RetryPolicy, with_retry
from .schemas import GameOutcome, GameVariant, StatsDelta, UserStats
from .variants import get_rules

logger = get_logger("tandem.stats")


# runs ----------------------------------------------------------------------

def longest_run(completed: Iterable[str]) -> int:
    """Longest stretch of consecutive completed days."""
    dates = sorted(set(completed))
    best = run = 0
    prev = None
    for d in dates:
        run = run + 1 if prev is not None and add_days(prev, 1) == d else 1
        best = max(best, run)
        prev = d
    return best


def _is_live(last: Optional[str], today: str) -> bool:
    """True when ``last`` is today, yesterday (or ahead of a skewed clock)."""
    return last is not None and days_between(last, today) <= 1


# fold ----------------------------------------------------------------------

def apply_outcome(stats: UserStats, outcome: GameOutcome, today: str, history_limit: int = config.HISTORY_LIMIT) -> Tuple[UserStats, StatsDelta]:
    rules = get_rules(outcome.variant)
    if rules.max_mistakes is not None and outcome.mistakes > rules.max_mistakes:
        raise InvariantViolation(
            "outcome has more mistakes than the variant allows",
            payload={"outcome": outcome.model_dump(mode="json"), "max_mistakes": rules.max_mistakes},
        )

    s = stats.model_copy(deep=True)
    s.best_streak = max(s.best_streak, s.current_streak)
    d = outcome.puzzle_date
    last = s.last_completed_date
    completed = set(s.completed_puzzles)

    if d in completed:
        # re-completing (or replaying and losing) a solved date touches nothing but history
        s.history = (s.history + [outcome.model_copy(update={"replay": True})])[-history_limit:]
        return s, StatsDelta(
            new_current_streak=s.current_streak,
            new_best_streak=s.best_streak,
            replay=True,
        )

    new_best_time = None
    s.games_played += 1
    s.total_mistakes += outcome.mistakes
    s.hints_used_total += outcome.hints_used

    if outcome.won:
        s.games_won += 1
        completed.add(d)
        s.completed_puzzles = sorted(completed)
        if last is not None and d == add_days(last, 1):
            s.current_streak += 1
        elif last is None or d > last:
            s.current_streak = 1
        # wins on dates before the last completed one leave the live streak alone
        if last is None or d > last:
            s.last_completed_date = d
        s.best_streak = max(s.best_streak, s.current_streak, longest_run(completed))
        if s.best_time_ms == 0 or outcome.time_ms < s.best_time_ms:
            s.best_time_ms = outcome.time_ms
            new_best_time = outcome.time_ms
        s.total_time_ms += outcome.time_ms
        if outcome.perfect:
            s.perfect_solves += 1
    elif d == today and last != previous_day(today):
        # a definitive miss on today's puzzle breaks the streak
        s.current_streak = 0

    if not _is_live(s.last_completed_date, today):
        s.current_streak = 0

    s.history = (s.history + [outcome])[-history_limit:]
    check_stats(s)
    return s, StatsDelta(
        new_current_streak=s.current_streak,
        new_best_streak=s.best_streak,
        new_best_time_ms=new_best_time,
        first_completion_of_date=outcome.won,
        achievements=[a.key for a in newly_unlocked(s, {STREAK: stats.best_streak, WINS: stats.games_won})],
    )


def reconcile_streak(stats: UserStats, today: str) -> Tuple[UserStats, bool]:
    """Cold-start pass: a streak whose last day is neither today nor yesterday is gone."""
    if stats.current_streak > 0 and not _is_live(stats.last_completed_date, today):
        return stats.model_copy(update={"current_streak": 0}), True
    return stats, False


def check_stats(s: UserStats) -> None:
    if not (s.best_streak >= s.current_streak >= 0):
        raise InvariantViolation("streak out of range", payload=s.model_dump(mode="json"))
    if s.games_won > s.games_played:
        raise InvariantViolation("more wins than games", payload=s.model_dump(mode="json"))


def _history_key(o: GameOutcome):
    return (o.puzzle_date, o.won, o.time_ms, o.mistakes, o.hints_used, o.replay)


def merge_stats(a: UserStats, b: UserStats, history_limit: int = config.HISTORY_LIMIT) -> UserStats:
    """Additive reconciliation of two records of the same player.

    Counters take the maximum, completed dates are unioned, the best time is
    the smallest non-zero one and the live streak comes from the record that
    completed most recently.
    """
    completed = sorted(set(a.completed_puzzles) | set(b.completed_puzzles))
    newest = max((a, b), key=lambda s: (s.last_completed_date or "", s.current_streak))
    times = [t for t in (a.best_time_ms, b.best_time_ms) if t]

    history: List[GameOutcome] = []
    seen = set()
    for o in sorted(a.history + b.history, key=lambda o: o.puzzle_date):
        k = _history_key(o)
        if k not in seen:
            seen.add(k)
            history.append(o)

    extra = {**(a.model_extra or {}), **(b.model_extra or {})}
    games_won = max(a.games_won, b.games_won, len(completed))
    current = newest.current_streak
    merged = UserStats(
        games_played=max(a.games_played, b.games_played, games_won),
        games_won=games_won,
        current_streak=current,
        best_streak=max(a.best_streak, b.best_streak, current, longest_run(completed)),
        last_completed_date=newest.last_completed_date,
        best_time_ms=min(times) if times else 0,
        total_time_ms=max(a.total_time_ms, b.total_time_ms),
        completed_puzzles=completed,
        history=history[-history_limit:],
        hints_used_total=max(a.hints_used_total, b.hints_used_total),
        perfect_solves=max(a.perfect_solves, b.perfect_solves),
        total_mistakes=max(a.total_mistakes, b.total_mistakes),
        updated_at=max(a.updated_at or "", b.updated_at or "") or None,
        **extra,
    )
    check_stats(merged)
    return merged


# schema migration ------------------------------------------------------------

_LEGACY_FIELDS = {
    "played": "games_played",
    "gamesPlayed": "games_played",
    "wins": "games_won",
    "gamesWon": "games_won",
    "currentStreak": "current_streak",
    "bestStreak": "best_streak",
    "longestStreak": "best_streak",
    "lastCompletedDate": "last_completed_date",
    "lastStreakDate": "last_completed_date",
    "bestTimeMs": "best_time_ms",
    "totalTimeMs": "total_time_ms",
    "completedPuzzles": "completed_puzzles",
    "hintsUsed": "hints_used_total",
    "perfectSolves": "perfect_solves",
    "totalMistakes": "total_mistakes",
    "updatedAt": "updated_at",
}
# legacy clients stored these in seconds
_LEGACY_SECONDS = {"bestTime": "best_time_ms", "totalTime": "total_time_ms"}

_INT_FIELDS = (
    "games_played", "games_won", "current_streak", "best_streak", "best_time_ms",
    "total_time_ms", "hints_used_total", "perfect_solves", "total_mistakes",
)


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def migrate_stats(raw: Any) -> Tuple[UserStats, Optional[SchemaMismatch]]:
    """Load a stored record, mapping older layouts field by field.

    Unknown fields are kept, missing ones default to zero. Returns the stats
    and a ``SchemaMismatch`` warning when the version tag was absent or
    unknown.
    """
    if not raw:
        return UserStats(), None
    if not isinstance(raw, dict):
        return UserStats(), SchemaMismatch("stats record is not an object")

    version = raw.get("schema_version", raw.get("version"))
    known = version == config.STATS_SCHEMA_VERSION
    data: Dict[str, Any] = {}
    for k, v in raw.items():
        if k in ("version",):
            continue
        if k in _LEGACY_SECONDS:
            data.setdefault(_LEGACY_SECONDS[k], _as_int(v) * 1000)
        elif k in _LEGACY_FIELDS:
            data.setdefault(_LEGACY_FIELDS[k], v)
        else:
            data[k] = v

    for name in _INT_FIELDS:
        data[name] = _as_int(data.get(name, 0))

    completed = data.get("completed_puzzles") or []
    if isinstance(completed, dict):
        completed = list(completed.keys())
    data["completed_puzzles"] = sorted({d for d in completed if is_valid_date(d)})

    if not is_valid_date(data.get("last_completed_date")):
        data["last_completed_date"] = data["completed_puzzles"][-1] if data["completed_puzzles"] else None

    history = []
    for entry in data.get("history") or []:
        try:
            history.append(GameOutcome.model_validate(entry))
        except (ValueError, TypeError):
            continue
    data["history"] = history
    data["schema_version"] = config.STATS_SCHEMA_VERSION

    data["games_won"] = max(data["games_won"], len(data["completed_puzzles"]))
    data["games_played"] = max(data["games_played"], data["games_won"])
    data["best_streak"] = max(data["best_streak"], data["current_streak"])

    stats = UserStats.model_validate(data)
    if known:
        return stats, None
    return stats, SchemaMismatch("stats migrated", version=version)


# store -----------------------------------------------------------------------

@dataclass
class ApplyResult:
    stats: UserStats
    delta: StatsDelta
    warning: Optional[CoreError] = None


@dataclass
class SyncState:
    pending: bool = False
    again: bool = False
    task: Optional[asyncio.Task] = None
    errors: List[CoreError] = field(default_factory=list)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class StatsStore:
    """Durable stats for one variant across user scopes.

    ``apply`` updates the in-memory record before it suspends on the local
    write, so reads see the new value right away. Writes for the same key go
    through one lock each, in order.
    """

    def __init__(self, storage, variant, clock: Optional[CalendarClock] = None, remote=None,
                 retry: RetryPolicy = RetryPolicy(), history_limit: int = config.HISTORY_LIMIT, sleep=asyncio.sleep):
        self.storage = storage
        self.variant = GameVariant.parse(variant)
        self.clock = clock or CalendarClock()
        self.remote = remote
        self.retry = retry
        self.history_limit = history_limit
        self.sleep = sleep
        self._cache: Dict[str, UserStats] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sync: Dict[str, SyncState] = {}
        self.warnings: List[CoreError] = []

    def key(self, scope: str) -> str:
        return stats_key(self.variant, scope)

    def get(self, scope: str) -> Optional[UserStats]:
        return self._cache.get(scope)

    def sync_pending(self, scope: str) -> bool:
        """True when remote sync gave up: show "stats may not sync"."""
        state = self._sync.get(scope)
        return bool(state and state.pending)

    def _warn(self, err: CoreError, scope: str) -> CoreError:
        self.warnings.append(err)
        logger.warning(err.kind, extra={"variant": self.variant.value, "scope": scope, "error": err.message})
        return err

    async def load(self, scope: str) -> UserStats:
        if scope in self._cache:
            return self._cache[scope]
        try:
            raw = await self.storage.get(self.key(scope))
        except (StorageUnavailable, OSError) as exc:
            self._warn(exc if isinstance(exc, StorageUnavailable) else StorageUnavailable(str(exc)), scope)
            raw = None
        stats, mismatch = migrate_stats(raw)
        if mismatch is not None and raw:
            self._warn(mismatch, scope)
        # a concurrent load may have filled the cache while we were suspended
        return self._cache.setdefault(scope, stats)

    async def _persist(self, scope: str) -> Optional[CoreError]:
        key = self.key(scope)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            stats = self._cache.get(scope)
            if stats is None:
                return None
            try:
                await self.storage.set(key, stats.model_dump(mode="json"))
            except (StorageUnavailable, OSError) as exc:
                err = exc if isinstance(exc, StorageUnavailable) else StorageUnavailable(str(exc))
                return self._warn(err, scope)
        return None

    async def apply(self, outcome: GameOutcome, scope: str, today: Optional[str] = None, token: Optional[str] = None) -> ApplyResult:
        if GameVariant.parse(outcome.variant) != self.variant:
            raise ValueError(f"{outcome.variant.value} outcome applied to the {self.variant.value} store")
        today = today or self.clock.now_local_date()
        await self.load(scope)
        stats, delta = apply_outcome(self._cache[scope], outcome, today, self.history_limit)
        stats.updated_at = _utcnow()
        self._cache[scope] = stats
        logger.info(
            "stats_applied",
            extra={"variant": self.variant.value, "scope": scope, "puzzle_date": outcome.puzzle_date, "event": "replay" if delta.replay else "won" if outcome.won else "lost"},
        )
        # never cancelled: the record must reach storage for the invariants to hold
        warning = await asyncio.shield(self._persist(scope))
        if token and not is_anonymous(scope):
            self.push(scope, token)
        return ApplyResult(stats, delta, warning)

    async def reconcile(self, scope: str, today: Optional[str] = None) -> UserStats:
        today = today or self.clock.now_local_date()
        stats, changed = reconcile_streak(await self.load(scope), today)
        if changed:
            self._cache[scope] = stats
            logger.info("streak_reset", extra={"variant": self.variant.value, "scope": scope, "puzzle_date": today})
            await self._persist(scope)
        return stats

    async def delete(self, scope: str) -> None:
        self._cache.pop(scope, None)
        await self.storage.remove(self.key(scope))

    # remote ----------------------------------------------------------------
    def push(self, scope: str, token: str) -> None:
        """Queue a push of the current record; pushes queued while one is in
        flight collapse into a single follow-up."""
        if self.remote is None:
            return
        state = self._sync.setdefault(scope, SyncState())
        if state.task is not None and not state.task.done():
            state.again = True
            return
        state.task = asyncio.get_running_loop().create_task(self._push_loop(scope, token, state))

    async def _push_loop(self, scope: str, token: str, state: SyncState) -> None:
        while True:
            state.again = False
            payload = self._cache[scope].model_dump(mode="json")
            try:
                await with_retry(
                    lambda: self.remote.put_stats(self.variant, payload, token),
                    self.retry,
                    sleep=self.sleep,
                    label="stats_push",
                )
                state.pending = False
            except NetworkTransient as exc:
                state.pending = True
                state.errors.append(exc)
                logger.warning("stats_may_not_sync", extra={"variant": self.variant.value, "scope": scope, "error": exc.message})
                return
            except NetworkFatal as exc:
                state.errors.append(exc)
                self._warn(exc, scope)
                return
            if not state.again:
                return

    async def flush(self) -> None:
        tasks = [s.task for s in self._sync.values() if s.task is not None and not s.task.done()]
        if tasks:
            await asyncio.gather(*tasks)

    async def retry_pending(self, scope: str, token: str) -> None:
        if self.sync_pending(scope):
            self.push(scope, token)

    async def login(self, user_id: str, anon_scope: Optional[str], token: str) -> UserStats:
        """Bring the account record up to date after sign-in.

        The remote row wins over the local cache when it is newer or has more
        games; anything played anonymously on this device is then merged in.
        """
        local = await self.load(user_id)
        base = local
        if self.remote is not None:
            try:
                raw = await with_retry(lambda: self.remote.get_stats(self.variant, token), self.retry, sleep=self.sleep, label="stats_fetch")
            except (NetworkTransient, NetworkFatal) as exc:
                self._warn(exc, user_id)
                raw = None
            if raw:
                remote, _ = migrate_stats(raw)
                if (remote.updated_at or "") > (local.updated_at or "") or remote.games_played > local.games_played:
                    base = remote

        merged = base
        if anon_scope and anon_scope != user_id:
            anon = await self.load(anon_scope)
            if anon.games_played or anon.history:
                merged = merge_stats(base, anon, self.history_limit)
                merged.updated_at = _utcnow()
                await self.delete(anon_scope)

        adopted_remote = merged is base and base is not local
        self._cache[user_id] = merged
        await self._persist(user_id)
        if not adopted_remote:
            self.push(user_id, token)
        return merged
