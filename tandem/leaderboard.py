"""
Leaderboard client: daily speed and best streak per variant.

Submissions are keyed ``(user, variant, date)`` for the daily board and
``(user, variant)`` for streaks. Only one request per key is on the wire at a
time; values submitted meanwhile collapse into the latest one, which is sent
when the current request returns. A transient failure leaves the submission
pending until ``retry_pending`` (called on the next stats apply) gets it
through or the attempt budget runs out. A 4xx is reported once and dropped.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from . import config
from .auth import ANONYMOUS, AuthContext
from .cache import (
    MemoryCache,
    cache_leaderboard,
    daily_leaderboard_key,
    invalidate_daily_leaderboard,
    invalidate_streak_leaderboard,
    streak_leaderboard_key,
)
from .clock import CalendarClock
from .errors import CoreError, NetworkFatal, NetworkTransient
from .logging_utils import get_logger
from .schemas import GameOutcome, GameVariant, LeaderboardEntry, LeaderboardPage, StatsDelta

logger = get_logger("tandem.leaderboard")

DAILY_PATH = "/leaderboard/daily"
STREAK_PATH = "/leaderboard/streak"


@dataclass
class SubmitResult:
    submitted: bool = False
    rank: Optional[int] = None
    skipped: bool = False
    queued: bool = False
    pending: bool = False
    error: Optional[CoreError] = None


@dataclass
class _Submission:
    path: str
    body: Dict[str, Any]
    token: str
    attempts: int = 0


@dataclass
class _Slot:
    latest: Optional[_Submission] = None
    busy: bool = False
    again: bool = False
    pending: bool = False
    reported: set = field(default_factory=set)


def daily_score(outcome: GameOutcome) -> int:
    """Whole seconds, rounded half up."""
    return int(outcome.time_ms / 1000 + 0.5)


class LeaderboardClient:
    def __init__(self, api, clock: Optional[CalendarClock] = None, cache: Optional[MemoryCache] = None,
                 max_attempts: int = config.RETRY_MAX_ATTEMPTS):
        self.api = api
        self.clock = clock or CalendarClock()
        self.cache = cache if cache is not None else MemoryCache()
        self.max_attempts = max_attempts
        self._slots: Dict[Tuple, _Slot] = {}

    # submit ---------------------------------------------------------------
    async def submit_outcome(self, outcome: GameOutcome, delta: StatsDelta, today: Optional[str] = None,
                             auth: AuthContext = ANONYMOUS) -> Dict[str, SubmitResult]:
        """Post what an outcome earned: today's time (wins only) and the best streak."""
        results: Dict[str, SubmitResult] = {}
        if not auth.authenticated:
            return results
        today = today or self.clock.now_local_date()
        if outcome.won and outcome.puzzle_date == today:
            results["daily"] = await self.submit_daily(
                outcome.variant, outcome.puzzle_date, daily_score(outcome), outcome.mistakes, auth
            )
        if delta.new_best_streak > 0:
            results["streak"] = await self.submit_streak(outcome.variant, delta.new_best_streak, auth)
        return results

    async def submit_daily(self, variant, puzzle_date: str, seconds: int, mistakes: int = 0,
                           auth: AuthContext = ANONYMOUS) -> SubmitResult:
        if not auth.authenticated:
            return SubmitResult(skipped=True)
        v = GameVariant.parse(variant)
        body = {
            "gameType": v.value,
            "puzzleDate": puzzle_date,
            "score": int(seconds),
            "metadata": {"mistakes": int(mistakes)},
        }
        key = ("daily", auth.user_id, v.value, puzzle_date)
        return await self._submit(key, _Submission(DAILY_PATH, body, auth.access_token))

    async def submit_streak(self, variant, days: int, auth: AuthContext = ANONYMOUS) -> SubmitResult:
        if not auth.authenticated:
            return SubmitResult(skipped=True)
        v = GameVariant.parse(variant)
        key = ("streak", auth.user_id, v.value)
        return await self._submit(key, _Submission(STREAK_PATH, {"gameType": v.value, "score": int(days)}, auth.access_token))

    async def _submit(self, key: Tuple, submission: _Submission) -> SubmitResult:
        slot = self._slots.setdefault(key, _Slot())
        slot.latest = submission
        if slot.busy:
            slot.again = True
            return SubmitResult(queued=True)

        slot.busy = True
        try:
            while True:
                slot.again = False
                current = slot.latest
                result = await self._send(key, slot, current)
                if not slot.again:
                    return result
        finally:
            slot.busy = False

    async def _send(self, key: Tuple, slot: _Slot, sub: _Submission) -> SubmitResult:
        sub.attempts += 1
        try:
            body = await self.api.request_json("POST", sub.path, json=sub.body, token=sub.token)
        except NetworkTransient as exc:
            if sub.attempts >= self.max_attempts:
                slot.pending = False
                logger.warning("leaderboard_submit_gave_up", extra={"key": ":".join(map(str, key)), "attempt": sub.attempts, "error": exc.message})
            else:
                slot.pending = True
                logger.info("leaderboard_submit_pending", extra={"key": ":".join(map(str, key)), "attempt": sub.attempts, "error": exc.message})
            return SubmitResult(pending=slot.pending, error=exc)
        except NetworkFatal as exc:
            slot.pending = False
            if exc.status not in slot.reported:
                slot.reported.add(exc.status)
                logger.warning("leaderboard_submit_rejected", extra={"key": ":".join(map(str, key)), "status": exc.status, "error": exc.message})
            return SubmitResult(error=exc)

        slot.pending = False
        self._invalidate(key)
        rank = body.get("rank") if isinstance(body, dict) else None
        logger.info("leaderboard_submitted", extra={"key": ":".join(map(str, key)), "event": str(rank)})
        return SubmitResult(submitted=True, rank=rank)

    def _invalidate(self, key: Tuple) -> None:
        if key[0] == "daily":
            invalidate_daily_leaderboard(self.cache, key[2], key[3])
        else:
            invalidate_streak_leaderboard(self.cache, key[2])

    def has_pending(self) -> bool:
        return any(s.pending for s in self._slots.values())

    async def retry_pending(self) -> Dict[Tuple, SubmitResult]:
        """Resend submissions whose last attempt failed transiently."""
        results = {}
        for key, slot in list(self._slots.items()):
            if slot.pending and not slot.busy and slot.latest is not None:
                results[key] = await self._submit(key, slot.latest)
        return results

    # read -----------------------------------------------------------------
    async def fetch_daily(self, variant, date: str, limit: int = config.LEADERBOARD_DEFAULT_LIMIT,
                          auth: AuthContext = ANONYMOUS) -> LeaderboardPage:
        v = GameVariant.parse(variant)
        key = daily_leaderboard_key(v.value, date, limit, auth.user_id or "")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        body = await self.api.request_json(
            "GET", DAILY_PATH, params={"game": v.value, "date": date, "limit": limit}, token=auth.access_token
        )
        page = LeaderboardPage(
            entries=[LeaderboardEntry.model_validate(e) for e in body.get("leaderboard") or []],
            user_rank=body.get("userRank"),
        )
        cache_leaderboard(self.cache, key, page)
        return page

    async def fetch_streak(self, variant, limit: int = config.LEADERBOARD_DEFAULT_LIMIT,
                           auth: AuthContext = ANONYMOUS) -> LeaderboardPage:
        v = GameVariant.parse(variant)
        key = streak_leaderboard_key(v.value, limit, auth.user_id or "")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        body = await self.api.request_json(
            "GET", STREAK_PATH, params={"game": v.value, "limit": limit}, token=auth.access_token
        )
        user_entry = body.get("userEntry")
        page = LeaderboardPage(
            entries=[LeaderboardEntry.model_validate(e) for e in body.get("leaderboard") or []],
            user_entry=LeaderboardEntry.model_validate(user_entry) if user_entry else None,
        )
        if page.user_entry is not None:
            page.user_rank = page.user_entry.rank
        cache_leaderboard(self.cache, key, page)
        return page
