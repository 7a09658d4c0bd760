"""
Host-facing coordinator for one variant.

Wires the pieces together the way a game screen uses them: load today's
puzzle (resuming a saved attempt), feed input events to the session with
clock samples, and when the session ends fold the outcome into stats and
post the leaderboard scores.
"""
from typing import Any, Callable, Dict, List, Optional

from .auth import ANONYMOUS, AuthContext
from .clock import CalendarClock, MidnightSubscription
from .errors import CoreError, InvariantViolation, StorageUnavailable
from .grouping import GroupingSession
from .keys import device_id, session_key, user_scope
from .leaderboard import LeaderboardClient
from .logging_utils import get_logger
from .schemas import GameOutcome, GameVariant, PuzzleDescriptor, StatsDelta
from .session import BaseSession, EventResult, HostAbandon, Session, SessionStatus, Tick
from .stats import StatsStore
from .variants import VariantRules, get_rules

logger = get_logger("tandem.game")


def new_session(puzzle: PuzzleDescriptor, rules: VariantRules) -> BaseSession:
    if puzzle.variant == GameVariant.GROUPING:
        return GroupingSession(puzzle, rules)
    return Session(puzzle, rules)


def session_class(variant):
    return GroupingSession if GameVariant.parse(variant) == GameVariant.GROUPING else Session


class SessionRepository:
    """Saved attempts, one per (variant, scope, date)."""

    def __init__(self, storage):
        self.storage = storage

    async def load(self, variant, scope: str, puzzle_date: str) -> Optional[Dict[str, Any]]:
        data = await self.storage.get(session_key(variant, scope, puzzle_date))
        return data if isinstance(data, dict) else None

    async def save(self, session: BaseSession, scope: str) -> None:
        await self.storage.set(session_key(session.variant, scope, session.puzzle_date), session.snapshot())

    async def remove(self, variant, scope: str, puzzle_date: str) -> None:
        await self.storage.remove(session_key(variant, scope, puzzle_date))


class GameCoordinator:
    def __init__(
        self,
        variant,
        provider,
        stats: StatsStore,
        leaderboard: Optional[LeaderboardClient] = None,
        clock: Optional[CalendarClock] = None,
        auth: AuthContext = ANONYMOUS,
        storage=None,
        hard_mode: bool = False,
        **rule_overrides,
    ):
        self.variant = GameVariant.parse(variant)
        self.provider = provider
        self.stats = stats
        self.leaderboard = leaderboard
        self.clock = clock or stats.clock
        self.auth = auth
        self.storage = storage if storage is not None else stats.storage
        self.sessions = SessionRepository(self.storage)
        self.rules = get_rules(self.variant, hard_mode=hard_mode, **rule_overrides)
        self.puzzle: Optional[PuzzleDescriptor] = None
        self.session: Optional[BaseSession] = None
        self.last_delta: Optional[StatsDelta] = None
        self.warnings: List[CoreError] = []
        self._device: Optional[str] = None
        self._finished: Optional[GameOutcome] = None
        self._state_listeners: List[Callable[[BaseSession], Any]] = []
        self._outcome_listeners: List[Callable[[GameOutcome, StatsDelta], Any]] = []
        self._midnight: Optional[MidnightSubscription] = None

    def on_state_change(self, cb: Callable[[BaseSession], Any]) -> None:
        self._state_listeners.append(cb)

    def on_outcome(self, cb: Callable[[GameOutcome, StatsDelta], Any]) -> None:
        self._outcome_listeners.append(cb)

    async def scope(self) -> str:
        if self.auth.authenticated:
            return user_scope(self.auth.user_id)
        if self._device is None:
            self._device = await device_id(self.storage)
        return user_scope(None, self._device)

    def _warn(self, err: CoreError) -> None:
        self.warnings.append(err)
        logger.warning(err.kind, extra={"variant": self.variant.value, "error": err.message})

    # lifecycle --------------------------------------------------------------
    async def load(self, date: Optional[str] = None) -> Optional[BaseSession]:
        """Load a day's puzzle and a fresh or resumed session for it.

        Returns None when the provider has no puzzle for that date.
        """
        date = date or self.clock.now_local_date()
        scope = await self.scope()
        await self.stats.reconcile(scope)

        puzzle = await self.provider.get_puzzle(self.variant, date)
        if puzzle is None:
            self.puzzle = self.session = None
            return None

        session = await self._resume(puzzle, scope)
        if session is None:
            session = new_session(puzzle, self.rules)
        session.on_outcome(self._capture_outcome)
        for cb in self._state_listeners:
            session.on_state_change(cb)
        self.puzzle, self.session, self._finished = puzzle, session, None
        logger.info("puzzle_loaded", extra={"variant": self.variant.value, "puzzle_date": date, "status": session.status.value})
        return session

    async def _resume(self, puzzle: PuzzleDescriptor, scope: str) -> Optional[BaseSession]:
        try:
            data = await self.sessions.load(self.variant, scope, puzzle.local_date)
        except StorageUnavailable as exc:
            self._warn(exc)
            return None
        if not data:
            return None
        if data.get("status") == SessionStatus.ABANDONED.value:
            # leaving the screen pauses the attempt; coming back picks it up again
            data = {**data, "status": SessionStatus.RUNNING.value}
        try:
            session = session_class(self.variant).restore(puzzle, self.rules, data)
        except (ValueError, KeyError, TypeError, InvariantViolation) as exc:
            logger.warning("session_snapshot_discarded", extra={"variant": self.variant.value, "puzzle_date": puzzle.local_date, "error": str(exc)})
            return None
        if session.status == SessionStatus.RUNNING:
            # time away from the puzzle does not count
            session.started_at = self.clock.now_ms() - session.elapsed_ms
        return session

    def _capture_outcome(self, outcome: GameOutcome) -> None:
        self._finished = outcome

    async def dispatch(self, event) -> EventResult:
        if self.session is None:
            raise RuntimeError("no puzzle loaded")
        result = self.session.apply_event(event, self.clock.now_ms())
        if (result.accepted and not isinstance(event, Tick)) or self._finished is not None:
            await self._save()
        if self._finished is not None:
            outcome, self._finished = self._finished, None
            await self._complete(outcome)
        return result

    async def tick(self) -> EventResult:
        return await self.dispatch(Tick())

    async def abandon(self) -> Optional[EventResult]:
        if self.session is None or self.session.status != SessionStatus.RUNNING:
            return None
        return await self.dispatch(HostAbandon())

    async def _save(self) -> None:
        try:
            await self.sessions.save(self.session, await self.scope())
        except StorageUnavailable as exc:
            self._warn(exc)

    async def _complete(self, outcome: GameOutcome) -> None:
        scope = await self.scope()
        today = self.clock.now_local_date()
        token = self.auth.access_token if self.auth.authenticated else None
        if token:
            await self.stats.retry_pending(scope, token)
        applied = await self.stats.apply(outcome, scope, today=today, token=token)
        if applied.warning is not None:
            self.warnings.append(applied.warning)
        self.last_delta = applied.delta
        if applied.delta.achievements:
            logger.info("achievements_unlocked", extra={"variant": self.variant.value, "scope": scope, "key": ",".join(applied.delta.achievements)})
        for cb in list(self._outcome_listeners):
            cb(outcome, applied.delta)
        if self.leaderboard is not None and self.auth.authenticated:
            await self.leaderboard.retry_pending()
            await self.leaderboard.submit_outcome(outcome, applied.delta, today, self.auth)

    def share_text(self) -> Optional[str]:
        if self.session is None or self.session.outcome is None:
            return None
        return self.rules.share_text(self.puzzle, self.session.outcome, self.session)

    # accounts ---------------------------------------------------------------
    async def sign_in(self, auth: AuthContext):
        """Switch to an account, carrying over anything played anonymously."""
        anon_scope = await self.scope() if not self.auth.authenticated else None
        self.auth = auth
        return await self.stats.login(auth.user_id, anon_scope, auth.access_token)

    def sign_out(self) -> None:
        self.auth = ANONYMOUS

    # midnight -----------------------------------------------------------------
    def watch_midnight(self) -> MidnightSubscription:
        if self._midnight is None:
            self._midnight = self.clock.subscribe_midnight(self._on_midnight)
        return self._midnight

    async def _on_midnight(self, new_date: str) -> None:
        scope = await self.scope()
        await self.stats.reconcile(scope, new_date)
        if self.session is not None and self.session.status == SessionStatus.RUNNING:
            # let the player finish; the new puzzle loads on the next ``load``
            logger.info("rollover_deferred", extra={"variant": self.variant.value, "puzzle_date": new_date})
            return
        await self.load(new_date)

    def close(self) -> None:
        if self._midnight is not None:
            self._midnight.cancel()
            self._midnight = None
