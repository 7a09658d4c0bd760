"""
Clock & calendar service.

Puzzles roll over at the player's local midnight, so every date the core
works with is a local calendar date rendered as ``YYYY-MM-DD``. Server time
and UTC are never consulted unless the host injects a UTC tzinfo.
"""
import asyncio
import datetime
import inspect
import math
import re
import time
from typing import Any, Callable, List, Optional

from . import config
from .logging_utils import get_logger

logger = get_logger("tandem.clock")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def is_valid_date(value: Any) -> bool:
    if not isinstance(value, str) or not _DATE_RE.match(value):
        return False
    try:
        datetime.date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_date(value: str) -> datetime.date:
    if not is_valid_date(value):
        raise ValueError(f"Invalid date format: {value!r}. Expected YYYY-MM-DD.")
    return datetime.date.fromisoformat(value)


def format_date(d: datetime.date) -> str:
    return d.isoformat()


def add_days(value: str, days: int) -> str:
    return format_date(parse_date(value) + datetime.timedelta(days=days))


def previous_day(value: str) -> str:
    return add_days(value, -1)


def days_between(start: str, end: str) -> int:
    """Whole days from ``start`` to ``end`` (negative when end is earlier)."""
    return (parse_date(end) - parse_date(start)).days


def puzzle_number_for_date(value: str) -> int:
    """Puzzle number for a local date; the launch date is puzzle #1."""
    n = days_between(config.LAUNCH_DATE, value) + 1
    if n < 1:
        raise ValueError(f"{value} is before the first puzzle ({config.LAUNCH_DATE})")
    return n


def date_for_puzzle_number(num: int) -> str:
    if not isinstance(num, int) or isinstance(num, bool) or num < 1:
        raise ValueError(f"Invalid puzzle number: {num}. Must be a positive integer.")
    return add_days(config.LAUNCH_DATE, num - 1)


class CalendarClock:
    """Wall clock + local timezone.

    ``now`` returns epoch seconds (``time.time`` by default). ``tz`` pins the
    timezone; when omitted the host's local timezone is used.
    """

    def __init__(self, now: Callable[[], Any] = time.time, tz: Optional[datetime.tzinfo] = None):
        self._now = now
        self.tz = tz
        self._last_ts: Optional[float] = None
        self._last_date: Optional[str] = None

    def _read(self) -> Optional[float]:
        try:
            ts = self._now()
        except Exception as exc:
            logger.warning("wall_clock_unavailable", extra={"error": str(exc)})
            return None
        if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts) or ts <= 0:
            logger.warning("wall_clock_invalid", extra={"error": repr(ts)})
            return None
        self._last_ts = float(ts)
        return float(ts)

    def _local(self, ts: float) -> datetime.datetime:
        if self.tz is not None:
            return datetime.datetime.fromtimestamp(ts, self.tz)
        return datetime.datetime.fromtimestamp(ts)

    def now_local_date(self) -> str:
        ts = self._read()
        if ts is None:
            return self._last_date or config.LAUNCH_DATE
        self._last_date = self._local(ts).date().isoformat()
        return self._last_date

    def now_ms(self) -> int:
        ts = self._read()
        if ts is None:
            ts = self._last_ts or 0.0
        return int(ts * 1000)

    def seconds_until_midnight(self) -> float:
        ts = self._read()
        if ts is None:
            return float(config.MIDNIGHT_POLL_SECONDS)
        local = self._local(ts)
        tomorrow = local.date() + datetime.timedelta(days=1)
        if self.tz is not None:
            midnight = datetime.datetime.combine(tomorrow, datetime.time(), tzinfo=self.tz)
        else:
            midnight = datetime.datetime.combine(tomorrow, datetime.time())
        return max(0.0, midnight.timestamp() - ts)

    def subscribe_midnight(self, cb: Callable[[str], Any], poll_seconds: Optional[float] = None) -> "MidnightSubscription":
        sub = MidnightSubscription(self, cb, poll_seconds or config.MIDNIGHT_POLL_SECONDS)
        sub.start()
        return sub


class MidnightSubscription:
    """Fires ``cb(new_date)`` whenever the local date changes.

    The watcher sleeps until the next local midnight but never longer than
    ``poll_seconds``, so a resume from suspend or a timezone change is picked
    up on the next wake. Without a running event loop the subscription is
    passive and the host drives it through ``check_now``.
    """

    def __init__(self, clock: CalendarClock, cb: Callable[[str], Any], poll_seconds: float):
        self.clock = clock
        self.cb = cb
        self.poll_seconds = poll_seconds
        self.last_date = clock.now_local_date()
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None
        self._pending: List[asyncio.Task] = []

    def start(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        while not self.cancelled:
            delay = min(self.clock.seconds_until_midnight() + 0.05, self.poll_seconds)
            await asyncio.sleep(max(delay, 0.01))
            self.check_now()

    def check_now(self) -> bool:
        """Re-evaluate the local date; returns True when a rollover fired."""
        if self.cancelled:
            return False
        today = self.clock.now_local_date()
        if today == self.last_date:
            return False
        self.last_date = today
        try:
            result = self.cb(today)
            if inspect.isawaitable(result):
                fut = asyncio.ensure_future(result)
                self._pending.append(fut)
                fut.add_done_callback(lambda f, day=today: self._settled(f, day))
        except Exception:
            logger.exception("midnight_callback_failed", extra={"puzzle_date": today})
        return True

    def _settled(self, fut: "asyncio.Future", day: str) -> None:
        if fut in self._pending:
            self._pending.remove(fut)
        if not fut.cancelled() and fut.exception() is not None:
            logger.error("midnight_callback_failed", exc_info=fut.exception(), extra={"puzzle_date": day})

    async def drain(self) -> None:
        """Wait for callbacks fired by ``check_now`` to finish; failures are only logged."""
        pending = list(self._pending)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def cancel(self) -> None:
        self.cancelled = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
