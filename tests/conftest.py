import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `tandem` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_rate_limiter():
	# Clear in-memory rate limiter and response cache between tests to avoid cross-test flakiness
	import tandem.main as tandem_main
	tandem_main._RATE_LIMIT_STORE.clear()
	tandem_main._LEADERBOARD_CACHE.clear()
	yield


class FakeClock:
	"""Settable wall clock for CalendarClock: epoch seconds."""

	def __init__(self, ts):
		self.ts = ts

	def __call__(self):
		return self.ts

	def advance(self, seconds):
		self.ts += seconds


@pytest.fixture
def fake_now():
	# 2025-01-10 12:00:00 UTC
	return FakeClock(1736510400.0)
