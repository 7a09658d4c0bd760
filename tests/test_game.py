from datetime import timezone

import anyio

from tandem.auth import AuthContext
from tandem.clock import CalendarClock
from tandem.game import GameCoordinator
from tandem.grouping import Submit, ToggleItem
from tandem.leaderboard import LeaderboardClient
from tandem.puzzles import BundlePuzzleProvider
from tandem.session import CheckSlot, InputLetter, SessionStatus, Tick
from tandem.stats import StatsStore
from tandem.storage import MemoryStorage


WORDS = ['sun', 'moon', 'star', 'comet']


def tandem_day(number):
    return {
        'puzzle_number': number,
        'content': {'theme': 'Sky', 'pairs': [['☀️', '🌞'], ['🌙', '🌕'], ['⭐', '✨'], ['☄️', '🌠']]},
        'solution': WORDS,
    }


GROUPS = [
    {'id': 'pixar', 'connection': 'Pixar films', 'difficulty': 'easiest', 'items': ['Up', 'Cars', 'Coco', 'Brave']},
    {'id': 'nolan', 'connection': 'Nolan films', 'difficulty': 'easy', 'items': ['Memento', 'Tenet', 'Dunkirk', 'Inception']},
    {'id': 'weather', 'connection': 'Weather words', 'difficulty': 'medium', 'items': ['Twister', 'Storm', 'Frozen', 'Sunshine']},
    {'id': 'heist', 'connection': 'Heist movies', 'difficulty': 'hardest', 'items': ['Heat', 'Inside Man', 'The Town', 'Rififi']},
]


def provider():
    return BundlePuzzleProvider({
        'tandem': {'2025-01-10': tandem_day(149), '2025-01-11': tandem_day(150)},
        'grouping': {'2025-01-10': {'content': {'groups': GROUPS}}},
    })


class Env:
    def __init__(self, fake_now, storage=None, variant='tandem'):
        self.fake_now = fake_now
        self.clock = CalendarClock(fake_now, tz=timezone.utc)
        self.storage = storage if storage is not None else MemoryStorage()
        self.provider = provider()
        self.stats = StatsStore(self.storage, variant, clock=self.clock)
        self.variant = variant

    def coordinator(self, **kw):
        return GameCoordinator(self.variant, self.provider, self.stats, clock=self.clock, **kw)


async def type_word(coord, slot, word):
    for ch in word:
        res = await coord.dispatch(InputLetter(slot, ch))
        assert res.accepted, res.error


async def solve(env, coord):
    for slot, word in enumerate(WORDS):
        await type_word(coord, slot, word)
        env.fake_now.advance(15)
        await coord.dispatch(CheckSlot(slot))


def test_solving_today_updates_stats_once(fake_now):
    env = Env(fake_now)
    coord = env.coordinator()
    seen = []
    coord.on_outcome(lambda outcome, delta: seen.append((outcome, delta)))

    async def main():
        session = await coord.load()
        assert session.status == SessionStatus.NOT_STARTED
        assert coord.puzzle.puzzle_number == 149
        await solve(env, coord)
        scope = await coord.scope()
        return scope

    scope = anyio.run(main)
    assert len(seen) == 1
    outcome, delta = seen[0]
    assert outcome.won and outcome.perfect and outcome.time_ms == 60_000
    assert delta.new_current_streak == 1 and delta.new_best_time_ms == 60_000
    assert delta.achievements == ['first_win']
    stats = env.stats.get(scope)
    assert stats.games_won == 1 and stats.completed_puzzles == ['2025-01-10']
    assert scope.startswith('anon:')
    assert coord.share_text().startswith('Daily Tandem #149\n🔍 Theme Discovered!\n⏱️ 1:00 | ❌ 0/4')


def test_finished_day_reloads_read_only(fake_now):
    env = Env(fake_now)

    async def main():
        first = env.coordinator()
        await first.load()
        await solve(env, first)

        again = env.coordinator()
        session = await again.load()
        assert session.status == SessionStatus.SOLVED
        res = await again.dispatch(InputLetter(0, 'x'))
        assert not res.accepted
        return await again.scope()

    scope = anyio.run(main)
    assert env.stats.get(scope).games_played == 1


def test_abandoned_attempt_resumes_without_counting_time_away(fake_now):
    env = Env(fake_now)

    async def main():
        coord = env.coordinator()
        await coord.load()
        await type_word(coord, 0, 'su')
        env.fake_now.advance(20)
        res = await coord.abandon()
        assert res.status == SessionStatus.ABANDONED
        assert await coord.abandon() is None

        env.fake_now.advance(3600)
        resumed = env.coordinator()
        session = await resumed.load()
        assert session.status == SessionStatus.RUNNING
        assert session.answers_state[0] == 'SU'
        assert session.elapsed_ms == 20_000

        env.fake_now.advance(5)
        await resumed.tick()
        assert session.elapsed_ms == 25_000

    anyio.run(main)


def test_missing_puzzle_and_corrupt_snapshot(fake_now):
    env = Env(fake_now)

    async def main():
        coord = env.coordinator()
        assert await coord.load('2025-02-01') is None
        assert coord.session is None

        scope = await coord.scope()
        await env.storage.set(f'tandem:session:{scope}:2025-01-10', {'puzzle_date': '2025-01-10', 'status': 'bogus'})
        session = await coord.load('2025-01-10')
        assert session.status == SessionStatus.NOT_STARTED

    anyio.run(main)


class RecordingApi:
    def __init__(self):
        self.calls = []

    async def request_json(self, method, path, json=None, params=None, token=None):
        self.calls.append((path, json, token))
        return {'success': True, 'rank': 1}


def test_signed_in_player_posts_scores(fake_now):
    env = Env(fake_now)
    api = RecordingApi()
    auth = AuthContext(user_id='42', access_token='tok', username='ann')
    coord = env.coordinator(auth=auth, leaderboard=LeaderboardClient(api, clock=env.clock))

    async def main():
        await coord.load()
        await solve(env, coord)

    anyio.run(main)
    assert [c[0] for c in api.calls] == ['/leaderboard/daily', '/leaderboard/streak']
    assert api.calls[0][1]['score'] == 60
    assert api.calls[1][1] == {'gameType': 'tandem', 'score': 1}
    assert all(c[2] == 'tok' for c in api.calls)
    assert env.stats.get('42').games_won == 1


def test_sign_in_carries_anonymous_progress(fake_now):
    env = Env(fake_now)
    coord = env.coordinator()

    async def main():
        await coord.load()
        await solve(env, coord)
        anon = await coord.scope()
        merged = await coord.sign_in(AuthContext(user_id='42', access_token='tok'))
        assert await coord.scope() == '42'
        return anon, merged

    anon, merged = anyio.run(main)
    assert merged.games_won == 1 and merged.current_streak == 1
    assert env.stats.get(anon) is None
    assert env.stats.get('42').completed_puzzles == ['2025-01-10']

    coord.sign_out()
    assert not coord.auth.authenticated


def test_midnight_rolls_over_to_the_new_puzzle(fake_now):
    env = Env(fake_now)
    coord = env.coordinator()

    async def main():
        await coord.load()
        sub = coord.watch_midnight()
        env.fake_now.advance(12 * 3600 + 1)
        assert sub.check_now()
        await sub.drain()
        assert coord.puzzle.local_date == '2025-01-11'
        assert coord.puzzle.puzzle_number == 150
        coord.close()

    anyio.run(main)


def test_midnight_waits_for_a_running_attempt(fake_now):
    env = Env(fake_now)
    coord = env.coordinator()

    async def main():
        await coord.load()
        await type_word(coord, 0, 's')
        sub = coord.watch_midnight()
        env.fake_now.advance(12 * 3600 + 1)
        assert sub.check_now()
        await sub.drain()
        assert coord.puzzle.local_date == '2025-01-10'
        assert coord.session.status == SessionStatus.RUNNING
        coord.close()

    anyio.run(main)


def test_grouping_coordinator_and_share(fake_now):
    env = Env(fake_now, variant='reel')
    coord = env.coordinator()

    async def main():
        await coord.load('2025-01-10')
        for group in GROUPS:
            for item in group['items']:
                assert (await coord.dispatch(ToggleItem(item))).accepted
            await coord.dispatch(Submit())
            env.fake_now.advance(10)
        await coord.dispatch(Tick())
        return await coord.scope()

    scope = anyio.run(main)
    assert coord.session.status == SessionStatus.SOLVED
    assert coord.share_text() == 'Reel Connections 1/10/2025\nYou won!\n🍿🍿🍿🍿\nTime: 0:30'
    assert env.stats.get(scope).games_won == 1
