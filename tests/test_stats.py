import random

import pytest

from tandem.errors import InvariantViolation, SchemaMismatch
from tandem.schemas import GameOutcome, UserStats
from tandem.stats import apply_outcome, longest_run, merge_stats, migrate_stats, reconcile_streak


def win(date, seconds=60, variant='tandem', **kw):
    return GameOutcome(variant=variant, puzzle_date=date, won=True, time_ms=seconds * 1000, **kw)


def loss(date, variant='tandem', mistakes=4):
    return GameOutcome(variant=variant, puzzle_date=date, won=False, time_ms=90_000, mistakes=mistakes)


def fold(outcomes, today, stats=None):
    stats = stats or UserStats()
    for o in outcomes:
        stats, _ = apply_outcome(stats, o, today)
    return stats


def test_runs():
    done = ['2025-01-01', '2025-01-02', '2025-01-03', '2025-01-05']
    assert longest_run(done) == 3
    assert longest_run([]) == 0


def test_streak_grows_then_holds_on_replay():
    s, delta = apply_outcome(UserStats(), win('2025-01-01'), '2025-01-01')
    assert (s.current_streak, s.best_streak, s.completed_puzzles) == (1, 1, ['2025-01-01'])
    assert delta.first_completion_of_date and delta.new_best_time_ms == 60_000

    s, delta = apply_outcome(s, win('2025-01-01', seconds=30), '2025-01-01')
    assert (s.current_streak, s.best_streak, s.games_won, s.games_played) == (1, 1, 1, 1)
    assert s.best_time_ms == 60_000
    assert delta.replay and not delta.first_completion_of_date
    assert s.history[-1].replay is True


def test_streak_continuity():
    s = fold([win('2025-01-01', 60), win('2025-01-02', 40), win('2025-01-03', 50)], '2025-01-03')
    assert s.current_streak == 3
    assert s.best_streak == 3
    assert s.best_time_ms == 40_000
    assert s.total_time_ms == 150_000
    assert s.average_time_ms == 50_000


def test_streak_break_on_reconcile():
    s = UserStats()
    for d in ('2025-01-01', '2025-01-02'):
        s, _ = apply_outcome(s, win(d), d)
    s, changed = reconcile_streak(s, '2025-01-04')
    assert changed
    assert s.current_streak == 0
    assert s.best_streak == 2
    s, changed = reconcile_streak(s, '2025-01-05')
    assert not changed


def test_reconcile_keeps_streak_through_yesterday():
    s = fold([win('2025-01-01'), win('2025-01-02')], '2025-01-02')
    s, changed = reconcile_streak(s, '2025-01-03')
    assert not changed and s.current_streak == 2


def test_archive_loss_does_not_break_streak():
    s = UserStats(current_streak=5, best_streak=5, last_completed_date='2025-01-10', games_played=5, games_won=5)
    s, delta = apply_outcome(s, loss('2024-06-01'), '2025-01-10')
    assert s.current_streak == 5
    assert s.games_played == 6
    assert delta.new_current_streak == 5


def test_todays_loss_keeps_streak_when_yesterday_done():
    s = fold([win('2025-01-08'), win('2025-01-09')], '2025-01-09')
    s, _ = apply_outcome(s, loss('2025-01-10'), '2025-01-10')
    assert s.current_streak == 2
    assert s.games_played == 3 and s.games_won == 2


def test_todays_loss_breaks_stale_streak():
    s = UserStats(current_streak=3, best_streak=3, last_completed_date='2025-01-07', games_played=3, games_won=3)
    s, _ = apply_outcome(s, loss('2025-01-10'), '2025-01-10')
    assert s.current_streak == 0
    assert s.best_streak == 3


def test_archive_win_after_todays_loss_does_not_revive_streak():
    s = fold([win('2025-01-01'), win('2025-01-02')], '2025-01-02')
    s, _ = apply_outcome(s, loss('2025-01-04'), '2025-01-04')
    assert s.current_streak == 0
    s, _ = apply_outcome(s, win('2025-01-03'), '2025-01-04')
    assert s.current_streak == 1
    assert s.best_streak == 3
    assert s.last_completed_date == '2025-01-03'


def test_archive_win_does_not_fill_gap_in_live_streak():
    s = fold([win('2025-01-01'), win('2025-01-03')], '2025-01-03')
    assert s.current_streak == 1
    s, delta = apply_outcome(s, win('2025-01-02'), '2025-01-03')
    assert s.current_streak == 1 and delta.new_current_streak == 1
    assert s.best_streak == 3
    assert s.last_completed_date == '2025-01-03'


def test_loss_after_win_on_same_date_is_a_replay():
    s = fold([win('2025-01-05')], '2025-01-05')
    s, delta = apply_outcome(s, loss('2025-01-05'), '2025-01-05')
    assert delta.replay
    assert s.games_played == 1 and s.current_streak == 1


def test_counters_and_perfect_solves():
    s = fold([
        win('2025-01-01', perfect=True),
        GameOutcome(variant='tandem', puzzle_date='2025-01-02', won=True, time_ms=1000, mistakes=2, hints_used=1),
        loss('2025-01-03', mistakes=4),
    ], '2025-01-03')
    assert s.perfect_solves == 1
    assert s.total_mistakes == 6
    assert s.hints_used_total == 1
    assert s.win_rate == 66.7


def test_too_many_mistakes_is_an_invariant_violation():
    with pytest.raises(InvariantViolation) as exc:
        apply_outcome(UserStats(), loss('2025-01-01', mistakes=5), '2025-01-01')
    assert exc.value.payload['max_mistakes'] == 4
    # the mini has no mistake cap
    apply_outcome(UserStats(), loss('2025-01-01', variant='mini', mistakes=40), '2025-01-01')


def test_history_is_capped():
    outcomes = [win(f'2024-{m:02d}-{d:02d}') for m in (1, 2, 3) for d in range(1, 21)]
    s = fold(outcomes, '2024-03-20')
    assert len(s.history) == 50
    assert s.history[-1].puzzle_date == '2024-03-20'
    assert s.games_won == 60


def test_apply_order_does_not_change_set_and_extreme_fields():
    today = '2025-01-06'
    outcomes = [
        win('2025-01-01', 60), win('2025-01-02', 40), win('2025-01-03', 50),
        loss('2025-01-04'), win('2025-01-04', 70), win('2025-01-05', 45),
        win('2025-01-02', 40), loss('2024-12-01'),
    ]
    expected, _ = reconcile_streak(fold(sorted(outcomes, key=lambda o: o.puzzle_date), today), today)
    rng = random.Random(3)
    for _ in range(60):
        shuffled = outcomes[:]
        rng.shuffle(shuffled)
        got, _ = reconcile_streak(fold(shuffled, today), today)
        assert got.completed_puzzles == expected.completed_puzzles
        assert got.games_won == expected.games_won
        assert got.best_streak == expected.best_streak
        assert got.best_time_ms == expected.best_time_ms
        assert got.best_streak >= got.current_streak >= 0
        assert got.games_won <= got.games_played
    assert expected.best_streak == 5
    assert expected.best_time_ms == 40_000


def test_merge_takes_max_and_union():
    account = fold([win('2025-01-01', 50), win('2025-01-02', 40), loss('2025-01-03')], '2025-01-03')
    anon = fold([win('2025-01-05', 30)], '2025-01-05')
    merged = merge_stats(account, anon)
    assert merged.completed_puzzles == ['2025-01-01', '2025-01-02', '2025-01-05']
    assert merged.games_won == 3
    assert merged.games_played == 3
    assert merged.best_time_ms == 30_000
    assert merged.last_completed_date == '2025-01-05'
    assert merged.current_streak == 1
    assert merged.best_streak == 2
    assert len(merged.history) == 4


def test_merge_ignores_zero_best_time_and_keeps_extras():
    a = UserStats(best_time_ms=0, theme='dark')
    b = UserStats(best_time_ms=25_000, games_played=1, games_won=1, completed_puzzles=['2025-01-01'],
                  last_completed_date='2025-01-01', current_streak=1, best_streak=1)
    merged = merge_stats(a, b)
    assert merged.best_time_ms == 25_000
    assert merged.model_extra['theme'] == 'dark'


def test_migrate_legacy_record():
    raw = {
        'played': 10, 'wins': 7, 'currentStreak': 3, 'bestStreak': 5,
        'lastStreakDate': '2025-01-09', 'bestTime': 45, 'theme': 'dark',
    }
    stats, warning = migrate_stats(raw)
    assert isinstance(warning, SchemaMismatch)
    assert stats.games_played == 10 and stats.games_won == 7
    assert stats.current_streak == 3 and stats.best_streak == 5
    assert stats.last_completed_date == '2025-01-09'
    assert stats.best_time_ms == 45_000
    assert stats.schema_version == 2
    assert stats.model_dump()['theme'] == 'dark'


def test_migrate_current_and_unknown_versions():
    stats, warning = migrate_stats(UserStats(games_played=2, games_won=1).model_dump(mode='json'))
    assert warning is None and stats.games_played == 2

    stats, warning = migrate_stats({'schema_version': 99, 'games_played': 'x', 'completed_puzzles': ['2025-01-01', 'bogus']})
    assert isinstance(warning, SchemaMismatch)
    assert stats.games_played == 1 and stats.games_won == 1
    assert stats.completed_puzzles == ['2025-01-01']

    assert migrate_stats(None) == (UserStats(), None)
