import pytest

from tandem.errors import ClockSkew, InvariantViolation, UserInputRejected
from tandem.schemas import PuzzleDescriptor
from tandem.session import (
    Backspace,
    CheckSlot,
    HostAbandon,
    InputLetter,
    Session,
    SessionStatus,
    Start,
    Tick,
    UseHint,
)
from tandem.variants import get_rules


def tandem_puzzle(date='2025-01-10'):
    return PuzzleDescriptor(
        variant='tandem',
        local_date=date,
        puzzle_number=149,
        content={'theme': 'Sky', 'pairs': [['☀️', '🌞'], ['🌙', '🌕'], ['⭐', '✨'], ['☄️', '🌠']]},
        solution=['sun,sunshine', 'moon', 'star', 'comet'],
    )


def type_word(s, slot, word, now):
    for ch in word:
        res = s.apply_event(InputLetter(slot, ch), now)
        assert res.accepted, res.error


def test_first_input_starts_session():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    assert s.status == SessionStatus.NOT_STARTED
    res = s.apply_event(InputLetter(0, 's'), 5_000)
    assert res.accepted
    assert s.status == SessionStatus.RUNNING
    assert s.started_at == 5_000
    assert s.answers_state[0] == 'S'


def test_rejected_input_leaves_state_alone():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    s.apply_event(Start(), 0)
    before = s.snapshot()
    for event in (InputLetter(9, 'a'), InputLetter(0, '7'), Backspace(1), CheckSlot(2)):
        res = s.apply_event(event, 100)
        assert not res.accepted
        assert isinstance(res.error, UserInputRejected)
    after = s.snapshot()
    before.pop('elapsed_ms')
    after.pop('elapsed_ms')
    assert before == after


def test_rejected_first_input_does_not_start_timer():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    changes = []
    s.on_state_change(lambda session: changes.append(session.status))
    for event in (InputLetter(9, 'a'), InputLetter(0, '7'), CheckSlot(0)):
        res = s.apply_event(event, 1_000)
        assert not res.accepted
        assert res.status == SessionStatus.NOT_STARTED
    assert s.status == SessionStatus.NOT_STARTED
    assert s.started_at is None and s.elapsed_ms == 0
    assert changes == []

    assert s.apply_event(InputLetter(0, 's'), 4_000).accepted
    assert s.started_at == 4_000
    assert changes == [SessionStatus.RUNNING]


def test_hint_unlock_at_first_correct():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    assert s.hints_unlocked == 1
    type_word(s, 0, 'sun', 1_000)
    res = s.apply_event(CheckSlot(0), 2_000)
    assert res.correct is True
    assert res.hints_unlocked_changed is True
    assert s.hints_unlocked == 2

    type_word(s, 1, 'moon', 3_000)
    res = s.apply_event(CheckSlot(1), 4_000)
    assert res.correct is True
    assert res.hints_unlocked_changed is False
    assert s.hints_unlocked == 2


def test_alternate_answer_is_accepted():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    type_word(s, 0, 'sunshine', 0)
    res = s.apply_event(CheckSlot(0), 10)
    assert res.correct
    assert res.details['canonical'] == 'SUN'
    assert res.details['alternate_matched'] is True


def test_hard_mode_timeout_clamps_time():
    rules = get_rules('tandem', hard_mode=True, hard_mode_time_limit_ms=120_000)
    s = Session(tandem_puzzle(), rules)
    outcomes = []
    s.on_outcome(outcomes.append)
    s.apply_event(Start(), 1_000)
    res = s.apply_event(Tick(), 1_000 + 120_001)
    assert res.status == SessionStatus.FAILED
    assert len(outcomes) == 1
    assert outcomes[0].won is False
    assert outcomes[0].time_ms == 120_000
    assert s.elapsed_ms == 120_000
    assert res.outcome == outcomes[0]


def test_input_after_time_limit_is_not_applied():
    rules = get_rules('tandem', hard_mode=True, hard_mode_time_limit_ms=120_000)
    s = Session(tandem_puzzle(), rules)
    s.apply_event(Start(), 0)
    res = s.apply_event(InputLetter(0, 's'), 200_000)
    assert not res.accepted
    assert s.status == SessionStatus.FAILED
    assert s.answers_state[0] == ''


def test_mistakes_exhaust_into_failure():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    outcomes = []
    s.on_outcome(outcomes.append)
    for i in range(4):
        type_word(s, 1, 'mars', 1_000 * i)
        res = s.apply_event(CheckSlot(1), 1_000 * i + 500)
        assert res.correct is False
        if i < 3:
            for _ in range(4):
                s.apply_event(Backspace(1), 1_000 * i + 600)
    assert s.status == SessionStatus.FAILED
    assert s.mistakes == 4
    assert [o.won for o in outcomes] == [False]
    assert not s.apply_event(InputLetter(0, 'a'), 10_000).accepted


def test_solving_every_slot_emits_one_perfect_outcome():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    outcomes, changes = [], []
    s.on_outcome(outcomes.append)
    s.on_state_change(lambda sess: changes.append(sess.status))
    for slot, word in enumerate(['sun', 'moon', 'star', 'comet']):
        type_word(s, slot, word, 1_000)
        s.apply_event(CheckSlot(slot), 61_000)
    assert s.status == SessionStatus.SOLVED
    assert len(outcomes) == 1
    o = outcomes[0]
    assert o.won and o.perfect and o.time_ms == 60_000 and o.puzzle_date == '2025-01-10'
    assert changes[-1] == SessionStatus.SOLVED
    assert s.apply_event(Tick(), 99_000).accepted is False
    assert len(outcomes) == 1


def test_locked_letters_survive_input_and_backspace():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    res = s.apply_event(UseHint(0), 0)
    assert res.accepted and res.revealed == 'S'
    assert s.locked_letters == {0: {0: 'S'}}
    assert s.answers_state[0] == 'S'

    # typing skips the locked cell, backspace never removes it
    type_word(s, 0, 'x', 10)
    assert s.cells[0][:2] == ['S', 'X']
    assert s.apply_event(Backspace(0), 20).accepted
    assert not s.apply_event(Backspace(0), 30).accepted
    assert s.cells[0][0] == 'S'

    # no second hint until another slot is solved
    assert not s.apply_event(UseHint(0), 40).accepted
    type_word(s, 1, 'moon', 50)
    s.apply_event(CheckSlot(1), 60)
    res = s.apply_event(UseHint(0), 70)
    assert res.accepted and res.details['position'] == 1
    assert s.locked_letters[0] == {0: 'S', 1: 'U'}
    assert s.hints_used == 2
    assert s.hinted_slots == [0]


def test_fully_revealed_slot_still_needs_a_check():
    mini = PuzzleDescriptor(variant='mini', local_date='2025-01-10', solution=['ox'])
    s = Session(mini, get_rules('mini'))
    for _ in range(2):
        assert s.apply_event(UseHint(0), 0).accepted
    assert s.answers_state[0] == 'OX'
    assert s.status == SessionStatus.RUNNING
    assert not s.apply_event(UseHint(0), 0).accepted
    s.apply_event(CheckSlot(0), 5_000)
    assert s.status == SessionStatus.SOLVED
    assert s.outcome.hints_used == 2 and not s.outcome.perfect


def test_mini_has_no_mistake_limit():
    mini = PuzzleDescriptor(variant='mini', local_date='2025-01-10', solution=['cat', 'dog'])
    s = Session(mini, get_rules('mini'))
    for i in range(10):
        type_word(s, 0, 'cow', i)
        s.apply_event(CheckSlot(0), i)
        for _ in range(3):
            s.apply_event(Backspace(0), i)
    assert s.mistakes == 10
    assert s.status == SessionStatus.RUNNING


def test_clock_skew_is_clamped():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    s.apply_event(Start(), 10_000)
    res = s.apply_event(Tick(), 15_000)
    assert s.elapsed_ms == 5_000 and res.error is None
    res = s.apply_event(Tick(), 12_000)
    assert res.accepted
    assert isinstance(res.error, ClockSkew)
    assert res.error.details['behind_ms'] == 3_000
    assert s.elapsed_ms == 5_000
    assert s.clock_skews == 1
    assert s.status == SessionStatus.RUNNING
    # the skew is reported on the clamped event only
    assert s.apply_event(Tick(), 16_000).error is None
    assert s.elapsed_ms == 6_000


def test_abandon_only_from_running_and_never_emits():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    outcomes = []
    s.on_outcome(outcomes.append)
    assert not s.apply_event(HostAbandon(), 0).accepted
    s.apply_event(Start(), 0)
    res = s.apply_event(HostAbandon(), 30_000)
    assert res.accepted
    assert s.status == SessionStatus.ABANDONED
    assert s.elapsed_ms == 30_000
    assert outcomes == []
    assert s.outcome is None


def test_invariant_violation_is_raised_with_payload():
    s = Session(tandem_puzzle(), get_rules('tandem'))
    s.apply_event(Start(), 0)
    s.mistakes = 9
    with pytest.raises(InvariantViolation) as exc:
        s.apply_event(Tick(), 100)
    assert exc.value.payload['mistakes'] == 9


def test_snapshot_restore_round_trip():
    puzzle = tandem_puzzle()
    rules = get_rules('tandem')
    s = Session(puzzle, rules)
    s.apply_event(UseHint(0), 0)
    type_word(s, 0, 'u', 100)
    type_word(s, 1, 'moon', 200)
    s.apply_event(CheckSlot(1), 300)

    restored = Session.restore(puzzle, rules, s.snapshot())
    assert restored.status == SessionStatus.RUNNING
    assert restored.answers_state == s.answers_state
    assert restored.locked_letters == s.locked_letters
    assert restored.correct_mask == s.correct_mask
    assert restored.hints_unlocked == 2 and restored.hints_used == 1
    # the restored hint lock still holds
    restored.apply_event(Backspace(0), 400)
    assert not restored.apply_event(Backspace(0), 500).accepted


def test_restored_terminal_session_is_read_only():
    puzzle = tandem_puzzle()
    rules = get_rules('tandem')
    s = Session(puzzle, rules)
    for slot, word in enumerate(['sun', 'moon', 'star', 'comet']):
        type_word(s, slot, word, 0)
        s.apply_event(CheckSlot(slot), 42_000)

    outcomes = []
    restored = Session.restore(puzzle, rules, s.snapshot())
    restored.on_outcome(outcomes.append)
    assert restored.status == SessionStatus.SOLVED
    assert restored.outcome == s.outcome
    assert not restored.apply_event(InputLetter(0, 'a'), 50_000).accepted
    assert outcomes == []


def test_restore_rejects_other_date_and_wrong_variant():
    rules = get_rules('tandem')
    s = Session(tandem_puzzle('2025-01-10'), rules)
    with pytest.raises(ValueError):
        Session.restore(tandem_puzzle('2025-01-11'), rules, s.snapshot())
    with pytest.raises(ValueError):
        Session(tandem_puzzle(), get_rules('mini'))
