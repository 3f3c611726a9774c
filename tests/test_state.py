"""
Tests for the seen-state tracker
"""

import json

import pytest

from inboxd.state import SeenState, DAY_MS


class Clock:
    """Settable millisecond clock"""
    def __init__(self, now: int = 1_760_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def state(config_dir, clock) -> SeenState:
    return SeenState(config_dir, clock=clock)


class TestSeenState:
    """get_new / mark_seen"""

    def test_everything_is_new_initially(self, state):
        assert state.get_new('personal', ['a', 'b']) == ['a', 'b']
        assert state.last_check('personal') is None

    def test_mark_seen_filters_later_checks(self, state):
        state.mark_seen('personal', ['a', 'b'])
        assert state.get_new('personal', ['a', 'b', 'c']) == ['c']

    def test_get_new_keeps_input_order(self, state):
        state.mark_seen('personal', ['b'])
        assert state.get_new('personal', ['d', 'b', 'a', 'c']) == ['d', 'a', 'c']

    def test_mark_seen_is_a_union(self, state):
        state.mark_seen('personal', ['a'])
        state.mark_seen('personal', ['b'])
        assert state.seen_ids('personal') == {'a', 'b'}

    def test_mark_seen_is_idempotent(self, state, clock):
        state.mark_seen('personal', ['a'])
        first = state.load('personal')['seenEmailIds']

        clock.now += 1000
        state.mark_seen('personal', ['a'])

        assert state.load('personal')['seenEmailIds'] == first

    def test_accounts_are_separate(self, state):
        state.mark_seen('personal', ['a'])
        assert state.get_new('work', ['a']) == ['a']

    def test_empty_mark_writes_nothing(self, state):
        state.mark_seen('personal', [])
        assert not state.path('personal').exists()

    def test_clear(self, state):
        state.mark_seen('personal', ['a'])
        state.clear('personal')
        assert state.seen_ids('personal') == set()


class TestExpiry:
    """Entries older than the TTL are pruned on write"""

    def test_old_entries_pruned(self, state, clock):
        state.mark_seen('personal', ['old'])
        clock.now += 8 * DAY_MS

        state.mark_seen('personal', ['fresh'])

        assert state.seen_ids('personal') == {'fresh'}

    def test_entries_within_ttl_kept(self, state, clock):
        state.mark_seen('personal', ['recent'])
        clock.now += 6 * DAY_MS

        state.update_last_check('personal')

        assert state.seen_ids('personal') == {'recent'}

    def test_custom_ttl(self, config_dir, clock):
        state = SeenState(config_dir, ttl_days=1, clock=clock)
        state.mark_seen('personal', ['a'])
        clock.now += 2 * DAY_MS
        state.mark_seen('personal', ['b'])
        assert state.seen_ids('personal') == {'b'}


class TestTimestamps:
    def test_last_check_and_notified(self, state, clock):
        state.update_last_check('personal')
        clock.now += 500
        state.update_last_notified_at('personal')

        assert state.last_check('personal') == clock.now - 500
        assert state.last_notified_at('personal') == clock.now

    def test_timestamps_survive_mark_seen(self, state, clock):
        state.update_last_notified_at('personal')
        state.mark_seen('personal', ['a'])
        assert state.last_notified_at('personal') == clock.now


class TestStoredFormat:
    def test_file_layout(self, state, clock):
        state.mark_seen('personal', ['a'])
        data = json.loads(state.path('personal').read_text())

        assert data['seenEmailIds'] == [{'id': 'a', 'timestamp': clock.now}]
        assert 'lastCheck' in data
        assert state.path('personal').name == 'state-personal.json'

    def test_legacy_string_entries_count_as_seen(self, state, clock):
        state.config_dir.mkdir(parents=True, exist_ok=True)
        state.path('personal').write_text(json.dumps({'lastCheck': 1, 'seenEmailIds': ['a', 'b']}))

        assert state.get_new('personal', ['a', 'c']) == ['c']

        state.mark_seen('personal', ['c'])
        entries = state.load('personal')['seenEmailIds']
        assert {e['id'] for e in entries} == {'a', 'b', 'c'}
        assert all(e['timestamp'] == clock.now for e in entries)

    def test_malformed_file_starts_fresh(self, state):
        state.config_dir.mkdir(parents=True, exist_ok=True)
        state.path('personal').write_text('not json')
        assert state.get_new('personal', ['a']) == ['a']

    def test_non_utf8_file_starts_fresh(self, state):
        state.config_dir.mkdir(parents=True, exist_ok=True)
        state.path('personal').write_bytes(b'{"seenEmailIds": ["\xff\xfe"]}')

        assert state.get_new('personal', ['a']) == ['a']

        state.mark_seen('personal', ['a'])
        assert state.get_new('personal', ['a', 'b']) == ['b']
