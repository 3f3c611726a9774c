"""
Tests for the ActionEngine: write-ahead audit, reversal and pattern guards
"""

import pytest
from google.auth.exceptions import RefreshError

from inboxd.client import GmailClient
from inboxd.engine import ActionEngine, safety_warnings, matches_filters
from inboxd.errors import UnsafeBatch, UsageError, UserCancelled
from inboxd.models import EmailMessage, Operation, inverse
from tests.conftest import ServiceFactory, make_message


def outcomes(results):
    return [(r.id, r.success, r.error_kind) for r in results]


class RejectingRefresh(ServiceFactory):
    """Forced refreshes fail the way Google reports a deleted OAuth client"""

    def __call__(self, account: str, force_refresh: bool = False):
        if force_refresh:
            raise RefreshError('invalid_client: The OAuth client was not found.')
        return super().__call__(account)


@pytest.fixture
def lab_messages(gmail):
    """Five unread messages from a sender matched by the short pattern 'ab'"""
    for n in range(5):
        gmail.messages[f'lab{n}'] = make_message(f'lab{n}', 'Tab Labs <news@lab.example>', f'Lab update {n}')
    return [f'lab{n}' for n in range(5)]


class TestHelpers:
    def test_inverse_pairs(self):
        assert inverse(Operation.DELETE) == Operation.RESTORE
        assert inverse(Operation.UNARCHIVE) == Operation.ARCHIVE
        assert inverse(Operation.MARK_READ) == Operation.MARK_UNREAD

    def test_audit_log_for(self, engine, deletions, archives):
        assert engine.audit_log_for(Operation.DELETE) is deletions
        assert engine.audit_log_for(Operation.ARCHIVE) is archives
        assert engine.audit_log_for(Operation.MARK_READ) is None

    def test_safety_warnings(self):
        assert safety_warnings('newsletter', None, 5) == []
        assert len(safety_warnings('ab', None, 5)) == 1
        assert len(safety_warnings(None, 'x', 101)) == 2
        assert safety_warnings(None, 'digest', 100) == []

    def test_matches_filters(self):
        message = EmailMessage(id='m1', thread_id='t1', account='personal',
                               sender='Weekly News <news@newsletter.example>', subject='Weekly digest')
        assert matches_filters(message, 'NEWSLETTER', None)
        assert matches_filters(message, 'newsletter', 'digest')
        assert not matches_filters(message, 'newsletter', 'invoice')
        assert matches_filters(message, None, None)


@pytest.mark.asyncio
class TestDeleteRestore:
    """Deletion through the deletion log"""

    async def test_round_trip(self, engine, gmail, deletions):
        results = await engine.delete('personal', ['m1', 'm2'])

        assert outcomes(results) == [('m1', True, None), ('m2', True, None)]
        assert gmail.trashed == {'m1', 'm2'}
        assert [e['id'] for e in deletions.read()] == ['m1', 'm2']

        restored = await engine.restore(last=2)

        assert {r.id for r in restored} == {'m1', 'm2'}
        assert all(r.success for r in restored)
        assert gmail.trashed == set()
        assert deletions.read() == []

    async def test_audit_entry_contents(self, engine, deletions):
        await engine.delete('personal', ['m3'])
        entry = deletions.read()[0]

        assert entry['account'] == 'personal'
        assert entry['from'] == 'Alice <alice@work.example>'
        assert entry['subject'] == 'Quarterly review'
        assert entry['threadId'] == 'thread_m3'
        assert 'deletedAt' in entry

    async def test_missing_metadata_is_not_logged(self, engine, gmail, deletions):
        results = await engine.delete('personal', ['m1', 'm_missing'])

        assert outcomes(results) == [('m1', True, None), ('m_missing', False, 'NotFound')]
        assert [e['id'] for e in deletions.read()] == ['m1']
        assert gmail.count('trash') == 1

    async def test_results_follow_input_order(self, engine):
        results = await engine.delete('personal', ['m3', 'nope', 'm1', 'm3'])
        assert [r.id for r in results] == ['m3', 'nope', 'm1']

    async def test_permanent_failure_unlogs_entry(self, engine, gmail, deletions):
        gmail.fail('trash', 'm2', 403)

        results = await engine.delete('personal', ['m1', 'm2'])

        assert outcomes(results) == [('m1', True, None), ('m2', False, 'ProviderClient4xx')]
        assert [e['id'] for e in deletions.read()] == ['m1']

    async def test_retryable_failure_keeps_entry(self, engine, gmail, deletions):
        gmail.fail('trash', 'm2', 503, always=True)

        results = await engine.delete('personal', ['m2'])

        assert outcomes(results) == [('m2', False, 'Provider5xx')]
        assert [e['id'] for e in deletions.read()] == ['m2']

    async def test_filters_narrow_ids(self, engine, gmail):
        results = await engine.delete('personal', ['m1', 'm2', 'm3'], sender='newsletter')

        assert [r.id for r in results] == ['m1']
        assert gmail.trashed == {'m1'}

    async def test_restore_by_ids(self, engine, gmail, deletions):
        await engine.delete('personal', ['m1', 'm2'])

        results = await engine.restore(ids=['m2', 'never-deleted'])

        assert outcomes(results) == [('m2', True, None), ('never-deleted', False, 'NotFound')]
        assert gmail.trashed == {'m1'}
        assert [e['id'] for e in deletions.read()] == ['m1']

    async def test_restore_last_is_newest_first(self, engine, deletions):
        await engine.delete('personal', ['m1'])
        await engine.delete('personal', ['m2'])

        results = await engine.restore(last=1)

        assert [r.id for r in results] == ['m2']
        assert [e['id'] for e in deletions.read()] == ['m1']

    async def test_restore_of_purged_message_drops_stale_entry(self, engine, gmail, deletions):
        await engine.delete('personal', ['m1'])
        del gmail.messages['m1']

        results = await engine.restore(ids=['m1'])

        assert outcomes(results) == [('m1', False, 'NotFound')]
        assert deletions.read() == []

    async def test_restore_transient_failure_keeps_entry(self, engine, gmail, deletions):
        await engine.delete('personal', ['m1'])
        gmail.fail('untrash', 'm1', 500, always=True)

        results = await engine.restore(ids=['m1'])

        assert outcomes(results) == [('m1', False, 'Provider5xx')]
        assert [e['id'] for e in deletions.read()] == ['m1']

    async def test_restore_requires_selection(self, engine):
        with pytest.raises(UsageError):
            await engine.restore()

    async def test_no_id_is_lost(self, engine, gmail, deletions):
        gmail.fail('trash', 'm3', 503, always=True)
        await engine.delete('personal', ['m1', 'm2', 'm3'])
        await engine.restore(ids=['m1'])

        logged = {e['id'] for e in deletions.read()}
        for message_id in logged:
            assert message_id in gmail.trashed or message_id == 'm3'
        assert 'm1' not in gmail.trashed and 'm1' not in logged

    async def test_failed_refresh_is_reported_per_id(self, auth_store, gmail, retry_policy, deletions, archives):
        client = GmailClient(auth_store, service_factory=RejectingRefresh({'personal': gmail}), policy=retry_policy)
        engine = ActionEngine(client, deletions, archives)
        gmail.fail('trash', 'm1', 401, always=True)

        results = await engine.delete('personal', ['m1', 'm2'])

        assert outcomes(results) == [('m1', False, 'AuthRevoked'), ('m2', True, None)]
        assert gmail.trashed == {'m2'}
        assert [e['id'] for e in deletions.read()] == ['m2']


@pytest.mark.asyncio
class TestArchive:
    async def test_archive_and_unarchive(self, engine, gmail, archives):
        await engine.archive('personal', ['m1', 'm2'])

        assert 'INBOX' not in gmail.labels_of('m1')
        assert [e['id'] for e in archives.read()] == ['m1', 'm2']
        assert 'archivedAt' in archives.read()[0]

        results = await engine.unarchive(last=5)

        assert all(r.success for r in results)
        assert 'INBOX' in gmail.labels_of('m1')
        assert archives.read() == []

    async def test_archive_does_not_touch_deletion_log(self, engine, deletions):
        await engine.archive('personal', ['m1'])
        assert deletions.read() == []


@pytest.mark.asyncio
class TestMarkRead:
    async def test_mark_read_and_unread(self, engine, gmail, deletions, archives):
        results = await engine.mark_read('personal', ['m1', 'missing'])

        assert outcomes(results) == [('m1', True, None), ('missing', False, 'NotFound')]
        assert 'UNREAD' not in gmail.labels_of('m1')
        assert not deletions.path.exists()
        assert not archives.path.exists()

        await engine.mark_unread('personal', ['m1'])
        assert 'UNREAD' in gmail.labels_of('m1')


@pytest.mark.asyncio
class TestFilterBatches:
    """Pattern-selected batches and their guards"""

    async def test_preview_matches_unread_inbox(self, engine):
        preview = await engine.preview(['personal'], sender='newsletter')

        assert preview.ids == ['m1', 'm4']
        assert preview.warnings == []

    async def test_preview_requires_a_filter(self, engine):
        with pytest.raises(UsageError):
            await engine.preview(['personal'])

    async def test_preview_limit(self, engine):
        preview = await engine.preview(['personal'], match='digest', limit=1)
        assert preview.ids == ['m1']

    async def test_dry_run_changes_nothing(self, engine, gmail, deletions, lab_messages):
        preview, results = await engine.forward_by_filter(['personal'], Operation.DELETE, sender='ab', dry_run=True)

        assert preview.ids == lab_messages
        assert preview.warnings
        assert results == []
        assert gmail.trashed == set()
        assert deletions.read() == []

    async def test_short_pattern_aborts_without_force(self, engine, gmail, deletions, lab_messages):
        with pytest.raises(UnsafeBatch) as excinfo:
            await engine.forward_by_filter(['personal'], Operation.DELETE, sender='ab')

        assert 'short pattern' in str(excinfo.value)
        assert gmail.trashed == set()
        assert not deletions.path.exists()

    async def test_force_proceeds(self, engine, gmail, deletions, lab_messages):
        preview, results = await engine.forward_by_filter(['personal'], Operation.DELETE, sender='ab', force=True)

        assert all(r.success for r in results)
        assert gmail.trashed == set(lab_messages)
        assert len(deletions.read()) == 5

    async def test_filter_archive(self, engine, gmail, archives):
        preview, results = await engine.forward_by_filter(['personal'], Operation.ARCHIVE, sender='newsletter')

        assert [r.id for r in results] == ['m1', 'm4']
        assert [e['id'] for e in archives.read()] == ['m1', 'm4']

    async def test_filter_mark_read(self, engine, gmail):
        preview, results = await engine.forward_by_filter(['personal'], Operation.MARK_READ, match='flash sale')

        assert [r.id for r in results] == ['m2']
        assert 'UNREAD' not in gmail.labels_of('m2')

    async def test_declined_confirmation_logs_nothing(self, engine, gmail, deletions):
        seen = []

        def decline(preview):
            seen.append(preview.ids)
            raise UserCancelled()

        with pytest.raises(UserCancelled):
            await engine.forward_by_filter(['personal'], Operation.DELETE, sender='newsletter', confirm_fn=decline)

        assert seen == [['m1', 'm4']]
        assert gmail.trashed == set()
        assert not deletions.path.exists()

    async def test_confirmation_is_skipped_for_unsafe_batches(self, engine, lab_messages):
        seen = []
        with pytest.raises(UnsafeBatch):
            await engine.forward_by_filter(['personal'], Operation.DELETE, sender='ab', confirm_fn=seen.append)
        assert seen == []


@pytest.mark.asyncio
class TestConfirmedIds:
    """Id batches with a confirmation hook"""

    async def test_hook_sees_resolved_messages_only(self, engine, gmail, deletions):
        seen = []

        results = await engine.delete('personal', ['gone', 'm2', 'm1'], confirm_fn=lambda p: seen.append(p.ids))

        assert seen == [['m2', 'm1']]
        assert outcomes(results) == [('gone', False, 'NotFound'), ('m2', True, None), ('m1', True, None)]
        assert [e['id'] for e in deletions.read()] == ['m2', 'm1']

    async def test_declined_hook_aborts_before_logging(self, engine, gmail, deletions):
        def decline(preview):
            raise UserCancelled()

        with pytest.raises(UserCancelled):
            await engine.archive('personal', ['m1'], confirm_fn=decline)

        assert 'INBOX' in gmail.labels_of('m1')
        assert not engine.archive_log.path.exists()

    async def test_label_flips_with_hook(self, engine, gmail):
        seen = []
        results = await engine.forward('personal', Operation.MARK_READ, ['m1'], confirm_fn=lambda p: seen.append(p.ids))

        assert seen == [['m1']]
        assert outcomes(results) == [('m1', True, None)]
        assert 'UNREAD' not in gmail.labels_of('m1')
