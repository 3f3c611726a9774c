"""
Tests for deletion, pattern and usage statistics
"""

from datetime import datetime, timezone

from inboxd.stats import deletion_stats, analyze_patterns, usage_stats


def deleted(sender: str, account: str = 'personal', when: str = '2025-10-13T09:00:00.000Z',
            unread: bool = True, subject: str = 'Hello') -> dict:
    return {
        'account': account,
        'id': f'{sender}-{when}',
        'from': sender,
        'subject': subject,
        'deletedAt': when,
        'labelIds': ['INBOX', 'UNREAD'] if unread else ['INBOX'],
    }


class TestDeletionStats:
    def test_empty(self):
        assert deletion_stats([]) == {'total': 0, 'byAccount': {}, 'topSenders': [], 'byDay': {}}

    def test_totals(self):
        entries = [
            deleted('Deals <promo@Shop.example>'),
            deleted('promo@shop.example', account='work', when='2025-10-14T10:00:00.000Z'),
            deleted('news@paper.example'),
            deleted('no address'),
        ]

        stats = deletion_stats(entries)

        assert stats['total'] == 4
        assert stats['byAccount'] == {'personal': 3, 'work': 1}
        assert stats['topSenders'][0] == {'domain': 'shop.example', 'count': 2}
        assert {'domain': 'unknown', 'count': 1} in stats['topSenders']
        assert stats['byDay'] == {'2025-10-13': 3, '2025-10-14': 1}

    def test_top_limit(self):
        entries = [deleted(f'x@d{n}.example') for n in range(5)]
        assert len(deletion_stats(entries, top=2)['topSenders']) == 2


class TestAnalyzePatterns:
    def test_frequent_and_never_read(self):
        entries = (
            [deleted('promo@shop.example', unread=False)] * 3
            + [deleted('news@paper.example')] * 2
            + [deleted('friend@mail.example')]
        )

        analysis = analyze_patterns(entries, period=30)

        assert analysis['totalDeleted'] == 6
        assert [s['domain'] for s in analysis['frequentDeleters']] == ['shop.example']
        assert analysis['frequentDeleters'][0]['deletedCount'] == 3
        assert [s['domain'] for s in analysis['neverReadSenders']] == ['paper.example']

    def test_thresholds(self):
        entries = [deleted('news@paper.example')] * 2
        analysis = analyze_patterns(entries, min_deletions=2, never_read_min=3)
        assert [s['domain'] for s in analysis['frequentDeleters']] == ['paper.example']
        assert analysis['neverReadSenders'] == []


class TestUsageStats:
    NOW = datetime(2025, 10, 20, 12, 0, tzinfo=timezone.utc)

    def test_counts_inside_window(self):
        entries = [
            {'cmd': 'delete', 'flags': ['--ids', '--confirm'], 'ts': '2025-10-19T08:00:00.000Z', 'success': True},
            {'cmd': 'delete', 'flags': ['--sender'], 'ts': '2025-10-18T08:00:00.000Z', 'success': False},
            {'cmd': 'summary', 'flags': ['--json'], 'ts': '2025-10-17T08:00:00.000Z', 'success': True},
            {'cmd': 'restore', 'flags': ['--ids'], 'ts': '2025-08-01T08:00:00.000Z', 'success': True},
            {'cmd': 'broken', 'ts': 'not a date', 'success': True},
        ]

        stats = usage_stats(entries, days=30, now=self.NOW)

        assert stats['total'] == 3
        assert stats['success'] == 2
        assert stats['failure'] == 1
        assert stats['byCommand'] == {'delete': 2, 'summary': 1}
        assert stats['byFlag']['--ids'] == {'count': 1, 'commands': 1}
        assert stats['since'] == '2025-09-20T12:00:00.000Z'

    def test_empty(self):
        stats = usage_stats([], now=self.NOW)
        assert stats['total'] == 0
        assert stats['byCommand'] == {}
