"""
Stats - aggregations over the audit and usage logs
"""

from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Optional

from inboxd import config
from inboxd.audit import parse_timestamp, to_iso
from inboxd.messages import extract_domain


def sender_domain(sender: str) -> str:
    return extract_domain(sender, fallback='unknown')


def deletion_stats(entries: List[Dict], top: int = 10) -> Dict:
    """Totals by account, sender domain and day for a list of deletion entries"""
    by_account = Counter(e.get('account') or 'default' for e in entries)
    by_sender = Counter(sender_domain(e.get('from', '')) for e in entries)

    by_day = Counter()
    for entry in entries:
        moment = parse_timestamp(entry.get('deletedAt'))
        if moment:
            by_day[moment.date().isoformat()] += 1

    return {
        'total': len(entries),
        'byAccount': dict(by_account),
        'topSenders': [{'domain': d, 'count': c} for d, c in by_sender.most_common(top)],
        'byDay': dict(sorted(by_day.items())),
    }


def analyze_patterns(entries: List[Dict], period: int = config.STATS_WINDOW_DAYS,
                     min_deletions: int = config.SUGGEST_MIN_DELETIONS,
                     never_read_min: int = config.NEVER_READ_MIN_DELETIONS) -> Dict:
    """Frequently deleted senders and senders whose mail was always deleted unread"""
    sender_stats = defaultdict(lambda: {'count': 0, 'unread': 0, 'subjects': []})
    for entry in entries:
        stats = sender_stats[sender_domain(entry.get('from', ''))]
        stats['count'] += 1
        if 'UNREAD' in (entry.get('labelIds') or []):
            stats['unread'] += 1
        subject = (entry.get('subject') or '')[:30]
        if subject and subject not in stats['subjects']:
            stats['subjects'].append(subject)

    ranked = sorted(sender_stats.items(), key=lambda item: item[1]['count'], reverse=True)
    frequent = [
        {'domain': domain, 'deletedCount': s['count'], 'suggestion': 'Consider unsubscribing'}
        for domain, s in ranked if s['count'] >= min_deletions
    ]
    never_read = [
        {'domain': domain, 'deletedCount': s['count'], 'suggestion': 'You never read these - consider bulk cleanup'}
        for domain, s in ranked if s['count'] >= never_read_min and s['unread'] == s['count']
    ]

    return {
        'period': period,
        'totalDeleted': len(entries),
        'frequentDeleters': frequent,
        'neverReadSenders': never_read,
    }


def usage_stats(entries: List[Dict], days: int = config.STATS_WINDOW_DAYS, now: Optional[datetime] = None) -> Dict:
    """Command and flag counts from usage records inside the window"""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)

    by_command = Counter()
    flag_counts = Counter()
    flag_commands = defaultdict(set)
    success = failure = 0

    for entry in entries:
        moment = parse_timestamp(entry.get('ts'))
        if moment is None or moment < cutoff:
            continue

        cmd = entry.get('cmd') or 'unknown'
        by_command[cmd] += 1
        if entry.get('success'):
            success += 1
        else:
            failure += 1

        for flag in entry.get('flags') or []:
            if flag:
                flag_counts[flag] += 1
                flag_commands[flag].add(cmd)

    return {
        'total': success + failure,
        'success': success,
        'failure': failure,
        'byCommand': dict(by_command.most_common()),
        'byFlag': {flag: {'count': count, 'commands': len(flag_commands[flag])} for flag, count in flag_counts.most_common()},
        'since': to_iso(cutoff),
    }
