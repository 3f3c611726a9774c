"""
Rules Engine - per-sender/subject rules, their store, and bulk application
"""

import uuid
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Dict, Optional, Tuple

from inboxd import config
from inboxd.errors import UsageError
from inboxd.messages import contains, parse_message_date
from inboxd.models import EmailMessage, Operation, Rule, RuleAction, normalize_days
from inboxd.store import read_json, update_json


logger = logging.getLogger(__name__)

RULES_VERSION = 1

RULE_OPERATIONS = {
    RuleAction.ALWAYS_DELETE: Operation.DELETE,
    RuleAction.AUTO_ARCHIVE: Operation.ARCHIVE,
    RuleAction.AUTO_MARK_READ: Operation.MARK_READ,
}


def _default_rules() -> Dict:
    return {'version': RULES_VERSION, 'rules': []}


# === Matching ===

def is_older_than(message: EmailMessage, days: int, now: Optional[datetime] = None) -> bool:
    """Undated or unparseable mail never counts as old"""
    moment = parse_message_date(message.date)
    if moment is None:
        return False
    return moment < (now or datetime.now(timezone.utc)) - timedelta(days=days)


def rule_matches(rule: Rule, message: EmailMessage, now: Optional[datetime] = None) -> bool:
    """Every predicate the rule has must match; a rule with no sender or subject matches nothing"""
    if not rule.sender and not rule.subject_pattern:
        return False
    if rule.sender and not contains(message.sender, rule.sender):
        return False
    if rule.subject_pattern and not contains(message.subject, rule.subject_pattern):
        return False
    if rule.older_than_days:
        return is_older_than(message, rule.older_than_days, now)
    return True


def evaluate(rules: List[Rule], message: EmailMessage) -> Optional[Rule]:
    """The rule to apply to message, or None.

    A matching never-delete rule protects the message from every other rule.
    Otherwise the first matching rule in insertion order wins; auto-mark-read
    only fires for unread mail.
    """
    matching = [r for r in rules if rule_matches(r, message)]
    if any(r.action == RuleAction.NEVER_DELETE for r in matching):
        return None

    for rule in matching:
        if rule.action == RuleAction.AUTO_MARK_READ and not message.is_unread:
            continue
        return rule
    return None


def _quote(value: str) -> str:
    value = value.strip()
    if any(ch.isspace() for ch in value):
        return '"{}"'.format(value.replace('"', '\\"'))
    return value


def build_rule_query(rule: Rule) -> str:
    """Gmail search query selecting the rule's candidates"""
    parts = []
    if rule.sender:
        parts.append(f'from:{_quote(rule.sender)}')
    if rule.subject_pattern:
        parts.append(f'subject:{_quote(rule.subject_pattern)}')
    if parts and rule.older_than_days:
        parts.append(f'older_than:{rule.older_than_days}d')
    return ' '.join(parts)


def email_key(message: EmailMessage) -> str:
    return f'{message.account or "default"}:{message.id}'


def build_action_plan(rule_matches_list: List[Tuple[Rule, List[EmailMessage]]]) -> Dict:
    """Resolve (rule, messages) pairs into delete/archive/mark-read candidates.

    never-delete protects its matches from everything; delete beats archive
    beats mark-read; each message is acted on at most once.
    """
    protected = set()
    claimed = set()
    candidates = {
        RuleAction.ALWAYS_DELETE: [],
        RuleAction.AUTO_ARCHIVE: [],
        RuleAction.AUTO_MARK_READ: [],
    }
    applied: Dict[str, int] = {}
    protected_by: Dict[str, int] = {}

    for rule, messages in rule_matches_list:
        if rule.action == RuleAction.NEVER_DELETE:
            keys = {email_key(m) for m in messages}
            protected_by[rule.id] = len(keys)
            protected |= keys

    for action in (RuleAction.ALWAYS_DELETE, RuleAction.AUTO_ARCHIVE, RuleAction.AUTO_MARK_READ):
        for rule, messages in rule_matches_list:
            if rule.action != action:
                continue
            for message in messages:
                key = email_key(message)
                if key in protected or key in claimed:
                    continue
                if action == RuleAction.AUTO_MARK_READ and not message.is_unread:
                    continue
                claimed.add(key)
                candidates[action].append(message)
                applied[rule.id] = applied.get(rule.id, 0) + 1

    summaries = [
        {
            'id': rule.id,
            'action': rule.action.value,
            'sender': rule.sender,
            'subjectPattern': rule.subject_pattern,
            'olderThanDays': rule.older_than_days,
            'matches': len({email_key(m) for m in messages}),
            'applied': applied.get(rule.id, 0),
            'protected': protected_by.get(rule.id, 0),
        }
        for rule, messages in rule_matches_list
    ]

    return {
        'protectedKeys': protected,
        'deleteCandidates': candidates[RuleAction.ALWAYS_DELETE],
        'archiveCandidates': candidates[RuleAction.AUTO_ARCHIVE],
        'markReadCandidates': candidates[RuleAction.AUTO_MARK_READ],
        'ruleSummaries': summaries,
    }


def build_suggested_rules(analysis: Optional[Dict]) -> Dict:
    """Candidate rules from deletion patterns; nothing is persisted"""
    if not analysis:
        return {'period': 0, 'totalDeleted': 0, 'suggestions': []}

    period = analysis.get('period', 0)
    suggestions = []
    for sender in analysis.get('frequentDeleters', []):
        suggestions.append({
            'action': RuleAction.ALWAYS_DELETE.value,
            'sender': sender['domain'],
            'reason': f"Deleted {sender['deletedCount']} times in the last {period} days",
            'source': 'frequentDeleters',
        })
    for sender in analysis.get('neverReadSenders', []):
        suggestions.append({
            'action': RuleAction.AUTO_ARCHIVE.value,
            'sender': sender['domain'],
            'reason': f"Deleted unread {sender['deletedCount']} times in the last {period} days",
            'source': 'neverReadSenders',
        })

    return {'period': period, 'totalDeleted': analysis.get('totalDeleted', 0), 'suggestions': suggestions}


# === Store ===

class RulesStore:
    """rules.json: {version, rules: [...]} in insertion order"""

    def __init__(self, config_dir: Optional[Path] = None):
        config_dir = Path(config_dir) if config_dir else config.config_dir()
        self.path = config_dir / config.RULES_FILE

    def _load(self, data) -> List[Dict]:
        if not isinstance(data, dict) or not isinstance(data.get('rules'), list):
            return []
        return [r for r in data['rules'] if isinstance(r, dict)]

    def list_rules(self) -> List[Rule]:
        rules = []
        for raw in self._load(read_json(self.path, _default_rules())):
            rule = Rule.from_dict(raw)
            if rule is None:
                logger.warning(f"Skipping rule with unknown action: {raw.get('action')}")
                continue
            rules.append(rule)
        return rules

    def add_rule(self, action, sender: Optional[str] = None, subject_pattern: Optional[str] = None,
                 older_than_days: Optional[int] = None) -> Tuple[Rule, bool]:
        """Returns (rule, created); an identical rule is returned instead of duplicated"""
        try:
            action = RuleAction(action)
        except ValueError:
            raise UsageError(f'Unsupported action "{action}". Use one of: {", ".join(a.value for a in RuleAction)}') from None

        sender = sender.strip() if sender and sender.strip() else None
        subject_pattern = subject_pattern.strip() if subject_pattern and subject_pattern.strip() else None
        if not sender and not subject_pattern:
            raise UsageError('A rule needs --sender or --subject.')

        candidate = Rule(
            id=str(uuid.uuid4()),
            action=action,
            sender=sender,
            subject_pattern=subject_pattern,
            older_than_days=normalize_days(older_than_days),
            created_at=datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
        )
        outcome = {'rule': candidate, 'created': True}

        def mutate(data):
            raw_rules = self._load(data)
            for raw in raw_rules:
                existing = Rule.from_dict(raw)
                if existing is not None and existing.identity == candidate.identity:
                    outcome['rule'] = existing
                    outcome['created'] = False
                    break
            else:
                raw_rules.append(candidate.to_dict())
            version = data.get('version', RULES_VERSION) if isinstance(data, dict) else RULES_VERSION
            return {'version': version, 'rules': raw_rules}

        update_json(self.path, _default_rules(), mutate)
        return outcome['rule'], outcome['created']

    def remove_rule(self, rule_id: str) -> Optional[Rule]:
        """Removed rule, or None when no rule has that id"""
        removed = []

        def mutate(data):
            raw_rules = self._load(data)
            kept = []
            for raw in raw_rules:
                if raw.get('id') == rule_id and not removed:
                    removed.append(raw)
                else:
                    kept.append(raw)
            version = data.get('version', RULES_VERSION) if isinstance(data, dict) else RULES_VERSION
            return {'version': version, 'rules': kept}

        update_json(self.path, _default_rules(), mutate)
        return Rule.from_dict(removed[0]) if removed else None

    def evaluate(self, message: EmailMessage) -> Optional[Rule]:
        return evaluate(self.list_rules(), message)


# === Bulk application ===

async def apply_rules(store: RulesStore, client, engine, accounts: List[str], dry_run: bool = False,
                      limit: int = config.FILTER_DEFAULT_LIMIT) -> Dict:
    """Search every account for each rule's matches and apply the resulting plan"""
    rules = store.list_rules()
    rule_matches_list = []
    for rule in rules:
        query = build_rule_query(rule)
        if not query:
            continue
        matched = []
        for account in accounts:
            for message in await client.search(account, f'in:inbox {query}', limit):
                if rule_matches(rule, message):
                    matched.append(message)
        rule_matches_list.append((rule, matched))

    plan = build_action_plan(rule_matches_list)
    results = []
    if not dry_run:
        if plan['deleteCandidates']:
            results.extend(await engine.apply_logged(Operation.DELETE, plan['deleteCandidates']))
        if plan['archiveCandidates']:
            results.extend(await engine.apply_logged(Operation.ARCHIVE, plan['archiveCandidates']))
        for account in accounts:
            ids = [m.id for m in plan['markReadCandidates'] if m.account == account]
            if ids:
                results.extend(await client.batch(account, ids, Operation.MARK_READ))

    return {'plan': plan, 'results': results, 'dryRun': dry_run}
