"""
Shared data models for inboxd
"""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional


# === Accounts & tokens ===

@dataclass
class Account:
    """A linked mailbox"""
    name: str
    email: str

    def to_dict(self) -> Dict:
        return {'name': self.name, 'email': self.email}


@dataclass
class TokenSet:
    """OAuth tokens stored per account"""
    refresh_token: str
    access_token: Optional[str] = None
    expiry_epoch_ms: Optional[int] = None
    scope: str = ''

    def expires_within(self, seconds: float, now_ms: Optional[int] = None) -> bool:
        if not self.access_token or self.expiry_epoch_ms is None:
            return True
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return self.expiry_epoch_ms - now_ms < seconds * 1000

    def to_dict(self) -> Dict:
        return {
            'refresh_token': self.refresh_token,
            'access_token': self.access_token,
            'expiry_epoch_ms': self.expiry_epoch_ms,
            'scope': self.scope,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> Optional['TokenSet']:
        if not isinstance(data, dict) or not data.get('refresh_token'):
            return None
        return cls(
            refresh_token=data['refresh_token'],
            access_token=data.get('access_token'),
            expiry_epoch_ms=data.get('expiry_epoch_ms'),
            scope=data.get('scope', ''),
        )


# === Messages ===

@dataclass
class EmailMessage:
    """Metadata for a single message"""
    id: str
    thread_id: str
    account: str
    sender: str = ''
    subject: str = ''
    snippet: str = ''
    date: str = ''
    label_ids: List[str] = field(default_factory=list)

    @property
    def is_unread(self) -> bool:
        return 'UNREAD' in self.label_ids

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'threadId': self.thread_id,
            'labelIds': list(self.label_ids),
            'account': self.account,
            'from': self.sender,
            'subject': self.subject,
            'snippet': self.snippet,
            'date': self.date,
        }


@dataclass
class MessageContent(EmailMessage):
    """Message with its decoded body"""
    to: str = ''
    body: str = ''
    mime_type: str = 'text/plain'
    headers: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data.update({'to': self.to, 'body': self.body, 'mimeType': self.mime_type})
        return data


# === Actions ===

class Operation(str, Enum):
    """Remote mutations the engine knows how to apply and undo"""
    DELETE = 'delete'
    RESTORE = 'restore'
    ARCHIVE = 'archive'
    UNARCHIVE = 'unarchive'
    MARK_READ = 'mark-read'
    MARK_UNREAD = 'mark-unread'


_INVERSES = {
    Operation.DELETE: Operation.RESTORE,
    Operation.RESTORE: Operation.DELETE,
    Operation.ARCHIVE: Operation.UNARCHIVE,
    Operation.UNARCHIVE: Operation.ARCHIVE,
    Operation.MARK_READ: Operation.MARK_UNREAD,
    Operation.MARK_UNREAD: Operation.MARK_READ,
}


def inverse(op: Operation) -> Operation:
    return _INVERSES[op]


@dataclass
class ActionResult:
    """Outcome of one remote call inside a batch"""
    id: str
    success: bool
    account: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {'id': self.id, 'success': self.success}
        if self.account:
            data['account'] = self.account
        if not self.success:
            data['error'] = self.error_kind
            data['message'] = self.error
        return data


@dataclass
class FilterPreview:
    """Messages matched by a sender/subject pattern, plus safety warnings"""
    messages: List[EmailMessage]
    warnings: List[str] = field(default_factory=list)

    @property
    def ids(self) -> List[str]:
        return [m.id for m in self.messages]


# === Rules ===

class RuleAction(str, Enum):
    ALWAYS_DELETE = 'always-delete'
    NEVER_DELETE = 'never-delete'
    AUTO_ARCHIVE = 'auto-archive'
    AUTO_MARK_READ = 'auto-mark-read'


def normalize_days(value) -> Optional[int]:
    """Positive whole number of days, None for anything else"""
    if value is None or isinstance(value, bool):
        return None
    try:
        days = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(days) or days <= 0:
        return None
    return int(math.floor(days)) or None


@dataclass
class Rule:
    """Per-sender/subject rule applied to arriving mail"""
    id: str
    action: RuleAction
    sender: Optional[str] = None
    subject_pattern: Optional[str] = None
    older_than_days: Optional[int] = None
    created_at: str = ''

    @property
    def identity(self):
        return (
            self.action.value,
            (self.sender or '').lower(),
            (self.subject_pattern or '').lower(),
            self.older_than_days,
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'action': self.action.value,
            'sender': self.sender,
            'subjectPattern': self.subject_pattern,
            'olderThanDays': self.older_than_days,
            'createdAt': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> Optional['Rule']:
        try:
            action = RuleAction(data.get('action'))
        except ValueError:
            return None
        return cls(
            id=data.get('id', ''),
            action=action,
            sender=data.get('sender') or None,
            subject_pattern=data.get('subjectPattern') or None,
            older_than_days=normalize_days(data.get('olderThanDays')),
            created_at=data.get('createdAt', ''),
        )
