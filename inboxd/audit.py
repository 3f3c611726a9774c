"""
Audit Logs - deletion, archive and sent logs plus the usage JSON-lines log
"""

import math
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Dict, Optional, Callable, Iterable

from inboxd import config
from inboxd.store import read_json, update_json, append_jsonl, read_jsonl, write_text, file_lock, remove_file
from inboxd.messages import body_preview


logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_timestamp(value) -> Optional[datetime]:
    """ISO-8601 timestamp (trailing Z allowed) as an aware datetime"""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# === Whole-file JSON array logs ===

class AuditLog:
    """JSON array of entries, each stamped with timestamp_field on append"""

    def __init__(self, path: Path, timestamp_field: str, clock: Callable[[], datetime] = utc_now):
        self.path = Path(path)
        self.timestamp_field = timestamp_field
        self.clock = clock

    def read(self) -> List[Dict]:
        data = read_json(self.path, [])
        if not isinstance(data, list):
            logger.warning(f"Ignoring {self.path}: expected a JSON array")
            return []
        return [e for e in data if isinstance(e, dict)]

    def _entries(self, data) -> List[Dict]:
        return [e for e in data if isinstance(e, dict)] if isinstance(data, list) else []

    def append(self, entries: Iterable[Dict]) -> List[Dict]:
        """Stamp and append entries in one atomic write; returns what was written"""
        stamp = to_iso(self.clock())
        stamped = [dict({self.timestamp_field: stamp}, **entry) for entry in entries]
        if not stamped:
            return []

        keys = {(e.get('account'), e.get('id')) for e in stamped}

        def mutate(data):
            # An id is logged at most once per account; a newer action replaces the older entry
            kept = [e for e in self._entries(data) if (e.get('account'), e.get('id')) not in keys]
            return kept + stamped

        update_json(self.path, [], mutate)
        logger.debug(f"Appended {len(stamped)} entries to {self.path.name}")
        return stamped

    def timestamp_of(self, entry: Dict) -> datetime:
        return parse_timestamp(entry.get(self.timestamp_field)) or datetime.min.replace(tzinfo=timezone.utc)

    def list(self, since_days: Optional[float] = None) -> List[Dict]:
        entries = self.read()
        if since_days is None:
            return entries
        cutoff = self.clock() - timedelta(days=since_days)
        return [e for e in entries if self.timestamp_of(e) >= cutoff]

    def recent(self, count: int, account: Optional[str] = None) -> List[Dict]:
        """The last `count` entries by timestamp, newest first"""
        indexed = [
            (index, entry) for index, entry in enumerate(self.read())
            if account is None or entry.get('account') == account
        ]
        indexed.sort(key=lambda pair: (self.timestamp_of(pair[1]), pair[0]), reverse=True)
        return [entry for _, entry in indexed[:max(count, 0)]]

    def find(self, ids: Iterable[str]) -> Dict[str, Dict]:
        """Latest entry per requested id"""
        wanted = set(ids)
        found = {}
        for entry in self.read():
            if entry.get('id') in wanted:
                found[entry['id']] = entry
        return found

    def remove_by_ids(self, ids: Iterable[str], account: Optional[str] = None) -> int:
        """Drop entries for ids (optionally only for one account); returns removed count"""
        wanted = set(ids)
        removed = 0
        if not wanted:
            return 0

        def mutate(data):
            nonlocal removed
            entries = self._entries(data)
            kept = [
                e for e in entries
                if not (e.get('id') in wanted and (account is None or e.get('account') == account))
            ]
            removed = len(entries) - len(kept)
            return kept

        update_json(self.path, [], mutate)
        return removed

    def clear(self) -> None:
        remove_file(self.path)


def deletion_log(config_dir: Path, clock: Callable[[], datetime] = utc_now) -> AuditLog:
    return AuditLog(Path(config_dir) / config.DELETION_LOG_FILE, 'deletedAt', clock)


def archive_log(config_dir: Path, clock: Callable[[], datetime] = utc_now) -> AuditLog:
    return AuditLog(Path(config_dir) / config.ARCHIVE_LOG_FILE, 'archivedAt', clock)


def entry_for(message) -> Dict:
    """Audit entry body for an EmailMessage, enough to undo the action"""
    return {
        'account': message.account,
        'id': message.id,
        'threadId': message.thread_id,
        'from': message.sender,
        'subject': message.subject,
        'snippet': message.snippet,
        'labelIds': list(message.label_ids),
    }


class SentLog(AuditLog):
    """Append-only record of mail sent through the CLI"""

    def __init__(self, config_dir: Path, clock: Callable[[], datetime] = utc_now):
        super().__init__(Path(config_dir) / config.SENT_LOG_FILE, 'sentAt', clock)

    def log_sent(self, account: str, to: str, subject: str, body: str, message_id: Optional[str] = None,
                 thread_id: Optional[str] = None, reply_to_id: Optional[str] = None) -> Dict:
        stamped = self.append([{
            'account': account,
            'id': message_id,
            'threadId': thread_id,
            'to': to,
            'subject': subject,
            'bodyPreview': body_preview(body),
            'replyToId': reply_to_id,
        }])
        return stamped[0]


# === Usage log (JSON lines) ===

class UsageLog:
    """Command usage records with append-and-trim rotation"""

    def __init__(
        self,
        config_dir: Path,
        max_entries: int = config.USAGE_MAX_ENTRIES,
        trim_ratio: float = config.USAGE_TRIM_RATIO,
        enabled: Optional[bool] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.path = Path(config_dir) / config.USAGE_LOG_FILE
        self.max_entries = max_entries
        self.trim_ratio = trim_ratio
        self._enabled = enabled
        self.clock = clock

    @property
    def enabled(self) -> bool:
        if self._enabled is not None:
            return self._enabled
        return config.analytics_enabled()

    def log_usage(self, cmd: str, flags: Optional[List[str]] = None, success: bool = True,
                  account: Optional[str] = None) -> None:
        """Append one record, then trim the oldest lines if over the cap"""
        if not self.enabled:
            return

        record = {
            'cmd': cmd or 'unknown',
            'flags': list(flags or []),
            'ts': to_iso(self.clock()),
            'success': bool(success),
            'account': account,
        }
        with file_lock(self.path):
            append_jsonl(self.path, record)
            self._rotate()

    def _rotate(self) -> None:
        try:
            lines = [line for line in self.path.read_text(encoding='utf-8', errors='replace').splitlines() if line.strip()]
        except OSError:
            return
        if len(lines) <= self.max_entries:
            return

        # never leaves more than max_entries lines
        trim_count = max(math.ceil(len(lines) * self.trim_ratio), len(lines) - self.max_entries)
        remaining = lines[trim_count:]
        write_text(self.path, ''.join(line + '\n' for line in remaining))
        logger.debug(f"Trimmed {trim_count} old usage entries")

    def entries(self) -> List[Dict]:
        return [e for e in read_jsonl(self.path) if isinstance(e, dict)]

    def clear(self) -> bool:
        with file_lock(self.path):
            return remove_file(self.path)
