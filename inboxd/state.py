"""
Seen-State Tracker - per-account memory of notified message ids
"""

import time
import logging
from pathlib import Path
from typing import List, Dict, Optional, Callable, Iterable

from inboxd import config
from inboxd.store import read_json, update_json


logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _empty_state() -> Dict:
    return {'lastCheck': None, 'lastNotifiedAt': None, 'seenEmailIds': []}


class SeenState:
    """Reads and mutates state-<account>.json under an exclusive lock"""

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        ttl_days: int = config.SEEN_TTL_DAYS,
        clock: Callable[[], int] = _now_ms
    ):
        self.config_dir = Path(config_dir) if config_dir else config.config_dir()
        self.ttl_ms = ttl_days * DAY_MS
        self.clock = clock

    def path(self, account: str) -> Path:
        return self.config_dir / config.state_file(account)

    # === Reads ===

    def load(self, account: str) -> Dict:
        """Normalised state; legacy plain-string seen entries count as seen now"""
        data = read_json(self.path(account), _empty_state())
        if not isinstance(data, dict):
            return _empty_state()
        return self._normalise(data)

    def _normalise(self, data: Dict) -> Dict:
        now = self.clock()
        entries = []
        for entry in data.get('seenEmailIds') or []:
            if isinstance(entry, str):
                entries.append({'id': entry, 'timestamp': now})
            elif isinstance(entry, dict) and entry.get('id'):
                entries.append({'id': entry['id'], 'timestamp': entry.get('timestamp') or now})
        return {
            'lastCheck': data.get('lastCheck'),
            'lastNotifiedAt': data.get('lastNotifiedAt'),
            'seenEmailIds': entries,
        }

    def seen_ids(self, account: str) -> set:
        return {e['id'] for e in self.load(account)['seenEmailIds']}

    def get_new(self, account: str, candidate_ids: Iterable[str]) -> List[str]:
        """Candidates not seen yet, in input order"""
        seen = self.seen_ids(account)
        return [i for i in candidate_ids if i not in seen]

    def last_check(self, account: str) -> Optional[int]:
        return self.load(account)['lastCheck']

    def last_notified_at(self, account: str) -> Optional[int]:
        return self.load(account)['lastNotifiedAt']

    # === Mutations ===

    def _update(self, account: str, mutate: Callable[[Dict], None]) -> Dict:
        def apply(data):
            state = self._normalise(data if isinstance(data, dict) else {})
            mutate(state)
            cutoff = self.clock() - self.ttl_ms
            state['seenEmailIds'] = [e for e in state['seenEmailIds'] if e['timestamp'] >= cutoff]
            return state

        return update_json(self.path(account), _empty_state(), apply)

    def mark_seen(self, account: str, ids: Iterable[str]) -> None:
        """Set union with the stored ids; existing entries keep their timestamp"""
        ids = list(ids)
        if not ids:
            return

        def mutate(state):
            known = {e['id'] for e in state['seenEmailIds']}
            now = self.clock()
            for message_id in ids:
                if message_id not in known:
                    state['seenEmailIds'].append({'id': message_id, 'timestamp': now})
                    known.add(message_id)

        self._update(account, mutate)
        logger.debug(f"Marked {len(ids)} ids seen for {account}")

    def update_last_check(self, account: str) -> None:
        def mutate(state):
            state['lastCheck'] = self.clock()

        self._update(account, mutate)

    def update_last_notified_at(self, account: str) -> None:
        def mutate(state):
            state['lastNotifiedAt'] = self.clock()

        self._update(account, mutate)

    def clear(self, account: str) -> None:
        def mutate(state):
            state['seenEmailIds'] = []

        self._update(account, mutate)
