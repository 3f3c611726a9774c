"""
Shared test fixtures for inboxd tests
"""

import base64
import shlex
import pytest
from typing import Dict, List, Optional, Tuple
from googleapiclient.errors import HttpError

from inboxd.audit import deletion_log, archive_log
from inboxd.auth import AuthStore
from inboxd.client import GmailClient
from inboxd.engine import ActionEngine
from inboxd.retry import RetryPolicy
from inboxd.rules import RulesStore
from inboxd.state import SeenState


# === Mock Gmail API Service ===

class MockHttpResponse:
    """Mock HTTP response for HttpError"""
    def __init__(self, status: int, reason: str):
        self.status = status
        self.reason = reason


REASONS = {
    401: 'Unauthorized',
    403: 'Forbidden',
    404: 'Not Found',
    429: 'Too Many Requests',
    500: 'Internal Server Error',
    503: 'Service Unavailable',
}


class MockExecute:
    """Mock for the .execute() call; runs the mailbox operation lazily"""
    def __init__(self, func):
        self._func = func

    def execute(self):
        return self._func()


def _matches_query(message: dict, query: Optional[str]) -> bool:
    """Tiny subset of Gmail search: in:, is:, from:, subject: and bare words"""
    labels = message.get('labelIds', [])
    if 'TRASH' in labels:
        return False

    headers = {h['name'].lower(): h['value'] for h in message.get('payload', {}).get('headers', [])}
    for token in shlex.split(query or ''):
        key, _, value = token.partition(':')
        value = value.lower()
        if key == 'in' and value == 'inbox':
            if 'INBOX' not in labels:
                return False
        elif key == 'is' and value == 'unread':
            if 'UNREAD' not in labels:
                return False
        elif key == 'from':
            if value not in headers.get('from', '').lower():
                return False
        elif key == 'subject':
            if value not in headers.get('subject', '').lower():
                return False
    return True


class MockMessages:
    """Mock for users().messages()"""
    def __init__(self, service: 'MockGmailService'):
        self._service = service

    def list(self, userId: str, q: str = None, maxResults: int = 100, pageToken: Optional[str] = None):
        def run():
            self._service.check('list', None)
            matching = [m for m in self._service.messages.values() if _matches_query(m, q)]
            start = int(pageToken) if pageToken else 0
            end = min(start + maxResults, len(matching))
            result = {'messages': [{'id': m['id'], 'threadId': m['threadId']} for m in matching[start:end]]}
            if end < len(matching):
                result['nextPageToken'] = str(end)
            return result
        return MockExecute(run)

    def get(self, userId: str, id: str, format: str = None, metadataHeaders: List[str] = None):
        def run():
            self._service.check('get', id)
            message = self._service.require(id)
            return dict(message, labelIds=list(message['labelIds']))
        return MockExecute(run)

    def trash(self, userId: str, id: str):
        def run():
            self._service.check('trash', id)
            message = self._service.require(id)
            if 'TRASH' not in message['labelIds']:
                message['labelIds'].append('TRASH')
            self._service.trashed.add(id)
            return {'id': id, 'labelIds': list(message['labelIds'])}
        return MockExecute(run)

    def untrash(self, userId: str, id: str):
        def run():
            self._service.check('untrash', id)
            message = self._service.require(id)
            message['labelIds'] = [label for label in message['labelIds'] if label != 'TRASH']
            self._service.trashed.discard(id)
            return {'id': id, 'labelIds': list(message['labelIds'])}
        return MockExecute(run)

    def modify(self, userId: str, id: str, body: dict):
        def run():
            self._service.check('modify', id)
            message = self._service.require(id)
            labels = [label for label in message['labelIds'] if label not in body.get('removeLabelIds', [])]
            for label in body.get('addLabelIds', []):
                if label not in labels:
                    labels.append(label)
            message['labelIds'] = labels
            return {'id': id, 'labelIds': list(labels)}
        return MockExecute(run)

    def send(self, userId: str, body: dict):
        def run():
            self._service.check('send', None)
            self._service.sent.append(body)
            return {'id': f'sent_{len(self._service.sent)}', 'threadId': body.get('threadId', f'thread_sent_{len(self._service.sent)}')}
        return MockExecute(run)


class MockLabels:
    """Mock for users().labels()"""
    def __init__(self, service: 'MockGmailService'):
        self._service = service

    def get(self, userId: str, id: str):
        def run():
            self._service.check('labels.get', id)
            unread = [
                m for m in self._service.messages.values()
                if id in m['labelIds'] and 'UNREAD' in m['labelIds'] and 'TRASH' not in m['labelIds']
            ]
            return {'id': id, 'name': id, 'messagesUnread': len(unread)}
        return MockExecute(run)


class MockUsers:
    """Mock for service.users()"""
    def __init__(self, service: 'MockGmailService'):
        self._service = service

    def messages(self):
        return MockMessages(self._service)

    def labels(self):
        return MockLabels(self._service)

    def getProfile(self, userId: str):
        return MockExecute(lambda: {'emailAddress': self._service.email})


class MockGmailService:
    """Mock Gmail API service holding one mailbox with label and trash state"""

    def __init__(self, messages: List[dict] = None, email: str = 'me@example.com'):
        self.messages: Dict[str, dict] = {m['id']: m for m in (messages or [])}
        self.email = email
        self.trashed = set()
        self.sent: List[dict] = []
        self.calls: List[Tuple[str, Optional[str]]] = []
        self._failures: Dict[Tuple[str, Optional[str]], List[int]] = {}
        self._always: Dict[Tuple[str, Optional[str]], int] = {}

    def users(self):
        return MockUsers(self)

    def fail(self, method: str, message_id: Optional[str], *statuses: int, always: bool = False):
        """Make the next calls (or every call) of method on message_id raise HttpError"""
        if always:
            self._always[(method, message_id)] = statuses[0]
        else:
            self._failures.setdefault((method, message_id), []).extend(statuses)

    def check(self, method: str, message_id: Optional[str]):
        self.calls.append((method, message_id))
        key = (method, message_id)
        status = self._always.get(key)
        if status is None and self._failures.get(key):
            status = self._failures[key].pop(0)
        if status is not None:
            resp = MockHttpResponse(status, REASONS.get(status, 'Error'))
            raise HttpError(resp=resp, content=b'Simulated failure')

    def require(self, message_id: str) -> dict:
        if message_id not in self.messages:
            resp = MockHttpResponse(404, 'Not Found')
            raise HttpError(resp=resp, content=b'Requested entity was not found.')
        return self.messages[message_id]

    def labels_of(self, message_id: str) -> List[str]:
        return self.messages[message_id]['labelIds']

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


class ServiceFactory:
    """service_factory for GmailClient that records forced refreshes"""

    def __init__(self, services: Dict[str, MockGmailService]):
        self.services = services
        self.refreshes: List[str] = []

    def __call__(self, account: str, force_refresh: bool = False):
        if force_refresh:
            self.refreshes.append(account)
        return self.services[account]


# === Helpers to create message data ===

def _encode(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode('utf-8')).decode('ascii').rstrip('=')


def make_message(
    message_id: str,
    sender: str,
    subject: str,
    labels: List[str] = None,
    thread_id: str = None,
    snippet: str = '',
    date: str = 'Mon, 13 Oct 2025 09:00:00 +0000',
    body: str = None,
    html: str = None,
    extra_headers: List[dict] = None
) -> dict:
    """Helper to create a message dict matching the Gmail API structure"""
    headers = [
        {'name': 'From', 'value': sender},
        {'name': 'Subject', 'value': subject},
        {'name': 'Date', 'value': date},
        {'name': 'To', 'value': 'me@example.com'},
        {'name': 'Message-ID', 'value': f'<{message_id}@mail.example.com>'},
    ] + list(extra_headers or [])

    parts = []
    if body is not None:
        parts.append({'mimeType': 'text/plain', 'body': {'data': _encode(body)}})
    if html is not None:
        parts.append({'mimeType': 'text/html', 'body': {'data': _encode(html)}})

    return {
        'id': message_id,
        'threadId': thread_id or f'thread_{message_id}',
        'labelIds': list(labels if labels is not None else ['INBOX', 'UNREAD']),
        'snippet': snippet or subject,
        'payload': {'mimeType': 'multipart/alternative', 'headers': headers, 'parts': parts},
    }


# === Fixtures ===

@pytest.fixture
def sample_messages() -> List[dict]:
    """A small inbox: newsletters, a colleague, and one already-read message"""
    return [
        make_message('m1', 'Weekly News <news@newsletter.example>', 'Weekly digest #12'),
        make_message('m2', 'Deals <promo@shop.example>', 'Flash sale ends tonight'),
        make_message('m3', 'Alice <alice@work.example>', 'Quarterly review'),
        make_message('m4', 'Weekly News <news@newsletter.example>', 'Weekly digest #13'),
        make_message('m5', 'Bob <bob@friends.example>', 'Dinner?', labels=['INBOX']),
    ]


@pytest.fixture
def gmail(sample_messages) -> MockGmailService:
    return MockGmailService(sample_messages, email='me@example.com')


@pytest.fixture
def service_factory(gmail) -> ServiceFactory:
    return ServiceFactory({'personal': gmail})


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / 'inboxd'


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def retry_policy(sleeps) -> RetryPolicy:
    """RetryPolicy whose sleeps are recorded instead of awaited"""
    async def record_sleep(delay: float):
        sleeps.append(delay)

    return RetryPolicy(sleep_fn=record_sleep)


@pytest.fixture
def auth_store(config_dir) -> AuthStore:
    store = AuthStore(config_dir)
    store.add_account('personal', 'me@example.com')
    return store


@pytest.fixture
def client(auth_store, service_factory, retry_policy) -> GmailClient:
    return GmailClient(auth_store, service_factory=service_factory, policy=retry_policy)


@pytest.fixture
def deletions(config_dir):
    return deletion_log(config_dir)


@pytest.fixture
def archives(config_dir):
    return archive_log(config_dir)


@pytest.fixture
def engine(client, deletions, archives) -> ActionEngine:
    return ActionEngine(client, deletions, archives)


@pytest.fixture
def rules_store(config_dir) -> RulesStore:
    return RulesStore(config_dir)


@pytest.fixture
def seen_state(config_dir) -> SeenState:
    return SeenState(config_dir)
