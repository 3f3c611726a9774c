"""
Gmail Client - authenticated message-scope calls with retry and error translation
"""

import asyncio
import logging
import socket
from typing import List, Dict, Optional, Callable

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from inboxd import config
from inboxd.errors import (
    InboxdError, AuthRevoked, NotFound, ProviderError, RateLimited, NetworkError,
    ProviderServerError, ProviderClientError,
)
from inboxd.messages import extract_body, header_value, build_reply
from inboxd.models import EmailMessage, MessageContent, ActionResult, Operation
from inboxd.retry import RetryPolicy


logger = logging.getLogger(__name__)

METADATA_HEADERS = ['From', 'Subject', 'Date']
REPLY_HEADERS = ['Subject', 'Message-ID', 'References', 'From', 'Reply-To']
RETRYABLE_STATUSES = {500, 502, 503, 504}
LIST_PAGE_LIMIT = 500

TRANSPORT_ERRORS = (
    httplib2.ServerNotFoundError,
    socket.gaierror,
    socket.timeout,
    TimeoutError,
    ConnectionError,
    TransportError,
)


class Unauthorized(ProviderClientError):
    """HTTP 401; the client refreshes once before giving up"""
    kind = 'Unauthorized'


def translate_http_error(error: HttpError) -> InboxdError:
    """Map a googleapiclient HttpError onto the error taxonomy"""
    status = int(getattr(error.resp, 'status', 0) or 0)
    reason = getattr(error, 'reason', None) or str(error)
    message = f"HTTP {status}: {reason}"

    if status == 401:
        return Unauthorized(message, status)
    if status == 404:
        return NotFound(message)
    if status == 429:
        return RateLimited(message, status)
    if status in RETRYABLE_STATUSES:
        return ProviderServerError(message, status)
    if 400 <= status < 500:
        return ProviderClientError(message, status)
    return ProviderError(message, status)


def parse_message(account: str, data: Dict) -> EmailMessage:
    """EmailMessage from a metadata- or full-format Gmail message"""
    headers = (data.get('payload') or {}).get('headers', [])
    return EmailMessage(
        id=data.get('id', ''),
        thread_id=data.get('threadId', ''),
        account=account,
        sender=header_value(headers, 'From'),
        subject=header_value(headers, 'Subject'),
        snippet=data.get('snippet', ''),
        date=header_value(headers, 'Date'),
        label_ids=list(data.get('labelIds') or []),
    )


class GmailClient:
    """Message-scope Gmail operations for any linked account"""

    def __init__(
        self,
        auth_store,
        service_factory: Optional[Callable] = None,  # (account, force_refresh) -> Gmail API service
        policy: Optional[RetryPolicy] = None,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS
    ):
        self.auth_store = auth_store
        self.service_factory = service_factory or self._build_service
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self._services: Dict[str, object] = {}

    # === Service ===

    def _build_service(self, account: str, force_refresh: bool = False):
        creds = self.auth_store.credentials(account, force_refresh=force_refresh)
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.timeout))
        return build('gmail', 'v1', http=http, cache_discovery=False)

    async def _service(self, account: str, force_refresh: bool = False):
        if force_refresh or account not in self._services:
            try:
                self._services[account] = await asyncio.to_thread(self.service_factory, account, force_refresh)
            except RefreshError as error:
                raise AuthRevoked(account, f"Token refresh for account '{account}' failed: {error}") from error
        return self._services[account]

    # === Calls ===

    async def _execute(self, account: str, make_request: Callable):
        service = await self._service(account)
        try:
            return await asyncio.to_thread(lambda: make_request(service).execute())
        except HttpError as error:
            raise translate_http_error(error) from error
        except RefreshError as error:
            # AuthorizedHttp refreshes on its own when a call comes back 401
            raise AuthRevoked(account, f"Token refresh for account '{account}' failed: {error}") from error
        except TRANSPORT_ERRORS as error:
            raise NetworkError(f"Network error: {error}") from error

    async def _call(self, account: str, make_request: Callable, label: str = 'request'):
        """Run one API request with retry; a 401 forces a single token refresh"""
        try:
            return await self.policy.execute(lambda: self._execute(account, make_request), label)
        except Unauthorized:
            logger.info(f"{label} for {account} got 401, refreshing token and retrying once")

        await self._service(account, force_refresh=True)
        try:
            return await self.policy.execute(lambda: self._execute(account, make_request), label)
        except Unauthorized as error:
            raise AuthRevoked(account) from error

    # === Reads ===

    async def list_message_ids(self, account: str, query: Optional[str] = None, max_results: int = 20) -> List[str]:
        """Message ids matching a Gmail query, newest first"""
        ids: List[str] = []
        page_token = None

        while len(ids) < max_results:
            page_size = min(max_results - len(ids), LIST_PAGE_LIMIT)
            token = page_token
            results = await self._call(
                account,
                lambda service: service.users().messages().list(
                    userId='me',
                    q=query,
                    maxResults=page_size,
                    pageToken=token
                ),
                label='messages.list'
            )

            ids.extend(m['id'] for m in results.get('messages', []))
            page_token = results.get('nextPageToken')
            if not page_token:
                break

        return ids[:max_results]

    async def list_unread(self, account: str, query: Optional[str] = None, max_results: int = 20,
                          include_read: bool = False) -> List[str]:
        """Inbox message ids, unread only unless include_read"""
        parts = ['in:inbox']
        if not include_read:
            parts.append('is:unread')
        if query:
            parts.append(query)
        return await self.list_message_ids(account, ' '.join(parts), max_results)

    async def get(self, account: str, message_id: str, format: str = 'metadata',
                  metadata_headers: Optional[List[str]] = None) -> Dict:
        """Raw Gmail message resource"""
        headers = metadata_headers or METADATA_HEADERS

        def make_request(service):
            if format == 'metadata':
                return service.users().messages().get(userId='me', id=message_id, format=format, metadataHeaders=headers)
            return service.users().messages().get(userId='me', id=message_id, format=format)

        return await self._call(account, make_request, label='messages.get')

    async def get_message(self, account: str, message_id: str) -> EmailMessage:
        return parse_message(account, await self.get(account, message_id))

    async def get_messages(self, account: str, message_ids: List[str]) -> List[EmailMessage]:
        """Metadata for each id in order; ids that no longer exist are skipped"""
        messages = []
        for message_id in message_ids:
            try:
                messages.append(await self.get_message(account, message_id))
            except NotFound:
                logger.debug(f"Message {message_id} disappeared from {account}")
        return messages

    async def search(self, account: str, query: str, max_results: int = 20) -> List[EmailMessage]:
        ids = await self.list_message_ids(account, query, max_results)
        return await self.get_messages(account, ids)

    async def get_content(self, account: str, message_id: str, prefer_html: bool = False) -> MessageContent:
        """Full message with decoded body, text/plain preferred"""
        data = await self.get(account, message_id, format='full')
        payload = data.get('payload') or {}
        headers = payload.get('headers', [])
        mime_type, body = extract_body(payload, prefer_html)
        meta = parse_message(account, data)

        return MessageContent(
            id=meta.id,
            thread_id=meta.thread_id,
            account=account,
            sender=meta.sender,
            subject=meta.subject,
            snippet=meta.snippet,
            date=meta.date,
            label_ids=meta.label_ids,
            to=header_value(headers, 'To'),
            body=body,
            mime_type=mime_type,
            headers=headers,
        )

    async def unread_count(self, account: str) -> int:
        inbox = await self._call(
            account,
            lambda service: service.users().labels().get(userId='me', id='INBOX'),
            label='labels.get'
        )
        return inbox.get('messagesUnread', 0)

    async def profile_email(self, account: str) -> str:
        profile = await self._call(
            account,
            lambda service: service.users().getProfile(userId='me'),
            label='getProfile'
        )
        return profile.get('emailAddress', '')

    # === Writes ===

    async def send(self, account: str, message: Dict, thread_id: Optional[str] = None) -> Dict:
        """Send a message built by create_message(); returns {id, threadId}"""
        body = {'raw': message['raw']}
        if thread_id:
            body['threadId'] = thread_id
        return await self._call(
            account,
            lambda service: service.users().messages().send(userId='me', body=body),
            label='messages.send'
        )

    async def reply(self, account: str, message_id: str, body: str) -> Dict:
        """Reply in the original thread; returns the sent ids plus to/subject"""
        original = await self.get(account, message_id, metadata_headers=REPLY_HEADERS)
        headers = (original.get('payload') or {}).get('headers', [])
        message = build_reply(headers, body)
        sent = await self.send(account, message, thread_id=original.get('threadId'))
        return {
            'id': sent.get('id'),
            'threadId': sent.get('threadId'),
            'to': message['to'],
            'subject': message['subject'],
        }

    async def trash(self, account: str, message_id: str) -> Dict:
        return await self._call(
            account,
            lambda service: service.users().messages().trash(userId='me', id=message_id),
            label='messages.trash'
        )

    async def untrash(self, account: str, message_id: str) -> Dict:
        return await self._call(
            account,
            lambda service: service.users().messages().untrash(userId='me', id=message_id),
            label='messages.untrash'
        )

    async def modify_labels(self, account: str, message_id: str, add: Optional[List[str]] = None,
                            remove: Optional[List[str]] = None) -> Dict:
        body = {'addLabelIds': list(add or []), 'removeLabelIds': list(remove or [])}
        return await self._call(
            account,
            lambda service: service.users().messages().modify(userId='me', id=message_id, body=body),
            label='messages.modify'
        )

    async def apply(self, account: str, op: Operation, message_id: str) -> Dict:
        """Remote effect of one operation on one message"""
        if op == Operation.DELETE:
            return await self.trash(account, message_id)
        if op == Operation.RESTORE:
            return await self.untrash(account, message_id)
        if op == Operation.ARCHIVE:
            return await self.modify_labels(account, message_id, remove=['INBOX'])
        if op == Operation.UNARCHIVE:
            return await self.modify_labels(account, message_id, add=['INBOX'])
        if op == Operation.MARK_READ:
            return await self.modify_labels(account, message_id, remove=['UNREAD'])
        if op == Operation.MARK_UNREAD:
            return await self.modify_labels(account, message_id, add=['UNREAD'])
        raise ValueError(f"Unknown operation: {op}")

    async def batch(self, account: str, message_ids: List[str], op: Operation) -> List[ActionResult]:
        """Sequential per-id calls; failures are reported, never raised"""
        results = []
        for message_id in message_ids:
            try:
                await self.apply(account, op, message_id)
                results.append(ActionResult(id=message_id, success=True, account=account))
            except InboxdError as error:
                logger.error(f"Error applying {op.value} to {message_id}: {error}")
                results.append(failed_result(message_id, account, error))
        return results


def failed_result(message_id: str, account: Optional[str], error: InboxdError) -> ActionResult:
    return ActionResult(id=message_id, success=False, account=account, error_kind=error.kind, error=str(error))
