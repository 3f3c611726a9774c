"""
Message helpers - address parsing, body decoding, links, MIME building and id parsing
"""

import base64
import html
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from email.mime.text import MIMEText
from email.utils import parsedate_to_datetime
from typing import List, Dict, Optional, Tuple

from inboxd.models import EmailMessage


logger = logging.getLogger(__name__)

NO_CONTENT = '(No content found)'
BODY_PREVIEW_LENGTH = 200


# === Addresses ===

def extract_email_address(sender: str) -> str:
    """Extract email from 'Name <email@domain.com>' format"""
    if not sender:
        return ''
    match = re.search(r'<([^>]+)>', sender)
    if match:
        return match.group(1).strip()
    match = re.search(r'([^\s<>"]+@[^\s<>"]+)', sender)
    if match:
        return match.group(1).strip()
    return sender.strip()


def extract_domain(sender: str, fallback: str = '') -> str:
    """Lower-cased domain of a From value, fallback when there is no address"""
    match = re.search(r'@([a-zA-Z0-9.-]+)', extract_email_address(sender or ''))
    return match.group(1).lower() if match else fallback


def extract_sender_name(sender: str) -> str:
    """Display name of a From value, or the local part of a bare address"""
    if not sender:
        return 'Unknown'
    match = re.match(r'^"?(.*?)"?\s*<.*>$', sender)
    if match and match.group(1):
        return match.group(1)
    return sender.split('@')[0]


def header_value(headers: List[Dict], name: str) -> str:
    """Case-insensitive header lookup on a Gmail payload header list"""
    lowered = name.lower()
    for header in headers or []:
        if header.get('name', '').lower() == lowered:
            return header.get('value', '')
    return ''


def contains(text: str, pattern: Optional[str]) -> bool:
    """Case-insensitive substring match; an empty pattern matches nothing"""
    if not pattern:
        return False
    return pattern.lower() in (text or '').lower()


# === Bodies ===

def decode_base64url(data: str) -> str:
    if not data:
        return ''
    padded = data + '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode('ascii')).decode('utf-8', errors='replace')


def extract_body(payload: Dict, prefer_html: bool = False) -> Tuple[str, str]:
    """Returns (mime_type, content) for a Gmail message payload"""
    if not payload:
        return 'text/plain', NO_CONTENT

    data = (payload.get('body') or {}).get('data')
    if data:
        return payload.get('mimeType', 'text/plain'), decode_base64url(data)

    parts = payload.get('parts') or []
    if parts:
        order = ['text/html', 'text/plain'] if prefer_html else ['text/plain', 'text/html']
        for mime_type in order:
            part = next((p for p in parts if p.get('mimeType') == mime_type), None)
            if part and (part.get('body') or {}).get('data'):
                return mime_type, decode_base64url(part['body']['data'])

        # multipart/alternative nested inside multipart/mixed
        for part in parts:
            if part.get('parts'):
                mime_type, content = extract_body(part, prefer_html)
                if content and content != NO_CONTENT:
                    return mime_type, content

    return 'text/plain', NO_CONTENT


# === Links ===

ANCHOR_PATTERN = re.compile(r'<a\s[^>]*?href\s*=\s*["\']([^"\']+)["\'][^>]*>(.*?)</a>', re.IGNORECASE | re.DOTALL)
URL_PATTERN = re.compile(r'https?://[^\s<>"\']+', re.IGNORECASE)
TRAILING_PUNCTUATION = re.compile(r'[.,;:!?)\]]+$')


def is_valid_url(url: Optional[str]) -> bool:
    """Only http(s) links are reported; javascript:, data:, mailto: and friends are not"""
    if not url:
        return False
    return bool(re.match(r'^https?://', url, re.IGNORECASE))


def decode_html_entities(text: Optional[str]) -> str:
    if not text:
        return ''
    return html.unescape(text)


def extract_links(body: Optional[str], mime_type: str = 'text/plain') -> List[Dict]:
    """Unique http(s) links as {url, text}; text is None outside anchors"""
    if not body:
        return []

    links = []
    seen = set()

    def add(url: str, text: Optional[str]) -> None:
        url = TRAILING_PUNCTUATION.sub('', decode_html_entities(url.strip()))
        if not is_valid_url(url) or url in seen:
            return
        seen.add(url)
        links.append({'url': url, 'text': text})

    if mime_type == 'text/html':
        for href, inner in ANCHOR_PATTERN.findall(body):
            text = re.sub(r'<[^>]+>', '', inner)
            text = re.sub(r'\s+', ' ', decode_html_entities(text)).strip()
            add(href, text or None)

    for url in URL_PATTERN.findall(body):
        add(url, None)

    return links


# === Outgoing mail ===

def create_message(to: str, subject: str, body: str, sender: Optional[str] = None,
                   extra_headers: Optional[Dict[str, str]] = None) -> Dict:
    """Create a message for an email.

    Args:
        to: Email address of the receiver.
        subject: The subject of the email message.
        body: The text of the email message.
        sender: Optional From address; Gmail fills it in when omitted.
        extra_headers: Additional headers such as In-Reply-To.

    Returns:
        A dict with a base64url encoded RFC 5322 message under 'raw'.
    """
    message = MIMEText(body, 'plain', 'utf-8')
    logger.info(f'TO: {to}')

    message['to'] = to
    if sender:
        message['from'] = sender
    message['subject'] = subject
    for name, value in (extra_headers or {}).items():
        if value:
            message[name] = value

    raw_msg = base64.urlsafe_b64encode(message.as_bytes())
    return {'raw': raw_msg.decode('utf-8')}


def build_reply(original_headers: List[Dict], body: str) -> Dict:
    """Reply addressed to the original sender, threaded with In-Reply-To/References"""
    original_subject = header_value(original_headers, 'Subject')
    message_id = header_value(original_headers, 'Message-ID')
    references = header_value(original_headers, 'References')

    subject = original_subject if original_subject.lower().startswith('re:') else f'Re: {original_subject}'
    if references and message_id:
        references = f'{references} {message_id}'
    else:
        references = references or message_id

    to = header_value(original_headers, 'Reply-To') or header_value(original_headers, 'From')
    message = create_message(to, subject, body, extra_headers={
        'In-Reply-To': message_id,
        'References': references,
    })
    message.update({'to': to, 'subject': subject})
    return message


def body_preview(body: str) -> str:
    return (body or '')[:BODY_PREVIEW_LENGTH]


# === Id and duration parsing ===

def parse_ids_input(value: Optional[str]) -> List[str]:
    """Ids from comma/space separated text, an 'ids:' prefix, or JSON"""
    if not value or not value.strip():
        return []

    trimmed = value.strip()
    if trimmed[0] in '[{':
        try:
            parsed = json.loads(trimmed)
        except ValueError:
            parsed = None

        if isinstance(parsed, list):
            ids = [item.get('id') if isinstance(item, dict) else item for item in parsed]
            return [str(i).strip() for i in ids if i is not None and str(i).strip()]
        if isinstance(parsed, dict):
            if isinstance(parsed.get('ids'), list):
                return [str(i).strip() for i in parsed['ids'] if str(i).strip()]
            if isinstance(parsed.get('emails'), list):
                ids = [e.get('id') for e in parsed['emails'] if isinstance(e, dict)]
                return [str(i).strip() for i in ids if i]

    cleaned = re.sub(r'^ids:\s*', '', trimmed, flags=re.IGNORECASE)
    return [part for part in re.split(r'[\s,]+', cleaned) if part]


def parse_since_duration(duration: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """'7d', '24h' or '30m' as the moment that long ago, None when invalid"""
    match = re.match(r'^(\d+)([dhm])$', (duration or '').strip(), re.IGNORECASE)
    if not match:
        return None

    value = int(match.group(1))
    unit = match.group(2).lower()
    now = now or datetime.now(timezone.utc)
    if unit == 'd':
        return now - timedelta(days=value)
    if unit == 'h':
        return now - timedelta(hours=value)
    return now - timedelta(minutes=value)


def parse_older_than_duration(duration: str) -> Optional[str]:
    """'2w' -> '14d' for Gmail's older_than:, which only understands days"""
    match = re.match(r'^(\d+)([dwm])$', (duration or '').strip(), re.IGNORECASE)
    if not match:
        return None

    value = int(match.group(1))
    multiplier = {'d': 1, 'w': 7, 'm': 30}[match.group(2).lower()]
    return f'{value * multiplier}d'


def parse_message_date(value: str) -> Optional[datetime]:
    """Date header as an aware datetime (UTC when unzoned), None when unparseable"""
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment is not None and moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


# === Grouping ===

def _summary(email: EmailMessage) -> Dict:
    return {'id': email.id, 'subject': email.subject, 'date': email.date, 'account': email.account}


def group_by_sender(emails: List[EmailMessage]) -> Dict:
    """Groups by sender domain, largest group first"""
    groups: Dict[str, Dict] = {}
    for email in emails:
        domain = extract_domain(email.sender) or (email.sender or '').lower()
        group = groups.setdefault(domain, {
            'sender': domain,
            'senderDisplay': email.sender,
            'count': 0,
            'emails': [],
        })
        group['count'] += 1
        group['emails'].append(_summary(email))

    ordered = sorted(groups.values(), key=lambda g: g['count'], reverse=True)
    return {'groups': ordered, 'totalCount': len(emails)}


def group_by_thread(emails: List[EmailMessage]) -> Dict:
    """Groups by thread id (message id when missing), largest thread first"""
    groups: Dict[str, Dict] = {}
    for email in emails:
        thread_id = email.thread_id or email.id
        group = groups.setdefault(thread_id, {
            'threadId': thread_id,
            'subject': email.subject or '',
            'count': 0,
            'participants': [],
            'emails': [],
        })
        group['count'] += 1
        if email.sender and email.sender not in group['participants']:
            group['participants'].append(email.sender)
        group['emails'].append(_summary(email))

    ordered = sorted(groups.values(), key=lambda g: g['count'], reverse=True)
    return {'groups': ordered, 'totalCount': len(emails)}
