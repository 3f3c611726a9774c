import re
from typing import List, Dict, Optional

from caseconverter import snakecase

from inboxd.messages import extract_email_address, extract_sender_name, extract_links


UNSUBSCRIBE_WORDS = re.compile(r'unsubscribe|opt[-_ ]?out', re.IGNORECASE)
PREFERENCE_WORDS = re.compile(r'preferences?|manage[-_ ]?(subscription|email)s?|email[-_ ]?settings', re.IGNORECASE)
BRACKETED = re.compile(r'<([^>]*)>')


class UnsubscribeLink(object):
    """
    One target out of a List-Unsubscribe header, e.g.
    <mailto:leave-4k2@bounce.list.example?subject=unsubscribe>
    """

    def __init__(self, raw: str):
        raw = raw.strip()
        match = BRACKETED.search(raw)
        # some senders skip the angle brackets
        self.target = match.group(1).strip() if match else raw

    @property
    def scheme(self) -> str:
        return self.target.split(':', 1)[0].lower() if ':' in self.target else ''

    def is_mailto(self) -> bool:
        return self.scheme == 'mailto'

    def is_http(self) -> bool:
        return self.scheme in ('http', 'https')

    def address(self) -> str:
        """Mailbox for mailto targets (query dropped), the url for everything else"""
        if not self.is_mailto():
            return self.target
        return self.target.split(':', 1)[1].split('?', 1)[0]


class Headers(object):
    """
    Gmail payload headers keyed by snake_case name, so
    'List-Unsubscribe-Post' is stored as 'list_unsubscribe_post'
    """

    def __init__(self, headers: Optional[List[Dict]]):
        self.by_name = {snakecase(h['name']): h['value'] for h in headers or []}

    def __contains__(self, key):
        return key in self.by_name

    def __getitem__(self, key):
        return self.by_name[key]

    def get(self, name: str, default: str = '') -> str:
        return self.by_name.get(snakecase(name), default)

    def sender_name(self) -> str:
        sender = self.get('From')
        return extract_sender_name(sender) if '<' in sender else ''

    def sender_email(self) -> str:
        return extract_email_address(self.get('From'))

    def unsubscribe_links(self) -> List[UnsubscribeLink]:
        value = self.get('List-Unsubscribe')
        return [UnsubscribeLink(part) for part in value.split(',') if part.strip()]

    def one_click(self) -> bool:
        return 'one-click' in self.get('List-Unsubscribe-Post').lower()


def parse_list_unsubscribe(value: str) -> Dict[str, List[str]]:
    """Split a List-Unsubscribe value into mailto and http(s) targets"""
    headers = Headers([{'name': 'List-Unsubscribe', 'value': value or ''}])
    result = {'mailtos': [], 'links': []}
    for link in headers.unsubscribe_links():
        if link.is_mailto():
            result['mailtos'].append(link.target)
        elif link.is_http():
            result['links'].append(link.target)
    return result


def find_unsubscribe_links_in_body(body: str, mime_type: str = 'text/plain') -> Dict[str, List[str]]:
    """Body links whose url or anchor text looks like unsubscribe or preferences"""
    result = {'unsubscribeLinks': [], 'preferenceLinks': []}
    for link in extract_links(body, mime_type):
        haystack = f"{link['url']} {link['text'] or ''}"
        if UNSUBSCRIBE_WORDS.search(haystack):
            result['unsubscribeLinks'].append(link['url'])
        elif PREFERENCE_WORDS.search(haystack):
            result['preferenceLinks'].append(link['url'])
    return result


def extract_unsubscribe_info(headers: List[Dict], body: str, mime_type: str = 'text/plain') -> Dict:
    """Every unsubscribe option a message offers, header first"""
    parsed = Headers(headers)
    header_links = parse_list_unsubscribe(parsed.get('List-Unsubscribe'))
    body_links = find_unsubscribe_links_in_body(body, mime_type)

    unsubscribe_links = list(header_links['links'])
    for url in body_links['unsubscribeLinks']:
        if url not in unsubscribe_links:
            unsubscribe_links.append(url)

    return {
        'unsubscribeLinks': unsubscribe_links,
        'unsubscribeEmails': [UnsubscribeLink(m).address() for m in header_links['mailtos']],
        'preferenceLinks': body_links['preferenceLinks'],
        'oneClick': parsed.one_click() and bool(header_links['links']),
        'sources': {
            'header': bool(header_links['links'] or header_links['mailtos']),
            'body': bool(body_links['unsubscribeLinks'] or body_links['preferenceLinks']),
        },
    }
