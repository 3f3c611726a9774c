"""
Tests for header parsing and unsubscribe discovery
"""

from inboxd.headers import Headers, UnsubscribeLink, parse_list_unsubscribe, extract_unsubscribe_info


class TestUnsubscribeLink:
    def test_mailto(self):
        link = UnsubscribeLink(' <mailto:unsub@list.example?subject=unsubscribe>')
        assert link.is_mailto()
        assert not link.is_http()
        assert link.address() == 'unsub@list.example'

    def test_http_without_brackets(self):
        link = UnsubscribeLink('https://list.example/u/123')
        assert link.scheme == 'https'
        assert link.is_http()
        assert link.address() == 'https://list.example/u/123'


class TestHeaders:
    HEADERS = [
        {'name': 'From', 'value': '"Weekly News" <news@newsletter.example>'},
        {'name': 'List-Unsubscribe', 'value': '<mailto:u@newsletter.example>, <https://newsletter.example/u>'},
        {'name': 'List-Unsubscribe-Post', 'value': 'List-Unsubscribe=One-Click'},
    ]

    def test_lookup(self):
        headers = Headers(self.HEADERS)
        assert 'from' in headers
        assert headers['from'] == '"Weekly News" <news@newsletter.example>'
        assert headers.get('List-Unsubscribe-Post') == 'List-Unsubscribe=One-Click'
        assert headers.get('X-Missing') == ''

    def test_sender(self):
        headers = Headers(self.HEADERS)
        assert headers.sender_name() == 'Weekly News'
        assert headers.sender_email() == 'news@newsletter.example'

    def test_unsub_links(self):
        links = Headers(self.HEADERS).unsubscribe_links()
        assert [link.target for link in links] == ['mailto:u@newsletter.example', 'https://newsletter.example/u']
        assert Headers(self.HEADERS).one_click()

    def test_no_unsubscribe_header(self):
        headers = Headers([{'name': 'From', 'value': 'a@b.example'}])
        assert headers.unsubscribe_links() == []
        assert not headers.one_click()
        assert headers.sender_name() == ''


def test_parse_list_unsubscribe():
    assert parse_list_unsubscribe('<mailto:u@x.example>, <http://x.example/u>, <ftp://x.example>') == {
        'mailtos': ['mailto:u@x.example'],
        'links': ['http://x.example/u'],
    }
    assert parse_list_unsubscribe('') == {'mailtos': [], 'links': []}


class TestExtractUnsubscribeInfo:
    def test_header_and_body(self):
        headers = TestHeaders.HEADERS
        body = (
            '<a href="https://newsletter.example/u">Unsubscribe</a> '
            '<a href="https://newsletter.example/prefs">Manage preferences</a> '
            '<a href="https://newsletter.example/read">Read online</a>'
        )

        info = extract_unsubscribe_info(headers, body, 'text/html')

        assert info['unsubscribeLinks'] == ['https://newsletter.example/u']
        assert info['unsubscribeEmails'] == ['u@newsletter.example']
        assert info['preferenceLinks'] == ['https://newsletter.example/prefs']
        assert info['oneClick'] is True
        assert info['sources'] == {'header': True, 'body': True}

    def test_body_only(self):
        info = extract_unsubscribe_info([], 'To opt out visit https://shop.example/opt-out today.')

        assert info['unsubscribeLinks'] == ['https://shop.example/opt-out']
        assert info['oneClick'] is False
        assert info['sources'] == {'header': False, 'body': True}

    def test_nothing_found(self):
        info = extract_unsubscribe_info([{'name': 'From', 'value': 'alice@work.example'}], 'See you soon')
        assert info['unsubscribeLinks'] == []
        assert info['unsubscribeEmails'] == []
        assert info['sources'] == {'header': False, 'body': False}
