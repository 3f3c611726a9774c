"""
Tests for the JSON store helpers
"""

import json
import os
import stat

from inboxd.store import read_json, write_json, update_json, append_jsonl, read_jsonl, remove_file


class TestReadWriteJson:
    """Whole-file JSON reads fall back to defaults, writes are atomic"""

    def test_missing_file_returns_default(self, tmp_path):
        assert read_json(tmp_path / 'missing.json', {'a': 1}) == {'a': 1}

    def test_default_is_copied(self, tmp_path):
        default = {'items': []}
        value = read_json(tmp_path / 'missing.json', default)
        value['items'].append('x')
        assert default == {'items': []}

    def test_round_trip(self, tmp_path):
        path = tmp_path / 'nested' / 'data.json'
        value = {'name': 'Zoë', 'ids': [1, 2, 3], 'flag': True, 'none': None}
        write_json(path, value)
        assert read_json(path, None) == value

    def test_malformed_json_returns_default_and_keeps_file(self, tmp_path, caplog):
        path = tmp_path / 'broken.json'
        path.write_text('{not json')

        assert read_json(path, []) == []
        assert path.read_text() == '{not json'
        assert any('malformed' in record.message for record in caplog.records)

    def test_invalid_utf8_returns_default_and_keeps_file(self, tmp_path, caplog):
        path = tmp_path / 'state.json'
        path.write_bytes(b'{"seenEmailIds": ["\xff\xfe"]}')

        assert read_json(path, {'x': 1}) == {'x': 1}
        assert path.read_bytes() == b'{"seenEmailIds": ["\xff\xfe"]}'
        assert len([r for r in caplog.records if r.levelname == 'WARNING']) == 1

    def test_write_leaves_no_temp_file(self, tmp_path):
        path = tmp_path / 'data.json'
        write_json(path, [1])
        assert not (tmp_path / 'data.json.tmp').exists()

    def test_written_file_is_owner_only(self, tmp_path):
        path = tmp_path / 'data.json'
        write_json(path, {})
        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600


class TestUpdateJson:
    """Locked read-modify-write"""

    def test_mutate_receives_current_value(self, tmp_path):
        path = tmp_path / 'counter.json'
        write_json(path, {'count': 1})

        def bump(data):
            data['count'] += 1
            return data

        assert update_json(path, {'count': 0}, bump) == {'count': 2}
        assert read_json(path, None) == {'count': 2}

    def test_missing_file_uses_default(self, tmp_path):
        path = tmp_path / 'list.json'
        update_json(path, [], lambda data: data + ['a'])
        assert read_json(path, None) == ['a']


class TestJsonLines:
    """Append-only JSON lines"""

    def test_append_and_read(self, tmp_path):
        path = tmp_path / 'log.jsonl'
        append_jsonl(path, {'n': 1})
        append_jsonl(path, {'n': 2})

        assert read_jsonl(path) == [{'n': 1}, {'n': 2}]
        assert path.read_text().endswith('\n')

    def test_bad_lines_are_skipped(self, tmp_path):
        path = tmp_path / 'log.jsonl'
        path.write_text(json.dumps({'n': 1}) + '\nnot-json\n\n' + json.dumps({'n': 2}) + '\n')
        assert read_jsonl(path) == [{'n': 1}, {'n': 2}]

    def test_missing_file_reads_empty(self, tmp_path):
        assert read_jsonl(tmp_path / 'missing.jsonl') == []

    def test_invalid_utf8_line_does_not_break_the_rest(self, tmp_path):
        path = tmp_path / 'log.jsonl'
        path.write_bytes(b'{"n": 1}\n\xff\xfe garbage\n{"n": 2}\n')
        assert read_jsonl(path) == [{'n': 1}, {'n': 2}]


def test_remove_file(tmp_path):
    path = tmp_path / 'x.json'
    write_json(path, {})
    assert remove_file(path) is True
    assert remove_file(path) is False
