"""
Tests for CSV catalog parsing and the user import command
"""
import json

from importers import parse_video_rows, parse_registered_at, import_users
from models import db, User


class TestParseVideoRows:

    def test_header_and_malformed_rows_are_skipped(self):
        text = (
            'category,title,id,type\n'
            'history,"Mughals, part 1",mg001,youtube\n'
            'history,Too,many,cells,youtube\n'
            '   \n'
        )
        rows, skipped = parse_video_rows(text)
        assert rows == [{'category': 'history', 'title': 'Mughals, part 1', 'id': 'mg001', 'type': 'youtube'}]
        assert skipped == 2

    def test_cells_are_trimmed(self):
        rows, skipped = parse_video_rows(' polity , Preamble , pr001 , GDRIVE ')
        assert rows == [{'category': 'polity', 'title': 'Preamble', 'id': 'pr001', 'type': 'gdrive'}]
        assert skipped == 0


EXPORT = [
    {
        'contactInfo': 'Old@Example.com',
        'fullName': 'Old Timer',
        'password': 'plain-text',
        'progress': {'upsc': {'v1': True, 'v2': False}},
        'favorites': {'upsc': [{'id': 'v1', 'title': 'Intro', 'type': 'youtube'}]},
        'mockTestHistory': [{'testName': 'Prelims', 'score': 40, 'total': 100}],
    },
    {'contactInfo': 'nopass@example.com', 'fullName': 'No Password'},
    {'contactInfo': 'old@example.com', 'fullName': 'Duplicate', 'password': 'x'},
]


class TestImportUsers:

    def test_imports_and_hashes_passwords(self, app):
        with app.app_context():
            imported, skipped = import_users(EXPORT)
            assert (imported, skipped) == (1, 2)

            user = User.query.filter_by(contact_info='old@example.com').one()
            assert user.password_hash != 'plain-text'
            assert user.check_password('plain-text')
            assert user.exam_choice == 'upsc'
            profile = user.to_dict()
            assert profile['progress'] == {'upsc': {'v1': True, 'v2': False}}
            assert profile['favorites'] == {'upsc': [{'id': 'v1', 'title': 'Intro', 'type': 'youtube'}]}
            assert profile['mockTestHistory'][0]['score'] == 40
            db.session.remove()

    def test_imported_user_can_log_in(self, app, client):
        with app.app_context():
            import_users(EXPORT[:1])
        response = client.post('/api/users/login', json={
            'contactInfo': 'old@example.com', 'password': 'plain-text',
        })
        assert response.status_code == 200

    def test_cli_command_reads_file(self, app, tmp_path):
        source = tmp_path / 'users.json'
        source.write_text(json.dumps(EXPORT), encoding='utf-8')
        result = app.test_cli_runner().invoke(args=['import-users', str(source)])
        assert result.exit_code == 0, result.output
        assert 'Imported 1 users, skipped 2.' in result.output

    def test_cli_command_reports_bad_source(self, app, tmp_path):
        source = tmp_path / 'users.json'
        source.write_text('{"not": "a list"}', encoding='utf-8')
        result = app.test_cli_runner().invoke(args=['import-users', str(source)])
        assert result.exit_code != 0
        assert 'Could not load users' in result.output

    def test_bad_records_are_skipped_and_import_continues(self, app):
        records = [
            'not-an-object',
            None,
            {'contactInfo': 'broken@example.com', 'password': 'pw',
             'mockTestHistory': [{'testName': 'Prelims', 'score': 'forty', 'total': 100}]},
            {'contactInfo': 'fine@example.com', 'fullName': 'Fine', 'password': 'pw'},
        ]
        with app.app_context():
            assert import_users(records) == (1, 3)
            assert [u.contact_info for u in User.query.all()] == ['fine@example.com']
            db.session.remove()

    def test_non_string_name_is_stringified(self, app):
        with app.app_context():
            assert import_users([{'contactInfo': 'num@example.com', 'fullName': 123, 'password': 4567}]) == (1, 0)
            user = User.query.filter_by(contact_info='num@example.com').one()
            assert user.full_name == '123'
            assert user.check_password('4567')
            db.session.remove()

    def test_duplicate_favorites_are_collapsed(self, app):
        record = {
            'contactInfo': 'fav@example.com',
            'password': 'pw',
            'favorites': {'upsc': ['v1', {'id': 'v1', 'title': 'Again'}, {'id': 'v2', 'title': 'Other'}]},
        }
        with app.app_context():
            assert import_users([record]) == (1, 0)
            favorites = User.query.filter_by(contact_info='fav@example.com').one().to_dict()['favorites']
            assert [f['id'] for f in favorites['upsc']] == ['v1', 'v2']
            db.session.remove()

    def test_registration_date_is_kept(self, app):
        records = [
            {'contactInfo': 'a@example.com', 'password': 'pw', 'registeredAt': 'October 17, 2025'},
            {'contactInfo': 'b@example.com', 'password': 'pw', 'registeredAt': '2025-03-01T09:30:00Z'},
            {'contactInfo': 'c@example.com', 'password': 'pw', 'registeredAt': 'sometime last year'},
        ]
        with app.app_context():
            assert import_users(records) == (3, 0)
            registered = {u.contact_info: u.to_dict()['registeredAt'] for u in User.query.all()}
            assert registered['a@example.com'].startswith('2025-10-17')
            assert registered['b@example.com'].startswith('2025-03-01T09:30')
            # unreadable dates fall back to the import time
            assert registered['c@example.com'] > registered['a@example.com']
            db.session.remove()


class TestParseRegisteredAt:

    def test_long_form_date(self):
        parsed = parse_registered_at('October 17, 2025')
        assert (parsed.year, parsed.month, parsed.day) == (2025, 10, 17)
        assert parsed.tzinfo is not None

    def test_iso_with_zulu_suffix(self):
        parsed = parse_registered_at('2025-03-01T09:30:00Z')
        assert parsed.hour == 9
        assert parsed.utcoffset().total_seconds() == 0

    def test_unparseable_values(self):
        assert parse_registered_at('soon') is None
        assert parse_registered_at('') is None
        assert parse_registered_at(1700000000) is None
