import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_db_dir = tempfile.mkdtemp(prefix='examprep-tests-')
os.environ['DATABASE_URL'] = 'sqlite:///' + os.path.join(_db_dir, 'test.db')
os.environ.setdefault('DEFAULT_ADMIN_PASSWORD', 'admin123')

import app as flask_app  # noqa: E402
from models import db  # noqa: E402


@pytest.fixture
def app():
    """Application with a fresh schema for every test"""
    flask_app.app.config['TESTING'] = True
    flask_app.app.config['SECRET_KEY'] = 'test-secret-key'
    flask_app.app.config['EXPOSE_RESET_TOKEN'] = True
    flask_app.app.config['DEFAULT_ADMIN_PASSWORD'] = 'admin123'
    with flask_app.app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app.app
    with flask_app.app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app):
    """Separate client holding an admin session"""
    admin = app.test_client()
    response = admin.post('/api/admin/login', json={'password': 'admin123'})
    assert response.status_code == 200
    return admin


def register(client, contact='asha@example.com', password='secret1', name='Asha Rao', exam=None):
    payload = {'fullName': name, 'contactInfo': contact, 'password': password}
    if exam:
        payload['examChoice'] = exam
    return client.post('/api/users/register', json=payload)


def login(client, contact='asha@example.com', password='secret1'):
    return client.post('/api/users/login', json={'contactInfo': contact, 'password': password})


def add_video(client, video_id, title, category='history', video_type='youtube'):
    return client.post('/api/videos', json={
        'id': video_id, 'title': title, 'category': category, 'type': video_type,
    })
