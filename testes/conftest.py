import itertools
import os
import shutil
import tempfile
from types import SimpleNamespace

# The app reads its configuration at import time
_TMP = tempfile.mkdtemp(prefix='helpdesk-tests-')
os.environ['FLASK_ENV'] = 'development'
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_TMP, 'helpdesk-test.db')}"
os.environ['UPLOAD_FOLDER'] = os.path.join(_TMP, 'uploads')
os.environ['PUBLIC_BASE_URL'] = 'http://helpdesk.test'
for _key in ('SMTP_HOST', 'SMTP_PORT', 'SMTP_USER', 'SMTP_PASS', 'SMTP_FROM'):
    os.environ.pop(_key, None)

import pytest

from app import app as flask_app
import auth
import storage
from models import db
from notifications import EmailResult, notifier


class RecordingMailer:
    """Stands in for the SMTP mailer and keeps every message."""

    configured = True

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to_email, subject, body):
        if self.fail:
            raise OSError('SMTP server unreachable')
        self.sent.append({'to': to_email, 'subject': subject, 'body': body})
        return EmailResult(True, 'Email sent')

    def to(self, email):
        return [m for m in self.sent if m['to'] == email]


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_TMP, ignore_errors=True)


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, MAX_ATTACHMENT_SIZE=10 * 1024 * 1024)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()
    shutil.rmtree(flask_app.config['UPLOAD_FOLDER'], ignore_errors=True)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def mailer():
    recording = RecordingMailer()
    original = notifier.mailer
    notifier.mailer = recording
    yield recording
    notifier.mailer = original


@pytest.fixture
def make_user(app):
    """Create an account and return a plain record (id, email, password, role)."""
    counter = itertools.count(1)

    def _make(role='end_user', password='password123', is_active=True, email=None, **extra):
        n = next(counter)
        email = email or f'{role.replace("_", ".")}{n}@example.com'
        with app.app_context():
            user = storage.create_user(
                email=email,
                first_name=role.replace('_', ' ').title(),
                last_name=f'User{n}',
                password=auth.hash_password(password),
                role=role,
                is_active=is_active,
                **extra,
            )
            return SimpleNamespace(id=user.id, email=email, password=password, role=role)

    return _make


@pytest.fixture
def login_as(app):
    """A fresh test client already signed in as ``user``."""

    def _login(user):
        c = app.test_client()
        r = c.post('/api/login', json={'email': user.email, 'password': user.password})
        assert r.status_code == 200, r.get_json()
        return c

    return _login


@pytest.fixture
def make_ticket(login_as):
    """Create a ticket through the API as ``user``; returns its JSON."""

    def _make(user, **overrides):
        payload = {
            'title': 'Laptop will not boot',
            'description': 'Black screen after the update',
            'category': 'hardware',
            'priority': 'medium',
        }
        payload.update(overrides)
        r = login_as(user).post('/api/tickets', json=payload)
        assert r.status_code == 201, r.get_json()
        return r.get_json()

    return _make
