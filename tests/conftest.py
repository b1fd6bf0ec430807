"""
Shared fixtures: in-memory database, test client and logged-in users
"""
import os
import tempfile

import pytest

# Configure environment for testing, before main is imported
os.environ['SESSION_SECRET'] = 'test_secret_key_for_testing_only'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ.setdefault('LOG_DIR', tempfile.mkdtemp(prefix='invoice_logs_'))

from main import app  # noqa: E402
from models import db, UserRole  # noqa: E402
import accounts  # noqa: E402
import ledger  # noqa: E402


@pytest.fixture
def test_app():
    """Application in testing mode with fresh tables for every test"""
    app.config['TESTING'] = True
    app.config['WTF_CSRF_ENABLED'] = False  # Disable CSRF for tests

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(test_app):
    return test_app.test_client()


@pytest.fixture
def admin_user(test_app):
    return accounts.create_user('admin_test', 'admin_pass', '測試管理員', UserRole.ADMIN)


@pytest.fixture
def operator_user(test_app):
    return accounts.create_user('operator_test', 'operator_pass', '測試操作員', UserRole.OPERATOR)


@pytest.fixture
def no_upload_delay(monkeypatch):
    monkeypatch.setattr(ledger, 'UPLOAD_SIMULATED_DELAY', 0)


def login(client, user):
    """Put the user in the client session without going through the login endpoint"""
    with client.session_transaction() as sess:
        sess['user_id'] = user.id
        sess['username'] = user.username
        sess['role'] = user.role.value
