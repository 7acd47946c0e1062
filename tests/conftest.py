"""
Shared test fixtures for QC Records.

Each test gets its own SQLite file and upload folder, users for every
role, and logged-in test clients.
"""

import sqlite3

import pytest
from werkzeug.security import generate_password_hash

import app as qc
from seed_dev_db import seed_database

PASSWORD = 'secret'

TEST_USERS = [
    ('admin', 'admin'),
    ('qm', 'quality_manager'),
    ('inspector', 'inspector'),
    ('operator', 'operator'),
]


@pytest.fixture
def app(tmp_path):
    """Flask app bound to a temporary database and upload folder."""
    flask_app = qc.app
    flask_app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / 'qc-test.db'),
        UPLOAD_FOLDER=str(tmp_path / 'uploads'),
        ANDON_CONSECUTIVE_NG=3,
        CALIBRATION_DUE_DAYS=30,
    )
    with flask_app.app_context():
        qc.init_db()
        db = qc.get_db()
        for username, role in TEST_USERS:
            db.execute(
                'INSERT INTO users (username, email, password_hash, role) VALUES (?, ?, ?, ?)',
                [username, f'{username}@qc.test', generate_password_hash(PASSWORD), role],
            )
        db.commit()
    yield flask_app


@pytest.fixture
def db(app):
    """Direct connection to the test database for setup and assertions."""
    conn = sqlite3.connect(app.config['DATABASE'])
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


@pytest.fixture
def seeded(app):
    """Sample master data (suppliers, parts, standards, instruments, machines, defect codes)."""
    seed_database(app.config['DATABASE'])
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def login(app, username):
    test_client = app.test_client()
    resp = test_client.post('/login', json={'username': username, 'password': PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return test_client


@pytest.fixture
def admin_client(app):
    return login(app, 'admin')


@pytest.fixture
def qm_client(app):
    return login(app, 'qm')


@pytest.fixture
def inspector_client(app):
    return login(app, 'inspector')


@pytest.fixture
def operator_client(app):
    return login(app, 'operator')


@pytest.fixture
def user_ids(db):
    return {r['username']: r['id'] for r in db.execute('SELECT id, username FROM users')}
