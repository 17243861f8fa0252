import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("MAX_LOGIN_ATTEMPTS", "3")

from datetime import datetime

import mongomock
import pytest

import database


@pytest.fixture
def db():
    mock = mongomock.MongoClient()["exam_system_test"]
    database.set_db(mock)
    database.ensure_indexes(mock)
    yield mock
    database.set_db(None)


@pytest.fixture
def now():
    # mongomock keeps millisecond precision, so stay on whole seconds
    return datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def user(db):
    import users
    return users.register_user("alice_01", "alice@example.com", "secret123")
