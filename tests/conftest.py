"""
Shared fixtures for the identity reconciliation tests.

Every test gets its own SQLite file under tmp_path; nothing touches the
configured contacts.db.
"""
from datetime import datetime, timedelta, timezone

import pytest

from db_models import LinkPrecedence
from db_setup import init_db
from repository import SqliteContactRepository
from resolver import IdentityResolver


class StepClock:
    """Deterministic clock: each call is one second after the previous one."""

    def __init__(self, start=None):
        self.current = start or datetime(2023, 4, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def temp_db(tmp_path):
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture
def repository(temp_db):
    repo = SqliteContactRepository(temp_db)
    yield repo
    repo.close()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def resolver(repository, clock):
    return IdentityResolver(repository, clock=clock)


@pytest.fixture
def seed(repository, clock):
    """Insert a contact directly, bypassing reconciliation."""
    def _seed(email=None, phone=None, linked_id=None, created_at=None):
        created_at = created_at or clock()
        precedence = LinkPrecedence.SECONDARY if linked_id else LinkPrecedence.PRIMARY
        return repository.insert(email, phone, precedence, linked_id, created_at, created_at)
    return _seed


@pytest.fixture
def contacts_by_id(repository):
    def _contacts():
        return {c.id: c for c in repository.list_all()}
    return _contacts
