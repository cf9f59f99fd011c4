"""
Tests for repository.py

Tests the SQLite contact store: lookups, linkage updates, transactions and
error wrapping.
"""
from datetime import datetime, timezone

import pytest

from db_models import LinkPrecedence
from errors import RepositoryError
from repository import SqliteContactRepository


NOW = datetime(2023, 4, 1, 12, 0, tzinfo=timezone.utc)


class TestLookups:

    def test_insert_and_list(self, repository):
        contact_id = repository.insert("a@x.com", "111", LinkPrecedence.PRIMARY, None, NOW, NOW)

        contacts = repository.list_all()
        assert len(contacts) == 1
        contact = contacts[0]
        assert contact.id == contact_id
        assert contact.email == "a@x.com"
        assert contact.phoneNumber == "111"
        assert contact.linkPrecedence == LinkPrecedence.PRIMARY
        assert contact.linkedId is None
        assert contact.createdAt == NOW

    def test_find_by_email_or_phone(self, repository, seed):
        by_email = seed(email="a@x.com", phone="111")
        by_phone = seed(email="b@x.com", phone="222")
        seed(email="c@x.com", phone="333")

        found = repository.find_by_email_or_phone("a@x.com", "222")
        assert sorted(c.id for c in found) == [by_email, by_phone]

    def test_find_ignores_absent_fields(self, repository, seed):
        seed(email="a@x.com")
        assert repository.find_by_email_or_phone(None, "111") == []
        assert repository.find_by_email_or_phone(None, None) == []

    def test_find_by_ids_or_linked_ids(self, repository, seed):
        primary = seed(email="a@x.com")
        secondary = seed(phone="111", linked_id=primary)
        seed(email="other@x.com")

        found = repository.find_by_ids_or_linked_ids({primary})
        assert [c.id for c in found] == [primary, secondary]

    def test_find_by_empty_ids(self, repository):
        assert repository.find_by_ids_or_linked_ids([]) == []

    def test_update_linkage(self, repository, seed):
        primary = seed(email="a@x.com")
        other = seed(email="b@x.com")

        repository.update_linkage(other, LinkPrecedence.SECONDARY, primary, NOW)

        stored = {c.id: c for c in repository.list_all()}
        assert stored[other].linkPrecedence == LinkPrecedence.SECONDARY
        assert stored[other].linkedId == primary
        assert stored[other].updatedAt == NOW


class TestTransactions:

    def test_commit(self, repository, temp_db):
        with repository.transaction():
            repository.insert("a@x.com", None, LinkPrecedence.PRIMARY, None, NOW, NOW)

        other = SqliteContactRepository(temp_db)
        try:
            assert len(other.list_all()) == 1
        finally:
            other.close()

    def test_rollback_on_error(self, repository):
        with pytest.raises(ValueError):
            with repository.transaction():
                repository.insert("a@x.com", None, LinkPrecedence.PRIMARY, None, NOW, NOW)
                raise ValueError("boom")

        assert repository.list_all() == []


class TestErrors:

    def test_contact_without_identifiers_rejected(self, repository):
        with pytest.raises(RepositoryError):
            repository.insert(None, None, LinkPrecedence.PRIMARY, None, NOW, NOW)

    def test_missing_schema(self, tmp_path):
        repo = SqliteContactRepository(str(tmp_path / "empty.db"))
        try:
            with pytest.raises(RepositoryError):
                repo.list_all()
        finally:
            repo.close()

    def test_unreachable_database(self, tmp_path):
        with pytest.raises(RepositoryError):
            SqliteContactRepository(str(tmp_path / "missing" / "contacts.db"))
