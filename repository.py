"""
Contact storage.

`ContactRepository` is the storage contract the resolver depends on;
`SqliteContactRepository` implements it on one SQLite connection.
"""
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from db_models import Contact, LinkPrecedence
from db_setup import get_db_connection
from errors import RepositoryError

logger = logging.getLogger(__name__)


class ContactRepository(ABC):
    """Query/insert/update operations over stored contacts."""

    @abstractmethod
    def find_by_email_or_phone(self, email: Optional[str], phone: Optional[str]) -> List[Contact]:
        ...

    @abstractmethod
    def find_by_ids_or_linked_ids(self, ids: Iterable[int]) -> List[Contact]:
        ...

    @abstractmethod
    def insert(
        self,
        email: Optional[str],
        phone: Optional[str],
        precedence: LinkPrecedence,
        linked_id: Optional[int],
        created_at: datetime,
        updated_at: datetime,
    ) -> int:
        ...

    @abstractmethod
    def update_linkage(
        self,
        contact_id: int,
        precedence: LinkPrecedence,
        linked_id: Optional[int],
        updated_at: datetime,
    ) -> None:
        ...

    @abstractmethod
    def list_all(self) -> List[Contact]:
        ...

    @abstractmethod
    def transaction(self):
        """Context manager: commit on success, roll back on any exception."""
        ...


class SqliteContactRepository(ContactRepository):
    """
    SQLite-backed contact storage bound to a single connection.

    Transactions are opened with BEGIN IMMEDIATE so the write lock is held
    from the first read; concurrent reconciliations on the same database
    file are serialized.
    """

    def __init__(self, db_path: Optional[str] = None, timeout: Optional[float] = None):
        try:
            self._conn = get_db_connection(db_path, timeout)
        except sqlite3.Error as exc:
            raise RepositoryError(f"could not open contact database: {exc}") from exc

    def close(self):
        self._conn.close()

    def _fetch(self, query: str, params: tuple = ()) -> List[Contact]:
        try:
            rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise RepositoryError(f"contact query failed: {exc}") from exc
        return [Contact(**dict(row)) for row in rows]

    def _write(self, query: str, params: tuple) -> sqlite3.Cursor:
        try:
            return self._conn.execute(query, params)
        except sqlite3.Error as exc:
            raise RepositoryError(f"contact write failed: {exc}") from exc

    def find_by_email_or_phone(self, email, phone):
        clauses = []
        params = []
        if email:
            clauses.append("email = ?")
            params.append(email)
        if phone:
            clauses.append("phoneNumber = ?")
            params.append(phone)
        if not clauses:
            return []

        logger.debug("Looking up contacts for email=%r phoneNumber=%r", email, phone)
        return self._fetch(
            f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL AND ({' OR '.join(clauses)})
            ORDER BY createdAt ASC, id ASC
            """,
            tuple(params),
        )

    def find_by_ids_or_linked_ids(self, ids):
        ids = sorted(set(ids))
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        return self._fetch(
            f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND (id IN ({placeholders}) OR linkedId IN ({placeholders}))
            ORDER BY createdAt ASC, id ASC
            """,
            tuple(ids) * 2,
        )

    def insert(self, email, phone, precedence, linked_id, created_at, updated_at):
        cursor = self._write(
            """
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                phone,
                email,
                linked_id,
                LinkPrecedence(precedence).value,
                created_at.isoformat(),
                updated_at.isoformat(),
            ),
        )
        return cursor.lastrowid

    def update_linkage(self, contact_id, precedence, linked_id, updated_at):
        self._write(
            """
            UPDATE Contact
            SET linkPrecedence = ?, linkedId = ?, updatedAt = ?
            WHERE id = ?
            """,
            (LinkPrecedence(precedence).value, linked_id, updated_at.isoformat(), contact_id),
        )

    def list_all(self):
        return self._fetch("SELECT * FROM Contact WHERE deletedAt IS NULL ORDER BY id ASC")

    @contextmanager
    def transaction(self) -> Iterator["SqliteContactRepository"]:
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise RepositoryError(f"could not start transaction: {exc}") from exc

        try:
            yield self
        except BaseException:
            self._rollback()
            raise

        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback()
            raise RepositoryError(f"commit failed: {exc}") from exc

    def _rollback(self):
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")
