"""
Identity reconciliation.

Given an (email, phoneNumber) pair, find every contact transitively linked
to it, keep the oldest as the group's primary, point all other contacts at
that primary, and record any email or phone number the group has not seen.

Linkage is two-level (a primary plus its secondaries, never a secondary
pointing at a secondary), so one expansion pass after the direct match
reaches the whole connected group.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set

from db_models import Contact, ContactResponse, LinkPrecedence
from errors import InternalError, InvalidRequest, RepositoryError
from repository import ContactRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: Optional[str]) -> Optional[str]:
    """Blank values count as absent; anything else is matched and stored as sent."""
    if value is None or not value.strip():
        return None
    return value


def age_key(contact: Contact):
    """Oldest first; equal creation times fall back to the lowest id."""
    return (contact.createdAt, contact.id)


def select_primary(group: Iterable[Contact]) -> Contact:
    return min(group, key=age_key)


def expansion_frontier(matches: Iterable[Contact]) -> Set[int]:
    """Ids of the matched contacts plus the primaries their secondaries point at."""
    frontier = set()
    for contact in matches:
        frontier.add(contact.id)
        if contact.linkPrecedence == LinkPrecedence.SECONDARY and contact.linkedId is not None:
            frontier.add(contact.linkedId)
    return frontier


def merge_by_id(*groups: Iterable[Contact]) -> List[Contact]:
    """Union of contact collections keyed by id, in (createdAt, id) order."""
    merged = {}
    for group in groups:
        for contact in group:
            merged.setdefault(contact.id, contact)
    return sorted(merged.values(), key=age_key)


def consolidate(primary: Contact, group: List[Contact]) -> ContactResponse:
    ordered = [primary] + [c for c in sorted(group, key=age_key) if c.id != primary.id]

    emails = []
    phone_numbers = []
    for contact in ordered:
        if contact.email and contact.email not in emails:
            emails.append(contact.email)
        if contact.phoneNumber and contact.phoneNumber not in phone_numbers:
            phone_numbers.append(contact.phoneNumber)

    return ContactResponse(
        primaryContactId=primary.id,
        emails=emails,
        phoneNumbers=phone_numbers,
        secondaryContactIds=[
            c.id for c in ordered if c.linkPrecedence == LinkPrecedence.SECONDARY
        ],
    )


class IdentityResolver:
    """Reconciles contact fragments against a ContactRepository."""

    def __init__(self, repository: ContactRepository, clock: Callable[[], datetime] = None):
        self.repository = repository
        self.clock = clock or _utcnow

    def identify(self, email: Optional[str] = None, phone_number: Optional[str] = None) -> ContactResponse:
        """
        Resolve the identity behind an email and/or phone number.

        All reads and writes run in one repository transaction; on failure
        nothing is committed.

        Raises:
            InvalidRequest: neither field was supplied
            InternalError: the repository failed
        """
        email = _clean(email)
        phone_number = _clean(phone_number)
        if not email and not phone_number:
            raise InvalidRequest("Either email or phoneNumber must be provided")

        try:
            with self.repository.transaction():
                return self._reconcile(email, phone_number)
        except RepositoryError as exc:
            logger.exception(
                "Identity reconciliation failed for email=%r phoneNumber=%r",
                email, phone_number,
            )
            raise InternalError("Internal Server Error") from exc

    def _reconcile(self, email, phone_number) -> ContactResponse:
        matches = self.repository.find_by_email_or_phone(email, phone_number)
        if not matches:
            return self._create_primary(email, phone_number)

        group = self._expand(matches)
        primary = select_primary(group)
        group = self._normalize(group, primary)

        novel = self._insert_novel(group, primary, email, phone_number)
        if novel is not None:
            group.append(novel)

        return consolidate(primary, group)

    def _create_primary(self, email, phone_number) -> ContactResponse:
        now = self.clock()
        contact_id = self.repository.insert(
            email, phone_number, LinkPrecedence.PRIMARY, None, now, now
        )
        logger.info("Created primary contact %s", contact_id)

        return ContactResponse(
            primaryContactId=contact_id,
            emails=[email] if email else [],
            phoneNumbers=[phone_number] if phone_number else [],
            secondaryContactIds=[],
        )

    def _expand(self, matches: List[Contact]) -> List[Contact]:
        frontier = expansion_frontier(matches)
        linked = self.repository.find_by_ids_or_linked_ids(frontier)
        return merge_by_id(linked, matches)

    def _normalize(self, group: List[Contact], primary: Contact) -> List[Contact]:
        """Point every contact at the primary; returns the group as now stored."""
        normalized = []
        for contact in group:
            if contact.id == primary.id:
                target = (LinkPrecedence.PRIMARY, None)
            else:
                target = (LinkPrecedence.SECONDARY, primary.id)

            if (contact.linkPrecedence, contact.linkedId) == target:
                normalized.append(contact)
                continue

            now = self.clock()
            self.repository.update_linkage(contact.id, target[0], target[1], now)
            if contact.is_primary and target[0] == LinkPrecedence.SECONDARY:
                logger.info("Demoted contact %s to secondary of %s", contact.id, primary.id)
            normalized.append(contact.model_copy(update={
                "linkPrecedence": target[0],
                "linkedId": target[1],
                "updatedAt": now,
            }))
        return normalized

    def _insert_novel(self, group, primary, email, phone_number) -> Optional[Contact]:
        known_emails = {c.email for c in group if c.email}
        known_phones = {c.phoneNumber for c in group if c.phoneNumber}

        new_email = email if email and email not in known_emails else None
        new_phone = phone_number if phone_number and phone_number not in known_phones else None
        if new_email is None and new_phone is None:
            return None

        now = self.clock()
        contact_id = self.repository.insert(
            new_email, new_phone, LinkPrecedence.SECONDARY, primary.id, now, now
        )
        logger.info("Added secondary contact %s to primary %s", contact_id, primary.id)

        return Contact(
            id=contact_id,
            email=new_email,
            phoneNumber=new_phone,
            linkedId=primary.id,
            linkPrecedence=LinkPrecedence.SECONDARY,
            createdAt=now,
            updatedAt=now,
        )
