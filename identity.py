"""
Identity reconciliation over the Contact table.

A request's email and phone are matched against stored contacts. Matching
contacts from different groups are merged so that the oldest primary
survives, and any identifying data the group has not seen yet is recorded
as a new secondary contact. All of it runs inside one store transaction.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from db_models import PRIMARY, SECONDARY, ContactResponse
from db_setup import ConflictError, ContactStore, StoreError

logger = logging.getLogger(__name__)


class IdentityValidationError(ValueError):
    """The request carries no usable identifying data."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def find_contacts(cursor, email: Optional[str] = None, phone: Optional[str] = None) -> List[dict]:
    # NULL = NULL is not true in SQL, so a missing field never matches
    cursor.execute("""
        SELECT * FROM Contact
        WHERE email = ? OR phoneNumber = ?
        ORDER BY createdAt ASC, id ASC
    """, (email, phone))
    return [dict(contact) for contact in cursor.fetchall()]


def root_id(contact: dict) -> int:
    if contact['linkPrecedence'] == PRIMARY:
        return contact['id']
    return contact['linkedId']


def get_linked_contacts(cursor, root_ids: Iterable[int]) -> List[dict]:
    """Every contact that is one of the roots or points at one, ordered by id."""
    roots = sorted(set(root_ids))
    if not roots:
        return []

    placeholders = ", ".join("?" for _ in roots)
    cursor.execute(f"""
        SELECT * FROM Contact
        WHERE id IN ({placeholders}) OR linkedId IN ({placeholders})
        ORDER BY id ASC
    """, roots + roots)
    return [dict(contact) for contact in cursor.fetchall()]


def pick_canonical(contacts: List[dict]) -> dict:
    """The oldest primary wins; equal timestamps fall back to the lowest id."""
    primaries = [c for c in contacts if c['linkPrecedence'] == PRIMARY]
    if not primaries:
        raise StoreError("identity group has no primary contact")
    return min(primaries, key=lambda c: (c['createdAt'], c['id']))


def merge_groups(cursor, contacts: List[dict], now: str) -> Tuple[dict, List[int]]:
    """
    Collapse every group present in ``contacts`` onto one canonical primary.

    All other primaries are demoted in a single statement, and their former
    secondaries are moved onto the canonical root in the same statement so
    that no contact is left pointing at a secondary.

    Returns the canonical contact and the ids of the demoted primaries.
    """
    canonical = pick_canonical(contacts)
    demoted = sorted(
        c['id'] for c in contacts
        if c['linkPrecedence'] == PRIMARY and c['id'] != canonical['id']
    )
    if not demoted:
        return canonical, []

    placeholders = ", ".join("?" for _ in demoted)
    cursor.execute(f"""
        UPDATE Contact
        SET linkPrecedence = ?, linkedId = ?, updatedAt = ?
        WHERE id IN ({placeholders}) OR linkedId IN ({placeholders})
    """, [SECONDARY, canonical['id'], now] + demoted + demoted)

    logger.info("Merged primaries %s into contact %s", demoted, canonical['id'])
    return canonical, demoted


def has_new_information(contacts: List[dict], email: Optional[str], phone: Optional[str]) -> bool:
    """
    True when the request's email or phone is missing from the whole group.

    Each field is checked on its own against every member, so a known email
    paired with an unseen phone still counts as new.
    """
    known_emails = {c['email'] for c in contacts if c['email'] is not None}
    known_phones = {c['phoneNumber'] for c in contacts if c['phoneNumber'] is not None}

    new_email = email is not None and email not in known_emails
    new_phone = phone is not None and phone not in known_phones
    return new_email or new_phone


def create_contact(cursor, email: Optional[str], phone: Optional[str], now: str,
                   linked_id: Optional[int] = None, precedence: str = PRIMARY) -> int:
    """Create a new contact"""
    cursor.execute("""
        INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (phone, email, linked_id, precedence, now, now))
    return cursor.lastrowid


def build_response(contacts: List[dict], primary_id: int) -> ContactResponse:
    primary = next(c for c in contacts if c['id'] == primary_id)
    others = sorted((c for c in contacts if c['id'] != primary_id), key=lambda c: c['id'])

    emails = []
    phone_numbers = []
    for contact in [primary] + others:
        if contact['email'] is not None and contact['email'] not in emails:
            emails.append(contact['email'])
        if contact['phoneNumber'] is not None and contact['phoneNumber'] not in phone_numbers:
            phone_numbers.append(contact['phoneNumber'])

    return ContactResponse(
        primaryContactId=primary_id,
        emails=emails,
        phoneNumbers=phone_numbers,
        secondaryContactIds=[c['id'] for c in others if c['linkPrecedence'] == SECONDARY],
    )


class IdentityResolver:
    """
    Resolves one submitted (email, phone) pair to its identity group.

    The resolver keeps nothing between calls; all state lives in the store.
    """

    def __init__(self, store: ContactStore, max_attempts: int = 3):
        self.store = store
        self.max_attempts = max_attempts

    def identify(self, email: Optional[str] = None, phone: Optional[str] = None) -> ContactResponse:
        if not email and not phone:
            raise IdentityValidationError("Either email or phoneNumber must be provided")

        retrying = Retrying(
            retry=retry_if_exception_type(ConflictError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._identify_once, email or None, phone or None)

    def _identify_once(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        with self.store.transaction() as cursor:
            now = utc_now()
            matches = find_contacts(cursor, email, phone)
            logger.debug("Found %d matching contacts", len(matches))

            if not matches:
                contact_id = create_contact(cursor, email, phone, now)
                logger.info("Created primary contact %s", contact_id)
                return build_response(get_linked_contacts(cursor, [contact_id]), contact_id)

            group = get_linked_contacts(cursor, [root_id(c) for c in matches])
            canonical, demoted = merge_groups(cursor, group, now)
            primary_id = canonical['id']
            if demoted:
                group = get_linked_contacts(cursor, [primary_id])

            if has_new_information(group, email, phone):
                contact_id = create_contact(cursor, email, phone, now, primary_id, SECONDARY)
                logger.info("Created secondary contact %s linked to %s", contact_id, primary_id)
                group = get_linked_contacts(cursor, [primary_id])

            return build_response(group, primary_id)
