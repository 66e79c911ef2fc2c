"""
Shared fixtures: a fresh sqlite contact store per test, direct seeding
helpers and a whole-table invariant check.
"""
import pytest
from fastapi.testclient import TestClient

from db_models import PRIMARY, SECONDARY
from db_setup import ContactStore
from identity import IdentityResolver


@pytest.fixture()
def store(tmp_path):
    contact_store = ContactStore(str(tmp_path / "contacts.db"), timeout=0.1)
    contact_store.init_db()
    return contact_store


@pytest.fixture()
def resolver(store):
    return IdentityResolver(store, max_attempts=3)


@pytest.fixture()
def client(store):
    from main import app, get_store

    app.dependency_overrides[get_store] = lambda: store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def seed_contact(store, email=None, phone=None, created_at="2024-01-01T00:00:00.000000+00:00",
                 linked_id=None, precedence=PRIMARY):
    """Insert a contact as-is, bypassing reconciliation."""
    conn = store.connect()
    try:
        cursor = conn.execute("""
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (phone, email, linked_id, precedence, created_at, created_at))
        return cursor.lastrowid
    finally:
        conn.close()


def all_contacts(store):
    conn = store.connect()
    try:
        rows = conn.execute("SELECT * FROM Contact ORDER BY id ASC").fetchall()
    finally:
        conn.close()
    return {row["id"]: dict(row) for row in rows}


def assert_invariants(store):
    contacts = all_contacts(store)

    for contact in contacts.values():
        assert contact["email"] is not None or contact["phoneNumber"] is not None
        if contact["linkPrecedence"] == SECONDARY:
            # flat: every secondary points straight at a primary
            assert contacts[contact["linkedId"]]["linkPrecedence"] == PRIMARY
        else:
            assert contact["linkedId"] is None

    groups = {}
    for contact in contacts.values():
        root = contact["id"] if contact["linkPrecedence"] == PRIMARY else contact["linkedId"]
        groups.setdefault(root, []).append(contact)

    seen_emails = {}
    seen_phones = {}
    for root, members in groups.items():
        for contact in members:
            if contact["email"] is not None:
                assert seen_emails.setdefault(contact["email"], root) == root
            if contact["phoneNumber"] is not None:
                assert seen_phones.setdefault(contact["phoneNumber"], root) == root
