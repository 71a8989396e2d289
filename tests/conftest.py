"""
Shared fixtures: a throwaway sqlite store per test, seeding helpers and an
invariant checker for whole-table assertions.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from config import Settings
from contact_store import get_all_contacts
from db_setup import get_db_connection, init_db
from main import create_app

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(minutes):
    """A fixed timestamp `minutes` after T0."""
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture
def settings(db_path):
    return Settings(db_path=db_path, log_level="WARNING")


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def seed(db_path):
    """Insert a contact row directly, bypassing identify(). Returns its id."""

    def _seed(email=None, phone=None, linked_id=None, precedence="primary", created_at=T0, deleted_at=None):
        conn = get_db_connection(db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt, deletedAt)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    phone,
                    email,
                    linked_id,
                    precedence,
                    created_at.isoformat(),
                    created_at.isoformat(),
                    deleted_at.isoformat() if deleted_at else None,
                ),
            )
            return cursor.lastrowid
        finally:
            conn.close()

    return _seed


@pytest.fixture
def contacts(db_path):
    """Current live contacts keyed by id."""

    def _contacts():
        conn = get_db_connection(db_path)
        try:
            return {contact.id: contact for contact in get_all_contacts(conn)}
        finally:
            conn.close()

    return _contacts


def _components(rows):
    parent = {contact_id: contact_id for contact_id in rows}

    def find(x):
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a, b):
        parent[find(a)] = find(b)

    by_value = defaultdict(list)
    for contact in rows.values():
        if contact.email:
            by_value[("email", contact.email)].append(contact.id)
        if contact.phoneNumber:
            by_value[("phone", contact.phoneNumber)].append(contact.id)
        if contact.linkedId in rows:
            union(contact.id, contact.linkedId)
    for ids in by_value.values():
        for other in ids[1:]:
            union(ids[0], other)

    groups = defaultdict(list)
    for contact_id in rows:
        groups[find(contact_id)].append(rows[contact_id])
    return list(groups.values())


def assert_invariants(rows):
    for contact in rows.values():
        assert contact.email or contact.phoneNumber
        if contact.is_primary:
            assert contact.linkedId is None
        else:
            assert contact.linkedId in rows, f"contact {contact.id} links to a missing contact"
            assert rows[contact.linkedId].is_primary, f"contact {contact.id} links to a secondary"

    for group in _components(rows):
        primaries = [c for c in group if c.is_primary]
        assert len(primaries) == 1, f"cluster {[c.id for c in group]} has {len(primaries)} primaries"
        primary = primaries[0]
        assert primary == min(group, key=lambda c: c.seniority())
        assert all(c.linkedId == primary.id for c in group if c is not primary)

    pairs = [(c.email, c.phoneNumber) for c in rows.values()]
    assert len(pairs) == len(set(pairs)), "duplicate (email, phoneNumber) rows"
