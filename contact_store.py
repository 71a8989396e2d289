from datetime import datetime
from typing import Iterable, List, Optional

from db_models import Contact, LinkPrecedence

# SQLite's default bound-parameter limit is 999 on older builds
MAX_QUERY_PARAMS = 900

CONTACT_COLUMNS = "id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt, deletedAt"


def _chunks(ids: List[int], size: int):
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


def _to_contacts(rows) -> List[Contact]:
    return [Contact(**dict(row)) for row in rows]


def find_contacts(conn, email: Optional[str] = None, phone: Optional[str] = None) -> List[Contact]:
    """Live contacts matching the email or the phone. A None input matches nothing."""
    cursor = conn.execute(f"""
        SELECT {CONTACT_COLUMNS} FROM LiveContact
        WHERE email = ? OR phoneNumber = ?
        ORDER BY createdAt ASC, id ASC
    """, (email, phone))
    return _to_contacts(cursor.fetchall())


def get_contacts_by_ids(conn, ids: Iterable[int]) -> List[Contact]:
    ids = sorted(set(ids))
    contacts = []
    for chunk in _chunks(ids, MAX_QUERY_PARAMS):
        placeholders = ",".join("?" * len(chunk))
        cursor = conn.execute(
            f"SELECT {CONTACT_COLUMNS} FROM LiveContact WHERE id IN ({placeholders})",
            chunk,
        )
        contacts.extend(_to_contacts(cursor.fetchall()))
    return contacts


def get_contacts_linked_to(conn, ids: Iterable[int]) -> List[Contact]:
    """Live contacts whose own id, or whose linkedId, is in ids."""
    ids = sorted(set(ids))
    contacts = []
    for chunk in _chunks(ids, MAX_QUERY_PARAMS // 2):
        placeholders = ",".join("?" * len(chunk))
        cursor = conn.execute(f"""
            SELECT {CONTACT_COLUMNS} FROM LiveContact
            WHERE id IN ({placeholders}) OR linkedId IN ({placeholders})
        """, chunk + chunk)
        contacts.extend(_to_contacts(cursor.fetchall()))
    return contacts


def get_all_contacts(conn) -> List[Contact]:
    cursor = conn.execute(f"SELECT {CONTACT_COLUMNS} FROM LiveContact ORDER BY id ASC")
    return _to_contacts(cursor.fetchall())


def create_contact(
    conn,
    email: Optional[str],
    phone: Optional[str],
    now: datetime,
    linked_id: Optional[int] = None,
    precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
) -> Contact:
    stamp = now.isoformat()
    cursor = conn.execute("""
        INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (phone, email, linked_id, precedence.value, stamp, stamp))

    return Contact(
        id=cursor.lastrowid,
        phoneNumber=phone,
        email=email,
        linkedId=linked_id,
        linkPrecedence=precedence,
        createdAt=now,
        updatedAt=now,
    )


def update_to_secondary(conn, contact_id: int, primary_id: int, now: datetime):
    conn.execute("""
        UPDATE Contact
        SET linkedId = ?, linkPrecedence = 'secondary', updatedAt = ?
        WHERE id = ?
    """, (primary_id, now.isoformat(), contact_id))


def promote_to_primary(conn, contact_id: int, now: datetime):
    conn.execute("""
        UPDATE Contact
        SET linkedId = NULL, linkPrecedence = 'primary', updatedAt = ?
        WHERE id = ?
    """, (now.isoformat(), contact_id))
