"""
Identity resolution for contact observations.

An observation is an (email, phoneNumber) pair. Contacts that share an
email or a phone, or that are linked to each other, form one cluster with
exactly one primary: the oldest contact. Every other member is a secondary
linked straight to it.

identify() runs inside a single store transaction:

1. load the whole cluster the observation touches
2. pick the primary by seniority
3. relink the cluster onto that primary and record any new fact
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional

import structlog

from contact_store import (
    create_contact,
    find_contacts,
    get_contacts_by_ids,
    get_contacts_linked_to,
    promote_to_primary,
    update_to_secondary,
)
from db_models import Contact, ContactResponse, IdentifyRequest, LinkPrecedence
from db_setup import transaction

logger = structlog.get_logger(__name__)


class InvalidObservationError(ValueError):
    """The observation carries neither an email nor a phone number."""


def load_cluster(conn, email: Optional[str], phone: Optional[str]) -> List[Contact]:
    """
    Return every live contact reachable from the observation.

    Seeds are the contacts matching the email or the phone, plus the
    primaries the secondary seeds link to. From there the cluster grows
    through the link relation until a pass finds nothing new: each pass
    fetches contacts whose id or linkedId is among the ids discovered in
    the previous pass, and also the parents of those contacts.
    Each id is queried at most once, so the work is bounded by cluster size.
    """
    cluster = {contact.id: contact for contact in find_contacts(conn, email, phone)}
    if not cluster:
        return []

    parent_ids = {c.linkedId for c in cluster.values() if c.linkedId is not None} - cluster.keys()
    for contact in get_contacts_by_ids(conn, parent_ids):
        cluster[contact.id] = contact

    pending = set(cluster)

    while pending:
        found = get_contacts_linked_to(conn, pending)
        pending = set()
        for contact in found:
            if contact.id in cluster:
                continue
            cluster[contact.id] = contact
            pending.add(contact.id)
            if contact.linkedId is not None and contact.linkedId not in cluster:
                pending.add(contact.linkedId)

    return list(cluster.values())


def resolve_primary(cluster: Iterable[Contact]) -> Contact:
    """
    Oldest primary-flagged contact of the cluster, or the oldest contact
    overall when nothing in it is flagged primary. Ties go to the lower id.
    """
    cluster = list(cluster)
    if not cluster:
        raise ValueError("cannot resolve the primary of an empty cluster")

    primaries = [contact for contact in cluster if contact.is_primary]
    return min(primaries or cluster, key=Contact.seniority)


def _ordered(values, first: Optional[str]) -> List[str]:
    values = {value for value in values if value}
    if first and first in values:
        return [first] + sorted(values - {first})
    return sorted(values)


def build_response(primary: Contact, secondaries: Iterable[Contact]) -> ContactResponse:
    secondaries = list(secondaries)
    members = [primary] + secondaries
    return ContactResponse(
        primaryContactId=primary.id,
        emails=_ordered((c.email for c in members), primary.email),
        phoneNumbers=_ordered((c.phoneNumber for c in members), primary.phoneNumber),
        secondaryContactIds=sorted(c.id for c in secondaries),
    )


def consolidate(
    conn,
    cluster: Iterable[Contact],
    observation: IdentifyRequest,
    primary: Contact,
    now: datetime,
) -> ContactResponse:
    """
    Relink the cluster onto primary, record the observation if it adds a
    new email or phone, and return the consolidated view.

    Must run inside the caller's transaction: any failing write aborts the
    whole consolidation.
    """
    cluster = list(cluster)

    if not primary.is_primary:
        promote_to_primary(conn, primary.id, now)
        logger.warning("contact_promoted", contact_id=primary.id, previous_linked_id=primary.linkedId)
        primary = primary.model_copy(
            update={"linkPrecedence": LinkPrecedence.PRIMARY, "linkedId": None, "updatedAt": now}
        )

    secondaries = []
    for contact in cluster:
        if contact.id == primary.id:
            continue
        if contact.linkPrecedence != LinkPrecedence.SECONDARY or contact.linkedId != primary.id:
            update_to_secondary(conn, contact.id, primary.id, now)
            logger.info(
                "contact_relinked",
                contact_id=contact.id,
                primary_id=primary.id,
                was_primary=contact.is_primary,
                previous_linked_id=contact.linkedId,
            )
            contact = contact.model_copy(
                update={
                    "linkPrecedence": LinkPrecedence.SECONDARY,
                    "linkedId": primary.id,
                    "updatedAt": now,
                }
            )
        secondaries.append(contact)

    known_emails = {c.email for c in cluster if c.email}
    known_phones = {c.phoneNumber for c in cluster if c.phoneNumber}
    need_new_email = observation.email is not None and observation.email not in known_emails
    need_new_phone = observation.phoneNumber is not None and observation.phoneNumber not in known_phones

    if need_new_email or need_new_phone:
        contact = create_contact(
            conn,
            observation.email,
            observation.phoneNumber,
            now,
            linked_id=primary.id,
            precedence=LinkPrecedence.SECONDARY,
        )
        logger.info("secondary_created", contact_id=contact.id, primary_id=primary.id)
        secondaries.append(contact)

    return build_response(primary, secondaries)


def identify(
    observation: IdentifyRequest,
    db_name: Optional[str] = None,
    now: Optional[datetime] = None,
    timeout: Optional[float] = None,
) -> ContactResponse:
    """Resolve an observation to its cluster, updating the store as one atomic step."""
    email = observation.email
    phone = observation.phoneNumber

    if email is None and phone is None:
        raise InvalidObservationError("Either email or phoneNumber must be provided")

    with transaction(db_name, timeout) as conn:
        # stamped after the write lock is held so creation times follow commit order
        now = now or datetime.now(timezone.utc)
        cluster = load_cluster(conn, email, phone)

        if not cluster:
            contact = create_contact(conn, email, phone, now)
            logger.info("contact_created", contact_id=contact.id)
            return build_response(contact, [])

        primary = resolve_primary(cluster)
        if not primary.is_primary:
            logger.warning(
                "cluster_without_primary",
                contact_ids=sorted(c.id for c in cluster),
                chosen_id=primary.id,
            )

        return consolidate(conn, cluster, observation, primary, now)
