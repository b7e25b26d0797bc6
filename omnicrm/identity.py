"""
Identity resolution: raw WhatsApp identifiers -> Contact records.
"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from omnicrm.models import Contact, Identity, IdentityType

logger = logging.getLogger(__name__)


class ResolvedContact(NamedTuple):
    contact: Contact
    identity: Identity
    created: bool


def sanitize_wa_id(value: Optional[str]) -> Optional[str]:
    """
    Normalize a WhatsApp-style id by dropping everything from the first '@'.

    "5511999990000@s.whatsapp.net" -> "5511999990000". Returns None when
    nothing usable is left.
    """
    if not value:
        return None
    identifier = value.split("@", 1)[0].strip()
    return identifier or None


def find_identity(db: Session, value: str) -> Optional[Identity]:
    return (
        db.query(Identity)
        .filter(Identity.type == IdentityType.WHATSAPP, Identity.value == value)
        .first()
    )


def resolve_contact(db: Session, raw_identifier: Optional[str]) -> Optional[ResolvedContact]:
    """
    Find or create the Contact behind a WhatsApp identifier.

    Args:
        db: Database session
        raw_identifier: Sender/recipient id, possibly with an "@domain" suffix

    Returns:
        ResolvedContact, or None when the identifier is missing after
        normalization (callers treat that as a skip, not an error)
    """
    token = sanitize_wa_id(raw_identifier)
    if token is None:
        logger.debug(f"Unusable contact identifier: {raw_identifier!r}")
        return None

    identity = find_identity(db, token)
    if identity is not None:
        return ResolvedContact(contact=identity.contact, identity=identity, created=False)

    contact = Contact()
    identity = Identity(type=IdentityType.WHATSAPP, value=token, contact=contact)
    db.add_all([contact, identity])
    try:
        db.commit()
    except IntegrityError:
        # Another request created the same identity first; use theirs
        db.rollback()
        identity = find_identity(db, token)
        if identity is None:
            raise
        logger.info(f"Identity {token} created concurrently, reusing contact {identity.contact_id}")
        return ResolvedContact(contact=identity.contact, identity=identity, created=False)

    logger.info(f"Created contact {contact.id} for WhatsApp identity {token}")
    return ResolvedContact(contact=contact, identity=identity, created=True)
