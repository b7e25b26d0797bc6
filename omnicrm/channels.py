"""
Channel resolution and gateway session-status handling.

A channel's external identifier (its own WhatsApp number) is only known once
the gateway session has authenticated, but message events may arrive before
that. Lookup therefore goes: external identifier, then gateway session name
(backfilling the identifier), then a new orphan channel.
"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from omnicrm.identity import sanitize_wa_id
from omnicrm.models import Channel, ChannelStatus, ChannelType, WhatsAppChannel
from omnicrm.schemas import SessionStatusWebhook

logger = logging.getLogger(__name__)


SESSION_STATUS_MAP = {
    "WORKING": ChannelStatus.WORKING,
    "STARTING": ChannelStatus.CONNECTING,
    "SCAN_QR_CODE": ChannelStatus.CONNECTING,
    "STOPPED": ChannelStatus.STOPPED,
    "FAILED": ChannelStatus.FAILED,
}


def find_channel_by_identifier(db: Session, identifier: str) -> Optional[Channel]:
    return (
        db.query(Channel)
        .filter(Channel.type == ChannelType.WHATSAPP, Channel.external_identifier == identifier)
        .first()
    )


def find_whatsapp_channel(db: Session, session_name: str) -> Optional[WhatsAppChannel]:
    return db.query(WhatsAppChannel).filter(WhatsAppChannel.session_name == session_name).first()


def resolve_channel(
    db: Session,
    identifier: str,
    session_name: Optional[str] = None,
    vendor_metadata: Optional[dict[str, Any]] = None,
) -> Channel:
    """
    Find or create the Channel for a normalized account identifier.

    Args:
        db: Database session
        identifier: Sanitized "me" id of the event
        session_name: Gateway session name, if the event carried one
        vendor_metadata: Extra vendor data stored on newly created channels

    Returns:
        The resolved Channel (possibly a new orphan without an operation)
    """
    channel = find_channel_by_identifier(db, identifier)
    if channel is not None:
        return channel

    if session_name:
        mapping = find_whatsapp_channel(db, session_name)
        if mapping is not None:
            channel = mapping.channel
            channel.external_identifier = identifier
            db.commit()
            logger.info(f"Channel {channel.name} backfilled with external identifier {identifier}")
            return channel

    logger.info(f"Creating orphan channel for {identifier}")
    channel = Channel(
        name=f"WhatsApp {identifier}",
        type=ChannelType.WHATSAPP,
        external_identifier=identifier,
        meta=vendor_metadata or None,
    )
    db.add(channel)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        channel = find_channel_by_identifier(db, identifier)
        if channel is None:
            raise
        logger.info(f"Channel for {identifier} created concurrently, reusing {channel.id}")
    return channel


def map_session_status(status: str) -> ChannelStatus:
    return SESSION_STATUS_MAP.get(status, ChannelStatus.FAILED)


def handle_session_status(db: Session, event: SessionStatusWebhook) -> Optional[Channel]:
    """
    Apply a gateway session.status event to the channel owning the session.

    Returns the updated channel, or None when the session is unknown.
    """
    mapping = find_whatsapp_channel(db, event.session)
    if mapping is None:
        logger.info(f"Session {event.session} not found, ignoring status {event.payload.status}")
        return None

    channel = mapping.channel
    new_status = map_session_status(event.payload.status)
    channel.status = new_status

    identifier = sanitize_wa_id(event.me.id if event.me else None)
    if identifier and identifier != channel.external_identifier:
        holder = db.query(Channel).filter(Channel.external_identifier == identifier).first()
        if holder is not None and holder.id != channel.id:
            logger.warning(
                f"Identifier {identifier} already held by channel {holder.id}, "
                f"not backfilling channel {channel.name}"
            )
        else:
            channel.external_identifier = identifier

    try:
        db.commit()
    except IntegrityError:
        # Identifier claimed by another channel after the check; keep the status update
        db.rollback()
        logger.warning(f"Identifier {identifier} claimed concurrently, updating status of {channel.name} only")
        channel = db.query(Channel).filter(Channel.id == mapping.channel_id).one()
        channel.status = new_status
        db.commit()

    logger.info(f"Channel {channel.name} updated: {event.payload.status} -> {new_status.value}")
    return channel
