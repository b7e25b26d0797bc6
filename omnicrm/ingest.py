"""
WhatsApp webhook ingestion.

Turns one gateway event into a stored Message on the right Conversation,
or into a skipped result with a reason code. Every event that names a
channel is kept in the raw audit log, skipped or not.

Duplicate deliveries are detected only by the unique constraint on
Message.external_id; there is deliberately no existence check before the
insert.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from omnicrm.channels import resolve_channel
from omnicrm.identity import resolve_contact, sanitize_wa_id
from omnicrm.metrics import record_webhook_outcome
from omnicrm.models import (
    Conversation,
    EventType,
    Message,
    MessageDirection,
    RawWhatsappMessage,
    TimelineEvent,
)
from omnicrm.schemas import IngestResult, WebhookEnvelope, WebhookMessagePayload
from omnicrm.utils import ensure_utc, to_boolean, to_finite_number, utcnow

logger = logging.getLogger(__name__)

MEDIA_PLACEHOLDER = "<media>"

# Values above this are epoch milliseconds, below are epoch seconds
MILLISECONDS_THRESHOLD = 1_000_000_000_000

# Skip reason codes
INVALID_PAYLOAD = "invalid-payload"
MISSING_CHANNEL_IDENTIFIER = "missing-channel-identifier"
MISSING_CONTACT_IDENTIFIER = "missing-contact-identifier"
EMPTY_MESSAGE = "empty-message"
GROUP_MESSAGE = "group-message"
DUPLICATE_MESSAGE = "duplicate-message"


def unwrap_envelope(event: Any) -> WebhookEnvelope:
    """
    Validate an event that is either the envelope itself or the envelope
    nested under a "body" key.

    Raises:
        ValidationError: if neither shape validates
    """
    if isinstance(event, dict):
        nested = event.get("body")
        if isinstance(nested, dict) and "payload" in nested:
            return WebhookEnvelope.model_validate(nested)
    return WebhookEnvelope.model_validate(event)


def should_skip_message(payload: WebhookMessagePayload) -> Optional[str]:
    """Return a skip reason for empty or group/broadcast messages, else None."""
    has_content = bool((payload.body and payload.body.strip()) or to_boolean(payload.has_media))
    if not has_content:
        return EMPTY_MESSAGE

    message_id = payload.id or ""
    is_group_chat = bool(
        payload.participant
        or "is_default_subgroup" in payload.model_fields_set
        or "@newsletter" in message_id
        or "broadcast" in message_id
        or (payload.chat_id or "").endswith("@g.us")
    )
    if is_group_chat:
        return GROUP_MESSAGE

    return None


def resolve_timestamp(payload: WebhookMessagePayload, now: Optional[datetime] = None) -> datetime:
    """
    Pick the message time from the first usable timestamp field.

    Order: `timestamp`, `messageTimestamp`, `_data.messageTimestamp`. Numbers
    (or numeric strings) above 1e12 are milliseconds, anything else is
    seconds. Falls back to the current time.
    """
    raw_data = payload.raw_data or {}
    candidates = (payload.timestamp, payload.message_timestamp, raw_data.get("messageTimestamp"))

    for candidate in candidates:
        number = to_finite_number(candidate)
        if number is None:
            continue
        seconds = number / 1000 if number > MILLISECONDS_THRESHOLD else number
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            continue

    return now or utcnow()


def resolve_content(payload: WebhookMessagePayload) -> str:
    text = (payload.body or "").strip()
    if not text and to_boolean(payload.has_media):
        return MEDIA_PLACEHOLDER
    return text


def _mark_raw_processed(db: Session, raw_record_id: str) -> None:
    db.query(RawWhatsappMessage).filter(RawWhatsappMessage.id == raw_record_id).update(
        {RawWhatsappMessage.processed: True}
    )
    db.commit()


def _find_or_create_conversation(
    db: Session,
    contact_id: str,
    channel_id: str,
    direction: MessageDirection,
    sent_at: datetime,
    chat_id: Optional[str],
) -> Conversation:
    def lookup() -> Optional[Conversation]:
        return (
            db.query(Conversation)
            .filter(Conversation.contact_id == contact_id, Conversation.channel_id == channel_id)
            .first()
        )

    conversation = lookup()
    if conversation is not None:
        return conversation

    inbound = direction == MessageDirection.INBOUND
    conversation = Conversation(
        contact_id=contact_id,
        channel_id=channel_id,
        external_id=chat_id,
        first_message_at=sent_at,
        last_message_at=sent_at,
        first_inbound_message_at=sent_at if inbound else None,
        first_outbound_message_at=None if inbound else sent_at,
        is_started_by_contact=inbound,
        needs_analysis=True,
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        conversation = lookup()
        if conversation is None:
            raise
    return conversation


def update_conversation_timestamps(
    conversation: Conversation,
    direction: MessageDirection,
    sent_at: datetime,
) -> None:
    """
    Roll a new message into the conversation's first/last/response fields.

    The response time is computed once: on the first outbound message of a
    conversation the contact started.
    """
    conversation.last_message_at = sent_at
    conversation.needs_analysis = True

    first_message_at = ensure_utc(conversation.first_message_at)
    if first_message_at is None or sent_at < first_message_at:
        conversation.first_message_at = sent_at

    if direction == MessageDirection.INBOUND and conversation.first_inbound_message_at is None:
        conversation.first_inbound_message_at = sent_at

    if direction == MessageDirection.OUTBOUND and conversation.first_outbound_message_at is None:
        conversation.first_outbound_message_at = sent_at

    if conversation.is_started_by_contact is None:
        conversation.is_started_by_contact = direction == MessageDirection.INBOUND

    first_inbound = ensure_utc(conversation.first_inbound_message_at)
    if (
        direction == MessageDirection.OUTBOUND
        and conversation.is_started_by_contact
        and first_inbound is not None
        and conversation.first_response_at is None
    ):
        conversation.first_response_at = sent_at
        conversation.time_to_first_interaction = max(0, round((sent_at - first_inbound).total_seconds()))


def ingest_whatsapp_message(
    db: Session,
    event: Any,
    schedule_analysis: Optional[Callable[[str], None]] = None,
) -> IngestResult:
    """
    Ingest one gateway message event.

    Args:
        db: Database session
        event: Decoded JSON body of the webhook request
        schedule_analysis: Called with the conversation id after a message is
            stored; None when no completion endpoint is configured

    Returns:
        IngestResult with either a skip reason or the stored ids
    """
    try:
        envelope = unwrap_envelope(event)
    except ValidationError as e:
        logger.warning(f"Invalid webhook payload: {e.error_count()} validation errors")
        record_webhook_outcome(INVALID_PAYLOAD)
        return IngestResult.skip(INVALID_PAYLOAD)

    payload = envelope.payload

    channel_identifier = sanitize_wa_id(envelope.me.id if envelope.me else None)
    if channel_identifier is None:
        logger.info("Skipping event without channel identifier")
        record_webhook_outcome(MISSING_CHANNEL_IDENTIFIER)
        return IngestResult.skip(MISSING_CHANNEL_IDENTIFIER)

    skip_reason = should_skip_message(payload)
    if skip_reason:
        db.add(RawWhatsappMessage(waha_id=payload.id, payload=event, processed=True))
        db.commit()
        logger.info(f"Skipping message {payload.id}: {skip_reason}")
        record_webhook_outcome(skip_reason)
        return IngestResult.skip(skip_reason)

    raw_record = RawWhatsappMessage(waha_id=payload.id, payload=event, processed=False)
    db.add(raw_record)
    db.commit()
    raw_record_id = raw_record.id

    direction = MessageDirection.OUTBOUND if payload.from_me else MessageDirection.INBOUND
    contact_raw_id = (payload.to or payload.chat_id) if payload.from_me else payload.from_id
    if sanitize_wa_id(contact_raw_id) is None:
        _mark_raw_processed(db, raw_record_id)
        logger.info(f"Skipping message {payload.id}: no contact identifier")
        record_webhook_outcome(MISSING_CONTACT_IDENTIFIER)
        return IngestResult.skip(MISSING_CONTACT_IDENTIFIER)

    sent_at = resolve_timestamp(payload)
    content = resolve_content(payload)

    channel = resolve_channel(
        db,
        channel_identifier,
        session_name=envelope.session,
        vendor_metadata={"apiKey": payload.api_key} if payload.api_key else None,
    )
    channel_id = channel.id
    channel_type = channel.type.value

    resolved = resolve_contact(db, contact_raw_id)
    contact_id = resolved.contact.id
    identity_id = resolved.identity.id

    conversation = _find_or_create_conversation(
        db, contact_id, channel_id, direction, sent_at, payload.chat_id
    )

    # Message, conversation roll-up, timeline event and the raw flag commit together
    message = Message(
        conversation_id=conversation.id,
        contact_id=contact_id,
        identity_id=identity_id if direction == MessageDirection.INBOUND else None,
        direction=direction,
        content=content,
        has_media=to_boolean(payload.has_media),
        payload=payload.model_dump(mode="json", by_alias=True, exclude_unset=True),
        external_id=payload.id,
        sent_at=sent_at,
        requires_processing=True,
    )
    db.add(message)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        # Only a clash on the external id is a duplicate delivery
        already_stored = payload.id is not None and (
            db.query(Message.id).filter(Message.external_id == payload.id).first() is not None
        )
        if not already_stored:
            logger.error(f"Failed to store message {payload.id}, raw record {raw_record_id} left unprocessed")
            raise
        _mark_raw_processed(db, raw_record_id)
        logger.info(f"Duplicate message {payload.id} ignored")
        record_webhook_outcome(DUPLICATE_MESSAGE)
        return IngestResult.skip(DUPLICATE_MESSAGE)

    update_conversation_timestamps(conversation, direction, sent_at)

    db.add(
        TimelineEvent(
            contact_id=contact_id,
            conversation_id=conversation.id,
            type=EventType.MESSAGE_RECEIVED if direction == MessageDirection.INBOUND else EventType.MESSAGE_SENT,
            content=content,
            meta={
                "channel": channel_type,
                "whatsapp": {
                    "raw_record_id": raw_record_id,
                    "external_message_id": payload.id,
                },
            },
            occurred_at=sent_at,
        )
    )
    db.query(RawWhatsappMessage).filter(RawWhatsappMessage.id == raw_record_id).update(
        {RawWhatsappMessage.processed: True}
    )
    db.commit()

    conversation_id = conversation.id
    message_id = message.id
    logger.info(
        f"Stored {direction.value.lower()} message {message_id}",
        extra={"conversation_id": conversation_id, "external_message_id": payload.id},
    )
    record_webhook_outcome("created")

    if schedule_analysis is not None:
        schedule_analysis(conversation_id)

    return IngestResult.accepted(conversation_id=conversation_id, message_id=message_id)
