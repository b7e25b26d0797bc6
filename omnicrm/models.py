"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from omnicrm.storage import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enumerations
# =============================================================================

class IdentityType(str, enum.Enum):
    WHATSAPP = "WHATSAPP"
    EMAIL = "EMAIL"
    INSTAGRAM = "INSTAGRAM"


class ChannelType(str, enum.Enum):
    WHATSAPP = "WHATSAPP"
    EMAIL = "EMAIL"
    INSTAGRAM = "INSTAGRAM"
    SMS = "SMS"
    OTHER = "OTHER"


class ChannelStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONNECTING = "CONNECTING"
    WORKING = "WORKING"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


class MessageDirection(str, enum.Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class TagSource(str, enum.Enum):
    AI = "AI"
    USER = "USER"
    SYSTEM = "SYSTEM"


class EventType(str, enum.Enum):
    MESSAGE_SENT = "MESSAGE_SENT"
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    NOTE = "NOTE"
    STAGE_CHANGE = "STAGE_CHANGE"
    CALL_LOG = "CALL_LOG"
    SYSTEM_LOG = "SYSTEM_LOG"


# =============================================================================
# Tenant catalogs
# =============================================================================

class Operation(Base):
    """A tenant. Owns channels and the tag/insight/stage catalogs."""
    __tablename__ = "omni_operations"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    tags = relationship("Tag", back_populates="operation")
    insight_definitions = relationship("InsightDefinition", back_populates="operation")
    stages = relationship("Stage", back_populates="operation")


class Stage(Base):
    __tablename__ = "omni_stages"
    __table_args__ = (UniqueConstraint("operation_id", "slug"),)

    id = Column(String, primary_key=True, default=_uuid)
    operation_id = Column(String, ForeignKey("omni_operations.id", ondelete="SET NULL"), nullable=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False)
    order = Column(Integer, nullable=False, default=0)
    color = Column(String, nullable=True)
    prompt_condition = Column(Text, nullable=True)
    auto_transition = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    operation = relationship("Operation", back_populates="stages")


class Tag(Base):
    __tablename__ = "omni_tag_definitions"
    __table_args__ = (UniqueConstraint("operation_id", "slug"),)

    id = Column(String, primary_key=True, default=_uuid)
    operation_id = Column(String, ForeignKey("omni_operations.id", ondelete="SET NULL"), nullable=True)
    slug = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String, nullable=True)
    prompt_condition = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    operation = relationship("Operation", back_populates="tags")


class InsightDefinition(Base):
    __tablename__ = "omni_insight_definitions"
    __table_args__ = (UniqueConstraint("operation_id", "slug"),)

    id = Column(String, primary_key=True, default=_uuid)
    operation_id = Column(String, ForeignKey("omni_operations.id", ondelete="SET NULL"), nullable=True)
    slug = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    prompt_instruction = Column(Text, nullable=True)
    schema = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    operation = relationship("Operation", back_populates="insight_definitions")


# =============================================================================
# Contacts and identities
# =============================================================================

class Contact(Base):
    """
    A person we talk to. Created without attributes the first time an unknown
    identifier shows up in a message.
    """
    __tablename__ = "contacts"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=True)
    stage_id = Column(String, ForeignKey("omni_stages.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    stage = relationship("Stage")
    identities = relationship("Identity", back_populates="contact")
    tags = relationship("ContactTag", back_populates="contact")


class Identity(Base):
    """
    External address owned by a contact.

    Unique by (type, value); for WHATSAPP the value is the token before '@'.
    """
    __tablename__ = "identities"
    __table_args__ = (UniqueConstraint("type", "value"),)

    id = Column(String, primary_key=True, default=_uuid)
    type = Column(Enum(IdentityType, native_enum=False), nullable=False)
    value = Column(String, nullable=False)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    contact = relationship("Contact", back_populates="identities")


class ContactTag(Base):
    __tablename__ = "contact_tags"

    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String, ForeignKey("omni_tag_definitions.id", ondelete="CASCADE"), primary_key=True)
    source = Column(Enum(TagSource, native_enum=False), nullable=False, default=TagSource.USER)
    note = Column(Text, nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    contact = relationship("Contact", back_populates="tags")
    tag = relationship("Tag")


class ContactInsight(Base):
    __tablename__ = "omni_contact_insights"
    __table_args__ = (Index("ix_contact_insights_contact_definition", "contact_id", "definition_id"),)

    id = Column(String, primary_key=True, default=_uuid)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    definition_id = Column(String, ForeignKey("omni_insight_definitions.id", ondelete="CASCADE"), nullable=False)
    payload = Column(JSON, nullable=True)
    confidence = Column(Float, nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class Opportunity(Base):
    __tablename__ = "opportunities"

    id = Column(String, primary_key=True, default=_uuid)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    stage_id = Column(String, ForeignKey("omni_stages.id", ondelete="SET NULL"), nullable=True)
    estimated_value = Column(Numeric(14, 2), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


# =============================================================================
# Channels
# =============================================================================

class Channel(Base):
    """
    One WhatsApp-capable account. operation_id is NULL for orphan channels
    created before the owning tenant is known.
    """
    __tablename__ = "omni_channels"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    type = Column(Enum(ChannelType, native_enum=False), nullable=False)
    status = Column(Enum(ChannelStatus, native_enum=False), nullable=False, default=ChannelStatus.PENDING)
    external_identifier = Column(String, nullable=True, unique=True)
    meta = Column("metadata", JSON, nullable=True)
    operation_id = Column(String, ForeignKey("omni_operations.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    operation = relationship("Operation")
    whatsapp = relationship("WhatsAppChannel", back_populates="channel", uselist=False)


class WhatsAppChannel(Base):
    """Maps a gateway session name to its channel."""
    __tablename__ = "omni_whatsapp_channels"

    id = Column(String, primary_key=True, default=_uuid)
    channel_id = Column(String, ForeignKey("omni_channels.id", ondelete="CASCADE"), nullable=False, unique=True)
    session_name = Column(String, nullable=False, unique=True)
    webhook_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    channel = relationship("Channel", back_populates="whatsapp")


# =============================================================================
# Conversations and messages
# =============================================================================

class Conversation(Base):
    __tablename__ = "omni_conversations"
    __table_args__ = (UniqueConstraint("contact_id", "channel_id"),)

    id = Column(String, primary_key=True, default=_uuid)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    channel_id = Column(String, ForeignKey("omni_channels.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String, nullable=True)
    summary = Column(Text, nullable=True)
    first_message_at = Column(DateTime(timezone=True), nullable=False)
    last_message_at = Column(DateTime(timezone=True), nullable=False)
    first_inbound_message_at = Column(DateTime(timezone=True), nullable=True)
    first_outbound_message_at = Column(DateTime(timezone=True), nullable=True)
    first_response_at = Column(DateTime(timezone=True), nullable=True)
    is_started_by_contact = Column(Boolean, nullable=True)
    time_to_first_interaction = Column(Integer, nullable=True)  # seconds
    last_analysis_at = Column(DateTime(timezone=True), nullable=True)
    needs_analysis = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    contact = relationship("Contact")
    channel = relationship("Channel")
    messages = relationship("Message", back_populates="conversation", order_by="Message.sent_at")


class Message(Base):
    """
    Append-only record of one inbound/outbound message.

    external_id (gateway message id) is unique: a duplicate delivery fails the
    insert, which is how ingestion detects it.
    """
    __tablename__ = "omni_messages"
    __table_args__ = (Index("ix_messages_conversation_sent_at", "conversation_id", "sent_at"),)

    id = Column(String, primary_key=True, default=_uuid)
    conversation_id = Column(String, ForeignKey("omni_conversations.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    identity_id = Column(String, ForeignKey("identities.id", ondelete="SET NULL"), nullable=True)
    direction = Column(Enum(MessageDirection, native_enum=False), nullable=False)
    content = Column(Text, nullable=True)
    has_media = Column(Boolean, nullable=False, default=False)
    payload = Column(JSON, nullable=True)
    external_id = Column(String, nullable=True, unique=True)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    requires_processing = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    conversation = relationship("Conversation", back_populates="messages")


class RawWhatsappMessage(Base):
    """Audit copy of every webhook payload, processed or skipped."""
    __tablename__ = "raw_whatsapp_messages"

    id = Column(String, primary_key=True, default=_uuid)
    waha_id = Column(String, nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class TimelineEvent(Base):
    __tablename__ = "timeline_events"
    __table_args__ = (
        Index("ix_timeline_events_contact_occurred_at", "contact_id", "occurred_at"),
        Index("ix_timeline_events_conversation_occurred_at", "conversation_id", "occurred_at"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    conversation_id = Column(String, ForeignKey("omni_conversations.id", ondelete="SET NULL"), nullable=True)
    type = Column(Enum(EventType, native_enum=False), nullable=False)
    content = Column(Text, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
