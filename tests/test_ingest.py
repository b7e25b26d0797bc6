"""
Tests for webhook ingestion (omnicrm.ingest) called directly.

Tests cover:
- The inbound scenario: contact, identity, conversation, message, scheduling
- Duplicate detection through the unique constraint
- Skip reasons and the raw audit log
- Identity and channel resolution
- Timestamp and content resolution
- Conversation roll-up fields
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from omnicrm import ingest as ingest_module
from omnicrm import models
from omnicrm.channels import handle_session_status
from omnicrm.identity import sanitize_wa_id
from omnicrm.ingest import (
    ingest_whatsapp_message,
    resolve_content,
    resolve_timestamp,
    should_skip_message,
)
from omnicrm.schemas import SessionStatusWebhook, WebhookMessagePayload
from omnicrm.utils import ensure_utc

from factories import make_event


def payload(**fields) -> WebhookMessagePayload:
    fields.setdefault("fromMe", False)
    return WebhookMessagePayload.model_validate(fields)


class TestInboundScenario:
    def test_creates_records_and_schedules(self, db, channel):
        scheduled = []

        result = ingest_whatsapp_message(db, make_event(), schedule_analysis=scheduled.append)

        assert result.skipped is False
        assert db.query(models.Contact).count() == 1
        identity = db.query(models.Identity).one()
        assert identity.type == models.IdentityType.WHATSAPP
        assert identity.value == "5511999990000"
        conversation = db.query(models.Conversation).one()
        assert conversation.id == result.conversation_id
        assert conversation.channel_id == channel.id
        message = db.query(models.Message).one()
        assert message.id == result.message_id
        assert message.direction == models.MessageDirection.INBOUND
        assert message.identity_id == identity.id
        assert message.requires_processing is True
        assert ensure_utc(message.sent_at) == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert scheduled == [result.conversation_id]

    def test_duplicate_is_skipped(self, db, channel):
        scheduled = []
        ingest_whatsapp_message(db, make_event(), schedule_analysis=scheduled.append)

        result = ingest_whatsapp_message(db, make_event(), schedule_analysis=scheduled.append)

        assert result.skipped is True
        assert result.reason == "duplicate-message"
        assert db.query(models.Message).count() == 1
        assert len(scheduled) == 1
        raws = db.query(models.RawWhatsappMessage).all()
        assert len(raws) == 2
        assert all(raw.processed for raw in raws)

    def test_other_integrity_errors_are_not_duplicates(self, db, channel, monkeypatch):
        ingest_whatsapp_message(db, make_event("msg-1"))
        # A message without sent_at violates NOT NULL, not the external id constraint
        monkeypatch.setattr(ingest_module, "resolve_timestamp", lambda payload: None)

        with pytest.raises(IntegrityError):
            ingest_whatsapp_message(db, make_event("msg-2"))

        db.expire_all()
        assert db.query(models.Message).count() == 1
        raw = db.query(models.RawWhatsappMessage).filter(models.RawWhatsappMessage.waha_id == "msg-2").one()
        assert raw.processed is False

    def test_timeline_event_emitted(self, db, channel):
        result = ingest_whatsapp_message(db, make_event())

        event = db.query(models.TimelineEvent).one()
        assert event.type == models.EventType.MESSAGE_RECEIVED
        assert event.conversation_id == result.conversation_id
        assert event.content == "oi"
        assert event.meta["channel"] == "WHATSAPP"
        assert event.meta["whatsapp"]["external_message_id"] == "msg-1"
        raw = db.query(models.RawWhatsappMessage).one()
        assert event.meta["whatsapp"]["raw_record_id"] == raw.id
        assert raw.processed is True

    def test_no_scheduling_without_callback(self, db, channel):
        result = ingest_whatsapp_message(db, make_event(), schedule_analysis=None)

        assert result.conversation_id


class TestIdentity:
    def test_sanitize(self):
        assert sanitize_wa_id("5511999990000@s.whatsapp.net") == "5511999990000"
        assert sanitize_wa_id(" 5511999990000 ") == "5511999990000"
        assert sanitize_wa_id("@c.us") is None
        assert sanitize_wa_id("") is None
        assert sanitize_wa_id(None) is None

    def test_suffix_variation_resolves_same_contact(self, db, channel):
        first = ingest_whatsapp_message(db, make_event("a", contact="5511999990000@s.whatsapp.net"))
        second = ingest_whatsapp_message(db, make_event("b", contact="5511999990000@c.us"))

        assert first.conversation_id == second.conversation_id
        assert db.query(models.Contact).count() == 1
        assert db.query(models.Identity).count() == 1

    def test_outbound_resolves_recipient(self, db, channel):
        result = ingest_whatsapp_message(db, make_event(from_me=True, contact="5511999990000@c.us"))

        message = db.query(models.Message).one()
        assert message.direction == models.MessageDirection.OUTBOUND
        assert message.identity_id is None
        assert db.query(models.Identity).one().value == "5511999990000"
        assert result.conversation_id

    def test_outbound_falls_back_to_chat_id(self, db, channel):
        event = make_event(from_me=True, contact=None, chatId="5511999990000@c.us")
        event["payload"].pop("to")

        result = ingest_whatsapp_message(db, event)

        assert result.skipped is False
        assert db.query(models.Identity).one().value == "5511999990000"


class TestSkips:
    def test_missing_channel_identifier_persists_nothing(self, db):
        result = ingest_whatsapp_message(db, make_event(me=None))

        assert result.reason == "missing-channel-identifier"
        assert db.query(models.RawWhatsappMessage).count() == 0
        assert db.query(models.Channel).count() == 0

    def test_empty_message_audited(self, db, channel):
        result = ingest_whatsapp_message(db, make_event(body="   "))

        assert result.reason == "empty-message"
        raw = db.query(models.RawWhatsappMessage).one()
        assert raw.processed is True
        assert raw.waha_id == "msg-1"
        assert db.query(models.Message).count() == 0

    @pytest.mark.parametrize("extra", [
        {"participant": "5511777770000@c.us"},
        {"isDefaultSubgroup": False},
        {"chatId": "120363025246125888@g.us"},
    ])
    def test_group_messages(self, db, channel, extra):
        result = ingest_whatsapp_message(db, make_event(**extra))

        assert result.reason == "group-message"
        assert db.query(models.Conversation).count() == 0

    def test_newsletter_and_broadcast_ids(self, db, channel):
        assert ingest_whatsapp_message(db, make_event("x@newsletter")).reason == "group-message"
        assert ingest_whatsapp_message(db, make_event("status@broadcast_1")).reason == "group-message"

    def test_missing_contact_identifier(self, db, channel):
        result = ingest_whatsapp_message(db, make_event(contact="@s.whatsapp.net"))

        assert result.reason == "missing-contact-identifier"
        raw = db.query(models.RawWhatsappMessage).one()
        assert raw.processed is True
        assert db.query(models.Contact).count() == 0

    def test_media_without_text_is_not_empty(self):
        assert should_skip_message(payload(body="", hasMedia=True)) is None
        assert should_skip_message(payload(body=None, hasMedia="true")) is None
        assert should_skip_message(payload(body=None, hasMedia="false")) == "empty-message"


class TestChannelResolution:
    def test_unknown_channel_creates_orphan(self, db):
        result = ingest_whatsapp_message(db, make_event(me="5511000000000@c.us", session=None, apiKey="k-1"))

        assert result.skipped is False
        orphan = db.query(models.Channel).one()
        assert orphan.operation_id is None
        assert orphan.external_identifier == "5511000000000"
        assert orphan.name == "WhatsApp 5511000000000"
        assert orphan.meta == {"apiKey": "k-1"}

    def test_session_status_with_number_held_by_orphan(self, db, operation):
        claimed = models.Channel(name="Claimed", type=models.ChannelType.WHATSAPP, operation_id=operation.id)
        db.add(claimed)
        db.flush()
        db.add(models.WhatsAppChannel(channel_id=claimed.id, session_name="newsession"))
        db.commit()
        claimed_id = claimed.id
        ingest_whatsapp_message(db, make_event(me="5511777770000@c.us", session=None))
        event = SessionStatusWebhook.model_validate({
            "event": "session.status",
            "session": "newsession",
            "me": {"id": "5511777770000@c.us"},
            "payload": {"status": "WORKING"},
        })

        updated = handle_session_status(db, event)

        assert updated.id == claimed_id
        db.expire_all()
        stored = db.query(models.Channel).filter(models.Channel.id == claimed_id).one()
        assert stored.status == models.ChannelStatus.WORKING
        assert stored.external_identifier is None
        orphan = db.query(models.Channel).filter(models.Channel.id != claimed_id).one()
        assert orphan.external_identifier == "5511777770000"

    def test_session_name_backfills_identifier(self, db, operation):
        channel = models.Channel(name="Pending", type=models.ChannelType.WHATSAPP, operation_id=operation.id)
        db.add(channel)
        db.flush()
        db.add(models.WhatsAppChannel(channel_id=channel.id, session_name="fresh"))
        db.commit()

        ingest_whatsapp_message(db, make_event(me="5511222220000@c.us", session="fresh"))

        db.expire_all()
        assert db.query(models.Channel).count() == 1
        assert db.query(models.Channel).one().external_identifier == "5511222220000"
        assert db.query(models.Conversation).one().channel_id == channel.id


class TestTimestamp:
    def test_seconds(self):
        resolved = resolve_timestamp(payload(timestamp=1700000000))
        assert resolved == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_milliseconds(self):
        resolved = resolve_timestamp(payload(timestamp=1700000000123))
        assert resolved == datetime(2023, 11, 14, 22, 13, 20, 123000, tzinfo=timezone.utc)

    def test_numeric_string(self):
        assert resolve_timestamp(payload(timestamp="1700000000")).year == 2023

    def test_precedence(self):
        resolved = resolve_timestamp(payload(timestamp=1700000000, messageTimestamp=1600000000))
        assert resolved.year == 2023

    def test_falls_through_invalid_candidates(self):
        resolved = resolve_timestamp(payload(timestamp="soon", _data={"messageTimestamp": 1600000000}))
        assert resolved == datetime.fromtimestamp(1600000000, tz=timezone.utc)

    def test_seconds_field_without_millisecond_field(self):
        resolved = resolve_timestamp(payload(messageTimestamp=1700000000))
        assert resolved == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_defaults_to_now(self):
        resolved = resolve_timestamp(payload())
        assert abs(resolved - datetime.now(timezone.utc)) < timedelta(seconds=5)


class TestContent:
    def test_trimmed_text(self):
        assert resolve_content(payload(body="  hello \n")) == "hello"

    def test_media_placeholder(self):
        assert resolve_content(payload(body=None, hasMedia=True)) == "<media>"

    def test_media_with_caption_keeps_caption(self):
        assert resolve_content(payload(body="look", hasMedia=True)) == "look"


class TestConversationRollup:
    def test_first_response_time(self, db, channel):
        ingest_whatsapp_message(db, make_event("in-1", timestamp=1700000000))
        ingest_whatsapp_message(db, make_event("out-1", from_me=True, timestamp=1700000090))
        ingest_whatsapp_message(db, make_event("out-2", from_me=True, timestamp=1700000500))

        db.expire_all()
        conversation = db.query(models.Conversation).one()
        assert conversation.is_started_by_contact is True
        assert conversation.time_to_first_interaction == 90
        assert ensure_utc(conversation.first_response_at) == datetime.fromtimestamp(1700000090, tz=timezone.utc)
        assert ensure_utc(conversation.last_message_at) == datetime.fromtimestamp(1700000500, tz=timezone.utc)
        assert conversation.needs_analysis is True

    def test_agent_started_conversation_has_no_response_time(self, db, channel):
        ingest_whatsapp_message(db, make_event("out-1", from_me=True, timestamp=1700000000))
        ingest_whatsapp_message(db, make_event("in-1", timestamp=1700000100))
        ingest_whatsapp_message(db, make_event("out-2", from_me=True, timestamp=1700000200))

        db.expire_all()
        conversation = db.query(models.Conversation).one()
        assert conversation.is_started_by_contact is False
        assert conversation.time_to_first_interaction is None
        assert ensure_utc(conversation.first_inbound_message_at) == datetime.fromtimestamp(1700000100, tz=timezone.utc)

    def test_older_message_pulls_first_message_earlier(self, db, channel):
        ingest_whatsapp_message(db, make_event("late", timestamp=1700000500))
        ingest_whatsapp_message(db, make_event("early", timestamp=1700000000))

        db.expire_all()
        conversation = db.query(models.Conversation).one()
        assert ensure_utc(conversation.first_message_at) == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert ensure_utc(conversation.last_message_at) == datetime.fromtimestamp(1700000000, tz=timezone.utc)
