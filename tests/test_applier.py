"""
Tests for applying analysis outcomes (omnicrm.applier).

Tests cover:
- Stage auto-transition versus suggestion thresholds
- Tag, insight and summary writes
- Closing out analyzed messages
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import NoResultFound

from omnicrm import models
from omnicrm.analysis import load_context
from omnicrm.applier import apply_analysis
from omnicrm.models import MessageDirection
from omnicrm.schemas import AnalysisOutcome, InsightSelection, StageSuggestion

from factories import make_conversation

NOW = datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def stages(db, operation):
    return {stage.slug: stage for stage in db.query(models.Stage).all()}


@pytest.fixture
def conversation(db, channel, stages):
    return make_conversation(
        db,
        channel,
        [(MessageDirection.INBOUND, "hi"), (MessageDirection.OUTBOUND, "hello")],
        stage=stages["prospect"],
    )


def option(context, slug):
    return next(stage for stage in context.stages if stage.slug == slug)


def tag_option(context, slug):
    return next(tag for tag in context.tags if tag.slug == slug)


def events(db, event_type):
    return db.query(models.TimelineEvent).filter(models.TimelineEvent.type == event_type).all()


class TestStageHandling:
    def test_below_auto_threshold_logs_suggestion(self, db, conversation, stages):
        context = load_context(db, conversation.id)
        outcome = AnalysisOutcome(stage=StageSuggestion(stage=option(context, "demo"), confidence=0.59))

        apply_analysis(db, context, outcome, now=NOW)

        db.expire_all()
        contact = db.query(models.Contact).one()
        assert contact.stage_id == stages["prospect"].id
        assert events(db, models.EventType.STAGE_CHANGE) == []
        [suggestion] = events(db, models.EventType.SYSTEM_LOG)
        assert suggestion.meta["suggested_stage_id"] == stages["demo"].id
        assert suggestion.meta["confidence"] == 0.59
        assert suggestion.meta["reason"] == "ai-suggestion"
        assert "59%" in suggestion.content

    def test_auto_transition_at_threshold(self, db, conversation, stages):
        contact_id = conversation.contact_id
        db.add(models.Opportunity(contact_id=contact_id, stage_id=stages["prospect"].id))
        db.commit()
        context = load_context(db, conversation.id)
        outcome = AnalysisOutcome(stage=StageSuggestion(stage=option(context, "demo"), confidence=0.60))

        apply_analysis(db, context, outcome, now=NOW)

        db.expire_all()
        contact = db.query(models.Contact).one()
        assert contact.stage_id == stages["demo"].id
        assert db.query(models.Opportunity).one().stage_id == stages["demo"].id
        [change] = events(db, models.EventType.STAGE_CHANGE)
        assert change.meta["from_stage_id"] == stages["prospect"].id
        assert change.meta["to_stage_id"] == stages["demo"].id
        assert change.meta["reason"] == "auto-transition"
        assert change.conversation_id == conversation.id
        assert events(db, models.EventType.SYSTEM_LOG) == []

    def test_stage_without_auto_transition_only_suggested(self, db, conversation, stages):
        context = load_context(db, conversation.id)
        outcome = AnalysisOutcome(stage=StageSuggestion(stage=option(context, "negotiation"), confidence=0.95))

        apply_analysis(db, context, outcome, now=NOW)

        db.expire_all()
        assert db.query(models.Contact).one().stage_id == stages["prospect"].id
        assert len(events(db, models.EventType.SYSTEM_LOG)) == 1

    def test_low_confidence_discarded(self, db, conversation, stages):
        context = load_context(db, conversation.id)
        outcome = AnalysisOutcome(stage=StageSuggestion(stage=option(context, "demo"), confidence=0.39))

        apply_analysis(db, context, outcome, now=NOW)

        db.expire_all()
        assert db.query(models.Contact).one().stage_id == stages["prospect"].id
        assert db.query(models.TimelineEvent).count() == 0

    def test_current_stage_is_noop(self, db, conversation, stages):
        context = load_context(db, conversation.id)
        outcome = AnalysisOutcome(stage=StageSuggestion(stage=option(context, "prospect"), confidence=1.0))

        apply_analysis(db, context, outcome, now=NOW)

        assert db.query(models.TimelineEvent).count() == 0


class TestTagsInsightsSummary:
    def test_existing_tags_are_kept(self, db, conversation):
        hot_lead = db.query(models.Tag).filter(models.Tag.slug == "hot_lead").one()
        db.add(models.ContactTag(
            contact_id=conversation.contact_id,
            tag_id=hot_lead.id,
            source=models.TagSource.USER,
        ))
        db.commit()
        context = load_context(db, conversation.id)
        outcome = AnalysisOutcome(tags=[tag_option(context, "hot_lead"), tag_option(context, "price_sensitive")])

        apply_analysis(db, context, outcome, now=NOW)

        db.expire_all()
        sources = {row.tag.slug: row.source for row in db.query(models.ContactTag).all()}
        assert sources == {"hot_lead": models.TagSource.USER, "price_sensitive": models.TagSource.AI}

    def test_tag_assigned_during_pass_does_not_abort(self, db, conversation):
        context = load_context(db, conversation.id)
        hot_lead = tag_option(context, "hot_lead")
        # Assigned after the context was loaded, inside the same transaction as the write
        db.add(models.ContactTag(contact_id=conversation.contact_id, tag_id=hot_lead.id, source=models.TagSource.USER))
        db.flush()
        outcome = AnalysisOutcome(summary="Still applied", tags=[hot_lead, hot_lead, tag_option(context, "price_sensitive")])

        apply_analysis(db, context, outcome, now=NOW)

        db.expire_all()
        sources = {row.tag.slug: row.source for row in db.query(models.ContactTag).all()}
        assert sources == {"hot_lead": models.TagSource.USER, "price_sensitive": models.TagSource.AI}
        assert db.query(models.Conversation).one().summary == "Still applied"

    def test_insights_replaced(self, db, conversation):
        budget = db.query(models.InsightDefinition).filter(models.InsightDefinition.slug == "budget").one()
        budget_id = budget.id
        db.add(models.ContactInsight(
            contact_id=conversation.contact_id,
            definition_id=budget_id,
            payload={"amount": 1000},
        ))
        db.commit()
        context = load_context(db, conversation.id)
        outcome = AnalysisOutcome(insights=[
            InsightSelection(definition_id=budget_id, slug="budget", payload={"amount": 2000}, confidence=0.7),
        ])

        apply_analysis(db, context, outcome, now=NOW)

        db.expire_all()
        [insight] = db.query(models.ContactInsight).all()
        assert insight.payload == {"amount": 2000}
        assert insight.confidence == 0.7

    def test_summary_replaced_when_present(self, db, conversation):
        context = load_context(db, conversation.id)

        apply_analysis(db, context, AnalysisOutcome(summary="New summary"), now=NOW)

        db.expire_all()
        assert db.query(models.Conversation).one().summary == "New summary"

    def test_summary_kept_when_empty(self, db, conversation):
        conversation.summary = "Old summary"
        db.commit()
        context = load_context(db, conversation.id)

        apply_analysis(db, context, AnalysisOutcome(summary=None), now=NOW)

        db.expire_all()
        assert db.query(models.Conversation).one().summary == "Old summary"


class TestCloseOut:
    def test_messages_marked_processed(self, db, conversation):
        context = load_context(db, conversation.id)

        apply_analysis(db, context, AnalysisOutcome(), now=NOW)

        db.expire_all()
        stored = db.query(models.Conversation).one()
        assert stored.needs_analysis is False
        assert stored.last_analysis_at is not None
        messages = db.query(models.Message).all()
        assert len(messages) == 2
        assert all(message.requires_processing is False for message in messages)
        assert all(message.processed_at is not None for message in messages)

    def test_rolls_back_on_missing_contact(self, db, conversation):
        context = load_context(db, conversation.id).model_copy(update={"contact_id": "missing"})

        with pytest.raises(NoResultFound):
            apply_analysis(db, context, AnalysisOutcome(summary="never"), now=NOW)

        db.expire_all()
        stored = db.query(models.Conversation).one()
        assert stored.summary is None
        assert stored.needs_analysis is True
