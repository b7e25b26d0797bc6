"""
Writes a validated analysis outcome back into CRM state in one transaction.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from omnicrm.models import (
    Contact,
    ContactInsight,
    ContactTag,
    Conversation,
    EventType,
    Message,
    Opportunity,
    TagSource,
    TimelineEvent,
)
from omnicrm.schemas import AnalysisContext, AnalysisOutcome, StageSuggestion
from omnicrm.utils import utcnow

logger = logging.getLogger(__name__)

# Silent auto-application needs more confidence than a surfaced hint
AUTO_TRANSITION_MIN_CONFIDENCE = 0.60
SUGGESTION_MIN_CONFIDENCE = 0.40

# Dialects with INSERT .. ON CONFLICT DO NOTHING
CONFLICT_IGNORING_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def clear_needs_analysis(db: Session, conversation_id: str) -> None:
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.needs_analysis: False}
    )
    db.commit()


def _apply_tags(db: Session, contact_id: str, outcome: AnalysisOutcome, now: datetime) -> None:
    if not outcome.tags:
        return

    insert = CONFLICT_IGNORING_INSERTS.get(db.get_bind().dialect.name)
    if insert is not None:
        # Pairs assigned by anyone else, even mid-transaction, are left as they are
        rows = {
            tag.id: {"contact_id": contact_id, "tag_id": tag.id, "source": TagSource.AI, "assigned_at": now}
            for tag in outcome.tags
        }
        db.execute(
            insert(ContactTag.__table__)
            .values(list(rows.values()))
            .on_conflict_do_nothing(index_elements=["contact_id", "tag_id"])
        )
        return

    existing = {
        tag_id
        for (tag_id,) in db.query(ContactTag.tag_id).filter(ContactTag.contact_id == contact_id).all()
    }
    for tag in outcome.tags:
        if tag.id in existing:
            continue
        db.add(ContactTag(contact_id=contact_id, tag_id=tag.id, source=TagSource.AI, assigned_at=now))
        existing.add(tag.id)


def _apply_insights(db: Session, contact_id: str, outcome: AnalysisOutcome, now: datetime) -> None:
    if not outcome.insights:
        return
    # Insights are current best knowledge: replace, never merge
    db.query(ContactInsight).filter(
        ContactInsight.contact_id == contact_id,
        ContactInsight.definition_id.in_([selection.definition_id for selection in outcome.insights]),
    ).delete(synchronize_session=False)

    for selection in outcome.insights:
        db.add(
            ContactInsight(
                contact_id=contact_id,
                definition_id=selection.definition_id,
                payload=selection.payload,
                confidence=selection.confidence,
                generated_at=now,
                expires_at=selection.expires_at,
            )
        )


def _apply_stage(
    db: Session,
    contact: Contact,
    conversation_id: str,
    suggestion: Optional[StageSuggestion],
    now: datetime,
) -> Optional[str]:
    """
    Auto-transition, log a suggestion, or discard it.

    Returns "transition", "suggestion" or None, for logging.
    """
    if suggestion is None:
        return None

    stage = suggestion.stage
    previous_stage_id = contact.stage_id
    if stage.id == previous_stage_id:
        return None

    if stage.auto_transition and suggestion.confidence >= AUTO_TRANSITION_MIN_CONFIDENCE:
        contact.stage_id = stage.id
        db.query(Opportunity).filter(Opportunity.contact_id == contact.id).update(
            {Opportunity.stage_id: stage.id}, synchronize_session=False
        )
        db.add(
            TimelineEvent(
                contact_id=contact.id,
                conversation_id=conversation_id,
                type=EventType.STAGE_CHANGE,
                content=f"Stage automatically updated to {stage.name}",
                meta={
                    "from_stage_id": previous_stage_id,
                    "to_stage_id": stage.id,
                    "confidence": suggestion.confidence,
                    "reason": "auto-transition",
                },
                occurred_at=now,
            )
        )
        return "transition"

    if suggestion.confidence >= SUGGESTION_MIN_CONFIDENCE:
        db.add(
            TimelineEvent(
                contact_id=contact.id,
                conversation_id=conversation_id,
                type=EventType.SYSTEM_LOG,
                content=f"Suggested stage {stage.name} (confidence {suggestion.confidence * 100:.0f}%).",
                meta={
                    "suggested_stage_id": stage.id,
                    "confidence": suggestion.confidence,
                    "reason": "ai-suggestion",
                },
                occurred_at=now,
            )
        )
        return "suggestion"

    return None


def apply_analysis(
    db: Session,
    context: AnalysisContext,
    outcome: AnalysisOutcome,
    now: Optional[datetime] = None,
) -> None:
    """
    Apply summary, tags, insights and stage handling, then close out the
    messages this pass analyzed. Commits once; rolls back on any error.
    """
    now = now or utcnow()
    try:
        conversation = db.query(Conversation).filter(Conversation.id == context.conversation_id).one()
        contact = db.query(Contact).filter(Contact.id == context.contact_id).one()

        conversation.summary = outcome.summary or conversation.summary
        conversation.last_analysis_at = now
        conversation.needs_analysis = False

        _apply_tags(db, contact.id, outcome, now)
        _apply_insights(db, contact.id, outcome, now)
        stage_result = _apply_stage(db, contact, conversation.id, outcome.stage, now)

        analyzed_ids = [message.id for message in context.messages if message.requires_processing]
        if analyzed_ids:
            db.query(Message).filter(
                Message.conversation_id == conversation.id,
                Message.requires_processing.is_(True),
                Message.id.in_(analyzed_ids),
            ).update(
                {Message.requires_processing: False, Message.processed_at: now},
                synchronize_session=False,
            )

        # Messages that arrived while the completion call was running keep the flag up
        arrived_meanwhile = (
            db.query(Message.id)
            .filter(Message.conversation_id == conversation.id, Message.requires_processing.is_(True))
            .first()
        )
        if arrived_meanwhile is not None:
            conversation.needs_analysis = True

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.debug(
        f"Applied analysis: {len(outcome.tags)} tags, {len(outcome.insights)} insights, stage={stage_result}",
        extra={"conversation_id": context.conversation_id},
    )
