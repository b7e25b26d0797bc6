"""
Conversation analysis worker.

One pass: load a detached snapshot of the conversation and its tenant
catalogs, render a bounded transcript, ask the completion endpoint for a
JSON verdict, keep only what the catalogs allow, and hand the result to the
applier. Database work runs in worker threads; the completion call is the
only await on the event loop.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from omnicrm.applier import apply_analysis, clear_needs_analysis
from omnicrm.completion import CompletionClient
from omnicrm.metrics import record_analysis_outcome
from omnicrm.models import (
    ContactTag,
    Conversation,
    InsightDefinition,
    Message,
    MessageDirection,
    Stage,
    Tag,
)
from omnicrm.schemas import (
    AnalysisContext,
    AnalysisOutcome,
    CompletionOutput,
    InsightOption,
    InsightSelection,
    MessageSnapshot,
    StageOption,
    StageSuggestion,
    TagOption,
)
from omnicrm.storage import SessionLocal
from omnicrm.utils import clamp, ensure_utc, parse_iso_datetime, to_finite_number

logger = logging.getLogger(__name__)

MESSAGE_CHAR_LIMIT = 400
TRANSCRIPT_CHAR_LIMIT = 800

AGENT_LABEL = "[AGENT]"
CUSTOMER_LABEL = "[CUSTOMER]"
MEDIA_PLACEHOLDER = "<media>"
EMPTY_PLACEHOLDER = "<no text>"

SYSTEM_PROMPT = (
    "You are a conversation analyzer that ALWAYS answers with a single valid JSON object "
    "containing exactly the keys 'summary', 'tags', 'insights' and 'stage'. "
    "Never write anything outside the JSON."
)


# =============================================================================
# Context loading
# =============================================================================

def load_context(db: Session, conversation_id: str) -> Optional[AnalysisContext]:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        return None

    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation.id)
        .order_by(Message.sent_at.asc(), Message.created_at.asc())
        .all()
    )

    operation_id = conversation.channel.operation_id
    tags, insights, stages = [], [], []
    if operation_id is not None:
        tags = (
            db.query(Tag)
            .filter(Tag.operation_id == operation_id, Tag.is_active.is_(True))
            .order_by(Tag.created_at.asc())
            .all()
        )
        insights = (
            db.query(InsightDefinition)
            .filter(InsightDefinition.operation_id == operation_id, InsightDefinition.is_active.is_(True))
            .order_by(InsightDefinition.created_at.asc())
            .all()
        )
        stages = db.query(Stage).filter(Stage.operation_id == operation_id).order_by(Stage.order.asc()).all()

    contact = conversation.contact
    current_tag_slugs = [
        slug
        for (slug,) in db.query(Tag.slug)
        .join(ContactTag, ContactTag.tag_id == Tag.id)
        .filter(ContactTag.contact_id == contact.id)
        .all()
        if slug
    ]

    return AnalysisContext(
        conversation_id=conversation.id,
        contact_id=contact.id,
        summary=conversation.summary,
        needs_analysis=conversation.needs_analysis,
        messages=[
            MessageSnapshot(
                id=message.id,
                direction=message.direction.value,
                content=message.content,
                has_media=message.has_media,
                sent_at=ensure_utc(message.sent_at),
                requires_processing=message.requires_processing,
            )
            for message in messages
        ],
        tags=[
            TagOption(
                id=tag.id,
                slug=tag.slug,
                name=tag.name,
                description=tag.description,
                prompt_condition=tag.prompt_condition,
            )
            for tag in tags
        ],
        insights=[
            InsightOption(
                id=definition.id,
                slug=definition.slug,
                name=definition.name,
                description=definition.description,
                prompt_instruction=definition.prompt_instruction,
                json_schema=definition.schema,
            )
            for definition in insights
        ],
        stages=[
            StageOption(
                id=stage.id,
                slug=stage.slug,
                name=stage.name,
                prompt_condition=stage.prompt_condition,
                auto_transition=stage.auto_transition,
            )
            for stage in stages
        ],
        current_stage_id=contact.stage_id,
        current_stage_slug=contact.stage.slug if contact.stage else None,
        current_tag_slugs=current_tag_slugs,
    )


# =============================================================================
# Transcript and prompt
# =============================================================================

def format_transcript(
    messages: list[MessageSnapshot],
    message_limit: int = MESSAGE_CHAR_LIMIT,
    total_limit: int = TRANSCRIPT_CHAR_LIMIT,
) -> str:
    """
    Render messages as speaker-labelled lines, keeping the most recent ones.

    A label line is emitted only when the speaker changes. Each body is
    capped at `message_limit` characters, then whole lines are kept from the
    end backwards while the total stays within `total_limit`.
    """
    if not messages:
        return ""

    lines: list[str] = []
    current_speaker = None
    for message in messages:
        if message.direction != current_speaker:
            label = AGENT_LABEL if message.direction == MessageDirection.OUTBOUND.value else CUSTOMER_LABEL
            lines.append(f"{label}:")
            current_speaker = message.direction

        text = (message.content or "").strip()
        if not text:
            text = MEDIA_PLACEHOLDER if message.has_media else EMPTY_PLACEHOLDER
        lines.append(text[:message_limit])

    kept: list[str] = []
    total = 0
    for line in reversed(lines):
        if total + len(line) > total_limit:
            break
        kept.append(line)
        total += len(line)

    return "\n".join(reversed(kept))


def _compact(entry: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in entry.items() if value is not None}


def build_prompt(context: AnalysisContext, transcript: str) -> tuple[str, str]:
    """Return the (system, user) messages for one analysis request."""
    tags = [
        _compact({
            "slug": tag.slug,
            "label": tag.name,
            "description": tag.description,
            "promptCondition": tag.prompt_condition,
        })
        for tag in context.tags
    ]
    insights = [
        _compact({
            "slug": insight.slug,
            "name": insight.name,
            "description": insight.description,
            "promptInstruction": insight.prompt_instruction,
            "schema": insight.json_schema,
        })
        for insight in context.insights
    ]
    stages = [
        _compact({
            "slug": stage.slug,
            "name": stage.name,
            "promptCondition": stage.prompt_condition,
            "autoTransition": stage.auto_transition,
        })
        for stage in context.stages
    ]

    summary_text = (
        f"Current known summary: {json.dumps(context.summary, ensure_ascii=False)}."
        if context.summary
        else "There is no previous summary."
    )
    stage_text = (
        f"Current pipeline stage: {context.current_stage_slug}."
        if context.current_stage_slug
        else "Current pipeline stage is unknown."
    )
    tags_text = (
        f"Tags already applied: {json.dumps(context.current_tag_slugs, ensure_ascii=False)}."
        if context.current_tag_slugs
        else "No tags applied so far."
    )

    user = f"""You analyze sales conversations and keep a lead's summary, tags and structured insights up to date.

{summary_text}
{stage_text}
{tags_text}

### Conversation (chronological order, most recent part)
---
{transcript}
---

### Available catalog
- **Tags**: {json.dumps(tags, ensure_ascii=False)}
- **Structured insights**: {json.dumps(insights, ensure_ascii=False)}
- **Pipeline stages**: {json.dumps(stages, ensure_ascii=False)}

### Rules
1. Re-evaluate everything from scratch on every run.
2. Only use slugs present in the lists above.
3. Only suggest a stage change when there is clear evidence.
4. When there is not enough data for an item, return it empty.

### Response format (strict JSON, no extra text)
{{
  "summary": "concise summary",
  "tags": ["tag_slug"],
  "insights": {{
    "insight_slug": {{ "payload": {{}}, "confidence": 0.0, "expiresAt": "ISO8601" }}
  }},
  "stage": {{ "slug": "stage_slug or null", "confidence": 0.0 }}
}}

Make sure the JSON is valid and contains no comments."""

    return SYSTEM_PROMPT, user


# =============================================================================
# Response parsing and catalog validation
# =============================================================================

def parse_completion(content: Optional[str]) -> Optional[CompletionOutput]:
    """
    Decode the completion content.

    Returns None for anything that is not a JSON object; the caller treats
    that exactly like a failed call.
    """
    if not content:
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse completion response: {e}")
        return None
    if not isinstance(data, dict):
        logger.error(f"Completion response is not a JSON object: {type(data).__name__}")
        return None
    try:
        return CompletionOutput.model_validate(data)
    except ValidationError as e:
        logger.error(f"Unusable completion response: {e}")
        return None


def _confidence(value: Any) -> Optional[float]:
    number = to_finite_number(value)
    return clamp(number, 0.0, 1.0) if number is not None else None


def resolve_tag_selections(slugs: list[str], tags: list[TagOption]) -> list[TagOption]:
    by_slug = {tag.slug: tag for tag in tags}
    selections: list[TagOption] = []
    for slug in slugs:
        tag = by_slug.get(slug)
        if tag is None or tag in selections:
            continue
        selections.append(tag)
    return selections


def normalize_insight_value(value: Any) -> tuple[Any, Optional[float], Any]:
    """Split a returned insight into (payload, confidence, expires_at)."""
    if not isinstance(value, dict):
        return value, None, None
    payload = value.get("payload")
    if payload is None:
        payload = value
    return payload, _confidence(value.get("confidence")), parse_iso_datetime(value.get("expiresAt"))


def resolve_insight_selections(raw: dict[str, Any], definitions: list[InsightOption]) -> list[InsightSelection]:
    by_slug = {definition.slug: definition for definition in definitions}
    selections: list[InsightSelection] = []
    for slug, value in raw.items():
        definition = by_slug.get(slug)
        if definition is None:
            continue
        payload, confidence, expires_at = normalize_insight_value(value)
        selections.append(
            InsightSelection(
                definition_id=definition.id,
                slug=slug,
                payload=payload,
                confidence=confidence,
                expires_at=expires_at,
            )
        )
    return selections


def resolve_stage_suggestion(raw, stages: list[StageOption]) -> Optional[StageSuggestion]:
    if raw is None or raw.slug is None:
        return None
    stage = next((stage for stage in stages if stage.slug == raw.slug), None)
    if stage is None:
        return None
    confidence = _confidence(raw.confidence)
    return StageSuggestion(stage=stage, confidence=1.0 if confidence is None else confidence)


def validate_output(output: CompletionOutput, context: AnalysisContext) -> AnalysisOutcome:
    return AnalysisOutcome(
        summary=output.summary or None,
        tags=resolve_tag_selections(output.tags, context.tags),
        insights=resolve_insight_selections(output.insights, context.insights),
        stage=resolve_stage_suggestion(output.stage, context.stages),
    )


# =============================================================================
# Worker entry point
# =============================================================================

def _load(session_factory: Callable[[], Session], conversation_id: str) -> Optional[AnalysisContext]:
    with session_factory() as db:
        return load_context(db, conversation_id)


def _apply(session_factory: Callable[[], Session], context: AnalysisContext, outcome: AnalysisOutcome) -> None:
    with session_factory() as db:
        apply_analysis(db, context, outcome)


def _clear(session_factory: Callable[[], Session], conversation_id: str) -> None:
    with session_factory() as db:
        clear_needs_analysis(db, conversation_id)


async def analyze_conversation(
    conversation_id: str,
    completion: CompletionClient,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    """
    Run one analysis pass for a conversation.

    Leaves the conversation untouched (still flagged) when the completion
    endpoint is unavailable or returns something unusable.
    """
    log_extra = {"conversation_id": conversation_id}

    context = await asyncio.to_thread(_load, session_factory, conversation_id)
    if context is None:
        logger.warning("Conversation not found for analysis", extra=log_extra)
        record_analysis_outcome("skipped")
        return

    if not context.has_pending_messages and not context.needs_analysis:
        logger.debug("Nothing to analyze", extra=log_extra)
        record_analysis_outcome("skipped")
        return

    transcript = format_transcript(context.messages)
    if not transcript:
        await asyncio.to_thread(_clear, session_factory, conversation_id)
        record_analysis_outcome("no_content")
        return

    system, user = build_prompt(context, transcript)
    content = await completion.complete(system, user)
    output = parse_completion(content)
    if output is None:
        logger.warning("Analysis aborted, no usable completion", extra=log_extra)
        record_analysis_outcome("completion_failed")
        return

    outcome = validate_output(output, context)
    await asyncio.to_thread(_apply, session_factory, context, outcome)
    logger.info(
        "Analysis applied",
        extra={
            **log_extra,
            "tags": [tag.slug for tag in outcome.tags],
            "insights": [insight.slug for insight in outcome.insights],
            "stage": outcome.stage.stage.slug if outcome.stage else None,
        },
    )
    record_analysis_outcome("applied")
