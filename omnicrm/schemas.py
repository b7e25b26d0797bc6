"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook envelope models for incoming gateway events
- Response models for API responses
- The completion-output schema and the detached analysis context models
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Gateway Webhook Models
# =============================================================================

class WebhookMessagePayload(BaseModel):
    """
    The `payload` object of a gateway message event.

    Everything except `fromMe` is optional: events can arrive before the
    session is fully authenticated and still carry useful data. Unknown keys
    are kept so the raw audit log stores the full payload.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    chat_id: Optional[str] = Field(None, alias="chatId")
    from_id: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    timestamp: Any = None
    message_timestamp: Any = Field(None, alias="messageTimestamp")
    from_me: bool = Field(..., alias="fromMe")
    has_media: Any = Field(None, alias="hasMedia")
    body: Optional[str] = None
    participant: Optional[str] = None
    is_default_subgroup: Optional[bool] = Field(None, alias="isDefaultSubgroup")
    type: Optional[str] = None
    api_key: Optional[str] = Field(None, alias="apiKey")
    raw_data: Optional[dict[str, Any]] = Field(None, alias="_data")


class WebhookMe(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str


class WebhookEnvelope(BaseModel):
    """Message event envelope: `{session?, me?: {id}, payload}`."""
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    session: Optional[str] = None
    me: Optional[WebhookMe] = None
    payload: WebhookMessagePayload


class SessionStatusMe(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    push_name: Optional[str] = Field(None, alias="pushName")


class SessionStatusPayload(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def known_status(cls, v: str) -> str:
        if v not in ("STOPPED", "STARTING", "SCAN_QR_CODE", "WORKING", "FAILED"):
            raise ValueError(f"unknown session status: {v}")
        return v


class SessionStatusWebhook(BaseModel):
    """`{event: "session.status", session, me?, payload: {status}}`."""
    model_config = ConfigDict(extra="allow")

    event: str
    session: str
    me: Optional[SessionStatusMe] = None
    payload: SessionStatusPayload


# =============================================================================
# Response Models
# =============================================================================

class IngestResult(BaseModel):
    """
    Outcome of ingesting one webhook event.

    Either `skipped=True` with a reason code, or the ids of the stored message
    and its conversation.
    """
    skipped: bool = False
    reason: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def skip(cls, reason: str) -> "IngestResult":
        return cls(skipped=True, reason=reason)

    @classmethod
    def accepted(cls, conversation_id: str, message_id: str) -> "IngestResult":
        return cls(conversation_id=conversation_id, message_id=message_id)


class SessionStatusResponse(BaseModel):
    processed: bool = True
    event: str = "session.status"


class AnalyzeResponse(BaseModel):
    status: str = Field(default="scheduled", description="Operation status")
    conversation_id: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Completion Output
# =============================================================================

class StageOutput(BaseModel):
    slug: Optional[str] = None
    confidence: Any = None

    @field_validator("slug", mode="before")
    @classmethod
    def slug_must_be_string(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None


class CompletionOutput(BaseModel):
    """
    Expected JSON object from the completion endpoint.

    Wrongly-typed members degrade to empty values instead of failing the
    whole response; catalog validation happens later in analysis.
    """
    summary: str = ""
    tags: list[str] = Field(default_factory=list)
    insights: dict[str, Any] = Field(default_factory=dict)
    stage: Optional[StageOutput] = None

    @field_validator("summary", mode="before")
    @classmethod
    def coerce_summary(cls, v: Any) -> str:
        return v.strip() if isinstance(v, str) else ""

    @field_validator("tags", mode="before")
    @classmethod
    def coerce_tags(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, str)]

    @field_validator("insights", mode="before")
    @classmethod
    def coerce_insights(cls, v: Any) -> dict:
        return v if isinstance(v, dict) else {}

    @field_validator("stage", mode="before")
    @classmethod
    def coerce_stage(cls, v: Any) -> Optional[dict]:
        return v if isinstance(v, dict) else None


# =============================================================================
# Analysis Context (detached from the ORM session)
# =============================================================================

class MessageSnapshot(BaseModel):
    id: str
    direction: str
    content: Optional[str] = None
    has_media: bool = False
    sent_at: datetime
    requires_processing: bool = True


class TagOption(BaseModel):
    id: str
    slug: str
    name: str
    description: Optional[str] = None
    prompt_condition: Optional[str] = None


class InsightOption(BaseModel):
    id: str
    slug: str
    name: str
    description: Optional[str] = None
    prompt_instruction: Optional[str] = None
    json_schema: Optional[Any] = None


class StageOption(BaseModel):
    id: str
    slug: str
    name: str
    prompt_condition: Optional[str] = None
    auto_transition: bool = False


class AnalysisContext(BaseModel):
    conversation_id: str
    contact_id: str
    summary: Optional[str] = None
    needs_analysis: bool = True
    messages: list[MessageSnapshot] = Field(default_factory=list)
    tags: list[TagOption] = Field(default_factory=list)
    insights: list[InsightOption] = Field(default_factory=list)
    stages: list[StageOption] = Field(default_factory=list)
    current_stage_id: Optional[str] = None
    current_stage_slug: Optional[str] = None
    current_tag_slugs: list[str] = Field(default_factory=list)

    @property
    def has_pending_messages(self) -> bool:
        return any(message.requires_processing for message in self.messages)


class InsightSelection(BaseModel):
    definition_id: str
    slug: str
    payload: Any = None
    confidence: Optional[float] = None
    expires_at: Optional[datetime] = None


class StageSuggestion(BaseModel):
    stage: StageOption
    confidence: float


class AnalysisOutcome(BaseModel):
    """Catalog-validated completion output, ready to be applied."""
    summary: Optional[str] = None
    tags: list[TagOption] = Field(default_factory=list)
    insights: list[InsightSelection] = Field(default_factory=list)
    stage: Optional[StageSuggestion] = None
