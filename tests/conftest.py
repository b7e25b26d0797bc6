"""
Pytest configuration and shared fixtures.

Environment variables are set here before any omnicrm import so the cached
settings, engine and app are built against the test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_omnicrm.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
# Analysis stays disabled unless a test wires a fake completion client
os.environ["COMPLETION_API_KEY"] = ""

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from omnicrm.config import get_settings
get_settings.cache_clear()

from omnicrm import models  # noqa: E402,F401
from omnicrm.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="function")
def db():
    """Fresh schema and a session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def operation(db):
    """A tenant with a small tag/insight/stage catalog."""
    op = models.Operation(name="Acme Sales")
    db.add(op)
    db.flush()

    db.add_all([
        models.Tag(operation_id=op.id, slug="hot_lead", name="Hot lead", description="Ready to buy"),
        models.Tag(operation_id=op.id, slug="price_sensitive", name="Price sensitive"),
        models.Tag(operation_id=op.id, slug="retired", name="Retired tag", is_active=False),
        models.InsightDefinition(
            operation_id=op.id,
            slug="budget",
            name="Budget",
            prompt_instruction="Estimated budget in BRL",
            schema={"type": "object", "properties": {"amount": {"type": "number"}}},
        ),
        models.InsightDefinition(operation_id=op.id, slug="decision_maker", name="Decision maker"),
        models.Stage(operation_id=op.id, slug="prospect", name="Prospect", order=0),
        models.Stage(operation_id=op.id, slug="demo", name="Demo", order=1, auto_transition=True),
        models.Stage(operation_id=op.id, slug="negotiation", name="Negotiation", order=2),
    ])
    db.commit()
    return op


@pytest.fixture
def channel(db, operation):
    """A claimed WhatsApp channel with a known number and gateway session."""
    ch = models.Channel(
        name="Sales WhatsApp",
        type=models.ChannelType.WHATSAPP,
        status=models.ChannelStatus.WORKING,
        external_identifier="5511888880000",
        operation_id=operation.id,
    )
    db.add(ch)
    db.flush()
    db.add(models.WhatsAppChannel(channel_id=ch.id, session_name="sales"))
    db.commit()
    return ch
