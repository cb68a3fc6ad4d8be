from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, false, func
from sqlalchemy.schema import Index, UniqueConstraint

from journeys.database import Base, JSONType


class TriggerEvent(Base):
    """Inbox row for one domain event awaiting dispatch."""

    __tablename__ = "trigger_events"

    id = Column(Integer, primary_key=True)

    event_type = Column(String, nullable=False, index=True)
    contact_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False, index=True)
    edition_id = Column(String, nullable=True)

    idempotency_key = Column(String, nullable=False)

    payload = Column(JSONType, nullable=False)

    processed = Column(Boolean, nullable=False, server_default=false(), default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, server_default="0", default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "event_id",
            "event_type",
            "idempotency_key",
            name="uq_trigger_events_idempotency",
        ),
        Index("ix_trigger_events_due", "processed", "next_attempt_at"),
    )
