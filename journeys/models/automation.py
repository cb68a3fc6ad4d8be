import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import relationship
from sqlalchemy.schema import Index, UniqueConstraint

from journeys.database import Base, JSONType

TRIGGER_TYPES = (
    "contact_created",
    "ticket_purchased",
    "checked_in",
    "tag_added",
    "consent_given",
    "scheduled_date",
    "talk_submitted",
    "talk_accepted",
    "talk_rejected",
)

AUTOMATION_STATUSES = ("draft", "active", "paused")

REENTRY_POLICIES = ("one_shot", "reenterable")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Automation(Base):
    __tablename__ = "automations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    event_id = Column(String, nullable=False, index=True)
    edition_id = Column(String, nullable=True, index=True)

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    trigger_type = Column(String, nullable=False, index=True)
    trigger_config = Column(JSONType, nullable=False)

    status = Column(String, nullable=False, server_default="draft", default="draft", index=True)
    reentry_policy = Column(String, nullable=False, server_default="one_shot", default="one_shot")

    current_version = Column(Integer, nullable=True)

    enrollment_count = Column(Integer, nullable=False, server_default="0", default=0)
    completed_count = Column(Integer, nullable=False, server_default="0", default=0)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    versions = relationship(
        "AutomationVersion",
        back_populates="automation",
        order_by="AutomationVersion.version",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'active', 'paused')", name="ck_automations_status"),
        CheckConstraint("reentry_policy IN ('one_shot', 'reenterable')", name="ck_automations_reentry_policy"),
        CheckConstraint("enrollment_count >= 0 AND completed_count >= 0", name="ck_automations_counters_nonnegative"),
        Index("ix_automations_dispatch", "event_id", "status", "trigger_type"),
    )

    def version_row(self, version=None):
        wanted = self.current_version if version is None else int(version)
        for row in self.versions:
            if row.version == wanted:
                return row
        return None

    @property
    def start_step_id(self):
        row = self.version_row()
        return None if row is None else row.start_step_id


class AutomationVersion(Base):
    """Immutable snapshot of an automation's step graph."""

    __tablename__ = "automation_versions"

    id = Column(Integer, primary_key=True)

    automation_id = Column(String, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    start_step_id = Column(String(50), nullable=False)
    steps = Column(JSONType, nullable=False)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), default=_utcnow)

    automation = relationship("Automation", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("automation_id", "version", name="uq_automation_versions_version"),
    )
