import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.schema import Index, UniqueConstraint

from journeys.database import Base

ENROLLMENT_STATUSES = ("active", "completed", "exited", "failed")
TERMINAL_STATUSES = ("completed", "exited", "failed")


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    automation_id = Column(String, ForeignKey("automations.id"), nullable=False, index=True)
    automation_version = Column(Integer, nullable=False)

    event_id = Column(String, nullable=False, index=True)
    contact_id = Column(String, nullable=False, index=True)

    # 0 for the first enrollment of an (automation, contact) pair; re-entry bumps it.
    cycle = Column(Integer, nullable=False, server_default="0", default=0)
    trigger_event_key = Column(String, nullable=True)

    current_step_id = Column(String(50), nullable=True)
    status = Column(String, nullable=False, server_default="active", default="active", index=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    exited_at = Column(DateTime(timezone=True), nullable=True)
    exit_reason = Column(Text, nullable=True)

    wait_until = Column(DateTime(timezone=True), nullable=True)

    claim_token = Column(String, nullable=True)
    claim_expires_at = Column(DateTime(timezone=True), nullable=True)
    lock_version = Column(Integer, nullable=False, server_default="0", default=0)

    steps_executed = Column(Integer, nullable=False, server_default="0", default=0)

    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("automation_id", "contact_id", "cycle", name="uq_enrollments_automation_contact_cycle"),
        UniqueConstraint("automation_id", "trigger_event_key", name="uq_enrollments_trigger_event"),
        CheckConstraint(
            "status IN ('active', 'completed', 'exited', 'failed')",
            name="ck_enrollments_status",
        ),
        CheckConstraint(
            "NOT (completed_at IS NOT NULL AND exited_at IS NOT NULL)",
            name="ck_enrollments_single_terminal_timestamp",
        ),
        Index("ix_enrollments_ready", "status", "wait_until"),
        Index("ix_enrollments_automation_status", "automation_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
