from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, false, func
from sqlalchemy.schema import Index

from journeys.database import Base, JSONType

LOG_STATUSES = ("pending", "executing", "completed", "failed", "skipped")
OPEN_LOG_STATUSES = ("pending", "executing")


class ExecutionLogEntry(Base):
    __tablename__ = "execution_log"

    id = Column(Integer, primary_key=True)

    automation_id = Column(String, ForeignKey("automations.id"), nullable=False, index=True)
    enrollment_id = Column(String, ForeignKey("enrollments.id"), nullable=False, index=True)
    contact_id = Column(String, nullable=False, index=True)

    step_id = Column(String(50), nullable=False)
    step_type = Column(String, nullable=False)

    status = Column(String, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, server_default="0", default=0)

    idempotency_key = Column(String, nullable=True, index=True)
    is_recovery = Column(Boolean, nullable=False, server_default=false(), default=False)

    input = Column(JSONType, nullable=True)
    output = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)

    executed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'executing', 'completed', 'failed', 'skipped')",
            name="ck_execution_log_status",
        ),
        Index("ix_execution_log_enrollment_id_id", "enrollment_id", "id"),
    )
