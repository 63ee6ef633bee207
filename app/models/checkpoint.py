"""ORM models for durable pipeline execution: step checkpoints and approval events."""

from sqlalchemy import Boolean, Column, DateTime, String, func

from app.models.base import Base, JSONType


class StepCheckpoint(Base):
    """
    Recorded output of one completed pipeline step.

    Primary key (run_handle, step_name) makes the first write win; a resumed run
    reads the stored output instead of executing the step again.
    """

    __tablename__ = "step_checkpoints"

    run_handle = Column(String(64), primary_key=True)
    step_name = Column(String(128), primary_key=True)
    output = Column(JSONType, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class ApprovalEventRecord(Base):
    """First approval decision delivered to a run handle; later deliveries are ignored."""

    __tablename__ = "approval_events"

    run_handle = Column(String(64), primary_key=True)
    approved = Column(Boolean, nullable=False)
    finding_ids = Column(JSONType, nullable=False, default=list)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
