"""ORM model for one security review (one pipeline run over one code submission)."""

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, func

from app.models.base import Base


class Review(Base):
    """
    Review record owned by the pipeline orchestrator.

    status and current_stage together locate the run on the pipeline state machine;
    run_handle addresses the checkpointed execution for approval event delivery.
    Statistics columns are overwritten from the persisted findings on every store.
    """

    __tablename__ = "reviews"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    code = Column(Text, nullable=False)
    language = Column(String(64), nullable=False, default="auto")
    status = Column(String(32), nullable=False, default="pending", index=True)
    current_stage = Column(String(64), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    run_handle = Column(String(64), nullable=True, unique=True)
    total_findings_raw = Column(Integer, nullable=False, default=0)
    total_findings_filtered = Column(Integer, nullable=False, default=0)
    noise_reduction_percent = Column(Float, nullable=False, default=0.0)
    error = Column(Text, nullable=True)
    approval_outcome = Column(String(32), nullable=True)
