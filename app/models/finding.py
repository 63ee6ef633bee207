"""ORM model for persisted findings (raw findings annotated with a reachability verdict)."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from app.models.base import Base, JSONType


class Finding(Base):
    """
    One finding per review, keyed by its globally unique id.

    Written with upsert semantics so retried persistence replaces rather than duplicates.
    """

    __tablename__ = "findings"

    id = Column(String(255), primary_key=True)
    review_id = Column(
        String(64),
        ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = Column(String(32), nullable=False)
    severity = Column(String(32), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    location_start_line = Column(Integer, nullable=False)
    location_end_line = Column(Integer, nullable=False)
    location_snippet = Column(Text, nullable=False, default="")
    cwe_id = Column(String(64), nullable=True)
    owasp_category = Column(String(255), nullable=True)
    is_reachable = Column(Boolean, nullable=False, default=False, index=True)
    has_user_input_path = Column(Boolean, nullable=False, default=False)
    data_flow_path = Column(JSONType, nullable=False, default=list)
    sanitizers_in_path = Column(JSONType, nullable=False, default=list)
    false_positive_reason = Column(Text, nullable=True)
    approved = Column(Boolean, nullable=False, default=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
