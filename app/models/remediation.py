"""ORM model for generated remediations (immutable once written)."""

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from app.models.base import Base, JSONType


class Remediation(Base):
    """Generated fix for one approved, reachable finding."""

    __tablename__ = "remediations"

    id = Column(String(255), primary_key=True)
    finding_id = Column(
        String(255),
        ForeignKey("findings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    review_id = Column(
        String(64),
        ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_code = Column(Text, nullable=False)
    fixed_code = Column(Text, nullable=False)
    explanation = Column(Text, nullable=False)
    diff_hunks = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False)
