"""SQLAlchemy ORM models."""

from app.models.base import Base
from app.models.checkpoint import ApprovalEventRecord, StepCheckpoint
from app.models.finding import Finding
from app.models.remediation import Remediation
from app.models.review import Review

__all__ = [
    "ApprovalEventRecord",
    "Base",
    "Finding",
    "Remediation",
    "Review",
    "StepCheckpoint",
]
