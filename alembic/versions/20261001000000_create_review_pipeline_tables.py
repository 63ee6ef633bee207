"""Create review pipeline tables: reviews, findings, remediations, step checkpoints, approval events.

Revision ID: 20261001000000
Revises:
Create Date: 2026-10-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261001000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "reviews",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("language", sa.String(length=64), nullable=False, server_default="auto"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("current_stage", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("run_handle", sa.String(length=64), nullable=True),
        sa.Column("total_findings_raw", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_findings_filtered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("noise_reduction_percent", sa.Float(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("approval_outcome", sa.String(length=32), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_handle"),
    )
    op.create_index(op.f("ix_reviews_user_id"), "reviews", ["user_id"], unique=False)
    op.create_index(op.f("ix_reviews_status"), "reviews", ["status"], unique=False)

    op.create_table(
        "findings",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("review_id", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("severity", sa.String(length=32), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("location_start_line", sa.Integer(), nullable=False),
        sa.Column("location_end_line", sa.Integer(), nullable=False),
        sa.Column("location_snippet", sa.Text(), nullable=False, server_default=""),
        sa.Column("cwe_id", sa.String(length=64), nullable=True),
        sa.Column("owasp_category", sa.String(length=255), nullable=True),
        sa.Column("is_reachable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_user_input_path", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("data_flow_path", JSON_TYPE, nullable=False),
        sa.Column("sanitizers_in_path", JSON_TYPE, nullable=False),
        sa.Column("false_positive_reason", sa.Text(), nullable=True),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_findings_review_id"), "findings", ["review_id"], unique=False)
    op.create_index(op.f("ix_findings_is_reachable"), "findings", ["is_reachable"], unique=False)

    op.create_table(
        "remediations",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("finding_id", sa.String(length=255), nullable=False),
        sa.Column("review_id", sa.String(length=64), nullable=False),
        sa.Column("original_code", sa.Text(), nullable=False),
        sa.Column("fixed_code", sa.Text(), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=False),
        sa.Column("diff_hunks", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["finding_id"], ["findings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_remediations_finding_id"), "remediations", ["finding_id"], unique=False)
    op.create_index(op.f("ix_remediations_review_id"), "remediations", ["review_id"], unique=False)

    op.create_table(
        "step_checkpoints",
        sa.Column("run_handle", sa.String(length=64), nullable=False),
        sa.Column("step_name", sa.String(length=128), nullable=False),
        sa.Column("output", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("run_handle", "step_name"),
    )

    op.create_table(
        "approval_events",
        sa.Column("run_handle", sa.String(length=64), nullable=False),
        sa.Column("approved", sa.Boolean(), nullable=False),
        sa.Column("finding_ids", JSON_TYPE, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("run_handle"),
    )


def downgrade() -> None:
    op.drop_table("approval_events")
    op.drop_table("step_checkpoints")
    op.drop_index(op.f("ix_remediations_review_id"), table_name="remediations")
    op.drop_index(op.f("ix_remediations_finding_id"), table_name="remediations")
    op.drop_table("remediations")
    op.drop_index(op.f("ix_findings_is_reachable"), table_name="findings")
    op.drop_index(op.f("ix_findings_review_id"), table_name="findings")
    op.drop_table("findings")
    op.drop_index(op.f("ix_reviews_status"), table_name="reviews")
    op.drop_index(op.f("ix_reviews_user_id"), table_name="reviews")
    op.drop_table("reviews")
