"""create research request tables

Revision ID: 7e8f9a0b1c2d
Revises: 1a2b3c4d5e6f
Create Date: 2026-10-19 09:40:02.557310

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7e8f9a0b1c2d'
down_revision: Union[str, Sequence[str], None] = '1a2b3c4d5e6f'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


request_status = sa.Enum("PENDING", "RESEARCHING", "COMPLETED", "FAILED", name="requeststatus")


def upgrade() -> None:
    """Create research requests, agent memory and research reports."""
    op.create_table(
        "research_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("target_account", sa.String(), nullable=False),
        sa.Column("product_description", sa.Text(), nullable=True),
        sa.Column("territory_states", sa.JSON(), nullable=True),
        sa.Column("target_categories", sa.JSON(), nullable=True),
        sa.Column("competitors", sa.JSON(), nullable=True),
        sa.Column("additional_context", sa.Text(), nullable=True),
        sa.Column("status", request_status, nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("research_started_at", sa.DateTime(), nullable=True),
        sa.Column("research_completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_research_requests_user_id", "research_requests", ["user_id"])

    op.create_table(
        "agent_memory",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("research_requests.id"), nullable=False),
        sa.Column("memory_type", sa.String(length=32), nullable=False),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_agent_memory_request_id", "agent_memory", ["request_id"])

    op.create_table(
        "research_reports",
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("research_requests.id"), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("sources", sa.JSON(), nullable=True),
        sa.Column("generated_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    """Drop research request tables."""
    op.drop_table("research_reports")
    op.drop_index("ix_agent_memory_request_id", table_name="agent_memory")
    op.drop_table("agent_memory")
    op.drop_index("ix_research_requests_user_id", table_name="research_requests")
    op.drop_table("research_requests")
    request_status.drop(op.get_bind(), checkfirst=True)
