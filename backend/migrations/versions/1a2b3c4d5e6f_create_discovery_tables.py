"""create discovery tables

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 09:12:44.318204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '1a2b3c4d5e6f'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


session_status = sa.Enum("CREATED", "PROSPECTS_DISCOVERED", name="sessionstatus")
dossier_status = sa.Enum("QUEUED", "RESEARCHING", "READY", "FAILED", name="dossierstatus")
job_status = sa.Enum("QUEUED", "RUNNING", "DONE", "FAILED", name="jobstatus")


def upgrade() -> None:
    """Create discovery sessions, prospect dossiers and dossier jobs."""
    op.create_table(
        "discovery_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("criteria", sa.JSON(), nullable=False),
        sa.Column("criteria_hash", sa.String(length=64), nullable=False),
        sa.Column("status", session_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_discovery_sessions_user_id", "discovery_sessions", ["user_id"])
    op.create_index("ix_discovery_sessions_criteria_hash", "discovery_sessions", ["criteria_hash"])

    op.create_table(
        "prospect_dossiers",
        sa.Column("session_id", sa.Uuid(), sa.ForeignKey("discovery_sessions.id"), primary_key=True),
        sa.Column("prospect_key", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("dossier", sa.JSON(), nullable=True),
        sa.Column("status", dossier_status, nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "research_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.Uuid(), sa.ForeignKey("discovery_sessions.id"), nullable=False),
        sa.Column("prospect_key", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(length=32), nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_research_jobs_session_id", "research_jobs", ["session_id"])


def downgrade() -> None:
    """Drop discovery tables."""
    op.drop_index("ix_research_jobs_session_id", table_name="research_jobs")
    op.drop_table("research_jobs")
    op.drop_table("prospect_dossiers")
    op.drop_index("ix_discovery_sessions_criteria_hash", table_name="discovery_sessions")
    op.drop_index("ix_discovery_sessions_user_id", table_name="discovery_sessions")
    op.drop_table("discovery_sessions")
    job_status.drop(op.get_bind(), checkfirst=True)
    dossier_status.drop(op.get_bind(), checkfirst=True)
    session_status.drop(op.get_bind(), checkfirst=True)
