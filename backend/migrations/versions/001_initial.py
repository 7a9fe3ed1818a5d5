"""Initial ERIS schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Creates the ingestion and offender registry tables:
- ingestion_sessions: Session state machine and counters
- processing_logs: One audit row per processed page
- staging_records: In-flight records per session
- offenders: Canonical offender registry
- enforcement_records: Regulator cases and notices
- review_cases: Ambiguous identity matches awaiting review
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]


def upgrade() -> None:
    # =========================
    # Ingestion Sessions
    # =========================
    op.create_table(
        "ingestion_sessions",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("strategy", sa.String(20), nullable=False),
        sa.Column("range_params", sa.JSON, nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("found", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("existing", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer, nullable=False, server_default="0"),
        sa.Column("current_page", sa.Integer, nullable=True),
        sa.Column("pages_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("log_output", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'stopped')",
            name="ck_ingestion_sessions_status",
        ),
    )
    op.create_index("ix_ingestion_sessions_source", "ingestion_sessions", ["source"])
    op.create_index("ix_ingestion_sessions_status", "ingestion_sessions", ["status"])

    # =========================
    # Processing Logs
    # =========================
    op.create_table(
        "processing_logs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "session_id",
            sa.Uuid,
            sa.ForeignKey(
                "ingestion_sessions.id",
                ondelete="CASCADE",
                name="fk_processing_logs_session_id_ingestion_sessions",
            ),
            nullable=False,
        ),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("page", sa.Integer, nullable=False),
        sa.Column("items_found", sa.Integer, nullable=False, server_default="0"),
        sa.Column("items_created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("items_updated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("items_existing", sa.Integer, nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors", sa.JSON, nullable=False),
        sa.Column("scraped_items", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_processing_logs_session_id", "processing_logs", ["session_id"])

    # =========================
    # Staging Records
    # =========================
    op.create_table(
        "staging_records",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "session_id",
            sa.Uuid,
            sa.ForeignKey(
                "ingestion_sessions.id",
                ondelete="CASCADE",
                name="fk_staging_records_session_id_ingestion_sessions",
            ),
            nullable=False,
        ),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("source_record_id", sa.String(100), nullable=False),
        sa.Column("page", sa.Integer, nullable=False),
        sa.Column("offender_name", sa.String(500), nullable=True),
        sa.Column("processing_status", sa.String(32), nullable=False, server_default="fetching"),
        sa.Column("persistence_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("enforcement_record_id", sa.Uuid, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "session_id",
            "source_record_id",
            "page",
            name="uq_staging_records_session_id_source_record_id_page",
        ),
    )
    op.create_index("ix_staging_records_session_id", "staging_records", ["session_id"])

    # =========================
    # Offenders
    # =========================
    op.create_table(
        "offenders",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("normalized_name", sa.String(500), nullable=False),
        sa.Column("postcode_key", sa.String(10), nullable=False, server_default=""),
        sa.Column("address", sa.Text, nullable=True),
        sa.Column("town", sa.String(100), nullable=True),
        sa.Column("county", sa.String(100), nullable=True),
        sa.Column("postcode", sa.String(10), nullable=True),
        sa.Column("company_number", sa.String(20), nullable=True),
        sa.Column("business_type", sa.String(32), nullable=False, server_default="other"),
        sa.Column("agencies", sa.JSON, nullable=False),
        sa.Column("total_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_cases", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_notices", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_fines", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("first_action_date", sa.Date, nullable=True),
        sa.Column("last_action_date", sa.Date, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "normalized_name",
            "postcode_key",
            name="uq_offenders_normalized_name_postcode_key",
        ),
    )
    op.create_index("ix_offenders_normalized_name", "offenders", ["normalized_name"])
    op.create_index("ix_offenders_company_number", "offenders", ["company_number"])

    # =========================
    # Enforcement Records
    # =========================
    op.create_table(
        "enforcement_records",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("regulator_id", sa.String(100), nullable=False),
        sa.Column("record_type", sa.String(32), nullable=False, server_default="case"),
        sa.Column("offender_name", sa.String(500), nullable=False),
        sa.Column("offender_address", sa.Text, nullable=True),
        sa.Column("offender_postcode", sa.String(10), nullable=True),
        sa.Column("company_number", sa.String(20), nullable=True),
        sa.Column("action_date", sa.Date, nullable=True),
        sa.Column("fine", sa.Numeric(14, 2), nullable=True),
        sa.Column("costs", sa.Numeric(14, 2), nullable=True),
        sa.Column("result", sa.String(200), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("legislation", sa.Text, nullable=True),
        sa.Column("url", sa.String(1000), nullable=True),
        sa.Column(
            "offender_id",
            sa.Uuid,
            sa.ForeignKey(
                "offenders.id",
                ondelete="SET NULL",
                name="fk_enforcement_records_offender_id_offenders",
            ),
            nullable=True,
        ),
        sa.Column("link_status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("match_tier", sa.String(32), nullable=True),
        sa.Column("match_score", sa.Float, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "source",
            "regulator_id",
            name="uq_enforcement_records_source_regulator_id",
        ),
        sa.CheckConstraint(
            "link_status IN ('none', 'provisional', 'final')",
            name="ck_enforcement_records_link_status",
        ),
    )
    op.create_index("ix_enforcement_records_offender_id", "enforcement_records", ["offender_id"])

    # =========================
    # Review Cases
    # =========================
    op.create_table(
        "review_cases",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("regulator_id", sa.String(100), nullable=False),
        sa.Column("staging_record_id", sa.Uuid, nullable=True),
        sa.Column(
            "enforcement_record_id",
            sa.Uuid,
            sa.ForeignKey(
                "enforcement_records.id",
                ondelete="CASCADE",
                name="fk_review_cases_enforcement_record_id_enforcement_records",
            ),
            nullable=True,
        ),
        sa.Column("offender_name", sa.String(500), nullable=False),
        sa.Column("candidates", sa.JSON, nullable=False),
        sa.Column("best_score", sa.Float, nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("resolved_entity_ref", sa.String(100), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "source",
            "regulator_id",
            name="uq_review_cases_source_regulator_id",
        ),
    )
    op.create_index("ix_review_cases_status", "review_cases", ["status"])


def downgrade() -> None:
    # Drop tables in reverse dependency order
    op.drop_table("review_cases")
    op.drop_table("enforcement_records")
    op.drop_table("offenders")
    op.drop_table("staging_records")
    op.drop_table("processing_logs")
    op.drop_table("ingestion_sessions")
