"""discovery_checklist_schema

Creates the workshop discovery schema:
  - workshops, discovery_sessions        - engagement context
  - checklist_items                      - missing/obtained items per session
  - evidence_records                     - append-only evidence ledger
  - findings                             - off-checklist findings
  - session_locks                        - one lease row per locked session
  - reanalysis_runs                      - full-corpus pass summaries
  - ai_usage_logs, audit_logs            - gateway usage and lifecycle trail

Tables are created only when missing so databases bootstrapped with
db.create_all() can be stamped and upgraded.

Revision ID: 5e1a9c0d2b71
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1a9c0d2b71'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    if "workshops" not in existing:
        op.create_table(
            "workshops",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("mission_statement", sa.Text(), nullable=True),
            sa.Column("industry_context", sa.Text(), nullable=True),
            sa.Column("module", sa.String(length=10), nullable=True,
                      comment="SAP module code: MM, FICO, SD, PP, WM, QM, PM"),
            _ts("created_at"),
            _ts("updated_at"),
        )

    if "discovery_sessions" not in existing:
        op.create_table(
            "discovery_sessions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workshop_id", sa.Integer(),
                      sa.ForeignKey("workshops.id", ondelete="CASCADE"), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft",
                      comment="draft | active | completed"),
            sa.Column("topics", sa.Text(), nullable=True),
            sa.Column("checklist_generated", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_ds_workshop", "discovery_sessions", ["workshop_id"])

    if "checklist_items" not in existing:
        op.create_table(
            "checklist_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(),
                      sa.ForeignKey("discovery_sessions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("item_number", sa.Integer(), nullable=False),
            sa.Column("text", sa.Text(), nullable=False),
            sa.Column("importance", sa.String(length=20), nullable=False, server_default="important"),
            sa.Column("category", sa.String(length=100), nullable=False, server_default="General"),
            sa.Column("suggested_question", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="missing"),
            sa.Column("obtained_text", sa.Text(), nullable=True),
            sa.Column("confidence", sa.String(length=10), nullable=True),
            sa.Column("obtained_source", sa.String(length=20), nullable=True),
            _ts("obtained_at", nullable=True),
            sa.Column("last_reset_reason", sa.Text(), nullable=True),
            _ts("last_reset_at", nullable=True),
            _ts("created_at"),
            sa.UniqueConstraint("session_id", "item_number", name="uq_ci_session_number"),
            sa.CheckConstraint(
                "(status = 'obtained' AND obtained_text IS NOT NULL AND confidence IS NOT NULL"
                " AND obtained_source IS NOT NULL AND obtained_at IS NOT NULL)"
                " OR (status = 'missing' AND obtained_text IS NULL AND confidence IS NULL"
                " AND obtained_source IS NULL AND obtained_at IS NULL)",
                name="ck_ci_obtained_fields",
            ),
        )
        op.create_index("ix_checklist_items_session_id", "checklist_items", ["session_id"])
        op.create_index("idx_ci_session_status", "checklist_items", ["session_id", "status"])

    if "evidence_records" not in existing:
        op.create_table(
            "evidence_records",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(),
                      sa.ForeignKey("discovery_sessions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("sequence_index", sa.Integer(), nullable=False),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="audio"),
            sa.Column("label", sa.String(length=255), nullable=True),
            sa.Column("raw_text", sa.Text(), nullable=False),
            sa.Column("content_hash", sa.String(length=64), nullable=False),
            _ts("processed_at", nullable=True),
            _ts("created_at"),
            sa.UniqueConstraint("session_id", "sequence_index", name="uq_er_session_seq"),
        )
        op.create_index("ix_evidence_records_session_id", "evidence_records", ["session_id"])
        op.create_index("idx_er_session_hash", "evidence_records", ["session_id", "content_hash"])

    if "findings" not in existing:
        op.create_table(
            "findings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(),
                      sa.ForeignKey("discovery_sessions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("evidence_id", sa.Integer(),
                      sa.ForeignKey("evidence_records.id", ondelete="SET NULL"), nullable=True),
            sa.Column("origin", sa.String(length=20), nullable=False, server_default="incremental"),
            sa.Column("topic", sa.String(length=300), nullable=False),
            sa.Column("finding_type", sa.String(length=40), nullable=False, server_default="general"),
            sa.Column("risk_level", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("analysis", sa.Text(), nullable=True),
            sa.Column("recommendation", sa.Text(), nullable=True),
            sa.Column("best_practice", sa.Text(), nullable=True),
            sa.Column("source_quote", sa.Text(), nullable=True),
            _ts("created_at"),
        )
        op.create_index("ix_findings_session_id", "findings", ["session_id"])
        op.create_index("idx_fd_session_risk", "findings", ["session_id", "risk_level"])

    if "session_locks" not in existing:
        op.create_table(
            "session_locks",
            sa.Column("session_id", sa.Integer(),
                      sa.ForeignKey("discovery_sessions.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("holder_id", sa.String(length=150), nullable=False),
            _ts("acquired_at"),
            sa.Column("lease_duration_seconds", sa.Integer(), nullable=False, server_default="120"),
        )

    if "reanalysis_runs" not in existing:
        op.create_table(
            "reanalysis_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(),
                      sa.ForeignKey("discovery_sessions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("requested_by", sa.String(length=150), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="completed"),
            *[
                sa.Column(name, sa.Integer(), nullable=False, server_default="0")
                for name in (
                    "items_obtained", "items_reset", "findings_recorded", "dropped_proposals",
                    "obtained_total", "missing_total", "evidence_records", "evidence_chars",
                )
            ],
            sa.Column("truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("truncated_chars", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_message", sa.Text(), nullable=True),
            _ts("created_at"),
        )
        op.create_index("ix_reanalysis_runs_session_id", "reanalysis_runs", ["session_id"])

    if "ai_usage_logs" not in existing:
        op.create_table(
            "ai_usage_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=30), nullable=False),
            sa.Column("model", sa.String(length=80), nullable=False),
            sa.Column("prompt_tokens", sa.Integer(), nullable=True),
            sa.Column("completion_tokens", sa.Integer(), nullable=True),
            sa.Column("total_tokens", sa.Integer(), nullable=True),
            sa.Column("cost_usd", sa.Float(), nullable=True),
            sa.Column("latency_ms", sa.Integer(), nullable=True),
            sa.Column("user", sa.String(length=150), nullable=True),
            sa.Column("purpose", sa.String(length=100), nullable=True),
            sa.Column("session_id", sa.Integer(),
                      sa.ForeignKey("discovery_sessions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("success", sa.Boolean(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            _ts("created_at", nullable=True),
        )

    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(),
                      sa.ForeignKey("discovery_sessions.id", ondelete="CASCADE"), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("diff_json", sa.Text(), nullable=True),
            _ts("timestamp"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_session", "audit_logs", ["session_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "audit_logs", "ai_usage_logs", "reanalysis_runs", "session_locks",
        "findings", "evidence_records", "checklist_items",
        "discovery_sessions", "workshops",
    ):
        op.drop_table(table)
