"""Initial reply detection schema.

Revision ID: 001
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_TS = sa.DateTime(timezone=True)
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_ACTIVE_SYNC = "job_type = 'history_sync' AND status NOT IN ('verified', 'dead', 'cancelled')"


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("company_name", sa.String(255), nullable=True),
        sa.Column("created_at", _TS, nullable=False),
    )
    op.create_index("ix_contacts_tenant_id", "contacts", ["tenant_id"])

    op.create_table(
        "contact_aliases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "contact_id",
            sa.Integer(),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("source", sa.String(32), nullable=False, server_default="manual"),
        sa.Column("created_at", _TS, nullable=False),
        sa.UniqueConstraint("contact_id", "email", name="uq_contact_aliases_contact_email"),
    )
    op.create_index("ix_contact_aliases_contact_id", "contact_aliases", ["contact_id"])

    op.create_table(
        "outbound_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column(
            "contact_id",
            sa.Integer(),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("mailbox_address", sa.String(320), nullable=False),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("provider_thread_id", sa.String(255), nullable=True),
        sa.Column("rfc822_message_id", sa.String(998), nullable=True),
        sa.Column("subject", sa.String(998), nullable=False, server_default=""),
        sa.Column("sent_at", _TS, nullable=False),
        sa.Column("reply_received", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", _TS, nullable=True),
        sa.Column("created_at", _TS, nullable=False),
    )
    op.create_index("ix_outbound_messages_tenant_id", "outbound_messages", ["tenant_id"])
    op.create_index("ix_outbound_messages_contact_id", "outbound_messages", ["contact_id"])
    op.create_index(
        "ix_outbound_messages_sent_reply", "outbound_messages", ["sent_at", "reply_received"]
    )
    op.create_index(
        "ix_outbound_messages_mailbox", "outbound_messages", ["provider", "mailbox_address"]
    )

    op.create_table(
        "detection_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column(
            "outbound_message_id",
            sa.Integer(),
            sa.ForeignKey("outbound_messages.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "contact_id",
            sa.Integer(),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("mailbox_address", sa.String(320), nullable=False),
        sa.Column("scheduled_for", _TS, nullable=False),
        sa.Column("started_at", _TS, nullable=True),
        sa.Column("completed_at", _TS, nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("next_retry_at", _TS, nullable=True),
        sa.Column("layers_executed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("layers_healthy", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quorum_met", sa.Boolean(), nullable=True),
        sa.Column("reply_found", sa.Boolean(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", _JSON, nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "superseded_job_id",
            sa.Integer(),
            sa.ForeignKey("detection_jobs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("updated_at", _TS, nullable=False),
    )
    # At most one non-terminal job per outbound message
    op.create_index(
        "uq_detection_jobs_active_message",
        "detection_jobs",
        ["outbound_message_id"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('verified', 'dead', 'cancelled')"),
        sqlite_where=sa.text("status NOT IN ('verified', 'dead', 'cancelled')"),
    )
    # At most one non-terminal history sync per mailbox
    op.create_index(
        "uq_detection_jobs_active_history_sync",
        "detection_jobs",
        ["provider", "mailbox_address"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_SYNC),
        sqlite_where=sa.text(_ACTIVE_SYNC),
    )
    op.create_index(
        "ix_detection_jobs_status_scheduled", "detection_jobs", ["status", "scheduled_for"]
    )
    op.create_index("ix_detection_jobs_status_priority", "detection_jobs", ["status", "priority"])
    op.create_index("ix_detection_jobs_tenant_status", "detection_jobs", ["tenant_id", "status"])

    op.create_table(
        "detection_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("detection_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("run_number", sa.Integer(), nullable=False),
        sa.Column("mailbox_address", sa.String(320), nullable=True),
        sa.Column("started_at", _TS, nullable=False),
        sa.Column("completed_at", _TS, nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("from_status", sa.String(20), nullable=False),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("layer_results", _JSON, nullable=True),
        sa.Column("quorum_result", _JSON, nullable=True),
        sa.Column("reply_found", sa.Boolean(), nullable=True),
        sa.Column("reply_message_id", sa.String(255), nullable=True),
        sa.Column("reply_persisted", sa.Boolean(), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", _TS, nullable=False),
        sa.UniqueConstraint("job_id", "run_number", name="uq_detection_runs_job_run_number"),
    )
    op.create_index("ix_detection_runs_job_id", "detection_runs", ["job_id"])
    op.create_index("ix_detection_runs_mailbox_address", "detection_runs", ["mailbox_address"])
    op.create_index("ix_detection_runs_outcome", "detection_runs", ["outcome"])

    op.create_table(
        "replies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column(
            "outbound_message_id",
            sa.Integer(),
            sa.ForeignKey("outbound_messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider_message_id", sa.String(255), nullable=False, unique=True),
        sa.Column("provider_thread_id", sa.String(255), nullable=True),
        sa.Column("from_address", sa.String(320), nullable=False),
        sa.Column("subject", sa.String(998), nullable=True),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("received_at", _TS, nullable=False),
        sa.Column("detected_by", sa.String(64), nullable=False),
        sa.Column("detected_alias", sa.String(320), nullable=True),
        sa.Column("created_at", _TS, nullable=False),
    )
    op.create_index("ix_replies_tenant_id", "replies", ["tenant_id"])
    op.create_index("ix_replies_outbound_message_id", "replies", ["outbound_message_id"])

    op.create_table(
        "mailbox_checkpoints",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("mailbox_address", sa.String(320), nullable=False),
        sa.Column("last_position", sa.String(255), nullable=True),
        sa.Column("last_checked_at", _TS, nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("consecutive_errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("updated_at", _TS, nullable=False),
        sa.UniqueConstraint("provider", "mailbox_address", name="uq_mailbox_checkpoints_mailbox"),
    )
    op.create_index("ix_mailbox_checkpoints_tenant_id", "mailbox_checkpoints", ["tenant_id"])

    op.create_table(
        "history_candidates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("mailbox_address", sa.String(320), nullable=False),
        sa.Column("provider_message_id", sa.String(255), nullable=False),
        sa.Column("from_address", sa.String(320), nullable=True),
        sa.Column("received_at", _TS, nullable=True),
        sa.Column("message", _JSON, nullable=False),
        sa.Column("recorded_at", _TS, nullable=False),
        sa.Column("fanned_out_at", _TS, nullable=True),
        sa.UniqueConstraint(
            "provider",
            "mailbox_address",
            "provider_message_id",
            name="uq_history_candidates_message",
        ),
    )
    op.create_index("ix_history_candidates_tenant_id", "history_candidates", ["tenant_id"])
    op.create_index(
        "ix_history_candidates_sender",
        "history_candidates",
        ["provider", "mailbox_address", "from_address"],
    )
    op.create_index(
        "ix_history_candidates_fanned_out_at", "history_candidates", ["fanned_out_at"]
    )

    op.create_table(
        "dead_letter_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("detection_jobs.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("outbound_message_id", sa.Integer(), nullable=True),
        sa.Column("contact_id", sa.Integer(), nullable=True),
        sa.Column("moved_at", _TS, nullable=False),
        sa.Column("total_attempts", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", _TS, nullable=True),
        sa.Column("failure_history", _JSON, nullable=False),
        sa.Column("job_context", _JSON, nullable=False),
        sa.Column(
            "requires_manual_review", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending_review"),
        sa.Column("reviewed_at", _TS, nullable=True),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("review_action", sa.String(30), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("retry_job_id", sa.Integer(), nullable=True),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("updated_at", _TS, nullable=False),
    )
    op.create_index("ix_dead_letter_entries_tenant_id", "dead_letter_entries", ["tenant_id"])
    op.create_index(
        "ix_dead_letter_entries_outbound_message_id", "dead_letter_entries", ["outbound_message_id"]
    )
    op.create_index("ix_dead_letter_entries_status", "dead_letter_entries", ["status"])

    op.create_table(
        "detection_anomalies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("outbound_message_id", sa.Integer(), nullable=True),
        sa.Column("job_id", sa.Integer(), nullable=True),
        sa.Column("provider", sa.String(20), nullable=True),
        sa.Column("anomaly_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("details", _JSON, nullable=False),
        sa.Column(
            "requires_manual_review", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("resolved_at", _TS, nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("created_at", _TS, nullable=False),
        sa.Column("updated_at", _TS, nullable=False),
    )
    for column in ("tenant_id", "job_id", "anomaly_type", "severity", "status"):
        op.create_index(f"ix_detection_anomalies_{column}", "detection_anomalies", [column])

    op.create_table(
        "detection_alerts_sent",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("alert_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("anomaly_id", sa.Integer(), nullable=True),
        sa.Column("dead_letter_id", sa.Integer(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", _TS, nullable=False),
    )
    op.create_index("ix_detection_alerts_sent_tenant_id", "detection_alerts_sent", ["tenant_id"])
    op.create_index("ix_detection_alerts_sent_alert_type", "detection_alerts_sent", ["alert_type"])

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("run_type", sa.String(20), nullable=False),
        sa.Column("started_at", _TS, nullable=False),
        sa.Column("completed_at", _TS, nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("messages_checked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("replies_already_recorded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("anomalies_logged", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("checkpoint_before", _JSON, nullable=True),
        sa.Column("checkpoint_after", _JSON, nullable=True),
        sa.Column("errors", _JSON, nullable=True),
        sa.Column("outcome", sa.String(20), nullable=True),
    )
    op.create_index("ix_reconciliation_runs_tenant_id", "reconciliation_runs", ["tenant_id"])
    op.create_index("ix_reconciliation_runs_run_type", "reconciliation_runs", ["run_type"])

    op.create_table(
        "detection_metrics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("period_type", sa.String(20), nullable=False),
        sa.Column("period_start", _TS, nullable=False),
        sa.Column("period_end", _TS, nullable=False),
        sa.Column("total_jobs_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retried_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dead_lettered_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("replies_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("missed_replies_caught", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quorum_failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_layers_healthy", sa.Float(), nullable=True),
        sa.Column("layer_health_stats", _JSON, nullable=False),
        sa.Column("avg_processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("p50_processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("p95_processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("anomaly_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", _TS, nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "period_type", "period_start", name="uq_detection_metrics_period"
        ),
    )


def downgrade() -> None:
    for table in (
        "detection_metrics",
        "reconciliation_runs",
        "detection_alerts_sent",
        "detection_anomalies",
        "dead_letter_entries",
        "history_candidates",
        "mailbox_checkpoints",
        "replies",
        "detection_runs",
        "detection_jobs",
        "outbound_messages",
        "contact_aliases",
        "contacts",
    ):
        op.drop_table(table)
