"""Initial schema: events audit log, workspaces, integrations, subscriptions,
automation rules, workflow history.

Revision ID: b7e4c1a9d2f3
Revises:
Create Date: 2026-10-19 12:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "b7e4c1a9d2f3"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pg_trgm"')

    # ── Events (immutable append-only log) ─────────────────────────────────
    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("event_id", sa.String(64), nullable=False, unique=True,
                  comment="UUIDv7 time-ordered event identifier"),
        sa.Column("event_version", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("correlation_id", sa.String(255), nullable=True,
                  comment="Links related events in workflows"),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("event_data", postgresql.JSONB(), nullable=False,
                  comment="Complete event payload in JSONB format"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        comment="Immutable append-only log of all platform events",
    )
    op.create_index("idx_events_platform", "events", ["platform"])
    op.create_index("idx_events_event_type", "events", ["event_type"])
    op.create_index("idx_events_timestamp", "events", [sa.text("timestamp DESC")])
    op.create_index("idx_events_correlation_id", "events", ["correlation_id"],
                    postgresql_where=sa.text("correlation_id IS NOT NULL"))
    op.create_index("idx_events_user_id", "events", ["user_id"],
                    postgresql_where=sa.text("user_id IS NOT NULL"))
    op.create_index("idx_events_data_workspace", "events", [sa.text("(event_data->>'workspace_id')")])
    op.create_index("idx_events_data_framework", "events",
                    [sa.text("(event_data->'jurisdiction'->>'framework')")])
    op.create_index("idx_events_data_region", "events",
                    [sa.text("(event_data->'jurisdiction'->>'region')")])
    op.create_index("idx_events_data_severity", "events",
                    [sa.text("(event_data->'risk_context'->>'change_severity')")])
    op.create_index("idx_events_data_text", "events",
                    [sa.text("to_tsvector('english', event_data::text)")],
                    postgresql_using="gin")

    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_event_modification()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'Events are immutable and cannot be modified or deleted';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER prevent_event_update
            BEFORE UPDATE ON events
            FOR EACH ROW
            EXECUTE FUNCTION prevent_event_modification()
    """)
    op.execute("""
        CREATE TRIGGER prevent_event_delete
            BEFORE DELETE ON events
            FOR EACH ROW
            EXECUTE FUNCTION prevent_event_modification()
    """)

    op.execute("""
        CREATE VIEW event_statistics AS
        SELECT
            platform,
            event_type,
            DATE(timestamp) AS event_date,
            COUNT(*) AS event_count,
            COUNT(DISTINCT correlation_id) FILTER (WHERE correlation_id IS NOT NULL) AS workflow_count
        FROM events
        GROUP BY platform, event_type, DATE(timestamp)
    """)
    op.execute("""
        CREATE VIEW recent_events AS
        SELECT
            event_id,
            event_type,
            platform,
            timestamp,
            correlation_id,
            event_data->>'workspace_id' AS workspace_id,
            event_data->'jurisdiction'->>'framework' AS framework,
            event_data->'risk_context'->>'change_severity' AS severity
        FROM events
        WHERE timestamp >= NOW() - INTERVAL '7 days'
        ORDER BY timestamp DESC
    """)

    # ── Workspaces ─────────────────────────────────────────────────────────
    op.create_table(
        "workspaces",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("workspace_id", sa.String(255), nullable=False, unique=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("frameworks", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("jurisdiction", sa.String(50), nullable=False),
        sa.Column("modules", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("github_repo", sa.String(500), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("settings", postgresql.JSONB(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        comment="Compliance workspace configurations",
    )
    op.create_index("idx_workspaces_user_id", "workspaces", ["user_id"])
    op.create_index("idx_workspaces_active", "workspaces", ["active"],
                    postgresql_where=sa.text("active = true"))
    op.create_index("idx_workspaces_frameworks", "workspaces", ["frameworks"], postgresql_using="gin")
    op.create_index("idx_workspaces_jurisdiction", "workspaces", ["jurisdiction"])

    # Platform integrations
    op.create_table(
        "platform_integrations",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("workspace_id", sa.String(255),
                  sa.ForeignKey("workspaces.workspace_id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(50), nullable=False, comment="scraper|code|scan|review"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("configuration", postgresql.JSONB(), server_default="{}"),
        sa.Column("last_sync", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        comment="Platform integration settings per workspace",
    )
    op.create_unique_constraint("uq_integration_workspace_platform", "platform_integrations",
                                ["workspace_id", "platform"])
    op.create_index("idx_integrations_platform", "platform_integrations", ["platform"])

    # Event subscriptions
    op.create_table(
        "event_subscriptions",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("workspace_id", sa.String(255),
                  sa.ForeignKey("workspaces.workspace_id", ondelete="CASCADE"), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("filters", postgresql.JSONB(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        comment="Event type subscriptions per workspace",
    )
    op.create_unique_constraint("uq_subscription_workspace_type_platform", "event_subscriptions",
                                ["workspace_id", "event_type", "platform"])
    op.create_index("idx_subscriptions_event_type", "event_subscriptions", ["event_type", "platform"])

    # Automation rules
    op.create_table(
        "automation_rules",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("workspace_id", sa.String(255),
                  sa.ForeignKey("workspaces.workspace_id", ondelete="CASCADE"), nullable=False),
        sa.Column("rule_name", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("conditions", postgresql.JSONB(), nullable=False),
        sa.Column("actions", postgresql.JSONB(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("priority", sa.Integer(), server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        comment="Custom automation rules per workspace",
    )
    op.create_index("idx_rules_workspace", "automation_rules", ["workspace_id"])
    op.create_index("idx_rules_event_type", "automation_rules", ["event_type"])
    op.create_index("idx_rules_priority", "automation_rules", [sa.text("priority DESC")])

    # Workflow history
    op.create_table(
        "workflow_history",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("workflow_id", sa.String(255), nullable=False, unique=True),
        sa.Column("workspace_id", sa.String(255), sa.ForeignKey("workspaces.workspace_id"), nullable=True),
        sa.Column("workflow_type", sa.String(100), nullable=False),
        sa.Column("rule_name", sa.String(255), nullable=False),
        sa.Column("trigger_event_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, comment="started|in_progress|completed|failed"),
        sa.Column("steps", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        comment="History of executed workflows",
    )
    op.create_unique_constraint("uq_workflow_trigger_rule", "workflow_history",
                                ["trigger_event_id", "workspace_id", "rule_name"])
    op.create_index("idx_workflow_workspace", "workflow_history", ["workspace_id"])
    op.create_index("idx_workflow_status", "workflow_history", ["status"])
    op.create_index("idx_workflow_started", "workflow_history", [sa.text("started_at DESC")])
    op.create_index("idx_workflow_trigger", "workflow_history", ["trigger_event_id"])

    # updated_at maintenance for tables edited by the management plane
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
    """)
    for table in ("workspaces", "platform_integrations", "automation_rules"):
        op.execute(f"""
            CREATE TRIGGER update_{table}_updated_at
                BEFORE UPDATE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION update_updated_at_column()
        """)

    op.execute("""
        CREATE VIEW active_workspaces_summary AS
        SELECT
            w.workspace_id,
            w.name,
            w.user_id,
            w.frameworks,
            w.jurisdiction,
            jsonb_array_length(w.modules) AS module_count,
            w.github_repo,
            COUNT(DISTINCT pi.platform) FILTER (WHERE pi.enabled = true) AS active_integrations,
            COUNT(DISTINCT es.event_type) FILTER (WHERE es.enabled = true) AS active_subscriptions
        FROM workspaces w
        LEFT JOIN platform_integrations pi ON w.workspace_id = pi.workspace_id
        LEFT JOIN event_subscriptions es ON w.workspace_id = es.workspace_id
        WHERE w.active = true
        GROUP BY w.workspace_id, w.name, w.user_id, w.frameworks, w.jurisdiction, w.modules, w.github_repo
    """)


def downgrade() -> None:
    op.execute("DROP VIEW IF EXISTS active_workspaces_summary")
    op.execute("DROP VIEW IF EXISTS recent_events")
    op.execute("DROP VIEW IF EXISTS event_statistics")

    # Drop tables in reverse order
    op.drop_table("workflow_history")
    op.drop_table("automation_rules")
    op.drop_table("event_subscriptions")
    op.drop_table("platform_integrations")
    op.drop_table("workspaces")
    op.drop_table("events")

    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")
    op.execute("DROP FUNCTION IF EXISTS prevent_event_modification()")
