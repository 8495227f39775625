"""Initial relay schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create rule, queue, ledger, provider and side-effect tables."""
    op.create_table(
        "automation_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column(
            "trigger_type",
            _enum(
                "trigger_type",
                "incoming_message",
                "reaction",
                "schedule",
                "entity_change",
                "manual",
                "webhook",
            ),
            nullable=False,
        ),
        sa.Column("trigger_config", sa.JSON(), nullable=False),
        sa.Column(
            "performer_filter",
            _enum("performer_filter", "anyone", "user_only", "contacts_only", "users"),
            nullable=False,
        ),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=True),
        sa.Column("max_executions_per_day", sa.Integer(), nullable=True),
        sa.Column("scope_id", sa.String(length=200), nullable=True),
        sa.Column("created_by", sa.String(length=200), nullable=True),
        sa.Column("execution_count", sa.Integer(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        _timestamp("last_executed_at"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_automation_rules_trigger_active",
        "automation_rules",
        ["trigger_type", "is_active"],
    )

    op.create_table(
        "rule_conditions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("automation_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("condition_group", sa.Integer(), nullable=False),
        sa.Column("group_operator", _enum("group_operator", "AND", "OR"), nullable=False),
        sa.Column(
            "operator",
            _enum(
                "condition_operator",
                "equals",
                "not_equals",
                "contains",
                "not_contains",
                "starts_with",
                "ends_with",
                "matches_regex",
                "greater_than",
                "less_than",
                "in_list",
            ),
            nullable=False,
        ),
        sa.Column("field_name", sa.String(length=200), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("is_negated", sa.Boolean(), nullable=False),
        _timestamp("created_at"),
    )

    op.create_table(
        "rule_actions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("automation_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action_order", sa.Integer(), nullable=False),
        sa.Column(
            "action_type",
            _enum(
                "action_type",
                "create_task",
                "create_note",
                "send_message",
                "create_reminder",
                "update_entity",
                "send_email",
                "call_webhook",
                "create_event",
            ),
            nullable=False,
        ),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("is_conditional", sa.Boolean(), nullable=False),
        sa.Column("condition_expression", sa.JSON(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("rule_id", "action_order", name="uq_rule_actions_rule_order"),
        sa.CheckConstraint("action_order >= 0", name="ck_rule_actions_order_non_negative"),
    )

    op.create_table(
        "action_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            _enum("queue_status", "pending", "processing", "completed", "failed"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(length=200), nullable=True),
        _timestamp("created_at", nullable=False),
        _timestamp("claimed_at"),
        _timestamp("completed_at"),
        sa.CheckConstraint("attempts >= 0", name="ck_action_queue_attempts_non_negative"),
        sa.CheckConstraint("max_attempts >= 1", name="ck_action_queue_max_attempts_positive"),
    )
    op.create_index("ix_action_queue_status_created", "action_queue", ["status", "created_at"])

    op.create_table(
        "rule_executions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("automation_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("queue_item_id", sa.Integer(), sa.ForeignKey("action_queue.id"), nullable=True),
        sa.Column("trigger_data", sa.JSON(), nullable=False),
        sa.Column("execution_result", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            _enum("run_status", "success", "failed", "partial", "skipped"),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("actions_executed", sa.Integer(), nullable=False),
        sa.Column("actions_failed", sa.Integer(), nullable=False),
        sa.Column("execution_time_ms", sa.Integer(), nullable=False),
        _timestamp("executed_at", nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_rule_executions_rule_executed",
        "rule_executions",
        ["rule_id", "executed_at"],
    )

    op.create_table(
        "whatsapp_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("message_id", sa.String(length=200), nullable=False),
        sa.Column("instance_id", sa.String(length=200), nullable=False),
        sa.Column("chat_id", sa.String(length=200), nullable=False),
        sa.Column("sender_jid", sa.String(length=200), nullable=True),
        sa.Column("from_me", sa.Boolean(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("message_type", sa.String(length=50), nullable=False),
        sa.Column("media_reference", sa.Text(), nullable=True),
        sa.Column("quoted_message_id", sa.String(length=200), nullable=True),
        _timestamp("sent_at"),
        _timestamp("created_at"),
        sa.UniqueConstraint("message_id", "instance_id", name="uq_whatsapp_messages_natural_key"),
    )
    op.create_table(
        "whatsapp_reactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("message_id", sa.String(length=200), nullable=False),
        sa.Column("instance_id", sa.String(length=200), nullable=False),
        sa.Column("reactor_jid", sa.String(length=200), nullable=False),
        sa.Column("emoji", sa.String(length=32), nullable=False),
        sa.Column("from_me", sa.Boolean(), nullable=False),
        _timestamp("reacted_at"),
        sa.UniqueConstraint(
            "message_id",
            "instance_id",
            "reactor_jid",
            name="uq_whatsapp_reactions_natural_key",
        ),
    )
    op.create_table(
        "whatsapp_contacts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("jid", sa.String(length=200), nullable=False),
        sa.Column("instance_id", sa.String(length=200), nullable=False),
        sa.Column("push_name", sa.String(length=200), nullable=True),
        sa.Column("is_my_contact", sa.Boolean(), nullable=False),
        _timestamp("updated_at"),
        sa.UniqueConstraint("jid", "instance_id", name="uq_whatsapp_contacts_natural_key"),
    )
    op.create_table(
        "whatsapp_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_jid", sa.String(length=200), nullable=False),
        sa.Column("instance_id", sa.String(length=200), nullable=False),
        sa.Column("subject", sa.String(length=300), nullable=True),
        sa.Column("owner_jid", sa.String(length=200), nullable=True),
        sa.Column("participant_count", sa.Integer(), nullable=True),
        _timestamp("updated_at"),
        sa.UniqueConstraint("group_jid", "instance_id", name="uq_whatsapp_groups_natural_key"),
    )

    priority = _enum("priority", "low", "medium", "high")
    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vendor", sa.String(length=300), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        _timestamp("due_date"),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("priority", priority, nullable=False),
        sa.Column(
            "status",
            _enum("bill_status", "pending", "paid", "overdue"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source_message_id", sa.String(length=200), nullable=True),
        sa.Column("source_key", sa.String(length=300), nullable=True, unique=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("amount >= 0", name="ck_bills_amount_non_negative"),
    )
    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "status",
            _enum("task_status", "todo", "in_progress", "done"),
            nullable=False,
        ),
        sa.Column("priority", priority, nullable=False),
        _timestamp("due_at"),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("bill_id", sa.Integer(), sa.ForeignKey("bills.id"), nullable=True),
        sa.Column("source_message_id", sa.String(length=200), nullable=True),
        sa.Column("source_key", sa.String(length=300), nullable=True, unique=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "notes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("source_message_id", sa.String(length=200), nullable=True),
        sa.Column("source_key", sa.String(length=300), nullable=True, unique=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "reminders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        _timestamp("remind_at", nullable=False),
        sa.Column("target_id", sa.String(length=200), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False),
        sa.Column("source_message_id", sa.String(length=200), nullable=True),
        sa.Column("source_key", sa.String(length=300), nullable=True, unique=True),
        _timestamp("created_at"),
    )
    op.create_table(
        "calendar_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        _timestamp("start_at", nullable=False),
        _timestamp("end_at", nullable=False),
        sa.Column("location", sa.String(length=500), nullable=True),
        sa.Column("is_virtual", sa.Boolean(), nullable=False),
        sa.Column("meeting_provider", sa.String(length=50), nullable=True),
        sa.Column("attendees", sa.JSON(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("provider_event_id", sa.String(length=300), nullable=True),
        sa.Column("source_message_id", sa.String(length=200), nullable=True),
        sa.Column("source_key", sa.String(length=300), nullable=True, unique=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("end_at >= start_at", name="ck_calendar_events_range"),
    )
    op.create_table(
        "extraction_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("message_id", sa.String(length=200), nullable=True),
        sa.Column("hint_type", sa.String(length=50), nullable=False),
        sa.Column("language", sa.String(length=8), nullable=True),
        sa.Column("entity_count", sa.Integer(), nullable=False),
        sa.Column("best_confidence", sa.Float(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=False),
        _timestamp("created_at"),
    )


def downgrade() -> None:
    """Drop all relay tables."""
    for table in (
        "extraction_logs",
        "calendar_events",
        "reminders",
        "notes",
        "tasks",
        "bills",
        "whatsapp_groups",
        "whatsapp_contacts",
        "whatsapp_reactions",
        "whatsapp_messages",
        "rule_executions",
        "action_queue",
        "rule_actions",
        "rule_conditions",
        "automation_rules",
    ):
        op.drop_table(table)
