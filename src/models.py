"""Data models for the relay automation worker."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base

from time_utils import ensure_aware

# SQLAlchemy base
Base = declarative_base()

# Rule enums
TriggerTypeEnum = Enum(
    "incoming_message",
    "reaction",
    "schedule",
    "entity_change",
    "manual",
    "webhook",
    name="trigger_type",
    native_enum=False,
)
ConditionOperatorEnum = Enum(
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
    name="condition_operator",
    native_enum=False,
)
GroupOperatorEnum = Enum(
    "AND",
    "OR",
    name="group_operator",
    native_enum=False,
)
PerformerFilterEnum = Enum(
    "anyone",
    "user_only",
    "contacts_only",
    "users",
    name="performer_filter",
    native_enum=False,
)
ActionTypeEnum = Enum(
    "create_task",
    "create_note",
    "send_message",
    "create_reminder",
    "update_entity",
    "send_email",
    "call_webhook",
    "create_event",
    name="action_type",
    native_enum=False,
)

# Queue and ledger enums
QueueStatusEnum = Enum(
    "pending",
    "processing",
    "completed",
    "failed",
    name="queue_status",
    native_enum=False,
)
RunStatusEnum = Enum(
    "success",
    "failed",
    "partial",
    "skipped",
    name="run_status",
    native_enum=False,
)

# Domain enums
PriorityEnum = Enum(
    "low",
    "medium",
    "high",
    name="priority",
    native_enum=False,
)
TaskStatusEnum = Enum(
    "todo",
    "in_progress",
    "done",
    name="task_status",
    native_enum=False,
)
BillStatusEnum = Enum(
    "pending",
    "paid",
    "overdue",
    name="bill_status",
    native_enum=False,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Rule(Base):
    """User-defined automation rule."""

    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    trigger_type = Column(TriggerTypeEnum, nullable=False)
    trigger_config = Column(JSON, nullable=False, default=dict)
    performer_filter = Column(PerformerFilterEnum, nullable=False, default="anyone")
    priority = Column(Integer, nullable=False, default=100)
    cooldown_minutes = Column(Integer, nullable=True)
    max_executions_per_day = Column(Integer, nullable=True)
    scope_id = Column(String(200), nullable=True)
    created_by = Column(String(200), nullable=True)
    execution_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_automation_rules_trigger_active", "trigger_type", "is_active"),
    )


class RuleCondition(Base):
    """Single comparison evaluated during rule matching."""

    __tablename__ = "rule_conditions"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    condition_group = Column(Integer, nullable=False, default=1)
    group_operator = Column(GroupOperatorEnum, nullable=False, default="AND")
    operator = Column(ConditionOperatorEnum, nullable=False)
    field_name = Column(String(200), nullable=False)
    value = Column(Text, nullable=True)
    is_negated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class RuleAction(Base):
    """Ordered action performed when a rule fires."""

    __tablename__ = "rule_actions"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    action_order = Column(Integer, nullable=False)
    action_type = Column(ActionTypeEnum, nullable=False)
    parameters = Column(JSON, nullable=False, default=dict)
    is_conditional = Column(Boolean, nullable=False, default=False)
    condition_expression = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("rule_id", "action_order", name="uq_rule_actions_rule_order"),
        CheckConstraint("action_order >= 0", name="ck_rule_actions_order_non_negative"),
    )


class QueueItem(Base):
    """Durable unit of pending pipeline work."""

    __tablename__ = "action_queue"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(QueueStatusEnum, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    worker_id = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_action_queue_attempts_non_negative"),
        CheckConstraint("max_attempts >= 1", name="ck_action_queue_max_attempts_positive"),
        Index("ix_action_queue_status_created", "status", "created_at"),
    )


class RuleExecution(Base):
    """Append-only ledger entry for one rule invocation."""

    __tablename__ = "rule_executions"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    queue_item_id = Column(Integer, ForeignKey("action_queue.id"), nullable=True)
    trigger_data = Column(JSON, nullable=False, default=dict)
    execution_result = Column(JSON, nullable=False, default=dict)
    status = Column(RunStatusEnum, nullable=False)
    error_message = Column(Text, nullable=True)
    actions_executed = Column(Integer, nullable=False, default=0)
    actions_failed = Column(Integer, nullable=False, default=0)
    execution_time_ms = Column(Integer, nullable=False, default=0)
    executed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    run_metadata = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_rule_executions_rule_executed", "rule_id", "executed_at"),
    )


class Message(Base):
    """Inbound or outbound chat message persisted by the event store."""

    __tablename__ = "whatsapp_messages"

    id = Column(Integer, primary_key=True)
    message_id = Column(String(200), nullable=False)
    instance_id = Column(String(200), nullable=False)
    chat_id = Column(String(200), nullable=False)
    sender_jid = Column(String(200), nullable=True)
    from_me = Column(Boolean, nullable=False, default=False)
    content = Column(Text, nullable=True)
    message_type = Column(String(50), nullable=False, default="text")
    media_reference = Column(Text, nullable=True)
    media_path = Column(Text, nullable=True)
    quoted_message_id = Column(String(200), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("message_id", "instance_id", name="uq_whatsapp_messages_natural_key"),
    )


class Reaction(Base):
    """Emoji reaction applied to a stored message."""

    __tablename__ = "whatsapp_reactions"

    id = Column(Integer, primary_key=True)
    message_id = Column(String(200), nullable=False)
    instance_id = Column(String(200), nullable=False)
    reactor_jid = Column(String(200), nullable=False)
    emoji = Column(String(32), nullable=False)
    from_me = Column(Boolean, nullable=False, default=False)
    reacted_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "message_id", "instance_id", "reactor_jid", name="uq_whatsapp_reactions_natural_key"
        ),
    )


class Contact(Base):
    """Provider contact record."""

    __tablename__ = "whatsapp_contacts"

    id = Column(Integer, primary_key=True)
    jid = Column(String(200), nullable=False)
    instance_id = Column(String(200), nullable=False)
    push_name = Column(String(200), nullable=True)
    is_my_contact = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("jid", "instance_id", name="uq_whatsapp_contacts_natural_key"),
    )


class Group(Base):
    """Provider group record."""

    __tablename__ = "whatsapp_groups"

    id = Column(Integer, primary_key=True)
    group_jid = Column(String(200), nullable=False)
    instance_id = Column(String(200), nullable=False)
    subject = Column(String(300), nullable=True)
    owner_jid = Column(String(200), nullable=True)
    participant_count = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("group_jid", "instance_id", name="uq_whatsapp_groups_natural_key"),
    )


class Task(Base):
    """Task created by an automation."""

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(TaskStatusEnum, nullable=False, default="todo")
    priority = Column(PriorityEnum, nullable=False, default="medium")
    due_at = Column(DateTime(timezone=True), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=True)
    source_message_id = Column(String(200), nullable=True)
    source_key = Column(String(300), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class Note(Base):
    """Free-form note created by an automation."""

    __tablename__ = "notes"

    id = Column(Integer, primary_key=True)
    title = Column(String(500), nullable=False)
    content = Column(Text, nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)
    source_message_id = Column(String(200), nullable=True)
    source_key = Column(String(300), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class Reminder(Base):
    """Reminder scheduled by an automation."""

    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True)
    title = Column(String(500), nullable=False)
    remind_at = Column(DateTime(timezone=True), nullable=False)
    target_id = Column(String(200), nullable=True)
    delivered = Column(Boolean, nullable=False, default=False)
    source_message_id = Column(String(200), nullable=True)
    source_key = Column(String(300), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Bill(Base):
    """Bill extracted from a message."""

    __tablename__ = "bills"

    id = Column(Integer, primary_key=True)
    vendor = Column(String(300), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="MXN")
    due_date = Column(DateTime(timezone=True), nullable=True)
    category = Column(String(50), nullable=True)
    priority = Column(PriorityEnum, nullable=False, default="medium")
    status = Column(BillStatusEnum, nullable=False, default="pending")
    notes = Column(Text, nullable=True)
    source_message_id = Column(String(200), nullable=True)
    source_key = Column(String(300), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (CheckConstraint("amount >= 0", name="ck_bills_amount_non_negative"),)


class CalendarEvent(Base):
    """Calendar entry created by an automation."""

    __tablename__ = "calendar_events"

    id = Column(Integer, primary_key=True)
    title = Column(String(500), nullable=False)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    location = Column(String(500), nullable=True)
    is_virtual = Column(Boolean, nullable=False, default=False)
    meeting_provider = Column(String(50), nullable=True)
    attendees = Column(JSON, nullable=False, default=list)
    description = Column(Text, nullable=True)
    provider_event_id = Column(String(300), nullable=True)
    source_message_id = Column(String(200), nullable=True)
    source_key = Column(String(300), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (CheckConstraint("end_at >= start_at", name="ck_calendar_events_range"),)


class ExtractionLog(Base):
    """Processing log for one extraction call."""

    __tablename__ = "extraction_logs"

    id = Column(Integer, primary_key=True)
    message_id = Column(String(200), nullable=True)
    hint_type = Column(String(50), nullable=False)
    language = Column(String(8), nullable=True)
    entity_count = Column(Integer, nullable=False, default=0)
    best_confidence = Column(Float, nullable=True)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


@event.listens_for(QueueItem, "load")
def _normalize_queue_item_on_load(target: QueueItem, _context: object) -> None:
    """Ensure loaded queue timestamps retain timezone awareness."""
    target.created_at = ensure_aware(target.created_at)
    target.claimed_at = ensure_aware(target.claimed_at)
    target.completed_at = ensure_aware(target.completed_at)


@event.listens_for(Rule, "load")
def _normalize_rule_on_load(target: Rule, _context: object) -> None:
    """Ensure loaded rule timestamps retain timezone awareness."""
    target.created_at = ensure_aware(target.created_at)
    target.last_executed_at = ensure_aware(target.last_executed_at)


@event.listens_for(RuleExecution, "load")
def _normalize_execution_on_load(target: RuleExecution, _context: object) -> None:
    """Ensure loaded ledger timestamps retain timezone awareness."""
    target.executed_at = ensure_aware(target.executed_at)


@event.listens_for(CalendarEvent, "load")
def _normalize_event_on_load(target: CalendarEvent, _context: object) -> None:
    """Ensure loaded event timestamps retain timezone awareness."""
    target.start_at = ensure_aware(target.start_at)
    target.end_at = ensure_aware(target.end_at)


@event.listens_for(Bill, "load")
def _normalize_bill_on_load(target: Bill, _context: object) -> None:
    """Ensure loaded bill due dates retain timezone awareness."""
    target.due_date = ensure_aware(target.due_date)


@event.listens_for(Task, "load")
def _normalize_task_on_load(target: Task, _context: object) -> None:
    """Ensure loaded task due dates retain timezone awareness."""
    target.due_at = ensure_aware(target.due_at)


@event.listens_for(Reminder, "load")
def _normalize_reminder_on_load(target: Reminder, _context: object) -> None:
    """Ensure loaded reminder timestamps retain timezone awareness."""
    target.remind_at = ensure_aware(target.remind_at)
