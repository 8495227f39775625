"""Typed action parameters.

Actions store their parameters as a JSON map. At the executor boundary the map
is validated into one member of a discriminated union keyed by
``action_type``; handlers only ever see the typed models.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from rules.repository import ActionDefinition

Priority = Literal["low", "medium", "high"]


class ActionParameterError(Exception):
    """Raised when stored action parameters do not match the action type."""

    def __init__(self, action_type: str, message: str) -> None:
        super().__init__(message)
        self.code = "invalid_parameters"
        self.action_type = action_type


class _ActionParams(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class CreateTaskParams(_ActionParams):
    """Create a task, optionally from extracted tasks or bills."""

    action_type: Literal["create_task"]
    title: str | None = None
    description: str | None = None
    priority: Priority | None = None
    due_date: str | None = None
    tags: list[str] = Field(default_factory=list)
    extract: Literal["task", "bill", "bill_batch", "none"] = "task"


class CreateNoteParams(_ActionParams):
    action_type: Literal["create_note"]
    title: str | None = None
    content: str = "{{content}}"
    tags: list[str] = Field(default_factory=list)


class SendMessageParams(_ActionParams):
    action_type: Literal["send_message"]
    message: str = Field(min_length=1)
    target: str = "{{chatId}}"


class CreateReminderParams(_ActionParams):
    """Create a reminder.

    Without ``remind_at`` the reminder time comes from calendar extraction of
    the message text.
    """

    action_type: Literal["create_reminder"]
    title: str = "{{content}}"
    remind_at: str | None = None
    target: str = "{{chatId}}"


class UpdateEntityParams(_ActionParams):
    action_type: Literal["update_entity"]
    entity_type: Literal["task", "bill", "note", "event"]
    entity_id: int | str
    fields: dict[str, Any] = Field(min_length=1)


class SendEmailParams(_ActionParams):
    action_type: Literal["send_email"]
    to: list[str] = Field(min_length=1)
    subject: str = Field(min_length=1)
    body: str = "{{content}}"

    @field_validator("to", mode="before")
    @classmethod
    def split_recipients(cls, value: Any) -> Any:
        """Accept a comma-separated recipient string."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


class CallWebhookParams(_ActionParams):
    action_type: Literal["call_webhook"]
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Ensure the webhook target is an http(s) URL."""
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


class CreateEventParams(_ActionParams):
    """Create a calendar event from the extracted message text."""

    action_type: Literal["create_event"]
    title: str | None = None
    description: str | None = None
    location: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0, le=24 * 60)
    sync_calendar: bool = True


ActionParams = Annotated[
    Union[
        CreateTaskParams,
        CreateNoteParams,
        SendMessageParams,
        CreateReminderParams,
        UpdateEntityParams,
        SendEmailParams,
        CallWebhookParams,
        CreateEventParams,
    ],
    Field(discriminator="action_type"),
]

_ADAPTER: TypeAdapter[ActionParams] = TypeAdapter(ActionParams)


def parse_action(action: ActionDefinition) -> ActionParams:
    """Validate an action's stored parameter map into its typed model."""
    raw = dict(action.parameters or {})
    raw["action_type"] = action.action_type
    try:
        return _ADAPTER.validate_python(raw)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ActionParameterError(action.action_type, details) from exc
