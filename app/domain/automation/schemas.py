"""Pydantic schemas for automation rule conditions and actions.

Rules are stored as JSON; these models are the single place their shape is
defined, and every save goes through ``validate_rule``.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from app.core.exceptions import RuleValidationError
from app.core.phone import normalize_channel
from app.persistence.models.automation import RuleTrigger
from app.persistence.models.lead import LeadPriority, LeadStage
from app.persistence.models.task import TaskType


class RuleConditions(BaseModel):
    """Filters a lead must pass before a rule's actions run."""

    model_config = ConfigDict(extra="forbid")

    channels: list[str] = Field(default_factory=list, description="Only fire for these channels")
    stages: list[str] = Field(default_factory=list, description="Only fire for leads in these stages")
    keywords: list[str] = Field(default_factory=list, description="Inbound text must contain any of these")
    only_hot: bool = False
    working_hours_only: bool = False
    cooldown_minutes: int | None = Field(default=None, ge=0)
    days_without_message: int | None = Field(default=None, ge=1)
    hours_without_reply: int | None = Field(default=None, ge=1)
    days_before_expiry: int | None = Field(default=None, ge=0)

    @field_validator("channels")
    @classmethod
    def _normalize_channels(cls, value: list[str]) -> list[str]:
        return [normalize_channel(channel) for channel in value]

    @field_validator("stages")
    @classmethod
    def _check_stages(cls, value: list[str]) -> list[str]:
        valid = {stage.value for stage in LeadStage}
        unknown = [stage for stage in value if stage not in valid]
        if unknown:
            raise ValueError(f"unknown stages: {', '.join(unknown)}")
        return value

    @field_validator("keywords")
    @classmethod
    def _lower_keywords(cls, value: list[str]) -> list[str]:
        return [keyword.strip().lower() for keyword in value if keyword.strip()]


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SendMessageAction(_ActionBase):
    type: Literal["send_message"]
    text: str = Field(..., min_length=1)
    channel: str | None = None


class SendAiReplyAction(_ActionBase):
    type: Literal["send_ai_reply"]
    channel: str | None = None
    template_key: str = "follow_up"


class CreateTaskAction(_ActionBase):
    type: Literal["create_task"]
    title: str = Field(..., min_length=1)
    description: str | None = None
    due_in_minutes: int | None = Field(default=None, ge=0)
    task_type: TaskType = TaskType.INTERNAL


class SetNextFollowupAction(_ActionBase):
    type: Literal["set_next_followup"]
    in_minutes: int = Field(..., ge=1)


class UpdateStageAction(_ActionBase):
    type: Literal["update_stage"]
    stage: LeadStage


class SetPriorityAction(_ActionBase):
    type: Literal["set_priority"]
    priority: LeadPriority


class AssignToUserAction(_ActionBase):
    type: Literal["assign_to_user"]
    user_id: int


class StopAutomationAction(_ActionBase):
    type: Literal["stop_automation"]
    reason: str = "Stopped by automation rule"


RuleAction = Annotated[
    Union[
        SendMessageAction,
        SendAiReplyAction,
        CreateTaskAction,
        SetNextFollowupAction,
        UpdateStageAction,
        SetPriorityAction,
        AssignToUserAction,
        StopAutomationAction,
    ],
    Field(discriminator="type"),
]

# Actions that put a message in front of the customer
SENDING_ACTION_TYPES = frozenset({"send_message", "send_ai_reply"})

_actions_adapter = TypeAdapter(list[RuleAction])


class RuleDefinition(BaseModel):
    """Complete rule as submitted by an operator."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9_\-]+$")
    name: str = Field(..., min_length=1, max_length=255)
    trigger: RuleTrigger
    enabled: bool = True
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: list[RuleAction] = Field(..., min_length=1)


def _errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]


def validate_rule(data: dict[str, Any]) -> RuleDefinition:
    """Validate a rule definition.

    Raises:
        RuleValidationError: With one entry per problem found
    """
    try:
        return RuleDefinition.model_validate(data)
    except ValidationError as e:
        raise RuleValidationError(_errors(e)) from e


def parse_conditions(data: dict[str, Any] | None) -> RuleConditions:
    """Parse stored conditions. Stored rules were validated on save."""
    try:
        return RuleConditions.model_validate(data or {})
    except ValidationError as e:
        raise RuleValidationError(_errors(e)) from e


def parse_actions(data: list[dict[str, Any]] | None) -> list[RuleAction]:
    try:
        return _actions_adapter.validate_python(data or [])
    except ValidationError as e:
        raise RuleValidationError(_errors(e)) from e


def dump_actions(actions: list[RuleAction]) -> list[dict[str, Any]]:
    return _actions_adapter.dump_python(actions, mode="json")
