import re
import uuid
from datetime import datetime, timezone
from typing import Annotated, ClassVar, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str) -> datetime:
    """Parses an ISO-8601 string; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# --- Conditions ---

ConditionField = Literal[
    "from",
    "to",
    "subject",
    "body_snippet",
    "has_label",
    "is_read",
    "received_at",
    "sender_domain",
    "has_attachment",
]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "matches_regex",
    "exists",
    "before",
    "after",
]

_STRING_OPERATORS = {
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "matches_regex",
    "exists",
}
# not_equals / not_contains are the negation of these over the whole field
NEGATED_OPERATORS = {"not_equals": "equals", "not_contains": "contains"}
BOOLEAN_FIELDS = {"is_read", "has_attachment"}
OPERATORS_BY_FIELD = {
    "from": _STRING_OPERATORS,
    "to": _STRING_OPERATORS,
    "subject": _STRING_OPERATORS,
    "body_snippet": _STRING_OPERATORS,
    "sender_domain": _STRING_OPERATORS,
    "has_label": _STRING_OPERATORS,
    "is_read": {"equals"},
    "has_attachment": {"equals"},
    "received_at": {"before", "after", "exists"},
}


class ConditionModel(BaseModel):
    """A leaf predicate: <field> <operator> <value>."""

    model_config = ConfigDict(extra="forbid")

    field: ConditionField
    operator: ConditionOperator
    value: Optional[str] = None
    case_sensitive: bool = False

    @field_validator("value", mode="before")
    @classmethod
    def stringify_scalar_value(cls, v):
        # Booleans first: bool is a subclass of int
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @model_validator(mode="after")
    def check_operator_and_value(self):
        allowed = OPERATORS_BY_FIELD[self.field]
        if self.operator not in allowed:
            raise ValueError(
                f"operator '{self.operator}' is not supported for field '{self.field}' "
                f"(allowed: {', '.join(sorted(allowed))})"
            )
        if self.operator == "exists":
            return self
        if self.value is None or not self.value.strip():
            raise ValueError(
                f"value is required for operator '{self.operator}' on field '{self.field}'"
            )
        if self.operator == "matches_regex":
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"invalid regex pattern '{self.value}': {e}")
        elif self.operator in ("before", "after"):
            try:
                parse_iso_datetime(self.value)
            except ValueError:
                raise ValueError(
                    f"value '{self.value}' for operator '{self.operator}' must be an ISO-8601 datetime"
                )
        elif self.field in BOOLEAN_FIELDS and self.value.strip().lower() not in ("true", "false"):
            raise ValueError(f"value for field '{self.field}' must be 'true' or 'false'")
        return self


class ConditionGroupModel(BaseModel):
    """Boolean node over child conditions. NOT takes exactly one child."""

    model_config = ConfigDict(extra="forbid")

    op: Literal["AND", "OR", "NOT"]
    conditions: List["ConditionNode"] = Field(min_length=1)

    @model_validator(mode="after")
    def check_not_arity(self):
        if self.op == "NOT" and len(self.conditions) != 1:
            raise ValueError("NOT groups take exactly one condition")
        return self


ConditionNode = Union[ConditionGroupModel, ConditionModel]
ConditionGroupModel.model_rebuild()


# --- Actions ---


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Fixed per action kind; async kinds go through the outbox.
    SYNCHRONOUS: ClassVar[bool] = True

    @property
    def synchronous(self) -> bool:
        return self.SYNCHRONOUS


class AddLabelAction(_ActionBase):
    type: Literal["add_label"] = "add_label"
    label_name: str = Field(min_length=1)


class RemoveLabelAction(_ActionBase):
    type: Literal["remove_label"] = "remove_label"
    label_name: str = Field(min_length=1)


class ArchiveAction(_ActionBase):
    type: Literal["archive"] = "archive"


class MarkReadAction(_ActionBase):
    type: Literal["mark_read"] = "mark_read"
    read: bool = True


class TrashAction(_ActionBase):
    type: Literal["trash"] = "trash"


class ForwardAction(_ActionBase):
    SYNCHRONOUS: ClassVar[bool] = False

    type: Literal["forward"] = "forward"
    to_address: str

    @field_validator("to_address")
    @classmethod
    def check_address(cls, v: str) -> str:
        v = v.strip()
        if not re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", v):
            raise ValueError(f"'{v}' is not a valid email address")
        return v


class ReplyAction(_ActionBase):
    """Replies to the sender in the same thread.

    reply_body may use {{sender_name}}, {{sender_email}}, {{subject}}, {{date}}
    and {{snippet}}. reply_subject defaults to "Re: <original subject>".
    """

    SYNCHRONOUS: ClassVar[bool] = False

    type: Literal["reply"] = "reply"
    reply_body: str = Field(min_length=1, max_length=10000)
    reply_subject: Optional[str] = Field(default=None, max_length=200)


class MarkSpamAction(_ActionBase):
    type: Literal["mark_spam"] = "mark_spam"


class StopProcessingAction(_ActionBase):
    type: Literal["stop_processing"] = "stop_processing"


ActionModel = Annotated[
    Union[
        AddLabelAction,
        RemoveLabelAction,
        ArchiveAction,
        MarkReadAction,
        TrashAction,
        ForwardAction,
        ReplyAction,
        MarkSpamAction,
        StopProcessingAction,
    ],
    Field(discriminator="type"),
]
ACTION_ADAPTER = TypeAdapter(ActionModel)
ACTION_TYPES = (
    "add_label",
    "remove_label",
    "archive",
    "mark_read",
    "trash",
    "forward",
    "reply",
    "mark_spam",
    "stop_processing",
)

SystemType = Literal["newsletter", "marketing", "calendar", "receipt", "notification"]


class RuleModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_enabled: bool = True
    priority: int = Field(default=0, ge=0, le=1000)  # lower runs first
    conditions: ConditionNode
    actions: List[ActionModel] = Field(min_length=1)
    system_type: Optional[SystemType] = None
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def fold_flat_condition_list(cls, data):
        """Accepts the flat `conditions` list + `condition_conjunction` rule format."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("conditions"), list):
            conjunction = data.pop("condition_conjunction", "AND")
            data["conditions"] = {"op": conjunction, "conditions": data["conditions"]}
        elif "condition_conjunction" in data:
            raise ValueError("condition_conjunction only applies to a flat list of conditions")
        return data

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name cannot be blank")
        return v

    @field_validator("actions")
    @classmethod
    def move_stop_marker_to_end(cls, actions):
        stops = [a for a in actions if a.type == "stop_processing"]
        if len(stops) > 1:
            raise ValueError("a rule may contain at most one stop_processing action")
        return [a for a in actions if a.type != "stop_processing"] + stops

    @property
    def stops_processing(self) -> bool:
        return any(a.type == "stop_processing" for a in self.actions)

    @property
    def runnable_actions(self) -> list:
        return [a for a in self.actions if a.type != "stop_processing"]


class EmailContext(BaseModel):
    """The slice of an email that rules are evaluated against."""

    email_id: str = Field(min_length=1)
    thread_id: Optional[str] = None
    from_address: Optional[str] = None
    to_addresses: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    body_snippet: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    is_read: bool = False
    received_at: Optional[datetime] = None
    has_attachment: bool = False


class ExecutionModel(BaseModel):
    """One row of the execution log: a single (rule, email) evaluation. Never updated."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    rule_id: str
    email_id: str
    owner_id: str
    matched: bool
    actions_executed: int = 0
    actions_queued: int = 0
    success: bool = True
    error_message: Optional[str] = None
    execution_time_ms: int = 0
    triggered_by: Literal["email_sync", "manual", "test"] = "email_sync"
    created_at: datetime = Field(default_factory=utcnow)


AsyncActionStatus = Literal["pending", "processing", "completed", "failed"]


class AsyncActionModel(BaseModel):
    """An outbox row awaiting (or done with) asynchronous execution."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    rule_id: Optional[str] = None
    email_id: str
    action_type: str
    action_data: ActionModel
    status: AsyncActionStatus = "pending"
    retry_count: int = 0
    throttle_count: int = 0
    error_message: Optional[str] = None
    available_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_action_type(self):
        if self.action_type != self.action_data.type:
            raise ValueError(
                f"action_type '{self.action_type}' does not match action_data type '{self.action_data.type}'"
            )
        return self


# --- Bulk actions ---

BatchActionType = Literal["mark_read", "mark_unread", "archive", "trash", "add_label", "remove_label"]
BATCH_ACTION_TYPES = ("mark_read", "mark_unread", "archive", "trash", "add_label", "remove_label")
LABEL_BATCH_ACTIONS = ("add_label", "remove_label")


class BatchItemModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email_id: str = Field(alias="emailId", min_length=1)
    action: BatchActionType
    label_id: Optional[str] = Field(default=None, alias="labelId")


class BatchItemResult(BaseModel):
    email_id: str
    action: str
    success: bool
    error: Optional[str] = None
