"""
Campaign plan — the externally generated document describing one contact's
outreach sequence as a graph of nodes and transitions.

The plan arrives as camelCase JSON; it is validated once at ingestion via
load_plan() and treated as immutable afterwards. Nodes are a closed tagged
union discriminated by `action`: send | wait | timeout | stop.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator,
)
from pydantic.alias_generators import to_camel

from core.errors import PlanValidationError
from models.events import CampaignEvent, is_timeout_event
from utils.durations import is_valid_iso_duration, is_valid_time_format, is_valid_timezone


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class NodeAction(str, Enum):
    SEND = "send"
    WAIT = "wait"
    TIMEOUT = "timeout"
    STOP = "stop"


class _PlanModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=True,
    )


def _check_duration(value: Optional[str]) -> Optional[str]:
    if value is not None and not is_valid_iso_duration(value):
        raise ValueError(f"ISO-8601 duration required, got {value!r}")
    return value


# ──────────────────────────────────────────────────────────────
#  Transitions
# ──────────────────────────────────────────────────────────────

class Transition(_PlanModel):
    """Moves the contact to `to` when event `on` happens (within) or fails to happen (after)."""
    on: CampaignEvent
    to: str = Field(min_length=1)
    within: Optional[str] = None
    after: Optional[str] = None

    check_durations = field_validator("within", "after")(_check_duration)

    @model_validator(mode="after")
    def check_window(self) -> Transition:
        if (self.within is None) == (self.after is None):
            raise ValueError("Provide exactly one of `within` or `after`")
        return self

    @property
    def is_timeout(self) -> bool:
        return is_timeout_event(self.on)


# ──────────────────────────────────────────────────────────────
#  Nodes
# ──────────────────────────────────────────────────────────────

class Schedule(_PlanModel):
    delay: str = "PT0S"
    at: Optional[str] = None    # absolute RFC 3339 override

    check_delay = field_validator("delay")(_check_duration)


class _NodeBase(_PlanModel):
    id: str = Field(min_length=1)
    channel: Channel = Channel.EMAIL
    transitions: list[Transition] = []

    @property
    def is_terminal(self) -> bool:
        return not self.transitions

    def find_transition(self, event_type: str) -> Optional[Transition]:
        """First declared transition for `event_type` wins."""
        value = getattr(event_type, "value", event_type)
        return next((t for t in self.transitions if t.on == value), None)

    def timeout_transitions(self) -> list[Transition]:
        """Timeout-capable transitions, one per event type, in declaration order."""
        seen: set[str] = set()
        result = []
        for t in self.transitions:
            if t.is_timeout and t.on not in seen:
                seen.add(t.on)
                result.append(t)
        return result

    def duplicate_event_types(self) -> list[str]:
        seen: set[str] = set()
        dupes = []
        for t in self.transitions:
            if t.on in seen and t.on not in dupes:
                dupes.append(t.on)
            seen.add(t.on)
        return dupes


class SendNode(_NodeBase):
    action: Literal["send"] = "send"
    subject: Optional[str] = None
    body: Optional[str] = None
    sender_identity_id: Optional[str] = None
    schedule: Schedule = Schedule()


class WaitNode(_NodeBase):
    action: Literal["wait"] = "wait"


class TimeoutNode(_NodeBase):
    action: Literal["timeout"] = "timeout"


class StopNode(_NodeBase):
    action: Literal["stop"] = "stop"

    @property
    def is_terminal(self) -> bool:
        return True

    @model_validator(mode="after")
    def check_no_transitions(self) -> StopNode:
        if self.transitions:
            raise ValueError(f"stop node '{self.id}' cannot have transitions")
        return self


PlanNode = Annotated[
    Union[SendNode, WaitNode, TimeoutNode, StopNode],
    Field(discriminator="action"),
]


# ──────────────────────────────────────────────────────────────
#  Plan
# ──────────────────────────────────────────────────────────────

class QuietHours(_PlanModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def check_hhmm(cls, value: str) -> str:
        if not is_valid_time_format(value):
            raise ValueError(f"HH:MM 24h time required, got {value!r}")
        return value


class Timers(_PlanModel):
    no_open_after: Optional[str] = Field(default="PT72H", alias="no_open_after")
    no_click_after: Optional[str] = Field(default="PT24H", alias="no_click_after")

    check_durations = field_validator("no_open_after", "no_click_after")(_check_duration)

    def for_event(self, event_type: str) -> Optional[str]:
        value = getattr(event_type, "value", event_type)
        return getattr(self, f"{value}_after", None)


class PlanDefaults(_PlanModel):
    timers: Timers = Timers()


class Plan(_PlanModel):
    version: str = "1.0"
    timezone: str = "UTC"
    quiet_hours: Optional[QuietHours] = None
    defaults: PlanDefaults = PlanDefaults()
    sender_identity_id: Optional[str] = None
    start_node_id: str = Field(min_length=1)
    nodes: list[PlanNode] = Field(min_length=1)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        if not is_valid_timezone(value):
            raise ValueError(f"Unknown IANA timezone {value!r}")
        return value

    @model_validator(mode="after")
    def check_graph(self) -> Plan:
        errors = []
        ids = [n.id for n in self.nodes]
        seen: set[str] = set()
        for node_id in ids:
            if node_id in seen:
                errors.append(f"duplicate node id '{node_id}'")
            seen.add(node_id)

        if self.start_node_id not in seen:
            errors.append(f"startNodeId '{self.start_node_id}' not in nodes")

        for node in self.nodes:
            for i, t in enumerate(node.transitions):
                if t.to not in seen:
                    errors.append(f"node '{node.id}' transition[{i}] targets unknown node '{t.to}'")

        if errors:
            raise ValueError("; ".join(errors))
        return self

    def get_node(self, node_id: str) -> Optional[Union[SendNode, WaitNode, TimeoutNode, StopNode]]:
        return next((n for n in self.nodes if n.id == node_id), None)

    @property
    def start_node(self):
        return self.get_node(self.start_node_id)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def load_plan(raw: Any, reject_duplicate_transitions: bool = False) -> Plan:
    """
    Validate a plan document (dict, JSON string or Plan) and return a Plan.
    Raises PlanValidationError with every problem found.
    """
    if isinstance(raw, Plan):
        plan = raw
    else:
        try:
            if isinstance(raw, (str, bytes)):
                raw = json.loads(raw)
            plan = Plan.model_validate(raw)
        except (ValidationError, ValueError, TypeError) as e:
            raise PlanValidationError(f"Invalid campaign plan: {e}") from e

    if reject_duplicate_transitions:
        dupes = [
            f"node '{n.id}' has duplicate transitions for {', '.join(n.duplicate_event_types())}"
            for n in plan.nodes if n.duplicate_event_types()
        ]
        if dupes:
            raise PlanValidationError("Invalid campaign plan: " + "; ".join(dupes))
    return plan
