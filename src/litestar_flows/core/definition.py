"""Workflow definition structures.

This module provides the immutable template side of the engine: steps, their
typed configuration variants, branch conditions, and the definition that
orders them. Definitions are read-only at runtime; the orchestrator only asks
them for steps and successors.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Union
from uuid import UUID, uuid4

from litestar_flows.core.types import DefinitionStatus, Operator, StepType, TriggerType
from litestar_flows.exceptions import DefinitionValidationError

__all__ = [
    "ActionConfig",
    "ApprovalConfig",
    "Condition",
    "ConditionConfig",
    "NotificationConfig",
    "Step",
    "StepConfig",
    "WorkflowDefinition",
]


@dataclass(frozen=True)
class Condition:
    """A single outgoing branch of a condition step.

    Attributes:
        field: Dotted path into the instance context (``"order.total"``).
        operator: Comparison operator.
        value: Value the context field is compared against.
        next_step_id: Step to continue with when this condition matches.
        is_default: Fallback branch used when nothing else matches.
        sequence: Evaluation order, ascending.
        id: Identifier of the condition.
    """

    next_step_id: str
    field: str = ""
    operator: Operator = Operator.EQ
    value: Any = None
    is_default: bool = False
    sequence: int = 0
    id: str | None = None


@dataclass(frozen=True)
class ActionConfig:
    """Configuration for an action step.

    Attributes:
        handler: Name of the registered action handler.
        params: Handler parameters; string values may use ``{{path}}`` placeholders.
        timeout: Handler timeout in seconds. Falls back to the step timeout,
            then to the engine default.
    """

    handler: str
    params: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None

    step_type = StepType.ACTION


@dataclass(frozen=True)
class ConditionConfig:
    """Configuration for a condition step."""

    conditions: tuple[Condition, ...] = ()

    step_type = StepType.CONDITION


@dataclass(frozen=True)
class ApprovalConfig:
    """Configuration for an approval step.

    Attributes:
        role: Role handed to the actor resolver to look up candidates.
        fallback_approver: Approver used once the escalation chain is exhausted.
        priority: Priority stored on created approvals.
        escalation_extension: How far ``due_at`` moves on escalation. Defaults
            to the step timeout.
    """

    role: str | None = None
    fallback_approver: str | None = None
    priority: int = 0
    escalation_extension: timedelta | None = None

    step_type = StepType.APPROVAL


@dataclass(frozen=True)
class NotificationConfig:
    """Configuration for a notification step."""

    channel: str = "default"
    template: str | None = None
    recipients: tuple[str, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)

    step_type = StepType.NOTIFICATION


StepConfig = Union[ActionConfig, ConditionConfig, ApprovalConfig, NotificationConfig]
"""Tagged union of per-type step configurations."""


@dataclass(frozen=True)
class Step:
    """One unit of work within a workflow definition.

    The step type is carried by the config variant, so a step can never hold a
    configuration meant for another type.

    Attributes:
        id: Identifier of the step, unique within its definition.
        config: Typed configuration; determines ``type``.
        sequence: Position within the definition, unique.
        timeout: Handler timeout (action) or approval deadline (approval).
        max_retries: Number of retries after the first failed attempt.
        required: When False a terminal failure is skipped with a warning.
        next_step_id: Explicit static successor for non-condition steps.
        is_terminal: Marks the end of a branch; the instance completes here.
        name: Human-readable name.
        definition_id: Owning definition, filled in by the definition.
    """

    id: str
    config: StepConfig
    sequence: int = 0
    timeout: timedelta | None = None
    max_retries: int = 0
    required: bool = True
    next_step_id: str | None = None
    is_terminal: bool = False
    name: str = ""
    definition_id: UUID | None = None

    @property
    def type(self) -> StepType:
        """The step type, derived from the config variant."""
        return self.config.step_type

    @property
    def conditions(self) -> tuple[Condition, ...]:
        """Branch conditions in evaluation order; empty for non-condition steps."""
        if isinstance(self.config, ConditionConfig):
            return tuple(sorted(self.config.conditions, key=lambda c: c.sequence))
        return ()

    @property
    def default_condition(self) -> Condition | None:
        """The ``is_default`` branch of a condition step, if any."""
        for condition in self.conditions:
            if condition.is_default:
                return condition
        return None

    @property
    def timeout_seconds(self) -> float | None:
        """The step timeout in seconds, or None."""
        return self.timeout.total_seconds() if self.timeout is not None else None


@dataclass
class WorkflowDefinition:
    """Declarative, versioned workflow template.

    Example:
        >>> definition = WorkflowDefinition(
        ...     code="expense_approval",
        ...     name="Expense approval",
        ...     tenant="acme",
        ...     steps=[
        ...         Step(id="validate", config=ActionConfig(handler="set_context"), sequence=1),
        ...         Step(id="approve", config=ApprovalConfig(role="manager"), sequence=2),
        ...     ],
        ... )
        >>> definition.first_step.id
        'validate'
    """

    code: str
    name: str
    steps: list[Step]
    tenant: str | None = None
    version: int = 1
    status: DefinitionStatus = DefinitionStatus.ACTIVE
    trigger_type: TriggerType = TriggerType.MANUAL
    entity_type: str | None = None
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        ordered = sorted(self.steps, key=lambda s: s.sequence)
        self.steps = [
            step if step.definition_id == self.id else _with_definition(step, self.id) for step in ordered
        ]
        self._index = {step.id: position for position, step in enumerate(self.steps)}

    @property
    def first_step(self) -> Step:
        """The step new instances start on."""
        if not self.steps:
            raise DefinitionValidationError([f"Definition '{self.code}' has no steps"])
        return self.steps[0]

    def get_step(self, step_id: str) -> Step:
        """Return the step with the given ID.

        Raises:
            KeyError: If the step does not belong to this definition.
        """
        try:
            return self.steps[self._index[step_id]]
        except KeyError:
            msg = f"Step '{step_id}' not found in definition '{self.code}' v{self.version}"
            raise KeyError(msg) from None

    def has_step(self, step_id: str) -> bool:
        return step_id in self._index

    def successor_of(self, step: Step) -> Step | None:
        """Return the static successor of a non-condition step.

        An explicit ``next_step_id`` wins; a terminal step has no successor;
        otherwise the next step by sequence follows.
        """
        if step.next_step_id is not None:
            return self.get_step(step.next_step_id)
        if step.is_terminal:
            return None
        position = self._index[step.id] + 1
        return self.steps[position] if position < len(self.steps) else None

    def default_successor_of(self, step: Step) -> Step | None:
        """Return where an optional step continues after a terminal failure.

        For condition steps this is the default branch; for every other step it
        is the static successor.
        """
        if step.type is StepType.CONDITION:
            default = step.default_condition
            return self.get_step(default.next_step_id) if default else None
        return self.successor_of(step)

    def validate(self) -> list[str]:
        """Check the structural invariants of an active definition.

        Returns:
            List of error messages, empty when the definition is valid.
        """
        errors: list[str] = []
        if self.status is DefinitionStatus.ACTIVE and not self.steps:
            errors.append("An active definition must have at least one step")

        seen_sequences: set[int] = set()
        seen_ids: set[str] = set()
        for step in self.steps:
            if step.id in seen_ids:
                errors.append(f"Duplicate step id '{step.id}'")
            seen_ids.add(step.id)
            if step.sequence in seen_sequences:
                errors.append(f"Duplicate sequence {step.sequence} on step '{step.id}'")
            seen_sequences.add(step.sequence)
            if step.max_retries < 0:
                errors.append(f"Step '{step.id}' has a negative retry count")
            if step.next_step_id is not None and not self.has_step(step.next_step_id):
                errors.append(f"Step '{step.id}' links to unknown step '{step.next_step_id}'")

            if step.type is StepType.CONDITION:
                conditions = step.conditions
                if not conditions:
                    errors.append(f"Condition step '{step.id}' has no conditions")
                if sum(1 for c in conditions if c.is_default) > 1:
                    errors.append(f"Condition step '{step.id}' has more than one default branch")
                errors.extend(
                    f"Condition on step '{step.id}' references unknown step '{c.next_step_id}'"
                    for c in conditions
                    if not self.has_step(c.next_step_id)
                )
        return errors

    def ensure_valid(self) -> None:
        """Raise DefinitionValidationError if ``validate`` reports errors."""
        errors = self.validate()
        if errors:
            raise DefinitionValidationError(errors)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the definition to a JSON-compatible dictionary."""
        return {
            "id": str(self.id),
            "code": self.code,
            "name": self.name,
            "tenant": self.tenant,
            "version": self.version,
            "status": str(self.status),
            "trigger_type": str(self.trigger_type),
            "entity_type": self.entity_type,
            "steps": [_step_to_dict(step) for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        """Rebuild a definition serialized with ``to_dict``."""
        return cls(
            id=UUID(data["id"]),
            code=data["code"],
            name=data["name"],
            tenant=data.get("tenant"),
            version=data.get("version", 1),
            status=DefinitionStatus(data.get("status", DefinitionStatus.ACTIVE)),
            trigger_type=TriggerType(data.get("trigger_type", TriggerType.MANUAL)),
            entity_type=data.get("entity_type"),
            steps=[_step_from_dict(step) for step in data.get("steps", [])],
        )


def _with_definition(step: Step, definition_id: UUID) -> Step:
    return replace(step, definition_id=definition_id)


def _seconds(value: timedelta | None) -> float | None:
    return value.total_seconds() if value is not None else None


def _timedelta(value: float | None) -> timedelta | None:
    return timedelta(seconds=value) if value is not None else None


def _config_to_dict(config: StepConfig) -> dict[str, Any]:
    if isinstance(config, ActionConfig):
        return {"handler": config.handler, "params": dict(config.params), "timeout": config.timeout}
    if isinstance(config, ConditionConfig):
        return {
            "conditions": [
                {
                    "id": c.id,
                    "field": c.field,
                    "operator": str(c.operator),
                    "value": c.value,
                    "next_step_id": c.next_step_id,
                    "is_default": c.is_default,
                    "sequence": c.sequence,
                }
                for c in config.conditions
            ]
        }
    if isinstance(config, ApprovalConfig):
        return {
            "role": config.role,
            "fallback_approver": config.fallback_approver,
            "priority": config.priority,
            "escalation_extension": _seconds(config.escalation_extension),
        }
    return {
        "channel": config.channel,
        "template": config.template,
        "recipients": list(config.recipients),
        "data": dict(config.data),
    }


def _config_from_dict(step_type: StepType, data: dict[str, Any]) -> StepConfig:
    if step_type is StepType.ACTION:
        return ActionConfig(handler=data["handler"], params=data.get("params") or {}, timeout=data.get("timeout"))
    if step_type is StepType.CONDITION:
        return ConditionConfig(
            conditions=tuple(
                Condition(
                    id=c.get("id"),
                    field=c.get("field", ""),
                    operator=Operator(c.get("operator", Operator.EQ)),
                    value=c.get("value"),
                    next_step_id=c["next_step_id"],
                    is_default=c.get("is_default", False),
                    sequence=c.get("sequence", 0),
                )
                for c in data.get("conditions", [])
            )
        )
    if step_type is StepType.APPROVAL:
        return ApprovalConfig(
            role=data.get("role"),
            fallback_approver=data.get("fallback_approver"),
            priority=data.get("priority", 0),
            escalation_extension=_timedelta(data.get("escalation_extension")),
        )
    return NotificationConfig(
        channel=data.get("channel", "default"),
        template=data.get("template"),
        recipients=tuple(data.get("recipients", ())),
        data=data.get("data") or {},
    )


def _step_to_dict(step: Step) -> dict[str, Any]:
    return {
        "id": step.id,
        "type": str(step.type),
        "name": step.name,
        "sequence": step.sequence,
        "timeout": _seconds(step.timeout),
        "max_retries": step.max_retries,
        "required": step.required,
        "next_step_id": step.next_step_id,
        "is_terminal": step.is_terminal,
        "config": _config_to_dict(step.config),
    }


def _step_from_dict(data: dict[str, Any]) -> Step:
    step_type = StepType(data["type"])
    return Step(
        id=data["id"],
        name=data.get("name", ""),
        sequence=data.get("sequence", 0),
        timeout=_timedelta(data.get("timeout")),
        max_retries=data.get("max_retries", 0),
        required=data.get("required", True),
        next_step_id=data.get("next_step_id"),
        is_terminal=data.get("is_terminal", False),
        config=_config_from_dict(step_type, data.get("config") or {}),
    )
