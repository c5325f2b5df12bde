"""Exception hierarchy for litestar-flows."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

__all__ = (
    "AlreadyDecided",
    "ApprovalNotFound",
    "DefinitionNotFound",
    "DefinitionValidationError",
    "ExpressionError",
    "FlowsError",
    "HandlerError",
    "HandlerTimeout",
    "InstanceNotFound",
    "InvalidTransition",
    "LockContention",
    "NoMatchingBranch",
    "StepExecutionError",
    "UnknownActionHandler",
)


class FlowsError(Exception):
    """Base exception for all litestar-flows errors.

    All exceptions raised by litestar-flows inherit from this class, so callers
    can catch every engine error with a single except clause.
    """


class LockContention(FlowsError):
    """Raised when another worker already holds the lease on an instance.

    This is transient: the caller should retry advancement later. It never
    changes the instance and is never recorded as a workflow failure.

    Attributes:
        instance_id: The ID of the contended instance.
    """

    def __init__(self, instance_id: str | UUID) -> None:
        """Initialize the exception with the contended instance.

        Args:
            instance_id: The ID of the contended instance.
        """
        self.instance_id = instance_id
        super().__init__(f"Instance '{instance_id}' is locked by another worker")


class InvalidTransition(FlowsError):
    """Raised when a caller requests a transition the state machine forbids.

    Examples are cancelling a terminal instance or deciding an approval whose
    instance is no longer running. The instance is left unchanged.

    Attributes:
        instance_id: The ID of the instance.
        status: The status the instance was in.
        action: The rejected action.
    """

    def __init__(self, instance_id: str | UUID, status: str, action: str) -> None:
        """Initialize the exception with transition details.

        Args:
            instance_id: The ID of the instance.
            status: The status the instance was in.
            action: The rejected action.
        """
        self.instance_id = instance_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} instance '{instance_id}' in status '{status}'")


class NoMatchingBranch(FlowsError):
    """Raised when no condition matches and the step has no default branch.

    This is a definition defect. The orchestrator surfaces it as a Failed
    instance rather than retrying.

    Attributes:
        step_id: The condition step that could not be resolved.
    """

    def __init__(self, step_id: str | None = None) -> None:
        """Initialize the exception with step details.

        Args:
            step_id: The condition step that could not be resolved.
        """
        self.step_id = step_id
        msg = "No condition matched and no default branch is defined"
        if step_id:
            msg += f" for step '{step_id}'"
        super().__init__(msg)


class StepExecutionError(FlowsError):
    """Raised when a step handler fails.

    Attributes:
        step_id: The ID of the step that failed.
        cause: The underlying exception, if any.
    """

    def __init__(self, step_id: str, cause: BaseException | None = None, message: str | None = None) -> None:
        """Initialize the exception with step execution details.

        Args:
            step_id: The ID of the step that failed.
            cause: The underlying exception, if any.
            message: Optional message overriding the default one.
        """
        self.step_id = step_id
        self.cause = cause
        msg = message or f"Step '{step_id}' failed"
        if cause and not message:
            msg += f": {cause}"
        super().__init__(msg)


class HandlerTimeout(StepExecutionError):
    """Raised when a step handler does not finish within its timeout.

    Attributes:
        timeout: The timeout that elapsed, in seconds.
    """

    def __init__(self, step_id: str, timeout: float | None) -> None:
        """Initialize the exception with timeout details.

        Args:
            step_id: The ID of the step that timed out.
            timeout: The timeout that elapsed, in seconds.
        """
        self.timeout = timeout
        if timeout is None:
            message = f"Step '{step_id}' timed out"
        else:
            message = f"Step '{step_id}' timed out after {timeout:g}s"
        super().__init__(step_id, message=message)


class HandlerError(StepExecutionError):
    """Raised when a step handler raises an error."""


class AlreadyDecided(FlowsError):
    """Raised when a decision is recorded on an approval that is not pending.

    Attributes:
        approval_id: The ID of the approval.
        status: The status the approval already has.
    """

    def __init__(self, approval_id: str | UUID, status: str) -> None:
        """Initialize the exception with approval details.

        Args:
            approval_id: The ID of the approval.
            status: The status the approval already has.
        """
        self.approval_id = approval_id
        self.status = status
        super().__init__(f"Approval '{approval_id}' is already {status}")


class InstanceNotFound(FlowsError):
    """Raised when a workflow instance does not exist.

    Attributes:
        instance_id: The ID of the missing instance.
    """

    def __init__(self, instance_id: str | UUID) -> None:
        """Initialize the exception with instance details.

        Args:
            instance_id: The ID of the missing instance.
        """
        self.instance_id = instance_id
        super().__init__(f"Workflow instance '{instance_id}' not found")


class ApprovalNotFound(FlowsError):
    """Raised when an approval does not exist.

    Attributes:
        approval_id: The ID of the missing approval.
    """

    def __init__(self, approval_id: str | UUID) -> None:
        """Initialize the exception with approval details.

        Args:
            approval_id: The ID of the missing approval.
        """
        self.approval_id = approval_id
        super().__init__(f"Approval '{approval_id}' not found")


class DefinitionNotFound(FlowsError):
    """Raised when no matching workflow definition exists.

    Attributes:
        code: The definition code or ID that was requested.
        tenant: The tenant the lookup was scoped to, if any.
    """

    def __init__(self, code: str | UUID, tenant: str | None = None) -> None:
        """Initialize the exception with lookup details.

        Args:
            code: The definition code or ID that was requested.
            tenant: The tenant the lookup was scoped to, if any.
        """
        self.code = code
        self.tenant = tenant
        msg = f"Workflow definition '{code}'"
        if tenant:
            msg += f" for tenant '{tenant}'"
        msg += " not found"
        super().__init__(msg)


class DefinitionValidationError(FlowsError):
    """Raised when a definition violates its structural invariants.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        """Initialize the exception with validation errors.

        Args:
            errors: List of validation error messages.
        """
        self.errors = errors
        super().__init__(f"Workflow definition validation failed: {'; '.join(errors)}")


class UnknownActionHandler(FlowsError):
    """Raised when an action step names a handler that is not registered.

    Attributes:
        name: The unknown handler name.
    """

    def __init__(self, name: str) -> None:
        """Initialize the exception with the handler name.

        Args:
            name: The unknown handler name.
        """
        self.name = name
        super().__init__(f"Action handler '{name}' is not registered")


class ExpressionError(FlowsError):
    """Raised when an action expression cannot be evaluated safely."""
