"""In-memory definition registry.

This module provides a registry for storing and retrieving workflow
definitions per tenant with support for versioning. It implements the
``DefinitionStore`` protocol for tests and single-process deployments.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from litestar_flows.core.types import DefinitionStatus
from litestar_flows.exceptions import DefinitionNotFound

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_flows.core.definition import WorkflowDefinition

__all__ = ["DefinitionRegistry"]


class DefinitionRegistry:
    """Registry for storing and retrieving workflow definitions.

    Definitions are indexed by ``(tenant, code)`` and version. Registering an
    active definition archives the previously active version of the same
    code, so at most one version per code is active.

    Attributes:
        _definitions: Nested dict mapping (tenant, code) -> version -> definition.
        _by_id: Map of definition IDs to definitions.
    """

    def __init__(self) -> None:
        """Initialize an empty definition registry."""
        self._definitions: dict[tuple[str | None, str], dict[int, WorkflowDefinition]] = {}
        self._by_id: dict[UUID, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Register a definition version.

        Args:
            definition: The definition to store.

        Returns:
            The registered definition.

        Raises:
            DefinitionValidationError: If an active definition is structurally invalid.

        Example:
            >>> registry = DefinitionRegistry()
            >>> registry.register(expense_definition)
        """
        if definition.status is DefinitionStatus.ACTIVE:
            definition.ensure_valid()
            for other in self._definitions.get((definition.tenant, definition.code), {}).values():
                if other.status is DefinitionStatus.ACTIVE and other.version != definition.version:
                    other.status = DefinitionStatus.ARCHIVED

        versions = self._definitions.setdefault((definition.tenant, definition.code), {})
        versions[definition.version] = definition
        self._by_id[definition.id] = definition
        return definition

    async def get_active_definition(self, code: str, tenant: str | None = None) -> WorkflowDefinition:
        """Return the active definition for ``code`` within ``tenant``.

        Raises:
            DefinitionNotFound: If no active version exists.
        """
        versions = self._definitions.get((tenant, code), {})
        active = [d for d in versions.values() if d.status is DefinitionStatus.ACTIVE]
        if not active:
            raise DefinitionNotFound(code, tenant)
        return max(active, key=lambda d: d.version)

    async def get_definition(self, definition_id: UUID) -> WorkflowDefinition:
        """Return the definition version with the given ID.

        Raises:
            DefinitionNotFound: If the ID is unknown.
        """
        try:
            return self._by_id[definition_id]
        except KeyError:
            raise DefinitionNotFound(definition_id) from None

    def list_definitions(self, tenant: str | None = None, active_only: bool = True) -> list[WorkflowDefinition]:
        """List registered definitions of a tenant.

        Args:
            tenant: Tenant to list.
            active_only: If True, only return active versions.
        """
        definitions: list[WorkflowDefinition] = []
        for (owner, _), versions in self._definitions.items():
            if owner != tenant:
                continue
            definitions.extend(
                d for d in versions.values() if not active_only or d.status is DefinitionStatus.ACTIVE
            )
        return sorted(definitions, key=lambda d: (d.code, d.version))

    def get_versions(self, code: str, tenant: str | None = None) -> list[int]:
        """Get all registered versions of a definition code.

        Raises:
            DefinitionNotFound: If the code is unknown.
        """
        if (tenant, code) not in self._definitions:
            raise DefinitionNotFound(code, tenant)
        return sorted(self._definitions[(tenant, code)])

    def has_definition(self, code: str, tenant: str | None = None) -> bool:
        return bool(self._definitions.get((tenant, code)))
