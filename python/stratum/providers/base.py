"""
stratum/providers/base.py

The provider boundary: an abstract capability every cloud API binding must
implement, plus the per-type schema the planner uses to decide between an
in-place update and a replacement.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from types import TracebackType
from typing import Any, Dict, FrozenSet, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from stratum.errors import ConfigError


class ResourceSchema(BaseModel):
    """Describes one resource type.

    Attributes:
        type: The resource type name.
        force_new: Attributes that cannot change in place; changing one forces Replace.
        computed: Attributes the provider sets on create (the id is always computed).
    """

    model_config = ConfigDict(frozen=True)

    type: str
    force_new: FrozenSet[str] = Field(default_factory=frozenset)
    computed: FrozenSet[str] = Field(default_factory=frozenset)


class Provider(ABC):
    """Abstract provider capability: describe, create, update, delete.

    Implementations raise `ProviderError` (with `transient=True` for failures
    worth retrying, such as throttling) and `NotFoundError` when an id is unknown.
    """

    name: str = "abstract"

    def __init__(self, schemas: Optional[List[ResourceSchema]] = None) -> None:
        self._schemas: Dict[str, ResourceSchema] = {s.type: s for s in schemas or []}

    def schema(self, resource_type: str) -> ResourceSchema:
        """Return the schema for `resource_type`.

        Raises:
            ConfigError: If this provider does not support the type.
        """
        if resource_type not in self._schemas:
            raise ConfigError(
                f"Provider '{self.name}' does not support resource type '{resource_type}'."
            )
        return self._schemas[resource_type]

    @property
    def resource_types(self) -> List[str]:
        return sorted(self._schemas)

    async def open(self) -> None:
        """Prepare the provider for use. Default: nothing."""

    async def close(self) -> None:
        """Release provider resources. Default: nothing."""

    async def __aenter__(self) -> Provider:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    @abstractmethod
    async def describe(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        """Return the live attributes of an object, or None if it does not exist."""

    @abstractmethod
    async def create(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        """Create an object and return its id."""

    @abstractmethod
    async def update(
        self, resource_type: str, resource_id: str, attributes: Dict[str, Any]
    ) -> None:
        """Update an object's configurable attributes in place."""

    @abstractmethod
    async def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete an object."""
