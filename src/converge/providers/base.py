"""Provider client interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Optional, Tuple


class ProviderClient(ABC):
    """Base class for clients that create, read, update and delete resources.

    Implementations raise ``ProviderError`` (or any exception) on failure;
    the executor records the failure against the resource.
    """

    @abstractmethod
    def create(self, resource_type: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create a resource.

        Args:
            resource_type: Resource type
            attributes: Fully resolved input attributes

        Returns:
            Tuple of (provider id, computed attributes)
        """

    @abstractmethod
    def read(self, resource_type: str, provider_id: str) -> Optional[Dict[str, Any]]:
        """Read a resource's current attributes.

        Returns:
            Current attributes, or None if the resource no longer exists
        """

    @abstractmethod
    def update(
        self,
        resource_type: str,
        provider_id: str,
        attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update a resource in place.

        Returns:
            Computed attributes after the update
        """

    @abstractmethod
    def delete(self, resource_type: str, provider_id: str) -> None:
        """Delete a resource. Deleting a resource that is already gone succeeds."""

    def immutable_attributes(self, resource_type: str) -> FrozenSet[str]:
        """Attributes of a type that cannot be changed without replacement."""
        return frozenset()

    def is_globally_unique(self, resource_type: str) -> bool:
        """Whether replacing a resource of this type has external side effects."""
        return False
