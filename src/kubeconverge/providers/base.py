"""Provider adapter interface and registry."""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from kubeconverge.utils.errors import ConfigurationError, ErrorContext


class ProviderAdapter(ABC):
    """CRUD capability for one resource kind.

    Every operation must be safe to retry. In particular ``create`` on an
    object that already exists under the same natural key must adopt it
    instead of producing a duplicate.

    Adapters raise ``TransientProviderError`` for failures worth retrying and
    ``PermanentProviderError`` for failures that need an operator. Any other
    exception is classified by the apply engine.
    """

    #: Resource kind handled by this adapter
    kind: str = ""

    #: Attributes that cannot be changed in place
    replace_fields: FrozenSet[str] = frozenset()

    #: Whether a replacement may be created before the old object is deleted
    create_before_destroy: bool = False

    @abstractmethod
    def create(self, name: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create (or adopt) the object.

        Args:
            name: Logical name, used as the natural key by default
            attributes: Fully resolved attributes

        Returns:
            Tuple of provider id and outputs
        """

    @abstractmethod
    def read(self, provider_id: str) -> Dict[str, Any]:
        """Current attributes of the object.

        Raises:
            ResourceNotFoundError: If the object does not exist
        """

    @abstractmethod
    def update(self, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply attribute changes in place and return the new outputs."""

    @abstractmethod
    def delete(self, provider_id: str) -> None:
        """Delete the object. Deleting a missing object is not an error."""

    def requires_replacement(self, field: str) -> bool:
        return field in self.replace_fields


class ProviderRegistry:
    """Maps resource kinds to their adapters."""

    def __init__(self, adapters: Optional[Iterable[ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter: ProviderAdapter, kind: Optional[str] = None) -> None:
        kind = kind or adapter.kind
        if not kind:
            raise ConfigurationError(f"Adapter {type(adapter).__name__} does not declare a kind")
        self._adapters[kind] = adapter

    def get(self, kind: str) -> ProviderAdapter:
        """Adapter for ``kind``.

        Raises:
            ConfigurationError: If no adapter handles the kind
        """
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ConfigurationError(
                f"No provider adapter registered for kind '{kind}'",
                context=ErrorContext(resource_type=kind),
                suggestions=[f"Registered kinds: {', '.join(self.kinds()) or 'none'}"]
            )
        return adapter

    def kinds(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, kind: str) -> bool:
        return kind in self._adapters
