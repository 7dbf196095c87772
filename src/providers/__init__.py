"""Resource providers.

A provider implements the create/read/update/delete lifecycle for one
resource type. Providers raise ResourceApplyFailed when a change fails.
"""

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from config import ConfigError
from providers.local_file import LocalFileProvider
from providers.null import NullResourceProvider
from providers.provisioners import run_provisioners


@runtime_checkable
class ResourceProvider(Protocol):
    """Protocol for resource type handlers.

    Attributes:
        computed: Attributes set by the provider, never by configuration
        replace_on: Attributes whose change forces replacement
    """

    computed: frozenset
    replace_on: frozenset

    def create(self, key: str, attributes: dict) -> dict:
        """Create the resource and return its full attributes."""

    def read(self, key: str, attributes: dict) -> Optional[dict]:
        """Return current attributes, or None if the resource is gone."""

    def update(self, key: str, prior: dict, attributes: dict) -> dict:
        """Update in place and return the full attributes."""

    def delete(self, key: str, attributes: dict) -> None:
        """Delete the resource."""


BUILTIN_PROVIDERS = {
    'null_resource': NullResourceProvider,
    'local_file': LocalFileProvider,
}


class ProviderRegistry:
    """Provider instances by resource type, bound to a working directory."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self._providers: dict[str, ResourceProvider] = {}

    def register(self, type_: str, provider: ResourceProvider) -> None:
        self._providers[type_] = provider

    def get(self, type_: str) -> ResourceProvider:
        """Get the provider for a resource type.

        Raises:
            ConfigError: If no provider handles the type
        """
        if type_ not in self._providers:
            if type_ not in BUILTIN_PROVIDERS:
                raise ConfigError(
                    f"No provider for resource type '{type_}'. "
                    f"Available: {', '.join(sorted(set(BUILTIN_PROVIDERS) | set(self._providers)))}"
                )
            self._providers[type_] = BUILTIN_PROVIDERS[type_](self.base_dir)
        return self._providers[type_]

    def types(self) -> list[str]:
        return sorted(set(BUILTIN_PROVIDERS) | set(self._providers))


__all__ = [
    'ResourceProvider',
    'ProviderRegistry',
    'BUILTIN_PROVIDERS',
    'LocalFileProvider',
    'NullResourceProvider',
    'run_provisioners',
]
