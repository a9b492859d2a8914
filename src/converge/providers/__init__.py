"""Provider clients the executor applies actions through."""

from converge.config.models import ProviderConfig
from converge.config.parser import Config

from .base import ProviderClient
from .local import LocalProvider

__all__ = [
    'ProviderClient',
    'LocalProvider',
    'create_provider',
]


def create_provider(config: Config) -> ProviderClient:
    """Create the provider client described by the configuration."""
    provider: ProviderConfig = config.provider
    if provider.type == 'local':
        return LocalProvider(str(config.resolve_path(provider.path)))
    raise ValueError(f"Unsupported provider type: {provider.type}")
