"""Resource providers."""

from pathlib import Path
from typing import Optional

from config import ConfigError, get_state_dir
from providers.base import ResourceProvider
from providers.local import INVENTORY_FILE, LocalProvider

PROVIDERS = ('local',)


def get_provider(name: str, stack_name: str, state_dir: Optional[Path] = None) -> ResourceProvider:
    """Build the named provider for a stack.

    Raises:
        ConfigError: If the provider name is unknown
    """
    if name == 'local':
        base = state_dir or get_state_dir()
        return LocalProvider(base / stack_name / INVENTORY_FILE)
    raise ConfigError(f"Unknown provider '{name}'. Available: {', '.join(PROVIDERS)}")


__all__ = [
    'ResourceProvider',
    'LocalProvider',
    'get_provider',
]
