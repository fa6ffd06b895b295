"""Stack configuration management.

Configuration is loaded from YAML files:
- stacks/{name}.yaml: Stack declaration (resources, outputs, config, settings)
- stacks/secrets.yaml: Sensitive values referenced by fn::secret (decrypted)

Directory resolution:
1. $AIRSTACK_STACKS_DIR / $AIRSTACK_STATE_DIR environment variables
2. stacks/ and .states/ under the airstack directory
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

SECRETS_FILE = 'secrets.yaml'


class ConfigError(Exception):
    """Configuration error."""


def get_base_dir() -> Path:
    """Get the airstack directory."""
    return Path(__file__).parent.parent  # src/ -> airstack/


def get_stacks_dir() -> Path:
    """Discover the directory holding stack files.

    Resolution order:
    1. $AIRSTACK_STACKS_DIR environment variable
    2. stacks/ under the airstack directory
    """
    if env_path := os.environ.get('AIRSTACK_STACKS_DIR'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"AIRSTACK_STACKS_DIR={env_path} does not exist")
    return get_base_dir() / 'stacks'


def get_state_dir() -> Path:
    """Directory for persisted deployment state (created on first save)."""
    if env_path := os.environ.get('AIRSTACK_STATE_DIR'):
        return Path(env_path)
    return get_base_dir() / '.states'


def parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


class SecretStore:
    """Read-only store of secret values keyed by name.

    Values are handed out as plaintext strings; callers wrap them so they
    never reach logs or state snapshots.
    """

    def __init__(self, values: Optional[dict] = None, source: Optional[Path] = None):
        self._values = dict(values or {})
        self.source = source

    @classmethod
    def from_file(cls, path: Path) -> 'SecretStore':
        """Load secrets from a YAML file. A missing file yields an empty store."""
        if not path.exists():
            logger.debug(f"No secrets file at {path}")
            return cls(source=path)
        return cls(parse_yaml(path), source=path)

    @classmethod
    def for_stack(cls, stack_path: Optional[Path]) -> 'SecretStore':
        """Secrets beside a stack file, falling back to the stacks directory."""
        if stack_path is not None:
            return cls.from_file(stack_path.parent / SECRETS_FILE)
        return cls.from_file(get_stacks_dir() / SECRETS_FILE)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def keys(self) -> list[str]:
        return sorted(self._values)

    def require(self, key: str) -> str:
        """Return the plaintext for key.

        Raises:
            ConfigError: If the secret is not defined
        """
        if key not in self._values:
            where = f" in {self.source}" if self.source else ''
            raise ConfigError(f"Missing required secret '{key}'{where}")
        return str(self._values[key])
