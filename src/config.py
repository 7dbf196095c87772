"""Engine settings management.

Settings are loaded from a YAML file:
- $GROUNDSTATE_CONFIG if set
- groundstate.yaml in the working directory otherwise

Example:
    backend:
      type: local
      path: terraform.tfstate
    parallelism: 10
    lock:
      stale_after: 3600
      timeout: 30
    audit_log: .groundstate/audit.jsonl

Environment overrides (highest priority):
    GROUNDSTATE_PARALLELISM, GROUNDSTATE_LOCK_TIMEOUT, GROUNDSTATE_STATE_PATH

The merge order is: defaults -> file -> environment.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'groundstate.yaml'
DEFAULT_STATE_FILE = 'groundstate.tfstate'
SUPPORTED_BACKENDS = {'local', 'http'}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class BackendConfig:
    """Where state and locks are stored.

    Attributes:
        type: Backend type (local, http)
        path: State file path (local backend)
        address: State URL (http backend)
        lock_address: Lock URL (http backend, defaults to address)
        unlock_address: Unlock URL (http backend, defaults to lock_address)
        username: Basic auth user (http backend)
        password: Basic auth password (http backend)
        timeout: HTTP request timeout in seconds
    """
    type: str = 'local'
    path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))
    address: str = ''
    lock_address: str = ''
    unlock_address: str = ''
    username: str = ''
    password: str = ''
    timeout: int = 30

    @classmethod
    def from_dict(cls, data: Optional[dict], base_dir: Path) -> 'BackendConfig':
        if not data:
            return cls(path=base_dir / DEFAULT_STATE_FILE)

        backend_type = data.get('type', 'local')
        if backend_type not in SUPPORTED_BACKENDS:
            raise ConfigError(
                f"Unsupported backend type: {backend_type}. "
                f"Supported: {', '.join(sorted(SUPPORTED_BACKENDS))}"
            )

        path = Path(data.get('path', DEFAULT_STATE_FILE))
        if not path.is_absolute():
            path = base_dir / path

        if backend_type == 'http' and not data.get('address'):
            raise ConfigError("http backend requires 'address'")

        lock_address = data.get('lock_address') or data.get('address', '')
        return cls(
            type=backend_type,
            path=path,
            address=data.get('address', ''),
            lock_address=lock_address,
            unlock_address=data.get('unlock_address') or lock_address,
            username=data.get('username', ''),
            password=data.get('password', ''),
            timeout=int(data.get('timeout', 30)),
        )


@dataclass
class EngineConfig:
    """Settings for a groundstate working directory."""
    work_dir: Path
    backend: BackendConfig = field(default_factory=BackendConfig)
    parallelism: int = 10
    lock_stale_after: float = 3600.0
    lock_timeout: float = 0.0
    audit_log: Optional[Path] = None
    config_file: Optional[Path] = None


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _env_number(name: str, cast):
    value = os.environ.get(name)
    if value is None or value == '':
        return None
    try:
        return cast(value)
    except ValueError:
        raise ConfigError(f"{name}={value} is not a valid number")


def get_work_dir() -> Path:
    """Get the working directory (holds configuration and local state)."""
    if env_path := os.environ.get('GROUNDSTATE_WORKDIR'):
        return Path(env_path)
    return Path.cwd()


def find_config_file(work_dir: Path) -> Optional[Path]:
    """Discover the settings file.

    Resolution order:
    1. $GROUNDSTATE_CONFIG environment variable
    2. groundstate.yaml in the working directory
    """
    if env_path := os.environ.get('GROUNDSTATE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"GROUNDSTATE_CONFIG={env_path} does not exist")

    candidate = work_dir / CONFIG_FILENAME
    if candidate.exists():
        return candidate
    return None


def load_config(work_dir: Optional[Path] = None) -> EngineConfig:
    """Load engine settings for a working directory."""
    if work_dir is None:
        work_dir = get_work_dir()

    config_file = find_config_file(work_dir)
    data = _parse_yaml(config_file) if config_file else {}
    if config_file:
        logger.debug(f"Loaded settings from {config_file}")

    lock_data = data.get('lock') or {}
    config = EngineConfig(
        work_dir=work_dir,
        backend=BackendConfig.from_dict(data.get('backend'), work_dir),
        parallelism=int(data.get('parallelism', 10)),
        lock_stale_after=float(lock_data.get('stale_after', 3600)),
        lock_timeout=float(lock_data.get('timeout', 0)),
        config_file=config_file,
    )
    if audit_log := data.get('audit_log'):
        audit_path = Path(audit_log)
        config.audit_log = audit_path if audit_path.is_absolute() else work_dir / audit_path

    # Environment overrides
    if (parallelism := _env_number('GROUNDSTATE_PARALLELISM', int)) is not None:
        config.parallelism = parallelism
    if (lock_timeout := _env_number('GROUNDSTATE_LOCK_TIMEOUT', float)) is not None:
        config.lock_timeout = lock_timeout
    if state_path := os.environ.get('GROUNDSTATE_STATE_PATH'):
        path = Path(state_path)
        config.backend.path = path if path.is_absolute() else work_dir / path

    if config.parallelism < 1:
        raise ConfigError(f"parallelism must be at least 1, got {config.parallelism}")
    return config
