"""Runtime settings loaded from ``.flowsmith/config.yaml``."""

import logging
import random
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".flowsmith"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# Flowsmith runtime configuration

# Maximum number of nodes executing at the same time
max_parallel: 4

# Retry policy for failing actions and transforms
retry:
  max_attempts: 3
  initial_delay: 0.5      # seconds before the first retry
  backoff_multiplier: 2.0
  max_delay: 30.0
  jitter: 0.1             # +/- fraction of each delay

# How often the scheduler checks for cancellation (seconds)
poll_interval: 0.05

# What happens to a node that references a skipped node: fail | skip
skipped_reference_policy: fail

# Optional prefix for credential environment variables (e.g. FLOWSMITH_)
credential_prefix: null

# Run history database
db_path: .flowsmith/runs.db
"""


class ConfigError(Exception):
    """Invalid settings file."""

    pass


class RetryPolicy(BaseModel):
    """Configuration for retry behavior."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


class RuntimeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_parallel: int = Field(default=4, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    poll_interval: float = Field(default=0.05, gt=0)
    skipped_reference_policy: Literal["fail", "skip"] = "fail"
    credential_prefix: str | None = None
    db_path: str = f"{CONFIG_DIR}/runs.db"


def config_path(repo_path: Path | None = None) -> Path:
    return (repo_path or Path.cwd()) / CONFIG_DIR / CONFIG_FILE


def load_settings(repo_path: Path | None = None) -> RuntimeSettings:
    """Load settings for a project directory.

    A missing file yields defaults. A relative ``db_path`` is resolved
    against ``repo_path``.

    Raises:
        ConfigError: If the file is not valid YAML or has invalid values
    """
    path = config_path(repo_path)
    if not path.exists():
        logger.debug(f"No config at {path}, using defaults")
        settings = RuntimeSettings()
    else:
        settings = _read_settings(path)

    if repo_path is not None and not Path(settings.db_path).is_absolute():
        settings = settings.model_copy(update={"db_path": str(repo_path / settings.db_path)})
    return settings


def write_default_config(repo_path: Path | None = None) -> Path | None:
    """Create ``.flowsmith/config.yaml`` unless it already exists."""
    path = config_path(repo_path)
    if path.exists():
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    return path


def _read_settings(path: Path) -> RuntimeSettings:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config in {path}: expected a mapping")

    try:
        return RuntimeSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e
