"""Configuration objects for kube-sync.

Configuration is read from defaults, then an optional YAML file, then
`KUBE_SYNC_*` environment variables, each overriding the previous one.

```yaml
max_concurrent_applies: 10
backoff_max_delay: 600
cache_dir: /var/cache/kube-sync
```
"""

from dataclasses import dataclass, fields
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
from mashumaro.exceptions import ExtraKeysError, InvalidFieldValue, MissingField
import yaml

from .exceptions import InputException

_LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "KUBE_SYNC_"


@dataclass
class ControllerConfig(DataClassDictMixin):
    """Configuration for the reconciliation controller."""

    poll_interval: int | None = None
    """Seconds between polls, overriding the interval of every Application."""

    max_concurrent_applies: int = 5
    """Size of the worker pool for applies within one tier."""

    backoff_base_delay: float = 5.0
    """Delay in seconds before the first retry after a failed cycle."""

    backoff_max_delay: float = 300.0
    """Maximum delay in seconds between retries."""

    backoff_jitter_factor: float = 0.1
    """Jitter of +/- this fraction applied to every retry delay."""

    history_limit: int = 10
    """Number of SyncResults retained per Application."""

    update_retries: int = 3
    """Retries of an update rejected for a stale resourceVersion."""

    cache_dir: str | None = None
    """Directory for cached clones, a temporary directory when unset."""

    kustomize_bin: str = "kustomize"
    """Path of the kustomize binary."""

    strict_substitution: bool = True
    """Treat a reference to an undefined substitution variable as an error."""

    class Config(BaseConfig):
        omit_none = True
        forbid_extra_keys = True

    def merge_env(self, environ: dict[str, str] | None = None) -> "ControllerConfig":
        """Return a copy with values overridden from the environment."""
        environ = dict(os.environ if environ is None else environ)
        values = self.to_dict()
        for config_field in fields(self):
            key = f"{ENV_PREFIX}{config_field.name.upper()}"
            if (value := environ.get(key)) is not None:
                values[config_field.name] = _parse_env(key, value)
        return _from_dict(values, "environment")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "ControllerConfig":
        """Load from environment variables over the defaults."""
        return cls().merge_env(environ)


def _parse_env(key: str, value: str) -> Any:
    """Parse an environment variable value as a YAML scalar."""
    try:
        return yaml.safe_load(value) if value else None
    except yaml.YAMLError as err:
        raise InputException(f"Invalid value for {key}: {err}") from err


def _from_dict(values: dict[str, Any], source: str) -> ControllerConfig:
    try:
        return ControllerConfig.from_dict(values)
    except (ExtraKeysError, InvalidFieldValue, MissingField, ValueError) as err:
        raise InputException(f"Invalid configuration from {source}: {err}") from err


async def load_config(
    path: Path | None = None, environ: dict[str, str] | None = None
) -> ControllerConfig:
    """Load the controller configuration from a YAML file and the environment."""
    config = ControllerConfig()
    if path is not None:
        try:
            async with aiofiles.open(str(path)) as config_file:
                content = await config_file.read()
        except OSError as err:
            raise InputException(f"Unable to read config file {path}: {err}") from err
        try:
            doc = yaml.safe_load(content) or {}
        except yaml.YAMLError as err:
            raise InputException(f"Unable to parse config file {path}: {err}") from err
        if not isinstance(doc, dict):
            raise InputException(f"Config file {path} is not a mapping")
        _LOGGER.debug("Loaded configuration from %s", path)
        config = _from_dict(doc, str(path))
    return config.merge_env(environ)
