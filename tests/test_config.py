"""Tests for controller configuration."""

from pathlib import Path

import pytest

from kube_sync.config import ControllerConfig, load_config
from kube_sync.exceptions import InputException


async def test_defaults() -> None:
    """Test the defaults when nothing is configured."""
    config = await load_config(environ={})
    assert config == ControllerConfig()
    assert config.max_concurrent_applies == 5
    assert config.poll_interval is None


async def test_file_and_environment(tmp_path: Path) -> None:
    """Test the environment overrides the file which overrides the defaults."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "max_concurrent_applies: 10\nbackoff_max_delay: 600\ncache_dir: /var/cache\n"
    )
    config = await load_config(
        config_file,
        environ={
            "KUBE_SYNC_BACKOFF_MAX_DELAY": "120",
            "KUBE_SYNC_STRICT_SUBSTITUTION": "false",
            "UNRELATED": "1",
        },
    )
    assert config.max_concurrent_applies == 10
    assert config.backoff_max_delay == 120.0
    assert config.cache_dir == "/var/cache"
    assert not config.strict_substitution
    assert config.backoff_base_delay == 5.0


def test_from_env() -> None:
    """Test loading only from the environment."""
    config = ControllerConfig.from_env({"KUBE_SYNC_POLL_INTERVAL": "30"})
    assert config.poll_interval == 30


async def test_unknown_key(tmp_path: Path) -> None:
    """Test an unknown configuration key is rejected."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("max_concurent_applies: 10\n")
    with pytest.raises(InputException, match="Invalid configuration"):
        await load_config(config_file, environ={})


async def test_invalid_value() -> None:
    """Test an invalid value from the environment is rejected."""
    with pytest.raises(InputException, match="environment"):
        await load_config(environ={"KUBE_SYNC_MAX_CONCURRENT_APPLIES": "many"})


async def test_missing_file(tmp_path: Path) -> None:
    """Test a missing configuration file."""
    with pytest.raises(InputException, match="Unable to read config file"):
        await load_config(tmp_path / "missing.yaml", environ={})


async def test_not_a_mapping(tmp_path: Path) -> None:
    """Test a configuration file that is not a mapping."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("- a\n")
    with pytest.raises(InputException, match="not a mapping"):
        await load_config(config_file, environ={})
