"""Root pytest configuration for vmdeploy.

Keeps every test away from the real user configuration and from real
Azure state:

- HOME and VMDEPLOY_CONFIG point into tmp_path so ~/.vmdeploy/config.toml
  is never read
- VMDEPLOY_* environment overrides from the developer's shell are cleared
- the cached RetryConfig is reset so env changes made by one test do not
  leak into the next
"""

import os

import pytest

from vmdeploy.retry_config import reset_retry_config


@pytest.fixture(autouse=True)
def protect_user_environment(tmp_path, monkeypatch):
    """Isolate config and environment for every test."""
    for name in list(os.environ):
        if name.startswith("VMDEPLOY_"):
            monkeypatch.delenv(name, raising=False)

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("VMDEPLOY_CONFIG", str(home / ".vmdeploy" / "config.toml"))

    reset_retry_config()
    yield
    reset_retry_config()


@pytest.fixture
def isolated_config(tmp_path):
    """Provide an isolated config directory.

    Example:
        def test_something(isolated_config, monkeypatch):
            config_path = isolated_config / "config.toml"
            monkeypatch.setenv("VMDEPLOY_CONFIG", str(config_path))
    """
    config_dir = tmp_path / ".vmdeploy"
    config_dir.mkdir(parents=True)
    return config_dir
