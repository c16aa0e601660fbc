from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from codemend.config.defaults import DEFAULT_CONFIG
from codemend.config.loader import deep_merge, load_config, load_settings
from codemend.config.settings import CodemendConfig
from codemend.core.errors import ConfigError


@pytest.fixture
def mock_home_dir(tmp_path: Path):
    home_dir = tmp_path / "home" / "user"
    home_dir.mkdir(parents=True)
    return home_dir


@pytest.fixture
def project_dir(tmp_path: Path):
    proj_dir = tmp_path / "my_project"
    proj_dir.mkdir()
    return proj_dir


def test_load_default_config(project_dir, mock_home_dir):
    with patch("pathlib.Path.home", return_value=mock_home_dir):
        assert load_config(str(project_dir)) == DEFAULT_CONFIG


def test_project_overrides_global(project_dir, mock_home_dir):
    global_dir = mock_home_dir / ".codemend"
    global_dir.mkdir()
    (global_dir / "config.yaml").write_text(yaml.dump({"parallel": {"concurrency": 4}, "crawler": {"auto_fix": True}}))
    (project_dir / ".codemend.yaml").write_text(yaml.dump({"parallel": {"concurrency": 2}}))

    with patch("pathlib.Path.home", return_value=mock_home_dir):
        settings = load_settings(str(project_dir))

    assert settings.parallel.concurrency == 2
    assert settings.crawler.auto_fix is True
    assert settings.parallel.history_size == DEFAULT_CONFIG["parallel"]["history_size"]


def test_malformed_global_config_is_skipped(project_dir, mock_home_dir):
    global_dir = mock_home_dir / ".codemend"
    global_dir.mkdir()
    (global_dir / "config.yaml").write_text("parallel: [unclosed")

    with patch("pathlib.Path.home", return_value=mock_home_dir):
        assert load_config(str(project_dir)) == DEFAULT_CONFIG


def test_malformed_project_config_raises(project_dir, mock_home_dir):
    (project_dir / ".codemend.yaml").write_text("crawler: {extensions: [.py")
    with patch("pathlib.Path.home", return_value=mock_home_dir):
        with pytest.raises(ConfigError):
            load_config(str(project_dir))


def test_invalid_values_raise_config_error():
    with pytest.raises(ConfigError):
        CodemendConfig.from_dict({"breakers": {"default": {"failure_threshold": 0}}})


def test_breaker_lookup_falls_back_to_default():
    settings = CodemendConfig.from_dict(DEFAULT_CONFIG)
    assert settings.breaker("fix_generator").call_timeout == 120.0
    assert settings.breaker("knowledge_store") == settings.breakers["default"]


def test_deep_merge_replaces_lists():
    merged = deep_merge({"a": {"b": 1, "c": [1, 2]}}, {"a": {"c": [3]}})
    assert merged == {"a": {"b": 1, "c": [3]}}
