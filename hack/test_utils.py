#!/usr/bin/env python3
# /// script
# dependencies = ["pytest", "pyyaml"]
# ///

"""
Tests for the shared utilities and configuration loading.
"""

import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from utils import DEFAULT_SETTINGS, Config, deep_merge, dump_yaml, load_yaml, save_yaml


def write_config(config_dir: Path, data) -> Path:
    config_dir.mkdir(parents=True, exist_ok=True)
    with open(config_dir / "config.yaml", "w") as f:
        yaml.dump(data, f)
    return config_dir


class TestDeepMerge:
    """Test cases for the deep_merge function."""

    def test_deep_merge_settings_override(self):
        """Test that configured settings override defaults and keep the rest."""
        result = deep_merge({"pollInterval": 10, "maxRetries": 3}, {"pollInterval": 1})

        assert result == {"pollInterval": 1, "maxRetries": 3}

    def test_deep_merge_nested(self):
        """Test nested dictionaries are merged rather than replaced."""
        base = {"server": {"url": "https://api.github.com", "timeout": 30}}
        override = {"server": {"timeout": 5}, "kind": "github"}

        result = deep_merge(base, override)

        assert result == {
            "server": {"url": "https://api.github.com", "timeout": 5},
            "kind": "github",
        }

    def test_deep_merge_lists_replaced(self):
        """Test lists are replaced, not concatenated."""
        result = deep_merge({"releases": [1, 2, 3]}, {"releases": [4]})
        assert result == {"releases": [4]}

    def test_deep_merge_immutable(self):
        """Test that deep_merge doesn't modify input dictionaries."""
        base = {"a": 1, "b": {"c": 2}}
        override = {"b": {"d": 3}}

        deep_merge(base, override)

        assert base == {"a": 1, "b": {"c": 2}}
        assert override == {"b": {"d": 3}}

    def test_deep_merge_non_dict_override(self):
        """Test a non-dict override is returned as is."""
        assert deep_merge({"a": 1}, "value") == "value"
        assert deep_merge({"a": 1}, None) is None


class TestYamlOperations:
    """Test cases for YAML loading and saving functions."""

    def test_save_and_load_yaml(self):
        """Test saved YAML keeps key order and loads back."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "nested" / "helmfile.yaml"
            data = {"releases": [{"name": "myapp", "version": "1.2.3", "chart": "dev/myapp"}]}

            save_yaml(data, path)

            assert load_yaml(path) == data
            text = path.read_text()
            assert text.index("name") < text.index("version") < text.index("chart")

    def test_dump_yaml_block_style(self):
        """Test dump_yaml renders block style."""
        assert dump_yaml({"a": {"b": 1}}) == "a:\n  b: 1\n"

    def test_load_yaml_check_empty(self):
        """Test load_yaml rejects empty files when asked to."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "empty.yaml"
            path.write_text("")

            assert load_yaml(path) is None
            with pytest.raises(ValueError):
                load_yaml(path, check_empty=True)

    def test_load_yaml_file_not_found(self):
        """Test load_yaml with non-existent file."""
        with pytest.raises(FileNotFoundError):
            load_yaml(Path("/nonexistent/file.yaml"))


class TestConfigLoading:
    """Test cases for configuration loading."""

    def test_load_config(self):
        """Test environments, versions and settings are loaded."""
        with tempfile.TemporaryDirectory() as temp_dir:
            config_dir = write_config(
                Path(temp_dir) / "config",
                {
                    "environments": [
                        {"key": "dev", "namespace": "jx", "gitUrl": "https://github.com/org/dev"},
                        {"key": "staging", "promotionStrategy": "Automatic"},
                    ],
                    "versions": {"myapp": "1.2.3", "other": 2},
                    "promotion": {"pollInterval": 1, "gitKind": "fake"},
                },
            )

            config = Config(config_dir)

            assert [e["key"] for e in config.environment_dicts] == ["dev", "staging"]
            assert config.resolve_version("myapp") == "1.2.3"
            assert config.resolve_version("other") == "2"
            assert config.setting("pollInterval") == 1
            assert config.setting("gitKind") == "fake"
            assert config.setting("maxRetries") == DEFAULT_SETTINGS["maxRetries"]
            assert config.dev_git_url == "https://github.com/org/dev"
            assert config.activity_path == Path(temp_dir) / "activities"

    def test_resolve_version_unknown_application(self):
        """Test an unknown application has no version."""
        with tempfile.TemporaryDirectory() as temp_dir:
            config = Config(write_config(Path(temp_dir), {"versions": {}}))

            with pytest.raises(ValueError) as exc_info:
                config.resolve_version("myapp")
            assert "myapp" in str(exc_info.value)

    def test_dev_git_url_from_setting(self):
        """Test the dev repository falls back to the devGitUrl setting."""
        with tempfile.TemporaryDirectory() as temp_dir:
            config = Config(
                write_config(
                    Path(temp_dir),
                    {
                        "environments": [{"key": "staging"}],
                        "promotion": {"devGitUrl": "https://github.com/org/dev"},
                    },
                )
            )

            assert config.dev_git_url == "https://github.com/org/dev"

    def test_empty_config(self):
        """Test an empty config.yaml gives defaults."""
        with tempfile.TemporaryDirectory() as temp_dir:
            (Path(temp_dir) / "config.yaml").write_text("")

            config = Config(Path(temp_dir))

            assert config.environment_dicts == []
            assert config.dev_git_url == ""
            assert config.settings == DEFAULT_SETTINGS

    def test_github_token_from_environment(self):
        """Test the GitHub token comes from GITHUB_TOKEN."""
        with tempfile.TemporaryDirectory() as temp_dir:
            config = Config(write_config(Path(temp_dir), {}))

            with patch.dict("os.environ", {"GITHUB_TOKEN": "secret"}):
                assert config.github_token == "secret"

    def test_load_config_file_not_found(self):
        """Test Config constructor raises FileNotFoundError when file not found."""
        with pytest.raises(FileNotFoundError):
            Config(Path("/nonexistent"))
