#!/usr/bin/env python3
"""
Shared utilities for the gitops-promote tool.
"""

import os
from pathlib import Path
from typing import Any, Dict, List

import yaml


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge of dictionaries.

    Args:
        base: Base dictionary to merge into
        override: Dictionary to merge from (takes precedence)

    Returns:
        New dictionary with merged values

    Note:
        This function returns a new dictionary and does not modify the input dictionaries.
        For recursive merging, nested dictionaries are merged recursively.
        For non-dict values, the override value takes precedence.
    """
    if not isinstance(override, dict):
        return override

    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml(file_path: Path, check_empty: bool = False) -> Dict[str, Any]:
    """Load YAML file.

    Args:
        file_path: Path to the YAML file to load
        check_empty: If True, raise ValueError if the file is empty or invalid

    Returns:
        Dictionary containing the parsed YAML content

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If the file contains invalid YAML
        ValueError: If check_empty is True and the file is empty or invalid
    """
    with open(file_path, "r") as f:
        data = yaml.safe_load(f)

    if check_empty and not data:
        raise ValueError(f"YAML file is empty: {file_path}")

    return data


def dump_yaml(data: Any, width: int = 1000) -> str:
    """Render data as YAML text, keeping key order."""
    return yaml.dump(data, default_flow_style=False, sort_keys=False, width=width)


def save_yaml(data: Dict[str, Any], file_path: Path, width: int = 1000) -> None:
    """Save data to YAML file.

    Args:
        data: Dictionary to save as YAML
        file_path: Path where to save the file
        width: Maximum line width for YAML output
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, "w") as f:
        f.write(dump_yaml(data, width=width))


DEV_ENVIRONMENT_KEY = "dev"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "gitKind": "github",
    "baseBranch": "main",
    "pollInterval": 10.0,
    "pollTimeout": 3600.0,
    "pollPipeline": True,
    "maxRetries": 3,
    "retryMinWait": 1.0,
    "retryMaxWait": 30.0,
    "activityDir": "activities",
}


class Config:
    """Requirements document and engine settings loaded from config.yaml."""

    def __init__(self, root: Path | None = None):
        self.root = Path(__file__).parent.parent / "config" if root is None else root
        self.repo_root = self.root.parent
        config_yaml = self.root / "config.yaml"
        self.config = load_yaml(config_yaml) or {}
        self.environment_dicts: List[Dict[str, Any]] = (
            self.config.get("environments") or []
        )
        self.versions: Dict[str, str] = {
            name: str(version)
            for name, version in (self.config.get("versions") or {}).items()
        }
        self.settings: Dict[str, Any] = deep_merge(
            DEFAULT_SETTINGS, self.config.get("promotion") or {}
        )

    def setting(self, name: str, default: Any = None) -> Any:
        return self.settings.get(name, default)

    def resolve_version(self, application: str) -> str:
        """Return the pinned version of an application."""
        if application not in self.versions:
            raise ValueError(
                f"No version found for application '{application}' in {self.root / 'config.yaml'}"
            )
        return self.versions[application]

    @property
    def dev_git_url(self) -> str:
        """Git URL of the development environment repository."""
        for env in self.environment_dicts:
            if env.get("key") == DEV_ENVIRONMENT_KEY and env.get("gitUrl"):
                return env["gitUrl"]
        return self.setting("devGitUrl", "")

    @property
    def activity_path(self) -> Path:
        return self.repo_root / self.setting("activityDir")

    @property
    def github_token(self) -> str | None:
        return os.environ.get("GITHUB_TOKEN")


_config: Config | None = None


def get_config(root: Path | None = None) -> Config:
    global _config
    if _config is None:
        _config = Config(root)
    return _config
