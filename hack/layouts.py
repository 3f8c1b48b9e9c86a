"""
Repository layout detection and version mutation.

Each layout knows how to recognise an environment repository and how to pin
an application version in it. Layouts are tried in LAYOUTS order and the
first one that detects the repository wins.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from environments import EnvironmentConfig
from utils import dump_yaml


class UnsupportedRepositoryLayout(ValueError):
    pass


class InvalidRepositoryFile(ValueError):
    """A layout file exists but is not valid YAML or not a mapping."""


@dataclass(frozen=True)
class FileChange:
    path: str  # relative to the repository root
    old: Optional[str]
    new: str


@dataclass
class RepositoryMutation:
    target_repo_url: str
    branch_name: str
    file_changes: List[FileChange] = field(default_factory=list)
    commands: List[List[str]] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.file_changes


def _read(path: Path) -> Optional[str]:
    return path.read_text() if path.exists() else None


def _load(text: Optional[str], path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(text) if text else None
    except yaml.YAMLError as e:
        raise InvalidRepositoryFile(f"Cannot parse {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRepositoryFile(f"Expected a mapping in {path}, got {type(data).__name__}")
    return data


def _change(repo_dir: Path, path: Path, old: Optional[str], new: str) -> List[FileChange]:
    if old == new:
        return []
    return [FileChange(str(path.relative_to(repo_dir)), old, new)]


class Layout:
    name = "layout"

    def detect(self, repo_dir: Path, application: str, env: EnvironmentConfig) -> bool:
        raise NotImplementedError

    def mutate(
        self, repo_dir: Path, application: str, version: str, env: EnvironmentConfig
    ) -> List[FileChange]:
        raise NotImplementedError


class HelmfileLayout(Layout):
    """helmfile.yaml releases, one helmfile per environment namespace."""

    name = "helmfile"

    def _helmfile(self, repo_dir: Path, application: str, env: EnvironmentConfig) -> Optional[Path]:
        namespaced = repo_dir / "helmfiles" / env.namespace / "helmfile.yaml"
        if namespaced.exists():
            return namespaced
        root = repo_dir / "helmfile.yaml"
        if root.exists() and self._release(_load(root.read_text(), root), application):
            return root
        return None

    @staticmethod
    def _release(data: Dict[str, Any], application: str) -> Optional[Dict[str, Any]]:
        releases = data.get("releases") or []
        if not isinstance(releases, list):
            raise InvalidRepositoryFile("helmfile releases must be a list")
        for release in releases:
            if isinstance(release, dict) and release.get("name") == application:
                return release
        return None

    def detect(self, repo_dir, application, env):
        return self._helmfile(repo_dir, application, env) is not None

    def mutate(self, repo_dir, application, version, env):
        path = self._helmfile(repo_dir, application, env)
        old = path.read_text()
        data = _load(old, path)
        release = self._release(data, application)
        if release is not None and str(release.get("version")) == version:
            return []
        if release is None:
            data.setdefault("releases", []).append(
                {
                    "chart": f"dev/{application}",
                    "version": version,
                    "name": application,
                    "namespace": env.namespace,
                }
            )
        else:
            release["version"] = version
        return _change(repo_dir, path, old, dump_yaml(data))


class ValuesLayout(Layout):
    """ArgoCD application values: applications.<app>.source.targetRevision."""

    name = "values"

    @staticmethod
    def _source(data: Dict[str, Any], application: str) -> Optional[Dict[str, Any]]:
        applications = data.get("applications")
        if not isinstance(applications, dict):
            return None
        app = applications.get(application)
        if isinstance(app, dict) and isinstance(app.get("source"), dict):
            return app["source"]
        return None

    def _values(self, repo_dir: Path, application: str, env: EnvironmentConfig) -> Optional[Path]:
        for path in (repo_dir / env.namespace / "values.yaml", repo_dir / "values.yaml"):
            if path.exists() and self._source(_load(path.read_text(), path), application) is not None:
                return path
        return None

    def detect(self, repo_dir, application, env):
        return self._values(repo_dir, application, env) is not None

    def mutate(self, repo_dir, application, version, env):
        path = self._values(repo_dir, application, env)
        old = path.read_text()
        data = _load(old, path)
        source = self._source(data, application)
        if str(source.get("targetRevision")) == version:
            return []
        source["targetRevision"] = version
        return _change(repo_dir, path, old, dump_yaml(data))


def kpt_ref(version: str) -> str:
    return version if version.startswith("v") else f"v{version}"


class KptLayout(Layout):
    """kpt package whose Kptfile tracks an upstream git ref."""

    name = "kpt"

    def _kptfile(self, repo_dir: Path, application: str) -> Optional[Path]:
        for path in sorted(repo_dir.rglob("Kptfile")):
            if ".git" in path.parts:
                continue
            data = _load(path.read_text(), path)
            metadata = data.get("metadata")
            name = metadata.get("name") if isinstance(metadata, dict) else None
            if name == application or path.parent.name == application:
                return path
        return None

    def detect(self, repo_dir, application, env):
        return self._kptfile(repo_dir, application) is not None

    def mutate(self, repo_dir, application, version, env):
        path = self._kptfile(repo_dir, application)
        old = path.read_text()
        data = _load(old, path)
        ref = kpt_ref(version)
        if not isinstance(data.get("upstream"), dict):
            data["upstream"] = {"type": "git"}
        upstream = data["upstream"]
        if not isinstance(upstream.get("git"), dict):
            upstream["git"] = {}
        refs = [upstream["git"]]
        lock = data.get("upstreamLock")
        if isinstance(lock, dict) and isinstance(lock.get("git"), dict):
            refs.append(lock["git"])
        if all(git.get("ref") == ref for git in refs):
            return []
        for git in refs:
            git["ref"] = ref
        return _change(repo_dir, path, old, dump_yaml(data))


class MakefileLayout(Layout):
    """Makefile driven repository with a promote target and <APP>_VERSION variables."""

    name = "makefile"
    target = re.compile(r"^promote\s*:", re.MULTILINE)

    @staticmethod
    def variable(application: str) -> str:
        return re.sub(r"[^A-Za-z0-9]", "_", application).upper() + "_VERSION"

    def detect(self, repo_dir, application, env):
        makefile = repo_dir / "Makefile"
        return makefile.exists() and bool(self.target.search(makefile.read_text()))

    def mutate(self, repo_dir, application, version, env):
        path = repo_dir / "Makefile"
        old = path.read_text()
        pattern = re.compile(
            rf"^(?P<lhs>{self.variable(application)}\s*[:?]?=\s*)(?P<value>\S*)[ \t]*$",
            re.MULTILINE,
        )
        match = pattern.search(old)
        if match:
            if match.group("value") == version:
                return []
            new = old[: match.start("value")] + version + old[match.end("value") :]
        else:
            prefix = old if old.endswith("\n") or not old else old + "\n"
            new = f"{prefix}{self.variable(application)} ?= {version}\n"
        return _change(repo_dir, path, old, new)

    def commands(self, application: str, version: str) -> List[List[str]]:
        return [["make", "promote", f"APP={application}", f"VERSION={version}"]]


LAYOUTS: List[Layout] = [HelmfileLayout(), ValuesLayout(), KptLayout(), MakefileLayout()]


def detect_layout(
    repo_dir: Path,
    application: str,
    env: EnvironmentConfig,
    layouts: List[Layout] = LAYOUTS,
) -> Layout:
    for layout in layouts:
        if layout.detect(repo_dir, application, env):
            return layout
    raise UnsupportedRepositoryLayout(
        f"Cannot promote {application} to {env.key}: no supported layout found in {repo_dir}"
    )


def build_mutation(
    repo_dir: Path,
    repo_url: str,
    branch_name: str,
    application: str,
    version: str,
    env: EnvironmentConfig,
) -> RepositoryMutation:
    """Compute the version change for one environment without touching the files."""
    layout = detect_layout(repo_dir, application, env)
    file_changes = layout.mutate(repo_dir, application, version, env)
    commands: List[List[str]] = []
    if file_changes and isinstance(layout, MakefileLayout):
        commands = layout.commands(application, version)
    return RepositoryMutation(repo_url, branch_name, file_changes, commands)


def apply_mutation(repo_dir: Path, mutation: RepositoryMutation) -> None:
    for change in mutation.file_changes:
        path = repo_dir / change.path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(change.new)
