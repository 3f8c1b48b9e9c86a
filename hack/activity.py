"""
Activity record summarising the outcome of one promotion run.
"""

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from utils import load_yaml, save_yaml


class ActivityStatusType(str, Enum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class ActivityStoreError(Exception):
    pass


@dataclass
class GroupOutcome:
    repo_url: str
    environments: List[str]
    succeeded: bool
    reason: str = ""
    pull_request_link: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "repository": self.repo_url,
            "environments": list(self.environments),
            "status": (
                ActivityStatusType.SUCCEEDED if self.succeeded else ActivityStatusType.FAILED
            ).value,
        }
        if self.pull_request_link:
            data["pullRequest"] = self.pull_request_link
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class ActivityStatus:
    name: str
    namespace: str
    status: ActivityStatusType = ActivityStatusType.RUNNING
    outcomes: List[GroupOutcome] = field(default_factory=list)
    pipeline: str = ""
    build: str = ""
    application: str = ""
    version: str = ""

    @property
    def failed_outcomes(self) -> List[GroupOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {
                "pipeline": self.pipeline,
                "build": self.build,
                "application": self.application,
                "version": self.version,
                "status": self.status.value,
                "promotions": [o.to_dict() for o in self.outcomes],
            },
        }


def activity_name(pipeline: str, build: str, application: str, version: str) -> str:
    """Name of the activity record, e.g. myorg-myapp-master-1."""
    raw = f"{pipeline}-{build}" if pipeline else f"{application}-{version}"
    return re.sub(r"[^a-z0-9.-]+", "-", raw.lower()).strip("-")


class ActivityStore:
    """Keyed, namespaced activity records with get-or-create and update."""

    def get_or_create(self, namespace: str, name: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, namespace: str, name: str, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def list(self, namespace: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


class InMemoryActivityStore(ActivityStore):
    def __init__(self):
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def get_or_create(self, namespace, name, record):
        return self.records.setdefault(namespace, {}).setdefault(name, record)

    def update(self, namespace, name, record):
        if name not in self.records.get(namespace, {}):
            raise ActivityStoreError(f"Activity {namespace}/{name} does not exist")
        self.records[namespace][name] = record

    def list(self, namespace):
        return list(self.records.get(namespace, {}).values())


class FileActivityStore(ActivityStore):
    """One YAML document per activity under <root>/<namespace>/<name>.yaml."""

    def __init__(self, root: Path):
        self.root = root

    def path(self, namespace: str, name: str) -> Path:
        return self.root / namespace / f"{name}.yaml"

    def get_or_create(self, namespace, name, record):
        path = self.path(namespace, name)
        try:
            if path.exists():
                return load_yaml(path, check_empty=True)
            save_yaml(record, path)
        except (OSError, ValueError) as e:
            raise ActivityStoreError(f"Cannot create activity {path}: {e}") from e
        return record

    def update(self, namespace, name, record):
        path = self.path(namespace, name)
        if not path.exists():
            raise ActivityStoreError(f"Activity {path} does not exist")
        try:
            save_yaml(record, path)
        except OSError as e:
            raise ActivityStoreError(f"Cannot update activity {path}: {e}") from e

    def list(self, namespace):
        return [load_yaml(p) for p in sorted((self.root / namespace).glob("*.yaml"))]


class ActivityAggregator:
    """Sole writer of the activity record of a run."""

    def __init__(self, store: ActivityStore, activity: ActivityStatus):
        self.store = store
        self.activity = activity
        self.errors: List[ActivityStoreError] = []
        self._lock = threading.Lock()
        self._recorded: set = set()
        self._finished = False

    def _write(self, create: bool = False) -> None:
        record = self.activity.to_dict()
        try:
            if create:
                self.store.get_or_create(self.activity.namespace, self.activity.name, record)
            else:
                self.store.update(self.activity.namespace, self.activity.name, record)
        except ActivityStoreError as e:
            print(f"WARNING: {e}")
            self.errors.append(e)

    def start(self) -> ActivityStatus:
        with self._lock:
            self.activity.status = ActivityStatusType.RUNNING
            self._write(create=True)
        return self.activity

    def record(self, key: Any, outcome: GroupOutcome) -> None:
        """Append the outcome of a group, once per group key."""
        with self._lock:
            if self._finished:
                raise RuntimeError(f"Activity {self.activity.name} is already finished")
            if key in self._recorded:
                raise ValueError(f"Outcome already recorded for {key}")
            self._recorded.add(key)
            self.activity.outcomes.append(outcome)
            self._write()

    def finish(self, aborted: bool = False) -> ActivityStatus:
        """Finalise the record once; an aborted run is always Failed."""
        with self._lock:
            if not self._finished:
                self._finished = True
                succeeded = not aborted and all(o.succeeded for o in self.activity.outcomes)
                self.activity.status = (
                    ActivityStatusType.SUCCEEDED if succeeded else ActivityStatusType.FAILED
                )
                self._write()
        return self.activity

    @property
    def last_error(self) -> Optional[ActivityStoreError]:
        return self.errors[-1] if self.errors else None
