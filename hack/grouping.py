"""
Grouping of environment promotions into pull requests.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from layouts import FileChange, RepositoryMutation


class ConflictingMutation(ValueError):
    pass


@dataclass
class PromotionGroup:
    repo_url: str
    members: List[Any] = field(default_factory=list)  # PromotionTarget, in resolution order
    combined_mutation: RepositoryMutation | None = None

    @property
    def keys(self) -> List[str]:
        return [member.environment.key for member in self.members]


def group_targets(targets: Iterable[Any], group_pull_requests: bool = True) -> List[PromotionGroup]:
    """Partition targets into pull request groups.

    Targets sharing the exact same git URL share a group unless grouping is
    disabled. Groups come out in order of first appearance of their URL.
    """
    groups: List[PromotionGroup] = []
    by_url: Dict[str, PromotionGroup] = {}
    for target in targets:
        if group_pull_requests and target.git_url in by_url:
            by_url[target.git_url].members.append(target)
            continue
        group = PromotionGroup(repo_url=target.git_url, members=[target])
        groups.append(group)
        by_url.setdefault(target.git_url, group)
    return groups


def combine_mutations(
    group: PromotionGroup, mutations: List[RepositoryMutation], branch: str
) -> RepositoryMutation:
    """Concatenate member mutations, rejecting different edits of one file."""
    combined: List[FileChange] = []
    commands: List[List[str]] = []
    written: Dict[str, FileChange] = {}
    for mutation in mutations:
        for change in mutation.file_changes:
            previous = written.get(change.path)
            if previous is None:
                written[change.path] = change
                combined.append(change)
            elif previous.new != change.new:
                raise ConflictingMutation(
                    f"Environments {', '.join(group.keys)} make conflicting changes to {change.path} in {group.repo_url}"
                )
        for command in mutation.commands:
            if command not in commands:
                commands.append(command)
    mutation = RepositoryMutation(group.repo_url, branch, combined, commands)
    group.combined_mutation = mutation
    return mutation


def branch_name(application: str, version: str, keys: Iterable[str]) -> str:
    """Deterministic promotion branch name for an application version and environments."""
    raw = "-".join(["promote", application, version, *sorted(keys)])
    return re.sub(r"[^A-Za-z0-9._/-]+", "-", raw).strip("-")
