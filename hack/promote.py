#!/usr/bin/env python3
# /// script
# dependencies = ["pyyaml", "requests", "tenacity"]
# ///

"""
GitOps environment promotion tool.

Usage: uv run hack/promote.py myapp --version 1.2.3 --env staging

Pins an application version in the git repositories of the selected
environments, opens one pull request per repository (or per environment with
--no-group-pull-request), optionally waits for the pull requests to merge and
records the outcome in a single activity record.
"""

import argparse
import shutil
import signal
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import yaml
from activity import (
    ActivityAggregator,
    ActivityStatus,
    ActivityStatusType,
    ActivityStore,
    FileActivityStore,
    GroupOutcome,
    activity_name,
)
from environments import (
    EnvironmentConfig,
    Selection,
    UnresolvableRepository,
    load_environments,
    locate_repository,
    resolve_targets,
)
from gitclient import Git
from grouping import PromotionGroup, branch_name, combine_mutations, group_targets
from layouts import (
    InvalidRepositoryFile,
    UnsupportedRepositoryLayout,
    apply_mutation,
    build_mutation,
)
from poll import Poller, PollResult
from publish import Publisher, create_retry, pull_request_title
from scm import PullRequest, ScmClient, SCMError, new_scm_client
from utils import DEV_ENVIRONMENT_KEY, Config, get_config

# Errors that fail one group and leave the others running.
GROUP_ERRORS = (ValueError, OSError, yaml.YAMLError, SCMError, subprocess.CalledProcessError)


class PromotionAborted(Exception):
    pass


@dataclass
class PromotionRequest:
    application: str
    version: str
    selection: Selection
    group_pull_requests: bool = True
    poll: bool = True
    batch: bool = False
    pipeline: str = ""
    build: str = ""


@dataclass
class PromotionTarget:
    environment: EnvironmentConfig
    request: PromotionRequest
    git_url: str


class Promoter:
    def __init__(
        self,
        config: Config,
        scm: ScmClient,
        git: Git,
        store: ActivityStore,
        cancel: Optional[threading.Event] = None,
        confirm: Optional[Callable[[PromotionRequest, List[EnvironmentConfig]], bool]] = None,
    ):
        self.config = config
        self.scm = scm
        self.git = git
        self.store = store
        self.cancel = cancel or threading.Event()
        self.confirm = confirm
        self.activity_errors: List[Exception] = []
        self.publisher = Publisher(
            scm,
            base_branch=config.setting("baseBranch"),
            retry_decorator=create_retry(
                max_retries=config.setting("maxRetries"),
                min_wait_seconds=config.setting("retryMinWait"),
                max_wait_seconds=config.setting("retryMaxWait"),
            ),
        )

    @property
    def namespace(self) -> str:
        for env in self.config.environment_dicts:
            if env.get("key") == DEV_ENVIRONMENT_KEY and env.get("namespace"):
                return env["namespace"]
        return self.config.setting("namespace", "jx")

    def resolve(self, request: PromotionRequest) -> List[EnvironmentConfig]:
        environments = load_environments(self.config.environment_dicts)
        return resolve_targets(environments, request.selection)

    def run(self, request: PromotionRequest) -> ActivityStatus:
        """Promote an application version and return the final activity status.

        Selection errors are raised before anything is changed. Failures of a
        single environment or repository are recorded in the activity and do
        not stop the other groups. Outcomes are recorded in environment order
        and the activity is always finished.
        """
        environments = self.resolve(request)
        if not request.batch and self.confirm is not None:
            if not self.confirm(request, environments):
                raise PromotionAborted("Promotion cancelled by user")

        aggregator = ActivityAggregator(
            self.store,
            ActivityStatus(
                name=activity_name(
                    request.pipeline, request.build, request.application, request.version
                ),
                namespace=self.namespace,
                pipeline=request.pipeline,
                build=request.build,
                application=request.application,
                version=request.version,
            ),
        )
        aggregator.start()
        self.activity_errors = aggregator.errors

        position = {env.key: index for index, env in enumerate(environments)}
        # [position, key, outcome]; polled outcomes are filled in later
        entries: List[list] = []
        completed = False

        try:
            targets = []
            for env in environments:
                try:
                    git_url = locate_repository(env, self.config.dev_git_url)
                except UnresolvableRepository as e:
                    print(f"WARNING: {e}")
                    entries.append(
                        [position[env.key], ("target", env.key), GroupOutcome("", [env.key], False, str(e))]
                    )
                    continue
                targets.append(PromotionTarget(env, request, git_url))

            to_poll = []
            for index, group in enumerate(group_targets(targets, request.group_pull_requests)):
                key = ("group", index)
                failed: List[GroupOutcome] = []
                try:
                    published, pr = self.promote_group(group, request, failed)
                except GROUP_ERRORS as e:
                    failed_keys = {k for outcome in failed for k in outcome.environments}
                    keys = [k for k in group.keys if k not in failed_keys]
                    print(f"WARNING: promotion to {', '.join(keys)} failed: {e}")
                    published, pr = PromotionGroup(group.repo_url), None
                    failed.append(GroupOutcome(group.repo_url, keys, False, str(e)))
                for outcome in failed:
                    first = outcome.environments[0]
                    entries.append([position[first], ("target", first), outcome])
                if not published.members:
                    continue

                entry = [position[published.keys[0]], key, None]
                entries.append(entry)
                if pr is None or not request.poll:
                    entry[2] = GroupOutcome(
                        published.repo_url, published.keys, True, pull_request_link=pr.link if pr else ""
                    )
                else:
                    to_poll.append((entry, published, pr))

            if to_poll:
                results = self.poll_groups([pr for _, _, pr in to_poll])
                for (entry, group, _), result in zip(to_poll, results):
                    entry[2] = GroupOutcome(
                        group.repo_url, group.keys, result.succeeded, result.reason, result.pull_request.link
                    )
            completed = True
        finally:
            for _, key, outcome in sorted(entries, key=lambda entry: entry[0]):
                if outcome is not None:
                    aggregator.record(key, outcome)
            aggregator.finish(aborted=not completed)
        return aggregator.activity

    def promote_group(
        self, group: PromotionGroup, request: PromotionRequest, failed: List[GroupOutcome]
    ) -> Tuple[PromotionGroup, Optional[PullRequest]]:
        """Change the group's repository and publish the pull request.

        Members are mutated one after another on a single working copy. A
        member whose repository layout cannot be handled is appended to
        failed and left out; the returned group holds the members that were
        published.
        """
        application, version = request.application, request.version
        print(f"Promoting {application} {version} to {', '.join(group.keys)} in {group.repo_url}")
        repo_dir = self.git.clone(group.repo_url)
        try:
            if self.git.has_changes(repo_dir):
                raise ValueError(f"Working copy of {group.repo_url} is not clean")
            published = PromotionGroup(group.repo_url)
            mutations = []
            for member in group.members:
                env = member.environment
                try:
                    mutation = build_mutation(
                        repo_dir,
                        group.repo_url,
                        branch_name(application, version, [env.key]),
                        application,
                        version,
                        env,
                    )
                except (UnsupportedRepositoryLayout, InvalidRepositoryFile) as e:
                    print(f"WARNING: {e}")
                    failed.append(GroupOutcome(group.repo_url, [env.key], False, str(e)))
                    continue
                published.members.append(member)
                mutations.append(mutation)
            if not published.members:
                return published, None

            branch = branch_name(application, version, published.keys)
            mutation = combine_mutations(published, mutations, branch)
            if mutation.is_noop:
                return published, self.publisher.publish(published, mutation, application, version)

            self.git.checkout_branch(repo_dir, branch)
            apply_mutation(repo_dir, mutation)
            for command in mutation.commands:
                self.git.run(repo_dir, *command)
            self.git.add_all(repo_dir)
            self.git.commit(repo_dir, pull_request_title(application, version, published.keys))
            self.git.push(repo_dir, branch)
            return published, self.publisher.publish(published, mutation, application, version)
        finally:
            shutil.rmtree(repo_dir.parent, ignore_errors=True)

    def poll_groups(self, pull_requests: List[PullRequest]) -> List[PollResult]:
        """Poll every pull request concurrently, results in the given order."""
        poller = Poller(
            self.scm,
            interval=self.config.setting("pollInterval"),
            timeout=self.config.setting("pollTimeout"),
            cancel=self.cancel,
            poll_pipeline=self.config.setting("pollPipeline"),
            call=self.publisher.call,
        )
        with ThreadPoolExecutor(max_workers=len(pull_requests)) as executor:
            futures = [executor.submit(poller.poll, pr) for pr in pull_requests]
            return [future.result() for future in futures]


def confirm_on_terminal(request: PromotionRequest, environments: List[EnvironmentConfig]) -> bool:
    keys = ", ".join(env.key for env in environments)
    answer = input(f"Promote {request.application} {request.version} to {keys}? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def parse_selection(args: argparse.Namespace) -> Selection:
    if args.all:
        return Selection.all()
    if args.envs:
        return Selection.explicit(name.strip() for name in args.envs.split(",") if name.strip())
    return Selection.single(args.env)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Promote an application version to GitOps environments"
    )
    parser.add_argument("application", help="e.g. myapp")
    parser.add_argument("--version", help="defaults to the version pinned in config.yaml")
    selection = parser.add_mutually_exclusive_group(required=True)
    selection.add_argument("--env", help="e.g. staging")
    selection.add_argument("--envs", help="comma separated environments, e.g. staging,production")
    selection.add_argument(
        "--all", action="store_true", help="all Automatic and Manual environments"
    )
    parser.add_argument(
        "--no-group-pull-request",
        action="store_true",
        help="one pull request per environment even if they share a repository",
    )
    parser.add_argument("--no-poll", action="store_true", help="do not wait for merge")
    parser.add_argument("--batch-mode", action="store_true", help="do not ask for confirmation")
    parser.add_argument("--git-kind", help="e.g. github or fake")
    parser.add_argument("--pipeline", default="", help="e.g. myorg/myapp/master")
    parser.add_argument("--build", default="", help="e.g. 1")
    parser.add_argument("--timeout", type=float, help="seconds to wait for merge")
    parser.add_argument("--config", type=Path, help="directory containing config.yaml")

    args = parser.parse_args(argv)

    config = Config(args.config) if args.config else get_config()
    if args.timeout is not None:
        config.settings["pollTimeout"] = args.timeout

    try:
        version = args.version or config.resolve_version(args.application)
    except ValueError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    request = PromotionRequest(
        application=args.application,
        version=version,
        selection=parse_selection(args),
        group_pull_requests=not args.no_group_pull_request,
        poll=not args.no_poll,
        batch=args.batch_mode,
        pipeline=args.pipeline,
        build=args.build,
    )

    kind = args.git_kind or config.setting("gitKind")
    scm = new_scm_client(kind, token=config.github_token, server=config.setting("gitServer"))
    cancel = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel.set())

    promoter = Promoter(
        config,
        scm,
        Git(),
        FileActivityStore(config.activity_path),
        cancel=cancel,
        confirm=confirm_on_terminal,
    )

    try:
        activity = promoter.run(request)
    except (ValueError, PromotionAborted) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    for error in promoter.activity_errors:
        print(f"WARNING: activity record not saved: {error}")

    if activity.status != ActivityStatusType.SUCCEEDED:
        print(f"✗ Promotion of {request.application} {request.version} failed")
        for outcome in activity.failed_outcomes:
            print(f"  - {', '.join(outcome.environments)}: {outcome.reason}")
        sys.exit(1)

    print(f"✓ Promoted {request.application} {request.version} successfully")
    for outcome in activity.outcomes:
        if outcome.pull_request_link:
            print(f"  - {', '.join(outcome.environments)}: {outcome.pull_request_link}")


if __name__ == "__main__":
    main()
