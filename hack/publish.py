"""
Pull request publishing for promotion groups.
"""

from typing import Any, Callable, List, Optional, TypeVar

from environments import repo_full_name
from grouping import PromotionGroup
from layouts import RepositoryMutation
from scm import PullRequest, ScmClient, SCMTransientError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

T = TypeVar("T")


def _print_retry(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    print(f"WARNING: SCM call failed (attempt {retry_state.attempt_number}): {exception}")


def create_retry(
    max_retries: int = 3,
    min_wait_seconds: float = 1.0,
    max_wait_seconds: float = 30.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry decorator for transient SCM failures with exponential backoff.

    The last SCMTransientError is re-raised once retries are exhausted.
    """
    return retry(
        # 1 initial attempt + max_retries retries
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(min=min_wait_seconds, max=max_wait_seconds),
        retry=retry_if_exception_type(SCMTransientError),
        before_sleep=_print_retry,
        reraise=True,
    )


def environment_line(application: str, version: str, key: str) -> str:
    return f"* promote `{application}` to version `{version}` in environment `{key}`"


def pull_request_title(application: str, version: str, keys: List[str]) -> str:
    return f"chore: promote {application} to version {version} in {', '.join(keys)}"


def pull_request_body(application: str, version: str, keys: List[str]) -> str:
    lines = [
        f"Promote application `{application}` to version `{version}`.",
        "",
        "Environments:",
        "",
    ]
    lines += [environment_line(application, version, key) for key in keys]
    return "\n".join(lines) + "\n"


def merge_body(body: str, application: str, version: str, keys: List[str]) -> str:
    """Add the environment lines missing from an existing pull request body."""
    missing = [
        environment_line(application, version, key)
        for key in keys
        if environment_line(application, version, key) not in body
    ]
    if not missing:
        return body
    return body.rstrip("\n") + "\n" + "\n".join(missing) + "\n"


class Publisher:
    def __init__(
        self,
        scm: ScmClient,
        base_branch: str = "main",
        retry_decorator: Optional[Callable[[Callable[..., Any]], Callable[..., Any]]] = None,
    ):
        self.scm = scm
        self.base_branch = base_branch
        self.retry = retry_decorator or create_retry()

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        return self.retry(func)(*args, **kwargs)

    def find_open(self, full_name: str, branch: str) -> Optional[PullRequest]:
        for pr in self.call(self.scm.pull_requests.list, full_name, open=True, size=100):
            if pr.head == branch:
                return pr
        return None

    def publish(
        self, group: PromotionGroup, mutation: RepositoryMutation, application: str, version: str
    ) -> Optional[PullRequest]:
        """Create or update the pull request of a group.

        Returns None when the group needed no change.
        """
        if mutation.is_noop:
            print(f"{application} {version} already promoted to {', '.join(group.keys)}")
            return None

        full_name = repo_full_name(group.repo_url)
        keys = group.keys
        existing = self.find_open(full_name, mutation.branch_name)
        if existing is not None:
            body = merge_body(existing.body, application, version, keys)
            if body != existing.body:
                existing = self.call(
                    self.scm.pull_requests.update, full_name, existing.number, body=body
                )
            print(f"Updated pull request {existing.link}")
            return existing

        pr = self.call(
            self.scm.pull_requests.create,
            full_name,
            mutation.branch_name,
            self.base_branch,
            pull_request_title(application, version, keys),
            pull_request_body(application, version, keys),
        )
        print(f"Created pull request {pr.link}")
        return pr
