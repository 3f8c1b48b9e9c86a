"""
Polling of published pull requests until merged and their pipeline completes.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from scm import (
    PIPELINE_FAILED,
    PIPELINE_SUCCEEDED,
    PullRequest,
    PullRequestState,
    ScmClient,
    SCMError,
)

POLL_TIMEOUT = "PollTimeout"
CANCELLED = "Cancelled"


class PollState(str, Enum):
    AWAITING_MERGE = "AwaitingMerge"
    AWAITING_PIPELINE = "AwaitingPipeline"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (PollState.SUCCEEDED, PollState.FAILED)


@dataclass
class PollResult:
    state: PollState
    pull_request: PullRequest
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state == PollState.SUCCEEDED


class Poller:
    def __init__(
        self,
        scm: ScmClient,
        interval: float = 10.0,
        timeout: float = 3600.0,
        cancel: Optional[threading.Event] = None,
        poll_pipeline: bool = True,
        call: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.scm = scm
        self.interval = interval
        self.timeout = timeout
        self.cancel = cancel or threading.Event()
        self.poll_pipeline = poll_pipeline and scm.pipelines is not None
        self.call = call or (lambda func, *args: func(*args))
        self.clock = clock

    def step(self, state: PollState, pr: PullRequest) -> PollResult:
        """Check the pull request once and return the next state."""
        full_name = pr.repo_full_name
        if state == PollState.AWAITING_MERGE:
            pr = self.call(self.scm.pull_requests.find, full_name, pr.number)
            if pr.state == PullRequestState.CLOSED:
                return PollResult(PollState.FAILED, pr, f"pull request {pr.link} was closed without merging")
            if pr.state != PullRequestState.MERGED:
                return PollResult(state, pr)
            print(f"Pull request {pr.link} merged")
            if not self.poll_pipeline:
                return PollResult(PollState.SUCCEEDED, pr)
            return PollResult(PollState.AWAITING_PIPELINE, pr)

        if state == PollState.AWAITING_PIPELINE:
            status = self.call(self.scm.pipelines.status, full_name, pr.merge_sha)
            if status == PIPELINE_SUCCEEDED:
                return PollResult(PollState.SUCCEEDED, pr)
            if status == PIPELINE_FAILED:
                return PollResult(PollState.FAILED, pr, f"pipeline for {full_name}@{pr.merge_sha} failed")
            return PollResult(state, pr)

        return PollResult(state, pr)

    def poll(self, pr: PullRequest) -> PollResult:
        """Wait for a pull request to reach a terminal state.

        Timeout and cancellation fail the result and leave the pull request open.
        """
        print(f"Waiting for {pr.link} to merge")
        deadline = self.clock() + self.timeout
        result = PollResult(PollState.AWAITING_MERGE, pr)
        while True:
            if self.cancel.is_set():
                return PollResult(PollState.FAILED, result.pull_request, CANCELLED)
            if self.clock() >= deadline:
                return PollResult(PollState.FAILED, result.pull_request, POLL_TIMEOUT)
            try:
                result = self.step(result.state, result.pull_request)
            except SCMError as e:
                return PollResult(PollState.FAILED, result.pull_request, f"polling {pr.link} failed: {e}")
            if result.state.terminal:
                return result
            self.cancel.wait(min(self.interval, max(deadline - self.clock(), 0)))
