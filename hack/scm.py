"""
SCM clients for pull requests and downstream pipeline status.

Clients are picked by kind: "fake" keeps everything in memory for tests and
dry runs, "github" talks to the GitHub REST API.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

import requests


class PullRequestState(str, Enum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


@dataclass
class PullRequest:
    repo_full_name: str
    number: int
    link: str
    title: str
    body: str
    state: PullRequestState = PullRequestState.OPEN
    head: str = ""
    base: str = ""
    merge_sha: str = ""


class SCMError(Exception):
    pass


class SCMTransientError(SCMError):
    """Rate limiting or network failure worth retrying."""


class PullRequestNotFound(SCMError):
    pass


PIPELINE_SUCCEEDED = "Succeeded"
PIPELINE_FAILED = "Failed"
PIPELINE_RUNNING = "Running"


class PullRequestService:
    def find(self, repo_full_name: str, number: int) -> PullRequest:
        raise NotImplementedError

    def list(self, repo_full_name: str, open: bool = True, size: int = 100) -> List[PullRequest]:
        raise NotImplementedError

    def create(
        self, repo_full_name: str, head: str, base: str, title: str, body: str
    ) -> PullRequest:
        raise NotImplementedError

    def update(
        self,
        repo_full_name: str,
        number: int,
        title: Optional[str] = None,
        body: Optional[str] = None,
    ) -> PullRequest:
        raise NotImplementedError


class PipelineService:
    def status(self, repo_full_name: str, sha: str) -> Optional[str]:
        """Status of the pipeline run for a commit, None when no run is known."""
        raise NotImplementedError


@dataclass
class ScmClient:
    kind: str
    pull_requests: PullRequestService
    pipelines: Optional[PipelineService] = None


class FakePullRequestService(PullRequestService):
    def __init__(self, server: str = "https://fake.git"):
        self.server = server
        self.pull_requests: Dict[str, List[PullRequest]] = {}

    def _get(self, repo_full_name: str, number: int) -> PullRequest:
        for pr in self.pull_requests.get(repo_full_name, []):
            if pr.number == number:
                return pr
        raise PullRequestNotFound(f"Pull request {repo_full_name}#{number} not found")

    def find(self, repo_full_name, number):
        return replace(self._get(repo_full_name, number))

    def list(self, repo_full_name, open=True, size=100):
        prs = self.pull_requests.get(repo_full_name, [])
        if open:
            prs = [pr for pr in prs if pr.state == PullRequestState.OPEN]
        return [replace(pr) for pr in prs[:size]]

    def create(self, repo_full_name, head, base, title, body):
        prs = self.pull_requests.setdefault(repo_full_name, [])
        number = len(prs) + 1
        pr = PullRequest(
            repo_full_name=repo_full_name,
            number=number,
            link=f"{self.server}/{repo_full_name}/pull/{number}",
            title=title,
            body=body,
            head=head,
            base=base,
        )
        prs.append(pr)
        return replace(pr)

    def update(self, repo_full_name, number, title=None, body=None):
        pr = self._get(repo_full_name, number)
        if title is not None:
            pr.title = title
        if body is not None:
            pr.body = body
        return replace(pr)

    def merge(self, repo_full_name: str, number: int, sha: str = "") -> None:
        pr = self._get(repo_full_name, number)
        pr.state = PullRequestState.MERGED
        pr.merge_sha = sha or f"merge-{number}"

    def close(self, repo_full_name: str, number: int) -> None:
        self._get(repo_full_name, number).state = PullRequestState.CLOSED


class FakePipelineService(PipelineService):
    def __init__(self):
        self.statuses: Dict[Tuple[str, str], str] = {}

    def status(self, repo_full_name, sha):
        return self.statuses.get((repo_full_name, sha))

    def set_status(self, repo_full_name: str, sha: str, status: str) -> None:
        self.statuses[(repo_full_name, sha)] = status


class GitHubPullRequestService(PullRequestService):
    def __init__(self, session: requests.Session, server: str = "https://api.github.com", timeout: float = 30.0):
        self.session = session
        self.server = server.rstrip("/")
        self.timeout = timeout

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(
                method, f"{self.server}{path}", timeout=self.timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise SCMTransientError(f"{method} {path} failed: {e}") from e
        if response.status_code == 429 or response.status_code >= 500:
            raise SCMTransientError(f"{method} {path} returned {response.status_code}")
        if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            raise SCMTransientError(f"{method} {path} hit the rate limit")
        if response.status_code == 404:
            raise PullRequestNotFound(f"{method} {path} returned 404")
        if not response.ok:
            raise SCMError(f"{method} {path} returned {response.status_code}: {response.text}")
        return response

    @staticmethod
    def _to_pull_request(repo_full_name: str, data: Dict) -> PullRequest:
        if data.get("merged_at") or data.get("merged"):
            state = PullRequestState.MERGED
        elif data.get("state") == "closed":
            state = PullRequestState.CLOSED
        else:
            state = PullRequestState.OPEN
        return PullRequest(
            repo_full_name=repo_full_name,
            number=data["number"],
            link=data.get("html_url", ""),
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=state,
            head=(data.get("head") or {}).get("ref", ""),
            base=(data.get("base") or {}).get("ref", ""),
            merge_sha=data.get("merge_commit_sha") or "",
        )

    def find(self, repo_full_name, number):
        data = self.request("GET", f"/repos/{repo_full_name}/pulls/{number}").json()
        return self._to_pull_request(repo_full_name, data)

    def list(self, repo_full_name, open=True, size=100):
        params = {"state": "open" if open else "all", "per_page": min(size, 100)}
        data = self.request("GET", f"/repos/{repo_full_name}/pulls", params=params).json()
        return [self._to_pull_request(repo_full_name, d) for d in data[:size]]

    def create(self, repo_full_name, head, base, title, body):
        payload = {"title": title, "head": head, "base": base, "body": body}
        data = self.request("POST", f"/repos/{repo_full_name}/pulls", json=payload).json()
        return self._to_pull_request(repo_full_name, data)

    def update(self, repo_full_name, number, title=None, body=None):
        payload = {k: v for k, v in (("title", title), ("body", body)) if v is not None}
        data = self.request(
            "PATCH", f"/repos/{repo_full_name}/pulls/{number}", json=payload
        ).json()
        return self._to_pull_request(repo_full_name, data)


class GitHubPipelineService(PipelineService):
    """Maps the combined commit status of the merge commit to a pipeline status."""

    STATES = {
        "success": PIPELINE_SUCCEEDED,
        "failure": PIPELINE_FAILED,
        "error": PIPELINE_FAILED,
        "pending": PIPELINE_RUNNING,
    }

    def __init__(self, pull_requests: GitHubPullRequestService):
        self.pull_requests = pull_requests

    def status(self, repo_full_name, sha):
        data = self.pull_requests.request(
            "GET", f"/repos/{repo_full_name}/commits/{sha}/status"
        ).json()
        if not data.get("statuses"):
            return None
        return self.STATES.get(data.get("state"))


def new_scm_client(kind: str, token: Optional[str] = None, server: Optional[str] = None) -> ScmClient:
    """Create the SCM client for a git kind."""
    if kind == "fake":
        return ScmClient(kind, FakePullRequestService(server or "https://fake.git"), FakePipelineService())
    if kind == "github":
        session = requests.Session()
        session.headers["Accept"] = "application/vnd.github+json"
        if token:
            session.headers["Authorization"] = f"Bearer {token}"
        pull_requests = GitHubPullRequestService(session, server or "https://api.github.com")
        return ScmClient(kind, pull_requests, GitHubPipelineService(pull_requests))
    raise ValueError(f"Unsupported git kind: {kind}")
