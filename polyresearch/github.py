"""GitHub client built on the ``gh`` command-line tool."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from polyresearch.github_models import (
    Issue,
    IssueComment,
    PullRequest,
    PullRequestFile,
    RateLimitStatus,
    RepoRef,
)
from polyresearch.github_retry import (
    GitHubCliError,
    run_command_with_retries,
    run_json_command,
)

COMMENT_FETCH_CONCURRENCY_LIMIT = 2

_ISSUE_FIELDS = "number,title,body,state,labels,createdAt,closedAt,author,url"
_PR_FIELDS = (
    "number,title,body,state,headRefName,headRefOid,baseRefName,"
    "createdAt,closedAt,mergedAt,author,url"
)
_LIST_STATE_ALL = "all"


def _as_list(value: Any, what: str) -> list:
    if not isinstance(value, list):
        raise GitHubCliError(f"expected a JSON array of {what}, got {type(value).__name__}")
    return value


def parse_pr_number_from_url(url: str) -> int:
    """The pull request number at the end of a pull request URL."""
    last = url.strip().rsplit("/", 1)[-1]
    if not last.isdigit():
        raise ValueError(f"failed to parse PR URL `{url}`")
    return int(last)


class GitHubClient:
    """Reads and writes issues, comments and pull requests of one repository."""

    def __init__(self, repo: RepoRef) -> None:
        self.repo = repo

    def _repo_path(self) -> str:
        return f"repos/{self.repo.owner}/{self.repo.name}"

    def _gh_api_json(
        self, method: str, endpoint: str, fields: Iterable[tuple[str, str]] = ()
    ) -> Any:
        idempotent = method.upper() in ("GET", "HEAD")
        args = ["gh", "api", "--method", method, endpoint]
        for key, value in fields:
            args.extend(["-f", f"{key}={value}"])
        return run_json_command(args, idempotent)

    def _gh_json(self, *args: str) -> Any:
        return run_json_command(["gh", *args], True)

    def _gh_output(self, *args: str) -> str:
        return run_command_with_retries(["gh", *args], False)

    def current_login(self) -> str:
        """The login of the authenticated user."""
        value = self._gh_json("api", "user")
        login = value.get("login") if isinstance(value, dict) else None
        if not isinstance(login, str):
            raise GitHubCliError("GitHub API response did not include `login`")
        return login

    def auth_status(self) -> str:
        """The text of ``gh auth status``."""
        return self._gh_output("auth", "status")

    def auth_token(self) -> str:
        """``GITHUB_TOKEN`` when set, otherwise the token ``gh`` holds."""
        token = os.environ.get("GITHUB_TOKEN")
        if token is not None and token.strip():
            return token
        try:
            completed = subprocess.run(
                ["gh", "auth", "token"], capture_output=True, check=False
            )
        except OSError as error:
            raise GitHubCliError("failed to run `gh auth token`") from error
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace")
            raise GitHubCliError(f"`gh auth token` failed: {stderr}")
        return completed.stdout.decode("utf-8").strip()

    def get_rate_limit_status(self) -> RateLimitStatus:
        """The core rate-limit bucket."""
        return RateLimitStatus.from_dict(self._gh_api_json("GET", "rate_limit"))

    def repo_has_issues(self) -> bool:
        """Whether issues are enabled; assumed so when GitHub does not say."""
        value = self._gh_api_json("GET", self._repo_path())
        has_issues = value.get("has_issues") if isinstance(value, dict) else None
        return has_issues if isinstance(has_issues, bool) else True

    def list_thesis_issues(self) -> list[Issue]:
        """Every issue labelled ``thesis``, open or closed."""
        value = self._gh_json(
            "issue", "list",
            "--repo", self.repo.slug(),
            "--label", "thesis",
            "--state", _LIST_STATE_ALL,
            "--limit", "1000",
            "--json", _ISSUE_FIELDS,
        )
        return [Issue.from_dict(item) for item in _as_list(value, "issues")]

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        """Comments on an issue."""
        value = self._gh_api_json(
            "GET", f"{self._repo_path()}/issues/{issue_number}/comments?per_page=100"
        )
        return [IssueComment.from_dict(item) for item in _as_list(value, "comments")]

    def create_issue(self, title: str, body: str, labels: Sequence[str]) -> Issue:
        """Open a new issue with the given labels."""
        fields = [("title", title), ("body", body)]
        fields.extend(("labels[]", label) for label in labels)
        return Issue.from_dict(self._gh_api_json("POST", f"{self._repo_path()}/issues", fields))

    def post_issue_comment(self, issue_number: int, body: str) -> IssueComment:
        """Comment on an issue or pull request."""
        value = self._gh_api_json(
            "POST", f"{self._repo_path()}/issues/{issue_number}/comments", [("body", body)]
        )
        return IssueComment.from_dict(value)

    def add_assignees(self, issue_number: int, assignees: Sequence[str]) -> None:
        """Assign users to an issue."""
        self._gh_api_json(
            "POST",
            f"{self._repo_path()}/issues/{issue_number}/assignees",
            [("assignees[]", assignee) for assignee in assignees],
        )

    def close_issue(self, issue_number: int) -> Issue:
        """Close an issue."""
        value = self._gh_api_json(
            "PATCH", f"{self._repo_path()}/issues/{issue_number}", [("state", "closed")]
        )
        return Issue.from_dict(value)

    def reopen_issue(self, issue_number: int) -> Issue:
        """Reopen an issue."""
        value = self._gh_api_json(
            "PATCH", f"{self._repo_path()}/issues/{issue_number}", [("state", "open")]
        )
        return Issue.from_dict(value)

    def list_pull_requests(self) -> list[PullRequest]:
        """Every pull request, in any state."""
        value = self._gh_json(
            "pr", "list",
            "--repo", self.repo.slug(),
            "--state", _LIST_STATE_ALL,
            "--limit", "1000",
            "--json", _PR_FIELDS,
        )
        return [PullRequest.from_dict(item) for item in _as_list(value, "pull requests")]

    def get_pull_request(self, pr_number: int) -> PullRequest:
        """One pull request."""
        value = self._gh_json(
            "pr", "view", str(pr_number),
            "--repo", self.repo.slug(),
            "--json", _PR_FIELDS,
        )
        return PullRequest.from_dict(value)

    def list_pull_request_comments(self, pr_number: int) -> list[IssueComment]:
        """Conversation comments on a pull request."""
        value = self._gh_api_json(
            "GET", f"{self._repo_path()}/issues/{pr_number}/comments?per_page=100"
        )
        return [IssueComment.from_dict(item) for item in _as_list(value, "comments")]

    def list_pull_request_files(self, pr_number: int) -> list[PullRequestFile]:
        """Files changed by a pull request."""
        value = self._gh_api_json(
            "GET", f"{self._repo_path()}/pulls/{pr_number}/files?per_page=100"
        )
        return [PullRequestFile.from_dict(item) for item in _as_list(value, "files")]

    def create_pull_request(self, branch: str, title: str, body: str, base: str) -> PullRequest:
        """Open a pull request from ``branch`` into ``base`` and fetch it."""
        url = self._gh_output(
            "pr", "create",
            "--repo", self.repo.slug(),
            "--base", base,
            "--head", branch,
            "--title", title,
            "--body", body,
        )
        return self.get_pull_request(parse_pr_number_from_url(url))

    def close_pull_request(self, pr_number: int) -> Any:
        """Close a pull request; returns GitHub's JSON response."""
        return self._gh_api_json(
            "PATCH", f"{self._repo_path()}/pulls/{pr_number}", [("state", "closed")]
        )

    def merge_pull_request(self, pr_number: int) -> Any:
        """Merge a pull request with a merge commit; returns GitHub's JSON response."""
        return self._gh_api_json(
            "PUT", f"{self._repo_path()}/pulls/{pr_number}/merge", [("merge_method", "merge")]
        )


def fetch_lists(github) -> tuple[list[Issue], list[PullRequest]]:
    """Fetch thesis issues and pull requests concurrently."""
    with ThreadPoolExecutor(max_workers=2) as pool:
        issues = pool.submit(github.list_thesis_issues)
        prs = pool.submit(github.list_pull_requests)
        return issues.result(), prs.result()


def fetch_all_comments(
    github, issue_numbers: Iterable[int], pr_numbers: Iterable[int]
) -> tuple[dict[int, list[IssueComment]], dict[int, list[IssueComment]]]:
    """Fetch comments of many issues and pull requests, a few requests at a time."""
    with ThreadPoolExecutor(max_workers=COMMENT_FETCH_CONCURRENCY_LIMIT) as pool:
        issue_futures = {
            number: pool.submit(github.list_issue_comments, number) for number in issue_numbers
        }
        pr_futures = {
            number: pool.submit(github.list_pull_request_comments, number)
            for number in pr_numbers
        }
        issue_comments = {number: future.result() for number, future in issue_futures.items()}
        pr_comments = {number: future.result() for number, future in pr_futures.items()}
    return issue_comments, pr_comments