"""Running ``gh`` with retries for transient failures and rate limits."""

from __future__ import annotations

import json
import os
import random
import subprocess
import sys
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from polyresearch import github_debug, throttle
from polyresearch.github_models import RateLimitStatus

TRANSIENT_RETRY_DELAYS_SECS = (5, 10, 20)
SECONDARY_RETRY_DELAYS_SECS = (90, 180, 300)


class RateLimitKind(str, Enum):
    """Which GitHub rate limit was hit."""

    PRIMARY = "primary"
    SECONDARY = "secondary"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RetryReason:
    """Why a failed command may be retried: a rate limit, or a transient error."""

    kind: RateLimitKind | None = None

    @classmethod
    def transient(cls) -> RetryReason:
        return cls(None)

    @classmethod
    def rate_limited(cls, kind: RateLimitKind) -> RetryReason:
        return cls(kind)

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is not None

    def __str__(self) -> str:
        if self.kind is None:
            return "transient error"
        return f"{self.kind} rate limit"


class GitHubCliError(RuntimeError):
    """A GitHub CLI command failed."""


class RateLimitedError(GitHubCliError):
    """A GitHub CLI command kept hitting a rate limit after every retry."""

    def __init__(self, kind: RateLimitKind, retry_after_secs: int, attempts: int, stderr: str):
        self.kind = kind
        self.retry_after_secs = retry_after_secs
        self.attempts = attempts
        self.stderr = stderr
        super().__init__(
            f"GitHub API {kind} rate limit hit after {attempts} retries. "
            f"Retry after about {retry_after_secs}s. Last error: {stderr}"
        )


def classify_retry(stderr: str, idempotent: bool) -> RetryReason | None:
    """Decide from ``gh`` stderr whether, and why, a command may be retried."""
    lowered = stderr.lower()
    if idempotent and any(
        marker in lowered
        for marker in ("http 502", "http 503", "bad gateway", "service unavailable")
    ):
        return RetryReason.transient()
    if "secondary rate limit" in lowered or "abuse detection" in lowered:
        return RetryReason.rate_limited(RateLimitKind.SECONDARY)
    if (
        "please wait a few minutes before you try again" in lowered
        or "retry-after" in lowered
        or "http 429" in lowered
    ):
        return RetryReason.rate_limited(RateLimitKind.SECONDARY)
    if "api rate limit exceeded" in lowered:
        return RetryReason.rate_limited(RateLimitKind.PRIMARY)
    if "rate limit exceeded" in lowered:
        return RetryReason.rate_limited(RateLimitKind.SECONDARY)
    return None


def parse_retry_after(stderr: str) -> float | None:
    """Seconds from the first ``Retry-After`` value in ``stderr``, if any."""
    lowered = stderr.lower()
    index = lowered.find("retry-after")
    if index < 0:
        return None
    rest = lowered[index:]
    start = next((i for i, ch in enumerate(rest) if ch in "0123456789"), None)
    if start is None:
        return None
    end = start
    while end < len(rest) and rest[end] in "0123456789":
        end += 1
    seconds = int(rest[start:end])
    if seconds > 2**64 - 1:
        return None
    return float(seconds)


def jittered_delay(base: float) -> float:
    """Apply +/-50% jitter to a fallback backoff so agents do not wake in lockstep."""
    base_millis = int(base * 1000)
    if base_millis <= 0:
        return base
    low = base_millis // 2
    high = base_millis + base_millis // 2
    return random.randint(low, high) / 1000.0


def _fallback_delay(delays: tuple[int, ...], attempt: int) -> float:
    return jittered_delay(float(delays[min(attempt, len(delays) - 1)]))


def execute_command(
    args: Iterable[str], attempt: int, idempotent: bool
) -> subprocess.CompletedProcess:
    """Run one ``gh`` invocation with debug logging."""
    args = list(args)
    env = github_debug.configure_env(dict(os.environ))
    github_debug.log_command_start(args, attempt, idempotent)
    started = time.monotonic()
    try:
        completed = subprocess.run(args, capture_output=True, env=env, check=False)
    except OSError as error:
        raise GitHubCliError("failed to run GitHub CLI command") from error
    github_debug.log_command_finish(
        args, completed.returncode, completed.stdout, completed.stderr, time.monotonic() - started
    )
    return completed


def current_rate_limit_status() -> RateLimitStatus | None:
    """Ask GitHub for the current rate limit, or None if that fails."""
    try:
        throttle.acquire_request_slot()
        completed = execute_command(["gh", "api", "rate_limit"], 0, True)
    except (OSError, GitHubCliError):
        return None
    if completed.returncode != 0:
        return None
    try:
        return RateLimitStatus.from_dict(json.loads(completed.stdout))
    except ValueError:
        return None


def resolve_rate_limit_delay(kind: RateLimitKind, attempt: int, stderr: str) -> float | None:
    """Seconds to wait before retrying after a rate limit, when it can be worked out."""
    if kind is RateLimitKind.PRIMARY:
        status = current_rate_limit_status()
        if status is None:
            return None
        reset_at = status.core.reset_at()
        if reset_at is None:
            return None
        wait = (reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(wait, 0.0) + 1.0
    retry_after = parse_retry_after(stderr)
    if retry_after is not None:
        return retry_after
    return _fallback_delay(SECONDARY_RETRY_DELAYS_SECS, attempt)


def run_command_with_retries(args: Iterable[str], idempotent: bool) -> str:
    """Run ``gh`` and return its stdout, retrying transient failures and rate limits."""
    args = list(args)
    max_possible_retries = max(len(TRANSIENT_RETRY_DELAYS_SECS), len(SECONDARY_RETRY_DELAYS_SECS))
    for attempt in range(max_possible_retries + 1):
        throttle.acquire_request_slot()
        completed = execute_command(args, attempt, idempotent)

        if completed.returncode == 0:
            try:
                return completed.stdout.decode("utf-8")
            except UnicodeDecodeError as error:
                raise GitHubCliError("GitHub CLI output was not valid UTF-8") from error

        stderr = completed.stderr.decode("utf-8", errors="replace").strip()
        retry = classify_retry(stderr, idempotent)
        if retry is None:
            raise GitHubCliError(f"GitHub CLI command failed: {stderr}")

        if retry.kind is None:
            retry_after = _fallback_delay(TRANSIENT_RETRY_DELAYS_SECS, attempt)
            max_retries = len(TRANSIENT_RETRY_DELAYS_SECS)
        else:
            retry_after = resolve_rate_limit_delay(retry.kind, attempt, stderr)
            if retry_after is None:
                retry_after = _fallback_delay(SECONDARY_RETRY_DELAYS_SECS, attempt)
            max_retries = len(SECONDARY_RETRY_DELAYS_SECS)

        if attempt >= max_retries:
            if retry.kind is None:
                raise GitHubCliError(f"GitHub CLI command failed: {stderr}")
            raise RateLimitedError(retry.kind, int(retry_after), attempt, stderr)

        print(
            f"GitHub CLI command hit a {retry} condition. Retrying in {int(retry_after)}s...",
            file=sys.stderr,
        )
        time.sleep(retry_after)

    raise GitHubCliError("GitHub CLI command failed after retries")


def run_json_command(args: Iterable[str], idempotent: bool) -> Any:
    """Run ``gh`` with retries and parse its stdout as JSON."""
    stdout = run_command_with_retries(args, idempotent)
    try:
        return json.loads(stdout)
    except ValueError as error:
        raise GitHubCliError(f"failed to parse GitHub CLI JSON output: {stdout}") from error