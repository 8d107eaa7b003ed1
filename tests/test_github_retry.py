import json
import subprocess
import time

import pytest

from polyresearch import github_debug, throttle
from polyresearch.github_retry import (
    GitHubCliError,
    RateLimitedError,
    RateLimitKind,
    RetryReason,
    classify_retry,
    current_rate_limit_status,
    jittered_delay,
    parse_retry_after,
    resolve_rate_limit_delay,
    run_command_with_retries,
    run_json_command,
)


@pytest.fixture
def quiet_environment(monkeypatch, tmp_path):
    monkeypatch.setattr(
        throttle, "_REQUEST_THROTTLE", throttle.RequestThrottle(0, tmp_path / "throttle")
    )
    monkeypatch.setattr(github_debug, "_state", False)
    sleeps = []
    monkeypatch.setattr(time, "sleep", lambda seconds: sleeps.append(seconds))
    return sleeps


def fake_gh(monkeypatch, responses):
    calls = []
    queue = list(responses)

    def fake_run(args, **kwargs):
        calls.append(list(args))
        code, out, err = queue.pop(0) if len(queue) > 1 else queue[0]
        return subprocess.CompletedProcess(args, code, out, err)

    monkeypatch.setattr(subprocess, "run", fake_run)
    return calls


def test_classifies_primary_rate_limit_errors_without_extra_api_calls():
    assert classify_retry("API rate limit exceeded for user", True) == RetryReason.rate_limited(
        RateLimitKind.PRIMARY
    )


def test_classifies_secondary_rate_limit_errors_from_github_messages():
    assert classify_retry(
        "You have exceeded a secondary rate limit. Please wait a few minutes before you try again.",
        True,
    ) == RetryReason.rate_limited(RateLimitKind.SECONDARY)


def test_classifies_retry_after_and_http_429_as_secondary_limits():
    assert classify_retry("HTTP 429\nRetry-After: 120", True) == RetryReason.rate_limited(
        RateLimitKind.SECONDARY
    )


def test_transient_errors_only_retry_when_idempotent():
    assert classify_retry("HTTP 502: Bad Gateway", True) == RetryReason.transient()
    assert classify_retry("HTTP 502: Bad Gateway", False) is None


def test_unrelated_errors_are_not_retried():
    assert classify_retry("HTTP 404: Not Found", True) is None


def test_jittered_delay_stays_within_plus_minus_50_percent():
    base = 90.0
    for _ in range(1000):
        jittered = jittered_delay(base)
        assert base / 2 <= jittered <= base + base / 2


def test_jittered_delay_noops_for_zero_base():
    assert jittered_delay(0.0) == 0.0


def test_parse_retry_after():
    assert parse_retry_after("HTTP 429\nRetry-After: 120") == 120
    assert parse_retry_after("HTTP 429") is None
    assert parse_retry_after("retry-after: soon") is None


def test_retry_reason_display():
    assert str(RetryReason.transient()) == "transient error"
    assert str(RetryReason.rate_limited(RateLimitKind.PRIMARY)) == "primary rate limit"


def test_rate_limited_error_message():
    error = RateLimitedError(RateLimitKind.SECONDARY, 120, 3, "HTTP 429")
    assert str(error) == (
        "GitHub API secondary rate limit hit after 3 retries. "
        "Retry after about 120s. Last error: HTTP 429"
    )
    assert isinstance(error, GitHubCliError)


def test_success_returns_stdout(monkeypatch, quiet_environment):
    calls = fake_gh(monkeypatch, [(0, b"hello", b"")])
    assert run_command_with_retries(["gh", "api", "user"], True) == "hello"
    assert calls == [["gh", "api", "user"]]


def test_non_retryable_failure_raises_immediately(monkeypatch, quiet_environment):
    calls = fake_gh(monkeypatch, [(1, b"", b"HTTP 404: Not Found\n")])
    with pytest.raises(GitHubCliError, match="GitHub CLI command failed: HTTP 404: Not Found"):
        run_command_with_retries(["gh", "api", "missing"], True)
    assert len(calls) == 1
    assert quiet_environment == []


def test_transient_failure_is_retried(monkeypatch, quiet_environment):
    calls = fake_gh(monkeypatch, [(1, b"", b"HTTP 503"), (0, b"ok", b"")])
    assert run_command_with_retries(["gh", "api", "x"], True) == "ok"
    assert len(calls) == 2
    assert len(quiet_environment) == 1
    assert 2.5 <= quiet_environment[0] <= 7.5


def test_transient_failure_gives_up_after_three_retries(monkeypatch, quiet_environment):
    calls = fake_gh(monkeypatch, [(1, b"", b"HTTP 502")])
    with pytest.raises(GitHubCliError) as info:
        run_command_with_retries(["gh", "api", "x"], True)
    assert not isinstance(info.value, RateLimitedError)
    assert len(calls) == 4


def test_non_idempotent_transient_failure_is_not_retried(monkeypatch, quiet_environment):
    calls = fake_gh(monkeypatch, [(1, b"", b"HTTP 502")])
    with pytest.raises(GitHubCliError):
        run_command_with_retries(["gh", "pr", "create"], False)
    assert len(calls) == 1


def test_secondary_rate_limit_honours_retry_after_then_gives_up(monkeypatch, quiet_environment):
    calls = fake_gh(monkeypatch, [(1, b"", b"HTTP 429\nRetry-After: 120")])
    with pytest.raises(RateLimitedError) as info:
        run_command_with_retries(["gh", "api", "x"], True)
    assert info.value.kind is RateLimitKind.SECONDARY
    assert info.value.retry_after_secs == 120
    assert info.value.attempts == 3
    assert len(calls) == 4
    assert quiet_environment == [120.0, 120.0, 120.0]


def test_primary_rate_limit_waits_until_reset(monkeypatch, quiet_environment):
    reset = int(time.time()) + 30
    body = json.dumps(
        {"resources": {"core": {"limit": 5000, "remaining": 0, "reset": reset, "used": 5000}}}
    ).encode()
    fake_gh(monkeypatch, [(0, body, b"")])
    delay = resolve_rate_limit_delay(RateLimitKind.PRIMARY, 0, "API rate limit exceeded")
    assert 29.0 <= delay <= 32.0


def test_current_rate_limit_status_is_none_on_failure(monkeypatch, quiet_environment):
    fake_gh(monkeypatch, [(1, b"", b"boom")])
    assert current_rate_limit_status() is None


def test_run_json_command_parses_output(monkeypatch, quiet_environment):
    fake_gh(monkeypatch, [(0, b'{"login": "alice"}', b"")])
    assert run_json_command(["gh", "api", "user"], True) == {"login": "alice"}


def test_run_json_command_rejects_invalid_json(monkeypatch, quiet_environment):
    fake_gh(monkeypatch, [(0, b"not json", b"")])
    with pytest.raises(GitHubCliError, match="failed to parse GitHub CLI JSON output"):
        run_json_command(["gh", "api", "user"], True)