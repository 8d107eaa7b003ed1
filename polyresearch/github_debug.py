"""Opt-in diagnostics for GitHub CLI invocations.

Debug output is enabled by a command-line flag (see :func:`init`) or by the
``POLYRESEARCH_GITHUB_DEBUG`` environment variable. All output goes to stderr.
"""

from __future__ import annotations

import json
import os
import sys
import threading
from collections.abc import Iterable, MutableMapping
from datetime import datetime, timezone

GITHUB_DEBUG_ENV_VAR = "POLYRESEARCH_GITHUB_DEBUG"

_TRUTHY_VALUES = frozenset({"1", "true", "yes", "on", "api"})

_HIGHLIGHT_PREFIXES = ("> get ", "> post ", "> put ", "> patch ", "< http/")
_HIGHLIGHT_FRAGMENTS = (
    "request to https://api.github.com",
    "x-ratelimit-",
    "retry-after:",
    "secondary rate limit",
    "abuse detection",
    "please wait a few minutes before you try again",
    "x-github-request-id:",
    "graphql",
)

_state_lock = threading.Lock()
_state: bool | None = None


def init(cli_enabled: bool) -> None:
    """Fix the debug state from the CLI flag, falling back to the environment."""
    global _state
    with _state_lock:
        _state = bool(cli_enabled) or _env_flag_enabled()


def enabled() -> bool:
    """Return whether GitHub debug logging is on."""
    state = _state
    if state is None:
        return _env_flag_enabled()
    return state


def parse_truthy_flag(value: str) -> bool:
    """Interpret an environment flag value as a boolean."""
    return value.strip().lower() in _TRUTHY_VALUES


def configure_env(env: MutableMapping[str, str]) -> MutableMapping[str, str]:
    """Ask ``gh`` for API-level debug output when debugging is enabled."""
    if enabled():
        env["GH_DEBUG"] = "api"
    return env


def render_command(args: Iterable[str]) -> str:
    """Render a command line for log output."""
    return " ".join(str(arg) for arg in args)


def collect_debug_highlights(stderr: str) -> list[str]:
    """Pick the request, response and rate-limit lines out of ``gh`` debug output."""
    highlights = []
    for line in stderr.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        lowered = trimmed.lower()
        if lowered.startswith(_HIGHLIGHT_PREFIXES) or any(
            fragment in lowered for fragment in _HIGHLIGHT_FRAGMENTS
        ):
            highlights.append(trimmed)
    return highlights


def _as_unsigned(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def summarize_rate_limit_stdout(args: Iterable[str], stdout: bytes | str) -> str | None:
    """Summarise every bucket of a ``rate_limit`` response, or None for other commands."""
    if not _is_rate_limit_command(args):
        return None
    try:
        value = json.loads(stdout)
    except (ValueError, TypeError):
        return None
    if not isinstance(value, dict):
        return None
    resources = value.get("resources")
    if not isinstance(resources, dict):
        return None

    summaries = []
    for name, bucket in resources.items():
        if not isinstance(bucket, dict):
            continue
        limit = _as_unsigned(bucket.get("limit"))
        remaining = _as_unsigned(bucket.get("remaining"))
        used = _as_unsigned(bucket.get("used"))
        if limit is None or remaining is None or used is None:
            continue
        summaries.append(f"{name}={remaining}/{limit} used={used}")
    return ", ".join(sorted(summaries))


def _is_rate_limit_command(args: Iterable[str]) -> bool:
    return any(str(arg) == "rate_limit" for arg in args)


def _env_flag_enabled() -> bool:
    value = os.environ.get(GITHUB_DEBUG_ENV_VAR)
    return value is not None and parse_truthy_flag(value)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _emit(message: str) -> None:
    print(message, file=sys.stderr)


def log_command_start(args: Iterable[str], attempt: int, idempotent: bool) -> None:
    """Log the start of a ``gh`` invocation; ``attempt`` counts from zero."""
    if not enabled():
        return
    _emit(
        f"[polyresearch github-debug {_now()}] start attempt={attempt + 1} "
        f"idempotent={str(bool(idempotent)).lower()} cmd={render_command(args)}"
    )


def log_command_finish(
    args: Iterable[str],
    returncode: int | None,
    stdout: bytes,
    stderr: bytes,
    elapsed: float,
) -> None:
    """Log the result of a ``gh`` invocation; ``elapsed`` is in seconds."""
    if not enabled():
        return
    args = list(args)
    exit_code = "signal" if returncode is None or returncode < 0 else str(returncode)
    elapsed_ms = int(max(elapsed, 0.0) * 1000)
    _emit(
        f"[polyresearch github-debug {_now()}] finish exit_code={exit_code} "
        f"elapsed_ms={elapsed_ms} stdout_bytes={len(stdout)} stderr_bytes={len(stderr)}"
    )

    stderr_text = stderr.decode("utf-8", errors="replace") if isinstance(stderr, bytes) else stderr
    highlights = collect_debug_highlights(stderr_text)
    if highlights:
        _emit(f"[polyresearch github-debug {_now()}] gh highlights:")
        for line in highlights:
            _emit(f"  {line}")

    summary = summarize_rate_limit_stdout(args, stdout)
    if summary is not None:
        _emit(f"[polyresearch github-debug {_now()}] rate_limit buckets: {summary}")


def log_throttle_wait(wait: float) -> None:
    """Log how long the request throttle made us wait, in seconds."""
    if not enabled() or wait <= 0:
        return
    _emit(f"[polyresearch github-debug {_now()}] throttle_wait_ms={int(wait * 1000)}")