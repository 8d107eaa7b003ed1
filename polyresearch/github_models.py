"""Data types for the GitHub objects the protocol reads and writes."""

from __future__ import annotations

import re
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

_TIMESTAMP_PATTERN = re.compile(
    r"(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})"
)
_URL_PREFIXES = ("https://github.com/", "http://github.com/")
_SSH_PREFIX = re.compile(r"[A-Za-z0-9._-]+@github\.com:")


def parse_timestamp(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not isinstance(value, str):
        raise ValueError(f"expected an RFC 3339 timestamp, got {value!r}")
    match = _TIMESTAMP_PATTERN.fullmatch(value.strip())
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp `{value}`")
    date_part, time_part, fraction, offset = match.groups()
    parsed = datetime.strptime(f"{date_part}T{time_part}", "%Y-%m-%dT%H:%M:%S")
    if fraction:
        parsed = parsed.replace(microsecond=int(fraction[1:7].ljust(6, "0")))
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = 1 if offset[0] == "+" else -1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    return parsed.replace(tzinfo=tz).astimezone(timezone.utc)


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object for {what}, got {type(data).__name__}")
    return data


def _lookup(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    raise ValueError(f"missing field `{keys[0]}`")


def _optional(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _uint(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"field `{name}` must be a non-negative integer, got {value!r}")
    return value


def _str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"field `{name}` must be a string, got {value!r}")
    return value


def _optional_str(value: Any, name: str) -> str | None:
    return None if value is None else _str(value, name)


def _optional_timestamp(value: Any) -> datetime | None:
    return None if value is None else parse_timestamp(value)


def _strip_prefix_all(text: str, prefix: str) -> str:
    while text.startswith(prefix):
        text = text[len(prefix):]
    return text


@dataclass(frozen=True)
class RepoRef:
    """A GitHub repository named by owner and name."""

    owner: str
    name: str

    @staticmethod
    def parse(value: str) -> RepoRef:
        """Parse ``owner/name``."""
        owner, sep, name = value.partition("/")
        if not sep:
            raise ValueError("expected repo in `owner/name` format")
        return RepoRef(owner, name)

    @staticmethod
    def parse_remote(remote: str) -> RepoRef:
        """Parse an HTTPS or SSH GitHub remote URL."""
        stripped = remote.strip()
        while stripped.endswith(".git"):
            stripped = stripped[: -len(".git")]
        for prefix in _URL_PREFIXES:
            stripped = _strip_prefix_all(stripped, prefix)
        while (match := _SSH_PREFIX.match(stripped)) is not None:
            stripped = stripped[match.end():]
        return RepoRef.parse(stripped)

    @staticmethod
    def discover(explicit: str | None, repo_root: Path | str) -> RepoRef:
        """Use ``explicit`` when given, otherwise the ``origin`` remote of ``repo_root``."""
        if explicit is not None:
            return RepoRef.parse(explicit)
        try:
            completed = subprocess.run(
                ["git", "remote", "get-url", "origin"],
                cwd=repo_root,
                capture_output=True,
                check=False,
            )
        except OSError as error:
            raise RuntimeError("failed to run `git remote get-url origin`") from error
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace")
            raise RuntimeError(f"failed to detect git remote origin: {stderr}")
        return RepoRef.parse_remote(completed.stdout.decode("utf-8").strip())

    def slug(self) -> str:
        """``owner/name``."""
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class Label:
    """An issue label."""

    name: str

    @staticmethod
    def from_dict(data: Any) -> Label:
        data = _mapping(data, "label")
        return Label(_str(_lookup(data, "name"), "name"))


@dataclass(frozen=True)
class Author:
    """The author of an issue or pull request."""

    login: str

    @staticmethod
    def from_dict(data: Any) -> Author:
        data = _mapping(data, "author")
        return Author(_str(_lookup(data, "login"), "login"))


def _optional_author(value: Any) -> Author | None:
    return None if value is None else Author.from_dict(value)


@dataclass
class Issue:
    """A thesis issue; ``state`` is always upper case."""

    number: int
    title: str
    state: str
    created_at: datetime
    body: str | None = None
    labels: list[Label] = field(default_factory=list)
    closed_at: datetime | None = None
    author: Author | None = None
    url: str | None = None

    @staticmethod
    def from_dict(data: Any) -> Issue:
        data = _mapping(data, "issue")
        labels = _optional(data, "labels")
        if labels is None:
            labels = []
        elif not isinstance(labels, list):
            raise ValueError("field `labels` must be a list")
        return Issue(
            number=_uint(_lookup(data, "number"), "number"),
            title=_str(_lookup(data, "title"), "title"),
            state=_str(_lookup(data, "state"), "state").upper(),
            created_at=parse_timestamp(_lookup(data, "createdAt", "created_at")),
            body=_optional_str(_optional(data, "body"), "body"),
            labels=[Label.from_dict(label) for label in labels],
            closed_at=_optional_timestamp(_optional(data, "closedAt", "closed_at")),
            author=_optional_author(_optional(data, "author")),
            url=_optional_str(_optional(data, "url"), "url"),
        )


@dataclass(frozen=True)
class CommentUser:
    """The user who wrote a comment."""

    login: str

    @staticmethod
    def from_dict(data: Any) -> CommentUser:
        data = _mapping(data, "user")
        return CommentUser(_str(_lookup(data, "login"), "login"))


@dataclass
class IssueComment:
    """A comment on an issue or pull request."""

    id: int
    body: str
    user: CommentUser
    created_at: datetime
    updated_at: datetime | None = None

    @staticmethod
    def from_dict(data: Any) -> IssueComment:
        data = _mapping(data, "comment")
        return IssueComment(
            id=_uint(_lookup(data, "id"), "id"),
            body=_str(_lookup(data, "body"), "body"),
            user=CommentUser.from_dict(_lookup(data, "user")),
            created_at=parse_timestamp(_lookup(data, "created_at")),
            updated_at=_optional_timestamp(_optional(data, "updated_at")),
        )


@dataclass
class PullRequest:
    """A candidate pull request; ``state`` is always upper case."""

    number: int
    title: str
    state: str
    head_ref_name: str
    created_at: datetime
    body: str | None = None
    head_ref_oid: str | None = None
    base_ref_name: str | None = None
    closed_at: datetime | None = None
    merged_at: datetime | None = None
    author: Author | None = None
    url: str | None = None

    @staticmethod
    def from_dict(data: Any) -> PullRequest:
        data = _mapping(data, "pull request")
        return PullRequest(
            number=_uint(_lookup(data, "number"), "number"),
            title=_str(_lookup(data, "title"), "title"),
            state=_str(_lookup(data, "state"), "state").upper(),
            head_ref_name=_str(_lookup(data, "headRefName", "head_ref_name"), "headRefName"),
            created_at=parse_timestamp(_lookup(data, "createdAt", "created_at")),
            body=_optional_str(_optional(data, "body"), "body"),
            head_ref_oid=_optional_str(
                _optional(data, "headRefOid", "head_ref_oid"), "headRefOid"
            ),
            base_ref_name=_optional_str(
                _optional(data, "baseRefName", "base_ref_name"), "baseRefName"
            ),
            closed_at=_optional_timestamp(_optional(data, "closedAt", "closed_at")),
            merged_at=_optional_timestamp(_optional(data, "mergedAt", "merged_at")),
            author=_optional_author(_optional(data, "author")),
            url=_optional_str(_optional(data, "url"), "url"),
        )


@dataclass(frozen=True)
class PullRequestFile:
    """A file touched by a pull request."""

    filename: str

    @staticmethod
    def from_dict(data: Any) -> PullRequestFile:
        data = _mapping(data, "pull request file")
        return PullRequestFile(_str(_lookup(data, "filename"), "filename"))


@dataclass(frozen=True)
class RateLimitBucket:
    """One rate-limit bucket; ``reset`` is a Unix timestamp in seconds."""

    limit: int
    remaining: int
    reset: int
    used: int

    @staticmethod
    def from_dict(data: Any) -> RateLimitBucket:
        data = _mapping(data, "rate limit bucket")
        return RateLimitBucket(
            limit=_uint(_lookup(data, "limit"), "limit"),
            remaining=_uint(_lookup(data, "remaining"), "remaining"),
            reset=_uint(_lookup(data, "reset"), "reset"),
            used=_uint(_lookup(data, "used"), "used"),
        )

    def reset_at(self) -> datetime | None:
        """When the bucket resets, or None if the timestamp is out of range."""
        try:
            return datetime.fromtimestamp(self.reset, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None


@dataclass(frozen=True)
class RateLimitStatus:
    """The core bucket of a ``rate_limit`` response."""

    core: RateLimitBucket

    @staticmethod
    def from_dict(data: Any) -> RateLimitStatus:
        data = _mapping(data, "rate limit status")
        resources = _mapping(_lookup(data, "resources"), "resources")
        return RateLimitStatus(RateLimitBucket.from_dict(_lookup(resources, "core")))