# polyresearch

Building blocks for coordinating research experiments through GitHub issues
and pull requests. The package talks to GitHub through the `gh` command-line
tool, so `gh` must be installed and authenticated.

## Install

```
pip install .
```

## What is inside

- `polyresearch.github` — `GitHubClient`, a client over `gh` for thesis
  issues (issues labelled `thesis`), comments and pull requests, plus
  `fetch_lists` (issues and pull requests fetched side by side) and
  `fetch_all_comments` (comments of many issues and pull requests, at most
  two requests in flight at once). `parse_pr_number_from_url` reads the
  number off a pull request URL.
- `polyresearch.github_models` — `RepoRef`, `Issue`, `IssueComment`,
  `PullRequest`, `PullRequestFile`, `RateLimitStatus` and friends, each built
  from GitHub JSON with `from_dict`. Issue and pull request states are
  upper-cased. `RepoRef.discover` takes an explicit `owner/name`, or else
  reads the `origin` remote of a git checkout.
- `polyresearch.github_retry` — runs `gh` with retries. On read-only calls
  (GET, HEAD and list/view commands), 502/503 errors are retried after about
  5, 10 and 20 seconds, each with ±50% jitter. Rate limits are retried after
  the server's `Retry-After`, one second past the primary limit's reset time,
  or a jittered 90/180/300 second fallback. Other failures raise
  `GitHubCliError`; rate limits that outlast every retry raise
  `RateLimitedError`.
- `polyresearch.throttle` — `RequestThrottle`, which spaces out requests
  across processes using a locked timestamp file, `~/.polyresearch-throttle`
  (or the same name in the temporary directory when `HOME` is unset).
  `init(ms)` sets the process-wide delay once; `acquire_request_slot()` waits
  for it, defaulting to 1000 ms. A delay of zero turns pacing off.
- `polyresearch.github_debug` — tracing of every `gh` call to stderr,
  enabled with `init(True)` or by setting `POLYRESEARCH_GITHUB_DEBUG` to
  `1`, `true`, `yes`, `on` or `api`. When on, `gh` is run with
  `GH_DEBUG=api`, and request, response and rate-limit lines are picked out
  of its output.
- `polyresearch.hardware` — `probe()` reports cores, memory, GPUs (through
  `nvidia-smi` on Linux, `system_profiler` on macOS) and the 1-minute load
  average; `budget()` scales that to a capacity percentage clamped to 1–100,
  always granting at least one core, and at least one GPU on a machine that
  has any. `format_machine_line`, `format_share_line` and `format_live_line`
  render them as text.

## Example

```python
from pathlib import Path

from polyresearch import hardware, throttle
from polyresearch.github import GitHubClient
from polyresearch.github_models import RepoRef

throttle.init(1000)
client = GitHubClient(RepoRef.discover(None, Path.cwd()))
for issue in client.list_thesis_issues():
    print(issue.number, issue.state, issue.title)

snapshot = hardware.probe()
print(hardware.format_machine_line(snapshot))
print(hardware.format_share_line(hardware.budget(snapshot, 75)))
print(hardware.format_live_line(snapshot))
```

## What it does not do

This is a library only. It has no command-line program and no terminal
dashboard, and it does not interpret the comments on issues and pull
requests: claims, attempts, reviews and decisions are left to the caller, as
is keeping a results ledger.

## Tests

```
pip install .[test]
pytest
```