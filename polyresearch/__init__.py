"""GitHub CLI client, request throttling and hardware probing for distributed autoresearch."""

__version__ = "0.4.1"

__all__ = [
    "github",
    "github_debug",
    "github_models",
    "github_retry",
    "hardware",
    "throttle",
]