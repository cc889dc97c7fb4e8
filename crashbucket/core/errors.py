"""Exception hierarchy for the crash grouping engine.

Most of these are raised by store adapters and absorbed by the core
(conflicts, vanished groups). The rest surface to driving adapters, which
map them to HTTP status codes or CLI error results.
"""

from .models import ReconciliationResult


class CrashBucketError(Exception):
    """Base class for all crashbucket errors."""


class NotFoundError(CrashBucketError, ValueError):
    """A referenced group, crash, version or symbol map does not exist."""


class GroupConflictError(CrashBucketError):
    """A write collided with the (app_id, fingerprint) uniqueness constraint."""

    def __init__(self, app_id: str, fingerprint: str):
        super().__init__(
            f"Crash group with fingerprint {fingerprint} already exists for app {app_id}"
        )
        self.app_id = app_id
        self.fingerprint = fingerprint


class GroupNotFoundError(CrashBucketError):
    """A crash referenced a group that was deleted or merged away."""

    def __init__(self, group_id: str):
        super().__init__(f"Crash group {group_id} no longer exists")
        self.group_id = group_id


class GroupResolutionError(CrashBucketError):
    """Find-or-create did not settle within the configured attempts."""


class AuthenticationError(CrashBucketError):
    """The submission credential is missing or unknown."""


class SubmissionRejectedError(CrashBucketError, ValueError):
    """The submission is well-formed but not acceptable for the app."""


class ReconciliationError(CrashBucketError):
    """Some partitions could not be reconciled.

    Partitions that completed before the failure stay committed; the
    partial counts are available on ``result``.
    """

    def __init__(self, message: str, result: ReconciliationResult):
        super().__init__(message)
        self.result = result
