"""Domain models for the crash grouping engine.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

MAX_EXCEPTION_MESSAGE_LENGTH = 1000


def truncate_message(message: str | None) -> str | None:
    """Clip an exception message to the persisted column width."""
    if message is None:
        return None
    return message[:MAX_EXCEPTION_MESSAGE_LENGTH]


class GroupStatus(Enum):
    """Triage state of a crash group, set from the dashboard."""

    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ExceptionSignature:
    """Exception class and (normalized) message from a trace's first line."""

    exception_class: str | None
    exception_message: str | None


@dataclass(frozen=True)
class Breadcrumb:
    """A single user/system action recorded by the client before the crash."""

    timestamp: int  # epoch millis, client clock
    message: str
    category: str


@dataclass(frozen=True)
class DeviceInfo:
    """Device description attached to a crash.

    Known fields are typed; anything else the client sends is kept in
    ``extra`` and passed through untouched.
    """

    device_id: str | None = None
    os_version: int | None = None
    manufacturer: str | None = None
    model: str | None = None
    country: str | None = None
    language: str | None = None
    extra: dict[str, Any] | MappingProxyType[str, Any] = field(
        default_factory=dict
    )  # converted to proxy in __post_init__

    def __post_init__(self) -> None:
        """Convert extra dict to read-only proxy."""
        if isinstance(self.extra, dict):
            object.__setattr__(self, "extra", MappingProxyType(self.extra))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "device_id": self.device_id,
                "os_version": self.os_version,
                "manufacturer": self.manufacturer,
                "model": self.model,
                "country": self.country,
                "language": self.language,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "DeviceInfo | None":
        if data is None:
            return None
        known = {
            "device_id",
            "os_version",
            "manufacturer",
            "model",
            "country",
            "language",
        }
        return cls(
            device_id=data.get("device_id"),
            os_version=data.get("os_version"),
            manufacturer=data.get("manufacturer"),
            model=data.get("model"),
            country=data.get("country"),
            language=data.get("language"),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class CrashGroup:
    """A deduplicated bucket of crashes sharing one fingerprint in one app.

    Mutable: counters, timestamps and status change over the group's life.
    The exception message is clipped on every write so no caller can
    persist an oversized message.
    """

    id: str  # UUID
    app_id: str
    fingerprint: str  # 32 hex chars
    exception_class: str | None
    exception_message: str | None
    first_seen: datetime
    last_seen: datetime
    occurrences: int
    status: GroupStatus = GroupStatus.OPEN

    def __post_init__(self) -> None:
        """Validate group invariants on creation or deserialization."""
        if self.occurrences < 1:
            raise ValueError(f"occurrences must be >= 1, got {self.occurrences}")
        if self.last_seen < self.first_seen:
            raise ValueError(
                f"last_seen ({self.last_seen}) cannot be before "
                f"first_seen ({self.first_seen})"
            )
        self.exception_message = truncate_message(self.exception_message)

    @classmethod
    def open_new(
        cls,
        app_id: str,
        fingerprint: str,
        exception_class: str | None,
        exception_message: str | None,
        event_time: datetime,
    ) -> "CrashGroup":
        """Build the group for a fingerprint seen for the first time."""
        return cls(
            id=str(uuid.uuid4()),
            app_id=app_id,
            fingerprint=fingerprint,
            exception_class=exception_class,
            exception_message=exception_message,
            first_seen=event_time,
            last_seen=event_time,
            occurrences=1,
            status=GroupStatus.OPEN,
        )

    def record_occurrence(self, event_time: datetime) -> None:
        """Count one more crash. last_seen only moves forward."""
        self.occurrences += 1
        if event_time > self.last_seen:
            self.last_seen = event_time

    def refresh_signature(self, signature: ExceptionSignature) -> None:
        self.exception_class = signature.exception_class
        self.exception_message = truncate_message(signature.exception_message)


@dataclass(frozen=True)
class DecodeOutcome:
    """Result of one attempt to de-obfuscate a trace.

    Exactly one of three shapes:
    - skipped: no symbol map, every field None
    - success: decoded_text and decoded_at set
    - failure: error set
    """

    decoded_text: str | None = None
    decoded_at: datetime | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if (self.decoded_text is None) != (self.decoded_at is None):
            raise ValueError("decoded_text and decoded_at must be set together")
        if self.decoded_text is not None and self.error is not None:
            raise ValueError("a decode cannot both succeed and fail")

    @classmethod
    def skipped(cls) -> "DecodeOutcome":
        return cls()

    @classmethod
    def success(cls, decoded_text: str, decoded_at: datetime) -> "DecodeOutcome":
        return cls(decoded_text=decoded_text, decoded_at=decoded_at)

    @classmethod
    def failure(cls, error: str) -> "DecodeOutcome":
        return cls(error=error)

    @property
    def succeeded(self) -> bool:
        return self.decoded_text is not None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class ProcessedTrace:
    """What the decode step hands to the resolver for one crash."""

    outcome: DecodeOutcome
    fingerprint: str
    signature: ExceptionSignature


@dataclass(frozen=True)
class Crash:
    """A single stored crash occurrence.

    Immutable apart from the decode fields (re-decode) and group_id
    (reconciliation); both changes produce a new instance via ``replace``.
    """

    id: str  # UUID
    app_id: str
    group_id: str
    version_code: int | None
    stacktrace_raw: str
    created_at: datetime  # client event time
    stacktrace_decoded: str | None = None
    decoded_at: datetime | None = None
    decode_error: str | None = None
    thread: str | None = None
    is_fatal: bool = True
    context: dict[str, str] | MappingProxyType[str, str] = field(
        default_factory=dict
    )  # converted to proxy in __post_init__
    breadcrumbs: tuple[Breadcrumb, ...] = ()
    device_info: DeviceInfo | None = None

    def __post_init__(self) -> None:
        if isinstance(self.context, dict):
            object.__setattr__(self, "context", MappingProxyType(self.context))
        if (self.stacktrace_decoded is None) != (self.decoded_at is None):
            raise ValueError("decoded_at must be set iff stacktrace_decoded is set")
        if self.stacktrace_decoded is not None and self.decode_error is not None:
            raise ValueError("stacktrace_decoded and decode_error are mutually exclusive")

    @property
    def decode_outcome(self) -> DecodeOutcome:
        return DecodeOutcome(
            decoded_text=self.stacktrace_decoded,
            decoded_at=self.decoded_at,
            error=self.decode_error,
        )

    def with_decode(self, outcome: DecodeOutcome) -> "Crash":
        return replace(
            self,
            stacktrace_decoded=outcome.decoded_text,
            decoded_at=outcome.decoded_at,
            decode_error=outcome.error,
        )

    def best_trace(self) -> str:
        """Decoded text when available, raw otherwise."""
        if self.stacktrace_decoded is not None:
            return self.stacktrace_decoded
        return self.stacktrace_raw


@dataclass(frozen=True)
class CrashSubmission:
    """One crash event as submitted by a client SDK."""

    stacktrace: str
    timestamp: datetime  # client event time
    thread: str | None = None
    is_fatal: bool = True
    context: Mapping[str, str] = field(default_factory=dict)
    breadcrumbs: tuple[Breadcrumb, ...] = ()
    device_info: DeviceInfo | None = None


@dataclass(frozen=True)
class AppIdentity:
    """An application as known to the registry."""

    app_id: str
    package_name: str


@dataclass(frozen=True)
class VersionInfo:
    """Registry view of one (app, version_code) pair."""

    app_id: str
    version_code: int
    version_name: str | None = None
    mute_crashes: bool = False
    symbol_map: bytes | None = None


@dataclass(frozen=True)
class IngestionResult:
    """Summary of one crash submission."""

    accepted: int
    stored: int
    muted: bool = False
    crash_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class MergePlan:
    """Instructions for collapsing one collision partition into its target.

    The store computes first_seen/last_seen/occurrences from the current
    rows inside its transaction; everything decided by policy is here.
    """

    target_id: str
    duplicate_ids: tuple[str, ...]
    fingerprint: str
    exception_class: str | None
    exception_message: str | None
    status: GroupStatus

    def __post_init__(self) -> None:
        if self.target_id in self.duplicate_ids:
            raise ValueError("merge target cannot also be a duplicate")
        object.__setattr__(
            self, "exception_message", truncate_message(self.exception_message)
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """Counts reported to the operator after a reconciliation run."""

    groups_processed: int
    groups_merged: int
    crashes_reassigned: int
    partitions_failed: int = 0
    aborted: bool = False


@dataclass(frozen=True)
class GroupDetails:
    """A group plus its most recent crashes, for operator tooling."""

    group: CrashGroup
    recent_crashes: tuple[Crash, ...]
    crash_count: int
