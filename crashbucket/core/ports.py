"""Port interfaces for the crash grouping engine.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - CrashStorePort: Persist groups and crashes, enforce group uniqueness
   - DecoderPort: Reverse obfuscation using a symbol map
   - AppRegistryPort: Resolve credentials, versions, mute flags, symbol maps

2. **Driving Ports** (adapters/external systems call into core)
   - IngestionPort: Entry point for crash submissions
   - ManagementPort: Operator actions (status, delete, retrace, reconcile)
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime

from .models import (
    AppIdentity,
    Crash,
    CrashGroup,
    CrashSubmission,
    DecodeOutcome,
    GroupDetails,
    GroupStatus,
    IngestionResult,
    MergePlan,
    ReconciliationResult,
    VersionInfo,
)


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class CrashStorePort(ABC):
    """Port for persisting crash groups and crash records.

    Groups and crashes share one port because a reconciliation merge has to
    move crashes and delete groups in the same transaction.

    Implementations must provide:
    - A true unique constraint on (app_id, fingerprint)
    - Atomic increment of occurrences with max-merge of last_seen
    - One transaction per record_crash and insert_group_with_crash call, so
      an occurrence is never counted without its crash row
    - A foreign key from crash to group, cascading on group deletion
    - One transaction per merge_groups call
    """

    @abstractmethod
    async def find_group(self, app_id: str, fingerprint: str) -> CrashGroup | None:
        """Look up the group for a fingerprint within one application.

        Returns:
            CrashGroup if found, None otherwise.
        """

    @abstractmethod
    async def get_group(self, group_id: str) -> CrashGroup | None:
        """Retrieve a group by ID, or None."""

    @abstractmethod
    async def list_groups(self, app_id: str) -> list[CrashGroup]:
        """All groups of an application, ordered by first_seen ascending."""

    @abstractmethod
    async def insert_group(self, group: CrashGroup) -> None:
        """Persist a brand-new group.

        Raises:
            GroupConflictError: If a group with the same (app_id, fingerprint)
                already exists. The resolver turns this into an update.
        """

    @abstractmethod
    async def increment_group(self, group_id: str, event_time: datetime) -> bool:
        """Atomically add one occurrence and max-merge last_seen.

        first_seen is never moved.

        Returns:
            True if the group existed and was updated, False if it is gone.
        """

    @abstractmethod
    async def set_group_status(self, group_id: str, status: GroupStatus) -> bool:
        """Change a group's status. Returns False if the group doesn't exist."""

    @abstractmethod
    async def update_group_signature(
        self,
        group_id: str,
        exception_class: str | None,
        exception_message: str | None,
    ) -> bool:
        """Overwrite the displayed exception class/message of a group.

        Returns False if the group doesn't exist.
        """

    @abstractmethod
    async def rekey_group(
        self,
        group_id: str,
        fingerprint: str,
        exception_class: str | None,
        exception_message: str | None,
    ) -> bool:
        """Move a group to a new fingerprint and refresh its signature.

        Returns:
            False if the group doesn't exist.

        Raises:
            GroupConflictError: If another group of the app already holds
                the new fingerprint.
        """

    @abstractmethod
    async def merge_groups(self, plan: MergePlan) -> int:
        """Collapse duplicate groups into the target in one transaction.

        Within the transaction the store must:
        1. compute first_seen = min, last_seen = max and occurrences = sum
           over the current rows of target and duplicates,
        2. reassign every crash of every duplicate to the target,
        3. delete the duplicates,
        4. write the merged aggregates plus the plan's fingerprint,
           signature and status onto the target.

        Either all of it happens or none of it does.

        Returns:
            Number of crash records reassigned.

        Raises:
            GroupConflictError: If a group outside the plan holds the new
                fingerprint. Nothing is changed in that case.
            GroupNotFoundError: If the target no longer exists.
        """

    @abstractmethod
    async def delete_group(self, group_id: str) -> bool:
        """Delete a group and all of its crashes.

        Returns False if the group doesn't exist.
        """

    @abstractmethod
    async def insert_crash(self, crash: Crash) -> None:
        """Persist a crash record.

        Raises:
            GroupNotFoundError: If crash.group_id references no group (the
                group was deleted or merged away after resolution).
        """

    @abstractmethod
    async def record_crash(self, crash: Crash) -> bool:
        """Count a crash against its existing group and persist it, in one
        transaction.

        The group gets occurrences + 1 and last_seen max-merged with
        crash.created_at. Nothing is written if the group is gone.

        Returns:
            True if the crash was stored, False if crash.group_id references
            no group.
        """

    @abstractmethod
    async def insert_group_with_crash(self, group: CrashGroup, crash: Crash) -> None:
        """Persist a brand-new group together with its first crash, in one
        transaction.

        Raises:
            GroupConflictError: If a group with the same (app_id, fingerprint)
                already exists. Neither row is written.
        """

    @abstractmethod
    async def get_crash(self, crash_id: str) -> Crash | None:
        """Retrieve a crash by ID, or None."""

    @abstractmethod
    async def get_representative_crash(self, group_id: str) -> Crash | None:
        """Any one crash of the group (the earliest stored), or None if empty."""

    @abstractmethod
    async def list_crashes(self, group_id: str, limit: int = 20) -> list[Crash]:
        """Most recent crashes of a group, newest first."""

    @abstractmethod
    async def count_crashes(self, group_id: str) -> int:
        """Number of crash records currently attached to a group."""

    @abstractmethod
    async def update_crash_decode(self, crash_id: str, outcome: DecodeOutcome) -> bool:
        """Replace a crash's decode fields with a new outcome.

        Returns False if the crash doesn't exist.
        """


class DecoderPort(ABC):
    """Port for de-obfuscating stack traces with a symbol map.

    Treated as untrusted: it may be slow and it may raise. The decode
    coordinator runs it off the event loop and converts any exception into
    a failed DecodeOutcome.
    """

    @abstractmethod
    def decode(self, lines: Sequence[str], mapping: bytes) -> list[str]:
        """Decode trace lines.

        Args:
            lines: Trace split into lines.
            mapping: Raw symbol map blob for the crash's app version.

        Returns:
            Decoded lines.

        Raises:
            Exception: Any failure; callers record it as a decode error.
        """


class AppRegistryPort(ABC):
    """Port for the application/version registry.

    The registry is owned by the dashboard; this engine only reads from it.
    """

    @abstractmethod
    async def authenticate(self, api_key: str) -> AppIdentity | None:
        """Resolve an SDK API key to an application, or None if unknown."""

    @abstractmethod
    async def get_version(self, app_id: str, version_code: int) -> VersionInfo | None:
        """Resolve an app version to its mute flag and symbol map.

        Returns:
            VersionInfo, or None if the version is not registered (treated
            as unmuted with no symbol map).
        """


# ============================================================================
# DRIVING PORTS (Adapters/external systems call into core)
# ============================================================================


class IngestionPort(ABC):
    """Port for accepting crash submissions from client SDKs."""

    @abstractmethod
    async def submit_crashes(
        self,
        api_key: str | None,
        package_name: str,
        version_code: int | None,
        submissions: Sequence[CrashSubmission],
    ) -> IngestionResult:
        """Authenticate, decode, group and store a batch of crashes.

        Raises:
            AuthenticationError: Missing or unknown API key.
            SubmissionRejectedError: Package name doesn't match the key.
            Exception: Persistence failures; the client retries the batch.
        """


class ManagementPort(ABC):
    """Port for operator and dashboard initiated operations."""

    @abstractmethod
    async def set_group_status(self, group_id: str, status: GroupStatus) -> CrashGroup:
        """Change a group's status.

        Raises:
            NotFoundError: If the group doesn't exist.
        """

    @abstractmethod
    async def delete_group(self, group_id: str) -> None:
        """Delete a group and its crashes.

        Raises:
            NotFoundError: If the group doesn't exist.
        """

    @abstractmethod
    async def retrace_crash(self, crash_id: str) -> Crash:
        """Re-decode a stored crash with its version's symbol map.

        Raises:
            NotFoundError: Crash, version code or symbol map missing.
        """

    @abstractmethod
    async def reconcile_app(self, app_id: str) -> ReconciliationResult:
        """Recompute fingerprints for one application and merge collisions.

        Raises:
            ReconciliationError: Some partitions could not be reconciled.
        """

    @abstractmethod
    async def get_group_details(self, group_id: str, crash_limit: int = 20) -> GroupDetails:
        """A group with its most recent crashes.

        Raises:
            NotFoundError: If the group doesn't exist.
        """
