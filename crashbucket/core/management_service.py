"""Management service: implements ManagementPort for operator-initiated operations.

This is a core service that orchestrates group triage (status changes,
deletion), explicit re-decoding of stored crashes and reconciliation runs.
Every state change is logged for audit.
"""

import asyncio
import logging

from .decoding import DecodeCoordinator
from .errors import NotFoundError
from .models import (
    Crash,
    CrashGroup,
    GroupDetails,
    GroupStatus,
    ReconciliationResult,
)
from .ports import AppRegistryPort, CrashStorePort, ManagementPort
from .reconciliation import ReconciliationService
from .signature import SignatureExtractor

logger = logging.getLogger(__name__)


class ManagementService(ManagementPort):
    """Core implementation of ManagementPort.

    Coordinates management operations with the crash store, the app
    registry (for symbol maps) and the reconciliation job.
    """

    def __init__(
        self,
        store: CrashStorePort,
        registry: AppRegistryPort,
        coordinator: DecodeCoordinator,
        reconciliation: ReconciliationService,
        stop_event: asyncio.Event | None = None,
    ):
        """Initialize the management service.

        Args:
            store: CrashStorePort implementation for persistence.
            registry: AppRegistryPort for symbol map lookups.
            coordinator: DecodeCoordinator used for re-decoding.
            reconciliation: ReconciliationService for re-bucketing.
            stop_event: Set on shutdown so running reconciliations stop
                between partitions.
        """
        self.store = store
        self.registry = registry
        self.coordinator = coordinator
        self.reconciliation = reconciliation
        self.stop_event = stop_event

    async def set_group_status(self, group_id: str, status: GroupStatus) -> CrashGroup:
        """Change a group's triage status.

        Raises:
            NotFoundError: If the group doesn't exist.
        """
        if not await self.store.set_group_status(group_id, status):
            raise NotFoundError(f"Crash group {group_id} not found")

        group = await self.store.get_group(group_id)
        if group is None:
            # Deleted right after the update
            raise NotFoundError(f"Crash group {group_id} not found")

        logger.info(
            f"Crash group {group_id} marked {status.value}",
            extra={"group_id": group_id, "status": status.value},
        )
        return group

    async def delete_group(self, group_id: str) -> None:
        """Delete a group together with all of its crashes.

        Raises:
            NotFoundError: If the group doesn't exist.
        """
        if not await self.store.delete_group(group_id):
            raise NotFoundError(f"Crash group {group_id} not found")

        logger.info(f"Crash group {group_id} deleted", extra={"group_id": group_id})

    async def retrace_crash(self, crash_id: str) -> Crash:
        """Re-decode a stored crash with its version's current symbol map.

        The new outcome replaces the crash's decode fields whether it
        succeeded or not. On success the owning group's displayed signature
        is refreshed from the decoded text; its fingerprint is left alone
        (reconciliation handles re-bucketing).

        Raises:
            NotFoundError: If the crash, its version code or the symbol map
                is missing.
        """
        crash = await self.store.get_crash(crash_id)
        if crash is None:
            raise NotFoundError(f"Crash {crash_id} not found")
        if crash.version_code is None:
            raise NotFoundError("Crash has no version code")

        version = await self.registry.get_version(crash.app_id, crash.version_code)
        if version is None or version.symbol_map is None:
            raise NotFoundError(f"No mapping found for version {crash.version_code}")

        outcome = await self.coordinator.decode(crash.stacktrace_raw, version.symbol_map)
        if not await self.store.update_crash_decode(crash_id, outcome):
            raise NotFoundError(f"Crash {crash_id} not found")

        # The crash may have been merged into another group while decoding
        retraced = await self.store.get_crash(crash_id)
        if retraced is None:
            raise NotFoundError(f"Crash {crash_id} not found")

        if outcome.succeeded:
            signature = SignatureExtractor.extract(outcome.decoded_text)
            while not await self.store.update_group_signature(
                retraced.group_id, signature.exception_class, signature.exception_message
            ):
                moved = await self.store.get_crash(crash_id)
                if moved is None or moved.group_id == retraced.group_id:
                    logger.warning(
                        f"Group of crash {crash_id} vanished during retrace",
                        extra={"crash_id": crash_id, "group_id": retraced.group_id},
                    )
                    break
                retraced = moved

        logger.info(
            f"Crash {crash_id} retraced",
            extra={
                "crash_id": crash_id,
                "group_id": retraced.group_id,
                "version_code": crash.version_code,
                "succeeded": outcome.succeeded,
                "decode_error": outcome.error,
            },
        )
        return retraced

    async def reconcile_app(self, app_id: str) -> ReconciliationResult:
        """Run reconciliation for one application.

        Raises:
            ReconciliationError: Some partitions could not be reconciled.
        """
        logger.info(f"Starting reconciliation for app {app_id}", extra={"app_id": app_id})
        return await self.reconciliation.reconcile(app_id, stop_event=self.stop_event)

    async def get_group_details(self, group_id: str, crash_limit: int = 20) -> GroupDetails:
        """Retrieve a group with its most recent crashes.

        Raises:
            NotFoundError: If the group doesn't exist.
        """
        group = await self.store.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Crash group {group_id} not found")

        recent = await self.store.list_crashes(group_id, limit=crash_limit)
        count = await self.store.count_crashes(group_id)

        logger.debug(
            f"Retrieved crash group details for {group_id}",
            extra={"group_id": group_id, "crash_count": count},
        )
        return GroupDetails(group=group, recent_crashes=tuple(recent), crash_count=count)
