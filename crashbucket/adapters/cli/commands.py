"""CLI command implementations for crashbucket management.

Provides human-initiated actions through command-line interface.

This adapter maps CLI commands (reconcile, status, delete, retrace,
details) to ManagementPort operations. It handles CLI-specific formatting
and error reporting.
"""

import logging
from typing import Any

from crashbucket.core.errors import CrashBucketError, ReconciliationError
from crashbucket.core.models import GroupDetails, GroupStatus
from crashbucket.core.ports import ManagementPort

from ..serialization import (
    crash_to_dict,
    details_to_dict,
    group_to_dict,
    reconciliation_to_dict,
)

logger = logging.getLogger(__name__)


class CLICommandHandler:
    """Handles CLI commands by delegating to ManagementPort.

    Every method returns a dictionary with ``status`` set to "success" or
    "error"; expected failures never escape as exceptions.
    """

    def __init__(self, management: ManagementPort):
        """Initialize the CLI command handler.

        Args:
            management: ManagementPort implementation to execute commands.
        """
        self.management = management

    async def reconcile_app(self, app_id: str) -> dict[str, Any]:
        """Recompute fingerprints for one application and merge collisions."""
        try:
            result = await self.management.reconcile_app(app_id)
        except ReconciliationError as e:
            logger.error(f"Reconciliation of app {app_id} incomplete: {e}")
            return {
                "status": "error",
                "operation": "reconcile",
                "app_id": app_id,
                "message": str(e),
                "result": reconciliation_to_dict(e.result),
            }

        message = (
            f"Reconciliation of app {app_id} aborted"
            if result.aborted
            else f"Reconciled app {app_id}: {result.groups_merged} group(s) merged"
        )
        return {
            "status": "success",
            "operation": "reconcile",
            "app_id": app_id,
            "message": message,
            "result": reconciliation_to_dict(result),
        }

    async def set_group_status(self, group_id: str, status: str) -> dict[str, Any]:
        """Mark a group open, resolved or ignored."""
        try:
            group = await self.management.set_group_status(group_id, GroupStatus(status.lower()))
        except ValueError as e:
            # NotFoundError and unknown status values are both ValueErrors
            logger.error(f"Failed to set status of group {group_id}: {e}")
            return {
                "status": "error",
                "operation": "set_status",
                "group_id": group_id,
                "message": str(e),
            }

        return {
            "status": "success",
            "operation": "set_status",
            "group_id": group_id,
            "message": f"Crash group {group_id} marked {group.status.value}",
            "group": group_to_dict(group),
        }

    async def delete_group(self, group_id: str) -> dict[str, Any]:
        """Delete a group together with its crashes."""
        try:
            await self.management.delete_group(group_id)
        except ValueError as e:
            logger.error(f"Failed to delete group {group_id}: {e}")
            return {
                "status": "error",
                "operation": "delete",
                "group_id": group_id,
                "message": str(e),
            }

        return {
            "status": "success",
            "operation": "delete",
            "group_id": group_id,
            "message": f"Crash group {group_id} deleted",
        }

    async def retrace_crash(self, crash_id: str) -> dict[str, Any]:
        """Re-decode a stored crash with its version's symbol map."""
        try:
            crash = await self.management.retrace_crash(crash_id)
        except ValueError as e:
            logger.error(f"Failed to retrace crash {crash_id}: {e}")
            return {
                "status": "error",
                "operation": "retrace",
                "crash_id": crash_id,
                "message": str(e),
            }

        if crash.decode_error:
            message = f"Retrace of crash {crash_id} failed: {crash.decode_error}"
        else:
            message = f"Crash {crash_id} retraced"
        return {
            "status": "success",
            "operation": "retrace",
            "crash_id": crash_id,
            "message": message,
            "crash": crash_to_dict(crash),
        }

    async def get_group_details(
        self, group_id: str, limit: int = 20, format: str = "json"
    ) -> dict[str, Any]:
        """Retrieve a group with its most recent crashes.

        Args:
            group_id: UUID of the group.
            limit: How many recent crashes to include.
            format: Output format ('json', 'text'). Default 'json'.
        """
        if format not in ("json", "text"):
            return {
                "status": "error",
                "operation": "get_details",
                "message": f"Unsupported format: {format}",
            }

        try:
            details = await self.management.get_group_details(group_id, crash_limit=limit)
        except CrashBucketError as e:
            logger.error(f"Failed to get group details: {e}")
            return {
                "status": "error",
                "operation": "get_details",
                "group_id": group_id,
                "message": str(e),
            }

        data: dict[str, Any] | str
        if format == "json":
            data = details_to_dict(details)
        else:
            data = self._format_details_as_text(details)
        return {"status": "success", "operation": "get_details", "data": data}

    def _format_details_as_text(self, details: GroupDetails) -> str:
        """Format group details as human-readable text."""
        group = details.group
        lines = [
            f"Group ID: {group.id}",
            f"App: {group.app_id}",
            f"Fingerprint: {group.fingerprint}",
            f"Exception: {group.exception_class or '(unknown)'}",
            f"Message: {group.exception_message or ''}",
            "",
            f"Status: {group.status.value}",
            f"Occurrences: {group.occurrences}",
            f"First Seen: {group.first_seen.isoformat()}",
            f"Last Seen: {group.last_seen.isoformat()}",
            f"Stored Crashes: {details.crash_count}",
        ]

        if details.recent_crashes:
            lines.append("")
            lines.append("Recent Crashes:")
            for crash in details.recent_crashes:
                decoded = "decoded" if crash.stacktrace_decoded is not None else "raw"
                lines.append(
                    f"  - {crash.id} at {crash.created_at.isoformat()} "
                    f"(version {crash.version_code}, {decoded})"
                )

        return "\n".join(lines)


async def run_command(
    management: ManagementPort,
    command: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    """Run a CLI command.

    Entry point for executing CLI commands. Maps command names to handler methods.

    Args:
        management: ManagementPort implementation.
        command: Command name ('reconcile', 'status', 'delete', 'retrace', 'details').
        args: Dictionary of command arguments.

    Returns:
        Dictionary with command result.

    Raises:
        ValueError: If command is not recognized.
        KeyError: If a required argument is missing.
    """
    handler = CLICommandHandler(management)

    if command == "reconcile":
        return await handler.reconcile_app(args["app_id"])

    elif command == "status":
        return await handler.set_group_status(args["group_id"], args["status"])

    elif command == "delete":
        return await handler.delete_group(args["group_id"])

    elif command == "retrace":
        return await handler.retrace_crash(args["crash_id"])

    elif command == "details":
        return await handler.get_group_details(
            args["group_id"],
            int(args.get("limit", 20)),
            args.get("format", "json"),
        )

    else:
        raise ValueError(f"Unknown command: {command}")
