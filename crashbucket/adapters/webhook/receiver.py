"""HTTP request handling for crash submissions and operator actions.

Transport-independent: each handler takes already-parsed request data,
calls the IngestionPort or ManagementPort, and returns a JSON-ready
dictionary. Domain errors propagate; the HTTP server maps them to status
codes.
"""

import logging
from typing import Any

from crashbucket.core.models import GroupStatus
from crashbucket.core.ports import IngestionPort, ManagementPort

from ..serialization import (
    crash_to_dict,
    details_to_dict,
    group_to_dict,
    ingestion_to_dict,
    reconciliation_to_dict,
)
from .payloads import CrashSubmitRequest

logger = logging.getLogger(__name__)


class WebhookReceiver:
    """Routes HTTP requests to the ingestion and management ports."""

    def __init__(self, ingestion: IngestionPort, management: ManagementPort):
        """Initialize the receiver.

        Args:
            ingestion: IngestionPort implementation for SDK submissions.
            management: ManagementPort implementation for operator actions.
        """
        self.ingestion = ingestion
        self.management = management

    async def handle_crash_submission(
        self, api_key: str | None, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Handle a batch of crashes from a client SDK.

        Raises:
            pydantic.ValidationError: Malformed payload (a ValueError).
            AuthenticationError: Missing or unknown API key.
            SubmissionRejectedError: Package name doesn't match the key.
        """
        request = CrashSubmitRequest.model_validate(body)
        result = await self.ingestion.submit_crashes(
            api_key,
            request.environment.package_name,
            request.environment.app_version,
            request.to_submissions(),
        )
        logger.debug(
            "Crash submission handled",
            extra={
                "package_name": request.environment.package_name,
                "version_code": request.environment.app_version,
                "accepted": result.accepted,
                "stored": result.stored,
            },
        )
        return {"status": "success", "operation": "submit", "result": ingestion_to_dict(result)}

    async def handle_status_request(self, group_id: str, status: str) -> dict[str, Any]:
        """Handle a request to change a group's status.

        Raises:
            ValueError: Unknown status value.
            NotFoundError: If the group doesn't exist.
        """
        group = await self.management.set_group_status(group_id, GroupStatus(status.lower()))
        logger.info(
            "Group status changed via HTTP",
            extra={"group_id": group_id, "status": group.status.value},
        )
        return {
            "status": "success",
            "operation": "set_status",
            "group": group_to_dict(group),
        }

    async def handle_delete_request(self, group_id: str) -> dict[str, Any]:
        """Handle a request to delete a group and its crashes."""
        await self.management.delete_group(group_id)
        logger.info("Group deleted via HTTP", extra={"group_id": group_id})
        return {"status": "success", "operation": "delete", "group_id": group_id}

    async def handle_retrace_request(self, crash_id: str) -> dict[str, Any]:
        """Handle a request to re-decode a stored crash."""
        crash = await self.management.retrace_crash(crash_id)
        logger.info(
            "Crash retraced via HTTP",
            extra={"crash_id": crash_id, "decode_error": crash.decode_error},
        )
        return {"status": "success", "operation": "retrace", "crash": crash_to_dict(crash)}

    async def handle_reconcile_request(self, app_id: str) -> dict[str, Any]:
        """Handle a request to reconcile an application's groups.

        Raises:
            ReconciliationError: Some partitions could not be reconciled.
        """
        result = await self.management.reconcile_app(app_id)
        return {
            "status": "success",
            "operation": "reconcile",
            "app_id": app_id,
            "result": reconciliation_to_dict(result),
        }

    async def handle_details_request(self, group_id: str, limit: int = 20) -> dict[str, Any]:
        """Handle a request for a group and its most recent crashes."""
        details = await self.management.get_group_details(group_id, crash_limit=limit)
        logger.debug("Group details retrieved via HTTP", extra={"group_id": group_id})
        return {
            "status": "success",
            "operation": "get_details",
            "data": details_to_dict(details),
        }
