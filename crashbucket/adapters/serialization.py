"""JSON-ready views of core models for the driving adapters.

The HTTP receiver and the CLI both answer with plain dictionaries; this
module keeps their shapes identical.
"""

from typing import Any

from crashbucket.core.models import (
    Crash,
    CrashGroup,
    GroupDetails,
    IngestionResult,
    ReconciliationResult,
)


def group_to_dict(group: CrashGroup) -> dict[str, Any]:
    return {
        "id": group.id,
        "app_id": group.app_id,
        "fingerprint": group.fingerprint,
        "exception_class": group.exception_class,
        "exception_message": group.exception_message,
        "first_seen": group.first_seen.isoformat(),
        "last_seen": group.last_seen.isoformat(),
        "occurrences": group.occurrences,
        "status": group.status.value,
    }


def crash_to_dict(crash: Crash) -> dict[str, Any]:
    return {
        "id": crash.id,
        "app_id": crash.app_id,
        "group_id": crash.group_id,
        "version_code": crash.version_code,
        "created_at": crash.created_at.isoformat(),
        "thread": crash.thread,
        "is_fatal": crash.is_fatal,
        "stacktrace_raw": crash.stacktrace_raw,
        "stacktrace_decoded": crash.stacktrace_decoded,
        "decoded_at": crash.decoded_at.isoformat() if crash.decoded_at else None,
        "decode_error": crash.decode_error,
        "context": dict(crash.context),
        "breadcrumbs": [
            {"timestamp": b.timestamp, "message": b.message, "category": b.category}
            for b in crash.breadcrumbs
        ],
        "device_info": crash.device_info.to_dict() if crash.device_info else None,
    }


def details_to_dict(details: GroupDetails) -> dict[str, Any]:
    return {
        "group": group_to_dict(details.group),
        "crash_count": details.crash_count,
        "recent_crashes": [crash_to_dict(c) for c in details.recent_crashes],
    }


def reconciliation_to_dict(result: ReconciliationResult) -> dict[str, Any]:
    return {
        "groups_processed": result.groups_processed,
        "groups_merged": result.groups_merged,
        "crashes_reassigned": result.crashes_reassigned,
        "partitions_failed": result.partitions_failed,
        "aborted": result.aborted,
    }


def ingestion_to_dict(result: IngestionResult) -> dict[str, Any]:
    return {
        "accepted": result.accepted,
        "stored": result.stored,
        "muted": result.muted,
        "crash_ids": list(result.crash_ids),
    }
