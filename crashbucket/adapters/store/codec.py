"""Column encoding shared by the store adapters.

Timestamps are kept as fixed-width UTC ISO-8601 strings in SQLite so that
string MIN/MAX agree with chronological order. Crash payload fields that
have no relational shape (context, breadcrumbs, device info) are stored
as JSON text.
"""

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from crashbucket.core.models import Breadcrumb, DeviceInfo


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def encode_timestamp(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="microseconds")


def decode_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(datetime.fromisoformat(value))


def encode_context(context: Mapping[str, str]) -> str:
    return json.dumps(dict(context), sort_keys=True)


def decode_context(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    return {str(k): str(v) for k, v in json.loads(raw).items()}


def encode_breadcrumbs(breadcrumbs: tuple[Breadcrumb, ...]) -> str:
    return json.dumps(
        [
            {"timestamp": b.timestamp, "message": b.message, "category": b.category}
            for b in breadcrumbs
        ]
    )


def decode_breadcrumbs(raw: str | None) -> tuple[Breadcrumb, ...]:
    if not raw:
        return ()
    return tuple(
        Breadcrumb(
            timestamp=int(item["timestamp"]),
            message=item["message"],
            category=item["category"],
        )
        for item in json.loads(raw)
    )


def encode_device_info(device_info: DeviceInfo | None) -> str | None:
    if device_info is None:
        return None
    return json.dumps(device_info.to_dict(), sort_keys=True)


def decode_device_info(raw: str | None) -> DeviceInfo | None:
    if not raw:
        return None
    data: dict[str, Any] = json.loads(raw)
    return DeviceInfo.from_dict(data)
