"""Wire models for the SDK crash submission endpoint.

Unknown fields are accepted and ignored so that newer SDKs keep working
against older servers; device fields nobody models yet are carried
through as opaque device info.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from crashbucket.core.models import Breadcrumb, CrashSubmission, DeviceInfo


class EnvironmentPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    package_name: str
    app_version: int | None = None
    app_version_name: str | None = None
    device_id: str | None = None
    os_version: int | None = None
    manufacturer: str | None = None
    model: str | None = None
    country: str | None = None
    language: str | None = None

    def device_info(self) -> DeviceInfo:
        extra: dict[str, Any] = dict(self.model_extra or {})
        return DeviceInfo(
            device_id=self.device_id,
            os_version=self.os_version,
            manufacturer=self.manufacturer,
            model=self.model,
            country=self.country,
            language=self.language,
            extra=extra,
        )


class BreadcrumbPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    timestamp: int
    message: str
    category: str


class CrashPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    timestamp: int  # epoch millis
    stacktrace: str
    thread: str | None = None
    is_fatal: bool = True
    context: dict[str, str] = Field(default_factory=dict)
    breadcrumbs: list[BreadcrumbPayload] = Field(default_factory=list)


class CrashSubmitRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: str | None = None
    environment: EnvironmentPayload
    crashes: list[CrashPayload]

    def to_submissions(self) -> list[CrashSubmission]:
        device = self.environment.device_info()
        return [
            CrashSubmission(
                stacktrace=crash.stacktrace,
                timestamp=datetime.fromtimestamp(crash.timestamp / 1000, tz=timezone.utc),
                thread=crash.thread,
                is_fatal=crash.is_fatal,
                context=dict(crash.context),
                breadcrumbs=tuple(
                    Breadcrumb(timestamp=b.timestamp, message=b.message, category=b.category)
                    for b in crash.breadcrumbs
                ),
                device_info=device,
            )
            for crash in self.crashes
        ]
