"""Core domain logic for the crashbucket crash grouping engine.

This package contains zero external dependencies and represents
the pure business logic of the application. Persistence, the app
registry, symbol decoding and every inbound surface are handled by
the adapters package.
"""

from .models import (
    AppIdentity,
    Breadcrumb,
    Crash,
    CrashGroup,
    CrashSubmission,
    DecodeOutcome,
    DeviceInfo,
    ExceptionSignature,
    GroupDetails,
    GroupStatus,
    IngestionResult,
    MergePlan,
    ProcessedTrace,
    ReconciliationResult,
    VersionInfo,
)

__all__ = [
    "AppIdentity",
    "Breadcrumb",
    "Crash",
    "CrashGroup",
    "CrashSubmission",
    "DecodeOutcome",
    "DeviceInfo",
    "ExceptionSignature",
    "GroupDetails",
    "GroupStatus",
    "IngestionResult",
    "MergePlan",
    "ProcessedTrace",
    "ReconciliationResult",
    "VersionInfo",
]
