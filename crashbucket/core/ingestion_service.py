"""Ingestion service: implements IngestionPort for SDK crash submissions.

For every crash of a batch the service decodes (outside of any store
work), resolves the group and stores the crash record. Decode problems
never fail a submission; store failures do, and the client retries.
"""

import logging
import uuid
from collections.abc import Sequence

from .decoding import DecodeCoordinator
from .errors import AuthenticationError, SubmissionRejectedError
from .models import (
    AppIdentity,
    Crash,
    CrashSubmission,
    IngestionResult,
    ProcessedTrace,
    VersionInfo,
)
from .ports import AppRegistryPort, CrashStorePort, IngestionPort
from .resolver import GroupResolver

logger = logging.getLogger(__name__)


class IngestionService(IngestionPort):
    """Core implementation of IngestionPort."""

    def __init__(
        self,
        store: CrashStorePort,
        registry: AppRegistryPort,
        coordinator: DecodeCoordinator,
        resolver: GroupResolver,
    ):
        """Initialize the ingestion service.

        Args:
            store: CrashStorePort implementation for persistence.
            registry: AppRegistryPort for credentials, mute flags and maps.
            coordinator: DecodeCoordinator producing fingerprints/signatures.
            resolver: GroupResolver for find-or-create.
        """
        self.store = store
        self.registry = registry
        self.coordinator = coordinator
        self.resolver = resolver

    async def submit_crashes(
        self,
        api_key: str | None,
        package_name: str,
        version_code: int | None,
        submissions: Sequence[CrashSubmission],
    ) -> IngestionResult:
        app = await self._authenticate(api_key, package_name)

        version: VersionInfo | None = None
        if version_code is not None:
            version = await self.registry.get_version(app.app_id, version_code)

        if version is not None and version.mute_crashes:
            logger.info(
                f"Dropping {len(submissions)} crash(es) for muted version {version_code}",
                extra={"app_id": app.app_id, "version_code": version_code},
            )
            return IngestionResult(accepted=len(submissions), stored=0, muted=True)

        symbol_map = version.symbol_map if version is not None else None
        crash_ids: list[str] = []
        for submission in submissions:
            processed = await self.coordinator.process_crash(
                app.app_id, version_code, submission.stacktrace, symbol_map
            )
            crash_id = await self._store_crash(app.app_id, version_code, submission, processed)
            crash_ids.append(crash_id)

        logger.info(
            f"Stored {len(crash_ids)} crash(es) for app {app.app_id}",
            extra={
                "app_id": app.app_id,
                "version_code": version_code,
                "crash_count": len(crash_ids),
            },
        )
        return IngestionResult(
            accepted=len(submissions), stored=len(crash_ids), crash_ids=tuple(crash_ids)
        )

    async def _authenticate(self, api_key: str | None, package_name: str) -> AppIdentity:
        if not api_key:
            raise AuthenticationError("Missing API key")
        app = await self.registry.authenticate(api_key)
        if app is None:
            raise AuthenticationError("Invalid API key")
        if app.package_name != package_name:
            logger.warning(
                f"Package name mismatch for app {app.app_id}",
                extra={
                    "app_id": app.app_id,
                    "expected": app.package_name,
                    "received": package_name,
                },
            )
            raise SubmissionRejectedError(
                f"Package name mismatch: expected {app.package_name}, got {package_name}"
            )
        return app

    async def _store_crash(
        self,
        app_id: str,
        version_code: int | None,
        submission: CrashSubmission,
        processed: ProcessedTrace,
    ) -> str:
        """Resolve the group and store the crash in the same store call.

        The occurrence and the crash row are written together, so a group
        merged away or deleted after lookup is resolved again without
        having been counted.
        """
        crash_id = str(uuid.uuid4())

        def build_crash(group_id: str) -> Crash:
            return Crash(
                id=crash_id,
                app_id=app_id,
                group_id=group_id,
                version_code=version_code,
                stacktrace_raw=submission.stacktrace,
                created_at=submission.timestamp,
                thread=submission.thread,
                is_fatal=submission.is_fatal,
                context=dict(submission.context),
                breadcrumbs=submission.breadcrumbs,
                device_info=submission.device_info,
            ).with_decode(processed.outcome)

        await self.resolver.resolve_group(
            app_id,
            processed.fingerprint,
            processed.signature.exception_class,
            processed.signature.exception_message,
            submission.timestamp,
            build_crash=build_crash,
        )
        return crash_id
