"""Find-or-create protocol for crash groups.

The (app_id, fingerprint) pair is the unit of atomicity. The store's
unique constraint decides which of several concurrent creators wins; the
losers see GroupConflictError and fall back to the update path, so no
occurrence is lost and no duplicate group appears.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from .errors import GroupConflictError, GroupResolutionError
from .models import Crash, CrashGroup
from .ports import CrashStorePort

logger = logging.getLogger(__name__)


class GroupResolver:
    """Maps a fingerprint to a group id, creating the group if needed."""

    def __init__(self, store: CrashStorePort, max_attempts: int = 5):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.store = store
        self.max_attempts = max_attempts

    async def resolve_group(
        self,
        app_id: str,
        fingerprint: str,
        exception_class: str | None,
        exception_message: str | None,
        event_time: datetime,
        build_crash: Callable[[str], Crash] | None = None,
    ) -> str:
        """Return the id of the group for (app_id, fingerprint).

        Existing group: occurrences + 1 and last_seen max-merged.
        New group: occurrences 1, first_seen = last_seen = event_time, open.

        With build_crash, the crash it builds for the chosen group id is
        stored in the same store transaction that counts it, so a group
        merged or deleted in between never receives an occurrence without
        its crash. The crash's created_at must equal event_time.

        Raises:
            GroupResolutionError: If neither path succeeded within
                max_attempts (sustained churn on this key).
            Exception: Store failures propagate unchanged.
        """
        for attempt in range(1, self.max_attempts + 1):
            existing = await self.store.find_group(app_id, fingerprint)
            if existing is not None:
                if build_crash is None:
                    counted = await self.store.increment_group(existing.id, event_time)
                else:
                    counted = await self.store.record_crash(build_crash(existing.id))
                if counted:
                    return existing.id
                # Deleted or merged away between lookup and increment
                logger.debug(
                    f"Group {existing.id} vanished before increment, retrying",
                    extra={"app_id": app_id, "fingerprint": fingerprint, "attempt": attempt},
                )
                continue

            group = CrashGroup.open_new(
                app_id=app_id,
                fingerprint=fingerprint,
                exception_class=exception_class,
                exception_message=exception_message,
                event_time=event_time,
            )
            try:
                if build_crash is None:
                    await self.store.insert_group(group)
                else:
                    await self.store.insert_group_with_crash(group, build_crash(group.id))
            except GroupConflictError:
                logger.debug(
                    f"Concurrent create for fingerprint {fingerprint}, switching to update",
                    extra={"app_id": app_id, "fingerprint": fingerprint, "attempt": attempt},
                )
                continue

            logger.info(
                f"Created crash group {group.id}",
                extra={
                    "app_id": app_id,
                    "fingerprint": fingerprint,
                    "exception_class": exception_class,
                },
            )
            return group.id

        raise GroupResolutionError(
            f"Could not resolve group for app {app_id} fingerprint {fingerprint} "
            f"after {self.max_attempts} attempts"
        )
