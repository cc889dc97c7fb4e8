"""Batch reconciliation of crash groups.

When the fingerprint algorithm or normalization rules change, existing
groups may now belong together. Reconciliation recomputes each group's
fingerprint from a representative crash, partitions groups by the new
value and merges every partition with more than one member.

Each partition is handed to the store as one unit, so a run can be
interrupted between partitions without leaving half-merged state, and a
re-run converges to the same end state.
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal

from .decoding import TraceSource
from .errors import GroupConflictError, GroupNotFoundError, ReconciliationError
from .fingerprint import Fingerprinter
from .models import (
    CrashGroup,
    ExceptionSignature,
    GroupStatus,
    MergePlan,
    ReconciliationResult,
)
from .ports import CrashStorePort
from .signature import SignatureExtractor

logger = logging.getLogger(__name__)

TargetRule = Literal["earliest_first_seen", "current_fingerprint"]

DEFAULT_STATUS_PRIORITY: tuple[GroupStatus, ...] = (
    GroupStatus.OPEN,
    GroupStatus.RESOLVED,
    GroupStatus.IGNORED,
)


@dataclass(frozen=True)
class MergePolicy:
    """Tie-break rules for collapsing colliding groups.

    Attributes:
        status_priority: Statuses from most to least dominant. The merged
            group takes the first status present among the colliding groups.
        target_rule: "earliest_first_seen" keeps the oldest group (ties by
            id). "current_fingerprint" prefers a group that already carries
            the new fingerprint and otherwise falls back to the oldest.
    """

    status_priority: tuple[GroupStatus, ...] = DEFAULT_STATUS_PRIORITY
    target_rule: TargetRule = "earliest_first_seen"

    def __post_init__(self) -> None:
        if set(self.status_priority) != set(GroupStatus) or len(self.status_priority) != len(
            GroupStatus
        ):
            raise ValueError(
                "status_priority must list every GroupStatus exactly once, "
                f"got {[s.value for s in self.status_priority]}"
            )

    def choose_target(self, groups: Sequence[CrashGroup], new_fingerprint: str) -> CrashGroup:
        if not groups:
            raise ValueError("cannot choose a merge target from no groups")
        if self.target_rule == "current_fingerprint":
            holders = [g for g in groups if g.fingerprint == new_fingerprint]
            if holders:
                return holders[0]
        return min(groups, key=lambda g: (g.first_seen, g.id))

    def merged_status(self, statuses: Iterable[GroupStatus]) -> GroupStatus:
        present = set(statuses)
        for status in self.status_priority:
            if status in present:
                return status
        raise ValueError("cannot merge an empty set of statuses")


def parking_key(group_id: str) -> str:
    """Temporary fingerprint outside the hex alphabet of real ones."""
    return f"~{group_id}"


@dataclass(frozen=True)
class _GroupSnapshot:
    group: CrashGroup
    new_fingerprint: str
    signature: ExceptionSignature


class ReconciliationService:
    """Re-buckets an application's groups under the current fingerprint rule."""

    def __init__(
        self,
        store: CrashStorePort,
        policy: MergePolicy | None = None,
        grouping_source: TraceSource = "raw",
    ):
        """Initialize the service.

        Args:
            store: CrashStorePort implementation.
            policy: Merge tie-break rules (defaults to MergePolicy()).
            grouping_source: Which crash text is fingerprinted; must match
                the ingestion setting or a second run will not be a no-op.
        """
        self.store = store
        self.policy = policy or MergePolicy()
        self.grouping_source = grouping_source

    async def reconcile(
        self, app_id: str, stop_event: asyncio.Event | None = None
    ) -> ReconciliationResult:
        """Recompute fingerprints for one application and merge collisions.

        Args:
            app_id: Application to reconcile.
            stop_event: When set, the run stops before the next partition
                and returns a result with aborted=True.

        Returns:
            Counts of groups inspected, groups removed by merge and crashes
            moved.

        Raises:
            ReconciliationError: Some partitions kept colliding with groups
                outside the run. Completed partitions stay committed.
        """
        snapshots = await self._snapshot(app_id)
        partitions: dict[str, list[_GroupSnapshot]] = {}
        for snap in snapshots:
            partitions.setdefault(snap.new_fingerprint, []).append(snap)

        processed = merged = reassigned = 0
        pending = list(partitions.items())
        failed: list[str] = []
        parked: set[str] = set()
        aborted = False

        # A re-key can collide with a group whose own partition hasn't run
        # yet; such partitions are retried after the rest. When nothing
        # progresses the groups blocking each other are parked first.
        while pending:
            deferred: list[tuple[str, list[_GroupSnapshot]]] = []
            for fingerprint, members in pending:
                if stop_event is not None and stop_event.is_set():
                    aborted = True
                    break
                try:
                    removed, moved = await self._reconcile_partition(fingerprint, members)
                except GroupConflictError:
                    logger.debug(
                        f"Partition {fingerprint} collides with an unprocessed group, deferring",
                        extra={"app_id": app_id, "fingerprint": fingerprint},
                    )
                    deferred.append((fingerprint, members))
                    continue
                except GroupNotFoundError as e:
                    # Deleted concurrently; the next run sees the new state
                    logger.warning(
                        f"Partition {fingerprint} lost its target: {e}",
                        extra={"app_id": app_id, "fingerprint": fingerprint},
                    )
                    failed.append(fingerprint)
                    continue
                processed += len(members)
                merged += removed
                reassigned += moved
            stalled = len(deferred) == len(pending)
            pending = deferred
            if aborted:
                break
            if stalled and not await self._park_blockers(app_id, pending, parked):
                break

        result = ReconciliationResult(
            groups_processed=processed,
            groups_merged=merged,
            crashes_reassigned=reassigned,
            partitions_failed=len(failed) + (0 if aborted else len(pending)),
            aborted=aborted,
        )

        if aborted:
            logger.warning(
                f"Reconciliation of app {app_id} aborted",
                extra={"app_id": app_id, "groups_processed": processed},
            )
            return result

        if result.partitions_failed:
            raise ReconciliationError(
                f"{result.partitions_failed} partition(s) of app {app_id} could not be "
                "reconciled; re-run to converge",
                result,
            )

        logger.info(
            f"Reconciled app {app_id}: {processed} groups, {merged} merged, "
            f"{reassigned} crashes reassigned",
            extra={
                "app_id": app_id,
                "groups_processed": processed,
                "groups_merged": merged,
                "crashes_reassigned": reassigned,
            },
        )
        return result

    async def _park_blockers(
        self,
        app_id: str,
        pending: list[tuple[str, list[_GroupSnapshot]]],
        parked: set[str],
    ) -> bool:
        """Move groups holding another stalled partition's key to a private key.

        Groups that trade fingerprints (A holds B's new key and B holds
        A's) collide forever otherwise. A parked group leaves its old key
        free and is re-keyed by its own partition on the retry.

        Returns:
            Whether any group was parked.
        """
        wanted = {fingerprint for fingerprint, _ in pending}
        moved = False
        for fingerprint, members in pending:
            for snap in members:
                group = snap.group
                if (
                    group.id in parked
                    or group.fingerprint == fingerprint
                    or group.fingerprint not in wanted
                ):
                    continue
                if not await self.store.rekey_group(
                    group.id,
                    parking_key(group.id),
                    group.exception_class,
                    group.exception_message,
                ):
                    continue
                parked.add(group.id)
                moved = True
                logger.debug(
                    f"Parked group {group.id} to free fingerprint {group.fingerprint}",
                    extra={"app_id": app_id, "group_id": group.id},
                )
        return moved

    async def _snapshot(self, app_id: str) -> list[_GroupSnapshot]:
        snapshots: list[_GroupSnapshot] = []
        for group in await self.store.list_groups(app_id):
            crash = await self.store.get_representative_crash(group.id)
            if crash is None:
                logger.info(
                    f"Skipping group {group.id} with no crashes",
                    extra={"app_id": app_id, "group_id": group.id},
                )
                continue
            if self.grouping_source == "decoded":
                trace = crash.best_trace()
            else:
                trace = crash.stacktrace_raw
            snapshots.append(
                _GroupSnapshot(
                    group=group,
                    new_fingerprint=Fingerprinter.fingerprint(trace),
                    signature=SignatureExtractor.extract(crash.best_trace()),
                )
            )
        return snapshots

    async def _reconcile_partition(
        self, fingerprint: str, members: list[_GroupSnapshot]
    ) -> tuple[int, int]:
        """Apply one partition. Returns (groups removed, crashes moved)."""
        if len(members) == 1:
            snap = members[0]
            if snap.group.fingerprint != fingerprint:
                await self.store.rekey_group(
                    snap.group.id,
                    fingerprint,
                    snap.signature.exception_class,
                    snap.signature.exception_message,
                )
                logger.info(
                    f"Re-keyed group {snap.group.id}",
                    extra={
                        "group_id": snap.group.id,
                        "old_fingerprint": snap.group.fingerprint,
                        "new_fingerprint": fingerprint,
                    },
                )
            return 0, 0

        groups = [m.group for m in members]
        target = self.policy.choose_target(groups, fingerprint)
        target_snap = next(m for m in members if m.group.id == target.id)
        plan = MergePlan(
            target_id=target.id,
            duplicate_ids=tuple(g.id for g in groups if g.id != target.id),
            fingerprint=fingerprint,
            exception_class=target_snap.signature.exception_class,
            exception_message=target_snap.signature.exception_message,
            status=self.policy.merged_status(g.status for g in groups),
        )
        moved = await self.store.merge_groups(plan)
        logger.info(
            f"Merged {len(plan.duplicate_ids)} group(s) into {target.id}",
            extra={
                "target_id": target.id,
                "duplicate_ids": list(plan.duplicate_ids),
                "fingerprint": fingerprint,
                "crashes_reassigned": moved,
            },
        )
        return len(plan.duplicate_ids), moved
