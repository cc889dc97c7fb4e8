"""Tests for the concurrency-safe find-or-create protocol."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from crashbucket.core.errors import GroupConflictError, GroupResolutionError
from crashbucket.core.models import Crash, CrashGroup
from crashbucket.core.resolver import GroupResolver
from crashbucket.tests.fakes import FakeCrashStorePort

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
FP = "0123456789abcdef0123456789abcdef"


@pytest.fixture
def store() -> FakeCrashStorePort:
    return FakeCrashStorePort()


@pytest.fixture
def resolver(store: FakeCrashStorePort) -> GroupResolver:
    return GroupResolver(store)


class TestResolveGroup:
    """Sequential resolution."""

    @pytest.mark.asyncio
    async def test_first_call_creates_open_group(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        group_id = await resolver.resolve_group("app", FP, "java.lang.Error", "boom", T0)

        group = store.groups[group_id]
        assert group.occurrences == 1
        assert group.first_seen == group.last_seen == T0
        assert group.exception_class == "java.lang.Error"

    @pytest.mark.asyncio
    async def test_n_calls_produce_one_group(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        ids = {
            await resolver.resolve_group("app", FP, "E", None, T0 + timedelta(minutes=i))
            for i in range(10)
        }

        assert len(ids) == 1
        group = store.groups[ids.pop()]
        assert group.occurrences == 10
        assert group.first_seen == T0
        assert group.last_seen == T0 + timedelta(minutes=9)

    @pytest.mark.asyncio
    async def test_late_event_does_not_move_last_seen_back(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        group_id = await resolver.resolve_group("app", FP, "E", None, T0)
        await resolver.resolve_group("app", FP, "E", None, T0 - timedelta(days=1))

        group = store.groups[group_id]
        assert group.last_seen == T0
        assert group.first_seen == T0
        assert group.occurrences == 2

    @pytest.mark.asyncio
    async def test_same_fingerprint_in_other_app_is_separate(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        first = await resolver.resolve_group("app-1", FP, "E", None, T0)
        second = await resolver.resolve_group("app-2", FP, "E", None, T0)
        assert first != second
        assert len(store.groups) == 2


class TestConcurrentResolve:
    """Many writers racing on one fingerprint."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_exactly_one_group(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        times = [T0 + timedelta(seconds=i) for i in range(50)]

        ids = await asyncio.gather(
            *(resolver.resolve_group("app", FP, "E", "m", t) for t in times)
        )

        assert len(set(ids)) == 1
        assert len(store.groups) == 1
        group = store.groups[ids[0]]
        assert group.occurrences == 50
        assert group.last_seen == max(times)
        # All creators but one lost the race and fell back to increment
        assert store.insert_conflicts > 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_on_different_fingerprints(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        fingerprints = [f"{i:032x}" for i in range(5)]

        await asyncio.gather(
            *(
                resolver.resolve_group("app", fp, "E", None, T0)
                for fp in fingerprints
                for _ in range(4)
            )
        )

        assert len(store.groups) == 5
        assert all(g.occurrences == 4 for g in store.groups.values())


class VanishingGroupStore(FakeCrashStorePort):
    """Deletes the group right before the first increment reaches it."""

    def __init__(self) -> None:
        super().__init__()
        self.vanished = False

    async def increment_group(self, group_id: str, event_time: datetime) -> bool:
        if not self.vanished:
            self.vanished = True
            del self.groups[group_id]
        return await super().increment_group(group_id, event_time)


class GroupDeletedBeforeRecordStore(FakeCrashStorePort):
    """Deletes the group right before the first crash is counted against it."""

    def __init__(self) -> None:
        super().__init__()
        self.vanished = False

    async def record_crash(self, crash: Crash) -> bool:
        if not self.vanished:
            self.vanished = True
            await self.delete_group(crash.group_id)
        return await super().record_crash(crash)


class AlwaysConflictingStore(FakeCrashStorePort):
    """Every insert conflicts but no group is ever visible."""

    async def insert_group(self, group: CrashGroup) -> None:
        raise GroupConflictError(group.app_id, group.fingerprint)


class TestResolverRetries:
    """Retry and give-up paths."""

    @pytest.mark.asyncio
    async def test_group_deleted_between_lookup_and_increment(self) -> None:
        store = VanishingGroupStore()
        resolver = GroupResolver(store)
        original = await resolver.resolve_group("app", FP, "E", None, T0)

        replacement = await resolver.resolve_group("app", FP, "E", None, T0)

        assert replacement != original
        assert store.groups[replacement].occurrences == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        resolver = GroupResolver(AlwaysConflictingStore(), max_attempts=3)
        with pytest.raises(GroupResolutionError, match="after 3 attempts"):
            await resolver.resolve_group("app", FP, "E", None, T0)

    def test_max_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            GroupResolver(FakeCrashStorePort(), max_attempts=0)


def crash_builder(crash_id: str, at: datetime = T0):
    def build(group_id: str) -> Crash:
        return Crash(
            id=crash_id,
            app_id="app",
            group_id=group_id,
            version_code=1,
            stacktrace_raw="java.lang.Error: boom",
            created_at=at,
        )

    return build


class TestResolveWithCrash:
    """Resolution that stores the crash alongside its occurrence."""

    @pytest.mark.asyncio
    async def test_new_group_is_stored_with_its_crash(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        group_id = await resolver.resolve_group(
            "app", FP, "E", None, T0, build_crash=crash_builder("c-1")
        )

        assert store.crashes["c-1"].group_id == group_id
        assert store.groups[group_id].occurrences == 1

    @pytest.mark.asyncio
    async def test_existing_group_counts_and_stores_crash(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        later = T0 + timedelta(minutes=5)
        group_id = await resolver.resolve_group(
            "app", FP, "E", None, T0, build_crash=crash_builder("c-1")
        )

        again = await resolver.resolve_group(
            "app", FP, "E", None, later, build_crash=crash_builder("c-2", later)
        )

        assert again == group_id
        assert store.groups[group_id].occurrences == 2
        assert store.groups[group_id].last_seen == later
        assert await store.count_crashes(group_id) == 2

    @pytest.mark.asyncio
    async def test_group_deleted_before_record_is_not_counted(self) -> None:
        store = GroupDeletedBeforeRecordStore()
        resolver = GroupResolver(store)
        original = await resolver.resolve_group(
            "app", FP, "E", None, T0, build_crash=crash_builder("c-1")
        )

        replacement = await resolver.resolve_group(
            "app", FP, "E", None, T0, build_crash=crash_builder("c-2")
        )

        assert replacement != original
        assert store.crashes["c-2"].group_id == replacement
        assert store.groups[replacement].occurrences == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_store_every_crash(
        self, store: FakeCrashStorePort, resolver: GroupResolver
    ) -> None:
        await asyncio.gather(
            *(
                resolver.resolve_group(
                    "app", FP, "E", None, T0, build_crash=crash_builder(f"c-{i}")
                )
                for i in range(10)
            )
        )

        (group,) = store.groups.values()
        assert group.occurrences == 10
        assert await store.count_crashes(group.id) == 10
        assert store.insert_conflicts > 0
