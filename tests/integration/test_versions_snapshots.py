"""
Integration tests for versions and snapshot building.

Tests cover:
- Version creation freezing the schema and bumping the dataset
- SemVer ordering of version strings
- Item counts of versions before and after the snapshot
- Snapshot paging, resume after a failed commit, retry exhaustion
- Non-retryable repository errors still retried into a failed version
"""

import sqlite3

import pytest

from dbaas.dataset_engine.entity import (
    DatasetVersion,
    FieldData,
    IndexedItem,
    Item,
    SnapshotStatus,
)
from dbaas.dataset_engine.errors import InternalError, InvalidParamError
from dbaas.dataset_engine.jobs import JOB_TYPE_SNAPSHOT, JobRunMessage
from dbaas.dataset_engine.service import RETRY_TIMES_EXTRA, VERSION_ID_EXTRA


def indexed(*contents):
    return [
        IndexedItem(i, Item(data=[FieldData(key="x", content=c)], created_by="alice"))
        for i, c in enumerate(contents)
    ]


async def reread(datasets, ds):
    return await datasets.get_dataset(ds.space_id, ds.id)


async def new_version(versions, ds, version="1.0.0"):
    return await versions.create_version(ds, DatasetVersion(version=version, created_by="alice"))


@pytest.fixture
def setup_versioned(make_dataset, items, datasets, versions, repo):
    """Seven items captured by 1.0.0, then one archived and two added."""

    async def setup():
        ds = await make_dataset("x")
        captured = (await items.batch_create(ds, indexed(*[f"item {i}" for i in range(7)]))).added
        version = await new_version(versions, ds)
        ds = await reread(datasets, ds)
        await items.batch_create(ds, indexed("late 1", "late 2"))
        rows = await repo.mget_items(ds.id, [captured[0].id])
        await items.batch_delete(ds, rows)
        return ds, version, captured

    return setup


class TestCreateVersion:
    """Tests for VersionService.create_version."""

    @pytest.mark.asyncio
    async def test_freezes_schema_and_bumps_dataset(self, make_dataset, schemas, versions, datasets, bus):
        ds = await make_dataset("x")
        for i in range(3):
            fields = [f.clone() for f in ds.schema.available_fields()]
            fields[0].description = f"revision {i}"
            await schemas.update_schema(ds, fields)
            ds = await reread(datasets, ds)
        assert ds.schema.update_version == 3

        version = await new_version(versions, ds)

        assert version.version_num == 1
        assert version.schema_id == ds.schema.id
        assert version.snapshot_status == SnapshotStatus.UNSTARTED
        assert version.dataset_brief["next_version_num"] == 1

        after = await reread(datasets, ds)
        assert after.dataset.next_version_num == 2
        assert after.dataset.latest_version == "1.0.0"
        assert after.schema.immutable
        assert after.schema.update_version == 4

        (msg,) = bus.sent_messages(JOB_TYPE_SNAPSHOT)
        assert msg.extra == {VERSION_ID_EXTRA: str(version.id)}
        assert msg.space_id == ds.space_id

    @pytest.mark.asyncio
    async def test_versions_must_increase(self, make_dataset, versions, datasets):
        ds = await make_dataset("x")
        await new_version(versions, ds, "1.0.0")
        ds = await reread(datasets, ds)

        for bad in ("1.0.0", "0.9.0", "1.0.0-rc.1", "v1.1.0"):
            with pytest.raises(InvalidParamError):
                await new_version(versions, ds, bad)

        second = await new_version(versions, ds, "1.1.0-alpha")
        assert second.version_num == 2

    @pytest.mark.asyncio
    async def test_list_versions(self, make_dataset, versions, datasets):
        ds = await make_dataset("x")
        await new_version(versions, ds, "0.1.0")
        ds = await reread(datasets, ds)
        await new_version(versions, ds, "0.2.0")
        listed = await versions.list_versions(ds.id)
        assert sorted(v.version for v in listed) == ["0.1.0", "0.2.0"]


class TestVersionItemCount:
    """Tests for item counts of versions."""

    @pytest.mark.asyncio
    async def test_count_before_snapshot(self, setup_versioned, versions, kv):
        ds, version, _ = await setup_versioned()
        fetched = await versions.get_version(version.id)
        assert fetched.snapshot_status == SnapshotStatus.UNSTARTED
        assert fetched.item_count == 7
        assert await kv.get_item_count_of_version(version.id) == 7


class TestSnapshotBuilder:
    """Tests for SnapshotBuilder.handle."""

    @pytest.mark.asyncio
    async def test_builds_snapshot_in_pages(self, setup_versioned, builder, bus, repo, versions):
        ds, version, captured = await setup_versioned()

        await builder.handle(bus.sent_messages(JOB_TYPE_SNAPSHOT)[0])

        done = await versions.get_version(version.id)
        assert done.snapshot_status == SnapshotStatus.COMPLETED
        assert done.item_count == 7
        page = await repo.list_item_snapshots(version.id, limit=100)
        assert sorted(s.snapshot.id for s in page.items) == sorted(i.id for i in captured)

    @pytest.mark.asyncio
    async def test_resumes_after_failed_commit(self, setup_versioned, builder, bus, repo, versions, monkeypatch):
        ds, version, captured = await setup_versioned()
        original = repo.patch_version
        calls = 0

        async def flaky_patch_version(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise sqlite3.OperationalError("database is locked")
            return await original(*args, **kwargs)

        monkeypatch.setattr(repo, "patch_version", flaky_patch_version)
        await builder.handle(bus.sent_messages(JOB_TYPE_SNAPSHOT)[0])

        stalled = await repo.get_version(version.id)
        assert stalled.snapshot_status == SnapshotStatus.IN_PROGRESS
        assert stalled.snapshot_progress.cursor != ""
        retry = bus.sent_messages(JOB_TYPE_SNAPSHOT)[-1]
        assert retry.int_extra(RETRY_TIMES_EXTRA) == 1

        monkeypatch.setattr(repo, "patch_version", original)
        await builder.handle(retry)

        done = await versions.get_version(version.id)
        assert done.snapshot_status == SnapshotStatus.COMPLETED
        assert done.item_count == 7
        assert await repo.count_item_snapshots(version.id) == 7

    @pytest.mark.asyncio
    async def test_marks_failed_after_max_retries(self, setup_versioned, builder, bus, repo, monkeypatch):
        ds, version, _ = await setup_versioned()

        async def broken_list_items(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(repo, "list_items", broken_list_items)
        handled = 0
        while handled < len(bus.sent_messages(JOB_TYPE_SNAPSHOT)):
            await builder.handle(bus.sent_messages(JOB_TYPE_SNAPSHOT)[handled])
            handled += 1

        # The original message plus max_retry_times re-sends.
        assert handled == 4
        failed = await repo.get_version(version.id)
        assert failed.snapshot_status == SnapshotStatus.FAILED

    @pytest.mark.asyncio
    async def test_internal_error_retried_until_failed(self, setup_versioned, builder, bus, repo, monkeypatch):
        ds, version, _ = await setup_versioned()

        async def corrupt_upsert(*args, **kwargs):
            raise InternalError("corrupt payload")

        monkeypatch.setattr(repo, "mupsert_item_snapshots", corrupt_upsert)
        await builder.handle(bus.sent_messages(JOB_TYPE_SNAPSHOT)[0])

        retry = bus.sent_messages(JOB_TYPE_SNAPSHOT)[-1]
        assert retry.int_extra(RETRY_TIMES_EXTRA) == 1
        assert retry.int_extra(VERSION_ID_EXTRA) == version.id

        handled = 1
        while handled < len(bus.sent_messages(JOB_TYPE_SNAPSHOT)):
            await builder.handle(bus.sent_messages(JOB_TYPE_SNAPSHOT)[handled])
            handled += 1

        assert handled == 4
        failed = await repo.get_version(version.id)
        assert failed.snapshot_status == SnapshotStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_commit_with_internal_error_resumes(
        self, setup_versioned, builder, bus, repo, versions, monkeypatch
    ):
        ds, version, _ = await setup_versioned()
        original = repo.patch_version

        async def rejected_patch(*args, **kwargs):
            raise InternalError("version row unreadable")

        monkeypatch.setattr(repo, "patch_version", rejected_patch)
        await builder.handle(bus.sent_messages(JOB_TYPE_SNAPSHOT)[0])
        assert (await repo.get_version(version.id)).snapshot_status == SnapshotStatus.UNSTARTED

        monkeypatch.setattr(repo, "patch_version", original)
        await builder.handle(bus.sent_messages(JOB_TYPE_SNAPSHOT)[-1])

        done = await versions.get_version(version.id)
        assert done.snapshot_status == SnapshotStatus.COMPLETED
        assert done.item_count == 7

    @pytest.mark.asyncio
    async def test_finished_version_ignored(self, setup_versioned, builder, bus, repo):
        ds, version, _ = await setup_versioned()
        msg = bus.sent_messages(JOB_TYPE_SNAPSHOT)[0]
        await builder.handle(msg)
        sent = len(bus.sent_messages())

        await builder.handle(msg)
        assert len(bus.sent_messages()) == sent
        assert await repo.count_item_snapshots(version.id) == 7

    @pytest.mark.asyncio
    async def test_invalid_message(self, builder):
        with pytest.raises(InvalidParamError):
            await builder.handle(JobRunMessage(type=JOB_TYPE_SNAPSHOT, extra={VERSION_ID_EXTRA: "abc"}))
        with pytest.raises(InvalidParamError):
            await builder.handle(JobRunMessage(type=JOB_TYPE_SNAPSHOT))
