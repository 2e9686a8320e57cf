"""
Tests for the ArangoBackup event handler.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from backup_controller.core.state_handlers import STATE_HANDLERS
from backup_controller.exceptions import TransitionError, UnsupportedStateError
from backup_controller.models import FINALIZER, BackupDetails, BackupProgress, BackupState, OperationItem
from backup_controller.services.arango_client import JobProgress
from tests.conftest import item_for, make_backup, make_deployment


async def _never_called(handler, backup):
    raise AssertionError("state handler must not run")


NO_DISPATCH = {state: _never_called for state in BackupState}


def test_can_be_handled_matches_backup_kind(handler):
    """Only ArangoBackup items are accepted."""
    deployment_item = OperationItem(
        group="database.arangodb.com",
        version="v1alpha",
        kind="ArangoDeployment",
        namespace="default",
        name="db1",
    )

    assert handler.name() == "ArangoBackup"
    assert handler.can_be_handled(item_for())
    assert not handler.can_be_handled(deployment_item)


@pytest.mark.asyncio
async def test_missing_backup_is_a_no_op(handler, store):
    """A deleted backup is ignored."""
    await handler.handle(item_for("gone"))

    assert store.updates == []
    assert store.status_writes == []


@pytest.mark.asyncio
async def test_new_backup_progresses_to_ready(handler, store, client_factory, recorder, operator):
    """A new backup walks None, Pending, Scheduled, Create, Ready."""
    store.put_deployment(make_deployment())
    store.put_backup(make_backup())

    for expected in (BackupState.PENDING, BackupState.SCHEDULED, BackupState.CREATE, BackupState.READY):
        await handler.handle(item_for())
        assert store.stored("backup1").status.state == expected

    status = store.stored("backup1").status
    client = client_factory.client("db1")
    assert status.backup.id == client.created[0]
    assert status.available is True
    assert status.time is not None
    assert [e[3] for e in recorder.events] == [
        "Transiting from None to Pending",
        "Transiting from Pending to Scheduled",
        "Transiting from Scheduled to Create",
        "Transiting from Create to Ready",
    ]
    assert all(e[0] == "Normal" and e[2] == "StateChange" for e in recorder.events)
    assert operator.enqueued == [item_for()] * 4


@pytest.mark.asyncio
async def test_failed_lookup_after_create_takes_one_backup(handler, store, client_factory):
    """A lookup failure right after create does not lead to a second create."""
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(state=BackupState.CREATE))
    client = client_factory.client("db1")
    client.get_failures = 1

    await handler.handle(item_for())
    await handler.handle(item_for())

    status = store.stored("backup1").status
    assert len(client.created) == 1
    assert status.state == BackupState.READY
    assert status.backup_id == client.created[0]


@pytest.mark.asyncio
async def test_unchanged_status_is_not_written(handler, store, client_factory, operator):
    """A pass with an unchanged status neither writes nor re-queues."""
    store.put_deployment(make_deployment())
    client_factory.client("db1").add_backup("abc")
    store.put_backup(make_backup(state=BackupState.READY, backup_id="abc", available=True))

    await handler.handle(item_for())
    await handler.handle(item_for())

    assert store.status_writes == []
    assert operator.enqueued == []


@pytest.mark.asyncio
async def test_failed_backup_stays_failed(handler, store, operator):
    """Failed is terminal."""
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(state=BackupState.FAILED, message="Failed State: boom"))

    await handler.handle(item_for())

    assert store.status_writes == []
    assert operator.enqueued == []


@pytest.mark.asyncio
async def test_finalizer_is_added_without_processing(make_handler, store, operator):
    """Attaching the finalizer is the only work of that pass."""
    handler = make_handler(state_handlers=NO_DISPATCH)
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(finalizer=False))

    await handler.handle(item_for())

    stored = store.stored("backup1")
    assert stored.metadata.finalizers == [FINALIZER]
    assert stored.status.state == BackupState.NONE
    assert store.status_writes == []
    assert operator.enqueued == []


@pytest.mark.asyncio
async def test_deleting_backup_removes_physical_backup(make_handler, store, client_factory, recorder):
    """Deletion removes the physical backup and the finalizer."""
    handler = make_handler(state_handlers=NO_DISPATCH)
    store.put_deployment(make_deployment())
    client_factory.client("db1").add_backup("abc")
    store.put_backup(make_backup(state=BackupState.READY, backup_id="abc", deleting=True))

    await handler.handle(item_for())

    assert client_factory.client("db1").deleted == ["abc"]
    assert store.stored("backup1").metadata.finalizers == []
    assert store.status_writes == []
    assert recorder.events == [("Normal", "backup1", "FinalizerChange", f"Removed finalizer {FINALIZER}")]


@pytest.mark.asyncio
async def test_deleting_failed_backup_is_finalized_not_processed(make_handler, store):
    """A failed backup being deleted is only finalized."""
    handler = make_handler(state_handlers=NO_DISPATCH)
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(state=BackupState.FAILED, deleting=True))

    await handler.handle(item_for())

    assert store.stored("backup1").metadata.finalizers == []
    assert store.status_writes == []


@pytest.mark.asyncio
async def test_deleting_backup_without_finalizer_is_left_alone(make_handler, store):
    """A deleting backup without finalizer is not touched."""
    handler = make_handler(state_handlers=NO_DISPATCH)
    store.put_backup(make_backup(finalizer=False, deleting=True))

    await handler.handle(item_for())

    assert store.updates == []


@pytest.mark.asyncio
async def test_shared_physical_backup_is_kept(make_handler, store, client_factory):
    """A physical backup another resource uses is kept."""
    handler = make_handler(state_handlers=NO_DISPATCH)
    store.put_deployment(make_deployment())
    client_factory.client("db1").add_backup("abc")
    store.put_backup(make_backup(state=BackupState.READY, backup_id="abc", deleting=True))
    store.put_backup(make_backup(name="backup2", state=BackupState.READY, backup_id="abc"))

    await handler.handle(item_for())

    assert client_factory.client("db1").deleted == []
    assert store.stored("backup1").metadata.finalizers == []


@pytest.mark.asyncio
async def test_finalizer_removed_when_backup_already_gone(make_handler, store, client_factory):
    """A missing physical backup does not block finalizer removal."""
    handler = make_handler(state_handlers=NO_DISPATCH)
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(state=BackupState.READY, backup_id="abc", deleting=True))

    await handler.handle(item_for())

    assert store.stored("backup1").metadata.finalizers == []


@pytest.mark.asyncio
async def test_invalid_spec_fails_with_warning(handler, store, recorder):
    """An invalid spec fails the backup and records a warning."""
    store.put_backup(make_backup(deployment=""))

    await handler.handle(item_for())

    status = store.stored("backup1").status
    assert status.state == BackupState.FAILED
    assert status.message == "Failed State: deployment ref is not specified"
    assert status.available is False
    assert recorder.events == [(
        "Warning",
        "backup1",
        "StateChange",
        "Transiting from None to Failed with error: Failed State: deployment ref is not specified",
    )]


@pytest.mark.asyncio
async def test_state_without_handler_is_rejected(make_handler, store):
    """A state without a handler raises UnsupportedStateError."""
    handler = make_handler(state_handlers={})
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(state=BackupState.PENDING))

    with pytest.raises(UnsupportedStateError) as exc_info:
        await handler.handle(item_for())

    assert exc_info.value.message == "state Pending is not supported"
    assert store.status_writes == []


@pytest.mark.asyncio
async def test_illegal_transition_is_not_written(make_handler, store, operator):
    """An illegal transition raises and writes nothing; the re-queue happens before the check."""
    async def back_to_pending(handler, backup):
        return backup.status.with_state(BackupState.PENDING)

    handler = make_handler(state_handlers={**STATE_HANDLERS, BackupState.READY: back_to_pending})
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(state=BackupState.READY, backup_id="abc", available=True))

    with pytest.raises(TransitionError):
        await handler.handle(item_for())

    assert store.status_writes == []
    assert store.stored("backup1").status.state == BackupState.READY
    assert operator.enqueued == [item_for()]


@pytest.mark.asyncio
async def test_backup_id_cannot_change(make_handler, store):
    """The backup ID is immutable once set."""
    async def swap_id(handler, backup):
        return backup.status.with_state(BackupState.READY, backup=BackupDetails(id="other"), available=True)

    handler = make_handler(state_handlers={**STATE_HANDLERS, BackupState.READY: swap_id})
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(state=BackupState.READY, backup_id="abc", available=True))

    with pytest.raises(TransitionError):
        await handler.handle(item_for())

    assert store.stored("backup1").status.backup_id == "abc"


@pytest.mark.asyncio
async def test_time_kept_when_state_unchanged(handler, store, client_factory):
    """Progress updates keep the original status time."""
    started = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    store.put_deployment(make_deployment())
    client = client_factory.client("db1")
    client.jobs["download-1"] = JobProgress(done=False, failed=False, progress="50%")
    store.put_backup(make_backup(
        state=BackupState.DOWNLOADING,
        download="abc",
        time=started,
        progress=BackupProgress(job_id="download-1", progress="10%"),
    ))

    await handler.handle(item_for())

    status = store.stored("backup1").status
    assert status.state == BackupState.DOWNLOADING
    assert status.progress.progress == "50%"
    assert status.time == started


@pytest.mark.asyncio
async def test_time_set_on_state_change(handler, store):
    """A state change stamps a fresh status time."""
    started = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    store.put_deployment(make_deployment())
    store.put_backup(make_backup(time=started))

    await handler.handle(item_for())

    assert store.stored("backup1").status.time > started


@pytest.mark.asyncio
async def test_owner_reference_is_attached(handler, store):
    """The deployment becomes the controlling owner."""
    store.put_deployment(make_deployment())
    store.put_backup(make_backup())

    await handler.handle(item_for())

    owners = store.stored("backup1").metadata.owner_references
    assert len(owners) == 1
    assert owners[0].name == "db1"
    assert owners[0].uid == "db1-uid"
    assert owners[0].controller is True


@pytest.mark.asyncio
async def test_owner_reference_failure_does_not_block(handler, store):
    """A failed owner update does not stop processing."""
    store.put_deployment(make_deployment())
    store.put_backup(make_backup())
    store.update_conflicts = 1

    await handler.handle(item_for())

    stored = store.stored("backup1")
    assert stored.metadata.owner_references == []
    assert stored.status.state == BackupState.PENDING


@pytest.mark.asyncio
async def test_missing_deployment_does_not_block_owner_step(handler, store):
    """A missing deployment does not stop processing."""
    store.put_backup(make_backup())

    await handler.handle(item_for())

    assert store.stored("backup1").status.state == BackupState.PENDING


def _counting_handlers(tracker):
    async def slow(handler, backup):
        tracker["active"] += 1
        tracker["peak"] = max(tracker["peak"], tracker["active"])
        await asyncio.sleep(0.01)
        tracker["active"] -= 1
        return backup.status.with_state(BackupState.PENDING)

    return {**STATE_HANDLERS, BackupState.NONE: slow}


@pytest.mark.asyncio
async def test_same_deployment_is_serialized(make_handler, store):
    """Backups of one deployment are handled one at a time."""
    tracker = {"active": 0, "peak": 0}
    handler = make_handler(state_handlers=_counting_handlers(tracker))
    store.put_deployment(make_deployment())
    store.put_backup(make_backup("backup1"))
    store.put_backup(make_backup("backup2"))

    await asyncio.gather(handler.handle(item_for("backup1")), handler.handle(item_for("backup2")))

    assert tracker["peak"] == 1
    assert store.stored("backup1").status.state == BackupState.PENDING
    assert store.stored("backup2").status.state == BackupState.PENDING


@pytest.mark.asyncio
async def test_different_deployments_run_concurrently(make_handler, store):
    """Backups of different deployments run in parallel."""
    tracker = {"active": 0, "peak": 0}
    handler = make_handler(state_handlers=_counting_handlers(tracker))
    store.put_deployment(make_deployment("db1"))
    store.put_deployment(make_deployment("db2"))
    store.put_backup(make_backup("backup1", deployment="db1"))
    store.put_backup(make_backup("backup2", deployment="db2"))

    await asyncio.gather(handler.handle(item_for("backup1")), handler.handle(item_for("backup2")))

    assert tracker["peak"] == 2
