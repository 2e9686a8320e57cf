"""
State Transition Table

One async decision function per backup state. Each takes the handler (for
access to the store, the driver client factory and settings) and a private
copy of the backup, and returns the status the backup should move to. The
functions never persist anything; the event handler validates and writes the
result.
"""
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Dict

from backup_controller.config.logging import get_logger
from backup_controller.exceptions import (
    BackupNotFoundError,
    DriverError,
    DriverUnavailableError,
    NotFoundError,
)
from backup_controller.models import (
    BackupDetails,
    BackupProgress,
    BackupResource,
    BackupState,
    BackupStatus,
)
from backup_controller.models.backup import now
from backup_controller.services.arango_client import ArangoBackupClient, BackupMeta

if TYPE_CHECKING:
    from backup_controller.core.backup_handler import BackupHandler

logger = get_logger(__name__)

StateHandler = Callable[["BackupHandler", BackupResource], Awaitable[BackupStatus]]

# States in which a backup occupies its deployment
IN_PROGRESS_STATES = frozenset({
    BackupState.SCHEDULED,
    BackupState.CREATE,
    BackupState.DOWNLOAD,
    BackupState.DOWNLOADING,
    BackupState.UPLOAD,
    BackupState.UPLOADING,
})

PRESENT = "present"
ABSENT = "absent"
UNREACHABLE = "unreachable"


def failed_status(error, status: BackupStatus) -> BackupStatus:
    """Failed copy of a status carrying the error message."""
    return status.with_state(BackupState.FAILED, f"Failed State: {error}", available=False)


def details_from_meta(meta: BackupMeta, **flags) -> BackupDetails:
    return BackupDetails(
        id=meta.id,
        version=meta.version,
        created_at=meta.created_at or now(),
        size_in_bytes=meta.size_in_bytes,
        number_of_db_servers=meta.number_of_db_servers,
        potentially_inconsistent=meta.potentially_inconsistent,
        **flags,
    )


async def _client_for(handler: "BackupHandler", backup: BackupResource) -> ArangoBackupClient:
    deployment = await handler.store.get_deployment(backup.namespace, backup.deployment_name)
    return await handler.client_factory(deployment)


def _retry_due(handler: "BackupHandler", status: BackupStatus) -> bool:
    if status.time is None:
        return True
    elapsed = (datetime.now(status.time.tzinfo) - status.time).total_seconds()
    return elapsed >= handler.settings.error_retry_delay


async def _locate_backup(handler: "BackupHandler", backup: BackupResource) -> str:
    """Check whether the deployment still holds the backup."""
    try:
        backup_client = await _client_for(handler, backup)
        await backup_client.get(backup.status.backup_id)
    except (NotFoundError, DriverUnavailableError):
        return UNREACHABLE
    except BackupNotFoundError:
        return ABSENT
    except DriverError:
        return UNREACHABLE
    return PRESENT


async def state_none(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    return backup.status.with_state(BackupState.PENDING)


async def state_pending(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    """Wait until no other backup of the same deployment is in progress."""
    try:
        await handler.store.get_deployment(backup.namespace, backup.deployment_name)
    except NotFoundError:
        return failed_status(f"deployment {backup.deployment_name} not found", backup.status)

    for other in await handler.store.list_backups(backup.namespace):
        if other.name == backup.name or other.deployment_name != backup.deployment_name:
            continue
        if other.status.state in IN_PROGRESS_STATES:
            return backup.status.with_state(BackupState.PENDING, "backup already in process")

    return backup.status.with_state(BackupState.SCHEDULED)


async def state_scheduled(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    if backup.spec.download is not None:
        return backup.status.with_state(BackupState.DOWNLOAD)
    return backup.status.with_state(BackupState.CREATE)


async def state_create(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    try:
        backup_client = await _client_for(handler, backup)
        backup_id = await backup_client.create()
    except DriverUnavailableError:
        return backup.status.model_copy(deep=True)
    except (NotFoundError, DriverError) as e:
        return failed_status(e, backup.status)

    # The backup exists once create returns; a failed lookup must not lead to
    # a second create on the next pass.
    try:
        details = details_from_meta(await backup_client.get(backup_id))
    except DriverError as e:
        logger.warning("backup_details_unavailable", backup=backup.name, backup_id=backup_id, error=str(e))
        details = BackupDetails(id=backup_id, created_at=now())

    return backup.status.with_state(BackupState.READY, backup=details, available=True)


async def state_download(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    download = backup.spec.download
    try:
        backup_client = await _client_for(handler, backup)
    except NotFoundError as e:
        return failed_status(e, backup.status)

    try:
        job_id = await backup_client.download(download.id, download.repository_url)
    except DriverError as e:
        return backup.status.with_state(BackupState.DOWNLOAD_ERROR, f"Download failed: {e}")

    return backup.status.with_state(
        BackupState.DOWNLOADING,
        progress=BackupProgress(job_id=job_id, progress="0%"),
    )


async def state_downloading(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    status = backup.status
    if status.progress is None:
        return failed_status("download job is missing", status)

    try:
        backup_client = await _client_for(handler, backup)
        progress = await backup_client.download_progress(status.progress.job_id)
        if progress.done and not progress.failed:
            meta = await backup_client.get(backup.spec.download.id)
    except (NotFoundError, DriverUnavailableError):
        # Poll again later
        return status.model_copy(deep=True)
    except DriverError as e:
        return status.with_state(BackupState.DOWNLOAD_ERROR, f"Download failed: {e}")

    if progress.failed:
        return status.with_state(BackupState.DOWNLOAD_ERROR, f"Download failed: {progress.error}")
    if progress.done:
        return status.with_state(
            BackupState.READY,
            backup=details_from_meta(meta, downloaded=True),
            available=True,
        )
    return status.with_state(
        BackupState.DOWNLOADING,
        status.message,
        progress=BackupProgress(job_id=status.progress.job_id, progress=progress.progress),
    )


async def state_download_error(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    if _retry_due(handler, backup.status):
        return backup.status.with_state(BackupState.PENDING)
    return backup.status.model_copy(deep=True)


async def state_ready(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    status = backup.status
    if status.backup is None:
        return failed_status("backup details are missing", status)

    found = await _locate_backup(handler, backup)
    if found == UNREACHABLE:
        return status.with_state(BackupState.UNAVAILABLE, "deployment is unreachable", available=False)
    if found == ABSENT:
        return status.with_state(BackupState.DELETED, "backup is not present on deployment", available=False)

    if backup.spec.upload is not None and not status.backup.uploaded:
        return status.with_state(BackupState.UPLOAD, available=True)
    return status.with_state(BackupState.READY, available=True)


async def state_upload(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    status = backup.status
    try:
        backup_client = await _client_for(handler, backup)
        job_id = await backup_client.upload(status.backup_id, backup.spec.upload.repository_url)
    except (NotFoundError, DriverError) as e:
        return status.with_state(BackupState.UPLOAD_ERROR, f"Upload failed: {e}")

    return status.with_state(
        BackupState.UPLOADING,
        progress=BackupProgress(job_id=job_id, progress="0%"),
    )


async def state_uploading(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    status = backup.status
    if status.progress is None:
        return failed_status("upload job is missing", status)

    try:
        backup_client = await _client_for(handler, backup)
        progress = await backup_client.upload_progress(status.progress.job_id)
    except (NotFoundError, DriverUnavailableError):
        # Poll again later
        return status.model_copy(deep=True)
    except DriverError as e:
        return status.with_state(BackupState.UPLOAD_ERROR, f"Upload failed: {e}")

    if progress.failed:
        return status.with_state(BackupState.UPLOAD_ERROR, f"Upload failed: {progress.error}")
    if progress.done:
        return status.with_state(
            BackupState.READY,
            backup=status.backup.model_copy(update={"uploaded": True}),
            available=True,
        )
    return status.with_state(
        BackupState.UPLOADING,
        status.message,
        progress=BackupProgress(job_id=status.progress.job_id, progress=progress.progress),
    )


async def state_upload_error(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    if _retry_due(handler, backup.status):
        return backup.status.with_state(BackupState.READY, available=backup.status.available)
    return backup.status.model_copy(deep=True)


async def state_unavailable(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    status = backup.status
    if status.backup is None:
        return failed_status("backup details are missing", status)

    found = await _locate_backup(handler, backup)
    if found == PRESENT:
        return status.with_state(BackupState.READY, available=True)
    if found == ABSENT:
        return status.with_state(BackupState.DELETED, "backup is not present on deployment", available=False)
    return status.model_copy(deep=True)


async def state_deleted(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    status = backup.status
    if status.backup is None:
        return failed_status("backup details are missing", status)

    if await _locate_backup(handler, backup) == PRESENT:
        return status.with_state(BackupState.READY, available=True)
    return status.model_copy(deep=True)


async def state_failed(handler: "BackupHandler", backup: BackupResource) -> BackupStatus:
    return backup.status.model_copy(deep=True)


STATE_HANDLERS: Dict[BackupState, StateHandler] = {
    BackupState.NONE: state_none,
    BackupState.PENDING: state_pending,
    BackupState.SCHEDULED: state_scheduled,
    BackupState.CREATE: state_create,
    BackupState.DOWNLOAD: state_download,
    BackupState.DOWNLOADING: state_downloading,
    BackupState.DOWNLOAD_ERROR: state_download_error,
    BackupState.READY: state_ready,
    BackupState.UPLOAD: state_upload,
    BackupState.UPLOADING: state_uploading,
    BackupState.UPLOAD_ERROR: state_upload_error,
    BackupState.UNAVAILABLE: state_unavailable,
    BackupState.DELETED: state_deleted,
    BackupState.FAILED: state_failed,
}
