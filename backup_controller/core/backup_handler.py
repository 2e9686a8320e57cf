"""
ArangoBackup event handler.

Reconciles one backup per work item: finalizer bookkeeping, owner link,
state dispatch, transition validation and status persistence. All work after
finalizer attachment runs under the deployment lock shared with the periodic
refresher.

Usage:
    >>> handler = BackupHandler(
    ...     store=store,
    ...     status_updater=StatusUpdater(store),
    ...     locks=DeploymentLockRegistry(),
    ...     event_recorder=recorder,
    ...     client_factory=ArangoClientFactory(),
    ... )
    >>> await handler.handle(item)
"""
from typing import Dict, Optional

from backup_controller.config.logging import bind_work_item, get_logger
from backup_controller.config.settings import Settings, settings as default_settings
from backup_controller.core.lock_manager import DeploymentLockRegistry
from backup_controller.core.state_handlers import STATE_HANDLERS, StateHandler, failed_status
from backup_controller.core.state_machine import BackupStateMachine
from backup_controller.core.status_updater import StatusUpdater
from backup_controller.exceptions import (
    BackupNotFoundError,
    ControllerException,
    NotFoundError,
    TransitionError,
    UnsupportedStateError,
    ValidationError,
)
from backup_controller.models import FINALIZER, BackupResource, BackupState, BackupStatus, OperationItem
from backup_controller.models.backup import now
from backup_controller.services import metrics

logger = get_logger(__name__)

# Event reasons
STATE_CHANGE = "StateChange"
FINALIZER_CHANGE = "FinalizerChange"


def _state_name(state: BackupState) -> str:
    return state.value or "None"


class BackupHandler:
    """
    Handler for ArangoBackup work items.

    Handling is idempotent: a pass whose computed status equals the stored one
    performs no write and does not re-queue the item.
    """

    def __init__(
        self,
        store,
        status_updater: StatusUpdater,
        locks: DeploymentLockRegistry,
        event_recorder,
        client_factory,
        operator=None,
        state_handlers: Optional[Dict[BackupState, StateHandler]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize handler.

        Args:
            store: Resource store (KubernetesStore or compatible)
            status_updater: Conflict-safe status writer
            locks: Deployment lock registry shared with the refresher
            event_recorder: Notification sink with normal()/warning()
            client_factory: Async callable returning a backup client for a deployment
            operator: Work queue runtime used to re-queue items (optional)
            state_handlers: State dispatch table (default STATE_HANDLERS)
            settings: Controller settings
        """
        self.store = store
        self.status_updater = status_updater
        self.locks = locks
        self.event_recorder = event_recorder
        self.client_factory = client_factory
        self.operator = operator
        self.state_handlers = state_handlers if state_handlers is not None else STATE_HANDLERS
        self.settings = settings or default_settings

    def name(self) -> str:
        return self.settings.backup_kind

    def can_be_handled(self, item: OperationItem) -> bool:
        return (
            item.group == self.settings.backup_group
            and item.version == self.settings.backup_version
            and item.kind == self.settings.backup_kind
        )

    async def handle(self, item: OperationItem) -> None:
        """
        Reconcile the backup identified by a work item.

        Raises:
            TransitionError: If the computed status is not a legal successor
            ControllerException: On store or driver failures (the queue retries)
        """
        with bind_work_item(item), metrics.handle_duration_seconds.time():
            try:
                await self._handle(item)
            except Exception:
                metrics.handle_total.labels(result="error").inc()
                raise
        metrics.handle_total.labels(result="ok").inc()

    async def _handle(self, item: OperationItem) -> None:
        try:
            backup = await self.store.get_backup(item.namespace, item.name)
        except NotFoundError:
            logger.debug("backup_already_deleted", namespace=item.namespace, backup=item.name)
            return

        if backup.is_deleting:
            logger.debug("finalizing_backup", namespace=item.namespace, backup=item.name)
            await self.finalize(backup)
            return

        # Finalizer attachment is a write of its own; state processing waits
        # for the next delivery of the item.
        if not backup.has_finalizer():
            backup.add_finalizer()
            logger.info("updating_finalizers", namespace=item.namespace, backup=item.name)
            await self.store.update_backup(backup)
            return

        async with self.locks.get(backup.namespace, backup.deployment_name):
            await self._ensure_owner(backup)

            current = backup.status
            status = await self.process_backup(backup.model_copy(deep=True))
            status.time = current.time

            if status.is_equivalent(current):
                return

            if self.operator is not None:
                self.operator.enqueue_item(item)

            backup_name = f"{backup.namespace}/{backup.name}"
            BackupStateMachine.validate_transition(current.state, status.state, backup_name)
            if current.backup_id is not None and status.backup_id != current.backup_id:
                raise TransitionError(
                    f"backup ID of {backup_name} cannot change from {current.backup_id} to {status.backup_id}",
                    details={"backup": backup_name},
                )

            if current.state != status.state:
                status.time = now()
                self._record_state_change(backup, current, status)

            logger.debug(
                "updating_backup_status",
                namespace=backup.namespace,
                backup=backup.name,
                state=status.state.value,
            )
            await self.status_updater.update(backup.namespace, backup.name, status)

    async def process_backup(self, backup: BackupResource) -> BackupStatus:
        """
        Compute the next status of a backup.

        Args:
            backup: Private copy of the backup; handlers may read it freely

        Returns:
            Candidate status (not yet validated or persisted)

        Raises:
            UnsupportedStateError: If no handler is registered for the state
        """
        try:
            backup.validate_spec()
        except ValidationError as e:
            return failed_status(e, backup.status)

        state_handler = self.state_handlers.get(backup.status.state)
        if state_handler is None:
            raise UnsupportedStateError(backup.status.state.value)
        return await state_handler(self, backup)

    async def finalize(self, backup: BackupResource) -> None:
        """Run cleanup and remove the finalizer so Kubernetes can delete the backup."""
        if not backup.has_finalizer():
            return

        await self._cleanup(backup)

        backup.remove_finalizer()
        await self.store.update_backup(backup)
        metrics.finalized_total.inc()
        self.event_recorder.normal(backup, FINALIZER_CHANGE, "Removed finalizer %s", FINALIZER)
        logger.info("backup_finalized", namespace=backup.namespace, backup=backup.name)

    async def _cleanup(self, backup: BackupResource) -> None:
        """Delete the physical backup unless another live resource still tracks it."""
        backup_id = backup.status.backup_id
        if not backup_id or not backup.deployment_name:
            return

        for other in await self.store.list_backups(backup.namespace):
            if other.name == backup.name or other.is_deleting:
                continue
            download_id = other.spec.download.id if other.spec.download else None
            if backup_id in (other.status.backup_id, download_id):
                logger.info(
                    "backup_still_referenced",
                    namespace=backup.namespace,
                    backup=backup.name,
                    backup_id=backup_id,
                    referenced_by=other.name,
                )
                return

        try:
            deployment = await self.store.get_deployment(backup.namespace, backup.deployment_name)
        except NotFoundError:
            return

        backup_client = await self.client_factory(deployment)
        try:
            await backup_client.delete(backup_id)
        except BackupNotFoundError:
            return
        logger.info(
            "physical_backup_deleted",
            namespace=backup.namespace,
            deployment=backup.deployment_name,
            backup_id=backup_id,
        )

    async def _ensure_owner(self, backup: BackupResource) -> None:
        if backup.metadata.owner_references or not backup.deployment_name:
            return

        try:
            deployment = await self.store.get_deployment(backup.namespace, backup.deployment_name)
            backup.metadata.owner_references = [deployment.as_owner()]
            updated = await self.store.update_backup(backup)
            backup.metadata.resource_version = updated.metadata.resource_version
        except ControllerException as e:
            logger.warning(
                "owner_reference_update_failed",
                namespace=backup.namespace,
                backup=backup.name,
                deployment=backup.deployment_name,
                error=str(e),
            )

    def _record_state_change(self, backup: BackupResource, current: BackupStatus, status: BackupStatus) -> None:
        old_state = _state_name(current.state)
        new_state = _state_name(status.state)
        metrics.state_transition_total.labels(from_state=old_state, to_state=new_state).inc()

        if status.state == BackupState.FAILED:
            self.event_recorder.warning(
                backup,
                STATE_CHANGE,
                "Transiting from %s to %s with error: %s",
                old_state,
                new_state,
                status.message,
            )
        else:
            self.event_recorder.normal(backup, STATE_CHANGE, "Transiting from %s to %s", old_state, new_state)

        logger.info(
            "backup_state_changed",
            namespace=backup.namespace,
            backup=backup.name,
            from_state=old_state,
            to_state=new_state,
            message=status.message,
        )
