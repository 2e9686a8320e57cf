"""
Periodic refresher importing out-of-band backups.

Backups taken directly against an ArangoDB deployment (outside of any
ArangoBackup resource) are discovered on a fixed interval and materialized as
ArangoBackup resources that start out Ready.
"""
import asyncio
import uuid
from typing import List, Optional

from backup_controller.config.logging import bind_deployment, get_logger
from backup_controller.config.settings import Settings, settings as default_settings
from backup_controller.core.lock_manager import DeploymentLockRegistry
from backup_controller.core.state_handlers import details_from_meta
from backup_controller.core.status_updater import StatusUpdater
from backup_controller.models import (
    BackupResource,
    BackupSpec,
    BackupState,
    BackupStatus,
    DeploymentResource,
    ObjectMeta,
)
from backup_controller.models.backup import DeploymentRef, now
from backup_controller.services import metrics
from backup_controller.services.arango_client import BackupMeta

logger = get_logger(__name__)


class PeriodicRefresher:
    """
    Scans every deployment for backups no ArangoBackup tracks.

    A tick aborts on the first error; nothing is checkpointed, the next tick
    starts over and converges by repetition.
    """

    def __init__(
        self,
        store,
        status_updater: StatusUpdater,
        locks: DeploymentLockRegistry,
        client_factory,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize refresher.

        Args:
            store: Resource store (KubernetesStore or compatible)
            status_updater: Conflict-safe status writer
            locks: Deployment lock registry shared with the event handler
            client_factory: Async callable returning a backup client for a deployment
            settings: Controller settings (namespace, refresh_interval)
        """
        self.store = store
        self.status_updater = status_updater
        self.locks = locks
        self.client_factory = client_factory
        self.settings = settings or default_settings
        self.running = False
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Run refresh ticks until stopped."""
        self.running = True
        self._stop_event.clear()

        logger.info(
            "refresher_started",
            interval_seconds=self.settings.refresh_interval,
        )

        while self.running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.refresh_interval)
                break  # Stop requested
            except asyncio.TimeoutError:
                pass

            logger.debug("refreshing_database_objects")
            try:
                await self.refresh()
            except asyncio.CancelledError:
                logger.info("refresher_cancelled")
                raise
            except Exception as e:
                metrics.refresh_failed_total.inc()
                logger.error(
                    "refresh_tick_failed",
                    error=str(e),
                    exc_info=True,
                )
                continue
            logger.debug("database_objects_refreshed")

        self.running = False
        logger.info("refresher_stopped")

    async def stop(self) -> None:
        """Stop between ticks."""
        logger.info("stopping_refresher")
        self.running = False
        self._stop_event.set()

    async def refresh(self) -> None:
        """Run one scan over all deployments in the controller namespace."""
        deployments = await self.store.list_deployments(self.settings.namespace)
        for deployment in deployments:
            await self.refresh_deployment(deployment)

    async def refresh_deployment(self, deployment: DeploymentResource) -> None:
        with bind_deployment(deployment.namespace, deployment.name):
            async with self.locks.get(deployment.namespace, deployment.name):
                backup_client = await self.client_factory(deployment)
                backups = await self.store.list_backups(deployment.namespace)
                existing = await backup_client.list()

                for meta in existing:
                    await self.refresh_deployment_backup(deployment, meta, backups)

    async def refresh_deployment_backup(
        self,
        deployment: DeploymentResource,
        meta: BackupMeta,
        backups: List[BackupResource],
    ) -> Optional[BackupResource]:
        """
        Import one physical backup unless a resource already tracks it.

        Returns:
            The created backup, or None if it was already tracked
        """
        for backup in backups:
            if backup.spec.download is not None and backup.spec.download.id == meta.id:
                return None
            if backup.status.backup_id == meta.id:
                return None

        backup = BackupResource(
            metadata=ObjectMeta(
                name=f"backup-{uuid.uuid4()}",
                namespace=deployment.namespace,
                owner_references=[deployment.as_owner()],
            ),
            spec=BackupSpec(deployment=DeploymentRef(name=deployment.name)),
        )
        created = await self.store.create_backup(backup)

        status = BackupStatus(
            state=BackupState.READY,
            time=now(),
            backup=details_from_meta(meta, imported=True),
            available=True,
        )
        await self.status_updater.update(created.namespace, created.name, status)

        # Later metas in this pass must see the import
        created.status = status
        backups.append(created)

        metrics.refresh_imported_total.labels(deployment=deployment.name).inc()
        logger.info(
            "out_of_band_backup_imported",
            namespace=deployment.namespace,
            deployment=deployment.name,
            backup=created.name,
            backup_id=meta.id,
        )
        return created
