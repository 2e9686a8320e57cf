"""
Conflict-safe status persistence for ArangoBackup objects.
"""
from typing import Optional

from backup_controller.config.logging import get_logger
from backup_controller.config.settings import settings
from backup_controller.exceptions import NotFoundError
from backup_controller.models import BackupResource, BackupStatus
from backup_controller.services import metrics
from backup_controller.utils.retry import retry_fixed

logger = get_logger(__name__)


class StatusUpdater:
    """
    Writes a desired status onto the latest version of a backup.

    Each attempt re-fetches the object, replaces only its status and writes it
    back, so a concurrent spec or metadata change is never overwritten. A
    resourceVersion conflict leads to a fresh attempt; after the last attempt
    the final error surfaces unchanged.
    """

    def __init__(
        self,
        store,
        attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ):
        """
        Initialize status updater.

        Args:
            store: Resource store (KubernetesStore or compatible)
            attempts: Maximum attempts (default settings.status_update_attempts)
            delay: Seconds between attempts (default settings.status_update_delay)
        """
        self.store = store
        self.attempts = attempts if attempts is not None else settings.status_update_attempts
        self.delay = delay if delay is not None else settings.status_update_delay

    async def update(self, namespace: str, name: str, status: BackupStatus) -> BackupResource:
        """
        Persist a status for a backup.

        Args:
            namespace: Backup namespace
            name: Backup name
            status: Desired status

        Returns:
            The backup as returned by the final successful write

        Raises:
            NotFoundError: If the backup disappeared (not retried)
            ControllerException: Error of the final attempt once the budget is spent
        """

        async def attempt() -> BackupResource:
            backup = await self.store.get_backup(namespace, name)
            backup.status = status.model_copy(deep=True)
            return await self.store.update_backup_status(backup)

        result = await retry_fixed(
            attempt,
            attempts=self.attempts,
            delay=self.delay,
            give_up_on=(NotFoundError,),
            operation="update_backup_status",
            on_retry=lambda attempt_number, error: metrics.status_update_retry_total.inc(),
        )

        logger.debug(
            "backup_status_updated",
            namespace=namespace,
            backup=name,
            state=status.state.value,
        )
        return result
