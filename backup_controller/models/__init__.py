from backup_controller.models.backup import (
    FINALIZER,
    BackupDetails,
    BackupProgress,
    BackupResource,
    BackupSpec,
    BackupState,
    BackupStatus,
    DownloadSpec,
    UploadSpec,
)
from backup_controller.models.deployment import DeploymentResource
from backup_controller.models.meta import ObjectMeta, OwnerReference
from backup_controller.models.operation import OperationItem

__all__ = [
    "FINALIZER",
    "BackupDetails",
    "BackupProgress",
    "BackupResource",
    "BackupSpec",
    "BackupState",
    "BackupStatus",
    "DeploymentResource",
    "DownloadSpec",
    "ObjectMeta",
    "OperationItem",
    "OwnerReference",
    "UploadSpec",
]
