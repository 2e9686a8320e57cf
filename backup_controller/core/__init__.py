"""
Core reconciliation machinery for ArangoBackup resources.

This package provides:
- Deployment lock registry serializing work per deployment
- Conflict-safe status updater
- Backup state machine and per-state handlers
- Event handler driving one backup per work item

Import directly from submodules:
from backup_controller.core.backup_handler import BackupHandler
from backup_controller.core.lock_manager import DeploymentLockRegistry
from backup_controller.core.state_machine import BackupStateMachine
from backup_controller.core.status_updater import StatusUpdater
"""

__all__ = [
    "BackupHandler",
    "BackupStateMachine",
    "DeploymentLockRegistry",
    "StatusUpdater",
]
