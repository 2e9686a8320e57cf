"""
Backup State Machine

This module implements the transition-legality graph for the ArangoBackup
lifecycle. It rejects state jumps that no state handler is allowed to make.

States:
- None: Freshly created, not yet seen by the controller
- Pending: Waiting for other backups of the deployment to finish
- Scheduled: Cleared to run, choosing between create and download
- Create: Backup being taken on the deployment
- Download / Downloading / DownloadError: Fetching from a remote repository
- Upload / Uploading / UploadError: Pushing to a remote repository
- Ready: Backup present on the deployment
- Unavailable: Deployment cannot be reached to confirm the backup
- Deleted: Backup no longer present on the deployment
- Failed: Terminal error, requires a new resource

Usage:
    >>> from backup_controller.core.state_machine import BackupStateMachine
    >>> from backup_controller.models import BackupState
    >>>
    >>> BackupStateMachine.can_transition(BackupState.PENDING, BackupState.SCHEDULED)
    True
    >>> BackupStateMachine.can_transition(BackupState.FAILED, BackupState.READY)
    False
"""

from typing import Dict, FrozenSet, Optional

from backup_controller.config.logging import get_logger
from backup_controller.exceptions import TransitionError
from backup_controller.models import BackupState

logger = get_logger(__name__)


class BackupStateMachine:
    """
    Transition-legality graph for backup states.

    Self-transitions are always legal and are not listed.
    """

    TRANSITIONS: Dict[BackupState, FrozenSet[BackupState]] = {
        BackupState.NONE: frozenset({
            BackupState.PENDING,
            BackupState.FAILED,
        }),
        BackupState.PENDING: frozenset({
            BackupState.SCHEDULED,
            BackupState.FAILED,
        }),
        BackupState.SCHEDULED: frozenset({
            BackupState.CREATE,
            BackupState.DOWNLOAD,
            BackupState.FAILED,
        }),
        BackupState.CREATE: frozenset({
            BackupState.READY,
            BackupState.FAILED,
        }),
        BackupState.DOWNLOAD: frozenset({
            BackupState.DOWNLOADING,
            BackupState.DOWNLOAD_ERROR,
            BackupState.FAILED,
        }),
        BackupState.DOWNLOADING: frozenset({
            BackupState.READY,
            BackupState.DOWNLOAD_ERROR,
            BackupState.FAILED,
        }),
        BackupState.DOWNLOAD_ERROR: frozenset({
            BackupState.PENDING,   # Retry the download from scratch
            BackupState.FAILED,
        }),
        BackupState.READY: frozenset({
            BackupState.UPLOAD,
            BackupState.UNAVAILABLE,
            BackupState.DELETED,
            BackupState.FAILED,
        }),
        BackupState.UPLOAD: frozenset({
            BackupState.UPLOADING,
            BackupState.UPLOAD_ERROR,
            BackupState.FAILED,
        }),
        BackupState.UPLOADING: frozenset({
            BackupState.READY,
            BackupState.UPLOAD_ERROR,
            BackupState.FAILED,
        }),
        BackupState.UPLOAD_ERROR: frozenset({
            BackupState.READY,     # Ready retries the upload
            BackupState.FAILED,
        }),
        BackupState.UNAVAILABLE: frozenset({
            BackupState.READY,
            BackupState.DELETED,
            BackupState.FAILED,
        }),
        BackupState.DELETED: frozenset({
            BackupState.READY,     # Backup reappeared on the deployment
            BackupState.FAILED,
        }),
        BackupState.FAILED: frozenset(),  # Terminal state
    }

    @classmethod
    def can_transition(cls, from_state: BackupState, to_state: BackupState) -> bool:
        """
        Check if state transition is valid.

        Args:
            from_state: Current backup state
            to_state: Proposed backup state

        Returns:
            True if transition is allowed, False otherwise
        """
        if from_state == to_state:
            return True
        return to_state in cls.TRANSITIONS.get(from_state, frozenset())

    @classmethod
    def validate_transition(
        cls,
        from_state: BackupState,
        to_state: BackupState,
        backup_name: Optional[str] = None,
    ) -> None:
        """
        Validate state transition and raise exception if invalid.

        Args:
            from_state: Current backup state
            to_state: Proposed backup state
            backup_name: Optional namespace/name for logging

        Raises:
            TransitionError: If transition is not allowed
        """
        if cls.can_transition(from_state, to_state):
            return

        error_msg = (
            f"Invalid state transition from {from_state.value or 'None'} "
            f"to {to_state.value or 'None'}"
        )
        if backup_name:
            error_msg += f" for backup {backup_name}"

        logger.error(
            "invalid_state_transition",
            backup=backup_name,
            from_state=from_state.value,
            to_state=to_state.value,
            allowed_states=sorted(s.value for s in cls.TRANSITIONS.get(from_state, frozenset())),
        )
        raise TransitionError(
            error_msg,
            details={"from_state": from_state.value, "to_state": to_state.value},
        )
