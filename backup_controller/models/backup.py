"""
Pydantic models for the ArangoBackup custom resource.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional, Tuple

from pydantic import Field

from backup_controller.exceptions import ValidationError
from backup_controller.models.meta import CamelModel, ObjectMeta

# Reserved token blocking physical deletion until cleanup has run
FINALIZER = "backup.database.arangodb.com/finalizer"


class BackupState(str, Enum):
    """ArangoBackup lifecycle states."""

    NONE = ""
    PENDING = "Pending"
    SCHEDULED = "Scheduled"
    CREATE = "Create"
    DOWNLOAD = "Download"
    DOWNLOADING = "Downloading"
    DOWNLOAD_ERROR = "DownloadError"
    UPLOAD = "Upload"
    UPLOADING = "Uploading"
    UPLOAD_ERROR = "UploadError"
    READY = "Ready"
    UNAVAILABLE = "Unavailable"
    DELETED = "Deleted"
    FAILED = "Failed"


def now() -> datetime:
    """Current time, truncated to seconds like Kubernetes timestamps."""
    return datetime.now(timezone.utc).replace(microsecond=0)


class DeploymentRef(CamelModel):
    name: str = ""


class DownloadSpec(CamelModel):
    """Request to fetch an existing backup from a remote repository."""

    repository_url: str = Field(default="", alias="repositoryURL")
    credentials_secret_name: Optional[str] = None
    id: str = ""


class UploadSpec(CamelModel):
    """Request to push the backup to a remote repository once Ready."""

    repository_url: str = Field(default="", alias="repositoryURL")
    credentials_secret_name: Optional[str] = None


class BackupSpec(CamelModel):
    deployment: DeploymentRef = Field(default_factory=DeploymentRef)
    download: Optional[DownloadSpec] = None
    upload: Optional[UploadSpec] = None


class BackupProgress(CamelModel):
    """Progress of a running upload or download job."""

    job_id: str = Field(alias="jobID")
    progress: str = "0%"


class BackupDetails(CamelModel):
    """Descriptor of the physical backup held by the deployment."""

    id: str
    version: str = ""
    created_at: Optional[datetime] = None
    imported: Optional[bool] = None
    downloaded: Optional[bool] = None
    uploaded: Optional[bool] = None
    size_in_bytes: Optional[int] = None
    number_of_db_servers: Optional[int] = Field(default=None, alias="numberOfDBServers")
    potentially_inconsistent: Optional[bool] = None


class BackupStatus(CamelModel):
    """Observed state of an ArangoBackup."""

    state: BackupState = BackupState.NONE
    time: Optional[datetime] = None
    message: str = ""
    progress: Optional[BackupProgress] = None
    backup: Optional[BackupDetails] = None
    available: bool = False

    # Fields that define whether two statuses differ; time is bookkeeping
    COMPARED_FIELDS: ClassVar[Tuple[str, ...]] = ("state", "message", "progress", "backup", "available")

    def is_equivalent(self, other: "BackupStatus") -> bool:
        """Compare the status fields that matter for reconciliation."""
        return all(getattr(self, f) == getattr(other, f) for f in self.COMPARED_FIELDS)

    @property
    def backup_id(self) -> Optional[str]:
        return self.backup.id if self.backup else None

    def with_state(self, state: BackupState, message: str = "", **changes) -> "BackupStatus":
        """
        Copy of this status moved to another state.

        Args:
            state: New lifecycle state
            message: Human readable message for the new state
            **changes: Other status fields to replace

        Returns:
            New BackupStatus; progress is dropped unless passed explicitly
        """
        changes.setdefault("progress", None)
        return self.model_copy(deep=True, update={"state": state, "message": message, **changes})


class BackupResource(CamelModel):
    """ArangoBackup custom resource."""

    api_version: Optional[str] = None
    kind: Optional[str] = None
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: BackupSpec = Field(default_factory=BackupSpec)
    status: BackupStatus = Field(default_factory=BackupStatus)

    @property
    def name(self) -> str:
        return self.metadata.name or ""

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    @property
    def deployment_name(self) -> str:
        return self.spec.deployment.name

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    def add_finalizer(self) -> None:
        if not self.has_finalizer():
            self.metadata.finalizers.append(FINALIZER)

    def remove_finalizer(self) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != FINALIZER]

    def validate_spec(self) -> None:
        """
        Validate the backup spec.

        Raises:
            ValidationError: If a required field is missing
        """
        if not self.spec.deployment.name:
            raise ValidationError("deployment ref is not specified")

        if self.spec.download is not None:
            if not self.spec.download.id:
                raise ValidationError("download.id is required")
            if not self.spec.download.repository_url:
                raise ValidationError("download.repositoryURL is required")

        if self.spec.upload is not None and not self.spec.upload.repository_url:
            raise ValidationError("upload.repositoryURL is required")
