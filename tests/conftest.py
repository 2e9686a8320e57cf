"""
Pytest configuration and fixtures.

The controller talks to Kubernetes and ArangoDB only through a store, a
client factory and an event recorder; the fakes below stand in for all
three.
"""
import itertools
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from backup_controller.config.settings import Settings
from backup_controller.core.backup_handler import BackupHandler
from backup_controller.core.lock_manager import DeploymentLockRegistry
from backup_controller.core.status_updater import StatusUpdater
from backup_controller.exceptions import (
    BackupNotFoundError,
    ConflictError,
    DriverError,
    DriverUnavailableError,
    NotFoundError,
)
from backup_controller.models import (
    FINALIZER,
    BackupResource,
    BackupSpec,
    BackupState,
    BackupStatus,
    DeploymentResource,
    ObjectMeta,
    OperationItem,
)
from backup_controller.models.backup import BackupDetails, DeploymentRef, DownloadSpec, UploadSpec
from backup_controller.services.arango_client import BackupMeta, JobProgress

NAMESPACE = "default"


class FakeStore:
    """In-memory resource store with resourceVersion checks and fault injection."""

    def __init__(self):
        self.backups: Dict[Tuple[str, str], BackupResource] = {}
        self.deployments: Dict[Tuple[str, str], DeploymentResource] = {}
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

        self.status_conflicts = 0
        self.update_conflicts = 0
        self.fail_list_deployments: Optional[Exception] = None

        self.get_calls = 0
        self.status_write_attempts = 0
        self.status_writes: List[BackupStatus] = []
        self.updates: List[BackupResource] = []
        self.created: List[BackupResource] = []

    def _next_version(self) -> str:
        return str(next(self._versions))

    def put_backup(self, backup: BackupResource) -> BackupResource:
        backup = backup.model_copy(deep=True)
        backup.metadata.namespace = backup.metadata.namespace or NAMESPACE
        backup.metadata.uid = backup.metadata.uid or f"backup-uid-{next(self._uids)}"
        backup.metadata.resource_version = self._next_version()
        self.backups[(backup.namespace, backup.name)] = backup
        return backup.model_copy(deep=True)

    def put_deployment(self, deployment: DeploymentResource) -> DeploymentResource:
        self.deployments[(deployment.namespace, deployment.name)] = deployment
        return deployment

    def stored(self, name: str, namespace: str = NAMESPACE) -> BackupResource:
        return self.backups[(namespace, name)]

    def _current(self, namespace: str, name: str) -> BackupResource:
        try:
            return self.backups[(namespace, name)]
        except KeyError:
            raise NotFoundError("ArangoBackup", f"{namespace}/{name}")

    def _check_version(self, current: BackupResource, backup: BackupResource) -> None:
        if current.metadata.resource_version != backup.metadata.resource_version:
            raise ConflictError(f"stale resourceVersion for {backup.name}")

    async def list_backups(self, namespace: str) -> List[BackupResource]:
        return [b.model_copy(deep=True) for (ns, _), b in self.backups.items() if ns == namespace]

    async def get_backup(self, namespace: str, name: str) -> BackupResource:
        self.get_calls += 1
        return self._current(namespace, name).model_copy(deep=True)

    async def create_backup(self, backup: BackupResource) -> BackupResource:
        backup = backup.model_copy(deep=True)
        backup.status = BackupStatus()
        created = self.put_backup(backup)
        self.created.append(created)
        return created

    async def update_backup(self, backup: BackupResource) -> BackupResource:
        current = self._current(backup.namespace, backup.name)
        if self.update_conflicts:
            self.update_conflicts -= 1
            raise ConflictError(f"conflict updating {backup.name}")
        self._check_version(current, backup)

        updated = backup.model_copy(deep=True)
        updated.status = current.status.model_copy(deep=True)
        updated.metadata.resource_version = self._next_version()
        self.backups[(backup.namespace, backup.name)] = updated
        self.updates.append(updated.model_copy(deep=True))
        return updated.model_copy(deep=True)

    async def update_backup_status(self, backup: BackupResource) -> BackupResource:
        self.status_write_attempts += 1
        current = self._current(backup.namespace, backup.name)
        if self.status_conflicts:
            self.status_conflicts -= 1
            raise ConflictError(f"conflict {self.status_write_attempts}")
        self._check_version(current, backup)

        updated = current.model_copy(deep=True)
        updated.status = backup.status.model_copy(deep=True)
        updated.metadata.resource_version = self._next_version()
        self.backups[(backup.namespace, backup.name)] = updated
        self.status_writes.append(updated.status.model_copy(deep=True))
        return updated.model_copy(deep=True)

    async def list_deployments(self, namespace: str) -> List[DeploymentResource]:
        if self.fail_list_deployments is not None:
            raise self.fail_list_deployments
        return [d for (ns, _), d in self.deployments.items() if ns == namespace]

    async def get_deployment(self, namespace: str, name: str) -> DeploymentResource:
        try:
            return self.deployments[(namespace, name)]
        except KeyError:
            raise NotFoundError("ArangoDeployment", f"{namespace}/{name}")


class FakeArangoClient:
    """In-memory hot backup API of one deployment."""

    def __init__(self):
        self.backups: Dict[str, BackupMeta] = {}
        self.jobs: Dict[str, JobProgress] = {}
        self.unreachable = False
        self.error: Optional[str] = None
        self.get_failures = 0
        self.deleted: List[str] = []
        self.created: List[str] = []
        self.uploads: List[Tuple[str, str]] = []
        self.downloads: List[Tuple[str, str]] = []
        self._ids = itertools.count(1)

    def add_backup(self, backup_id: str, **fields) -> BackupMeta:
        meta = BackupMeta(id=backup_id, version="3.11.0", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc), **fields)
        self.backups[backup_id] = meta
        return meta

    def _check(self) -> None:
        if self.unreachable:
            raise DriverUnavailableError("ArangoDB is unreachable")
        if self.error:
            raise DriverError(self.error)

    async def list(self) -> List[BackupMeta]:
        self._check()
        return list(self.backups.values())

    async def get(self, backup_id: str) -> BackupMeta:
        self._check()
        if self.get_failures:
            self.get_failures -= 1
            raise DriverUnavailableError("ArangoDB is unreachable")
        if backup_id not in self.backups:
            raise BackupNotFoundError(f"backup {backup_id} not found")
        return self.backups[backup_id]

    async def create(self) -> str:
        self._check()
        backup_id = f"2024-01-01T00.00.00_{next(self._ids)}"
        self.add_backup(backup_id, number_of_db_servers=3, size_in_bytes=1024)
        self.created.append(backup_id)
        return backup_id

    async def delete(self, backup_id: str) -> None:
        self._check()
        if backup_id not in self.backups:
            raise BackupNotFoundError(f"backup {backup_id} not found")
        del self.backups[backup_id]
        self.deleted.append(backup_id)

    async def upload(self, backup_id: str, repository_url: str) -> str:
        self._check()
        self.uploads.append((backup_id, repository_url))
        return f"upload-{len(self.uploads)}"

    async def download(self, backup_id: str, repository_url: str) -> str:
        self._check()
        self.downloads.append((backup_id, repository_url))
        return f"download-{len(self.downloads)}"

    async def upload_progress(self, job_id: str) -> JobProgress:
        self._check()
        return self.jobs[job_id]

    async def download_progress(self, job_id: str) -> JobProgress:
        self._check()
        return self.jobs[job_id]


class FakeClientFactory:
    """Hands out one FakeArangoClient per deployment."""

    def __init__(self):
        self.clients: Dict[Tuple[str, str], FakeArangoClient] = {}
        self.failure: Optional[Exception] = None

    def client(self, deployment: str, namespace: str = NAMESPACE) -> FakeArangoClient:
        return self.clients.setdefault((namespace, deployment), FakeArangoClient())

    async def __call__(self, deployment: DeploymentResource, credentials=None) -> FakeArangoClient:
        if self.failure is not None:
            raise self.failure
        return self.client(deployment.name, deployment.namespace)

    async def close(self) -> None:
        self.clients.clear()


class FakeRecorder:
    """Collects events instead of posting them."""

    def __init__(self):
        self.events: List[Tuple[str, str, str, str]] = []

    def normal(self, obj, reason, message_fmt, *args):
        self.events.append(("Normal", obj.name, reason, message_fmt % args if args else message_fmt))

    def warning(self, obj, reason, message_fmt, *args):
        self.events.append(("Warning", obj.name, reason, message_fmt % args if args else message_fmt))

    async def flush(self):
        pass


class FakeOperator:
    """Records re-queue requests."""

    def __init__(self):
        self.enqueued: List[OperationItem] = []
        self.running = True

    def enqueue_item(self, item: OperationItem) -> None:
        self.enqueued.append(item)


def make_deployment(name: str = "db1", namespace: str = NAMESPACE, tls: bool = True) -> DeploymentResource:
    spec = {} if tls else {"tls": {"caSecretName": "None"}}
    return DeploymentResource(
        api_version="database.arangodb.com/v1alpha",
        kind="ArangoDeployment",
        metadata=ObjectMeta(name=name, namespace=namespace, uid=f"{name}-uid"),
        spec=spec,
    )


def make_backup(
    name: str = "backup1",
    deployment: str = "db1",
    state: BackupState = BackupState.NONE,
    backup_id: Optional[str] = None,
    finalizer: bool = True,
    deleting: bool = False,
    download: Optional[str] = None,
    upload: bool = False,
    namespace: str = NAMESPACE,
    **status_fields,
) -> BackupResource:
    status = BackupStatus(state=state, **status_fields)
    if backup_id is not None:
        status.backup = BackupDetails(id=backup_id, version="3.11.0")
    return BackupResource(
        api_version="backup.arangodb.com/v1alpha",
        kind="ArangoBackup",
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            finalizers=[FINALIZER] if finalizer else [],
            deletion_timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) if deleting else None,
        ),
        spec=BackupSpec(
            deployment=DeploymentRef(name=deployment),
            download=DownloadSpec(id=download, repository_url="s3://bucket/backups") if download else None,
            upload=UploadSpec(repository_url="s3://bucket/backups") if upload else None,
        ),
        status=status,
    )


def item_for(name: str = "backup1", namespace: str = NAMESPACE) -> OperationItem:
    return OperationItem(
        group="backup.arangodb.com",
        version="v1alpha",
        kind="ArangoBackup",
        namespace=namespace,
        name=name,
    )


@pytest.fixture
def test_settings() -> Settings:
    """Settings with zero delays so retries do not slow tests down."""
    return Settings(
        environment="testing",
        namespace=NAMESPACE,
        status_update_delay=0,
        requeue_delay=0,
        error_retry_delay=30,
        refresh_interval=0.01,
        operator_workers=2,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def operator() -> FakeOperator:
    return FakeOperator()


@pytest.fixture
def locks() -> DeploymentLockRegistry:
    return DeploymentLockRegistry()


@pytest.fixture
def status_updater(store) -> StatusUpdater:
    return StatusUpdater(store, attempts=25, delay=0)


@pytest.fixture
def make_handler(store, status_updater, locks, recorder, client_factory, operator, test_settings):
    """Build a BackupHandler wired to the fakes, optionally with custom state handlers."""

    def _make(state_handlers=None) -> BackupHandler:
        return BackupHandler(
            store=store,
            status_updater=status_updater,
            locks=locks,
            event_recorder=recorder,
            client_factory=client_factory,
            operator=operator,
            state_handlers=state_handlers,
            settings=test_settings,
        )

    return _make


@pytest.fixture
def handler(make_handler) -> BackupHandler:
    return make_handler()


@pytest_asyncio.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the health and metrics endpoints (lifespan not run)."""
    from backup_controller.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
