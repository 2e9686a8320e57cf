"""
ArangoDB hot backup client.

Talks to the `/_admin/backup/*` HTTP API of a deployment's coordinators. Only
the calls the controller needs are implemented: list, get, create, delete and
the upload/download job endpoints.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from backup_controller.config.logging import get_logger
from backup_controller.config.settings import Settings, settings as default_settings
from backup_controller.exceptions import BackupNotFoundError, DriverError, DriverUnavailableError
from backup_controller.models import DeploymentResource

logger = get_logger(__name__)

# Per-DB-server job states reported by the upload/download progress API
JOB_COMPLETED = "COMPLETED"
JOB_FAILED_STATES = {"FAILED", "CANCELLED"}


@dataclass(frozen=True)
class BackupMeta:
    """Physical backup as reported by the deployment."""

    id: str
    version: str = ""
    created_at: Optional[datetime] = None
    size_in_bytes: Optional[int] = None
    number_of_db_servers: Optional[int] = None
    potentially_inconsistent: Optional[bool] = None

    @classmethod
    def from_api(cls, backup_id: str, data: Dict[str, Any]) -> "BackupMeta":
        created_at = data.get("datetime")
        return cls(
            id=data.get("id", backup_id),
            version=data.get("version", ""),
            created_at=datetime.fromisoformat(created_at.replace("Z", "+00:00")) if created_at else None,
            size_in_bytes=data.get("sizeInBytes"),
            number_of_db_servers=data.get("nrDBServers"),
            potentially_inconsistent=data.get("potentiallyInconsistent"),
        )


@dataclass(frozen=True)
class JobProgress:
    """Aggregated progress of an upload or download job."""

    done: bool
    failed: bool
    progress: str
    error: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "JobProgress":
        servers = data.get("DBServers") or {}
        total = done = 0
        errors: List[str] = []
        completed = bool(servers)

        for server, report in servers.items():
            status = report.get("Status", "")
            counters = report.get("Progress") or {}
            total += counters.get("Total", 0)
            done += counters.get("Done", 0)
            if status in JOB_FAILED_STATES:
                errors.append(f"{server}: {report.get('ErrorMessage') or status}")
            if status != JOB_COMPLETED:
                completed = False

        percent = int(done * 100 / total) if total else (100 if completed else 0)
        return cls(
            done=completed,
            failed=bool(errors),
            progress=f"{percent}%",
            error="; ".join(errors),
        )


class ArangoBackupClient:
    """Client for the hot backup API of one deployment."""

    def __init__(self, endpoint: str, session: aiohttp.ClientSession, verify_ssl: bool = False):
        """
        Initialize client.

        Args:
            endpoint: Base URL of the deployment (e.g. https://db1.default.svc:8529)
            session: aiohttp session carrying timeout and credentials
            verify_ssl: Verify the deployment certificate (self-signed by default)
        """
        self.endpoint = endpoint.rstrip("/")
        self.session = session
        self.verify_ssl = verify_ssl

    def _unreadable(self, status: int, path: str) -> DriverError:
        # A 5xx without an ArangoDB body usually comes from a proxy in front of
        # a coordinator that is restarting
        error_class = DriverUnavailableError if status >= 500 else DriverError
        return error_class(
            f"ArangoDB returned an unreadable HTTP {status} response for {path}",
            details={"endpoint": self.endpoint, "path": path, "status": status},
        )

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.endpoint}{path}"
        try:
            async with self.session.post(url, json=body, ssl=self.verify_ssl) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise self._unreadable(status, path) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DriverUnavailableError(
                f"ArangoDB at {self.endpoint} is unreachable: {e or type(e).__name__}",
                details={"endpoint": self.endpoint, "path": path},
            ) from e

        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise self._unreadable(status, path)
        if status == 404:
            raise BackupNotFoundError(
                payload.get("errorMessage") or f"backup not found ({path})",
                details={"endpoint": self.endpoint, "path": path},
            )
        if status >= 400 or payload.get("error"):
            raise DriverError(
                payload.get("errorMessage") or f"ArangoDB returned HTTP {status} for {path}",
                details={"endpoint": self.endpoint, "path": path, "status": status},
            )
        return payload.get("result") or {}

    def _field(self, result: Dict[str, Any], key: str, path: str) -> str:
        value = result.get(key)
        if not value:
            raise DriverError(
                f"ArangoDB response for {path} has no {key}",
                details={"endpoint": self.endpoint, "path": path},
            )
        return value

    async def list(self) -> List[BackupMeta]:
        result = await self._post("/_admin/backup/list", {})
        return [BackupMeta.from_api(backup_id, data) for backup_id, data in (result.get("list") or {}).items()]

    async def get(self, backup_id: str) -> BackupMeta:
        """
        Get one backup.

        Raises:
            BackupNotFoundError: If the deployment does not hold the backup
        """
        result = await self._post("/_admin/backup/list", {"id": backup_id})
        backups = result.get("list") or {}
        if backup_id not in backups:
            raise BackupNotFoundError(f"backup {backup_id} not found", details={"id": backup_id})
        return BackupMeta.from_api(backup_id, backups[backup_id])

    async def create(self) -> str:
        """Take a hot backup and return its ID."""
        result = await self._post("/_admin/backup/create", {})
        return self._field(result, "id", "/_admin/backup/create")

    async def delete(self, backup_id: str) -> None:
        await self._post("/_admin/backup/delete", {"id": backup_id})

    async def upload(self, backup_id: str, repository_url: str, config: Optional[Dict[str, Any]] = None) -> str:
        """Start an upload job and return its ID."""
        result = await self._post(
            "/_admin/backup/upload",
            {"id": backup_id, "remoteRepository": repository_url, "config": config or {}},
        )
        return self._field(result, "uploadId", "/_admin/backup/upload")

    async def download(self, backup_id: str, repository_url: str, config: Optional[Dict[str, Any]] = None) -> str:
        """Start a download job and return its ID."""
        result = await self._post(
            "/_admin/backup/download",
            {"id": backup_id, "remoteRepository": repository_url, "config": config or {}},
        )
        return self._field(result, "downloadId", "/_admin/backup/download")

    async def upload_progress(self, job_id: str) -> JobProgress:
        return JobProgress.from_api(await self._post("/_admin/backup/upload", {"uploadId": job_id}))

    async def download_progress(self, job_id: str) -> JobProgress:
        return JobProgress.from_api(await self._post("/_admin/backup/download", {"downloadId": job_id}))


class ArangoClientFactory:
    """
    Builds and caches backup clients per deployment.

    A cached client is replaced when the deployment endpoint changes (for
    example when TLS is switched on or off).
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._clients: Dict[Tuple[str, str, Optional[str]], ArangoBackupClient] = {}

    def endpoint_for(self, deployment: DeploymentResource) -> str:
        scheme = "https" if deployment.tls_enabled else "http"
        return f"{scheme}://{deployment.name}.{deployment.namespace}.svc:{self.settings.arango_port}"

    def _default_credentials(self) -> Optional[aiohttp.BasicAuth]:
        if self.settings.arango_username:
            return aiohttp.BasicAuth(self.settings.arango_username, self.settings.arango_password or "")
        return None

    async def __call__(
        self,
        deployment: DeploymentResource,
        credentials: Optional[aiohttp.BasicAuth] = None,
    ) -> ArangoBackupClient:
        """
        Get a client for a deployment.

        Args:
            deployment: Target deployment
            credentials: Optional credentials overriding the configured ones

        Returns:
            ArangoBackupClient bound to the deployment endpoint
        """
        login = credentials.login if credentials else None
        key = (deployment.namespace, deployment.name, login)
        endpoint = self.endpoint_for(deployment)

        cached = self._clients.get(key)
        if cached is not None:
            if cached.endpoint == endpoint:
                return cached
            await cached.session.close()

        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.arango_client_timeout),
            auth=credentials or self._default_credentials(),
        )
        backup_client = ArangoBackupClient(endpoint, session)
        self._clients[key] = backup_client

        logger.info(
            "arango_client_initialized",
            namespace=deployment.namespace,
            deployment=deployment.name,
            endpoint=endpoint,
        )
        return backup_client

    async def close(self) -> None:
        """Close all cached client sessions."""
        for backup_client in self._clients.values():
            await backup_client.session.close()
        self._clients.clear()
