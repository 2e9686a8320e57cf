"""
Kubernetes resource store for ArangoBackup and ArangoDeployment objects.

Wraps the kubernetes_asyncio CustomObjectsApi and classifies failures:
404 becomes NotFoundError, 409 becomes ConflictError and everything else
becomes KubernetesError.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException

from backup_controller.config.logging import get_logger
from backup_controller.config.settings import Settings, settings as default_settings
from backup_controller.exceptions import ConflictError, KubernetesError, NotFoundError
from backup_controller.models import BackupResource, DeploymentResource

logger = get_logger(__name__)

T = TypeVar('T')


class KubernetesStore:
    """
    Resource store backed by the Kubernetes API.

    Every method is a single API round trip; retries are left to callers.
    """

    def __init__(self, api_client: client.ApiClient, settings: Optional[Settings] = None):
        """
        Initialize store.

        Args:
            api_client: Configured kubernetes_asyncio ApiClient
            settings: Settings providing custom resource coordinates
        """
        self.settings = settings or default_settings
        self.custom_api = client.CustomObjectsApi(api_client)

    @property
    def backup_api_version(self) -> str:
        return f"{self.settings.backup_group}/{self.settings.backup_version}"

    def _backup_coordinates(self, namespace: str) -> Dict[str, str]:
        return {
            "group": self.settings.backup_group,
            "version": self.settings.backup_version,
            "namespace": namespace,
            "plural": self.settings.backup_plural,
        }

    def _deployment_coordinates(self, namespace: str) -> Dict[str, str]:
        return {
            "group": self.settings.deployment_group,
            "version": self.settings.deployment_version,
            "namespace": namespace,
            "plural": self.settings.deployment_plural,
        }

    async def _call(
        self,
        operation: str,
        resource: str,
        name: str,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            return await func()
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(resource, name) from e
            if e.status == 409:
                raise ConflictError(
                    f"Conflict while trying to {operation} {resource} '{name}': {e.reason}",
                    details={"resource": resource, "name": name},
                ) from e
            logger.error(
                "kubernetes_api_call_failed",
                operation=operation,
                resource=resource,
                name=name,
                status=e.status,
                error=e.reason,
            )
            raise KubernetesError(
                f"Failed to {operation} {resource} '{name}': API status {e.status} ({e.reason})",
                details={"status": e.status},
            ) from e
        except (NotFoundError, ConflictError, KubernetesError):
            raise
        except Exception as e:
            logger.error(
                "kubernetes_api_call_failed",
                operation=operation,
                resource=resource,
                name=name,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise KubernetesError(f"Failed to {operation} {resource} '{name}': {e}") from e

    # Backups

    async def list_backups(self, namespace: str) -> List[BackupResource]:
        result = await self._call(
            "list",
            self.settings.backup_kind,
            f"{namespace}/*",
            lambda: self.custom_api.list_namespaced_custom_object(**self._backup_coordinates(namespace)),
        )
        return [BackupResource.model_validate(item) for item in result.get("items", [])]

    async def get_backup(self, namespace: str, name: str) -> BackupResource:
        result = await self._call(
            "get",
            self.settings.backup_kind,
            f"{namespace}/{name}",
            lambda: self.custom_api.get_namespaced_custom_object(
                name=name, **self._backup_coordinates(namespace)
            ),
        )
        return BackupResource.model_validate(result)

    async def create_backup(self, backup: BackupResource) -> BackupResource:
        """Create a backup; status in the body is ignored by the API server."""
        body: Dict[str, Any] = backup.to_dict()
        body["apiVersion"] = self.backup_api_version
        body["kind"] = self.settings.backup_kind
        body.pop("status", None)
        result = await self._call(
            "create",
            self.settings.backup_kind,
            f"{backup.namespace}/{backup.name}",
            lambda: self.custom_api.create_namespaced_custom_object(
                body=body, **self._backup_coordinates(backup.namespace)
            ),
        )
        return BackupResource.model_validate(result)

    async def update_backup(self, backup: BackupResource) -> BackupResource:
        """Replace metadata and spec; fails with ConflictError on a stale resourceVersion."""
        result = await self._call(
            "update",
            self.settings.backup_kind,
            f"{backup.namespace}/{backup.name}",
            lambda: self.custom_api.replace_namespaced_custom_object(
                name=backup.name, body=backup.to_dict(), **self._backup_coordinates(backup.namespace)
            ),
        )
        return BackupResource.model_validate(result)

    async def update_backup_status(self, backup: BackupResource) -> BackupResource:
        """Replace the status subresource; fails with ConflictError on a stale resourceVersion."""
        result = await self._call(
            "update status of",
            self.settings.backup_kind,
            f"{backup.namespace}/{backup.name}",
            lambda: self.custom_api.replace_namespaced_custom_object_status(
                name=backup.name, body=backup.to_dict(), **self._backup_coordinates(backup.namespace)
            ),
        )
        return BackupResource.model_validate(result)

    # Deployments

    async def list_deployments(self, namespace: str) -> List[DeploymentResource]:
        result = await self._call(
            "list",
            self.settings.deployment_kind,
            f"{namespace}/*",
            lambda: self.custom_api.list_namespaced_custom_object(**self._deployment_coordinates(namespace)),
        )
        return [DeploymentResource.model_validate(item) for item in result.get("items", [])]

    async def get_deployment(self, namespace: str, name: str) -> DeploymentResource:
        result = await self._call(
            "get",
            self.settings.deployment_kind,
            f"{namespace}/{name}",
            lambda: self.custom_api.get_namespaced_custom_object(
                name=name, **self._deployment_coordinates(namespace)
            ),
        )
        return DeploymentResource.model_validate(result)


async def create_api_client(settings: Optional[Settings] = None) -> client.ApiClient:
    """
    Build an ApiClient from in-cluster credentials or a kubeconfig file.

    Raises:
        KubernetesError: If no configuration can be loaded
    """
    settings = settings or default_settings
    configuration = client.Configuration()
    try:
        if settings.in_cluster:
            config.load_incluster_config(client_configuration=configuration)
        else:
            await config.load_kube_config(
                config_file=settings.kubeconfig_path,
                client_configuration=configuration,
            )
    except Exception as e:
        raise KubernetesError(f"Failed to load Kubernetes configuration: {e}")

    logger.info(
        "kubernetes_configuration_loaded",
        in_cluster=settings.in_cluster,
        host=configuration.host,
    )
    return client.ApiClient(configuration=configuration)
