"""
Kubernetes event recorder.

Posts core/v1 Events against backups in background tasks. Recording is
fire-and-forget: callers never wait for the API call and failures are only
logged.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Set

from kubernetes_asyncio import client

from backup_controller.config.logging import get_logger
from backup_controller.config.settings import settings
from backup_controller.models import BackupResource

logger = get_logger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


class EventRecorder:
    """Records Normal and Warning events for backup objects."""

    def __init__(self, api_client: client.ApiClient, component: Optional[str] = None):
        self.core_api = client.CoreV1Api(api_client)
        self.component = component or settings.component_name
        self._tasks: Set[asyncio.Task] = set()

    def normal(self, obj: BackupResource, reason: str, message_fmt: str, *args: Any) -> None:
        self._record(obj, EVENT_NORMAL, reason, message_fmt % args if args else message_fmt)

    def warning(self, obj: BackupResource, reason: str, message_fmt: str, *args: Any) -> None:
        self._record(obj, EVENT_WARNING, reason, message_fmt % args if args else message_fmt)

    def _record(self, obj: BackupResource, event_type: str, reason: str, message: str) -> None:
        task = asyncio.get_running_loop().create_task(self._post(obj, event_type, reason, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, obj: BackupResource, event_type: str, reason: str, message: str) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        body = {
            "metadata": {
                "generateName": f"{obj.name}.",
                "namespace": obj.namespace,
            },
            "involvedObject": {
                "apiVersion": obj.api_version,
                "kind": obj.kind,
                "name": obj.name,
                "namespace": obj.namespace,
                "uid": obj.metadata.uid,
                "resourceVersion": obj.metadata.resource_version,
            },
            "reason": reason,
            "message": message,
            "type": event_type,
            "source": {"component": self.component},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
        try:
            await self.core_api.create_namespaced_event(namespace=obj.namespace, body=body)
        except Exception as e:
            logger.warning(
                "event_record_failed",
                namespace=obj.namespace,
                backup=obj.name,
                reason=reason,
                error=str(e),
            )

    async def flush(self) -> None:
        """Wait for events still being posted (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
