"""
In-process work queue runtime.

Feeds ArangoBackup work items to registered handlers:
- a Kubernetes watch enqueues every added/modified/deleted backup
- a periodic resync enqueues all backups (keeps polling states moving)
- N workers dequeue items and call the first handler that accepts them
- failed items are re-queued after a delay
"""
import asyncio
from typing import List, Optional, Set

from kubernetes_asyncio import watch

from backup_controller.config.logging import get_logger
from backup_controller.config.settings import Settings, settings as default_settings
from backup_controller.models import OperationItem
from backup_controller.services import metrics

logger = get_logger(__name__)


class Operator:
    """
    Work queue runtime for backup handlers.

    An item waiting in the queue is never queued twice; an item being handled
    can be queued again (handlers use this to request another pass).
    """

    def __init__(self, store, settings: Optional[Settings] = None):
        """
        Initialize operator.

        Args:
            store: Resource store; its custom_api is used for the watch
            settings: Controller settings
        """
        self.store = store
        self.settings = settings or default_settings
        self.handlers: List = []
        self.running = False
        self._queue: Optional[asyncio.Queue] = None
        self._pending: Set[OperationItem] = set()
        self._tasks: List[asyncio.Task] = []

    @property
    def namespace(self) -> str:
        return self.settings.namespace

    def register_handler(self, handler) -> None:
        self.handlers.append(handler)
        logger.info("handler_registered", handler=handler.name())

    def item_for(self, name: str, namespace: Optional[str] = None) -> OperationItem:
        return OperationItem(
            group=self.settings.backup_group,
            version=self.settings.backup_version,
            kind=self.settings.backup_kind,
            namespace=namespace or self.namespace,
            name=name,
        )

    def enqueue_item(self, item: OperationItem) -> None:
        """Request (re-)delivery of an item."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if item in self._pending:
            return
        self._pending.add(item)
        self._queue.put_nowait(item)
        metrics.queue_depth.set(self._queue.qsize())

    def _enqueue_later(self, item: OperationItem) -> None:
        asyncio.get_running_loop().call_later(self.settings.requeue_delay, self.enqueue_item, item)

    async def process_next(self) -> OperationItem:
        """Dequeue one item and hand it to the first handler accepting it."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        item = await self._queue.get()
        self._pending.discard(item)
        metrics.queue_depth.set(self._queue.qsize())

        try:
            for handler in self.handlers:
                if handler.can_be_handled(item):
                    await handler.handle(item)
                    break
            else:
                logger.warning("no_handler_for_item", item=str(item))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "item_handling_failed",
                item=str(item),
                error_type=type(e).__name__,
                error=str(e),
            )
            if self.running:
                self._enqueue_later(item)
        finally:
            self._queue.task_done()
        return item

    async def _worker(self, worker_id: int) -> None:
        logger.info("operator_worker_started", worker_id=worker_id)
        while self.running:
            await self.process_next()

    async def _watch(self) -> None:
        while self.running:
            watcher = watch.Watch()
            try:
                async with watcher.stream(
                    self.store.custom_api.list_namespaced_custom_object,
                    group=self.settings.backup_group,
                    version=self.settings.backup_version,
                    namespace=self.namespace,
                    plural=self.settings.backup_plural,
                    timeout_seconds=300,
                ) as stream:
                    async for event in stream:
                        if event["type"] == "ERROR":
                            # Usually an expired resourceVersion; start a fresh watch
                            logger.warning("backup_watch_error", error=str(event["object"]))
                            break
                        metadata = event["object"].get("metadata", {})
                        self.enqueue_item(self.item_for(metadata["name"], metadata.get("namespace")))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("backup_watch_failed", error=str(e))
                await asyncio.sleep(self.settings.requeue_delay)

    async def resync(self) -> None:
        """Enqueue every backup in the namespace."""
        for backup in await self.store.list_backups(self.namespace):
            self.enqueue_item(self.item_for(backup.name, backup.namespace))

    async def _resync_loop(self) -> None:
        while self.running:
            try:
                await self.resync()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("backup_resync_failed", error=str(e))
            await asyncio.sleep(self.settings.resync_interval)

    async def start(self) -> None:
        """Start watch, resync and worker tasks; returns once they are scheduled."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        self.running = True
        self._tasks = [
            asyncio.create_task(self._watch()),
            asyncio.create_task(self._resync_loop()),
        ]
        self._tasks.extend(
            asyncio.create_task(self._worker(worker_id))
            for worker_id in range(1, self.settings.operator_workers + 1)
        )
        logger.info(
            "operator_started",
            namespace=self.namespace,
            workers=self.settings.operator_workers,
        )

    async def stop(self) -> None:
        """Cancel all tasks and wait for them to finish."""
        logger.info("stopping_operator")
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("operator_stopped")
