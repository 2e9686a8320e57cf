"""
Deployment Lock Registry

This module serializes every read-modify-write sequence touching one
deployment's backups, across the event handler and the periodic refresher.

Features:
- One lock per (namespace, deployment) pair
- Locks created lazily on first use
- Registry guard held only while looking up or creating a lock

Usage:
    >>> from backup_controller.core.lock_manager import DeploymentLockRegistry
    >>>
    >>> locks = DeploymentLockRegistry()
    >>>
    >>> async with locks.get("default", "db1"):
    ...     # Read, decide and persist backups of deployment db1
    ...     await do_something()
"""

import asyncio
import threading
from typing import Dict, Tuple

from backup_controller.config.logging import get_logger
from backup_controller.services import metrics

logger = get_logger(__name__)


class DeploymentLockRegistry:
    """
    Registry of per-deployment exclusive locks.

    Locks are never evicted; a controller instance manages a small, bounded
    number of deployments.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def get(self, namespace: str, deployment: str) -> asyncio.Lock:
        """
        Get the unique lock for a deployment, creating it if absent.

        The registry guard is released before the lock is returned, so it is
        never held across the caller's critical section.

        Args:
            namespace: Deployment namespace
            deployment: Deployment name

        Returns:
            The asyncio.Lock shared by every caller using the same pair

        Example:
            >>> lock = locks.get("default", "db1")
            >>> lock is locks.get("default", "db1")
            True
        """
        key = (namespace, deployment)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
                metrics.deployment_locks.set(len(self._locks))
                logger.debug(
                    "deployment_lock_created",
                    namespace=namespace,
                    deployment=deployment,
                )
        return lock

    def size(self) -> int:
        """Number of locks created so far."""
        with self._guard:
            return len(self._locks)
