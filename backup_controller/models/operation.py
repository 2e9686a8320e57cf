"""
Work queue item identifying one custom resource to reconcile.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class OperationItem:
    """Item delivered by the work queue runtime."""

    group: str
    version: str
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"
