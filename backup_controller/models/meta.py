"""
Pydantic models for Kubernetes object metadata shared by custom resources.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model mapping snake_case attributes to camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict:
        """Serialize to a Kubernetes API body."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class OwnerReference(CamelModel):
    """Link tying a dependent object's lifecycle to its owner."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None


class ObjectMeta(CamelModel):
    """
    Subset of Kubernetes ObjectMeta.

    Keys not modelled here (creationTimestamp, managedFields, ...) are kept
    so a read-modify-write round trip does not drop them.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: Optional[str] = None
    generate_name: Optional[str] = None
    namespace: Optional[str] = None
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
