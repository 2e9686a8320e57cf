"""
Pydantic model for the ArangoDeployment custom resource.

Only the fields the backup controller needs are modelled; the rest of the
deployment spec is carried as a plain dict.
"""
from typing import Any, Dict, Optional

from pydantic import Field

from backup_controller.models.meta import CamelModel, ObjectMeta, OwnerReference

# Special caSecretName value that switches TLS off for a deployment
TLS_DISABLED = "None"


class DeploymentResource(CamelModel):
    """ArangoDeployment custom resource."""

    api_version: Optional[str] = None
    kind: Optional[str] = None
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: Dict[str, Any] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name or ""

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    @property
    def tls_enabled(self) -> bool:
        """TLS is on unless spec.tls.caSecretName is explicitly "None"."""
        tls = self.spec.get("tls") or {}
        return tls.get("caSecretName") != TLS_DISABLED

    def as_owner(self) -> OwnerReference:
        """Owner reference making this deployment the controller of a backup."""
        return OwnerReference(
            api_version=self.api_version or "",
            kind=self.kind or "",
            name=self.name,
            uid=self.metadata.uid or "",
            controller=True,
        )
