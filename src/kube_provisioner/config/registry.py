"""Built-in Kubernetes resource types."""

from __future__ import annotations

from kube_provisioner.engine.manifest_handler import (
    CUSTOM_RESOURCE_TYPE,
    DEPLOYMENT_TYPE,
    INGRESS_TYPE,
    NAMESPACE_TYPE,
    SERVICE_TYPE,
    CustomResourceHandler,
    DeploymentHandler,
    IngressHandler,
    NamespaceHandler,
    ServiceHandler,
)
from kube_provisioner.engine.registry import ResourceTypeRegistry

BUILTIN_HANDLERS = {
    NAMESPACE_TYPE: NamespaceHandler,
    DEPLOYMENT_TYPE: DeploymentHandler,
    SERVICE_TYPE: ServiceHandler,
    INGRESS_TYPE: IngressHandler,
    CUSTOM_RESOURCE_TYPE: CustomResourceHandler,
}


def default_registry() -> ResourceTypeRegistry:
    """Return a new registry with one fresh handler per built-in type."""
    return ResourceTypeRegistry((name, cls()) for name, cls in BUILTIN_HANDLERS.items())
