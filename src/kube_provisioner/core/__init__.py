"""Core infrastructure components for kube-provisioner."""

from kube_provisioner.core.provider import KubeProvider
from kube_provisioner.core.state import ResourceState, ResourceStatus, State

__all__ = ["KubeProvider", "ResourceState", "ResourceStatus", "State"]
