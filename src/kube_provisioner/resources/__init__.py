"""Declared resource definitions."""

from kube_provisioner.resources.base import ResourceSpec
from kube_provisioner.resources.references import (
    OutputRef,
    iter_refs,
    referenced_names,
    resolve_refs,
)

__all__ = ["OutputRef", "ResourceSpec", "iter_refs", "referenced_names", "resolve_refs"]
