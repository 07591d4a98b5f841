"""Kubernetes manifest handlers built on the dynamic client."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar

from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from tenacity import Retrying, retry_if_result, stop_after_delay, wait_exponential

from kube_provisioner.engine.errors import PermanentProviderError, TransientProviderError
from kube_provisioner.engine.handlers import AppliedResource, ResourceHandler

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from kube_provisioner.core.state import ResourceState
    from kube_provisioner.engine.handlers import EngineContext
    from kube_provisioner.resources.base import ResourceSpec

NAMESPACE_TYPE = "kubernetes:core/v1:Namespace"
DEPLOYMENT_TYPE = "kubernetes:apps/v1:Deployment"
SERVICE_TYPE = "kubernetes:core/v1:Service"
INGRESS_TYPE = "kubernetes:networking.k8s.io/v1:Ingress"
CUSTOM_RESOURCE_TYPE = "kubernetes:apiextensions.k8s.io:CustomResource"

# Conflicts, throttling and server-side failures usually clear on retry.
_TRANSIENT_STATUSES = frozenset({409, 429, 500, 502, 503, 504})

_OUTPUT_METADATA = ("name", "namespace", "uid", "labels", "annotations")


def format_physical_id(api_version: str, kind: str, name: str, namespace: str | None) -> str:
    """Format a physical id, e.g. ``apps/v1:Deployment:default/nginx``."""
    if namespace:
        return f"{api_version}:{kind}:{namespace}/{name}"
    return f"{api_version}:{kind}:{name}"


def parse_physical_id(pid: str) -> tuple[str, str, str, str | None]:
    """Split a physical id into ``(api_version, kind, name, namespace)``."""
    try:
        api_version, kind, rest = pid.split(":", 2)
    except ValueError as e:
        raise PermanentProviderError(f"Malformed physical id: {pid!r}") from e
    namespace, _, name = rest.rpartition("/")
    return api_version, kind, name, namespace or None


def _translate(exc: Exception, action: str, target: str) -> Exception:
    if isinstance(exc, ApiException):
        reason = exc.reason or "API error"
        msg = f"{action} {target} failed ({exc.status} {reason})"
        if exc.status in _TRANSIENT_STATUSES:
            return TransientProviderError(msg)
        return PermanentProviderError(msg)
    if isinstance(exc, ResourceNotFoundError):
        # The kind may belong to a CRD that is still being registered.
        return TransientProviderError(f"{action} {target} failed: {exc}")
    return exc


class ManifestHandler(ResourceHandler):
    """Applies a single Kubernetes object with server-side apply.

    Inputs are the object's manifest without ``apiVersion``/``kind``, which
    come from the resource type. Namespaced objects without an explicit
    ``metadata.namespace`` land in the provider's default namespace.
    """

    api_version: ClassVar[str] = ""
    kind: ClassVar[str] = ""
    namespaced: ClassVar[bool] = True

    replace_on: ClassVar[tuple[str, ...]] = (
        "apiVersion",
        "kind",
        "metadata.name",
        "metadata.namespace",
    )
    # Same-name objects cannot coexist.
    delete_before_replace: ClassVar[bool] = True

    # Deletion is asynchronous (finalizers); wait this long for the object to go.
    deletion_timeout: float = 120.0
    deletion_poll: float = 1.0

    # ------------------------------------------------------------------
    # Manifest helpers
    # ------------------------------------------------------------------

    def _type_of(self, inputs: Mapping[str, Any]) -> tuple[str, str]:
        return self.api_version, self.kind

    def _is_namespaced(self, ctx: EngineContext, api: Any) -> bool:
        return self.namespaced

    def manifest(self, desired: ResourceSpec) -> dict[str, Any]:
        api_version, kind = self._type_of(desired.inputs)
        body = {k: v for k, v in desired.inputs.items() if k not in ("apiVersion", "kind")}
        return {"apiVersion": api_version, "kind": kind, **body}

    @staticmethod
    def _metadata(inputs: Mapping[str, Any]) -> dict[str, Any]:
        meta = inputs.get("metadata")
        return meta if isinstance(meta, dict) else {}

    def _resource_api(self, ctx: EngineContext, api_version: str, kind: str) -> Any:
        return ctx.provider.client.resources.get(api_version=api_version, kind=kind)

    def _outputs(self, obj: Any) -> dict[str, Any]:
        data = obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)
        meta = data.get("metadata") or {}
        outputs: dict[str, Any] = {
            "apiVersion": data.get("apiVersion"),
            "kind": data.get("kind"),
            "metadata": {k: meta[k] for k in _OUTPUT_METADATA if k in meta},
        }
        for section in ("spec", "status"):
            if data.get(section) is not None:
                outputs[section] = data[section]
        return outputs

    # ------------------------------------------------------------------
    # ResourceHandler
    # ------------------------------------------------------------------

    def validate(self, desired: ResourceSpec) -> list[str]:
        errors: list[str] = []
        meta = desired.inputs.get("metadata")
        if not isinstance(meta, dict) or not meta.get("name"):
            errors.append(f"Resource '{desired.name}': metadata.name is required")
        for key in ("apiVersion", "kind"):
            given = desired.inputs.get(key)
            expected = getattr(self, "api_version" if key == "apiVersion" else "kind")
            if given is not None and expected and given != expected:
                errors.append(
                    f"Resource '{desired.name}': {key} {given!r} does not match "
                    f"resource type ({expected!r})"
                )
        return errors

    def prerequisites(
        self, desired: ResourceSpec, declared: Mapping[str, ResourceSpec]
    ) -> list[str]:
        """Declared Namespace resources named by this object's ``metadata.namespace``."""
        namespace = self._metadata(desired.inputs).get("namespace")
        if not isinstance(namespace, str) or "${" in namespace:
            return []
        return sorted(
            name
            for name, spec in declared.items()
            if spec.resource_type == NAMESPACE_TYPE
            and self._metadata(spec.inputs).get("name") == namespace
        )

    def apply(
        self, ctx: EngineContext, desired: ResourceSpec, prior: ResourceState | None
    ) -> AppliedResource:
        body = self.manifest(desired)
        api_version, kind = body["apiVersion"], body["kind"]
        meta = self._metadata(body)
        name = meta.get("name")
        target = f"{kind} {name}"

        try:
            api = self._resource_api(ctx, api_version, kind)
            namespace = None
            if self._is_namespaced(ctx, api):
                namespace = meta.get("namespace") or ctx.provider.namespace
                body["metadata"] = {**meta, "namespace": namespace}
            obj = ctx.provider.client.server_side_apply(
                api,
                body=body,
                name=name,
                namespace=namespace,
                field_manager=ctx.provider.field_manager,
                force_conflicts=True,
            )
        except (ApiException, ResourceNotFoundError) as e:
            raise _translate(e, "Apply", target) from e

        pid = format_physical_id(api_version, kind, name, namespace)
        logger.info("%s %s", "Updated" if prior is not None else "Created", pid)
        return AppliedResource(physical_id=pid, outputs=self._outputs(obj))

    def delete(self, ctx: EngineContext, physical_id: str) -> None:
        api_version, kind, name, namespace = parse_physical_id(physical_id)
        try:
            api = self._resource_api(ctx, api_version, kind)
            ctx.provider.client.delete(api, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                logger.info("%s already absent", physical_id)
                return
            raise _translate(e, "Delete", physical_id) from e
        except ResourceNotFoundError as e:
            raise _translate(e, "Delete", physical_id) from e

        self._wait_until_gone(ctx, api, physical_id)
        logger.info("Deleted %s", physical_id)

    def _wait_until_gone(self, ctx: EngineContext, api: Any, physical_id: str) -> None:
        """Poll until the object 404s; a timeout is transient so the delete is retried."""
        _, _, name, namespace = parse_physical_id(physical_id)

        def _present() -> bool:
            try:
                ctx.provider.client.get(api, name=name, namespace=namespace)
            except ApiException as e:
                if e.status == 404:
                    return False
                raise _translate(e, "Delete", physical_id) from e
            return True

        waiting = Retrying(
            stop=stop_after_delay(self.deletion_timeout),
            wait=wait_exponential(multiplier=self.deletion_poll, max=10),
            retry=retry_if_result(bool),
            retry_error_callback=lambda _state: True,
        )
        if waiting(_present):
            raise TransientProviderError(
                f"Delete {physical_id}: object still terminating after "
                f"{self.deletion_timeout:g}s"
            )


class NamespaceHandler(ManifestHandler):
    api_version = "v1"
    kind = "Namespace"
    namespaced = False
    replace_on = ("apiVersion", "kind", "metadata.name")


class DeploymentHandler(ManifestHandler):
    api_version = "apps/v1"
    kind = "Deployment"
    replace_on = (*ManifestHandler.replace_on, "spec.selector")

    def validate(self, desired: ResourceSpec) -> list[str]:
        errors = super().validate(desired)
        spec = desired.inputs.get("spec")
        if not isinstance(spec, dict) or not spec.get("selector"):
            errors.append(f"Resource '{desired.name}': spec.selector is required")
        return errors


class ServiceHandler(ManifestHandler):
    api_version = "v1"
    kind = "Service"
    replace_on = (*ManifestHandler.replace_on, "spec.clusterIP")


class IngressHandler(ManifestHandler):
    api_version = "networking.k8s.io/v1"
    kind = "Ingress"


class CustomResourceHandler(ManifestHandler):
    """Any object by ``apiVersion``/``kind`` given in the inputs.

    Whether the kind is namespaced is looked up from API discovery, e.g.
    cert-manager's ``ClusterIssuer`` is cluster-scoped while ``Certificate``
    is namespaced.
    """

    def _type_of(self, inputs: Mapping[str, Any]) -> tuple[str, str]:
        return inputs["apiVersion"], inputs["kind"]

    def _is_namespaced(self, ctx: EngineContext, api: Any) -> bool:
        return bool(api.namespaced)

    def validate(self, desired: ResourceSpec) -> list[str]:
        errors = super().validate(desired)
        for key in ("apiVersion", "kind"):
            value = desired.inputs.get(key)
            if not isinstance(value, str) or not value:
                errors.append(f"Resource '{desired.name}': {key} is required")
        return errors
