from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import API_GROUP, API_VERSION, BACKUP_PLURAL, CLUSTER_LABEL, CLUSTER_PLURAL

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesOperationError(RuntimeError):
    """Raised when a Kubernetes read needed by a reconciliation fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def read_cluster_manifest(
    custom_api: client.CustomObjectsApi,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any] | None:
    return _read_optional(
        operation=f"read Cluster '{namespace}/{name}'",
        hint="Verify RBAC allows get on clusters.postgresql.pgfleet.io.",
        func=lambda: custom_api.get_namespaced_custom_object(
            API_GROUP,
            API_VERSION,
            namespace,
            CLUSTER_PLURAL,
            name,
            _request_timeout=request_timeout_seconds,
        ),
    )


def read_backup_manifest(
    custom_api: client.CustomObjectsApi,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any] | None:
    return _read_optional(
        operation=f"read Backup '{namespace}/{name}'",
        hint="Verify RBAC allows get on backups.postgresql.pgfleet.io.",
        func=lambda: custom_api.get_namespaced_custom_object(
            API_GROUP,
            API_VERSION,
            namespace,
            BACKUP_PLURAL,
            name,
            _request_timeout=request_timeout_seconds,
        ),
    )


def read_pod(
    core_api: client.CoreV1Api,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> client.V1Pod | None:
    return _read_optional(
        operation=f"read Pod '{namespace}/{name}'",
        hint="Verify RBAC allows get on pods.",
        func=lambda: core_api.read_namespaced_pod(
            name=name,
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        ),
    )


def list_instance_pods(
    core_api: client.CoreV1Api,
    *,
    namespace: str,
    cluster_name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[client.V1Pod]:
    pods = _safe_kubernetes_call(
        operation=f"list instance Pods of Cluster '{namespace}/{cluster_name}'",
        hint="Verify RBAC allows list on pods.",
        func=lambda: core_api.list_namespaced_pod(
            namespace=namespace,
            label_selector=f"{CLUSTER_LABEL}={cluster_name}",
            _request_timeout=request_timeout_seconds,
        ).items,
    )
    return sorted(pods or [], key=lambda pod: pod.metadata.name or "")


def list_pod_pvcs(
    core_api: client.CoreV1Api,
    pod: client.V1Pod,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[client.V1PersistentVolumeClaim]:
    namespace = pod.metadata.namespace or ""
    claim_names: list[str] = []
    for volume in (pod.spec.volumes if pod.spec else None) or []:
        pvc_source = volume.persistent_volume_claim
        if not pvc_source or not pvc_source.claim_name:
            continue
        if pvc_source.claim_name not in claim_names:
            claim_names.append(pvc_source.claim_name)

    pvcs: list[client.V1PersistentVolumeClaim] = []
    for claim_name in claim_names:
        pvcs.append(
            _safe_kubernetes_call(
                operation=f"read PVC '{namespace}/{claim_name}'",
                hint="Confirm the claim still exists and RBAC allows get on persistentvolumeclaims.",
                func=lambda claim_name=claim_name: core_api.read_namespaced_persistent_volume_claim(
                    name=claim_name,
                    namespace=namespace,
                    _request_timeout=request_timeout_seconds,
                ),
            )
        )
    return pvcs


def _read_optional(*, operation: str, hint: str, func: Callable[[], T]) -> T | None:
    try:
        return func()
    except ApiException as error:
        if error.status == 404:
            return None
        raise KubernetesOperationError(
            _format_api_exception_message(operation=operation, hint=hint, error=error),
            status=error.status,
        ) from error


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesOperationError(
            _format_api_exception_message(operation=operation, hint=hint, error=error),
            status=error.status,
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes request failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the operator pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
