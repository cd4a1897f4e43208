"""
Fencing of cluster members.

The set of fenced members lives in a single annotation on the Cluster
object, encoded as a sorted JSON list of pod names (``"*"`` fences every
member). Updates go through a read-modify-write guarded by the object's
``resourceVersion``, so a concurrent writer makes the API server answer
409 and the update is replayed against a fresh read.
"""
from __future__ import annotations

import json
from typing import Any, Callable

from kubernetes import client
from kubernetes.client import ApiException

from .log import get_logger
from .models import API_GROUP, API_VERSION, CLUSTER_PLURAL, FENCE_ALL_INSTANCES, FENCED_INSTANCES_ANNOTATION

logger = get_logger(__name__)

DEFAULT_MAX_CONFLICT_RETRIES = 5

FENCE_UPDATED = "updated"
FENCE_UNCHANGED = "unchanged"
FENCE_CONFLICT = "conflict"


class FencingError(RuntimeError):
    """Base class for fencing failures."""


class AlreadyFencedError(FencingError):
    """Raised when the requested member is already the only fenced member."""


class ConflictingFenceStateError(FencingError):
    """Raised when another fencing operation already holds the cluster."""


class FencedInstancesSyntaxError(FencingError):
    """Raised when the fencing annotation cannot be decoded."""


class FencingTargetNotFoundError(FencingError):
    """Raised when the member to fence has no pod."""


class FenceUpdateConflictError(FencingError):
    """Raised when concurrent writers kept winning every update attempt."""


def get_fenced_instances(annotations: dict[str, str] | None) -> set[str]:
    raw_value = (annotations or {}).get(FENCED_INSTANCES_ANNOTATION)
    if raw_value is None:
        return set()

    try:
        decoded = json.loads(raw_value)
    except (TypeError, ValueError) as error:
        raise FencedInstancesSyntaxError(
            f"{FENCED_INSTANCES_ANNOTATION} annotation has wrong syntax: {raw_value!r}"
        ) from error

    if not isinstance(decoded, list) or not all(isinstance(item, str) for item in decoded):
        raise FencedInstancesSyntaxError(
            f"{FENCED_INSTANCES_ANNOTATION} annotation must be a JSON list of strings: {raw_value!r}"
        )
    return set(decoded)


def set_fenced_instances(annotations: dict[str, str], instances: set[str]) -> None:
    if not instances:
        annotations.pop(FENCED_INSTANCES_ANNOTATION, None)
        return
    annotations[FENCED_INSTANCES_ANNOTATION] = json.dumps(sorted(instances))


def add_fenced_instance(instance_name: str, annotations: dict[str, str]) -> bool:
    fenced = get_fenced_instances(annotations)
    if FENCE_ALL_INSTANCES in fenced or instance_name in fenced:
        return False

    if instance_name == FENCE_ALL_INSTANCES:
        fenced = {FENCE_ALL_INSTANCES}
    else:
        fenced.add(instance_name)
    set_fenced_instances(annotations, fenced)
    return True


def remove_fenced_instance(instance_name: str, annotations: dict[str, str]) -> bool:
    fenced = get_fenced_instances(annotations)
    if not fenced:
        return False

    if instance_name == FENCE_ALL_INSTANCES:
        fenced = set()
    else:
        if FENCE_ALL_INSTANCES in fenced:
            raise FencingError(f"cannot unfence instance '{instance_name}' while all instances are fenced")
        if instance_name not in fenced:
            return False
        fenced.discard(instance_name)
    set_fenced_instances(annotations, fenced)
    return True


def is_pod_ready(pod: object) -> bool:
    pod_status = getattr(pod, "status", None)
    for condition in getattr(pod_status, "conditions", None) or []:
        if getattr(condition, "type", None) == "Ready":
            return getattr(condition, "status", None) == "True"
    return False


class FencingController:
    def __init__(
        self,
        *,
        custom_api: client.CustomObjectsApi,
        core_api: client.CoreV1Api,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        request_timeout_seconds: int = 30,
    ) -> None:
        if max_conflict_retries < 0:
            raise ValueError("max_conflict_retries must be >= 0")
        self.custom_api = custom_api
        self.core_api = core_api
        self.max_conflict_retries = max_conflict_retries
        self.request_timeout_seconds = request_timeout_seconds

    def request_fence(self, *, namespace: str, cluster_name: str, pod_name: str) -> None:
        """Fence ``pod_name`` as the only fenced member of the cluster.

        Raises ``AlreadyFencedError`` when the member is already the sole
        fenced member and ``ConflictingFenceStateError`` when any other
        member set is fenced.
        """

        def _fence(annotations: dict[str, str]) -> bool:
            fenced = get_fenced_instances(annotations)
            if fenced == {pod_name}:
                raise AlreadyFencedError(f"instance '{pod_name}' is already fenced")
            if fenced:
                raise ConflictingFenceStateError(
                    f"cannot fence instance '{pod_name}': cluster '{namespace}/{cluster_name}' "
                    f"already has fenced instances {sorted(fenced)}"
                )
            return add_fenced_instance(pod_name, annotations)

        if pod_name != FENCE_ALL_INSTANCES:
            self._ensure_pod_exists(namespace=namespace, pod_name=pod_name)
        self._apply(namespace=namespace, cluster_name=cluster_name, mutate=_fence)
        logger.info("fence_requested", namespace=namespace, cluster=cluster_name, pod=pod_name)

    def request_unfence(self, *, namespace: str, cluster_name: str, pod_name: str) -> bool:
        """Remove ``pod_name`` from the fenced set; returns whether it was fenced."""
        changed = self._apply(
            namespace=namespace,
            cluster_name=cluster_name,
            mutate=lambda annotations: remove_fenced_instance(pod_name, annotations),
        )
        if changed:
            logger.info("unfence_requested", namespace=namespace, cluster=cluster_name, pod=pod_name)
        return changed

    def read_fenced_instances(self, *, namespace: str, cluster_name: str) -> set[str]:
        cluster = self._read_cluster(namespace=namespace, cluster_name=cluster_name)
        return get_fenced_instances((cluster.get("metadata") or {}).get("annotations"))

    def is_fenced_in_effect(self, *, namespace: str, pod_name: str) -> bool:
        pod = self.core_api.read_namespaced_pod(
            name=pod_name,
            namespace=namespace,
            _request_timeout=self.request_timeout_seconds,
        )
        return not is_pod_ready(pod)

    def _apply(
        self,
        *,
        namespace: str,
        cluster_name: str,
        mutate: Callable[[dict[str, str]], bool],
    ) -> bool:
        attempts = self.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            outcome = self._try_update(namespace=namespace, cluster_name=cluster_name, mutate=mutate)
            if outcome != FENCE_CONFLICT:
                return outcome == FENCE_UPDATED
            logger.debug(
                "fence_update_conflict",
                namespace=namespace,
                cluster=cluster_name,
                attempt=attempt,
                max_attempts=attempts,
            )

        raise FenceUpdateConflictError(
            f"fencing annotation of cluster '{namespace}/{cluster_name}' kept changing concurrently "
            f"({attempts} attempts)"
        )

    def _try_update(
        self,
        *,
        namespace: str,
        cluster_name: str,
        mutate: Callable[[dict[str, str]], bool],
    ) -> str:
        cluster = self._read_cluster(namespace=namespace, cluster_name=cluster_name)
        metadata = cluster.setdefault("metadata", {})
        annotations = dict(metadata.get("annotations") or {})
        if not mutate(annotations):
            return FENCE_UNCHANGED

        metadata["annotations"] = annotations
        try:
            self.custom_api.replace_namespaced_custom_object(
                API_GROUP,
                API_VERSION,
                namespace,
                CLUSTER_PLURAL,
                cluster_name,
                cluster,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            if error.status == 409:
                return FENCE_CONFLICT
            raise
        return FENCE_UPDATED

    def _read_cluster(self, *, namespace: str, cluster_name: str) -> dict[str, Any]:
        return self.custom_api.get_namespaced_custom_object(
            API_GROUP,
            API_VERSION,
            namespace,
            CLUSTER_PLURAL,
            cluster_name,
            _request_timeout=self.request_timeout_seconds,
        )

    def _ensure_pod_exists(self, *, namespace: str, pod_name: str) -> None:
        try:
            self.core_api.read_namespaced_pod(
                name=pod_name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            if error.status == 404:
                raise FencingTargetNotFoundError(
                    f"instance '{pod_name}' not found in namespace '{namespace}'"
                ) from error
            raise
