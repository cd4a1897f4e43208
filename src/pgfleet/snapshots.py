from __future__ import annotations

import json
import time
from typing import Any, Protocol

from kubernetes import client
from kubernetes.client import ApiException

from .events import EVENT_NORMAL, EventRecorder, backup_reference
from .log import get_logger
from .models import (
    BACKUP_NAME_LABEL,
    CLUSTER_MANIFEST_ANNOTATION,
    PG_CONTROLDATA_ANNOTATION,
    PVC_ROLE_LABEL,
    PVC_ROLE_WAL,
    SNAPSHOT_FAILED,
    SNAPSHOT_OWNER_BACKUP,
    SNAPSHOT_OWNER_CLUSTER,
    SNAPSHOT_PENDING,
    SNAPSHOT_READY,
    Backup,
    Cluster,
    SnapshotInfo,
)

logger = get_logger(__name__)

GROUP = "snapshot.storage.k8s.io"
VERSION = "v1"
PLURAL = "volumesnapshots"
KIND = "VolumeSnapshot"


class SnapshotCreationError(RuntimeError):
    def __init__(self, *, snapshot_name: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"while creating VolumeSnapshot {snapshot_name}: {normalized_reason}")
        self.snapshot_name = snapshot_name


class ControlDataProbe(Protocol):
    def get_pg_controldata(self, pod: client.V1Pod) -> str:
        ...


def snapshot_name(pvc_name: str, suffix: str) -> str:
    return f"{pvc_name}-{suffix}"


def snapshot_suffix() -> str:
    return str(int(time.time()))


def classify_state(snapshot: dict[str, Any]) -> SnapshotInfo:
    """Map provider-reported status onto pending / ready / failed.

    A status that cannot be interpreted is reported as failed so a stuck
    resource is never polled forever.
    """
    name = (snapshot.get("metadata") or {}).get("name") or ""
    status = snapshot.get("status")
    if status is None:
        return SnapshotInfo(name=name, state=SNAPSHOT_PENDING)
    if not isinstance(status, dict):
        return SnapshotInfo(name=name, state=SNAPSHOT_FAILED, reason=f"cannot parse status of {name}: not an object")

    ready = status.get("readyToUse")
    if ready is not None and not isinstance(ready, bool):
        return SnapshotInfo(
            name=name,
            state=SNAPSHOT_FAILED,
            reason=f"cannot parse status of {name}: readyToUse={ready!r} is not a boolean",
        )

    error = status.get("error")
    if error is not None:
        if not isinstance(error, dict):
            return SnapshotInfo(name=name, state=SNAPSHOT_FAILED, reason=f"cannot parse status of {name}: malformed error")
        if ready is True:
            return SnapshotInfo(
                name=name,
                state=SNAPSHOT_FAILED,
                reason=f"cannot parse status of {name}: reported ready and failed at the same time",
            )
        message = (error.get("message") or "").strip() or "snapshot provider reported an error"
        return SnapshotInfo(name=name, state=SNAPSHOT_FAILED, reason=f"VolumeSnapshot {name} failed: {message}")

    if ready:
        return SnapshotInfo(name=name, state=SNAPSHOT_READY)
    return SnapshotInfo(name=name, state=SNAPSHOT_PENDING)


class SnapshotGateway:
    def __init__(
        self,
        *,
        custom_api: client.CustomObjectsApi,
        probe: ControlDataProbe,
        recorder: EventRecorder,
        request_timeout_seconds: int = 30,
    ) -> None:
        self.custom_api = custom_api
        self.probe = probe
        self.recorder = recorder
        self.request_timeout_seconds = request_timeout_seconds

    def create_snapshot_set(
        self,
        *,
        cluster: Cluster,
        backup: Backup,
        pod: client.V1Pod,
        pvcs: list[client.V1PersistentVolumeClaim],
    ) -> list[str]:
        suffix = snapshot_suffix()
        created: list[str] = []
        for pvc in pvcs:
            self.recorder.record(
                involved=backup_reference(name=backup.name, namespace=backup.namespace, uid=backup.uid),
                event_type=EVENT_NORMAL,
                reason="CreateSnapshot",
                message=f"Creating VolumeSnapshot for PVC {pvc.metadata.name}",
            )
            body = self.build_snapshot(cluster=cluster, backup=backup, pvc=pvc, suffix=suffix)
            self._enrich_with_controldata(body, pod=pod)
            self._create(body)
            created.append(body["metadata"]["name"])
        return created

    def build_snapshot(
        self,
        *,
        cluster: Cluster,
        backup: Backup,
        pvc: client.V1PersistentVolumeClaim,
        suffix: str,
    ) -> dict[str, Any]:
        config = cluster.volume_snapshot
        pvc_labels = dict(pvc.metadata.labels or {})
        labels = {**pvc_labels, **config.labels}
        annotations = {**(pvc.metadata.annotations or {}), **config.annotations}

        class_name = None
        if pvc_labels.get(PVC_ROLE_LABEL) == PVC_ROLE_WAL and config.wal_class_name:
            class_name = config.wal_class_name
        if class_name is None and config.class_name:
            class_name = config.class_name

        metadata: dict[str, Any] = {
            "name": snapshot_name(pvc.metadata.name, suffix),
            "namespace": pvc.metadata.namespace or cluster.namespace,
            "labels": labels,
            "annotations": annotations,
        }
        if config.snapshot_owner_reference == SNAPSHOT_OWNER_CLUSTER:
            labels.update(cluster.inherited_labels)
            annotations.update(cluster.inherited_annotations)
            metadata["ownerReferences"] = [cluster.owner_reference()]
        elif config.snapshot_owner_reference == SNAPSHOT_OWNER_BACKUP:
            metadata["ownerReferences"] = [backup.owner_reference()]

        labels[BACKUP_NAME_LABEL] = backup.name
        annotations[CLUSTER_MANIFEST_ANNOTATION] = json.dumps(cluster.manifest, sort_keys=True)

        spec: dict[str, Any] = {"source": {"persistentVolumeClaimName": pvc.metadata.name}}
        if class_name:
            spec["volumeSnapshotClassName"] = class_name

        return {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": KIND,
            "metadata": metadata,
            "spec": spec,
        }

    def list_snapshots_for_backup(self, *, namespace: str, backup_name: str) -> list[dict[str, Any]]:
        response = self.custom_api.list_namespaced_custom_object(
            GROUP,
            VERSION,
            namespace,
            PLURAL,
            label_selector=f"{BACKUP_NAME_LABEL}={backup_name}",
            _request_timeout=self.request_timeout_seconds,
        )
        items = response.get("items") or []
        return sorted(items, key=lambda item: (item.get("metadata") or {}).get("name") or "")

    def _enrich_with_controldata(self, body: dict[str, Any], *, pod: client.V1Pod) -> None:
        try:
            body["metadata"]["annotations"][PG_CONTROLDATA_ANNOTATION] = self.probe.get_pg_controldata(pod)
        except Exception as error:  # pylint: disable=broad-except
            logger.error(
                "pg_controldata_query_failed",
                snapshot=body["metadata"]["name"],
                pod=pod.metadata.name,
                error=str(error).strip() or error.__class__.__name__,
            )

    def _create(self, body: dict[str, Any]) -> None:
        metadata = body["metadata"]
        try:
            self.custom_api.create_namespaced_custom_object(
                GROUP,
                VERSION,
                metadata["namespace"],
                PLURAL,
                body,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            raise SnapshotCreationError(
                snapshot_name=metadata["name"],
                reason=f"API status {error.status} ({error.reason or 'no reason provided'})",
            ) from error
