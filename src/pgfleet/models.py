from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

API_GROUP = "postgresql.pgfleet.io"
API_VERSION = "v1"
CLUSTER_KIND = "Cluster"
CLUSTER_PLURAL = "clusters"
BACKUP_KIND = "Backup"
BACKUP_PLURAL = "backups"

CLUSTER_LABEL = "pgfleet.io/cluster"
FENCED_INSTANCES_ANNOTATION = "pgfleet.io/fencedInstances"
FENCE_ALL_INSTANCES = "*"
BACKUP_NAME_LABEL = "pgfleet.io/backupName"
CLUSTER_MANIFEST_ANNOTATION = "pgfleet.io/clusterManifest"
PG_CONTROLDATA_ANNOTATION = "pgfleet.io/pgControldata"
PVC_ROLE_LABEL = "pgfleet.io/pvcRole"
PVC_ROLE_DATA = "PG_DATA"
PVC_ROLE_WAL = "PG_WAL"

DEFAULT_SLOT_PREFIX = "_pgfleet_"

SNAPSHOT_OWNER_NONE = "none"
SNAPSHOT_OWNER_CLUSTER = "cluster"
SNAPSHOT_OWNER_BACKUP = "backup"

BACKUP_TARGET_PRIMARY = "primary"
BACKUP_TARGET_PREFER_STANDBY = "prefer-standby"

BACKUP_PHASE_PENDING = "pending"
BACKUP_PHASE_RUNNING = "running"
BACKUP_PHASE_COMPLETED = "completed"
BACKUP_PHASE_FAILED = "failed"

SNAPSHOT_PENDING = "pending"
SNAPSHOT_READY = "ready"
SNAPSHOT_FAILED = "failed"

RESULT_DONE = "done"
RESULT_FAILED = "failed"
RESULT_REQUEUE = "requeue"


@dataclass(frozen=True)
class SecretKeySelector:
    name: str
    key: str


@dataclass(frozen=True)
class ExternalCluster:
    name: str
    connection_parameters: dict[str, str] = field(default_factory=dict)
    password: SecretKeySelector | None = None
    ssl_key: SecretKeySelector | None = None
    ssl_cert: SecretKeySelector | None = None
    ssl_root_cert: SecretKeySelector | None = None


@dataclass(frozen=True)
class VolumeSnapshotConfig:
    class_name: str | None = None
    wal_class_name: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    snapshot_owner_reference: str = SNAPSHOT_OWNER_NONE
    online: bool = True


@dataclass(frozen=True)
class Cluster:
    name: str
    namespace: str
    uid: str
    annotations: dict[str, str]
    current_primary: str | None
    target_primary: str | None
    replica_enabled: bool
    replica_source: str | None
    external_clusters: tuple[ExternalCluster, ...]
    slot_prefix: str
    inherited_labels: dict[str, str]
    inherited_annotations: dict[str, str]
    backup_target: str
    volume_snapshot: VolumeSnapshotConfig
    manifest: dict[str, Any]

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> Cluster:
        metadata = _mapping(manifest.get("metadata"))
        spec = _mapping(manifest.get("spec"))
        status = _mapping(manifest.get("status"))
        replica = _mapping(spec.get("replica"))
        inherited = _mapping(spec.get("inheritedMetadata"))
        backup = _mapping(spec.get("backup"))
        slots = _mapping(_mapping(spec.get("replicationSlots")).get("highAvailability"))

        return cls(
            name=metadata.get("name") or "",
            namespace=metadata.get("namespace") or "",
            uid=metadata.get("uid") or "",
            annotations=_string_map(metadata.get("annotations")),
            current_primary=status.get("currentPrimary") or None,
            target_primary=status.get("targetPrimary") or None,
            replica_enabled=bool(replica.get("enabled", False)),
            replica_source=replica.get("source") or None,
            external_clusters=tuple(
                _external_cluster(item) for item in spec.get("externalClusters") or [] if isinstance(item, dict)
            ),
            slot_prefix=slots.get("slotPrefix") or DEFAULT_SLOT_PREFIX,
            inherited_labels=_string_map(inherited.get("labels")),
            inherited_annotations=_string_map(inherited.get("annotations")),
            backup_target=backup.get("target") or BACKUP_TARGET_PREFER_STANDBY,
            volume_snapshot=_volume_snapshot_config(_mapping(backup.get("volumeSnapshot"))),
            manifest=manifest,
        )

    def is_replica(self) -> bool:
        return self.replica_enabled and self.replica_source is not None

    def external_cluster(self, name: str) -> ExternalCluster | None:
        for server in self.external_clusters:
            if server.name == name:
                return server
        return None

    def slot_name_for(self, pod_name: str) -> str:
        sanitized = "".join(
            character if character.isascii() and (character.isalnum() or character == "_") else "_"
            for character in pod_name.lower()
        )
        return f"{self.slot_prefix}{sanitized}"

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": CLUSTER_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


@dataclass(frozen=True)
class Backup:
    name: str
    namespace: str
    uid: str
    cluster_name: str
    phase: str
    online: bool | None
    target: str | None
    pod_name: str | None
    snapshot_names: tuple[str, ...]
    manifest: dict[str, Any]

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> Backup:
        metadata = _mapping(manifest.get("metadata"))
        spec = _mapping(manifest.get("spec"))
        status = _mapping(manifest.get("status"))
        online = spec.get("online")

        return cls(
            name=metadata.get("name") or "",
            namespace=metadata.get("namespace") or "",
            uid=metadata.get("uid") or "",
            cluster_name=_mapping(spec.get("cluster")).get("name") or "",
            phase=status.get("phase") or BACKUP_PHASE_PENDING,
            online=online if isinstance(online, bool) else None,
            target=spec.get("target") or None,
            pod_name=_mapping(status.get("instanceID")).get("podName") or None,
            snapshot_names=tuple(status.get("snapshots") or ()),
            manifest=manifest,
        )

    @property
    def is_terminal(self) -> bool:
        return self.phase in {BACKUP_PHASE_COMPLETED, BACKUP_PHASE_FAILED}

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": BACKUP_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


@dataclass(frozen=True)
class SnapshotInfo:
    name: str
    state: str
    reason: str = ""


@dataclass(frozen=True)
class ExecutionResult:
    status: str
    requeue_after_seconds: int | None = None
    message: str = ""
    snapshot_names: tuple[str, ...] = ()

    @property
    def requeue(self) -> bool:
        return self.status == RESULT_REQUEUE


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _string_map(value: Any) -> dict[str, str]:
    return {str(key): str(item) for key, item in _mapping(value).items()}


def _secret_key_selector(value: Any) -> SecretKeySelector | None:
    selector = _mapping(value)
    name = selector.get("name")
    key = selector.get("key")
    if not name or not key:
        return None
    return SecretKeySelector(name=name, key=key)


def _external_cluster(item: dict[str, Any]) -> ExternalCluster:
    return ExternalCluster(
        name=item.get("name") or "",
        connection_parameters=_string_map(item.get("connectionParameters")),
        password=_secret_key_selector(item.get("password")),
        ssl_key=_secret_key_selector(item.get("sslKey")),
        ssl_cert=_secret_key_selector(item.get("sslCert")),
        ssl_root_cert=_secret_key_selector(item.get("sslRootCert")),
    )


def _volume_snapshot_config(item: dict[str, Any]) -> VolumeSnapshotConfig:
    online = item.get("online", True)
    return VolumeSnapshotConfig(
        class_name=item.get("className") or None,
        wal_class_name=item.get("walClassName") or None,
        labels=_string_map(item.get("labels")),
        annotations=_string_map(item.get("annotations")),
        snapshot_owner_reference=item.get("snapshotOwnerReference") or SNAPSHOT_OWNER_NONE,
        online=online if isinstance(online, bool) else True,
    )
