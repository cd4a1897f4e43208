from __future__ import annotations

from kubernetes import client

from .backups import BackupStatusWriter
from .config import OperatorConfig
from .events import EventRecorder, KubernetesEventRecorder
from .fencing import FencingController, is_pod_ready
from .k8s import (
    list_instance_pods,
    list_pod_pvcs,
    load_kubernetes_clients,
    read_backup_manifest,
    read_cluster_manifest,
    read_pod,
)
from .log import configure_logging, get_logger
from .models import (
    BACKUP_PHASE_COMPLETED,
    BACKUP_TARGET_PRIMARY,
    RESULT_DONE,
    RESULT_FAILED,
    Backup,
    Cluster,
    ExecutionResult,
)
from .orchestrator import OrchestratorSettings, SnapshotBackupOrchestrator
from .probe import InstanceStatusClient
from .snapshots import SnapshotGateway

logger = get_logger(__name__)


def select_backup_target(cluster: Cluster, pods: list[client.V1Pod], target: str) -> client.V1Pod | None:
    primary = next((pod for pod in pods if pod.metadata.name == cluster.current_primary), None)
    if target == BACKUP_TARGET_PRIMARY:
        return primary

    for pod in sorted(pods, key=lambda item: item.metadata.name or ""):
        if pod.metadata.name != cluster.current_primary and is_pod_ready(pod):
            return pod
    return primary


def should_fence(cluster: Cluster, backup: Backup) -> bool:
    if backup.online is not None:
        return not backup.online
    return not cluster.volume_snapshot.online


class BackupReconciler:
    """Entry point the external scheduler calls for one snapshot Backup.

    Loads the Backup, its Cluster, the target member and that member's
    PVCs, then hands over to ``SnapshotBackupOrchestrator``. The target
    member is pinned in the Backup status on the first run so later runs
    keep working on the same pod.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        custom_api: client.CustomObjectsApi,
        fencing: FencingController,
        gateway: SnapshotGateway,
        status_writer: BackupStatusWriter,
        recorder: EventRecorder,
        requeue_after_seconds: int = 10,
        request_timeout_seconds: int = 30,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.fencing = fencing
        self.gateway = gateway
        self.status_writer = status_writer
        self.recorder = recorder
        self.requeue_after_seconds = requeue_after_seconds
        self.request_timeout_seconds = request_timeout_seconds

    def reconcile(self, *, namespace: str, backup_name: str) -> ExecutionResult:
        manifest = read_backup_manifest(
            self.custom_api,
            namespace=namespace,
            name=backup_name,
            request_timeout_seconds=self.request_timeout_seconds,
        )
        if manifest is None:
            logger.info("backup_not_found", backup=backup_name, namespace=namespace)
            return ExecutionResult(status=RESULT_DONE, message="backup not found")

        backup = Backup.from_manifest(manifest)
        if backup.is_terminal:
            status = RESULT_DONE if backup.phase == BACKUP_PHASE_COMPLETED else RESULT_FAILED
            return ExecutionResult(status=status, snapshot_names=backup.snapshot_names)

        cluster_manifest = read_cluster_manifest(
            self.custom_api,
            namespace=namespace,
            name=backup.cluster_name,
            request_timeout_seconds=self.request_timeout_seconds,
        )
        if cluster_manifest is None:
            return self._fail(backup, f"cluster '{backup.cluster_name}' not found")
        cluster = Cluster.from_manifest(cluster_manifest)

        pod = self._target_pod(cluster, backup)
        if pod is None:
            if backup.pod_name:
                if should_fence(cluster, backup):
                    self._release_fence(cluster, backup)
                return self._fail(backup, f"target instance '{backup.pod_name}' not found")
            return self._fail(backup, f"no instance of cluster '{cluster.name}' is available for backup")

        pvcs = list_pod_pvcs(self.core_api, pod, request_timeout_seconds=self.request_timeout_seconds)
        orchestrator = SnapshotBackupOrchestrator(
            fencing=self.fencing,
            gateway=self.gateway,
            status_writer=self.status_writer,
            recorder=self.recorder,
            settings=OrchestratorSettings(
                should_fence=should_fence(cluster, backup),
                requeue_after_seconds=self.requeue_after_seconds,
            ),
        )
        return orchestrator.execute(cluster=cluster, backup=backup, pod=pod, pvcs=pvcs)

    def _target_pod(self, cluster: Cluster, backup: Backup) -> client.V1Pod | None:
        if backup.pod_name:
            return read_pod(
                self.core_api,
                namespace=cluster.namespace,
                name=backup.pod_name,
                request_timeout_seconds=self.request_timeout_seconds,
            )

        pods = list_instance_pods(
            self.core_api,
            namespace=cluster.namespace,
            cluster_name=cluster.name,
            request_timeout_seconds=self.request_timeout_seconds,
        )
        return select_backup_target(cluster, pods, backup.target or cluster.backup_target)

    def _release_fence(self, cluster: Cluster, backup: Backup) -> None:
        try:
            self.fencing.request_unfence(
                namespace=cluster.namespace,
                cluster_name=cluster.name,
                pod_name=backup.pod_name,
            )
        except Exception as error:  # pylint: disable=broad-except
            logger.error(
                "unfence_after_failure_failed",
                backup=backup.name,
                namespace=backup.namespace,
                pod=backup.pod_name,
                error=str(error).strip() or error.__class__.__name__,
            )

    def _fail(self, backup: Backup, message: str) -> ExecutionResult:
        self.status_writer.mark_failed(backup, message=message)
        logger.error("snapshot_backup_failed", backup=backup.name, namespace=backup.namespace, error=message)
        return ExecutionResult(status=RESULT_FAILED, message=message)


def build_backup_reconciler(config: OperatorConfig) -> BackupReconciler:
    configure_logging(config)
    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    timeout = config.request_timeout_seconds
    recorder = KubernetesEventRecorder(core_api=clients.core_api, request_timeout_seconds=timeout)
    return BackupReconciler(
        core_api=clients.core_api,
        custom_api=clients.custom_api,
        fencing=FencingController(
            custom_api=clients.custom_api,
            core_api=clients.core_api,
            max_conflict_retries=config.fence_conflict_retries,
            request_timeout_seconds=timeout,
        ),
        gateway=SnapshotGateway(
            custom_api=clients.custom_api,
            probe=InstanceStatusClient(core_api=clients.core_api, request_timeout_seconds=timeout),
            recorder=recorder,
            request_timeout_seconds=timeout,
        ),
        status_writer=BackupStatusWriter(custom_api=clients.custom_api, request_timeout_seconds=timeout),
        recorder=recorder,
        requeue_after_seconds=config.requeue_after_seconds,
        request_timeout_seconds=timeout,
    )
