"""
Snapshot backup orchestration.

A snapshot backup walks through fencing the target member, waiting for it
to stop serving, creating one VolumeSnapshot per attached PVC, waiting for
the provider to report them ready, and finally unfencing the member.

Nothing about the progress is stored between calls. Every ``execute`` call
observes the fencing annotation, the target pod readiness and the
VolumeSnapshots labelled with the backup name, and ``next_step`` decides
what to do from those observations alone. Whenever something has to
happen outside this process (the pod stopping, the provider finishing a
snapshot) the call returns a requeue result instead of waiting.
"""
from __future__ import annotations

from dataclasses import dataclass

from kubernetes import client

from .backups import BackupStatusWriter
from .events import EVENT_NORMAL, EVENT_WARNING, EventRecorder, backup_reference
from .fencing import AlreadyFencedError, ConflictingFenceStateError, FencingController
from .log import get_logger
from .models import (
    BACKUP_PHASE_RUNNING,
    RESULT_DONE,
    RESULT_FAILED,
    RESULT_REQUEUE,
    SNAPSHOT_FAILED,
    SNAPSHOT_READY,
    Backup,
    Cluster,
    ExecutionResult,
    SnapshotInfo,
)
from .snapshots import SnapshotGateway, classify_state

logger = get_logger(__name__)

DEFAULT_REQUEUE_AFTER_SECONDS = 10

STEP_FENCE = "fence"
STEP_AWAIT_FENCED = "await-fenced"
STEP_CREATE_SNAPSHOTS = "create-snapshots"
STEP_AWAIT_SNAPSHOTS = "await-snapshots"
STEP_COMPLETE = "complete"
STEP_FAIL_FENCE_CONFLICT = "fail-fence-conflict"
STEP_FAIL_SNAPSHOT = "fail-snapshot"


@dataclass(frozen=True)
class OrchestratorSettings:
    should_fence: bool = False
    requeue_after_seconds: int = DEFAULT_REQUEUE_AFTER_SECONDS


@dataclass(frozen=True)
class Observation:
    snapshots: tuple[SnapshotInfo, ...]
    volume_count: int
    fenced_instances: frozenset[str] = frozenset()
    target_ready: bool = False


def next_step(observation: Observation, *, pod_name: str, should_fence: bool) -> str:
    snapshots = observation.snapshots
    if snapshots:
        if any(info.state == SNAPSHOT_FAILED for info in snapshots):
            return STEP_FAIL_SNAPSHOT
        if all(info.state == SNAPSHOT_READY for info in snapshots):
            return STEP_COMPLETE

    if should_fence:
        if observation.fenced_instances != {pod_name}:
            return STEP_FAIL_FENCE_CONFLICT if observation.fenced_instances else STEP_FENCE
        if observation.target_ready:
            return STEP_AWAIT_FENCED

    if not snapshots:
        return STEP_CREATE_SNAPSHOTS if observation.volume_count else STEP_COMPLETE
    return STEP_AWAIT_SNAPSHOTS


class SnapshotBackupOrchestrator:
    def __init__(
        self,
        *,
        fencing: FencingController,
        gateway: SnapshotGateway,
        status_writer: BackupStatusWriter,
        recorder: EventRecorder,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.fencing = fencing
        self.gateway = gateway
        self.status_writer = status_writer
        self.recorder = recorder
        self.settings = settings or OrchestratorSettings()

    def observe(
        self,
        *,
        cluster: Cluster,
        backup: Backup,
        pod_name: str,
        volume_count: int,
    ) -> Observation:
        snapshots = tuple(
            classify_state(item)
            for item in self.gateway.list_snapshots_for_backup(namespace=backup.namespace, backup_name=backup.name)
        )
        if not self.settings.should_fence:
            return Observation(snapshots=snapshots, volume_count=volume_count)

        fenced = self.fencing.read_fenced_instances(namespace=cluster.namespace, cluster_name=cluster.name)
        target_ready = not self.fencing.is_fenced_in_effect(namespace=cluster.namespace, pod_name=pod_name)
        return Observation(
            snapshots=snapshots,
            volume_count=volume_count,
            fenced_instances=frozenset(fenced),
            target_ready=target_ready,
        )

    def execute(
        self,
        *,
        cluster: Cluster,
        backup: Backup,
        pod: client.V1Pod,
        pvcs: list[client.V1PersistentVolumeClaim],
    ) -> ExecutionResult:
        pod_name = pod.metadata.name
        log = logger.bind(backup=backup.name, namespace=backup.namespace, pod=pod_name)

        if backup.phase != BACKUP_PHASE_RUNNING or backup.pod_name != pod_name:
            self.status_writer.mark_running(backup, pod_name=pod_name)

        observation = self.observe(cluster=cluster, backup=backup, pod_name=pod_name, volume_count=len(pvcs))
        step = next_step(observation, pod_name=pod_name, should_fence=self.settings.should_fence)
        log.debug("snapshot_backup_step", step=step)

        if step == STEP_FENCE:
            fence_failure = self._fence(cluster=cluster, backup=backup, pod_name=pod_name)
            if fence_failure is not None:
                return fence_failure
            # readiness of a freshly fenced member is checked in the same call
            observation = self.observe(cluster=cluster, backup=backup, pod_name=pod_name, volume_count=len(pvcs))
            step = next_step(observation, pod_name=pod_name, should_fence=self.settings.should_fence)
            log.debug("snapshot_backup_step", step=step, after_fence=True)
            if step == STEP_FENCE:
                return self._requeue()

        if step == STEP_FAIL_FENCE_CONFLICT:
            return self._fail(
                backup,
                message=(
                    "cannot execute volume snapshot on a cluster that has fenced instances "
                    f"{sorted(observation.fenced_instances)}"
                ),
            )

        if step == STEP_AWAIT_FENCED:
            log.info("waiting_for_pod_to_be_fenced")
            return self._requeue()

        if step == STEP_CREATE_SNAPSHOTS:
            created = self.gateway.create_snapshot_set(cluster=cluster, backup=backup, pod=pod, pvcs=pvcs)
            log.info("volume_snapshots_requested", snapshots=created)
            return self._requeue()

        if step == STEP_AWAIT_SNAPSHOTS:
            pending = [info.name for info in observation.snapshots if info.state != SNAPSHOT_READY]
            log.info("waiting_for_volume_snapshots", snapshots=pending)
            return self._requeue()

        if step == STEP_FAIL_SNAPSHOT:
            failure = next(info for info in observation.snapshots if info.state == SNAPSHOT_FAILED)
            self._release_fence_after_failure(cluster=cluster, backup=backup, pod_name=pod_name)
            return self._fail(backup, message=failure.reason)

        self._unfence(cluster=cluster, backup=backup, pod_name=pod_name)
        snapshot_names = [info.name for info in observation.snapshots]
        self.status_writer.mark_completed(backup, snapshot_names=snapshot_names)
        self._record(backup, EVENT_NORMAL, "SnapshotBackupCompleted", f"Completed with {len(snapshot_names)} snapshot(s)")
        log.info("snapshot_backup_completed", snapshots=snapshot_names)
        return ExecutionResult(status=RESULT_DONE, snapshot_names=tuple(snapshot_names))

    def _fence(self, *, cluster: Cluster, backup: Backup, pod_name: str) -> ExecutionResult | None:
        self._record(backup, EVENT_NORMAL, "FencePod", f"Requesting fencing for Pod {pod_name}")
        try:
            self.fencing.request_fence(namespace=cluster.namespace, cluster_name=cluster.name, pod_name=pod_name)
        except AlreadyFencedError:
            pass
        except ConflictingFenceStateError as error:
            return self._fail(backup, message=str(error))
        return None

    def _unfence(self, *, cluster: Cluster, backup: Backup, pod_name: str) -> None:
        if self.fencing.request_unfence(namespace=cluster.namespace, cluster_name=cluster.name, pod_name=pod_name):
            self._record(backup, EVENT_NORMAL, "UnfencePod", f"Un-fencing Pod {pod_name}")

    def _release_fence_after_failure(self, *, cluster: Cluster, backup: Backup, pod_name: str) -> None:
        try:
            self._unfence(cluster=cluster, backup=backup, pod_name=pod_name)
        except Exception as error:  # pylint: disable=broad-except
            logger.error(
                "unfence_after_failure_failed",
                backup=backup.name,
                namespace=backup.namespace,
                pod=pod_name,
                error=str(error).strip() or error.__class__.__name__,
            )

    def _fail(self, backup: Backup, *, message: str) -> ExecutionResult:
        self.status_writer.mark_failed(backup, message=message)
        self._record(backup, EVENT_WARNING, "SnapshotBackupFailed", message)
        logger.error("snapshot_backup_failed", backup=backup.name, namespace=backup.namespace, error=message)
        return ExecutionResult(status=RESULT_FAILED, message=message)

    def _requeue(self) -> ExecutionResult:
        return ExecutionResult(status=RESULT_REQUEUE, requeue_after_seconds=self.settings.requeue_after_seconds)

    def _record(self, backup: Backup, event_type: str, reason: str, message: str) -> None:
        self.recorder.record(
            involved=backup_reference(name=backup.name, namespace=backup.namespace, uid=backup.uid),
            event_type=event_type,
            reason=reason,
            message=message,
        )
