from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from kubernetes import client

from .log import get_logger
from .models import (
    API_GROUP,
    API_VERSION,
    BACKUP_PHASE_COMPLETED,
    BACKUP_PHASE_FAILED,
    BACKUP_PHASE_RUNNING,
    BACKUP_PLURAL,
    Backup,
)

logger = get_logger(__name__)


class BackupStatusWriter:
    """Persists Backup phase transitions on the status subresource."""

    def __init__(self, *, custom_api: client.CustomObjectsApi, request_timeout_seconds: int = 30) -> None:
        self.custom_api = custom_api
        self.request_timeout_seconds = request_timeout_seconds

    def mark_running(self, backup: Backup, *, pod_name: str) -> None:
        self._patch(
            backup,
            {
                "phase": BACKUP_PHASE_RUNNING,
                "instanceID": {"podName": pod_name},
                "startedAt": _utc_now_iso(),
            },
        )

    def mark_completed(self, backup: Backup, *, snapshot_names: list[str]) -> None:
        self._patch(
            backup,
            {
                "phase": BACKUP_PHASE_COMPLETED,
                "snapshots": snapshot_names,
                "stoppedAt": _utc_now_iso(),
            },
        )

    def mark_failed(self, backup: Backup, *, message: str) -> None:
        self._patch(
            backup,
            {
                "phase": BACKUP_PHASE_FAILED,
                "error": message,
                "stoppedAt": _utc_now_iso(),
            },
        )

    def _patch(self, backup: Backup, status: dict[str, Any]) -> None:
        self.custom_api.patch_namespaced_custom_object_status(
            API_GROUP,
            API_VERSION,
            backup.namespace,
            BACKUP_PLURAL,
            backup.name,
            {"status": status},
            _request_timeout=self.request_timeout_seconds,
        )
        logger.info("backup_phase_updated", backup=backup.name, namespace=backup.namespace, phase=status["phase"])


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
