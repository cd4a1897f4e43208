from __future__ import annotations

from datetime import datetime
from unittest.mock import Mock

from pgfleet.backups import BackupStatusWriter
from pgfleet.models import Backup


def _backup() -> Backup:
    return Backup.from_manifest({"metadata": {"name": "nightly", "namespace": "db"}, "spec": {"cluster": {"name": "pg"}}})


def test_mark_running_with_pod_name_patches_status_subresource() -> None:
    custom_api = Mock()
    writer = BackupStatusWriter(custom_api=custom_api, request_timeout_seconds=12)

    writer.mark_running(_backup(), pod_name="pg-2")

    args, kwargs = custom_api.patch_namespaced_custom_object_status.call_args
    assert args[:5] == ("postgresql.pgfleet.io", "v1", "db", "backups", "nightly")
    status = args[5]["status"]
    assert status["phase"] == "running"
    assert status["instanceID"] == {"podName": "pg-2"}
    assert datetime.fromisoformat(status["startedAt"]).tzinfo is not None
    assert kwargs == {"_request_timeout": 12}


def test_mark_completed_with_snapshot_names_records_them() -> None:
    custom_api = Mock()

    BackupStatusWriter(custom_api=custom_api).mark_completed(_backup(), snapshot_names=["pg-2-1", "pg-2-wal-1"])

    status = custom_api.patch_namespaced_custom_object_status.call_args.args[5]["status"]
    assert status["phase"] == "completed"
    assert status["snapshots"] == ["pg-2-1", "pg-2-wal-1"]
    assert "stoppedAt" in status


def test_mark_failed_with_message_records_error() -> None:
    custom_api = Mock()

    BackupStatusWriter(custom_api=custom_api).mark_failed(_backup(), message="cluster 'pg' not found")

    status = custom_api.patch_namespaced_custom_object_status.call_args.args[5]["status"]
    assert status == {"phase": "failed", "error": "cluster 'pg' not found", "stoppedAt": status["stoppedAt"]}
