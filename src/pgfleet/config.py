from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class OperatorConfig:
    requeue_after_seconds: int = int(os.getenv("PGFLEET_REQUEUE_AFTER_SECONDS", "10"))
    fence_conflict_retries: int = int(os.getenv("PGFLEET_FENCE_CONFLICT_RETRIES", "5"))
    request_timeout_seconds: int = int(os.getenv("PGFLEET_REQUEST_TIMEOUT_SECONDS", "30"))
    log_level: str = os.getenv("PGFLEET_LOG_LEVEL", "INFO")
    log_format: str = os.getenv("PGFLEET_LOG_FORMAT", "console")
    external_secrets_dir: Path = Path(os.getenv("PGFLEET_EXTERNAL_SECRETS_DIR", "/controller/external"))
    kubeconfig_path: str | None = os.getenv("PGFLEET_KUBECONFIG")
    context: str | None = os.getenv("PGFLEET_CONTEXT")
    in_cluster: bool = _env_flag("PGFLEET_IN_CLUSTER")


def ensure_directories(config: OperatorConfig) -> None:
    config.external_secrets_dir.mkdir(parents=True, exist_ok=True)
