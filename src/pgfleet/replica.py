"""
Replication-source configuration of non-primary members.

An ordinary replica streams from the fleet's ``-rw`` service. In a replica
cluster the designated primary instead streams from the external source
named by ``spec.replica.source``. Either way the settings land in
``override.conf`` inside PGDATA next to an empty ``standby.signal``.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from pathlib import Path
import os
import re

from kubernetes import client
from kubernetes.client import ApiException

from .config import OperatorConfig, ensure_directories
from .log import configure_logging, get_logger
from .models import Cluster, ExternalCluster, SecretKeySelector

logger = get_logger(__name__)

POSTGRES_AUTO_CONF = "postgresql.auto.conf"
OVERRIDE_CONF = "override.conf"
STANDBY_SIGNAL = "standby.signal"
RECOVERY_SIGNAL = "recovery.signal"

STREAMING_REPLICA_USER = "streaming_replica"
SERVER_PORT = 5432
CERTIFICATES_DIR = "/controller/certificates"
STREAMING_REPLICA_KEY = f"{CERTIFICATES_DIR}/streaming_replica.key"
STREAMING_REPLICA_CERT = f"{CERTIFICATES_DIR}/streaming_replica.crt"
SERVER_CA_CERT = f"{CERTIFICATES_DIR}/server-ca.crt"

_ARCHIVE_MODE_PATTERN = re.compile(r"^\s*archive_mode\s*=")
_CONNINFO_NEEDS_QUOTING = re.compile(r"[\s'\\]")


class ReplicaConfigurationError(RuntimeError):
    """Base class for replica configuration failures."""


class MissingExternalSourceError(ReplicaConfigurationError):
    """Raised when the replica source is not among the external clusters."""


class ExternalSourceError(ReplicaConfigurationError):
    """Raised when the external source credentials cannot be materialized."""


@dataclass(frozen=True)
class Instance:
    pod_name: str
    namespace: str
    pgdata: Path

    def is_primary(self) -> bool:
        """A member is primary when PGDATA holds no recovery signal file."""
        return not any((self.pgdata / name).exists() for name in (STANDBY_SIGNAL, RECOVERY_SIGNAL))


def primary_conninfo(cluster_name: str, pod_name: str) -> str:
    return (
        f"host={cluster_name}-rw user={STREAMING_REPLICA_USER} port={SERVER_PORT} "
        f"sslkey={STREAMING_REPLICA_KEY} sslcert={STREAMING_REPLICA_CERT} sslrootcert={SERVER_CA_CERT} "
        f"application_name={pod_name} sslmode=verify-ca"
    )


def build_conninfo(parameters: dict[str, str]) -> str:
    return " ".join(f"{key}={_conninfo_value(value)}" for key, value in sorted(parameters.items()))


def remove_archive_mode_from_auto_conf(pgdata: Path) -> bool:
    path = pgdata / POSTGRES_AUTO_CONF
    if not path.exists():
        return False

    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
    kept = [line for line in lines if not _ARCHIVE_MODE_PATTERN.match(line)]
    if len(kept) == len(lines):
        return False
    path.write_text("".join(kept), encoding="utf-8")
    return True


def update_replica_configuration(pgdata: Path, conninfo: str, slot_name: str) -> bool:
    settings = (
        ("primary_conninfo", conninfo),
        ("primary_slot_name", slot_name),
        ("recovery_target_timeline", "latest"),
    )
    content = "# Managed by pgfleet, do not edit\n" + "".join(
        f"{name} = {_conf_value(value)}\n" for name, value in settings
    )
    changed = _write_if_changed(pgdata / OVERRIDE_CONF, content.encode("utf-8"))

    signal = pgdata / STANDBY_SIGNAL
    if not signal.exists():
        signal.touch(mode=0o600)
        changed = True
    return changed


class ExternalSourceResolver:
    """Turns an external cluster definition into a libpq connection string.

    SSL material and the password are read from Secrets in the cluster
    namespace and written below ``secrets_dir``; the password goes into a
    pgpass file whose path is returned alongside the connection string.
    """

    def __init__(self, *, core_api: client.CoreV1Api, secrets_dir: Path, request_timeout_seconds: int = 30) -> None:
        self.core_api = core_api
        self.secrets_dir = secrets_dir
        self.request_timeout_seconds = request_timeout_seconds

    def configure_connection(self, *, namespace: str, server: ExternalCluster) -> tuple[str, str | None]:
        parameters = dict(server.connection_parameters)
        server_dir = self.secrets_dir / _safe_path_component(server.name)

        for selector, parameter, file_name in (
            (server.ssl_cert, "sslcert", "ssl.crt"),
            (server.ssl_key, "sslkey", "ssl.key"),
            (server.ssl_root_cert, "sslrootcert", "ssl-ca.crt"),
        ):
            if selector is None:
                continue
            path = server_dir / file_name
            _write_if_changed(path, self._read_secret_value(namespace=namespace, selector=selector))
            parameters[parameter] = str(path)

        passfile: str | None = None
        if server.password is not None:
            password = self._read_secret_value(namespace=namespace, selector=server.password).decode("utf-8")
            passfile_path = server_dir / "pgpass"
            _write_if_changed(passfile_path, _pgpass_line(parameters, password).encode("utf-8"))
            passfile = str(passfile_path)

        return build_conninfo(parameters), passfile

    def _read_secret_value(self, *, namespace: str, selector: SecretKeySelector) -> bytes:
        try:
            secret = self.core_api.read_namespaced_secret(
                name=selector.name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            raise ExternalSourceError(
                f"cannot read secret '{namespace}/{selector.name}': API status {error.status} "
                f"({error.reason or 'no reason provided'})"
            ) from error

        encoded = (secret.data or {}).get(selector.key)
        if encoded is None:
            raise ExternalSourceError(f"secret '{namespace}/{selector.name}' has no key '{selector.key}'")
        return base64.b64decode(encoded)


class ReplicaConfigurationWriter:
    def __init__(self, *, resolver: ExternalSourceResolver) -> None:
        self.resolver = resolver

    def refresh(self, instance: Instance, cluster: Cluster) -> bool:
        """Write the replication source for ``instance``.

        Returns True when anything on disk changed and PostgreSQL needs a
        reload. Whether the member is primary is read from its own PGDATA,
        not from the cluster status. A primary needs no replication source
        and always reports False.
        """
        purged = remove_archive_mode_from_auto_conf(instance.pgdata)

        designated = cluster.is_replica() and cluster.target_primary == instance.pod_name
        # the designated primary of a replica cluster is a standby of the external source
        if instance.is_primary() and not designated:
            return False

        if designated:
            changed = self._write_for_designated_primary(instance, cluster)
        else:
            changed = update_replica_configuration(
                instance.pgdata,
                primary_conninfo(cluster.name, instance.pod_name),
                cluster.slot_name_for(instance.pod_name),
            )

        if changed or purged:
            logger.info(
                "replica_configuration_changed",
                pod=instance.pod_name,
                cluster=cluster.name,
                archive_mode_purged=purged,
            )
        return changed or purged

    def _write_for_designated_primary(self, instance: Instance, cluster: Cluster) -> bool:
        source = cluster.replica_source or ""
        server = cluster.external_cluster(source)
        if server is None:
            raise MissingExternalSourceError(
                f"replica source '{source}' of cluster '{cluster.namespace}/{cluster.name}' "
                "is not defined in externalClusters"
            )

        conninfo, passfile = self.resolver.configure_connection(namespace=instance.namespace, server=server)
        if passfile:
            conninfo = f"{conninfo} passfile={passfile}"
        return update_replica_configuration(instance.pgdata, conninfo, cluster.slot_name_for(instance.pod_name))


def build_replica_writer(config: OperatorConfig, core_api: client.CoreV1Api) -> ReplicaConfigurationWriter:
    configure_logging(config)
    ensure_directories(config)
    return ReplicaConfigurationWriter(
        resolver=ExternalSourceResolver(
            core_api=core_api,
            secrets_dir=config.external_secrets_dir,
            request_timeout_seconds=config.request_timeout_seconds,
        )
    )


def _conf_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "''")
    return f"'{escaped}'"


def _conninfo_value(value: str) -> str:
    if value and not _CONNINFO_NEEDS_QUOTING.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _pgpass_field(value: str | None) -> str:
    if not value:
        return "*"
    return value.replace("\\", "\\\\").replace(":", "\\:")


def _pgpass_line(parameters: dict[str, str], password: str) -> str:
    fields = (
        _pgpass_field(parameters.get("host")),
        _pgpass_field(parameters.get("port")),
        _pgpass_field(parameters.get("dbname")),
        _pgpass_field(parameters.get("user")),
        password.replace("\\", "\\\\").replace(":", "\\:"),
    )
    return ":".join(fields) + "\n"


def _safe_path_component(value: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    return sanitized or "unknown"


def _write_if_changed(path: Path, content: bytes) -> bool:
    if path.exists() and path.read_bytes() == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.chmod(path, 0o600)
    return True
