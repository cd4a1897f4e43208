from __future__ import annotations

from kubernetes import client
from kubernetes.stream import stream

DEFAULT_PGDATA = "/var/lib/postgresql/data/pgdata"
DEFAULT_CONTAINER = "postgres"


class InstanceProbeError(RuntimeError):
    """Raised when a running instance cannot answer a status query."""


class InstanceStatusClient:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        container: str = DEFAULT_CONTAINER,
        pgdata: str = DEFAULT_PGDATA,
        request_timeout_seconds: int = 30,
    ) -> None:
        self.core_api = core_api
        self.container = container
        self.pgdata = pgdata
        self.request_timeout_seconds = request_timeout_seconds

    def get_pg_controldata(self, pod: client.V1Pod) -> str:
        namespace = pod.metadata.namespace or ""
        pod_name = pod.metadata.name or ""
        try:
            output = stream(
                self.core_api.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                container=self.container,
                command=["pg_controldata", "-D", self.pgdata],
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as error:  # pylint: disable=broad-except
            reason = str(error).strip() or error.__class__.__name__
            raise InstanceProbeError(f"pg_controldata failed on pod {namespace}/{pod_name}: {reason}") from error

        data = output.strip() if isinstance(output, str) else ""
        if not data:
            raise InstanceProbeError(f"pg_controldata returned no output on pod {namespace}/{pod_name}")
        return data
