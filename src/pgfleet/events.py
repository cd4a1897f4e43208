from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes import client

from .log import get_logger
from .models import API_GROUP, API_VERSION, BACKUP_KIND

logger = get_logger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"
DEFAULT_COMPONENT = "pgfleet-operator"


class EventRecorder(Protocol):
    def record(self, *, involved: dict[str, Any], event_type: str, reason: str, message: str) -> None:
        ...


def backup_reference(*, name: str, namespace: str, uid: str) -> dict[str, Any]:
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": BACKUP_KIND,
        "name": name,
        "namespace": namespace,
        "uid": uid,
    }


class KubernetesEventRecorder:
    """Publishes core/v1 Events attached to the involved object.

    Events are observational: a failure to publish one is logged and
    never interrupts the caller.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        component: str = DEFAULT_COMPONENT,
        request_timeout_seconds: int = 30,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.request_timeout_seconds = request_timeout_seconds

    def record(self, *, involved: dict[str, Any], event_type: str, reason: str, message: str) -> None:
        namespace = involved.get("namespace") or "default"
        timestamp = datetime.now(tz=UTC)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{involved.get('name') or 'pgfleet'}.",
                namespace=namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=involved.get("apiVersion"),
                kind=involved.get("kind"),
                name=involved.get("name"),
                namespace=namespace,
                uid=involved.get("uid"),
            ),
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=timestamp,
            last_timestamp=timestamp,
            source=client.V1EventSource(component=self.component),
        )
        try:
            self.core_api.create_namespaced_event(
                namespace=namespace,
                body=event,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as error:  # pylint: disable=broad-except
            logger.warning(
                "event_publish_failed",
                reason=reason,
                involved=involved.get("name"),
                error=str(error).strip() or error.__class__.__name__,
            )
