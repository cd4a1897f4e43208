from __future__ import annotations

import copy
from typing import Any

import pytest
from kubernetes.client import ApiException


class FakeCustomObjectsApi:
    """In-memory CustomObjectsApi honouring resourceVersion on replace."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self.forced_conflicts = 0
        self.replace_calls = 0
        self.created: list[str] = []
        self.status_patches: list[dict[str, Any]] = []

    def add(self, group: str, plural: str, body: dict[str, Any]) -> None:
        metadata = body.setdefault("metadata", {})
        metadata.setdefault("resourceVersion", "1")
        self.objects[(group, plural, metadata["namespace"], metadata["name"])] = copy.deepcopy(body)

    def stored(self, group: str, plural: str, namespace: str, name: str) -> dict[str, Any]:
        return self.objects[(group, plural, namespace, name)]

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, **kwargs):
        key = (group, plural, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.objects[key])

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body, **kwargs):
        self.replace_calls += 1
        key = (group, plural, namespace, name)
        current = self.objects[key]
        current_version = int(current["metadata"]["resourceVersion"])
        if self.forced_conflicts:
            self.forced_conflicts -= 1
            current["metadata"]["resourceVersion"] = str(current_version + 1)
            raise ApiException(status=409, reason="Conflict")
        if body["metadata"].get("resourceVersion") != str(current_version):
            raise ApiException(status=409, reason="Conflict")

        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = str(current_version + 1)
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None, **kwargs):
        label_key, _, label_value = (label_selector or "").partition("=")
        items = []
        for (item_group, item_plural, item_namespace, _), body in self.objects.items():
            if (item_group, item_plural, item_namespace) != (group, plural, namespace):
                continue
            labels = body.get("metadata", {}).get("labels") or {}
            if label_key and labels.get(label_key) != label_value:
                continue
            items.append(copy.deepcopy(body))
        return {"items": items}

    def create_namespaced_custom_object(self, group, version, namespace, plural, body, **kwargs):
        name = body["metadata"]["name"]
        if (group, plural, namespace, name) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.add(group, plural, copy.deepcopy(body))
        self.created.append(name)
        return copy.deepcopy(body)

    def patch_namespaced_custom_object_status(self, group, version, namespace, plural, name, body, **kwargs):
        key = (group, plural, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.status_patches.append(copy.deepcopy(body))
        self.objects[key].setdefault("status", {}).update(copy.deepcopy(body["status"]))
        return copy.deepcopy(self.objects[key])


@pytest.fixture
def custom_api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()
