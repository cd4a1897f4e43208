from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from pgfleet.fencing import (
    AlreadyFencedError,
    ConflictingFenceStateError,
    FencedInstancesSyntaxError,
    FenceUpdateConflictError,
    FencingController,
    FencingError,
    FencingTargetNotFoundError,
    add_fenced_instance,
    get_fenced_instances,
    is_pod_ready,
    remove_fenced_instance,
    set_fenced_instances,
)
from pgfleet.models import API_GROUP, CLUSTER_PLURAL, FENCED_INSTANCES_ANNOTATION


def _cluster_body(annotations: dict[str, str] | None = None) -> dict:
    return {
        "apiVersion": "postgresql.pgfleet.io/v1",
        "kind": "Cluster",
        "metadata": {"name": "pg", "namespace": "db", "annotations": annotations or {}},
        "spec": {"instances": 3},
    }


def _pod(name: str, *, ready: bool = True) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace="db"),
        status=SimpleNamespace(conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")]),
    )


def _controller(custom_api, *, core_api: Mock | None = None, retries: int = 5) -> FencingController:
    if core_api is None:
        core_api = Mock()
        core_api.read_namespaced_pod.return_value = _pod("pg-2")
    return FencingController(custom_api=custom_api, core_api=core_api, max_conflict_retries=retries)


def _stored_annotations(custom_api) -> dict[str, str]:
    return custom_api.stored(API_GROUP, CLUSTER_PLURAL, "db", "pg")["metadata"].get("annotations") or {}


def test_get_fenced_instances_with_missing_annotation_returns_empty_set() -> None:
    assert get_fenced_instances({}) == set()
    assert get_fenced_instances(None) == set()


def test_get_fenced_instances_with_invalid_json_raises_syntax_error() -> None:
    with pytest.raises(FencedInstancesSyntaxError, match="wrong syntax"):
        get_fenced_instances({FENCED_INSTANCES_ANNOTATION: "[pg-1"})


def test_get_fenced_instances_with_non_list_payload_raises_syntax_error() -> None:
    with pytest.raises(FencedInstancesSyntaxError, match="JSON list of strings"):
        get_fenced_instances({FENCED_INSTANCES_ANNOTATION: '{"pg-1": true}'})


def test_set_fenced_instances_with_unsorted_set_writes_sorted_json_list() -> None:
    annotations: dict[str, str] = {}

    set_fenced_instances(annotations, {"pg-3", "pg-1"})

    assert annotations[FENCED_INSTANCES_ANNOTATION] == '["pg-1", "pg-3"]'


def test_set_fenced_instances_with_empty_set_removes_annotation() -> None:
    annotations = {FENCED_INSTANCES_ANNOTATION: '["pg-1"]', "other": "kept"}

    set_fenced_instances(annotations, set())

    assert annotations == {"other": "kept"}


def test_add_fenced_instance_with_wildcard_present_reports_unchanged() -> None:
    annotations = {FENCED_INSTANCES_ANNOTATION: '["*"]'}

    assert add_fenced_instance("pg-1", annotations) is False
    assert annotations[FENCED_INSTANCES_ANNOTATION] == '["*"]'


def test_add_fenced_instance_with_wildcard_replaces_individual_members() -> None:
    annotations = {FENCED_INSTANCES_ANNOTATION: '["pg-1"]'}

    assert add_fenced_instance("*", annotations) is True
    assert json.loads(annotations[FENCED_INSTANCES_ANNOTATION]) == ["*"]


def test_remove_fenced_instance_with_wildcard_fence_refuses_single_member() -> None:
    annotations = {FENCED_INSTANCES_ANNOTATION: '["*"]'}

    with pytest.raises(FencingError, match="all instances are fenced"):
        remove_fenced_instance("pg-1", annotations)


def test_remove_fenced_instance_with_unfenced_member_reports_unchanged() -> None:
    annotations = {FENCED_INSTANCES_ANNOTATION: '["pg-1"]'}

    assert remove_fenced_instance("pg-2", annotations) is False
    assert remove_fenced_instance("pg-1", annotations) is True
    assert FENCED_INSTANCES_ANNOTATION not in annotations


def test_is_pod_ready_with_missing_conditions_returns_false() -> None:
    assert is_pod_ready(SimpleNamespace(status=SimpleNamespace(conditions=None))) is False
    assert is_pod_ready(_pod("pg-1", ready=True)) is True
    assert is_pod_ready(_pod("pg-1", ready=False)) is False


def test_request_fence_with_clean_cluster_writes_single_member_annotation(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body({"keep": "me"}))
    controller = _controller(custom_api)

    controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-2")

    assert _stored_annotations(custom_api) == {"keep": "me", FENCED_INSTANCES_ANNOTATION: '["pg-2"]'}


def test_request_fence_with_same_member_already_fenced_raises_already_fenced(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body({FENCED_INSTANCES_ANNOTATION: '["pg-2"]'}))
    controller = _controller(custom_api)

    with pytest.raises(AlreadyFencedError):
        controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-2")
    assert custom_api.replace_calls == 0


def test_request_fence_with_other_member_fenced_raises_conflicting_state(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body({FENCED_INSTANCES_ANNOTATION: '["pg-1"]'}))
    controller = _controller(custom_api)

    with pytest.raises(ConflictingFenceStateError, match=r"\['pg-1'\]"):
        controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-2")
    assert _stored_annotations(custom_api)[FENCED_INSTANCES_ANNOTATION] == '["pg-1"]'


def test_request_fence_with_target_set_plus_extra_member_raises_conflicting_state(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body({FENCED_INSTANCES_ANNOTATION: '["pg-1", "pg-2"]'}))
    controller = _controller(custom_api)

    with pytest.raises(ConflictingFenceStateError):
        controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-2")


def test_request_fence_with_missing_pod_raises_target_not_found(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body())
    core_api = Mock()
    core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
    controller = _controller(custom_api, core_api=core_api)

    with pytest.raises(FencingTargetNotFoundError, match="pg-9"):
        controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-9")
    assert custom_api.replace_calls == 0


def test_request_fence_with_transient_conflicts_retries_until_update_lands(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body())
    custom_api.forced_conflicts = 2
    controller = _controller(custom_api, retries=5)

    controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-2")

    assert custom_api.replace_calls == 3
    assert _stored_annotations(custom_api)[FENCED_INSTANCES_ANNOTATION] == '["pg-2"]'


def test_request_fence_with_conflicts_beyond_retry_bound_raises_update_conflict(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body())
    custom_api.forced_conflicts = 10
    controller = _controller(custom_api, retries=2)

    with pytest.raises(FenceUpdateConflictError, match="3 attempts"):
        controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-2")
    assert custom_api.replace_calls == 3
    assert FENCED_INSTANCES_ANNOTATION not in _stored_annotations(custom_api)


def test_request_fence_with_non_conflict_api_error_propagates(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body())
    custom_api.replace_namespaced_custom_object = Mock(side_effect=ApiException(status=403, reason="Forbidden"))
    controller = _controller(custom_api)

    with pytest.raises(ApiException) as raised:
        controller.request_fence(namespace="db", cluster_name="pg", pod_name="pg-2")
    assert raised.value.status == 403
    assert custom_api.replace_namespaced_custom_object.call_count == 1


def test_request_unfence_with_member_fenced_removes_annotation(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body({FENCED_INSTANCES_ANNOTATION: '["pg-2"]'}))
    controller = _controller(custom_api)

    assert controller.request_unfence(namespace="db", cluster_name="pg", pod_name="pg-2") is True
    assert FENCED_INSTANCES_ANNOTATION not in _stored_annotations(custom_api)


def test_request_unfence_with_member_not_fenced_is_a_no_op(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body())
    controller = _controller(custom_api)

    assert controller.request_unfence(namespace="db", cluster_name="pg", pod_name="pg-2") is False
    assert custom_api.replace_calls == 0


def test_read_fenced_instances_with_annotation_returns_decoded_set(custom_api) -> None:
    custom_api.add(API_GROUP, CLUSTER_PLURAL, _cluster_body({FENCED_INSTANCES_ANNOTATION: '["pg-1", "pg-3"]'}))
    controller = _controller(custom_api)

    assert controller.read_fenced_instances(namespace="db", cluster_name="pg") == {"pg-1", "pg-3"}


def test_is_fenced_in_effect_with_unready_pod_returns_true(custom_api) -> None:
    core_api = Mock()
    core_api.read_namespaced_pod.return_value = _pod("pg-2", ready=False)
    controller = _controller(custom_api, core_api=core_api)

    assert controller.is_fenced_in_effect(namespace="db", pod_name="pg-2") is True


def test_fencing_controller_with_negative_retry_bound_raises_value_error(custom_api) -> None:
    with pytest.raises(ValueError, match="max_conflict_retries"):
        FencingController(custom_api=custom_api, core_api=Mock(), max_conflict_retries=-1)
