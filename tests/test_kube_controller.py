#!/usr/bin/env python3
"""
Tests for the retry harness and the drain primitives of KubeController.

No cluster is needed: the kubernetes API objects are replaced with mocks and
every delay is zero.
"""

from unittest.mock import MagicMock, Mock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from kube_controller import (
    DrainTimeout,
    KubeController,
    KubeNode,
    RetryExhaustedError,
    RetryHarness,
    is_evictable,
    role_selector,
)
from node_cycler import DrainExecutor


def no_sleep(seconds):
    pass


def make_controller(**kwargs):
    """KubeController with mocked API groups and no waiting."""
    controller = KubeController(
        MagicMock(),
        retry=RetryHarness(delay=0, sleep=no_sleep),
        sleep=no_sleep,
        **kwargs,
    )
    controller.core = MagicMock()
    controller.policy = MagicMock()
    controller.storage = MagicMock()
    return controller


def make_pod(name, namespace="default", owner_kind="ReplicaSet", mirror=False):
    annotations = {"kubernetes.io/config.mirror": "abc"} if mirror else None
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations,
            owner_references=[
                client.V1OwnerReference(
                    api_version="apps/v1", kind=owner_kind, name=f"{name}-owner", uid="1"
                )
            ],
        )
    )


def make_api_node(name, ready="True", unschedulable=False, labels=None):
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name, labels=labels),
        spec=client.V1NodeSpec(unschedulable=unschedulable),
        status=client.V1NodeStatus(
            conditions=[client.V1NodeCondition(type="Ready", status=ready)]
        ),
    )


# ---------------------------------------------------------------------------
# RetryHarness
# ---------------------------------------------------------------------------
def test_retry_eleven_failures_then_success():
    """An operation failing 11 times then succeeding completes normally."""
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) <= 11:
            raise ApiException(status=503, reason="Service Unavailable")
        return "ok"

    harness = RetryHarness(sleep=sleeps.append)
    assert harness.call("flaky op", flaky) == "ok"
    assert len(attempts) == 12, f"Expected 12 attempts, got {len(attempts)}"
    assert sleeps == [8] * 11, f"Expected eleven 8s waits, got {sleeps}"


def test_retry_twelve_failures_is_fatal():
    """Twelve consecutive failures raise RetryExhaustedError."""
    error = ApiException(status=500, reason="Internal Server Error")
    operation = Mock(side_effect=error)

    harness = RetryHarness(delay=0, sleep=no_sleep)
    with pytest.raises(RetryExhaustedError) as exc_info:
        harness.call("broken op", operation)

    assert operation.call_count == 12
    assert exc_info.value.attempts == 12
    assert exc_info.value.last_error is error


def test_retry_passes_arguments_through():
    operation = Mock(return_value="done")
    harness = RetryHarness(delay=0, sleep=no_sleep)

    assert harness.call("op", operation, "node01", label_selector="x") == "done"
    operation.assert_called_once_with("node01", label_selector="x")


def test_retry_does_not_retry_programming_errors():
    operation = Mock(side_effect=ValueError("bad body"))
    harness = RetryHarness(delay=0, sleep=no_sleep)

    with pytest.raises(ValueError):
        harness.call("op", operation)
    assert operation.call_count == 1


# ---------------------------------------------------------------------------
# Nodes and labels
# ---------------------------------------------------------------------------
def test_role_selector():
    assert role_selector("worker") == "node-role.kubernetes.io/worker"
    assert (
        role_selector("worker", "retiring", "1760000000")
        == "node-role.kubernetes.io/worker,retiring=1760000000"
    )


def test_kube_node_from_api():
    node = KubeNode.from_api(
        make_api_node("node01", unschedulable=True, labels={"retiring": "42"})
    )
    assert node.ready
    assert node.status == "Ready,SchedulingDisabled"
    assert node.retirement_token() == "42"

    not_ready = KubeNode.from_api(make_api_node("node02", ready="Unknown"))
    assert not not_ready.ready
    assert not_ready.status == "NotReady"


def test_list_nodes_keeps_api_order():
    controller = make_controller()
    controller.core.list_node.return_value = client.V1NodeList(
        items=[make_api_node("node03"), make_api_node("node01")]
    )

    nodes = controller.list_nodes("node-role.kubernetes.io/worker")

    assert [n.name for n in nodes] == ["node03", "node01"]
    controller.core.list_node.assert_called_once_with(
        label_selector="node-role.kubernetes.io/worker"
    )


def test_label_set_and_clear_patches():
    controller = make_controller()

    controller.set_node_label("node01", "retiring", "42")
    controller.clear_node_label("node01", "retiring")

    assert controller.core.patch_node.call_args_list[0].args == (
        "node01",
        {"metadata": {"labels": {"retiring": "42"}}},
    )
    assert controller.core.patch_node.call_args_list[1].args == (
        "node01",
        {"metadata": {"labels": {"retiring": None}}},
    )


def test_label_write_is_retried():
    controller = make_controller()
    controller.core.patch_node.side_effect = [
        ApiException(status=409, reason="Conflict"),
        None,
    ]

    controller.set_node_label("node01", "retiring", "42")
    assert controller.core.patch_node.call_count == 2


def test_dry_run_skips_mutations():
    controller = make_controller(dry_run=True)

    controller.set_node_label("node01", "retiring", "42")
    controller.clear_node_label("node01", "retiring")
    controller.uncordon_node("node01")
    controller.drain_node("node01", 10)
    assert controller.force_delete_pods("node01") == 0

    controller.core.patch_node.assert_not_called()
    controller.policy.create_namespaced_pod_eviction.assert_not_called()


def test_count_volume_attachments():
    controller = make_controller()
    attachments = [
        Mock(spec=["spec"]),
        Mock(spec=["spec"]),
        Mock(spec=["spec"]),
    ]
    attachments[0].spec.node_name = "node01"
    attachments[1].spec.node_name = "node02"
    attachments[2].spec.node_name = "node01"
    controller.storage.list_volume_attachment.return_value = Mock(items=attachments)

    assert controller.count_volume_attachments("node01") == 2
    assert controller.count_volume_attachments("node03") == 0


# ---------------------------------------------------------------------------
# Drain
# ---------------------------------------------------------------------------
def test_daemonset_and_mirror_pods_are_not_evictable():
    assert is_evictable(make_pod("web"))
    assert not is_evictable(make_pod("fluentd", owner_kind="DaemonSet"))
    assert not is_evictable(make_pod("kube-proxy", owner_kind="Node", mirror=True))


def test_drain_waits_for_evicted_pods():
    controller = make_controller()
    web = make_pod("web")
    daemon = make_pod("fluentd", owner_kind="DaemonSet")
    controller.core.list_pod_for_all_namespaces.side_effect = [
        Mock(items=[web, daemon]),
        Mock(items=[daemon]),
    ]

    controller.drain_node("node01", timeout=60)

    controller.core.patch_node.assert_called_once_with(
        "node01", {"spec": {"unschedulable": True}}
    )
    assert controller.policy.create_namespaced_pod_eviction.call_count == 1
    kwargs = controller.policy.create_namespaced_pod_eviction.call_args.kwargs
    assert kwargs["name"] == "web"
    assert kwargs["namespace"] == "default"


def test_cordon_is_retried_before_draining():
    controller = make_controller()
    controller.core.patch_node.side_effect = [
        ApiException(status=503, reason="Service Unavailable"),
        None,
    ]
    controller.core.list_pod_for_all_namespaces.return_value = Mock(items=[])

    forced = DrainExecutor(controller, timeout=60).execute("node01")

    assert forced is False, "A transient cordon failure must not escalate to forced deletion"
    assert controller.core.patch_node.call_count == 2
    controller.core.patch_node.assert_called_with("node01", {"spec": {"unschedulable": True}})
    controller.core.delete_namespaced_pod.assert_not_called()


def test_drain_requests_are_bounded_by_the_deadline():
    controller = make_controller()
    controller.core.list_pod_for_all_namespaces.side_effect = [
        Mock(items=[make_pod("web")]),
        Mock(items=[]),
    ]

    controller.drain_node("node01", timeout=10)

    calls = controller.core.list_pod_for_all_namespaces.call_args_list + [
        controller.policy.create_namespaced_pod_eviction.call_args
    ]
    for call in calls:
        request_timeout = call.kwargs["_request_timeout"]
        assert 0 < request_timeout <= 10, f"Unbounded request: {request_timeout}"


def test_drain_times_out():
    controller = make_controller()
    controller.core.list_pod_for_all_namespaces.return_value = Mock(
        items=[make_pod("stubborn")]
    )

    with pytest.raises(DrainTimeout) as exc_info:
        controller.drain_node("node01", timeout=0)

    assert exc_info.value.remaining == ["default/stubborn"]


def test_eviction_refused_by_disruption_budget():
    controller = make_controller()
    controller.policy.create_namespaced_pod_eviction.side_effect = ApiException(
        status=429, reason="Too Many Requests"
    )
    assert controller.evict_pod(make_pod("web")) is False

    controller.policy.create_namespaced_pod_eviction.side_effect = ApiException(
        status=404, reason="Not Found"
    )
    assert controller.evict_pod(make_pod("web")) is True

    controller.policy.create_namespaced_pod_eviction.side_effect = ApiException(
        status=500, reason="Internal Server Error"
    )
    with pytest.raises(ApiException):
        controller.evict_pod(make_pod("web"))


def test_force_delete_pods_tolerates_failures():
    controller = make_controller()
    controller.core.list_pod_for_all_namespaces.return_value = Mock(
        items=[make_pod("a"), make_pod("b"), make_pod("c")]
    )
    controller.core.delete_namespaced_pod.side_effect = [
        ApiException(status=500, reason="Internal Server Error"),
        None,
        ApiException(status=404, reason="Not Found"),
    ]

    deleted = controller.force_delete_pods("node01")

    assert deleted == 1, f"Expected 1 accepted deletion, got {deleted}"
    assert controller.core.delete_namespaced_pod.call_count == 3
    for call in controller.core.delete_namespaced_pod.call_args_list:
        assert call.kwargs["grace_period_seconds"] == 0


if __name__ == "__main__":
    import sys

    sys.exit(pytest.main([__file__, "-v"]))
