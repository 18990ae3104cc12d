#!/usr/bin/env python3.9
"""
Kubernetes Control-Plane Access for Rolling Node Maintenance

This module wraps the handful of Kubernetes API calls that a rolling reboot
needs: listing nodes by label, reading node readiness, stamping and clearing
the retirement label, cordoning, draining, force-deleting pods and counting
volume attachments.

Every call that may be retried safely goes through a RetryHarness, which
retries a fixed number of times with a fixed delay. Running out of attempts
raises RetryExhaustedError, which is fatal for the whole run.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from loguru import logger
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

ROLE_LABEL_PREFIX = "node-role.kubernetes.io/"
DEFAULT_LABEL_KEY = "retiring"

RETRY_ATTEMPTS = 12
RETRY_DELAY = 8  # seconds
DRAIN_POLL_INTERVAL = 5  # seconds
DRAIN_REQUEST_TIMEOUT = 30  # seconds, upper bound on one API request during a drain

# Errors worth another attempt against the API server
TRANSIENT_ERRORS = (ApiException, urllib3.exceptions.HTTPError, ConnectionError)


# ==================== Errors ====================


class DrainTimeout(Exception):
    """Evictable pods were still present on the node when the drain deadline passed."""

    def __init__(self, node_name: str, timeout: float, remaining: List[str]):
        self.node_name = node_name
        self.timeout = timeout
        self.remaining = remaining
        super().__init__(
            f"Timed out after {timeout:.0f}s draining {node_name} "
            f"({len(remaining)} pod(s) left)"
        )


class RetryExhaustedError(Exception):
    """A control-plane operation kept failing after every retry attempt."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"'{description}' failed {attempts} times in a row, giving up: {last_error}"
        )


# ==================== Data Classes ====================


@dataclass
class KubeNode:
    """The parts of a Kubernetes node the rolling reboot cares about."""

    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    ready: bool = False
    unschedulable: bool = False

    @classmethod
    def from_api(cls, node: client.V1Node) -> "KubeNode":
        """Build from a V1Node returned by the API."""
        return cls(
            name=node.metadata.name,
            labels=dict(node.metadata.labels or {}),
            ready=is_node_ready(node),
            unschedulable=bool(node.spec and node.spec.unschedulable),
        )

    def retirement_token(self, label_key: str = DEFAULT_LABEL_KEY) -> Optional[str]:
        return self.labels.get(label_key)

    @property
    def status(self) -> str:
        """Status the way kubectl prints it (e.g. 'Ready,SchedulingDisabled')."""
        status = "Ready" if self.ready else "NotReady"
        if self.unschedulable:
            status += ",SchedulingDisabled"
        return status

    def __str__(self) -> str:
        return f"Node {self.name} ({self.status})"


def is_node_ready(node: client.V1Node) -> bool:
    """Check whether the node's Ready condition is True."""
    conditions = (node.status and node.status.conditions) or []
    for condition in conditions:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def is_daemonset_pod(pod: client.V1Pod) -> bool:
    owners = (pod.metadata and pod.metadata.owner_references) or []
    return any(owner.kind == "DaemonSet" for owner in owners)


def is_mirror_pod(pod: client.V1Pod) -> bool:
    annotations = (pod.metadata and pod.metadata.annotations) or {}
    return "kubernetes.io/config.mirror" in annotations


def is_evictable(pod: client.V1Pod) -> bool:
    """Pods a drain has to move off the node (DaemonSet and static pods stay)."""
    return not (is_daemonset_pod(pod) or is_mirror_pod(pod))


def role_selector(
    role: str, label_key: str = DEFAULT_LABEL_KEY, token: Optional[str] = None
) -> str:
    """
    Build the label selector for nodes of a role.

    Args:
        role: Node role (e.g. "worker"), matched as node-role.kubernetes.io/<role>
        label_key: Retirement label key
        token: Optional run token; when given, only nodes still carrying it match

    Returns:
        Label selector string.
    """
    selector = f"{ROLE_LABEL_PREFIX}{role}"
    if token is not None:
        selector += f",{label_key}={token}"
    return selector


def load_api_client(
    context: Optional[str] = None, proxy: Optional[str] = None
) -> client.ApiClient:
    """
    Build an API client from kubeconfig (or in-cluster config as a fallback).

    The proxy is set on the client configuration itself rather than through
    HTTPS_PROXY in the process environment.

    Args:
        context: kubeconfig context to use (default: current context)
        proxy: Outbound proxy URL (e.g. http://proxy.example.com:3128)

    Returns:
        Configured kubernetes ApiClient.
    """
    configuration = client.Configuration()
    try:
        config.load_kube_config(context=context, client_configuration=configuration)
        logger.debug(f"Loaded kubeconfig (context: {context or 'current'})")
    except ConfigException:
        if context:
            raise
        logger.debug("No usable kubeconfig, trying in-cluster configuration")
        config.load_incluster_config(client_configuration=configuration)

    if proxy:
        configuration.proxy = proxy
        logger.debug(f"Using outbound proxy {proxy}")

    return client.ApiClient(configuration)


# ==================== Retry Harness ====================


class RetryHarness:
    """Bounded retry with a fixed delay around a control-plane operation."""

    def __init__(
        self,
        attempts: int = RETRY_ATTEMPTS,
        delay: float = RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the retry harness.

        Args:
            attempts: Total number of attempts before giving up
            delay: Seconds to wait between attempts
            sleep: Function used to wait between attempts
        """
        self.attempts = attempts
        self.delay = delay
        self.sleep = sleep

    def call(self, description: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call fn, retrying transient API errors.

        Args:
            description: Short human-readable name of the operation, for logs
            fn: Operation to run
            *args, **kwargs: Passed through to fn

        Returns:
            Whatever fn returns on its first successful attempt.

        Raises:
            RetryExhaustedError: fn failed on every attempt.
        """

        def log_failure(retry_state) -> None:
            error = retry_state.outcome.exception()
            logger.warning(
                f"{description} failed (attempt {retry_state.attempt_number}/{self.attempts}), "
                f"retrying in {self.delay}s: {error}"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            sleep=self.sleep,
            before_sleep=log_failure,
        )
        try:
            return retrying(fn, *args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(f"{description} failed after {self.attempts} attempts")
            raise RetryExhaustedError(description, self.attempts, last_error) from last_error


# ==================== Kubernetes Controller ====================


class KubeController:
    """Interface to the Kubernetes API for node maintenance."""

    def __init__(
        self,
        api_client: client.ApiClient,
        retry: Optional[RetryHarness] = None,
        sleep: Callable[[float], None] = time.sleep,
        drain_poll_interval: float = DRAIN_POLL_INTERVAL,
        dry_run: bool = False,
    ):
        """
        Initialize the controller.

        Args:
            api_client: Configured kubernetes ApiClient
            retry: RetryHarness for retryable calls (default: 12 attempts, 8s apart)
            sleep: Function used to wait while a drain is in progress
            drain_poll_interval: Seconds between checks for remaining pods while draining
            dry_run: If True, log mutating calls but don't execute them
        """
        self.core = client.CoreV1Api(api_client)
        self.policy = client.PolicyV1Api(api_client)
        self.storage = client.StorageV1Api(api_client)
        self.retry = retry or RetryHarness()
        self.sleep = sleep
        self.drain_poll_interval = drain_poll_interval
        self.dry_run = dry_run

    @classmethod
    def from_kubeconfig(
        cls,
        context: Optional[str] = None,
        proxy: Optional[str] = None,
        **kwargs,
    ) -> "KubeController":
        return cls(load_api_client(context=context, proxy=proxy), **kwargs)

    # ---------- Nodes ----------

    def list_nodes(self, label_selector: str) -> List[KubeNode]:
        """
        List nodes matching a label selector, in the order the API returns them.

        Args:
            label_selector: Kubernetes label selector

        Returns:
            List of KubeNode objects.
        """
        logger.debug(f"Listing nodes with selector '{label_selector}'")
        result = self.retry.call(
            f"list nodes ({label_selector})",
            self.core.list_node,
            label_selector=label_selector,
        )
        nodes = [KubeNode.from_api(node) for node in result.items]
        logger.debug(f"Selector '{label_selector}' matched {len(nodes)} node(s)")
        return nodes

    def get_node(self, node_name: str) -> KubeNode:
        result = self.retry.call(
            f"read node {node_name}", self.core.read_node, node_name
        )
        return KubeNode.from_api(result)

    def set_node_label(self, node_name: str, key: str, value: str) -> None:
        """Set a label on a node, overwriting any existing value."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would label {node_name} with {key}={value}")
            return

        body = {"metadata": {"labels": {key: value}}}
        self.retry.call(
            f"label node {node_name} {key}={value}",
            self.core.patch_node,
            node_name,
            body,
        )
        logger.debug(f"Labeled {node_name} with {key}={value}")

    def clear_node_label(self, node_name: str, key: str) -> None:
        """Remove a label from a node (no-op if it is already gone)."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would remove label {key} from {node_name}")
            return

        # A null value in a merge patch deletes the key
        body = {"metadata": {"labels": {key: None}}}
        self.retry.call(
            f"remove label {key} from node {node_name}",
            self.core.patch_node,
            node_name,
            body,
        )
        logger.debug(f"Removed label {key} from {node_name}")

    def uncordon_node(self, node_name: str) -> None:
        self._set_unschedulable(node_name, False)

    def _set_unschedulable(self, node_name: str, unschedulable: bool) -> None:
        action = "cordon" if unschedulable else "uncordon"
        if self.dry_run:
            logger.info(f"[DRY RUN] Would {action} {node_name}")
            return

        self.retry.call(
            f"{action} node {node_name}",
            self.core.patch_node,
            node_name,
            {"spec": {"unschedulable": unschedulable}},
        )

    # ---------- Pods ----------

    def list_pods_on_node(
        self, node_name: str, request_timeout: Optional[float] = None
    ) -> List[client.V1Pod]:
        """List every pod bound to a node, across all namespaces."""
        result = self.core.list_pod_for_all_namespaces(
            field_selector=f"spec.nodeName={node_name}",
            _request_timeout=request_timeout,
        )
        return list(result.items)

    def evict_pod(self, pod: client.V1Pod, request_timeout: Optional[float] = None) -> bool:
        """
        Request eviction of a pod through the Eviction API.

        Returns:
            True if the eviction was accepted (or the pod is already gone),
            False if a disruption budget refused it for now.
        """
        name = pod.metadata.name
        namespace = pod.metadata.namespace
        body = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace)
        )
        try:
            self.policy.create_namespaced_pod_eviction(
                name=name,
                namespace=namespace,
                body=body,
                _request_timeout=request_timeout,
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return True
            if e.status == 429:
                logger.debug(f"Eviction of {namespace}/{name} refused by disruption budget")
                return False
            raise

    def delete_pod(
        self,
        pod: client.V1Pod,
        grace_period_seconds: int = 0,
        request_timeout: Optional[float] = None,
    ) -> None:
        self.core.delete_namespaced_pod(
            name=pod.metadata.name,
            namespace=pod.metadata.namespace,
            grace_period_seconds=grace_period_seconds,
            body=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds),
            _request_timeout=request_timeout,
        )

    def drain_node(self, node_name: str, timeout: float) -> None:
        """
        Cordon a node and evict its workload, bounded by a timeout.

        DaemonSet-managed and mirror pods are left alone. Evictions refused by
        a disruption budget are requested again on the next poll. Each API
        request is bounded by the time left before the deadline.

        Args:
            node_name: Node to drain
            timeout: Seconds to wait for evictable pods to leave the node

        Raises:
            DrainTimeout: Evictable pods remained when the timeout expired.
            RetryExhaustedError: The cordon failed on every attempt.
            ApiException: The API refused the listing or an eviction.
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would drain {node_name} (timeout: {timeout:.0f}s)")
            return

        self._set_unschedulable(node_name, True)
        deadline = time.monotonic() + timeout

        def request_budget() -> float:
            left = deadline - time.monotonic()
            return max(1.0, min(DRAIN_REQUEST_TIMEOUT, left))

        while True:
            pods = self.list_pods_on_node(node_name, request_timeout=request_budget())
            pending = [p for p in pods if is_evictable(p)]
            if not pending:
                return

            for pod in pending:
                if pod.metadata.deletion_timestamp is None:
                    self.evict_pod(pod, request_timeout=request_budget())

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DrainTimeout(
                    node_name,
                    timeout,
                    [f"{p.metadata.namespace}/{p.metadata.name}" for p in pending],
                )

            logger.debug(f"{len(pending)} pod(s) still on {node_name}, waiting")
            self.sleep(min(self.drain_poll_interval, remaining))

    def force_delete_pods(self, node_name: str) -> int:
        """
        Delete every pod on a node with a zero grace period.

        Failures are logged and not retried.

        Returns:
            Number of pods whose deletion was accepted.
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would force-delete all pods on {node_name}")
            return 0

        try:
            pods = self.list_pods_on_node(node_name, request_timeout=DRAIN_REQUEST_TIMEOUT)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Failed to list pods on {node_name} for forced deletion: {e}")
            return 0

        deleted = 0
        for pod in pods:
            pod_ref = f"{pod.metadata.namespace}/{pod.metadata.name}"
            try:
                self.delete_pod(
                    pod, grace_period_seconds=0, request_timeout=DRAIN_REQUEST_TIMEOUT
                )
                deleted += 1
                logger.debug(f"Force-deleted {pod_ref}")
            except TRANSIENT_ERRORS as e:
                if isinstance(e, ApiException) and e.status == 404:
                    continue
                logger.warning(f"Failed to force-delete {pod_ref}: {e}")
        return deleted

    # ---------- Storage ----------

    def count_volume_attachments(self, node_name: str) -> int:
        """Count VolumeAttachment records that still reference a node."""
        result = self.retry.call(
            "list volume attachments", self.storage.list_volume_attachment
        )
        attached = sum(
            1
            for attachment in result.items
            if attachment.spec and attachment.spec.node_name == node_name
        )
        if self.dry_run and attached:
            # Nothing was drained, so nothing will detach
            logger.info(f"[DRY RUN] {node_name} has {attached} volume attachment(s), not waiting")
            return 0
        return attached
