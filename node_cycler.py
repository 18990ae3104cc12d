#!/usr/bin/env python3.9
"""
Per-Node Maintenance Cycle

Drives a single node through the maintenance sequence:

    start -> draining -> awaiting_volume_detach -> rebooting
          -> awaiting_ready -> uncordoned -> label_cleared

Each state names the work still pending for the node; the cycle performs
that work and moves to the single successor state. There is no failure
state: a drain that times out or errors escalates to forced pod deletion,
and the waiting phases poll until they succeed. The only way out of a cycle
before label_cleared is an exception (a fatal retry exhaustion, or
RunAborted when another node's cycle hit one).
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import pendulum
from loguru import logger

from kube_controller import (
    DEFAULT_LABEL_KEY,
    DrainTimeout,
    KubeController,
    RetryExhaustedError,
)
from remote_host import RemoteHost

DEFAULT_DRAIN_TIMEOUT_PER_NODE = 600  # seconds, multiplied by max concurrent nodes


class RunAborted(Exception):
    """Another node's cycle failed fatally; this cycle stops where it is."""


class AbortSignal:
    """Run-wide abort flag shared by every node cycle."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def trip(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def tripped(self) -> bool:
        return self._event.is_set()

    def sleep(self, seconds: float) -> None:
        """Sleep, waking early with RunAborted if the run is aborted meanwhile."""
        if self._event.wait(seconds):
            raise RunAborted(self.reason or "run aborted")


# ==================== State Machine ====================


class CycleState(Enum):
    """States of a node's maintenance cycle."""

    START = "start"
    DRAINING = "draining"
    AWAITING_VOLUME_DETACH = "awaiting_volume_detach"
    REBOOTING = "rebooting"
    AWAITING_READY = "awaiting_ready"
    UNCORDONED = "uncordoned"
    LABEL_CLEARED = "label_cleared"  # terminal

    @property
    def is_terminal(self) -> bool:
        return self is CycleState.LABEL_CLEARED


TRANSITIONS: Dict[CycleState, CycleState] = {
    CycleState.START: CycleState.DRAINING,
    CycleState.DRAINING: CycleState.AWAITING_VOLUME_DETACH,
    CycleState.AWAITING_VOLUME_DETACH: CycleState.REBOOTING,
    CycleState.REBOOTING: CycleState.AWAITING_READY,
    CycleState.AWAITING_READY: CycleState.UNCORDONED,
    CycleState.UNCORDONED: CycleState.LABEL_CLEARED,
}


def next_state(state: CycleState) -> CycleState:
    """Return the successor of a state; the terminal state has none."""
    if state.is_terminal:
        raise ValueError(f"{state.value} is terminal")
    return TRANSITIONS[state]


@dataclass
class NodeCycleStatus:
    """Tracks one node's progress through its maintenance cycle."""

    node_name: str
    state: CycleState = CycleState.START
    started_at: Optional[pendulum.DateTime] = None
    finished_at: Optional[pendulum.DateTime] = None
    forced_deletion: bool = False

    @property
    def degraded(self) -> bool:
        """Completed, but only after pods were force-deleted."""
        return self.state.is_terminal and self.forced_deletion

    @property
    def elapsed(self) -> Optional[pendulum.Duration]:
        if not self.started_at:
            return None
        return (self.finished_at or pendulum.now()) - self.started_at

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "node_name": self.node_name,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "forced_deletion": self.forced_deletion,
            "degraded": self.degraded,
        }


@dataclass
class PollIntervals:
    """Seconds between checks in each waiting phase."""

    volume_detach: float = 1
    reboot: float = 15
    readiness: float = 10


# ==================== Phases ====================


class DrainExecutor:
    """Evicts a node's workload, escalating to forced pod deletion."""

    def __init__(self, controller: KubeController, timeout: float):
        self.controller = controller
        self.timeout = timeout

    def execute(self, node_name: str) -> bool:
        """
        Drain a node.

        A timeout or any other drain error is not retried: every pod on the
        node is force-deleted once and the cycle moves on whatever the
        outcome of the deletion.

        Args:
            node_name: Node to drain

        Returns:
            True if forced deletion was needed, False for a clean drain.
        """
        log = logger.bind(node=node_name)
        log.info(f"Draining (timeout: {self.timeout:.0f}s)")
        try:
            self.controller.drain_node(node_name, self.timeout)
            log.success("Drained")
            return False
        except DrainTimeout as e:
            log.warning(f"{e}; force-deleting pods")
        except (RunAborted, RetryExhaustedError):
            raise
        except Exception as e:
            log.error(f"Drain failed ({e}); force-deleting pods")

        deleted = self.controller.force_delete_pods(node_name)
        log.warning(f"Force-deleted {deleted} pod(s)")
        return True


class VolumeWatcher:
    """Waits until no volume attachment references the node."""

    def __init__(
        self,
        controller: KubeController,
        interval: float = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.controller = controller
        self.interval = interval
        self.sleep = sleep

    def wait(self, node_name: str) -> None:
        log = logger.bind(node=node_name)
        reported = None
        while True:
            attached = self.controller.count_volume_attachments(node_name)
            if attached == 0:
                log.success("All volumes detached")
                return
            if attached != reported:
                log.info(f"Waiting for {attached} volume attachment(s) to be released")
                reported = attached
            self.sleep(self.interval)


class RebootExecutor:
    """Reboots the host and waits for its maintenance agent to come back."""

    def __init__(
        self,
        remote: RemoteHost,
        interval: float = 15,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.remote = remote
        self.interval = interval
        self.sleep = sleep

    def execute(self, node_name: str) -> None:
        log = logger.bind(node=node_name)
        log.info("Rebooting")
        self.remote.reboot(node_name)

        # Sleep before the first check so the host has gone down
        while True:
            self.sleep(self.interval)
            if self.remote.is_agent_active(node_name):
                log.success(f"Back up, {self.remote.agent_service} is active")
                return
            log.debug(f"{self.remote.agent_service} not active yet")


class ReadinessWatcher:
    """Waits for the node to report Ready, then makes it schedulable again."""

    def __init__(
        self,
        controller: KubeController,
        interval: float = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.controller = controller
        self.interval = interval
        self.sleep = sleep

    def wait(self, node_name: str) -> None:
        log = logger.bind(node=node_name)
        log.info("Waiting for node to report Ready")
        while True:
            node = self.controller.get_node(node_name)
            if node.ready:
                log.info(f"Status {node.status}")
                break
            log.debug(f"Status {node.status}")
            self.sleep(self.interval)

        self.controller.uncordon_node(node_name)
        log.success("Uncordoned")


# ==================== Node Cycler ====================


class NodeCycler:
    """Runs the maintenance state machine for one node at a time."""

    def __init__(
        self,
        controller: KubeController,
        remote: RemoteHost,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_PER_NODE,
        label_key: str = DEFAULT_LABEL_KEY,
        intervals: Optional[PollIntervals] = None,
        abort: Optional[AbortSignal] = None,
    ):
        """
        Initialize the node cycler.

        Args:
            controller: Kubernetes controller
            remote: SSH runner for reboot and liveness checks
            drain_timeout: Seconds allowed for a drain before forced deletion
            label_key: Retirement label cleared once the cycle completes
            intervals: Poll intervals for the waiting phases
            abort: Shared abort signal; every wait wakes up on it
        """
        self.controller = controller
        self.label_key = label_key
        self.abort = abort or AbortSignal()
        intervals = intervals or PollIntervals()

        self.drain = DrainExecutor(controller, drain_timeout)
        self.volumes = VolumeWatcher(controller, intervals.volume_detach, self.abort.sleep)
        self.reboot = RebootExecutor(remote, intervals.reboot, self.abort.sleep)
        self.readiness = ReadinessWatcher(controller, intervals.readiness, self.abort.sleep)

        self._actions: Dict[CycleState, Callable[[NodeCycleStatus], None]] = {
            CycleState.START: self._start,
            CycleState.DRAINING: self._drain,
            CycleState.AWAITING_VOLUME_DETACH: self._await_volumes,
            CycleState.REBOOTING: self._reboot,
            CycleState.AWAITING_READY: self._await_ready,
            CycleState.UNCORDONED: self._clear_label,
        }

    def run(self, node_name: str) -> NodeCycleStatus:
        """
        Cycle a node through every maintenance phase.

        Args:
            node_name: Node to cycle (must already carry the retirement label)

        Returns:
            NodeCycleStatus in the label_cleared state.
        """
        status = NodeCycleStatus(node_name=node_name, started_at=pendulum.now())
        log = logger.bind(node=node_name)

        try:
            while not status.state.is_terminal:
                if self.abort.tripped:
                    raise RunAborted(self.abort.reason or "run aborted")
                self._actions[status.state](status)
                following = next_state(status.state)
                log.debug(f"{status.state.value} -> {following.value}")
                status.state = following
        except RunAborted:
            log.warning(
                f"Aborted in state {status.state.value}; {self.label_key} label kept for resume"
            )
            raise

        status.finished_at = pendulum.now()
        outcome = "completed (pods were force-deleted)" if status.degraded else "completed"
        log.success(f"Maintenance {outcome} in {status.elapsed.in_words()}")
        return status

    def _start(self, status: NodeCycleStatus) -> None:
        logger.bind(node=status.node_name).info("Starting maintenance cycle")

    def _drain(self, status: NodeCycleStatus) -> None:
        status.forced_deletion = self.drain.execute(status.node_name)

    def _await_volumes(self, status: NodeCycleStatus) -> None:
        self.volumes.wait(status.node_name)

    def _reboot(self, status: NodeCycleStatus) -> None:
        self.reboot.execute(status.node_name)

    def _await_ready(self, status: NodeCycleStatus) -> None:
        self.readiness.wait(status.node_name)

    def _clear_label(self, status: NodeCycleStatus) -> None:
        self.controller.clear_node_label(status.node_name, self.label_key)
        logger.bind(node=status.node_name).info(f"Cleared {self.label_key} label")
