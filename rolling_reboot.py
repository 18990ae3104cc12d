#!/usr/bin/env python3.9
"""
Kubernetes Rolling Reboot

Drains, reboots and returns to service every node of a role, with at most
--max-nodes nodes in maintenance at any time:

1. Select the nodes of the role and stamp each with a retirement label
   holding this run's token (before touching any of them)
2. Cycle each node: drain -> wait for volumes to detach -> reboot ->
   wait for Ready -> uncordon -> clear the retirement label
3. Admit the next node as soon as any cycle finishes

The retirement label is the only state this tool keeps. If a run is
interrupted, the nodes it did not finish still carry the token and
`--resume <token>` picks up exactly those nodes.

Labels are written last-writer-wins: run one rolling reboot per role at a
time.
"""

import re
import shlex
import shutil
import subprocess
import sys
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

import click
import pendulum
from loguru import logger

from kube_controller import (
    DEFAULT_LABEL_KEY,
    KubeController,
    KubeNode,
    RetryExhaustedError,
    RetryHarness,
    role_selector,
)
from node_cycler import (
    DEFAULT_DRAIN_TIMEOUT_PER_NODE,
    AbortSignal,
    NodeCycler,
    NodeCycleStatus,
    PollIntervals,
    RunAborted,
)
from remote_host import DEFAULT_AGENT_SERVICE, DEFAULT_CONNECT_TIMEOUT, RemoteHost

CONSOLE_FORMAT = (
    "<cyan>{time:YYYY-MM-DDTHH:mm:ss}</cyan> | <level>{level: <8}</level> | "
    "<magenta>{extra[node]}</magenta> | <level>{message}</level>"
)
SHIPPER_FORMAT = "{time:YYYY-MM-DDTHH:mm:ssZ} | {level: <8} | {extra[node]} | {message}"

# Kubernetes label value syntax
LABEL_VALUE_PATTERN = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?$")


def new_run_token() -> str:
    """Correlation token for a fresh run: the current UTC time in epoch seconds."""
    return str(pendulum.now("UTC").int_timestamp)


def default_drain_timeout(max_nodes: int) -> int:
    """
    Drain timeout scaled by concurrency.

    Nodes draining at the same time compete for the same disruption budgets,
    so each gets a proportionally longer window.
    """
    return DEFAULT_DRAIN_TIMEOUT_PER_NODE * max_nodes


# ==================== Target Selection ====================


class NodeLister:
    """Finds the nodes of a role, optionally only those carrying a run token."""

    def __init__(self, controller: KubeController, label_key: str = DEFAULT_LABEL_KEY):
        self.controller = controller
        self.label_key = label_key

    def list(self, role: str, token: Optional[str] = None) -> List[KubeNode]:
        selector = role_selector(role, self.label_key, token)
        nodes = self.controller.list_nodes(selector)
        logger.info(f"Selector '{selector}' matched {len(nodes)} node(s)")
        return nodes


class RetirementMarker:
    """Stamps target nodes with the retirement label before any work starts."""

    def __init__(self, controller: KubeController, label_key: str = DEFAULT_LABEL_KEY):
        self.controller = controller
        self.label_key = label_key

    def mark(self, nodes: List[KubeNode], token: str) -> None:
        """
        Label every node with the run token.

        An existing retirement label is overwritten, so marking twice is
        harmless.

        Args:
            nodes: Nodes selected for this run
            token: Run correlation token
        """
        for node in nodes:
            existing = node.retirement_token(self.label_key)
            if existing and existing != token:
                logger.bind(node=node.name).warning(
                    f"Overwriting {self.label_key}={existing} from an earlier run"
                )
            self.controller.set_node_label(node.name, self.label_key, token)
            logger.bind(node=node.name).info(f"Marked {self.label_key}={token}")


# ==================== Scheduling ====================


class BoundedScheduler:
    """Runs one node cycle per node, never more than max_nodes at once."""

    def __init__(
        self,
        run_cycle: Callable[[str], NodeCycleStatus],
        max_nodes: int = 1,
        abort: Optional[AbortSignal] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            run_cycle: Runs one node's full cycle (usually NodeCycler.run)
            max_nodes: Maximum number of cycles in flight
            abort: Shared abort signal, tripped when a cycle fails fatally
        """
        if max_nodes < 1:
            raise ValueError("max_nodes must be at least 1")

        self.run_cycle = run_cycle
        self.max_nodes = max_nodes
        self.abort = abort or AbortSignal()
        self.results: Dict[str, NodeCycleStatus] = {}
        self.peak_in_flight = 0

        self._slots = threading.BoundedSemaphore(max_nodes)
        self._lock = threading.Lock()
        self._active = 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def _run_job(self, node_name: str) -> NodeCycleStatus:
        with self._lock:
            self._active += 1
            self.peak_in_flight = max(self.peak_in_flight, self._active)
        try:
            return self.run_cycle(node_name)
        finally:
            with self._lock:
                self._active -= 1
            self._slots.release()

    def _reap(self, done: List[Future], in_flight: Dict[Future, str]) -> None:
        """Collect finished cycles; abort the run if any of them failed."""
        failure: Optional[BaseException] = None
        for future in done:
            node_name = in_flight.pop(future)
            error = future.exception()
            if error is None:
                self.results[node_name] = future.result()
            elif failure is None:
                failure = error
                logger.bind(node=node_name).critical(f"Cycle failed: {error}")
                self.abort.trip(f"{node_name}: {error}")

        if failure is not None:
            raise failure

    def _settle(self, in_flight: Dict[Future, str]) -> None:
        """Wait for aborted cycles to stop and record how each one ended."""
        if not in_flight:
            return
        logger.info(f"Waiting for {len(in_flight)} in-flight cycle(s) to stop")
        wait(in_flight)
        for future, node_name in in_flight.items():
            error = future.exception()
            if error is None:
                self.results[node_name] = future.result()
            elif not isinstance(error, RunAborted):
                logger.bind(node=node_name).error(f"Cycle failed during abort: {error}")
        in_flight.clear()

    def run(self, node_names: List[str]) -> Dict[str, NodeCycleStatus]:
        """
        Cycle the given nodes in order.

        When max_nodes cycles are in flight, waits for any of them to finish
        before admitting the next node, then waits for the rest at the end.

        Args:
            node_names: Nodes to cycle, in dispatch order

        Returns:
            Dictionary mapping node name to its final NodeCycleStatus.

        Raises:
            Whatever a cycle raised first (normally RetryExhaustedError).
            The remaining cycles are aborted.
        """
        if not node_names:
            return self.results

        in_flight: Dict[Future, str] = {}
        pool = ThreadPoolExecutor(
            max_workers=self.max_nodes, thread_name_prefix="node-cycle"
        )
        try:
            for node_name in node_names:
                if len(in_flight) >= self.max_nodes:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    self._reap(list(done), in_flight)

                self._slots.acquire()
                logger.bind(node=node_name).debug(
                    f"Admitted ({len(in_flight) + 1}/{self.max_nodes} slots in use)"
                )
                in_flight[pool.submit(self._run_job, node_name)] = node_name

            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                self._reap(list(done), in_flight)
        except BaseException:
            self.abort.trip("scheduler stopped")
            # In-flight cycles notice the abort at their next wait
            self._settle(in_flight)
            raise
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return self.results


class ResumeController:
    """Re-targets an interrupted run from the nodes still carrying its token."""

    def __init__(self, lister: NodeLister, scheduler: BoundedScheduler):
        self.lister = lister
        self.scheduler = scheduler

    def resume(self, role: str, token: str) -> Dict[str, NodeCycleStatus]:
        nodes = self.lister.list(role, token)
        if not nodes:
            logger.info(f"No {role} nodes carry token {token}, nothing to resume")
            return {}

        logger.info(
            f"Resuming run {token}: {len(nodes)} node(s) left: "
            f"{', '.join(node.name for node in nodes)}"
        )
        return self.scheduler.run([node.name for node in nodes])


def run_rolling_reboot(
    controller: KubeController,
    remote: RemoteHost,
    role: str,
    token: str,
    resume: bool = False,
    max_nodes: int = 1,
    drain_timeout: Optional[float] = None,
    label_key: str = DEFAULT_LABEL_KEY,
    intervals: Optional[PollIntervals] = None,
    abort: Optional[AbortSignal] = None,
) -> Dict[str, NodeCycleStatus]:
    """
    Run (or resume) a rolling reboot of every node of a role.

    Args:
        controller: Kubernetes controller
        remote: SSH runner for reboots and liveness checks
        role: Node role to cycle
        token: Run token (new for a fresh run, the earlier one when resuming)
        resume: If True, only target nodes already carrying the token and skip labeling
        max_nodes: Maximum number of nodes in maintenance at once
        drain_timeout: Drain timeout in seconds (default: 600 x max_nodes)
        label_key: Retirement label key
        intervals: Poll intervals for the waiting phases
        abort: Shared abort signal

    Returns:
        Dictionary mapping node name to its final NodeCycleStatus.
    """
    abort = abort or AbortSignal()
    if drain_timeout is None:
        drain_timeout = default_drain_timeout(max_nodes)

    cycler = NodeCycler(
        controller,
        remote,
        drain_timeout=drain_timeout,
        label_key=label_key,
        intervals=intervals,
        abort=abort,
    )
    scheduler = BoundedScheduler(cycler.run, max_nodes=max_nodes, abort=abort)
    lister = NodeLister(controller, label_key)

    if resume:
        return ResumeController(lister, scheduler).resume(role, token)

    nodes = lister.list(role)
    if not nodes:
        logger.info(f"No {role} nodes found, nothing to do")
        return {}

    # Label everything first so an interrupted run can always be resumed
    RetirementMarker(controller, label_key).mark(nodes, token)
    return scheduler.run([node.name for node in nodes])


def log_summary(results: Dict[str, NodeCycleStatus]) -> None:
    degraded = sorted(name for name, status in results.items() if status.degraded)
    logger.info(
        f"{len(results)} node(s) cycled, {len(degraded)} with forced pod deletion"
    )
    for node_name in degraded:
        logger.bind(node=node_name).warning("Completed after forced pod deletion")


# ==================== Logging ====================


def configure_logging(verbose: int) -> str:
    """Send logs to stderr; returns the level in use."""
    log_level = "INFO" if verbose == 0 else "DEBUG"
    logger.remove()
    logger.configure(extra={"node": "-"})
    logger.add(sys.stderr, level=log_level, format=CONSOLE_FORMAT)
    return log_level


@contextmanager
def log_shipper(command: Optional[str], level: str = "INFO") -> Iterator[Optional[subprocess.Popen]]:
    """
    Stream log lines into an external log-shipping process.

    The process reads one log line per line on stdin. It is stopped and its
    sink removed on every exit path: stdin is closed so it can flush, then it
    is terminated, then killed if it still hangs around.

    Args:
        command: Shell-style command line of the shipper, or None for no shipping
        level: Minimum level to ship
    """
    if not command:
        yield None
        return

    proc = subprocess.Popen(shlex.split(command), stdin=subprocess.PIPE, text=True)
    logger.debug(f"Started log shipper (pid {proc.pid}): {command}")

    def ship(message) -> None:
        proc.stdin.write(str(message))
        proc.stdin.flush()

    sink_id = logger.add(ship, level=level, format=SHIPPER_FORMAT, colorize=False)
    try:
        yield proc
    finally:
        logger.remove(sink_id)
        try:
            proc.stdin.close()
        except BrokenPipeError:
            logger.debug("Log shipper had already closed its input")
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        logger.debug(f"Log shipper exited with status {proc.returncode}")


# ==================== CLI ====================


@click.command()
@click.option(
    "--context",
    type=str,
    default=None,
    help="kubeconfig context to use (default: current context)",
)
@click.option(
    "--role",
    "-r",
    type=str,
    required=True,
    help="Node role to cycle, matched as node-role.kubernetes.io/<role> (required)",
)
@click.option(
    "--resume",
    "resume_token",
    type=str,
    default=None,
    help="Resume an interrupted run: cycle only the nodes of --role still labeled with this token",
)
@click.option(
    "--max-nodes",
    "-m",
    type=int,
    default=1,
    help="Maximum number of nodes in maintenance at once",
    show_default=True,
)
@click.option(
    "--drain-timeout",
    type=int,
    default=None,
    help="Seconds to wait for a drain before force-deleting pods (default: 600 x --max-nodes)",
)
@click.option(
    "--label-key",
    type=str,
    default=DEFAULT_LABEL_KEY,
    help="Label used to mark nodes in maintenance",
    show_default=True,
)
@click.option(
    "--agent-service",
    type=str,
    default=DEFAULT_AGENT_SERVICE,
    help="systemd unit that must be active after a reboot",
    show_default=True,
)
@click.option(
    "--ssh-user",
    type=str,
    default=None,
    help="Remote user for ssh (default: ssh configuration)",
)
@click.option(
    "--ssh-connect-timeout",
    type=int,
    default=DEFAULT_CONNECT_TIMEOUT,
    help="Seconds before ssh gives up reaching a node",
    show_default=True,
)
@click.option(
    "--proxy",
    type=str,
    default=None,
    help="Outbound proxy URL for the Kubernetes API (e.g. http://proxy:3128)",
)
@click.option(
    "--log-sink-command",
    type=str,
    default=None,
    help="Command that receives log lines on stdin for shipping elsewhere",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Don't label, drain, reboot or uncordon anything",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v for DEBUG)",
)
def main(
    context: Optional[str],
    role: str,
    resume_token: Optional[str],
    max_nodes: int,
    drain_timeout: Optional[int],
    label_key: str,
    agent_service: str,
    ssh_user: Optional[str],
    ssh_connect_timeout: int,
    proxy: Optional[str],
    log_sink_command: Optional[str],
    dry_run: bool,
    verbose: int,
) -> None:
    """
    Rolling reboot of Kubernetes nodes, a bounded number at a time.

    Every node of the role is labeled with a run token, then drained,
    rebooted, waited on until Ready and uncordoned. The label is removed
    when a node is done, so an interrupted run can be resumed with the
    token it printed at start-up.

    Examples:

        # Reboot all workers, one at a time
        python rolling_reboot.py --role worker

        # Three at a time, 20 minute drain timeout
        python rolling_reboot.py --role worker --max-nodes 3 --drain-timeout 1200

        # Pick up an interrupted run
        python rolling_reboot.py --role worker --resume 1760000000

        # See what would happen
        python rolling_reboot.py --role worker --dry-run
    """
    log_level = configure_logging(verbose)

    # Validate parameters
    if max_nodes < 1:
        logger.error("Max nodes must be at least 1")
        sys.exit(1)

    if drain_timeout is not None and drain_timeout < 1:
        logger.error("Drain timeout must be at least 1 second")
        sys.exit(1)

    if not LABEL_VALUE_PATTERN.match(role):
        logger.error(f"Invalid role '{role}'")
        sys.exit(1)

    if resume_token is not None and not LABEL_VALUE_PATTERN.match(resume_token):
        logger.error(f"Invalid resume token '{resume_token}'")
        sys.exit(1)

    if shutil.which("ssh") is None:
        logger.error("ssh not found on PATH")
        sys.exit(1)

    if log_sink_command:
        try:
            sink_program = shlex.split(log_sink_command)[0]
        except (ValueError, IndexError):
            logger.error(f"Invalid log sink command '{log_sink_command}'")
            sys.exit(1)
        if shutil.which(sink_program) is None:
            logger.error(f"Log sink program '{sink_program}' not found on PATH")
            sys.exit(1)

    if drain_timeout is None:
        drain_timeout = default_drain_timeout(max_nodes)

    token = resume_token or new_run_token()
    abort = AbortSignal()

    with log_shipper(log_sink_command, level=log_level):
        logger.info(f"Starting rolling reboot of '{role}' nodes")
        logger.info(f"  Run token: {token}{' (resuming)' if resume_token else ''}")
        logger.info(f"  Max concurrent nodes: {max_nodes}")
        logger.info(f"  Drain timeout: {drain_timeout}s")
        logger.info(f"  Dry run: {dry_run}")
        if not resume_token:
            logger.info(f"  To resume if interrupted: --role {role} --resume {token}")

        controller = KubeController.from_kubeconfig(
            context=context,
            proxy=proxy,
            retry=RetryHarness(sleep=abort.sleep),
            sleep=abort.sleep,
            dry_run=dry_run,
        )
        remote = RemoteHost(
            user=ssh_user,
            connect_timeout=ssh_connect_timeout,
            agent_service=agent_service,
            dry_run=dry_run,
        )

        try:
            results = run_rolling_reboot(
                controller,
                remote,
                role=role,
                token=token,
                resume=resume_token is not None,
                max_nodes=max_nodes,
                drain_timeout=drain_timeout,
                label_key=label_key,
                abort=abort,
            )
        except RetryExhaustedError as e:
            logger.critical(f"Aborting run: {e}")
            logger.error(f"Unfinished nodes keep {label_key}={token}; resume with --resume {token}")
            sys.exit(1)
        except KeyboardInterrupt:
            abort.trip("interrupted")
            logger.warning(f"Interrupted; resume with --role {role} --resume {token}")
            sys.exit(130)

        log_summary(results)
        logger.success(f"Rolling reboot of '{role}' nodes complete")


if __name__ == "__main__":
    main()
