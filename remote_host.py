#!/usr/bin/env python3.9
"""
Remote Host Commands over SSH

Issues the privileged reboot of a node and checks whether its local
maintenance agent (kubelet by default) is active again afterwards. SSH runs
non-interactively with a short connect timeout so an unreachable host shows
up as "not active yet" instead of a hung prompt.
"""

import subprocess
from typing import List, Optional

from loguru import logger

DEFAULT_AGENT_SERVICE = "kubelet"
DEFAULT_CONNECT_TIMEOUT = 10  # seconds
REBOOT_COMMAND = ["sudo", "systemctl", "reboot"]


class RemoteHost:
    """Runs commands on cluster nodes through ssh."""

    def __init__(
        self,
        user: Optional[str] = None,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
        agent_service: str = DEFAULT_AGENT_SERVICE,
        dry_run: bool = False,
    ):
        """
        Initialize the remote host runner.

        Args:
            user: Remote user (default: ssh's own default)
            connect_timeout: Seconds before ssh gives up reaching a host
            agent_service: systemd unit that must be active after a reboot
            dry_run: If True, log the reboot but don't execute it
        """
        self.user = user
        self.connect_timeout = connect_timeout
        self.agent_service = agent_service
        self.dry_run = dry_run

    def build_ssh_command(self, host: str, remote_command: List[str]) -> List[str]:
        target = f"{self.user}@{host}" if self.user else host
        return [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-o",
            "StrictHostKeyChecking=accept-new",
            target,
            *remote_command,
        ]

    def reboot(self, host: str) -> None:
        """
        Issue a reboot and return without waiting for the host.

        The connection usually drops before ssh gets an exit status, so a
        non-zero exit or a timeout here is expected and only logged.
        """
        cmd = self.build_ssh_command(host, REBOOT_COMMAND)
        logger.debug(f"Running command: {' '.join(cmd)}")

        if self.dry_run:
            logger.info(f"[DRY RUN] Would reboot {host}")
            return

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.connect_timeout * 3,
            )
            if result.returncode != 0:
                logger.debug(
                    f"Reboot command on {host} exited {result.returncode} "
                    f"(expected while the host goes down): {result.stderr.strip()}"
                )
        except subprocess.TimeoutExpired:
            logger.debug(f"Reboot command on {host} timed out (expected while the host goes down)")

    def is_agent_active(self, host: str) -> bool:
        """
        Check whether the maintenance agent reports 'active' on the host.

        Returns:
            True only if `systemctl is-active` printed exactly 'active'.
        """
        if self.dry_run:
            return True

        cmd = self.build_ssh_command(host, ["systemctl", "is-active", self.agent_service])
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.connect_timeout * 3,
            )
        except subprocess.TimeoutExpired:
            logger.debug(f"Liveness check on {host} timed out")
            return False

        state = result.stdout.strip()
        logger.debug(f"{self.agent_service} on {host}: {state or result.stderr.strip() or 'unreachable'}")
        return state == "active"
