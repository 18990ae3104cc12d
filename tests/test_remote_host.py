#!/usr/bin/env python3
"""
Tests for the ssh transport. subprocess.run is patched; nothing is executed.
"""

import subprocess
from unittest.mock import Mock, patch

from remote_host import RemoteHost


def completed(returncode=0, stdout="", stderr=""):
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


def test_ssh_command_is_non_interactive():
    cmd = RemoteHost(user="ops", connect_timeout=5).build_ssh_command(
        "node01", ["uptime"]
    )

    assert cmd[0] == "ssh"
    assert "BatchMode=yes" in cmd
    assert "ConnectTimeout=5" in cmd
    assert cmd[-2:] == ["ops@node01", "uptime"]


def test_reboot_tolerates_dropped_connection():
    with patch(
        "remote_host.subprocess.run",
        return_value=completed(255, stderr="Connection closed by remote host"),
    ) as run:
        RemoteHost().reboot("node01")

    cmd = run.call_args.args[0]
    assert cmd[-3:] == ["sudo", "systemctl", "reboot"]
    assert run.call_args.kwargs["check"] is False


def test_reboot_tolerates_timeout():
    with patch(
        "remote_host.subprocess.run",
        side_effect=subprocess.TimeoutExpired("ssh", 30),
    ):
        RemoteHost().reboot("node01")


def test_agent_active_only_on_exact_match():
    host = RemoteHost(agent_service="rke2-agent")

    with patch("remote_host.subprocess.run", return_value=completed(0, "active\n")) as run:
        assert host.is_agent_active("node01")
    assert run.call_args.args[0][-3:] == ["systemctl", "is-active", "rke2-agent"]

    with patch("remote_host.subprocess.run", return_value=completed(3, "activating\n")):
        assert not host.is_agent_active("node01")

    with patch("remote_host.subprocess.run", return_value=completed(255, "", "No route to host")):
        assert not host.is_agent_active("node01")

    with patch("remote_host.subprocess.run", side_effect=subprocess.TimeoutExpired("ssh", 30)):
        assert not host.is_agent_active("node01")


def test_dry_run_never_calls_ssh():
    host = RemoteHost(dry_run=True)
    with patch("remote_host.subprocess.run") as run:
        host.reboot("node01")
        assert host.is_agent_active("node01")
    run.assert_not_called()
