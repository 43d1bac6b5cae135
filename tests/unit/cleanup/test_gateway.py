from __future__ import annotations

import subprocess
from unittest import mock

import pytest
from spicerack.remote import RemoteExecutionError

from decom_libs.cleanup.gateway import CuminHostGateway, GatewayError, LocalHelperGateway
from decom_libs.cleanup.scripts import CleanupStepName, LinuxCleanupScript, WindowsCleanupScript
from decom_libs.common import UtilsForTesting
from decom_libs.config import DecomConfig


def test_LocalHelperGateway_linux_command():
    gateway = LocalHelperGateway(script=LinuxCleanupScript(config=DecomConfig(prefix_path="/opt/rke")))

    assert gateway.get_command(CleanupStepName.NETWORK) == [
        "nsenter",
        "--target",
        "1",
        "--mount",
        "--uts",
        "--ipc",
        "--net",
        "--pid",
        "--",
        "bash",
        "/opt/rke/etc/node-decom/cleanup.sh",
        "-Tasks",
        "Network",
    ]


def test_LocalHelperGateway_windows_command():
    gateway = LocalHelperGateway(script=WindowsCleanupScript(config=DecomConfig()))

    assert gateway.get_command(CleanupStepName.FIREWALL) == [
        "wins.exe",
        "cli",
        "prc",
        "run",
        "--path",
        '"c:\\etc\\node-decom\\cleanup.ps1"',
        "--args",
        '"-Tasks Firewall"',
    ]


def test_LocalHelperGateway_run_step_happy_path(monkeypatch):
    fake_run = mock.MagicMock(return_value=subprocess.CompletedProcess(args=[], returncode=0, stdout="done"))
    monkeypatch.setattr(subprocess, "run", fake_run)
    gateway = LocalHelperGateway(script=LinuxCleanupScript(config=DecomConfig()), timeout_seconds=30)

    gateway.run_step(CleanupStepName.PATHS)

    fake_run.assert_called_once_with(
        gateway.get_command(CleanupStepName.PATHS), check=True, capture_output=True, text=True, timeout=30
    )


@pytest.mark.parametrize(
    "error",
    [
        subprocess.CalledProcessError(returncode=2, cmd="nsenter", output="", stderr="no such file"),
        subprocess.TimeoutExpired(cmd="nsenter", timeout=30),
        FileNotFoundError("nsenter"),
    ],
)
def test_LocalHelperGateway_run_step_failures_are_fatal(monkeypatch, error):
    monkeypatch.setattr(subprocess, "run", mock.MagicMock(side_effect=error))
    gateway = LocalHelperGateway(script=LinuxCleanupScript(config=DecomConfig()))

    with pytest.raises(GatewayError):
        gateway.run_step(CleanupStepName.PATHS)


def test_LocalHelperGateway_refuses_agent_steps():
    gateway = LocalHelperGateway(script=LinuxCleanupScript(config=DecomConfig()))

    with pytest.raises(GatewayError):
        gateway.run_step(CleanupStepName.STOP_CONTAINERS)


def test_LocalHelperGateway_install_script(tmp_path):
    script = LinuxCleanupScript(config=DecomConfig())
    gateway = LocalHelperGateway(script=script, host_root=tmp_path)

    gateway.install_script()

    assert (tmp_path / "etc/node-decom/cleanup.sh").read_text() == script.render()


def test_CuminHostGateway_only_for_linux():
    with pytest.raises(GatewayError):
        CuminHostGateway(
            script=WindowsCleanupScript(config=DecomConfig()), host=UtilsForTesting.get_fake_remote_hosts()
        )


def test_CuminHostGateway_install_and_run():
    fake_hosts = UtilsForTesting.get_fake_remote_hosts(responses=["", "", "", "Done!"])
    gateway = CuminHostGateway(script=LinuxCleanupScript(config=DecomConfig()), host=fake_hosts)

    gateway.install_script()
    gateway.run_step(CleanupStepName.DOCKER)

    commands = [call[0][0].command for call in fake_hosts.run_sync.call_args_list]
    assert commands[0] == "mkdir -p /etc/node-decom"
    assert commands[1].endswith("tee /etc/node-decom/cleanup.sh > /dev/null")
    assert commands[2] == "chmod 755 /etc/node-decom/cleanup.sh"
    assert commands[3] == "bash /etc/node-decom/cleanup.sh -Tasks Docker"


def test_CuminHostGateway_remote_failures_are_fatal():
    fake_hosts = UtilsForTesting.get_fake_remote_hosts(
        side_effect=RemoteExecutionError(retcode=1, message="Cumin execution failed", results=iter(()))
    )
    gateway = CuminHostGateway(script=LinuxCleanupScript(config=DecomConfig()), host=fake_hosts)

    with pytest.raises(GatewayError):
        gateway.run_step(CleanupStepName.PATHS)
