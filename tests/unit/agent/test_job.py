from __future__ import annotations

import logging
from unittest import mock

import docker.errors
import pytest

from decom_libs.agent.job import CleanupJobRunner, get_cleanup_container
from decom_libs.config import DecomConfig
from decom_libs.k8s.nodes import NodeOS
from tests.unit.agent.conftest import get_fake_container, get_fake_docker_client


def test_get_cleanup_container_matches_the_exact_name():
    cleanup = get_fake_container(name="node-decom-cleanup")
    client = get_fake_docker_client(containers=[get_fake_container(name="node-decom-cleanup-old"), cleanup])

    assert get_cleanup_container(client) is cleanup
    client.containers.list.assert_called_once_with(all=True, filters={"name": "node-decom-cleanup"})


def test_run_starts_the_host_cleanup_container_on_linux():
    client = get_fake_docker_client()
    config = DecomConfig(agent_image="registry.example/agent:1.0", prefix_path="/opt/rke")

    assert CleanupJobRunner(client=client, config=config, node_os=NodeOS.LINUX).run() is True

    client.containers.run.assert_called_once()
    kwargs = client.containers.run.call_args[1]
    assert kwargs["image"] == "registry.example/agent:1.0"
    assert kwargs["command"] == ["python3", "-m", "decom_libs.agent", "clean", "node"]
    assert kwargs["name"] == "node-decom-cleanup"
    assert kwargs["detach"] is True
    assert kwargs["privileged"] is True
    assert kwargs["pid_mode"] == "host"
    assert kwargs["network_mode"] == "host"
    assert kwargs["volumes"] == ["/var/run/docker.sock:/var/run/docker.sock", "/:/host"]
    assert kwargs["environment"]["PREFIX_PATH"] == "/opt/rke"
    assert kwargs["environment"]["NODE_OS"] == "linux"


def test_run_starts_the_host_cleanup_container_on_windows():
    client = get_fake_docker_client()

    CleanupJobRunner(client=client, config=DecomConfig(), node_os=NodeOS.WINDOWS).run()

    kwargs = client.containers.run.call_args[1]
    assert kwargs["privileged"] is False
    assert "pid_mode" not in kwargs
    assert kwargs["volumes"] == [
        "\\\\.\\pipe\\docker_engine:\\\\.\\pipe\\docker_engine",
        "c:\\:c:\\host",
        "\\\\.\\pipe\\rancher_wins:\\\\.\\pipe\\rancher_wins",
    ]
    assert kwargs["environment"]["NODE_OS"] == "windows"


def test_second_run_short_circuits_while_the_cleanup_is_running(caplog):
    caplog.set_level(logging.INFO)
    client = get_fake_docker_client()
    runner = CleanupJobRunner(client=client, config=DecomConfig(), node_os=NodeOS.LINUX)
    assert runner.run() is True

    client.containers.list.return_value = [get_fake_container(name="node-decom-cleanup")]

    assert runner.run() is False
    assert client.containers.run.call_count == 1
    assert "already exists, exiting" in caplog.text


def test_stale_cleanup_containers_are_replaced():
    stale = get_fake_container(name="node-decom-cleanup", status="exited")
    client = get_fake_docker_client(containers=[stale])

    assert CleanupJobRunner(client=client, config=DecomConfig(), node_os=NodeOS.LINUX).run() is True

    stale.remove.assert_called_once_with(force=True)
    client.containers.run.assert_called_once()


def get_engine_error(status_code: int, message: str) -> docker.errors.APIError:
    return docker.errors.APIError(message, response=mock.MagicMock(status_code=status_code))


def test_concurrent_start_exits_cleanly(caplog):
    caplog.set_level(logging.INFO)
    client = get_fake_docker_client()
    client.containers.run.side_effect = get_engine_error(
        409, 'Conflict. The container name "/node-decom-cleanup" is already in use'
    )

    assert CleanupJobRunner(client=client, config=DecomConfig(), node_os=NodeOS.LINUX).run() is False

    assert "already exists, exiting" in caplog.text


def test_other_engine_errors_on_start_are_raised():
    client = get_fake_docker_client()
    client.containers.run.side_effect = get_engine_error(500, "Internal Server Error")

    with pytest.raises(docker.errors.APIError):
        CleanupJobRunner(client=client, config=DecomConfig(), node_os=NodeOS.LINUX).run()
