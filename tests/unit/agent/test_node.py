from __future__ import annotations

from unittest import mock

import docker.errors

from decom_libs.agent.node import HostCleaner
from decom_libs.cleanup.gateway import RemoteExecGateway
from decom_libs.cleanup.scripts import CleanupStepName, LinuxCleanupScript
from decom_libs.config import DecomConfig
from tests.unit.agent.conftest import get_fake_container, get_fake_docker_client


def get_cleaner(client: mock.MagicMock) -> tuple[HostCleaner, mock.MagicMock]:
    gateway = mock.create_autospec(spec=RemoteExecGateway, instance=True)
    cleaner = HostCleaner(
        client=client,
        script=LinuxCleanupScript(config=DecomConfig()),
        gateway=gateway,
        managed_image_prefix="rancher/",
    )
    return cleaner, gateway


def test_wait_for_workloads_stops_as_soon_as_they_are_gone():
    client = get_fake_docker_client()
    client.containers.list.side_effect = [
        [get_fake_container(name="k8s_coredns_coredns-796684d57c-cnfxl"), get_fake_container(name="kubelet")],
        [get_fake_container(name="k8s_POD_coredns-796684d57c-cnfxl")],
        [get_fake_container(name="kubelet")],
    ]
    cleaner, _ = get_cleaner(client)

    assert cleaner.wait_for_workloads() is True
    assert client.containers.list.call_count == 3


def test_wait_for_workloads_gives_up_after_thirty_checks(caplog):
    client = get_fake_docker_client(containers=[get_fake_container(name="k8s_stuck")])
    cleaner, _ = get_cleaner(client)

    assert cleaner.wait_for_workloads() is False
    assert client.containers.list.call_count == 30
    assert "continuing with the cleanup anyway" in caplog.text


def test_wait_for_workloads_retries_engine_errors():
    client = get_fake_docker_client()
    client.containers.list.side_effect = [docker.errors.APIError("engine restarting"), []]
    cleaner, _ = get_cleaner(client)

    assert cleaner.wait_for_workloads() is True


def test_stop_containers_kills_only_the_managed_ones():
    managed = get_fake_container(name="kubelet", image="rancher/hyperkube:v1.24.17-rancher1")
    gone = get_fake_container(
        name="kube-proxy", image="rancher/hyperkube:v1.24.17-rancher1", kill_side_effect=docker.errors.NotFound("gone")
    )
    cleanup = get_fake_container(name="node-decom-cleanup", image="rancher/agent:v2")
    unmanaged = get_fake_container(name="monitoring", image="prom/node-exporter:v1.6.1")
    cleaner, _ = get_cleaner(get_fake_docker_client(containers=[managed, gone, cleanup, unmanaged]))

    assert cleaner.stop_containers() == ["kubelet"]

    managed.kill.assert_called_once_with(signal="SIGKILL")
    cleanup.kill.assert_not_called()
    unmanaged.kill.assert_not_called()


def test_stop_containers_when_the_engine_fails():
    client = get_fake_docker_client()
    client.containers.list.side_effect = docker.errors.APIError("engine down")
    cleaner, _ = get_cleaner(client)

    assert cleaner.stop_containers() == []


def test_run_installs_the_script_and_runs_every_step_in_order():
    cleaner, gateway = get_cleaner(get_fake_docker_client())

    cleaner.run()

    assert gateway.mock_calls == [
        mock.call.install_script(),
        mock.call.run_step(CleanupStepName.PATHS),
        mock.call.run_step(CleanupStepName.NETWORK),
        mock.call.run_step(CleanupStepName.DOCKER),
        mock.call.run_step(CleanupStepName.FIREWALL),
    ]
