"""Second stage of the cleanup agent, runs in the host cleanup container and does the actual cleanup."""
from __future__ import annotations

import logging
from datetime import timedelta

import docker
import docker.errors

from decom_libs.cleanup.gateway import RemoteExecGateway
from decom_libs.cleanup.jobs import CLEANUP_CONTAINER_NAME
from decom_libs.cleanup.scripts import CleanupStepName, PlatformCleanupScript
from decom_libs.retry import WORKLOADS_GONE_RETRY_POLICY, RetryPolicy

LOGGER = logging.getLogger(__name__)

WORKLOAD_CONTAINER_PREFIX = "k8s_"


class HostCleaner:
    """Runs the cleanup steps on the host, in order."""

    def __init__(
        self,
        client: docker.DockerClient,
        script: PlatformCleanupScript,
        gateway: RemoteExecGateway,
        managed_image_prefix: str,
        workloads_policy: RetryPolicy = WORKLOADS_GONE_RETRY_POLICY,
    ):
        """Init."""
        self.client = client
        self.script = script
        self.gateway = gateway
        self.managed_image_prefix = managed_image_prefix
        self.workloads_policy = workloads_policy

    def get_workload_containers(self) -> list[str]:
        """Names of the containers the kubelet still runs."""
        return [
            container.name
            for container in self.client.containers.list()
            if container.name.startswith(WORKLOAD_CONTAINER_PREFIX)
        ]

    def wait_for_workloads(self) -> bool:
        """Wait for the kubelet containers to go away, returns False if some are still around when giving up."""

        def _check_once(_: timedelta) -> bool:
            try:
                remaining = self.get_workload_containers()
            except docker.errors.APIError as error:
                LOGGER.error("Unable to list the containers, retrying: %s", error)
                return False

            if remaining:
                LOGGER.info("%d pod containers found, waiting and trying again", len(remaining))
                return False

            LOGGER.info("All pod containers cleaned, continuing with the cleanup")
            return True

        gone = self.workloads_policy.run(attempt=_check_once, description="Waiting for the pod containers to go away")
        if not gone:
            LOGGER.warning("Some pod containers are still running, continuing with the cleanup anyway")

        return gone

    def stop_containers(self) -> list[str]:
        """Kill the running containers of managed images, returns the names of the killed ones."""
        try:
            containers = self.client.containers.list()
        except docker.errors.APIError as error:
            LOGGER.error("Unable to list the containers, not stopping any: %s", error)
            return []

        killed = []
        for container in containers:
            if container.name == CLEANUP_CONTAINER_NAME:
                continue

            image = container.attrs.get("Config", {}).get("Image", "")
            if not image.startswith(self.managed_image_prefix):
                continue

            LOGGER.info("Killing container %s (%s)", container.name, image)
            try:
                container.kill(signal="SIGKILL")
            except docker.errors.NotFound:
                LOGGER.info("Container %s is already gone", container.name)
                continue
            except docker.errors.APIError as error:
                LOGGER.error("Unable to kill container %s, continuing: %s", container.name, error)
                continue

            killed.append(container.name)

        return killed

    def run_step(self, step_name: CleanupStepName) -> None:
        """Run a single step, script based steps expect the script to be installed already."""
        LOGGER.info("Running cleanup step %s", step_name)
        if step_name == CleanupStepName.WAIT_FOR_WORKLOADS:
            self.wait_for_workloads()
        elif step_name == CleanupStepName.STOP_CONTAINERS:
            self.stop_containers()
        else:
            self.gateway.run_step(step_name)

    def run(self) -> None:
        """Run the whole cleanup.

        Raises CleanupScriptError or GatewayError if the script can't be installed or one of its steps fails.
        """
        LOGGER.info("Cleaning up %s node...", self.script.node_os)
        self.gateway.install_script()
        for step in self.script.steps():
            self.run_step(step.name)

        LOGGER.info("Node cleanup done")
