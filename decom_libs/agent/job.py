"""First stage of the cleanup agent, runs as the cleanup job pod.

It starts the host cleanup container, that has access to the host filesystem and helper, and exits. Only one host
cleanup container is ever started per node.
"""
from __future__ import annotations

import logging

import docker
import docker.errors
from docker.models.containers import Container

from decom_libs.cleanup.jobs import (
    CLEANUP_CONTAINER_NAME,
    LINUX_ENGINE_SOCKET,
    WINDOWS_ENGINE_PIPE,
    WINDOWS_HELPER_PIPE,
)
from decom_libs.config import DecomConfig
from decom_libs.k8s.nodes import NodeOS

LOGGER = logging.getLogger(__name__)

CONFLICT_STATUS_CODE = 409
HOST_CLEANUP_COMMAND = ["python3", "-m", "decom_libs.agent", "clean", "node"]
LINUX_HOST_BINDS = [f"{LINUX_ENGINE_SOCKET}:{LINUX_ENGINE_SOCKET}", "/:/host"]
WINDOWS_HOST_BINDS = [
    f"{WINDOWS_ENGINE_PIPE}:{WINDOWS_ENGINE_PIPE}",
    "c:\\:c:\\host",
    f"{WINDOWS_HELPER_PIPE}:{WINDOWS_HELPER_PIPE}",
]


def get_cleanup_container(client: docker.DockerClient) -> Container | None:
    """Get the host cleanup container if it exists, whatever its state."""
    for container in client.containers.list(all=True, filters={"name": CLEANUP_CONTAINER_NAME}):
        # the name filter matches substrings too
        if container.name == CLEANUP_CONTAINER_NAME:
            return container

    return None


class CleanupJobRunner:
    """Starts the host cleanup container, unless it's already running."""

    def __init__(self, client: docker.DockerClient, config: DecomConfig, node_os: NodeOS):
        """Init."""
        self.client = client
        self.config = config
        self.node_os = node_os

    def _run_kwargs(self) -> dict:
        if self.node_os == NodeOS.WINDOWS:
            return {"volumes": WINDOWS_HOST_BINDS, "privileged": False, "network_mode": "host"}

        # nsenter into the host init process needs its pid namespace and privileges
        return {"volumes": LINUX_HOST_BINDS, "privileged": True, "network_mode": "host", "pid_mode": "host"}

    def run(self) -> bool:
        """Start the host cleanup container.

        Returns False if there was one running already, that is not an error, the cleanup is in progress.
        """
        LOGGER.info("Starting clean container job: %s", CLEANUP_CONTAINER_NAME)
        existing = get_cleanup_container(self.client)
        if existing is not None:
            if existing.status == "running":
                LOGGER.info("Container named %s already exists, exiting.", CLEANUP_CONTAINER_NAME)
                return False

            LOGGER.info("Removing stale %s container %s", existing.status, CLEANUP_CONTAINER_NAME)
            existing.remove(force=True)

        env = self.config.to_env()
        env["NODE_OS"] = str(self.node_os)
        try:
            container = self.client.containers.run(
                image=self.config.agent_image,
                command=HOST_CLEANUP_COMMAND,
                name=CLEANUP_CONTAINER_NAME,
                environment=env,
                detach=True,
                **self._run_kwargs(),
            )
        except docker.errors.APIError as error:
            # another cleanup job created it since we looked
            if error.status_code == CONFLICT_STATUS_CODE:
                LOGGER.info("Container named %s already exists, exiting.", CLEANUP_CONTAINER_NAME)
                return False

            raise

        LOGGER.info("Started host cleanup container %s (%s)", CLEANUP_CONTAINER_NAME, container.short_id)
        return True
