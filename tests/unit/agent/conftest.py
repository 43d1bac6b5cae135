from __future__ import annotations

from unittest import mock

import docker


def get_fake_container(
    name: str, image: str = "busybox:latest", status: str = "running", kill_side_effect=None
) -> mock.MagicMock:
    container = mock.create_autospec(spec=docker.models.containers.Container, instance=True)
    container.name = name
    container.status = status
    container.short_id = "abcdef1234"
    container.attrs = {"Name": f"/{name}", "Config": {"Image": image}}
    container.kill.side_effect = kill_side_effect
    return container


def get_fake_docker_client(containers: list | None = None) -> mock.MagicMock:
    client = mock.MagicMock()
    client.containers.list.return_value = containers if containers is not None else []
    return client
