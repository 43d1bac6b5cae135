from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any
from unittest import mock

import pytest

from decom_libs.config import DecomConfig
from decom_libs.inventory import ClusterRecord, get_cluster
from decom_libs.k8s.nodes import NodeRecord

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> dict[str, Any]:
    with (FIXTURES_DIR / name).open("r") as fixture_fd:
        return json.load(fixture_fd)


def get_dummy_node_object(
    name: str = "toolsbeta-test-worker-4",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    finalizers: list[str] | None = None,
) -> dict[str, Any]:
    node = load_fixture("k8s/worker-node.json")
    node["metadata"]["name"] = name
    if labels is not None:
        node["metadata"]["labels"].update(labels)
    if annotations is not None:
        node["metadata"]["annotations"] = annotations
    if finalizers is not None:
        node["metadata"]["finalizers"] = finalizers

    return node


def get_dummy_job_object(
    status: dict[str, Any] | None = None, name: str = "node-decom-cleanup-x7k2p"
) -> dict[str, Any]:
    job = load_fixture("k8s/cleanup-job.json")
    job["metadata"]["name"] = name
    if status is not None:
        job["status"] = status

    return job


def get_dummy_config(**overrides: Any) -> DecomConfig:
    clusters = {
        "toolsbeta": {
            "control_node_fqdn": "toolsbeta-test-k8s-control-1.toolsbeta.eqiad1.wikimedia.cloud",
            "prefix_path": "/opt/rke",
            "drain_before_delete": True,
            "node_pools": {"workers": {"drain_before_delete": True}, "ingress": {"drain_before_delete": False}},
        }
    }
    params: dict[str, Any] = {"clusters": clusters}
    params.update(overrides)
    return DecomConfig(**params)


@pytest.fixture(autouse=True)
def no_sleep():
    with mock.patch("time.sleep"):
        yield


@pytest.fixture
def decom_config() -> DecomConfig:
    return get_dummy_config()


@pytest.fixture
def cluster(decom_config: DecomConfig) -> ClusterRecord:
    return get_cluster(config=decom_config, cluster_name="toolsbeta")


@pytest.fixture
def node_object() -> dict[str, Any]:
    return get_dummy_node_object()


@pytest.fixture
def node(node_object: dict[str, Any]) -> NodeRecord:
    return NodeRecord.from_k8s_object(copy.deepcopy(node_object), cluster_name="toolsbeta")
