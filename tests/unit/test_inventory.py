from __future__ import annotations

import pytest

from decom_libs.config import DecomConfig
from decom_libs.inventory import (
    ClusterNotFound,
    ClusterRecord,
    MalformedClusterDefinition,
    NodePoolRecord,
    get_cluster,
    get_cluster_names,
)
from tests.unit.conftest import get_dummy_config


def test_get_cluster_happy_path():
    cluster = get_cluster(config=get_dummy_config(), cluster_name="toolsbeta")

    assert cluster == ClusterRecord(
        name="toolsbeta",
        control_node_fqdn="toolsbeta-test-k8s-control-1.toolsbeta.eqiad1.wikimedia.cloud",
        prefix_path="/opt/rke",
        windows_prefix_path="c:\\",
        drain_before_delete=True,
        node_pools={
            "workers": NodePoolRecord(name="workers", drain_before_delete=True),
            "ingress": NodePoolRecord(name="ingress", drain_before_delete=False),
        },
    )


def test_get_cluster_raises_when_not_found():
    with pytest.raises(ClusterNotFound, match="known ones: \\['toolsbeta'\\]"):
        get_cluster(config=get_dummy_config(), cluster_name="tools")


def test_get_cluster_raises_when_malformed():
    config = DecomConfig(clusters={"broken": {"prefix_path": "/"}})

    with pytest.raises(MalformedClusterDefinition):
        get_cluster(config=config, cluster_name="broken")


def test_cluster_paths_fall_back_to_the_global_ones():
    config = DecomConfig(prefix_path="/srv", clusters={"minimal": {"control_node_fqdn": "control.example"}})

    cluster = get_cluster(config=config, cluster_name="minimal")

    assert (cluster.prefix_path, cluster.windows_prefix_path) == ("/srv", "c:\\")
    assert cluster.drain_before_delete is False
    assert cluster.node_pools == {}


def test_get_cluster_names_is_sorted():
    config = DecomConfig(clusters={"zeta": {}, "alpha": {}})

    assert get_cluster_names(config) == ["alpha", "zeta"]


@pytest.mark.parametrize("pool_name", [None, "", "unknown"])
def test_get_node_pool_unknown(pool_name):
    cluster = get_cluster(config=get_dummy_config(), cluster_name="toolsbeta")

    assert cluster.get_node_pool(pool_name) is None
