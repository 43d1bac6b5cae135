"""Knowledge of the clusters the decommission cookbooks can work on.

The clusters are defined in the `clusters` section of the decommission config, like:

    clusters:
      toolsbeta:
        control_node_fqdn: toolsbeta-k8s-control-1.toolsbeta.eqiad1.wikimedia.cloud
        prefix_path: /opt/rke
        windows_prefix_path: 'c:\\'
        drain_before_delete: true
        node_pools:
          workers:
            drain_before_delete: false
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from decom_libs.common import DecomError
from decom_libs.config import DecomConfig

LOGGER = logging.getLogger(__name__)


class InventoryError(DecomError):
    """Parent class for all inventory related errors."""


class ClusterNotFound(InventoryError):
    """Risen when the given cluster is not in the inventory."""


class MalformedClusterDefinition(InventoryError):
    """Risen when a cluster definition in the config is missing required keys."""


@dataclass(frozen=True)
class NodePoolRecord:
    """A group of nodes of a cluster sharing their lifecycle settings."""

    name: str
    drain_before_delete: bool = False


@dataclass(frozen=True)
class ClusterRecord:
    """A kubernetes cluster whose nodes can be decommissioned."""

    name: str
    control_node_fqdn: str
    prefix_path: str
    windows_prefix_path: str
    drain_before_delete: bool = False
    node_pools: dict[str, NodePoolRecord] = field(default_factory=dict)

    @classmethod
    def from_config(cls, name: str, definition: dict[str, Any], config: DecomConfig) -> "ClusterRecord":
        """Build the record from its config entry, the paths fall back to the global ones."""
        try:
            control_node_fqdn = definition["control_node_fqdn"]
        except KeyError as error:
            raise MalformedClusterDefinition(f"Cluster {name} has no control_node_fqdn defined") from error

        return cls(
            name=name,
            control_node_fqdn=control_node_fqdn,
            prefix_path=definition.get("prefix_path") or config.prefix_path,
            windows_prefix_path=definition.get("windows_prefix_path") or config.windows_prefix_path,
            drain_before_delete=bool(definition.get("drain_before_delete", False)),
            node_pools={
                pool_name: NodePoolRecord(
                    name=pool_name, drain_before_delete=bool((pool or {}).get("drain_before_delete", False))
                )
                for pool_name, pool in (definition.get("node_pools") or {}).items()
            },
        )

    def get_node_pool(self, pool_name: str | None) -> NodePoolRecord | None:
        """Get the given node pool if known."""
        if not pool_name:
            return None

        return self.node_pools.get(pool_name)


def get_cluster_names(config: DecomConfig) -> list[str]:
    """Names of all the clusters in the inventory, sorted."""
    return sorted(config.clusters)


def get_cluster(config: DecomConfig, cluster_name: str) -> ClusterRecord:
    """Get a cluster from the inventory."""
    definition = config.clusters.get(cluster_name)
    if definition is None:
        raise ClusterNotFound(
            f"Cluster {cluster_name} not found in the inventory, known ones: {get_cluster_names(config)}"
        )

    return ClusterRecord.from_config(name=cluster_name, definition=definition, config=config)
