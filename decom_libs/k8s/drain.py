"""Best effort draining of a node before it is removed."""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta

from spicerack.remote import RemoteExecutionError

from decom_libs.inventory import ClusterRecord
from decom_libs.k8s.kubernetes import KubernetesController, KubernetesError
from decom_libs.k8s.nodes import NodeRecord
from decom_libs.retry import DRAIN_RETRY_POLICY, RetryPolicy

LOGGER = logging.getLogger(__name__)


def drain_required(node: NodeRecord, cluster: ClusterRecord) -> bool:
    """Whether the node must be drained before deleting it.

    The node pool setting wins when the node belongs to a known pool, otherwise the cluster one is used.
    """
    node_pool = cluster.get_node_pool(node.node_pool)
    if node_pool is not None:
        return node_pool.drain_before_delete

    return cluster.drain_before_delete


class DrainCoordinator:
    """Evicts the workloads of a node, without ever blocking its removal."""

    def __init__(self, kubectl: KubernetesController, retry_policy: RetryPolicy = DRAIN_RETRY_POLICY):
        """Init."""
        self.kubectl = kubectl
        self.retry_policy = retry_policy

    def drain(self, node: NodeRecord, cluster: ClusterRecord) -> bool:
        """Drain the node, retrying a few times.

        Returns False if the node could not be drained, that is not an error as a stuck workload must never block
        the node removal.
        """
        if not drain_required(node=node, cluster=cluster):
            LOGGER.info("Node %s does not require draining before delete, skipping", node.name)
            return True

        drain_request = node.drain_request
        policy = replace(self.retry_policy, per_attempt_timeout=timedelta(seconds=drain_request.timeout_seconds))
        LOGGER.info(
            "Node %s requires draining before delete, trying up to %d times", node.name, policy.max_attempts
        )

        def _drain_once(_: timedelta) -> bool:
            try:
                output = self.kubectl.drain_node(node_name=node.name, drain_request=drain_request)
            except (RemoteExecutionError, KubernetesError) as error:
                LOGGER.error("Node %s kubectl drain failed, retrying: %s", node.name, error)
                return False

            LOGGER.info("Node %s kubectl drain response: %s", node.name, output.strip())
            return True

        drained = policy.run(attempt=_drain_once, description=f"Draining node {node.name}")
        if not drained:
            LOGGER.error("Node %s could not be drained, continuing with its removal anyway", node.name)

        return drained
