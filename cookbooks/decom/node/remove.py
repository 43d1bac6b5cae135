r"""Decom - Remove a node from its cluster, cleaning up its host

It drains the node (if its cluster or node pool asks for it), runs the host cleanup job on it, waits a bit for it to
finish and deletes the node object. Draining or cleaning up failures don't stop the removal.

Usage example:
    cookbook decom.node.remove \
        --cluster-name toolsbeta \
        --node-name toolsbeta-test-worker-4
"""
from __future__ import annotations

import argparse
import logging

from spicerack import Spicerack
from spicerack.cookbook import ArgparseFormatter, CookbookBase

from decom_libs.common import CommonOpts, DecomCookbookRunnerBase
from decom_libs.inventory import ClusterNotFound
from decom_libs.k8s.clusters import DecomClusterRunnerBase, add_cluster_opts, with_cluster_opts
from decom_libs.k8s.kubernetes import KubernetesNodeNotFound
from decom_libs.lifecycle import NodeLifecycleOrchestrator

LOGGER = logging.getLogger(__name__)


class RemoveNode(CookbookBase):
    """Decom cookbook to remove a node from a cluster."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = argparse.ArgumentParser(
            prog=__name__,
            description=__doc__,
            formatter_class=ArgparseFormatter,
        )
        add_cluster_opts(parser)
        parser.add_argument(
            "--node-name",
            required=True,
            help="Name of the kubernetes node object to remove.",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> DecomCookbookRunnerBase:
        """Get runner"""
        return with_cluster_opts(self.spicerack, args, RemoveNodeRunner)(
            node_name=args.node_name,
            spicerack=self.spicerack,
        )


class RemoveNodeRunner(DecomClusterRunnerBase):
    """Runner for RemoveNode"""

    def __init__(self, common_opts: CommonOpts, cluster_name: str, node_name: str, spicerack: Spicerack):
        """Init"""
        self.node_name = node_name
        super().__init__(spicerack=spicerack, common_opts=common_opts, cluster_name=cluster_name)

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for node {self.node_name} of cluster {self.cluster_name}"

    def run(self) -> None:
        """Main entry point"""
        try:
            cluster = self.get_cluster()
        except ClusterNotFound as error:
            LOGGER.info("%s, nothing to clean up.", error)
            return

        kubectl = self.get_kubectl(cluster)
        try:
            node = kubectl.get_node(node_name=self.node_name, cluster_name=cluster.name)
        except KubernetesNodeNotFound:
            # already gone, that's what we wanted
            LOGGER.info("Node %s not found in cluster %s, nothing to remove.", self.node_name, cluster.name)
            return

        orchestrator = NodeLifecycleOrchestrator(kubectl=kubectl, cluster=cluster, config=self.decom_config)
        orchestrator.decommission(node)
        self.sal_log("Removed node %s from cluster %s", self.node_name, cluster.name)
