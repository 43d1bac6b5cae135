r"""Decom - Set the decommission markers of a node

Marks the node as being removed (a single removal finalizer and annotation), or with --done as having completed its
host cleanup, which drops all the removal finalizers so the node object can go away.

Usage example:
    cookbook decom.node.mark_removal \
        --cluster-name toolsbeta \
        --node-name toolsbeta-test-worker-4 \
        --done
"""
from __future__ import annotations

import argparse
import logging

from spicerack import Spicerack
from spicerack.cookbook import ArgparseFormatter, CookbookBase

from decom_libs.common import CommonOpts, DecomCookbookRunnerBase
from decom_libs.k8s.clusters import DecomClusterRunnerBase, add_cluster_opts, with_cluster_opts
from decom_libs.k8s.markers import get_state
from decom_libs.lifecycle import NodeLifecycleOrchestrator

LOGGER = logging.getLogger(__name__)


class MarkRemoval(CookbookBase):
    """Decom cookbook to set the decommission markers of a node."""

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
            help="Name of the kubernetes node object to mark.",
        )
        parser.add_argument(
            "--done",
            action="store_true",
            help="Mark the node cleanup as done instead of as requested.",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> DecomCookbookRunnerBase:
        """Get runner"""
        return with_cluster_opts(self.spicerack, args, MarkRemovalRunner)(
            node_name=args.node_name,
            done=args.done,
            spicerack=self.spicerack,
        )


class MarkRemovalRunner(DecomClusterRunnerBase):
    """Runner for MarkRemoval"""

    def __init__(self, common_opts: CommonOpts, cluster_name: str, node_name: str, done: bool, spicerack: Spicerack):
        """Init"""
        self.node_name = node_name
        self.done = done
        super().__init__(spicerack=spicerack, common_opts=common_opts, cluster_name=cluster_name)

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for node {self.node_name} ({'done' if self.done else 'requested'})"

    def run(self) -> None:
        """Main entry point"""
        cluster = self.get_cluster()
        kubectl = self.get_kubectl(cluster)
        node = kubectl.get_node(node_name=self.node_name, cluster_name=cluster.name)
        orchestrator = NodeLifecycleOrchestrator(kubectl=kubectl, cluster=cluster, config=self.decom_config)
        if self.done:
            node = orchestrator.mark_cleanup_done(node)
        else:
            node = orchestrator.mark_removal_in_progress(node)

        LOGGER.info("Node %s decommission state is now: %s", node.name, get_state(node))
