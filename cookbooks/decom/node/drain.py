r"""Decom - Drain a node of a cluster

Drains the node the same way the removal does, retrying a few times. Pass --force-drain to drain it even when its
cluster or node pool does not ask for draining before removal.

Usage example:
    cookbook decom.node.drain \
        --cluster-name toolsbeta \
        --node-name toolsbeta-test-worker-4
"""
from __future__ import annotations

import argparse
import logging
from dataclasses import replace

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase

from decom_libs.common import CommonOpts, DecomCookbookRunnerBase
from decom_libs.k8s.clusters import DecomClusterRunnerBase, add_cluster_opts, with_cluster_opts
from decom_libs.k8s.drain import DrainCoordinator

LOGGER = logging.getLogger(__name__)


class Drain(CookbookBase):
    __doc__ = __doc__

    def argument_parser(self):
        parser = super().argument_parser()
        add_cluster_opts(parser)
        parser.add_argument(
            "--node-name",
            required=True,
            help="Name of the kubernetes node object to drain.",
        )
        parser.add_argument(
            "--force-drain",
            action="store_true",
            help="Drain the node even if its cluster or node pool don't require it.",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> DecomCookbookRunnerBase:
        return with_cluster_opts(self.spicerack, args, DrainRunner)(
            node_name=args.node_name,
            force_drain=args.force_drain,
            spicerack=self.spicerack,
        )


class DrainRunner(DecomClusterRunnerBase):
    def __init__(
        self,
        common_opts: CommonOpts,
        cluster_name: str,
        node_name: str,
        force_drain: bool,
        spicerack: Spicerack,
    ):
        self.node_name = node_name
        self.force_drain = force_drain
        super().__init__(spicerack=spicerack, common_opts=common_opts, cluster_name=cluster_name)

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for node {self.node_name}"

    def run(self) -> int:
        cluster = self.get_cluster()
        if self.force_drain:
            cluster = replace(cluster, drain_before_delete=True, node_pools={})

        kubectl = self.get_kubectl(cluster)
        node = kubectl.get_node(node_name=self.node_name, cluster_name=cluster.name)
        if not DrainCoordinator(kubectl=kubectl).drain(node=node, cluster=cluster):
            return 1

        self.sal_log("Drained node %s", self.node_name)
        return 0
