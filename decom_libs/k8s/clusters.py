"""Cluster related helpers for the decommission cookbooks."""
from __future__ import annotations

import argparse
import logging
from functools import partial
from typing import Callable

from spicerack import Spicerack

from decom_libs.common import CommonOpts, DecomCookbookRunnerBase, add_common_opts
from decom_libs.inventory import ClusterRecord, get_cluster
from decom_libs.k8s.kubernetes import KubernetesController

LOGGER = logging.getLogger(__name__)


def add_cluster_opts(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Adds argparse arguments to work with the clusters of the inventory."""
    parser.add_argument(
        "--cluster-name",
        required=True,
        help="Cluster to work on, as named in the clusters section of the decom.yaml config.",
    )

    return add_common_opts(parser)


def with_cluster_opts(spicerack: Spicerack, args: argparse.Namespace, runner: Callable) -> Callable:
    """Helper to add CommonOpts and cluster_name to a cookbook instantiation."""
    no_dologmsg = bool(spicerack.dry_run or args.no_dologmsg)
    common_opts = CommonOpts(task_id=args.task_id, no_dologmsg=no_dologmsg)

    return partial(runner, common_opts=common_opts, cluster_name=args.cluster_name)


class DecomClusterRunnerBase(DecomCookbookRunnerBase):
    """Runner base for cookbooks working on a single cluster.

    The cluster is only looked up when needed, so runners can decide what to do when it's not there.
    """

    def __init__(self, spicerack: Spicerack, common_opts: CommonOpts, cluster_name: str):
        """Init"""
        self.cluster_name = cluster_name
        super().__init__(spicerack=spicerack, common_opts=common_opts)

    def get_cluster(self) -> ClusterRecord:
        """Get the cluster from the inventory, raises ClusterNotFound if it's not there."""
        return get_cluster(config=self.decom_config, cluster_name=self.cluster_name)

    def get_kubectl(self, cluster: ClusterRecord) -> KubernetesController:
        """Get a controller for the given cluster."""
        return KubernetesController(remote=self.spicerack.remote(), controlling_node_fqdn=cluster.control_node_fqdn)
