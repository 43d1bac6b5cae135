"""Node removal workflow: drain, clean up the host, clear the markers and delete the node object."""
from __future__ import annotations

import logging

from spicerack.remote import RemoteExecutionError

from decom_libs.cleanup.jobs import CleanupJobDispatcher, JobCompletionWatcher
from decom_libs.config import DecomConfig
from decom_libs.inventory import ClusterRecord
from decom_libs.k8s.drain import DrainCoordinator
from decom_libs.k8s.kubernetes import KubernetesController, KubernetesError, KubernetesNodeNotFound, KubernetesTimeout
from decom_libs.k8s.markers import (
    DEFAULT_MARKER_NAME,
    DecommissionState,
    get_state,
    with_cleanup_done,
    with_removal_requested,
)
from decom_libs.k8s.nodes import NodeRecord

LOGGER = logging.getLogger(__name__)


class NodeLifecycleOrchestrator:
    """Removes nodes from a cluster, one call per node.

    Draining and the host cleanup are best effort, their failures are logged and the node is removed anyway. Errors
    updating or deleting the node object are propagated, except for the node being gone already.
    """

    def __init__(
        self,
        kubectl: KubernetesController,
        cluster: ClusterRecord,
        config: DecomConfig,
        drain_coordinator: DrainCoordinator | None = None,
        dispatcher: CleanupJobDispatcher | None = None,
        watcher: JobCompletionWatcher | None = None,
        marker_name: str = DEFAULT_MARKER_NAME,
    ):
        """Init."""
        self.kubectl = kubectl
        self.cluster = cluster
        self.drain_coordinator = drain_coordinator or DrainCoordinator(kubectl=kubectl)
        self.dispatcher = dispatcher or CleanupJobDispatcher(kubectl=kubectl, config=config)
        self.watcher = watcher or JobCompletionWatcher(kubectl=kubectl)
        self.marker_name = marker_name

    def _persist_metadata(self, current: NodeRecord, wanted: NodeRecord) -> NodeRecord:
        if current.finalizers == wanted.finalizers and current.annotations == wanted.annotations:
            LOGGER.debug("Node %s markers already up to date", current.name)
            return current

        try:
            updated = self.kubectl.update_node_metadata(
                node_name=wanted.name, finalizers=wanted.finalizers, annotations=wanted.annotations
            )
        except KubernetesNodeNotFound:
            LOGGER.info("Node %s is already gone, nothing to mark", wanted.name)
            return wanted

        return NodeRecord.from_k8s_object(updated, cluster_name=wanted.cluster_name)

    def mark_removal_in_progress(self, node: NodeRecord) -> NodeRecord:
        """Leave a single 'requested' finalizer and annotation on the node, noop for completed nodes."""
        return self._persist_metadata(
            current=node, wanted=with_removal_requested(node=node, marker_name=self.marker_name)
        )

    def mark_cleanup_done(self, node: NodeRecord) -> NodeRecord:
        """Replace all the decommission markers with the 'cleanup done' one."""
        return self._persist_metadata(current=node, wanted=with_cleanup_done(node=node))

    def cleanup(self, node: NodeRecord) -> bool:
        """Run the host cleanup job for the node and wait for it, returns whether it succeeded."""
        try:
            handle = self.dispatcher.dispatch(cluster=self.cluster, node=node)
        except (RemoteExecutionError, KubernetesError) as error:
            LOGGER.error("Node %s unable to create its cleanup job, continuing with its removal: %s", node.name, error)
            return False

        if not self.watcher.await_completion(handle=handle):
            LOGGER.error(
                "Node %s cleanup job %s did not finish in time, continuing with its removal", node.name, handle
            )
            return False

        return True

    def delete(self, node: NodeRecord) -> bool:
        """Delete the node object from the cluster, returns whether it was deleted by us."""
        if not node.name:
            LOGGER.warning("Got a node without name, skipping its removal from the cluster")
            return False

        if node.ignored:
            LOGGER.info("Node %s is ignored, skipping its removal from the cluster", node.name)
            return False

        try:
            deleted = self.kubectl.delete_node(node_name=node.name)
        except KubernetesTimeout as error:
            LOGGER.warning("Node %s timed out while being deleted, it will go away on its own: %s", node.name, error)
            return False

        if not deleted:
            LOGGER.info("Node %s was already deleted", node.name)
        else:
            LOGGER.info("Node %s deleted from cluster %s", node.name, self.cluster.name)

        return deleted

    def decommission(self, node: NodeRecord) -> NodeRecord:
        """Remove the node from the cluster, cleaning up its host.

        A node that already completed its cleanup is only deleted. Returns the node as last persisted.
        """
        if get_state(node) == DecommissionState.COMPLETED:
            LOGGER.info("Node %s already completed its cleanup, only deleting it", node.name)
        else:
            node = self.mark_removal_in_progress(node)
            self.drain_coordinator.drain(node=node, cluster=self.cluster)
            self.cleanup(node)
            node = self.mark_cleanup_done(node)

        self.delete(node)
        return node
