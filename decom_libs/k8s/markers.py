"""Bookkeeping of the decommission progress on the node object.

A node being removed carries exactly one finalizer with REMOVE_FINALIZER_PREFIX and one annotation with
REMOVE_ANNOTATION_PREFIX ("requested"). Once the host cleanup is over, all of them are replaced by the single
CLEANUP_DONE_ANNOTATION ("completed"). A completed node never goes back to requested.
"""
from __future__ import annotations

import logging
from enum import Enum, auto

from decom_libs.k8s.nodes import NodeRecord

LOGGER = logging.getLogger(__name__)

REMOVE_FINALIZER_PREFIX = "decom.node.io/remove_"
REMOVE_ANNOTATION_PREFIX = "lifecycle.decom.node.io/remove_"
CLEANUP_DONE_ANNOTATION = "decom.node.io/remove-cleanup"
LEGACY_CLEANUP_ANNOTATION = "cleanup.decom.node.io/remove"
DEFAULT_MARKER_NAME = "node-decom"


class DecommissionState(Enum):
    """Where a node is in the decommission workflow, as recorded on the node itself."""

    NONE = auto()
    REQUESTED = auto()
    COMPLETED = auto()

    def __str__(self):
        """String representation."""
        return self.name.lower()


def remove_finalizers_with_prefix(finalizers: list[str], prefix: str) -> list[str]:
    """Return a copy of the finalizers without the ones starting with prefix."""
    kept = []
    for finalizer in finalizers:
        if finalizer.startswith(prefix):
            LOGGER.debug("Finalizer %s will be removed", finalizer)
            continue
        kept.append(finalizer)

    return kept


def remove_annotations_with_prefix(annotations: dict[str, str], prefix: str) -> dict[str, str]:
    """Return a copy of the annotations without the ones starting with prefix."""
    kept = {}
    for key, value in annotations.items():
        if key.startswith(prefix):
            LOGGER.debug("Annotation %s will be removed", key)
            continue
        kept[key] = value

    return kept


def _strip_markers(node: NodeRecord) -> tuple[list[str], dict[str, str]]:
    finalizers = remove_finalizers_with_prefix(node.finalizers, REMOVE_FINALIZER_PREFIX)
    annotations = remove_annotations_with_prefix(node.annotations, REMOVE_ANNOTATION_PREFIX)
    annotations.pop(LEGACY_CLEANUP_ANNOTATION, None)
    annotations.pop(CLEANUP_DONE_ANNOTATION, None)
    return finalizers, annotations


def get_state(node: NodeRecord) -> DecommissionState:
    """Get the decommission state recorded on the node."""
    if node.annotations.get(CLEANUP_DONE_ANNOTATION) == "true":
        return DecommissionState.COMPLETED

    if any(finalizer.startswith(REMOVE_FINALIZER_PREFIX) for finalizer in node.finalizers) or any(
        key.startswith(REMOVE_ANNOTATION_PREFIX) for key in node.annotations
    ):
        return DecommissionState.REQUESTED

    return DecommissionState.NONE


def with_removal_requested(node: NodeRecord, marker_name: str = DEFAULT_MARKER_NAME) -> NodeRecord:
    """Get the node with a single 'requested' finalizer and annotation.

    Completed nodes are returned as they are.
    """
    if get_state(node) == DecommissionState.COMPLETED:
        LOGGER.debug("Node %s already completed its cleanup, not marking it as requested again", node.name)
        return node

    finalizers, annotations = _strip_markers(node)
    finalizers.append(f"{REMOVE_FINALIZER_PREFIX}{marker_name}")
    annotations[f"{REMOVE_ANNOTATION_PREFIX}{marker_name}"] = "true"
    return node.with_metadata(finalizers=finalizers, annotations=annotations)


def with_cleanup_done(node: NodeRecord) -> NodeRecord:
    """Get the node with all the decommission markers replaced by the 'cleanup done' annotation."""
    finalizers, annotations = _strip_markers(node)
    annotations[CLEANUP_DONE_ANNOTATION] = "true"
    return node.with_metadata(finalizers=finalizers, annotations=annotations)
