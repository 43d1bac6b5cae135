"""Kubernetes node representations used while decommissioning."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from decom_libs.common import ArgparsableEnum

LOGGER = logging.getLogger(__name__)

HOSTNAME_LABEL = "kubernetes.io/hostname"
OS_LABEL = "kubernetes.io/os"
NODE_POOL_LABEL = "decom.node.io/node-pool"
CLUSTER_LABEL = "decom.node.io/cluster"
IGNORE_LABEL = "decom.node.io/ignore"
DRAIN_INPUT_ANNOTATION = "decom.node.io/drain-input"


class NodeOS(ArgparsableEnum):
    """Operating systems a node can report."""

    LINUX = "linux"
    WINDOWS = "windows"

    @classmethod
    def from_label(cls, value: str | None) -> "NodeOS":
        """Kubelets always report the os label, but older ones might not, those are linux."""
        if not value:
            return cls.LINUX

        try:
            return cls(value.lower())
        except ValueError:
            LOGGER.warning("Unknown node os %s, handling it as %s", value, cls.LINUX)
            return cls.LINUX


@dataclass(frozen=True)
class Taint:
    """A node taint, only what we need to mirror it as a toleration."""

    key: str
    effect: str
    value: str | None = None

    def to_toleration(self) -> dict[str, str]:
        """Toleration that matches this taint whatever its value is."""
        return {"key": self.key, "effect": self.effect, "operator": "Exists"}


@dataclass(frozen=True)
class DrainRequest:
    """Parameters for a single drain of a node."""

    force: bool = True
    delete_local_data: bool = True
    grace_period_seconds: int = 60
    timeout_seconds: int = 60

    @classmethod
    def from_annotation(cls, raw_value: str | None) -> "DrainRequest":
        """Build the request from the node drain-input override, falling back to the defaults."""
        if not raw_value:
            return cls()

        try:
            override = json.loads(raw_value)
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring malformed %s annotation: %s", DRAIN_INPUT_ANNOTATION, raw_value)
            return cls()

        if not isinstance(override, dict):
            LOGGER.warning("Ignoring %s annotation, it's not a JSON object: %s", DRAIN_INPUT_ANNOTATION, raw_value)
            return cls()

        defaults = cls()
        try:
            request = cls(
                force=bool(override.get("force", defaults.force)),
                delete_local_data=bool(override.get("deleteLocalData", defaults.delete_local_data)),
                grace_period_seconds=int(override.get("gracePeriod", defaults.grace_period_seconds)),
                timeout_seconds=int(override.get("timeout", defaults.timeout_seconds)),
            )
        except (TypeError, ValueError):
            LOGGER.warning("Ignoring %s annotation with invalid values: %s", DRAIN_INPUT_ANNOTATION, raw_value)
            return cls()

        # a negative grace period is fine for kubectl (use the pod one), the timeout must bound the drain
        if request.timeout_seconds <= 0:
            LOGGER.warning(
                "Ignoring non positive drain timeout in %s annotation: %s", DRAIN_INPUT_ANNOTATION, raw_value
            )
            return replace(request, timeout_seconds=defaults.timeout_seconds)

        return request

    def to_cli_args(self) -> list[str]:
        """Flags for kubectl drain."""
        args = ["--ignore-daemonsets"]
        if self.force:
            args.append("--force")
        if self.delete_local_data:
            args.append("--delete-emptydir-data")

        args.extend([f"--grace-period={self.grace_period_seconds}", f"--timeout={self.timeout_seconds}s"])
        return args


@dataclass(frozen=True)
class NodeRecord:
    """Copy of a kubernetes node object, the decommission only changes its finalizers and annotations."""

    name: str
    cluster_name: str
    hostname: str
    os: NodeOS = NodeOS.LINUX
    node_pool: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    taints: list[Taint] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_k8s_object(cls, node: dict[str, Any], cluster_name: str | None = None) -> "NodeRecord":
        """Build it from the output of `kubectl get node <name> --output=json`."""
        metadata = node.get("metadata", {})
        labels = metadata.get("labels") or {}
        name = metadata.get("name", "")
        return cls(
            name=name,
            cluster_name=cluster_name or labels.get(CLUSTER_LABEL, ""),
            hostname=labels.get(HOSTNAME_LABEL) or name,
            os=NodeOS.from_label(labels.get(OS_LABEL)),
            node_pool=labels.get(NODE_POOL_LABEL),
            labels=dict(labels),
            taints=[
                Taint(key=taint["key"], effect=taint.get("effect", ""), value=taint.get("value"))
                for taint in (node.get("spec", {}).get("taints") or [])
            ],
            finalizers=list(metadata.get("finalizers") or []),
            annotations=dict(metadata.get("annotations") or {}),
            raw=node,
        )

    @property
    def drain_request(self) -> DrainRequest:
        """Drain parameters for this node, created fresh every time."""
        return DrainRequest.from_annotation(self.annotations.get(DRAIN_INPUT_ANNOTATION))

    @property
    def ignored(self) -> bool:
        """Ignored nodes are never deleted from the cluster."""
        return self.labels.get(IGNORE_LABEL, "").lower() == "true"

    def with_metadata(self, finalizers: list[str], annotations: dict[str, str]) -> "NodeRecord":
        """Copy of this record with the given finalizers and annotations."""
        return replace(self, finalizers=list(finalizers), annotations=dict(annotations))
