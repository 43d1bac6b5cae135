"""Cleanup jobs: the unit of work that runs the host cleanup on the node being removed."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from spicerack.remote import RemoteExecutionError

from decom_libs.config import DecomConfig
from decom_libs.inventory import ClusterRecord
from decom_libs.k8s.kubernetes import KubernetesController, KubernetesError
from decom_libs.k8s.nodes import HOSTNAME_LABEL, OS_LABEL, NodeOS, NodeRecord
from decom_libs.retry import JOB_COMPLETION_RETRY_POLICY, RetryPolicy

LOGGER = logging.getLogger(__name__)

CLEANUP_JOB_NAMESPACE = "default"
CLEANUP_JOB_GENERATE_NAME = "node-decom-cleanup-"
CLEANUP_CONTAINER_NAME = "node-decom-cleanup"
CLEANUP_JOB_TTL_SECONDS = 300
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "node-decom"
CLEANUP_NODE_LABEL = "decom.node.io/cleanup-node"
AGENT_COMMAND = ["python3", "-m", "decom_libs.agent", "clean", "job"]

LINUX_ENGINE_SOCKET = "/var/run/docker.sock"
WINDOWS_ENGINE_PIPE = "\\\\.\\pipe\\docker_engine"
WINDOWS_HELPER_PIPE = "\\\\.\\pipe\\rancher_wins"


class CleanupJobStatus(Enum):
    """Status of a cleanup job, as derived from its kubernetes status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def __str__(self):
        """String representation."""
        return self.value

    @classmethod
    def from_job(cls, job: dict[str, Any]) -> "CleanupJobStatus":
        """Get the status of the given job object."""
        status = job.get("status") or {}
        if status.get("succeeded", 0) >= 1:
            return cls.SUCCEEDED

        backoff_limit = (job.get("spec") or {}).get("backoffLimit", 6)
        if status.get("failed", 0) >= backoff_limit or any(
            condition.get("type") == "Failed" and condition.get("status") == "True"
            for condition in status.get("conditions") or []
        ):
            return cls.FAILED

        if status.get("active", 0) >= 1:
            return cls.RUNNING

        return cls.PENDING


@dataclass(frozen=True)
class JobHandle:
    """Reference to a created (or reused) cleanup job."""

    name: str
    namespace: str
    reused: bool = False
    status: CleanupJobStatus = CleanupJobStatus.PENDING

    @classmethod
    def from_job(cls, job: dict[str, Any], reused: bool = False) -> "JobHandle":
        """Build the handle from a job object."""
        metadata = job["metadata"]
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", CLEANUP_JOB_NAMESPACE),
            reused=reused,
            status=CleanupJobStatus.from_job(job),
        )

    def __str__(self):
        """String representation."""
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class CleanupJobSpec:
    """Everything needed to build the cleanup job of a node."""

    node_name: str
    hostname: str
    node_os: NodeOS
    image: str
    env: dict[str, str]
    tolerations: list[dict[str, str]] = field(default_factory=list)
    namespace: str = CLEANUP_JOB_NAMESPACE

    @classmethod
    def for_node(cls, node: NodeRecord, cluster: ClusterRecord, config: DecomConfig) -> "CleanupJobSpec":
        """Build the job manifest for the given node, the prefix paths come from its cluster."""
        env = config.to_env()
        env.update(
            {
                "PREFIX_PATH": cluster.prefix_path,
                "WINDOWS_PREFIX_PATH": cluster.windows_prefix_path,
                "NODE_OS": str(node.os),
            }
        )
        return cls(
            node_name=node.name,
            hostname=node.hostname,
            node_os=node.os,
            image=config.agent_image,
            env=env,
            tolerations=[taint.to_toleration() for taint in node.taints],
        )

    @property
    def labels(self) -> dict[str, str]:
        """Labels identifying the cleanup jobs of this node."""
        return {MANAGED_BY_LABEL: MANAGED_BY_VALUE, CLEANUP_NODE_LABEL: self.node_name}

    @property
    def selector(self) -> str:
        """Label selector matching the cleanup jobs of this node."""
        return ",".join(f"{key}={value}" for key, value in self.labels.items())

    def _volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, str]]]:
        if self.node_os == NodeOS.WINDOWS:
            paths = {"docker": WINDOWS_ENGINE_PIPE, "wins": WINDOWS_HELPER_PIPE}
            host_path_type = None
        else:
            paths = {"docker": LINUX_ENGINE_SOCKET}
            host_path_type = "Socket"

        volumes = []
        mounts = []
        for name, path in paths.items():
            host_path: dict[str, str] = {"path": path}
            if host_path_type:
                host_path["type"] = host_path_type
            volumes.append({"name": name, "hostPath": host_path})
            mounts.append({"name": name, "mountPath": path})

        return volumes, mounts

    def to_manifest(self) -> dict[str, Any]:
        """Kubernetes manifest for the job."""
        volumes, mounts = self._volumes()
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "generateName": CLEANUP_JOB_GENERATE_NAME,
                "namespace": self.namespace,
                "labels": self.labels,
            },
            "spec": {
                "ttlSecondsAfterFinished": CLEANUP_JOB_TTL_SECONDS,
                "template": {
                    "metadata": {"labels": self.labels},
                    "spec": {
                        "nodeSelector": {HOSTNAME_LABEL: self.hostname, OS_LABEL: str(self.node_os)},
                        "tolerations": self.tolerations,
                        "volumes": volumes,
                        "containers": [
                            {
                                "name": CLEANUP_CONTAINER_NAME,
                                "image": self.image,
                                "command": AGENT_COMMAND,
                                "env": [{"name": key, "value": value} for key, value in sorted(self.env.items())],
                                "volumeMounts": mounts,
                                "imagePullPolicy": "Always",
                            }
                        ],
                        "restartPolicy": "OnFailure",
                    },
                },
            },
        }


class CleanupJobDispatcher:
    """Creates the cleanup job of a node, at most one in flight per node."""

    def __init__(self, kubectl: KubernetesController, config: DecomConfig):
        """Init."""
        self.kubectl = kubectl
        self.config = config

    def find_existing(self, spec: CleanupJobSpec) -> JobHandle | None:
        """Get a handle to a not failed cleanup job for the node, if there's any."""
        for job in self.kubectl.get_jobs(namespace=spec.namespace, selector=spec.selector):
            handle = JobHandle.from_job(job, reused=True)
            if handle.status == CleanupJobStatus.FAILED:
                LOGGER.info("Ignoring failed cleanup job %s for node %s", handle, spec.node_name)
                continue

            return handle

        return None

    def dispatch(self, cluster: ClusterRecord, node: NodeRecord) -> JobHandle:
        """Make sure there's a cleanup job for the node, creating it if needed."""
        spec = CleanupJobSpec.for_node(node=node, cluster=cluster, config=self.config)
        existing = self.find_existing(spec)
        if existing is not None:
            LOGGER.info("Reusing %s cleanup job %s for node %s", existing.status, existing, node.name)
            return existing

        handle = JobHandle.from_job(self.kubectl.create_job(manifest=spec.to_manifest()))
        LOGGER.info("Created cleanup job %s for node %s (%s)", handle, node.name, node.os)
        return handle


class JobCompletionWatcher:
    """Waits, for a bounded time, for a cleanup job to succeed."""

    def __init__(self, kubectl: KubernetesController, retry_policy: RetryPolicy = JOB_COMPLETION_RETRY_POLICY):
        """Init."""
        self.kubectl = kubectl
        self.retry_policy = retry_policy

    def await_completion(self, handle: JobHandle) -> bool:
        """Poll the job until it succeeds.

        Returns False once the attempts are exhausted, never raises for fetch errors or timeouts.
        """
        LOGGER.info(
            "Validating cleanup job %s finished, retrying up to %d times", handle, self.retry_policy.max_attempts
        )

        def _check_once(timeout: timedelta) -> bool:
            try:
                job = self.kubectl.get_job(
                    name=handle.name, namespace=handle.namespace, timeout_seconds=timeout.total_seconds()
                )
            except (RemoteExecutionError, KubernetesError) as error:
                LOGGER.error("Failed to get cleanup job %s, retrying: %s", handle, error)
                return False

            status = CleanupJobStatus.from_job(job)
            if status != CleanupJobStatus.SUCCEEDED:
                LOGGER.info("Cleanup job %s is %s, backing off and retrying", handle, status)
                return False

            LOGGER.info("Cleanup job %s finished", handle)
            return True

        return self.retry_policy.run(attempt=_check_once, description=f"Waiting for cleanup job {handle}")
