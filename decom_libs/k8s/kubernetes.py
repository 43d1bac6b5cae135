#!/usr/bin/env python3
"""Control plane access for the decommission, through kubectl on a control node."""
from __future__ import annotations

import json
import logging
import shlex
from typing import Any

from spicerack.remote import Remote

from decom_libs.common import (
    CUMIN_SAFE_WITHOUT_OUTPUT,
    CUMIN_UNSAFE_WITHOUT_OUTPUT,
    CuminParams,
    run_one_as_dict,
    run_one_raw,
    with_temporary_file,
)
from decom_libs.k8s.nodes import DrainRequest, NodeRecord

LOGGER = logging.getLogger(__name__)

# kubectl gives up on its own a bit before cumin kills it
DEFAULT_REQUEST_TIMEOUT_SECONDS = 15
NODE_DELETE_TIMEOUT_SECONDS = 45
CUMIN_TIMEOUT_MARGIN_SECONDS = 5
# what kubectl prints when --request-timeout expires
TIMEOUT_MARKERS = ("Client.Timeout exceeded", "context deadline exceeded", "Timeout: request did not complete")


class KubernetesError(Exception):
    """Parent class for all kubernetes related errors."""


class KubernetesNodeNotFound(KubernetesError):
    """Risen when the given node does not exist."""


class KubernetesJobNotFound(KubernetesError):
    """Risen when the given job does not exist."""


class KubernetesMalformedOutput(KubernetesError):
    """Risen when kubectl returns something we don't understand."""


class KubernetesTimeout(KubernetesError):
    """Risen when the API server did not answer within the request timeout."""


def _request_timeout_args(timeout_seconds: float) -> list[str]:
    return [f"--request-timeout={int(timeout_seconds)}s"]


def _raise_on_timeout(raw_output: str, action: str) -> None:
    if any(marker in raw_output for marker in TIMEOUT_MARKERS):
        raise KubernetesTimeout(f"Timed out {action}:\n{raw_output}")


class KubernetesController:
    """Controller for a kubernetes cluster."""

    def __init__(self, remote: Remote, controlling_node_fqdn: str):
        """Init."""
        self._remote = remote
        self.controlling_node_fqdn = controlling_node_fqdn
        self._controlling_node = self._remote.query(f"D{{{self.controlling_node_fqdn}}}", use_sudo=True)

    def _run_raw(
        self,
        command: list[str],
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        capture_errors: bool = False,
        cumin_params: CuminParams = CUMIN_SAFE_WITHOUT_OUTPUT,
    ) -> str:
        return run_one_raw(
            command=[*command, *_request_timeout_args(timeout_seconds)],
            node=self._controlling_node,
            capture_errors=capture_errors,
            timeout=timeout_seconds + CUMIN_TIMEOUT_MARGIN_SECONDS,
            cumin_params=cumin_params,
        )

    @staticmethod
    def _parse_object(raw_output: str, what: str) -> dict[str, Any]:
        try:
            result = json.loads(raw_output)
        except json.JSONDecodeError as error:
            raise KubernetesMalformedOutput(f"Unable to parse {what}:\n{raw_output}") from error

        if not isinstance(result, dict):
            raise KubernetesMalformedOutput(f"Was expecting an object for {what}, got:\n{raw_output}")

        return result

    def get_node_object(
        self, node_name: str, timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    ) -> dict[str, Any]:
        """Get the raw node object."""
        raw_output = self._run_raw(
            command=["kubectl", "get", "node", node_name, "--ignore-not-found", "--output=json"],
            timeout_seconds=timeout_seconds,
        )
        if not raw_output.strip():
            raise KubernetesNodeNotFound(f"Unable to find node {node_name} in the cluster.")

        return self._parse_object(raw_output, what=f"node {node_name}")

    def get_node(self, node_name: str, cluster_name: str) -> NodeRecord:
        """Get the given node."""
        return NodeRecord.from_k8s_object(self.get_node_object(node_name), cluster_name=cluster_name)

    def update_node_metadata(
        self,
        node_name: str,
        finalizers: list[str],
        annotations: dict[str, str],
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        """Overwrite the finalizers and annotations of a node, returns the updated node object.

        There's no resourceVersion check, the last writer wins.
        """
        patch = [
            {"op": "add", "path": "/metadata/finalizers", "value": finalizers},
            {"op": "add", "path": "/metadata/annotations", "value": annotations},
        ]
        raw_output = self._run_raw(
            command=[
                "kubectl",
                "patch",
                "node",
                node_name,
                "--type=json",
                f"--patch={shlex.quote(json.dumps(patch))}",
                "--output=json",
            ],
            timeout_seconds=timeout_seconds,
            capture_errors=True,
            cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
        )
        if "(NotFound)" in raw_output:
            raise KubernetesNodeNotFound(f"Unable to find node {node_name} in the cluster.")

        _raise_on_timeout(raw_output, action=f"updating node {node_name}")
        return self._parse_object(raw_output, what=f"updated node {node_name}")

    def delete_node(self, node_name: str, timeout_seconds: float = NODE_DELETE_TIMEOUT_SECONDS) -> bool:
        """Delete a node object, it does not drain it, see drain_node for that.

        Returns False if the node was not there already.
        """
        raw_output = self._run_raw(
            command=["kubectl", "delete", "node", node_name, "--ignore-not-found", "--wait=false"],
            timeout_seconds=timeout_seconds,
            capture_errors=True,
            cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
        )
        if "deleted" in raw_output:
            return True

        _raise_on_timeout(raw_output, action=f"deleting node {node_name}")
        if raw_output.strip():
            raise KubernetesError(f"Unable to delete node {node_name}:\n{raw_output}")

        return False

    def drain_node(self, node_name: str, drain_request: DrainRequest) -> str:
        """Drain a node, returns the kubectl output.

        The whole command is bounded by the drain request timeout (plus some margin for kubectl to report).
        """
        return run_one_raw(
            command=["kubectl", "drain", *drain_request.to_cli_args(), node_name],
            node=self._controlling_node,
            timeout=drain_request.timeout_seconds + CUMIN_TIMEOUT_MARGIN_SECONDS,
            cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
        )

    def create_job(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create a batch job from the given manifest, returns the created object."""
        with with_temporary_file(
            dst_node=self._controlling_node,
            contents=json.dumps(manifest),
            use_root=False,
            cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
        ) as manifest_path:
            raw_output = self._run_raw(
                command=["kubectl", "create", f"--filename={manifest_path}", "--output=json"],
                cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
            )

        return self._parse_object(raw_output, what="created job")

    def get_job(
        self, name: str, namespace: str, timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    ) -> dict[str, Any]:
        """Get a batch job."""
        raw_output = self._run_raw(
            command=["kubectl", "get", "job", name, f"--namespace={namespace}", "--ignore-not-found", "--output=json"],
            timeout_seconds=timeout_seconds,
        )
        if not raw_output.strip():
            raise KubernetesJobNotFound(f"Unable to find job {namespace}/{name} in the cluster.")

        return self._parse_object(raw_output, what=f"job {namespace}/{name}")

    def get_jobs(self, namespace: str, selector: str) -> list[dict[str, Any]]:
        """Get the batch jobs matching the given label selector."""
        output = run_one_as_dict(
            command=[
                "kubectl",
                "get",
                "jobs",
                f"--namespace={namespace}",
                f"--selector={shlex.quote(selector)}",
                "--output=json",
                *_request_timeout_args(DEFAULT_REQUEST_TIMEOUT_SECONDS),
            ],
            node=self._controlling_node,
            timeout=DEFAULT_REQUEST_TIMEOUT_SECONDS + CUMIN_TIMEOUT_MARGIN_SECONDS,
            cumin_params=CUMIN_SAFE_WITHOUT_OUTPUT,
        )
        return output["items"]
