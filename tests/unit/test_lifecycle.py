from __future__ import annotations

from dataclasses import replace
from typing import Any
from unittest import mock

import pytest
from spicerack.remote import RemoteExecutionError

from decom_libs.config import DecomConfig
from decom_libs.inventory import ClusterRecord
from decom_libs.k8s.kubernetes import KubernetesController, KubernetesError, KubernetesNodeNotFound, KubernetesTimeout
from decom_libs.k8s.markers import CLEANUP_DONE_ANNOTATION, DecommissionState, get_state
from decom_libs.k8s.nodes import DRAIN_INPUT_ANNOTATION, DrainRequest, NodeRecord
from decom_libs.lifecycle import NodeLifecycleOrchestrator
from tests.unit.conftest import get_dummy_job_object, get_dummy_node_object


def fake_update_node_metadata(node_name: str, finalizers: list[str], annotations: dict[str, str]) -> dict[str, Any]:
    return get_dummy_node_object(name=node_name, finalizers=finalizers, annotations=annotations)


def get_fake_kubectl() -> mock.MagicMock:
    kubectl = mock.create_autospec(spec=KubernetesController, spec_set=True, instance=True)
    kubectl.update_node_metadata.side_effect = fake_update_node_metadata
    kubectl.delete_node.return_value = True
    return kubectl


def get_orchestrator(kubectl: mock.MagicMock, cluster: ClusterRecord) -> NodeLifecycleOrchestrator:
    return NodeLifecycleOrchestrator(kubectl=kubectl, cluster=cluster, config=DecomConfig())


def test_decommission_when_drain_and_cleanup_fail_still_deletes_the_node(
    node: NodeRecord, cluster: ClusterRecord, caplog
):
    kubectl = get_fake_kubectl()
    kubectl.drain_node.side_effect = KubernetesError("cannot evict pod as it would violate the pod's disruption budget")
    kubectl.get_jobs.return_value = []
    kubectl.create_job.return_value = get_dummy_job_object(status={})
    kubectl.get_job.return_value = get_dummy_job_object(status={"active": 1})

    final_node = get_orchestrator(kubectl, cluster).decommission(node)

    assert kubectl.drain_node.call_count == 3
    assert kubectl.get_job.call_count == 10
    kubectl.delete_node.assert_called_once_with(node_name="toolsbeta-test-worker-4")
    assert get_state(final_node) == DecommissionState.COMPLETED
    assert "could not be drained" in caplog.text
    assert "did not finish in time" in caplog.text


def test_decommission_reuses_a_succeeded_job(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    kubectl.drain_node.return_value = "drained"
    kubectl.get_jobs.return_value = [get_dummy_job_object(status={"succeeded": 1})]
    kubectl.get_job.return_value = get_dummy_job_object(status={"succeeded": 1})

    get_orchestrator(kubectl, cluster).decommission(node)

    kubectl.create_job.assert_not_called()
    assert kubectl.get_job.call_count == 1
    kubectl.delete_node.assert_called_once()


def test_decommission_marker_transitions(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    kubectl.drain_node.return_value = "drained"
    kubectl.get_jobs.return_value = [get_dummy_job_object(status={"succeeded": 1})]
    kubectl.get_job.return_value = get_dummy_job_object(status={"succeeded": 1})

    get_orchestrator(kubectl, cluster).decommission(node)

    requested, done = kubectl.update_node_metadata.call_args_list
    assert requested[1]["finalizers"] == ["wrangler.cattle.io/node", "decom.node.io/remove_node-decom"]
    assert requested[1]["annotations"]["lifecycle.decom.node.io/remove_node-decom"] == "true"
    assert done[1]["finalizers"] == ["wrangler.cattle.io/node"]
    assert done[1]["annotations"][CLEANUP_DONE_ANNOTATION] == "true"
    assert not any(key.startswith("lifecycle.decom.node.io/") for key in done[1]["annotations"])


def test_decommission_of_a_completed_node_only_deletes_it(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    completed = node.with_metadata(finalizers=[], annotations={CLEANUP_DONE_ANNOTATION: "true"})

    assert get_orchestrator(kubectl, cluster).decommission(completed) == completed

    kubectl.drain_node.assert_not_called()
    kubectl.get_jobs.assert_not_called()
    kubectl.update_node_metadata.assert_not_called()
    kubectl.delete_node.assert_called_once()


def test_decommission_continues_when_the_job_cannot_be_created(node: NodeRecord, cluster: ClusterRecord, caplog):
    kubectl = get_fake_kubectl()
    kubectl.drain_node.return_value = "drained"
    kubectl.get_jobs.side_effect = RemoteExecutionError(
        retcode=1, message="Cumin execution failed", results=iter(())
    )

    get_orchestrator(kubectl, cluster).decommission(node)

    kubectl.get_job.assert_not_called()
    kubectl.delete_node.assert_called_once()
    assert "unable to create its cleanup job" in caplog.text


@pytest.mark.parametrize(
    "drain_input", ['{"timeout": null}', "true", "[]", '{"gracePeriod": "sixty"}', '{"timeout": 0}']
)
def test_decommission_with_a_bad_drain_override_still_deletes_the_node(
    node: NodeRecord, cluster: ClusterRecord, drain_input: str
):
    kubectl = get_fake_kubectl()
    kubectl.drain_node.return_value = "drained"
    kubectl.get_jobs.return_value = [get_dummy_job_object(status={"succeeded": 1})]
    kubectl.get_job.return_value = get_dummy_job_object(status={"succeeded": 1})
    overridden = node.with_metadata(
        finalizers=node.finalizers, annotations={**node.annotations, DRAIN_INPUT_ANNOTATION: drain_input}
    )

    get_orchestrator(kubectl, cluster).decommission(overridden)

    kubectl.drain_node.assert_called_once_with(node_name="toolsbeta-test-worker-4", drain_request=DrainRequest())
    kubectl.delete_node.assert_called_once_with(node_name="toolsbeta-test-worker-4")


@pytest.mark.parametrize(
    "node_overrides",
    [{"labels": {"decom.node.io/ignore": "true"}}, {"name": ""}],
    ids=["ignored node", "nameless node"],
)
def test_delete_is_skipped(node: NodeRecord, cluster: ClusterRecord, node_overrides):
    kubectl = get_fake_kubectl()

    assert get_orchestrator(kubectl, cluster).delete(replace(node, **node_overrides)) is False
    kubectl.delete_node.assert_not_called()


def test_delete_timeout_is_tolerated(node: NodeRecord, cluster: ClusterRecord, caplog):
    kubectl = get_fake_kubectl()
    kubectl.delete_node.side_effect = KubernetesTimeout("Client.Timeout exceeded")

    assert get_orchestrator(kubectl, cluster).delete(node) is False
    assert "timed out while being deleted" in caplog.text


def test_delete_errors_are_propagated(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    kubectl.delete_node.side_effect = KubernetesError("Forbidden")

    with pytest.raises(KubernetesError):
        get_orchestrator(kubectl, cluster).delete(node)


def test_delete_of_an_already_gone_node(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    kubectl.delete_node.return_value = False

    assert get_orchestrator(kubectl, cluster).delete(node) is False


def test_mark_removal_in_progress_is_idempotent(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    orchestrator = get_orchestrator(kubectl, cluster)

    once = orchestrator.mark_removal_in_progress(node)
    twice = orchestrator.mark_removal_in_progress(once)

    assert once == twice
    assert kubectl.update_node_metadata.call_count == 1
    assert [finalizer for finalizer in twice.finalizers if finalizer.startswith("decom.node.io/remove_")] == [
        "decom.node.io/remove_node-decom"
    ]


def test_mark_removal_in_progress_keeps_completed_nodes(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    completed = node.with_metadata(finalizers=[], annotations={CLEANUP_DONE_ANNOTATION: "true"})

    assert get_orchestrator(kubectl, cluster).mark_removal_in_progress(completed) == completed
    kubectl.update_node_metadata.assert_not_called()


def test_mark_cleanup_done_on_a_gone_node(node: NodeRecord, cluster: ClusterRecord):
    kubectl = get_fake_kubectl()
    kubectl.update_node_metadata.side_effect = KubernetesNodeNotFound("gone")

    done = get_orchestrator(kubectl, cluster).mark_cleanup_done(node)

    assert get_state(done) == DecommissionState.COMPLETED
