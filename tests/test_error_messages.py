from __future__ import annotations

import subprocess

import pytest

from storefleet.proc import AdapterCommandError
from storefleet.services.error_messages import (
    GENERIC_ERROR_MESSAGE,
    UNKNOWN_ERROR_MESSAGE,
    classify_error_message,
    failure_cause,
    log_and_sanitize_error,
    sanitize_error_message,
)
from storefleet.services.helm_adapter import HelmAdapter
from storefleet.services.kube_adapter import KubeAdapter

CONNECTION_MESSAGE = "Connection error. Please check your cluster connectivity."
REFUSED = "The connection to the server 127.0.0.1:6443 was refused - did you specify the right host or port?"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (
            "Helm install failed for release acme (returncode=1, detail='context deadline exceeded')",
            "Store provisioning failed. Please try again or contact support.",
        ),
        (
            "Helm uninstall failed for release acme",
            "Store deletion failed. Please try again or contact support.",
        ),
        (
            "Timeout waiting for pods to be ready after 600s in namespace store-acme-abc123",
            "Store provisioning timed out. The store may still be starting up.",
        ),
        (
            "exceeded quota: store-quota, requested: limits.cpu=8",
            "Insufficient resources to create store. Please try again later.",
        ),
        (
            "Failed to create namespace store-acme-abc123",
            "Failed to create store namespace. Please try again.",
        ),
        (
            "cluster lookup: The connection to the server 127.0.0.1:6443 was refused",
            "Connection error. Please check your cluster connectivity.",
        ),
        ("Unknown store type: magento", "Invalid store type selected."),
    ],
)
def test_sanitize_error_message_maps_taxonomy(raw: str, expected: str) -> None:
    assert sanitize_error_message(raw) == expected


def test_first_matching_class_wins() -> None:
    # mentions both an install failure and a namespace
    raw = "Helm install failed for release acme --namespace store-acme-abc123"
    assert classify_error_message(raw).name == "install"


def test_sanitize_error_message_fallbacks() -> None:
    assert sanitize_error_message(None) == UNKNOWN_ERROR_MESSAGE
    assert sanitize_error_message("") == UNKNOWN_ERROR_MESSAGE
    assert sanitize_error_message("something odd happened") == GENERIC_ERROR_MESSAGE


def test_log_and_sanitize_error_keeps_raw_cause_in_logs_only(caplog) -> None:
    raw = "Helm install failed: context deadline exceeded"

    with caplog.at_level("ERROR"):
        message = log_and_sanitize_error("acme", "provision", raw)

    assert message == "Store provisioning failed. Please try again or contact support."
    assert "context deadline" not in message
    assert "context deadline exceeded" in caplog.text
    assert "acme" in caplog.text


def _failing(stderr: str):
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args=cmd, returncode=1, stdout="", stderr=stderr)

    return runner


def _raised(call) -> AdapterCommandError:
    with pytest.raises(AdapterCommandError) as excinfo:
        call()
    return excinfo.value


@pytest.mark.parametrize(
    "call",
    [
        lambda kube: kube.namespace_exists("store-acme-abc123"),
        lambda kube: kube.list_pods("store-acme-abc123"),
        lambda kube: kube.create_quota("store-acme-abc123", {"limits.cpu": "4"}),
    ],
    ids=["lookup", "pods", "limits"],
)
def test_unreachable_cluster_is_reported_as_connectivity(call) -> None:
    kube = KubeAdapter(runner=_failing(REFUSED))

    exc = _raised(lambda: call(kube))

    assert "namespace" in str(exc)
    assert sanitize_error_message(failure_cause(exc)) == CONNECTION_MESSAGE


def test_kube_failures_keep_their_own_class() -> None:
    kube = KubeAdapter(runner=_failing('namespaces is forbidden: User "ci" cannot create resource'))
    create = _raised(lambda: kube.create_namespace("store-acme-abc123"))
    assert classify_error_message(failure_cause(create)).name == "namespace"

    kube = KubeAdapter(runner=_failing('exceeded quota: store-quota, requested: limits.cpu=8'))
    quota = _raised(lambda: kube.create_quota("store-acme-abc123", {"limits.cpu": "8"}))
    assert classify_error_message(failure_cause(quota)).name == "resources"

    kube = KubeAdapter(runner=_failing(REFUSED))
    teardown = _raised(lambda: kube.delete_namespace("store-acme-abc123"))
    assert classify_error_message(failure_cause(teardown)).name == "uninstall"


def test_helm_install_failure_stays_an_install_failure() -> None:
    helm = HelmAdapter(runner=_failing("Error: context deadline exceeded"))

    exc = _raised(
        lambda: helm.helm_upgrade_install(
            release_name="acme",
            namespace="store-acme-abc123",
            chart_ref="/charts/woocommerce",
            values={},
            timeout=60,
            atomic=True,
            wait=True,
        )
    )

    assert failure_cause(exc) == "helm install failed: Error: context deadline exceeded"
    assert classify_error_message(failure_cause(exc)).name == "install"


def test_failure_cause_of_plain_exception_is_its_message() -> None:
    assert failure_cause(RuntimeError("Unknown store type: magento")) == "Unknown store type: magento"


def test_log_and_sanitize_error_classifies_cause_but_logs_full_error(caplog) -> None:
    error = "Failed to read namespace store-acme-abc123 (command='kubectl get namespace ...')"

    with caplog.at_level("ERROR"):
        message = log_and_sanitize_error("acme", "provision", error, cause=f"cluster lookup: {REFUSED}")

    assert message == CONNECTION_MESSAGE
    assert "Failed to read namespace store-acme-abc123" in caplog.text
