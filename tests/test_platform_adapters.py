from __future__ import annotations

import json
from pathlib import Path
import subprocess

import pytest

from storefleet.proc import (
    AdapterCommandError,
    ResourceConflictError,
    ResourceNotFoundError,
    classify_error,
)
from storefleet.services.helm_adapter import HelmAdapter
from storefleet.services.kube_adapter import KubeAdapter


def _result(*, args: list[str], returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


def _pod(name: str, phase: str, ready: bool) -> dict:
    return {
        "metadata": {"name": name},
        "status": {
            "phase": phase,
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }


def test_kube_create_namespace_labels_new_namespace() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd, returncode=0, stdout="ok")

    adapter = KubeAdapter(runner=runner)
    out = adapter.create_namespace("store-acme-abc123", {"store": "acme", "app": "store-orchestrator"})

    assert out.changed is True
    assert calls[0] == ["kubectl", "create", "namespace", "store-acme-abc123"]
    assert calls[1][:4] == ["kubectl", "label", "namespace", "store-acme-abc123"]
    assert "app=store-orchestrator" in calls[1]
    assert "store=acme" in calls[1]
    assert calls[1][-1] == "--overwrite"


def test_kube_create_namespace_raises_conflict_when_present() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(
            args=cmd,
            returncode=1,
            stderr='Error from server (AlreadyExists): namespaces "ns-a" already exists',
        )

    adapter = KubeAdapter(runner=runner)
    with pytest.raises(ResourceConflictError):
        adapter.create_namespace("ns-a")


def test_kube_namespace_exists_maps_not_found_to_false() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr='Error from server (NotFound): namespaces "ns-a" not found')

    adapter = KubeAdapter(runner=runner)
    assert adapter.namespace_exists("ns-a") is False
    with pytest.raises(ResourceNotFoundError):
        adapter.read_namespace("ns-a")


def test_kube_namespace_exists_bubbles_other_errors_as_retryable() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Unable to connect to the server: i/o timeout")

    adapter = KubeAdapter(runner=runner)
    with pytest.raises(AdapterCommandError) as exc_info:
        adapter.namespace_exists("ns-a")
    assert exc_info.value.retryable is True
    assert "i/o timeout" in str(exc_info.value).lower()


def test_kube_read_namespace_parses_phase_and_labels() -> None:
    payload = {"metadata": {"name": "ns-a", "labels": {"store": "acme"}}, "status": {"phase": "Active"}}

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        assert cmd == ["kubectl", "get", "namespace", "ns-a", "-o", "json"]
        return _result(args=cmd, returncode=0, stdout=json.dumps(payload))

    info = KubeAdapter(runner=runner).read_namespace("ns-a")
    assert info.phase == "Active"
    assert info.labels == {"store": "acme"}


def test_kube_create_quota_builds_hard_limits() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd, returncode=0)

    KubeAdapter(runner=runner).create_quota("ns-a", {"limits.cpu": "4", "persistentvolumeclaims": "3"})

    assert calls == [
        [
            "kubectl",
            "create",
            "quota",
            "store-quota",
            "--namespace",
            "ns-a",
            "--hard=limits.cpu=4,persistentvolumeclaims=3",
        ]
    ]


def test_kube_create_quota_raises_conflict_when_present() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr='resourcequotas "store-quota" already exists')

    with pytest.raises(ResourceConflictError):
        KubeAdapter(runner=runner).create_quota("ns-a", {"limits.cpu": "4"})


def test_kube_list_pods_reads_phase_and_ready_condition() -> None:
    payload = {"items": [_pod("web-0", "Running", True), _pod("db-0", "Pending", False)]}

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=0, stdout=json.dumps(payload))

    pods = KubeAdapter(runner=runner).list_pods("ns-a")

    assert [(pod.name, pod.phase, pod.ready) for pod in pods] == [
        ("web-0", "Running", True),
        ("db-0", "Pending", False),
    ]
    assert pods[0].running_and_ready is True
    assert pods[1].running_and_ready is False


def test_kube_list_pods_rejects_invalid_json() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=0, stdout="not-json")

    with pytest.raises(ValueError):
        KubeAdapter(runner=runner).list_pods("ns-a")


def test_kube_delete_namespace_does_not_wait_and_ignores_missing() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd, returncode=0)

    out = KubeAdapter(runner=runner).delete_namespace("ns-a")

    assert out.exists is False
    assert "--ignore-not-found=true" in calls[0]
    assert "--wait=false" in calls[0]


def test_helm_upgrade_install_passes_values_and_returns_status() -> None:
    calls: list[list[str]] = []
    seen_values: dict | None = None

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        nonlocal seen_values
        calls.append(cmd)
        if cmd[:3] == ["helm", "upgrade", "--install"]:
            values_path = Path(cmd[cmd.index("--values") + 1])
            seen_values = json.loads(values_path.read_text())
            return _result(args=cmd, returncode=0, stdout="Release upgraded")
        if cmd[:2] == ["helm", "status"]:
            payload = {"info": {"status": "deployed"}, "version": 7}
            return _result(args=cmd, returncode=0, stdout=json.dumps(payload))
        raise AssertionError(f"unexpected command: {cmd}")

    adapter = HelmAdapter(runner=runner)
    out = adapter.helm_upgrade_install(
        release_name="acme",
        namespace="store-acme-abc123",
        chart_ref="/charts/woocommerce",
        values={"storeName": "acme"},
        timeout=300,
        atomic=True,
        wait=True,
    )

    assert out.revision == 7
    assert out.status == "deployed"
    assert seen_values == {"storeName": "acme"}
    install = calls[0]
    assert install[3:5] == ["acme", "/charts/woocommerce"]
    assert "--atomic" in install and "--wait" in install
    assert install[install.index("--timeout") + 1] == "300s"
    assert not Path(install[install.index("--values") + 1]).exists()


def test_helm_upgrade_install_failure_names_the_release() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Error: chart not found")

    adapter = HelmAdapter(runner=runner)
    with pytest.raises(AdapterCommandError) as exc_info:
        adapter.helm_upgrade_install(
            release_name="acme",
            namespace="ns",
            chart_ref="/charts/missing",
            values={},
            timeout=60,
            atomic=True,
            wait=True,
        )
    assert str(exc_info.value).startswith("Helm install failed for release acme")
    assert exc_info.value.retryable is False


def test_helm_list_releases_parses_string_revisions() -> None:
    payload = [{"name": "acme", "namespace": "ns", "status": "deployed", "revision": "3"}, {"bogus": True}]

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        assert cmd == ["helm", "list", "--namespace", "ns", "--output", "json"]
        return _result(args=cmd, returncode=0, stdout=json.dumps(payload))

    adapter = HelmAdapter(runner=runner)
    releases = adapter.helm_list_releases(namespace="ns")

    assert [(r.name, r.status, r.revision) for r in releases] == [("acme", "deployed", 3)]
    assert adapter.helm_release_exists(release_name="acme", namespace="ns") is True
    assert adapter.helm_release_exists(release_name="other", namespace="ns") is False


def test_helm_release_exists_is_false_when_lookup_fails() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Kubernetes cluster unreachable")

    assert HelmAdapter(runner=runner).helm_release_exists(release_name="acme", namespace="ns") is False


def test_helm_uninstall_treats_missing_release_as_success() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Error: uninstall: Release not loaded: acme: release: not found")

    out = HelmAdapter(runner=runner).helm_uninstall(release_name="acme", namespace="ns", timeout=60, wait=True)

    assert out.changed is False
    assert out.status == "not-found"


def test_helm_uninstall_propagates_other_failures() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Error: context deadline exceeded")

    with pytest.raises(AdapterCommandError) as exc_info:
        HelmAdapter(runner=runner).helm_uninstall(release_name="acme", namespace="ns", timeout=60, wait=True)
    assert exc_info.value.retryable is True


def test_helm_rollback_targets_revision_and_reports_new_revision() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        if cmd[:2] == ["helm", "rollback"]:
            return _result(args=cmd, returncode=0)
        payload = {"info": {"status": "deployed"}, "version": 4, "config": {"version": "1.0.0"}}
        return _result(args=cmd, returncode=0, stdout=json.dumps(payload))

    adapter = HelmAdapter(runner=runner)
    out = adapter.helm_rollback(release_name="acme", namespace="ns", revision=2, timeout=60, wait=True)

    assert calls[0][:4] == ["helm", "rollback", "acme", "2"]
    assert out.revision == 4
    status = adapter.helm_get_release_status(release_name="acme", namespace="ns")
    assert status.values == {"version": "1.0.0"}


def test_helm_status_reports_missing_release() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Error: release: not found")

    status = HelmAdapter(runner=runner).helm_get_release_status(release_name="acme", namespace="ns")
    assert status.exists is False
    assert status.values == {}


def test_classify_error_treats_killed_commands_as_retryable() -> None:
    assert classify_error(returncode=-1, stderr="", stdout="") == "retryable"
    assert classify_error(returncode=1, stderr="Error: INSTALLATION FAILED: bad chart", stdout="") == "fatal"
