from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any

from storefleet.proc import (
    AdapterCommandError,
    CommandRunner,
    ResourceConflictError,
    ResourceNotFoundError,
    run_command,
)

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = ("alreadyexists", "already exists")
_NOT_FOUND_MARKERS = ("notfound", "not found")


@dataclass(frozen=True)
class NamespaceInfo:
    name: str
    phase: str | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PodStatus:
    name: str
    phase: str | None
    ready: bool

    @property
    def running_and_ready(self) -> bool:
        return self.phase == "Running" and self.ready


@dataclass(frozen=True)
class NamespaceResult:
    name: str
    exists: bool
    changed: bool


class KubeAdapter:
    """Adapter for the namespace, quota and pod operations the provisioners need."""

    def __init__(self, *, runner: CommandRunner | None = None, kubectl_bin: str = "kubectl") -> None:
        self._runner = runner
        self._kubectl = kubectl_bin

    def create_namespace(self, name: str, labels: dict[str, str] | None = None) -> NamespaceResult:
        """Create ``name``; raises ``ResourceConflictError`` if it already exists."""
        logger.info("Creating Kubernetes namespace: %s", name)
        try:
            run_command(
                [self._kubectl, "create", "namespace", name],
                runner=self._runner,
                error_message=f"Failed to create namespace {name}",
                operation="namespace create",
            )
        except AdapterCommandError as exc:
            if exc.mentions(*_CONFLICT_MARKERS):
                raise ResourceConflictError.from_error(exc, f"Namespace {name} already exists") from exc
            raise
        if labels:
            self.label_namespace(name, labels)
        logger.info("Created namespace: %s", name)
        return NamespaceResult(name=name, exists=True, changed=True)

    def label_namespace(self, name: str, labels: dict[str, str]) -> None:
        pairs = [f"{key}={value}" for key, value in sorted(labels.items())]
        run_command(
            [self._kubectl, "label", "namespace", name, *pairs, "--overwrite"],
            runner=self._runner,
            error_message=f"Failed to label namespace {name}",
            operation="namespace label",
        )

    def read_namespace(self, name: str) -> NamespaceInfo:
        try:
            result = run_command(
                [self._kubectl, "get", "namespace", name, "-o", "json"],
                runner=self._runner,
                error_message=f"Failed to read namespace {name}",
                operation="cluster lookup",
            )
        except AdapterCommandError as exc:
            if exc.mentions(*_NOT_FOUND_MARKERS):
                raise ResourceNotFoundError.from_error(exc, f"Namespace {name} not found") from exc
            raise

        payload = _parse_json(result.stdout, what=f"namespace {name}")
        metadata = payload.get("metadata") or {}
        status = payload.get("status") or {}
        return NamespaceInfo(
            name=metadata.get("name", name),
            phase=status.get("phase"),
            labels=dict(metadata.get("labels") or {}),
        )

    def namespace_exists(self, name: str) -> bool:
        try:
            self.read_namespace(name)
        except ResourceNotFoundError:
            logger.debug("Namespace not found: %s", name)
            return False
        logger.debug("Namespace exists: %s", name)
        return True

    def create_quota(
        self,
        namespace: str,
        limits: dict[str, str],
        *,
        quota_name: str = "store-quota",
    ) -> None:
        """Create the namespace ResourceQuota; raises ``ResourceConflictError`` if present."""
        hard = ",".join(f"{key}={value}" for key, value in limits.items())
        logger.info("Applying resource quota '%s' in namespace %s: %s", quota_name, namespace, hard)
        try:
            run_command(
                [self._kubectl, "create", "quota", quota_name, "--namespace", namespace, f"--hard={hard}"],
                runner=self._runner,
                error_message=f"Failed to create resource quota in namespace {namespace}",
                operation="store limits apply",
            )
        except AdapterCommandError as exc:
            if exc.mentions(*_CONFLICT_MARKERS):
                raise ResourceConflictError.from_error(
                    exc, f"Resource quota {quota_name} already exists in {namespace}"
                ) from exc
            raise

    def list_pods(self, namespace: str) -> list[PodStatus]:
        result = run_command(
            [self._kubectl, "get", "pods", "--namespace", namespace, "-o", "json"],
            runner=self._runner,
            error_message=f"Failed to list pods in namespace {namespace}",
            operation="pod listing",
        )
        payload = _parse_json(result.stdout, what=f"pods in {namespace}")
        return [_pod_status(item) for item in payload.get("items") or []]

    def delete_namespace(self, name: str) -> NamespaceResult:
        logger.info("Deleting Kubernetes namespace: %s", name)
        try:
            run_command(
                [self._kubectl, "delete", "namespace", name, "--ignore-not-found=true", "--wait=false"],
                runner=self._runner,
                error_message=f"Failed to delete namespace {name}",
                operation="store teardown",
            )
            logger.info("Deleted namespace: %s", name)
            return NamespaceResult(name=name, exists=False, changed=True)
        except AdapterCommandError as exc:
            if exc.mentions(*_NOT_FOUND_MARKERS):
                logger.debug("Namespace was already absent: %s", name)
                return NamespaceResult(name=name, exists=False, changed=False)
            raise


def _parse_json(stdout: str, *, what: str) -> dict[str, Any]:
    try:
        payload = json.loads(stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON from kubectl for {what}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected kubectl output for {what}")
    return payload


def _pod_status(item: dict[str, Any]) -> PodStatus:
    status = item.get("status") or {}
    conditions = status.get("conditions") or []
    ready = any(
        condition.get("type") == "Ready" and condition.get("status") == "True"
        for condition in conditions
        if isinstance(condition, dict)
    )
    return PodStatus(
        name=(item.get("metadata") or {}).get("name", ""),
        phase=status.get("phase"),
        ready=ready,
    )
