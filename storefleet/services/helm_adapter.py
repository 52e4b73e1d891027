from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any

from storefleet.proc import AdapterCommandError, CommandRunner, run_command

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("release: not found", "not found")


@dataclass(frozen=True)
class HelmReleaseOperationResult:
    release_name: str
    namespace: str
    changed: bool
    status: str | None = None
    revision: int | None = None


@dataclass(frozen=True)
class HelmReleaseStatusResult:
    release_name: str
    namespace: str
    exists: bool
    status: str | None = None
    revision: int | None = None
    raw: dict[str, Any] | None = None

    @property
    def values(self) -> dict[str, Any]:
        config = (self.raw or {}).get("config")
        return config if isinstance(config, dict) else {}


@dataclass(frozen=True)
class HelmReleaseSummary:
    name: str
    namespace: str
    status: str | None = None
    revision: int | None = None


class HelmAdapter:
    """Adapter for Helm release lifecycle operations."""

    def __init__(self, *, runner: CommandRunner | None = None, helm_bin: str = "helm") -> None:
        self._runner = runner
        self._helm = helm_bin

    def helm_upgrade_install(
        self,
        *,
        release_name: str,
        namespace: str,
        chart_ref: str,
        values: dict[str, Any],
        timeout: int,
        atomic: bool,
        wait: bool,
        chart_version: str | None = None,
    ) -> HelmReleaseOperationResult:
        logger.info(
            "Applying Helm release '%s' in namespace '%s' (chart=%s version=%s)",
            release_name,
            namespace,
            chart_ref,
            chart_version,
        )
        with _values_file(values) as values_file:
            cmd = [
                self._helm,
                "upgrade",
                "--install",
                release_name,
                chart_ref,
                "--namespace",
                namespace,
                "--timeout",
                f"{timeout}s",
                "--values",
                str(values_file),
            ]
            if chart_version:
                cmd.extend(["--version", chart_version])
            if atomic:
                cmd.append("--atomic")
            if wait:
                cmd.append("--wait")

            run_command(
                cmd,
                runner=self._runner,
                error_message=f"Helm install failed for release {release_name}",
                operation="helm install failed",
            )

        status = self.helm_get_release_status(release_name=release_name, namespace=namespace)
        return HelmReleaseOperationResult(
            release_name=release_name,
            namespace=namespace,
            changed=True,
            status=status.status,
            revision=status.revision,
        )

    def helm_list_releases(self, *, namespace: str) -> list[HelmReleaseSummary]:
        result = run_command(
            [self._helm, "list", "--namespace", namespace, "--output", "json"],
            runner=self._runner,
            error_message=f"Failed to list releases in namespace {namespace}",
            operation="release listing",
        )
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON from helm list for namespace {namespace}") from exc
        if not isinstance(payload, list):
            return []

        releases = []
        for entry in payload:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                continue
            revision = entry.get("revision")
            releases.append(
                HelmReleaseSummary(
                    name=entry["name"],
                    namespace=entry.get("namespace", namespace),
                    status=entry.get("status"),
                    # helm list reports the revision as a string
                    revision=int(revision) if str(revision).isdigit() else None,
                )
            )
        return releases

    def helm_release_exists(self, *, release_name: str, namespace: str) -> bool:
        try:
            releases = self.helm_list_releases(namespace=namespace)
        except (AdapterCommandError, ValueError) as exc:
            # A failed lookup falls back to re-installing; upgrade --install is idempotent.
            logger.warning("Error checking Helm release '%s' in %s: %s", release_name, namespace, exc)
            return False
        return any(release.name == release_name for release in releases)

    def helm_uninstall(
        self,
        *,
        release_name: str,
        namespace: str,
        timeout: int,
        wait: bool,
    ) -> HelmReleaseOperationResult:
        logger.info("Uninstalling Helm release '%s' from namespace '%s'", release_name, namespace)
        cmd = [
            self._helm,
            "uninstall",
            release_name,
            "--namespace",
            namespace,
            "--timeout",
            f"{timeout}s",
        ]
        if wait:
            cmd.append("--wait")
        try:
            run_command(
                cmd,
                runner=self._runner,
                error_message=f"Helm uninstall failed for release {release_name}",
                operation="helm uninstall",
            )
            return HelmReleaseOperationResult(
                release_name=release_name,
                namespace=namespace,
                changed=True,
                status="uninstalled",
            )
        except AdapterCommandError as exc:
            if exc.mentions(*_NOT_FOUND_MARKERS):
                logger.debug(
                    "Helm release already absent: release='%s' namespace='%s'",
                    release_name,
                    namespace,
                )
                return HelmReleaseOperationResult(
                    release_name=release_name,
                    namespace=namespace,
                    changed=False,
                    status="not-found",
                )
            raise

    def helm_rollback(
        self,
        *,
        release_name: str,
        namespace: str,
        revision: int,
        timeout: int,
        wait: bool,
    ) -> HelmReleaseOperationResult:
        logger.info(
            "Rolling back Helm release '%s' in namespace '%s' to revision %s",
            release_name,
            namespace,
            revision,
        )
        cmd = [
            self._helm,
            "rollback",
            release_name,
            str(revision),
            "--namespace",
            namespace,
            "--timeout",
            f"{timeout}s",
        ]
        if wait:
            cmd.append("--wait")
        run_command(
            cmd,
            runner=self._runner,
            error_message=f"Helm rollback failed for release {release_name}",
            operation="helm rollback failed",
        )
        status = self.helm_get_release_status(release_name=release_name, namespace=namespace)
        return HelmReleaseOperationResult(
            release_name=release_name,
            namespace=namespace,
            changed=True,
            status=status.status,
            revision=status.revision,
        )

    def helm_get_release_status(self, *, release_name: str, namespace: str) -> HelmReleaseStatusResult:
        logger.debug(
            "Fetching Helm release status: release='%s' namespace='%s'",
            release_name,
            namespace,
        )
        try:
            result = run_command(
                [self._helm, "status", release_name, "--namespace", namespace, "--output", "json"],
                runner=self._runner,
                error_message=f"Failed to fetch release status for {release_name}",
                operation="release status lookup",
            )
        except AdapterCommandError as exc:
            if exc.mentions(*_NOT_FOUND_MARKERS):
                return HelmReleaseStatusResult(release_name=release_name, namespace=namespace, exists=False)
            raise

        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON from helm status for release {release_name}") from exc

        info = payload.get("info", {}) if isinstance(payload, dict) else {}
        status = info.get("status") if isinstance(info, dict) else None
        revision = payload.get("version") if isinstance(payload, dict) else None
        if not isinstance(revision, int):
            revision = None

        return HelmReleaseStatusResult(
            release_name=release_name,
            namespace=namespace,
            exists=True,
            status=status if isinstance(status, str) else None,
            revision=revision,
            raw=payload if isinstance(payload, dict) else None,
        )


class _values_file:
    def __init__(self, values: dict[str, Any]) -> None:
        self._values = values
        self.path: Path | None = None

    def __enter__(self) -> Path:
        with NamedTemporaryFile(mode="w", encoding="utf-8", suffix=".json", delete=False) as tmp:
            json.dump(self._values, tmp)
        self.path = Path(tmp.name)
        logger.debug("Wrote temporary values file: %s", self.path)
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path and self.path.exists():
            self.path.unlink()
            logger.debug("Removed temporary values file: %s", self.path)
