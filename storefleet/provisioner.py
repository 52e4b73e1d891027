from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Mapping

from storefleet.config import Settings
from storefleet.models import StoreRead
from storefleet.proc import ResourceConflictError
from storefleet.services.error_messages import failure_cause
from storefleet.services.helm_adapter import HelmAdapter
from storefleet.services.hosts import HostsFileRegistry, NameRegistry, NullRegistry
from storefleet.services.kube_adapter import KubeAdapter
from storefleet.services.readiness import ReadinessWaiter
from storefleet.services.store_constants import StoreType
from storefleet.services.store_naming import hostname_for_store, store_url

logger = logging.getLogger(__name__)

NAMESPACE_LABELS = {"app": "store-orchestrator", "managed-by": "storefleet"}


def _store_quota(persistent_volume_claims: int) -> dict[str, str]:
    return {
        "requests.cpu": "2",
        "requests.memory": "4Gi",
        "limits.cpu": "4",
        "limits.memory": "8Gi",
        "persistentvolumeclaims": str(persistent_volume_claims),
    }


@dataclass(frozen=True)
class StoreTypeSpec:
    store_type: StoreType
    chart_ref: str
    quota: dict[str, str]
    extra_values: dict[str, Any] = field(default_factory=dict)


def build_store_type_specs(settings: Settings) -> dict[StoreType, StoreTypeSpec]:
    return {
        StoreType.WOOCOMMERCE: StoreTypeSpec(
            store_type=StoreType.WOOCOMMERCE,
            chart_ref=settings.woocommerce_chart_path,
            quota=_store_quota(3),
        ),
        StoreType.MEDUSA: StoreTypeSpec(
            store_type=StoreType.MEDUSA,
            chart_ref=settings.medusa_chart_path,
            quota=_store_quota(5),
        ),
    }


@dataclass(frozen=True)
class ProvisionOutcome:
    ok: bool
    url: str | None = None
    error: str | None = None
    version: str | None = None
    release_revision: int | None = None
    cause: str | None = None

    @classmethod
    def success(
        cls,
        *,
        url: str | None = None,
        version: str | None = None,
        release_revision: int | None = None,
    ) -> ProvisionOutcome:
        return cls(ok=True, url=url, version=version, release_revision=release_revision)

    @classmethod
    def failure(cls, error: str, *, cause: str | None = None) -> ProvisionOutcome:
        return cls(ok=False, error=error, cause=cause or error)


class StoreProvisioner:
    """Drives one store type's namespace, quota, release and hostname.

    ``provision`` and ``deprovision`` inspect what already exists on the
    cluster and only perform the remaining steps, so both can be re-run after
    a crash or a failed attempt. Neither raises: every failure is returned as
    ``ProvisionOutcome(ok=False, error=<raw message>, cause=<text to classify>)``.
    """

    def __init__(
        self,
        *,
        spec: StoreTypeSpec,
        domain: str,
        kube: KubeAdapter,
        helm: HelmAdapter,
        waiter: ReadinessWaiter,
        registry: NameRegistry,
        helm_timeout: int = 600,
    ) -> None:
        self.spec = spec
        self._domain = domain
        self._kube = kube
        self._helm = helm
        self._waiter = waiter
        self._registry = registry
        self._helm_timeout = helm_timeout

    def provision(self, store: StoreRead) -> ProvisionOutcome:
        logger.info("Provisioning %s store: %s", self.spec.store_type.value, store.name)
        namespace = store.namespace
        revision = None
        try:
            if not self._kube.namespace_exists(namespace):
                logger.info("Fresh provisioning of %s - creating all resources", store.name)
                self._create_namespace(store)
                self._apply_quota(namespace)
                revision = self._install_release(store, version=store.version)
                self._waiter.wait(namespace)
            elif not self._helm.helm_release_exists(release_name=store.release_name, namespace=namespace):
                logger.info(
                    "Partial provisioning detected for %s - resuming from quota and release install", store.name
                )
                self._apply_quota(namespace)
                revision = self._install_release(store, version=store.version)
                self._waiter.wait(namespace)
            elif self._waiter.pods_ready(namespace):
                logger.info("Store %s already provisioned and ready", store.name)
            else:
                logger.info("Release for %s present but pods not ready - waiting", store.name)
                self._waiter.wait(namespace)

            url = self._register_name(store)
        except Exception as exc:
            logger.warning("Provisioning failed for store %s: %s", store.name, exc)
            return ProvisionOutcome.failure(str(exc), cause=failure_cause(exc))

        logger.info("Store %s is ready at %s", store.name, url)
        return ProvisionOutcome.success(url=url, version=store.version, release_revision=revision)

    def upgrade(self, store: StoreRead) -> ProvisionOutcome:
        """Apply a pending upgrade (``target_version``) or rollback (``rollback_revision``)."""
        try:
            if store.rollback_revision is not None:
                result = self._helm.helm_rollback(
                    release_name=store.release_name,
                    namespace=store.namespace,
                    revision=store.rollback_revision,
                    timeout=self._helm_timeout,
                    wait=True,
                )
                status = self._helm.helm_get_release_status(
                    release_name=store.release_name, namespace=store.namespace
                )
                version = status.values.get("version") or store.version
            else:
                version = store.target_version or store.version
                logger.info("Upgrading store %s from %s to %s", store.name, store.version, version)
                result = self._helm.helm_upgrade_install(
                    release_name=store.release_name,
                    namespace=store.namespace,
                    chart_ref=self.spec.chart_ref,
                    values=self._release_values(store, version=version),
                    timeout=self._helm_timeout,
                    atomic=True,
                    wait=True,
                )
        except Exception as exc:
            logger.warning("Upgrade failed for store %s: %s", store.name, exc)
            return ProvisionOutcome.failure(str(exc), cause=failure_cause(exc))

        return ProvisionOutcome.success(url=store.url, version=version, release_revision=result.revision)

    def deprovision(self, store: StoreRead) -> ProvisionOutcome:
        logger.info("Deprovisioning %s store: %s", self.spec.store_type.value, store.name)
        errors: list[Exception] = []
        try:
            self._helm.helm_uninstall(
                release_name=store.release_name,
                namespace=store.namespace,
                timeout=self._helm_timeout,
                wait=True,
            )
        except Exception as exc:
            logger.warning("Release uninstall failed for store %s: %s", store.name, exc)
            errors.append(exc)

        try:
            self._kube.delete_namespace(store.namespace)
        except Exception as exc:
            logger.warning("Namespace deletion failed for store %s: %s", store.name, exc)
            errors.append(exc)

        self._registry.deregister(hostname_for_store(store.name, self._domain))

        if errors:
            return ProvisionOutcome.failure(str(errors[0]), cause=failure_cause(errors[0]))
        logger.info("Store %s deprovisioned", store.name)
        return ProvisionOutcome.success()

    def _create_namespace(self, store: StoreRead) -> None:
        try:
            self._kube.create_namespace(store.namespace, {**NAMESPACE_LABELS, "store": store.name})
        except ResourceConflictError:
            logger.info("Namespace %s already exists (idempotent)", store.namespace)

    def _apply_quota(self, namespace: str) -> None:
        try:
            self._kube.create_quota(namespace, self.spec.quota)
        except ResourceConflictError:
            logger.info("ResourceQuota already exists in %s (idempotent)", namespace)

    def _release_values(self, store: StoreRead, *, version: str | None) -> dict[str, Any]:
        values: dict[str, Any] = {
            **self.spec.extra_values,
            "storeName": store.name,
            "domain": self._domain,
        }
        if version:
            values["version"] = version
        return values

    def _install_release(self, store: StoreRead, *, version: str | None) -> int | None:
        result = self._helm.helm_upgrade_install(
            release_name=store.release_name,
            namespace=store.namespace,
            chart_ref=self.spec.chart_ref,
            values=self._release_values(store, version=version),
            timeout=self._helm_timeout,
            atomic=True,
            wait=True,
        )
        logger.info("Release installed: %s (revision %s)", store.release_name, result.revision)
        return result.revision

    def _register_name(self, store: StoreRead) -> str:
        hostname = hostname_for_store(store.name, self._domain)
        self._registry.register(hostname)
        return store_url(hostname)


def build_name_registry(settings: Settings) -> NameRegistry:
    if settings.hosts_file:
        return HostsFileRegistry(settings.hosts_file, address=settings.hosts_address)
    return NullRegistry()


def build_provisioners(
    settings: Settings,
    *,
    kube: KubeAdapter | None = None,
    helm: HelmAdapter | None = None,
    registry: NameRegistry | None = None,
) -> Mapping[str, StoreProvisioner]:
    """Resolve one provisioner per store type, keyed by the type's string value."""
    kube = kube or KubeAdapter(kubectl_bin=settings.kubectl_bin)
    helm = helm or HelmAdapter(helm_bin=settings.helm_bin)
    registry = registry or build_name_registry(settings)
    waiter = ReadinessWaiter(
        kube,
        timeout=settings.readiness_timeout,
        interval=settings.readiness_interval,
    )
    return {
        store_type.value: StoreProvisioner(
            spec=spec,
            domain=settings.domain,
            kube=kube,
            helm=helm,
            waiter=waiter,
            registry=registry,
            helm_timeout=settings.helm_timeout,
        )
        for store_type, spec in build_store_type_specs(settings).items()
    }
