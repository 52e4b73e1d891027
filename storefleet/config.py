from __future__ import annotations

from dataclasses import dataclass
import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    domain: str = "local.test"
    reconcile_interval: int = 10
    provision_timeout: int = 900
    max_concurrent_provisions: int = 3
    readiness_timeout: int = 600
    readiness_interval: int = 5
    helm_timeout: int = 600
    woocommerce_chart_path: str = "/charts/woocommerce"
    medusa_chart_path: str = "/charts/medusa"
    hosts_file: str | None = "/etc/hosts"
    hosts_address: str = "127.0.0.1"
    kubectl_bin: str = "kubectl"
    helm_bin: str = "helm"


def load_settings() -> Settings:
    """Build settings from the process environment."""
    defaults = Settings()
    hosts_file = os.getenv("STOREFLEET_HOSTS_FILE", defaults.hosts_file)
    settings = Settings(
        domain=os.getenv("STOREFLEET_DOMAIN", defaults.domain),
        reconcile_interval=_env_int("STOREFLEET_RECONCILE_INTERVAL", defaults.reconcile_interval),
        provision_timeout=_env_int("STOREFLEET_PROVISION_TIMEOUT", defaults.provision_timeout),
        max_concurrent_provisions=_env_int(
            "STOREFLEET_MAX_CONCURRENT_PROVISIONS", defaults.max_concurrent_provisions
        ),
        readiness_timeout=_env_int("STOREFLEET_READINESS_TIMEOUT", defaults.readiness_timeout),
        readiness_interval=_env_int("STOREFLEET_READINESS_INTERVAL", defaults.readiness_interval),
        helm_timeout=_env_int("STOREFLEET_HELM_TIMEOUT", defaults.helm_timeout),
        woocommerce_chart_path=os.getenv("WOOCOMMERCE_CHART_PATH", defaults.woocommerce_chart_path),
        medusa_chart_path=os.getenv("MEDUSA_CHART_PATH", defaults.medusa_chart_path),
        hosts_file=hosts_file or None,
        hosts_address=os.getenv("STOREFLEET_HOSTS_ADDRESS", defaults.hosts_address),
        kubectl_bin=os.getenv("KUBECTL_BIN", defaults.kubectl_bin),
        helm_bin=os.getenv("HELM_BIN", defaults.helm_bin),
    )
    if settings.max_concurrent_provisions < 1:
        raise ValueError("STOREFLEET_MAX_CONCURRENT_PROVISIONS must be at least 1")
    return settings
