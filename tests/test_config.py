from __future__ import annotations

import pytest

from storefleet.config import Settings, load_settings


def test_defaults(monkeypatch) -> None:
    for name in (
        "STOREFLEET_DOMAIN",
        "STOREFLEET_PROVISION_TIMEOUT",
        "STOREFLEET_MAX_CONCURRENT_PROVISIONS",
        "STOREFLEET_HOSTS_FILE",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.domain == "local.test"
    assert settings.provision_timeout == 900
    assert settings.max_concurrent_provisions == 3
    assert settings.hosts_file == "/etc/hosts"


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("STOREFLEET_DOMAIN", "shops.example.com")
    monkeypatch.setenv("STOREFLEET_MAX_CONCURRENT_PROVISIONS", "5")
    monkeypatch.setenv("STOREFLEET_HOSTS_FILE", "")
    monkeypatch.setenv("MEDUSA_CHART_PATH", "oci://charts/medusa")

    settings = load_settings()

    assert settings.domain == "shops.example.com"
    assert settings.max_concurrent_provisions == 5
    assert settings.hosts_file is None
    assert settings.medusa_chart_path == "oci://charts/medusa"
    assert settings.woocommerce_chart_path == Settings().woocommerce_chart_path


@pytest.mark.parametrize(("value", "message"), [("three", "must be an integer"), ("0", "at least 1")])
def test_invalid_concurrency_bound(monkeypatch, value: str, message: str) -> None:
    monkeypatch.setenv("STOREFLEET_MAX_CONCURRENT_PROVISIONS", value)

    with pytest.raises(ValueError, match=message):
        load_settings()


def test_database_url_is_read_by_the_db_module(monkeypatch, tmp_path) -> None:
    from storefleet import db

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'fleet.db'}")

    assert db._database_url() == f"sqlite:///{tmp_path / 'fleet.db'}"
    assert not hasattr(load_settings(), "database_url")
