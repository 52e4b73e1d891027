from __future__ import annotations

import re
import secrets

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
STORE_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,30}[a-z0-9])?$")
SUFFIX_RE = re.compile(r"^[0-9a-z]{6}$")

MAX_DNS_LABEL_LEN = 63
MAX_STORE_NAME_LEN = 32
RANDOM_SUFFIX_LEN = 6
NAMESPACE_PREFIX = "store"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def is_valid_dns_label(value: str) -> bool:
    return bool(DNS_LABEL_RE.fullmatch(value))


def validate_store_name(name: str) -> str:
    """Return ``name`` unchanged if it is a usable store name, else raise ``ValueError``.

    Store names end up as a namespace component, a Helm release name and the
    leftmost label of the store hostname, so they are restricted to lowercase
    DNS label characters and kept short enough to leave room for the
    namespace prefix and random suffix.
    """
    if not STORE_NAME_RE.fullmatch(name):
        raise ValueError(
            f"store name must be 1-{MAX_STORE_NAME_LEN} characters of [a-z0-9-] "
            "and start and end with a letter or digit"
        )
    return name


def generate_suffix6() -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(RANDOM_SUFFIX_LEN))


def _normalize_suffix(suffix: str) -> str:
    if not SUFFIX_RE.fullmatch(suffix):
        raise ValueError("suffix must match [0-9a-z]{6}")
    return suffix


def namespace_for_store(name: str, *, suffix: str | None = None) -> str:
    validate_store_name(name)
    candidate_suffix = _normalize_suffix(suffix) if suffix is not None else generate_suffix6()
    namespace = f"{NAMESPACE_PREFIX}-{name}-{candidate_suffix}"
    if len(namespace) > MAX_DNS_LABEL_LEN or not is_valid_dns_label(namespace):
        raise ValueError("generated namespace is not a valid DNS label")
    return namespace


def release_name_for_store(name: str) -> str:
    return validate_store_name(name)


def hostname_for_store(name: str, domain: str) -> str:
    return f"{name}.{domain}"


def store_url(hostname: str) -> str:
    return f"http://{hostname}"
