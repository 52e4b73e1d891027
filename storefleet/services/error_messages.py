"""User-facing failure messages.

Raw causes (kubectl/helm stderr, command lines, namespaces) stay in the server
log. Each is classified into one of a few fixed messages, and only that
message is stored on the store record and shown to users.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging

from storefleet.proc import AdapterCommandError

logger = logging.getLogger(__name__)

UNKNOWN_ERROR_MESSAGE = "An unknown error occurred"
GENERIC_ERROR_MESSAGE = "An error occurred during provisioning. Please try again."
PROVISION_TIMEOUT_MESSAGE = "Store provisioning timed out. Please delete the store and try again."


@dataclass(frozen=True)
class ErrorClass:
    name: str
    patterns: tuple[str, ...]
    message: str

    def matches(self, text: str) -> bool:
        return any(pattern in text for pattern in self.patterns)


# Evaluated in order; the first match wins.
ERROR_TAXONOMY: tuple[ErrorClass, ...] = (
    ErrorClass(
        name="install",
        patterns=("helm upgrade", "helm install failed", "helm rollback failed"),
        message="Store provisioning failed. Please try again or contact support.",
    ),
    ErrorClass(
        name="uninstall",
        patterns=("helm uninstall", "store teardown"),
        message="Store deletion failed. Please try again or contact support.",
    ),
    ErrorClass(
        name="readiness_timeout",
        patterns=("timeout waiting for pods",),
        message="Store provisioning timed out. The store may still be starting up.",
    ),
    ErrorClass(
        name="resources",
        patterns=("quota", "resources"),
        message="Insufficient resources to create store. Please try again later.",
    ),
    ErrorClass(
        name="namespace",
        patterns=("namespace",),
        message="Failed to create store namespace. Please try again.",
    ),
    ErrorClass(
        name="connectivity",
        patterns=("econnrefused", "connection", "unable to connect"),
        message="Connection error. Please check your cluster connectivity.",
    ),
    ErrorClass(
        name="unknown_type",
        patterns=("unknown store type",),
        message="Invalid store type selected.",
    ),
)


def classify_error_message(error_message: str | None) -> ErrorClass | None:
    if not error_message:
        return None
    text = error_message.lower()
    for error_class in ERROR_TAXONOMY:
        if error_class.matches(text):
            return error_class
    return None


def sanitize_error_message(error_message: str | None) -> str:
    if not error_message:
        return UNKNOWN_ERROR_MESSAGE
    error_class = classify_error_message(error_message)
    if error_class is None:
        return GENERIC_ERROR_MESSAGE
    return error_class.message


def failure_cause(exc: BaseException) -> str:
    """Text to classify for ``exc``.

    Adapter errors are classified on their operation label and tool output so
    that object names and command lines (which always mention a namespace)
    do not decide the class.
    """
    if isinstance(exc, AdapterCommandError):
        return exc.cause
    return str(exc)


def log_and_sanitize_error(
    store_name: str,
    operation: str,
    error_message: str | None,
    *,
    cause: str | None = None,
) -> str:
    """Log the full cause server-side and return the message safe to persist."""
    logger.error("%s error for store=%s: %s", operation, store_name, error_message)
    return sanitize_error_message(cause or error_message)
