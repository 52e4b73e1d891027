from __future__ import annotations

import enum


class StoreType(str, enum.Enum):
    WOOCOMMERCE = "woocommerce"
    MEDUSA = "medusa"


STORE_STATUS_PROVISIONING = "provisioning"
STORE_STATUS_READY = "ready"
STORE_STATUS_UPGRADING = "upgrading"
STORE_STATUS_FAILED = "failed"
STORE_STATUS_DELETING = "deleting"

STORE_STATUSES = (
    STORE_STATUS_PROVISIONING,
    STORE_STATUS_READY,
    STORE_STATUS_UPGRADING,
    STORE_STATUS_FAILED,
    STORE_STATUS_DELETING,
)

# deleting -> deleting is the retry loop; the row is removed on success.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STORE_STATUS_PROVISIONING: frozenset({STORE_STATUS_READY, STORE_STATUS_FAILED, STORE_STATUS_DELETING}),
    STORE_STATUS_READY: frozenset({STORE_STATUS_UPGRADING, STORE_STATUS_DELETING}),
    STORE_STATUS_UPGRADING: frozenset({STORE_STATUS_READY, STORE_STATUS_FAILED, STORE_STATUS_DELETING}),
    STORE_STATUS_FAILED: frozenset({STORE_STATUS_DELETING}),
    STORE_STATUS_DELETING: frozenset({STORE_STATUS_DELETING}),
}

OPERATION_PROVISION = "provision"
OPERATION_UPGRADE = "upgrade"
OPERATION_DEPROVISION = "deprovision"

AUDIT_STORE_CREATED = "store_created"
AUDIT_DELETE_REQUESTED = "delete_requested"
AUDIT_UPGRADE_INITIATED = "upgrade_initiated"
AUDIT_ROLLBACK_INITIATED = "rollback_initiated"
AUDIT_PROVISION_COMPLETED = "provision_completed"
AUDIT_PROVISION_FAILED = "provision_failed"
AUDIT_PROVISION_TIMED_OUT = "provision_timed_out"
AUDIT_UPGRADE_COMPLETED = "upgrade_completed"
AUDIT_UPGRADE_FAILED = "upgrade_failed"
AUDIT_STORE_DELETED = "store_deleted"
AUDIT_DELETION_FAILED = "deletion_failed"

EVENT_SEVERITY_INFO = "info"
EVENT_SEVERITY_WARNING = "warning"
EVENT_SEVERITY_ERROR = "error"

DEFAULT_STORE_VERSION = "1.0.0"


def is_transition_allowed(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
