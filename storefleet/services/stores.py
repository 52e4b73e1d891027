from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from storefleet.models import StoreCreate, StoreORM, StoreRead
from storefleet.services import audit
from storefleet.services.errors import IntegrityException, NotFoundException
from storefleet.services.store_constants import (
    AUDIT_DELETE_REQUESTED,
    AUDIT_ROLLBACK_INITIATED,
    AUDIT_STORE_CREATED,
    AUDIT_UPGRADE_INITIATED,
    DEFAULT_STORE_VERSION,
    EVENT_SEVERITY_WARNING,
    STORE_STATUS_DELETING,
    STORE_STATUS_FAILED,
    STORE_STATUS_PROVISIONING,
    STORE_STATUS_READY,
    STORE_STATUS_UPGRADING,
    STORE_STATUSES,
    is_transition_allowed,
)
from storefleet.services.store_naming import namespace_for_store, release_name_for_store, validate_store_name

logger = logging.getLogger(__name__)


def _get_store_orm(session: Session, *, store_id: str) -> StoreORM:
    if not (store := session.get(StoreORM, store_id)):
        raise NotFoundException("Store not found")
    return store


def _check_transition(current: str, target: str) -> None:
    if not is_transition_allowed(current, target):
        raise IntegrityException(f"Cannot move store from {current} to {target}")


def create_store(session: Session, *, payload: StoreCreate) -> StoreRead:
    try:
        name = validate_store_name(payload.name)
    except ValueError as exc:
        raise IntegrityException(str(exc)) from exc

    store = StoreORM(
        name=name,
        type=payload.type.value,
        status=STORE_STATUS_PROVISIONING,
        namespace=namespace_for_store(name),
        release_name=release_name_for_store(name),
        version=payload.version or DEFAULT_STORE_VERSION,
    )
    session.add(store)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Store create failed due to integrity conflict for name=%s", name)
        raise IntegrityException("Store already exists") from exc
    session.refresh(store)
    logger.info(
        "Created store id=%s name=%s type=%s namespace=%s",
        store.id,
        store.name,
        store.type,
        store.namespace,
    )
    created = StoreRead.model_validate(store)
    audit.record_audit(
        session,
        store_id=created.id,
        action=AUDIT_STORE_CREATED,
        details={"name": created.name, "type": created.type, "namespace": created.namespace},
    )
    audit.record_event(
        session,
        store_id=created.id,
        event_type="store_created",
        message=f"Store {created.name} queued for provisioning",
        details={"type": created.type, "version": created.version},
    )
    return created


def get_store(session: Session, *, store_id: str) -> StoreRead:
    return StoreRead.model_validate(_get_store_orm(session, store_id=store_id))


def list_stores(session: Session, *, status: str | None = None) -> list[StoreRead]:
    stmt = select(StoreORM)
    if status is not None:
        if status not in STORE_STATUSES:
            raise IntegrityException(f"Unknown store status: {status}")
        stmt = stmt.where(StoreORM.status == status)
    stores = session.exec(stmt.order_by(StoreORM.created_at.desc(), StoreORM.id)).all()
    return [StoreRead.model_validate(store) for store in stores]


def fetch_by_status(
    session: Session,
    *,
    status: str,
    created_after: datetime | None = None,
) -> list[StoreORM]:
    """Records in ``status``, oldest first."""
    stmt = select(StoreORM).where(StoreORM.status == status)
    if created_after is not None:
        stmt = stmt.where(StoreORM.created_at >= created_after)
    stmt = stmt.order_by(StoreORM.created_at, StoreORM.id)
    return list(session.exec(stmt).all())


def update_status(
    session: Session,
    *,
    store_id: str,
    status: str,
    url: str | None = None,
    error_message: str | None = None,
    version: str | None = None,
    release_revision: int | None = None,
    expected_status: str | None = None,
) -> StoreORM | None:
    """Apply a status transition and return the updated record.

    ``error_message`` is always overwritten (``None`` clears it); ``url``,
    ``version`` and ``release_revision`` are only written when given. With
    ``expected_status`` the update only applies while the stored status still
    equals it, and ``None`` is returned when it no longer does.
    """
    store = _get_store_orm(session, store_id=store_id)
    _check_transition(expected_status or store.status, status)

    values: dict = {
        "status": status,
        "error_message": error_message,
        "updated_at": datetime.utcnow(),
    }
    if url is not None:
        values["url"] = url
    if version is not None:
        values["version"] = version
    if release_revision is not None:
        values["release_revision"] = release_revision
    if status != STORE_STATUS_UPGRADING:
        values["target_version"] = None
        values["rollback_revision"] = None

    stmt = update(StoreORM).where(StoreORM.id == store_id)
    if expected_status is not None:
        stmt = stmt.where(StoreORM.status == expected_status)
    result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    session.commit()
    if result.rowcount == 0:
        logger.warning(
            "Discarded status update for store id=%s: expected status %s no longer holds",
            store_id,
            expected_status,
        )
        return None
    session.refresh(store)
    logger.debug("Store id=%s status=%s", store_id, status)
    return store


def delete_store(session: Session, *, store_id: str) -> None:
    store = _get_store_orm(session, store_id=store_id)
    session.delete(store)
    session.commit()
    logger.info("Removed store record id=%s", store_id)


def bulk_timeout_fail(
    session: Session,
    *,
    status: str,
    older_than: datetime,
    message: str,
) -> list[str]:
    """Fail every ``status`` record created before ``older_than`` in one update.

    Returns the ids of the fenced records.
    """
    _check_transition(status, STORE_STATUS_FAILED)
    stmt = (
        update(StoreORM)
        .where(StoreORM.status == status, StoreORM.created_at < older_than)
        .values(status=STORE_STATUS_FAILED, error_message=message, updated_at=datetime.utcnow())
        .returning(StoreORM.id)
        .execution_options(synchronize_session=False)
    )
    fenced = [row[0] for row in session.execute(stmt).all()]
    session.commit()
    if fenced:
        logger.warning(
            "Timed out %s store(s) stuck in %s since before %s",
            len(fenced),
            status,
            older_than.isoformat(timespec="seconds"),
        )
    return fenced


def request_delete(session: Session, *, store_id: str) -> StoreRead:
    """Mark a store for deletion; the reconciler performs the teardown."""
    store = _get_store_orm(session, store_id=store_id)
    if store.status == STORE_STATUS_DELETING:
        logger.info("Store id=%s is already marked for deletion", store_id)
        return StoreRead.model_validate(store)

    previous = store.status
    _check_transition(previous, STORE_STATUS_DELETING)
    store.status = STORE_STATUS_DELETING
    store.error_message = None
    store.target_version = None
    store.rollback_revision = None
    store.updated_at = datetime.utcnow()
    session.add(store)
    session.commit()
    session.refresh(store)
    logger.info("Marked store id=%s name=%s for deletion (was %s)", store.id, store.name, previous)
    deleting = StoreRead.model_validate(store)
    audit.record_audit(
        session,
        store_id=store_id,
        action=AUDIT_DELETE_REQUESTED,
        details={"previous_status": previous},
    )
    audit.record_event(
        session,
        store_id=store_id,
        event_type="deletion_requested",
        message=f"Deletion requested for store {deleting.name}",
    )
    return deleting


def request_upgrade(session: Session, *, store_id: str, version: str) -> StoreRead:
    store = _get_store_orm(session, store_id=store_id)
    if store.status != STORE_STATUS_READY:
        raise IntegrityException(f"Cannot upgrade store in {store.status} status. Store must be ready.")
    if store.version == version:
        raise IntegrityException(f"Store is already at version {version}")

    from_version = store.version
    store.status = STORE_STATUS_UPGRADING
    store.target_version = version
    store.rollback_revision = None
    store.updated_at = datetime.utcnow()
    session.add(store)
    session.commit()
    session.refresh(store)
    logger.info("Store id=%s upgrade requested %s -> %s", store_id, from_version, version)
    upgrading = StoreRead.model_validate(store)
    audit.record_audit(
        session,
        store_id=store_id,
        action=AUDIT_UPGRADE_INITIATED,
        details={"from_version": from_version, "to_version": version},
    )
    audit.record_event(
        session,
        store_id=store_id,
        event_type="upgrade_started",
        message=f"Upgrading from v{from_version} to v{version}",
        details={"from": from_version, "to": version},
    )
    return upgrading


def request_rollback(session: Session, *, store_id: str, revision: int | None = None) -> StoreRead:
    store = _get_store_orm(session, store_id=store_id)
    if store.status != STORE_STATUS_READY:
        raise IntegrityException(f"Cannot rollback store in {store.status} status. Store must be ready.")
    if store.release_revision is None:
        raise IntegrityException("Store does not have a release revision to roll back from")

    target_revision = revision if revision is not None else store.release_revision - 1
    if target_revision < 1:
        raise IntegrityException("No previous revision to rollback to")
    if target_revision == store.release_revision:
        raise IntegrityException(f"Store is already at revision {target_revision}")

    current_revision = store.release_revision
    store.status = STORE_STATUS_UPGRADING
    store.rollback_revision = target_revision
    store.target_version = None
    store.updated_at = datetime.utcnow()
    session.add(store)
    session.commit()
    session.refresh(store)
    logger.info("Store id=%s rollback requested %s -> %s", store_id, current_revision, target_revision)
    upgrading = StoreRead.model_validate(store)
    audit.record_audit(
        session,
        store_id=store_id,
        action=AUDIT_ROLLBACK_INITIATED,
        details={"current_revision": current_revision, "target_revision": target_revision},
    )
    audit.record_event(
        session,
        store_id=store_id,
        event_type="rollback_started",
        message=f"Rolling back from revision {current_revision} to {target_revision}",
        details={"from": current_revision, "to": target_revision},
        severity=EVENT_SEVERITY_WARNING,
    )
    return upgrading
