from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session, select

from storefleet.models import AuditLogORM, StoreEventORM, StoreEventRead
from storefleet.services.store_constants import EVENT_SEVERITY_INFO

logger = logging.getLogger(__name__)


def record_audit(
    session: Session,
    *,
    store_id: str,
    action: str,
    details: dict[str, Any] | None = None,
) -> None:
    """Persist an audit entry. Never raises: a lost audit row must not fail the operation."""
    try:
        session.add(AuditLogORM(store_id=store_id, action=action, details=details or {}))
        session.commit()
        logger.debug("Audit: %s store_id=%s", action, store_id)
    except Exception as exc:
        session.rollback()
        logger.warning("Audit log failed for store_id=%s action=%s: %s", store_id, action, exc)


def record_event(
    session: Session,
    *,
    store_id: str,
    event_type: str,
    message: str,
    details: dict[str, Any] | None = None,
    severity: str = EVENT_SEVERITY_INFO,
) -> None:
    """Persist a store event for the activity timeline. Never raises."""
    try:
        session.add(
            StoreEventORM(
                store_id=store_id,
                event_type=event_type,
                message=message,
                details=details or {},
                severity=severity,
            )
        )
        session.commit()
        logger.debug("Event: %s store_id=%s %s", event_type, store_id, message)
    except Exception as exc:
        session.rollback()
        logger.warning("Event log failed for store_id=%s event=%s: %s", store_id, event_type, exc)


def list_events(session: Session, *, store_id: str, limit: int = 50) -> list[StoreEventRead]:
    events = session.exec(
        select(StoreEventORM)
        .where(StoreEventORM.store_id == store_id)
        .order_by(StoreEventORM.created_at.desc(), StoreEventORM.id.desc())
        .limit(limit)
    ).all()
    return [StoreEventRead.model_validate(event) for event in events]


def list_audit_entries(session: Session, *, store_id: str) -> list[AuditLogORM]:
    return list(
        session.exec(
            select(AuditLogORM).where(AuditLogORM.store_id == store_id).order_by(AuditLogORM.id)
        ).all()
    )
