from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from storefleet.db import get_session
from storefleet.models import StoreEventRead, StoreRead
from storefleet.services import audit as audit_service, stores as store_service

router = APIRouter(prefix="/stores", tags=["stores"])


@router.get("", response_model=list[StoreRead])
def list_stores(
    status: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> list[StoreRead]:
    return store_service.list_stores(session, status=status)


@router.get("/{store_id}", response_model=StoreRead)
def get_store(store_id: str, session: Session = Depends(get_session)) -> StoreRead:
    return store_service.get_store(session, store_id=store_id)


@router.get("/{store_id}/events", response_model=list[StoreEventRead])
def list_store_events(
    store_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    session: Session = Depends(get_session),
) -> list[StoreEventRead]:
    store_service.get_store(session, store_id=store_id)
    return audit_service.list_events(session, store_id=store_id, limit=limit)
