from datetime import datetime
from typing import Optional, Any
import uuid

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON, Text, String

from storefleet.services.store_constants import (
    DEFAULT_STORE_VERSION,
    EVENT_SEVERITY_INFO,
    STORE_STATUS_PROVISIONING,
    StoreType,
)


def _new_store_id() -> str:
    return str(uuid.uuid4())


class StoreBase(SQLModel):
    name: str
    type: StoreType


class StoreORM(StoreBase, table=True):
    __tablename__ = "store"

    id: str = Field(default_factory=_new_store_id, primary_key=True)
    name: str = Field(sa_column=Column(String(), nullable=False, unique=True))
    type: str = Field(sa_column=Column(String(), nullable=False))
    status: str = Field(default=STORE_STATUS_PROVISIONING, nullable=False, index=True)
    namespace: str = Field(sa_column=Column(String(), nullable=False, unique=True))
    release_name: str = Field(nullable=False)
    version: Optional[str] = Field(default=DEFAULT_STORE_VERSION)
    # Pending upgrade request; cleared when the store leaves ``upgrading``.
    target_version: Optional[str] = Field(default=None)
    rollback_revision: Optional[int] = Field(default=None)
    release_revision: Optional[int] = Field(default=None)
    url: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class StoreCreate(StoreBase):
    version: Optional[str] = None


class StoreRead(StoreBase):
    id: str
    type: str
    status: str
    namespace: str
    release_name: str
    version: Optional[str] = None
    target_version: Optional[str] = None
    rollback_revision: Optional[int] = None
    release_revision: Optional[int] = None
    url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuditLogORM(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    # No foreign key: audit rows outlive the store row they describe.
    store_id: str = Field(index=True)
    action: str = Field(nullable=False)
    details: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class StoreEventORM(SQLModel, table=True):
    __tablename__ = "store_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    store_id: str = Field(index=True)
    event_type: str = Field(nullable=False)
    message: str = Field(sa_column=Column(Text(), nullable=False))
    details: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    severity: str = Field(default=EVENT_SEVERITY_INFO, nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class StoreEventRead(SQLModel):
    id: int
    store_id: str
    event_type: str
    message: str
    details: Optional[dict[str, Any]] = None
    severity: str
    created_at: datetime
