import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declared_attr, relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String)
    department = Column(String)
    role = Column(String, nullable=False, default="USER")  # USER, IT_STAFF, IT_LEAD, ADMIN
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    notifications = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )


class CaseLifecycleMixin:
    """Columns shared by every case table; the only fields the lifecycle core touches."""

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="RECEIVED", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    in_progress_at = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    last_long_term_alert_at = Column(DateTime(timezone=True), nullable=True)

    @declared_attr
    def reporter_id(cls):
        return Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)

    @declared_attr
    def handler_id(cls):
        return Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    @declared_attr
    def reporter(cls):
        return relationship("User", foreign_keys=f"{cls.__name__}.reporter_id")

    @declared_attr
    def handler(cls):
        return relationship("User", foreign_keys=f"{cls.__name__}.handler_id")


class Incident(CaseLifecycleMixin, Base):
    __tablename__ = "incidents"
    severity = Column(String, default="medium")


class Warranty(CaseLifecycleMixin, Base):
    __tablename__ = "warranties"
    serial_number = Column(String)


class DeliveryCase(CaseLifecycleMixin, Base):
    __tablename__ = "delivery_cases"
    customer_name = Column(String)


class ReceivingCase(CaseLifecycleMixin, Base):
    __tablename__ = "receiving_cases"
    supplier_name = Column(String)


class DeploymentCase(CaseLifecycleMixin, Base):
    __tablename__ = "deployment_cases"
    target_site = Column(String)


class InternalCase(CaseLifecycleMixin, Base):
    __tablename__ = "internal_cases"
    requested_for = Column(String)


class MaintenanceCase(CaseLifecycleMixin, Base):
    __tablename__ = "maintenance_cases"
    equipment_code = Column(String)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        sa.Index("ix_notifications_user_unread", "user_id", "is_read"),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    kind = Column(String, nullable=False)  # CASE_CREATED, CASE_UPDATED, CASE_COMPLETED, CASE_ASSIGNED, SYSTEM_ALERT
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    case_id = Column(UUID(as_uuid=True), nullable=True)
    case_type = Column(String, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    user = relationship("User", back_populates="notifications")

    @property
    def action_url(self) -> str | None:
        meta = self.meta or {}
        return meta.get("action_url")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(UUID(as_uuid=True))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
