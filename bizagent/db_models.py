from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class BusinessDB(Base):
    __tablename__ = "businesses"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    timezone = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)


class BusinessHoursDB(Base):
    __tablename__ = "business_hours"
    __table_args__ = (
        UniqueConstraint("business_id", "weekday", name="business_weekday_unique"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(String, nullable=False, index=True)
    weekday = Column(Integer, nullable=False)  # Monday=0
    open_time = Column(String(5), nullable=True)  # HH:MM
    close_time = Column(String(5), nullable=True)  # HH:MM
    is_closed = Column(Boolean, nullable=False, default=False)


class ServiceDB(Base):
    __tablename__ = "services"

    id = Column(String, primary_key=True, default=_new_id)
    business_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class AppointmentDB(Base):
    __tablename__ = "appointments"

    id = Column(String, primary_key=True)
    business_id = Column(String, nullable=False, index=True)
    customer_id = Column(String, nullable=False, index=True)
    staff_id = Column(String, nullable=True, index=True)
    service_id = Column(String, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="scheduled")
    notes = Column(Text, nullable=True)
    google_event_id = Column(String, nullable=True)
    microsoft_event_id = Column(String, nullable=True)
    apple_event_id = Column(String, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)


class CalendarIntegrationDB(Base):
    __tablename__ = "calendar_integrations"
    __table_args__ = (
        UniqueConstraint("business_id", "provider", name="business_provider_unique"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(String, nullable=False, index=True)
    provider = Column(String(16), nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    data = Column(Text, nullable=True)  # provider-specific JSON
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class ReceptionistConfigDB(Base):
    __tablename__ = "receptionist_config"

    business_id = Column(String, primary_key=True)
    greeting = Column(Text, nullable=True)
    after_hours_message = Column(Text, nullable=True)
    emergency_keywords = Column(Text, nullable=True)  # JSON list
    voicemail_enabled = Column(Boolean, nullable=False, default=True)
    transfer_phone_numbers = Column(Text, nullable=True)  # JSON list


class CallLogDB(Base):
    __tablename__ = "call_logs"

    id = Column(String, primary_key=True, default=_new_id)
    business_id = Column(String, nullable=False, index=True)
    caller_id = Column(String, nullable=True)
    caller_name = Column(String, nullable=True)
    transcript = Column(Text, nullable=True)
    intent_detected = Column(String(32), nullable=True)
    is_emergency = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, default="answered")
    call_time = Column(DateTime, nullable=False, default=_utcnow, index=True)
