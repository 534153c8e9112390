# keygate/db/models.py
from __future__ import annotations

import enum
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite devuelve datetimes naive; todo lo guardado es UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class KeyType(str, enum.Enum):
    TIMED = "timed"
    LIFETIME = "lifetime"
    DEVICE_LOCKED = "device_locked"


class KeyStatus(str, enum.Enum):
    UNUSED = "unused"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


PUBLIC_KEY_SOURCE = "getkey:public"


class Script(Base):
    """Lo mínimo del catálogo que necesita el flujo Get Key."""

    __tablename__ = "scripts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(255))
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[str] = mapped_column(String(16), default="published")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class KeySettings(Base):
    __tablename__ = "key_settings"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    getkey_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    checkpoint_count: Mapped[int] = mapped_column(Integer, default=2)
    ad_links: Mapped[list] = mapped_column(JSON, default=list)
    checkpoint_timer_seconds: Mapped[int] = mapped_column(Integer, default=10)
    captcha_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    key_duration_hours: Mapped[int] = mapped_column(Integer, default=24)
    max_keys_per_ip: Mapped[int] = mapped_column(Integer, default=1)
    cooldown_hours: Mapped[int] = mapped_column(Integer, default=24)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class OwnerPlan(Base):
    __tablename__ = "owner_plans"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    plan_type: Mapped[str] = mapped_column(String(16), default="free")
    # None -> máximo por defecto del plan
    maximum_keys: Mapped[int | None] = mapped_column(Integer, nullable=True)


class LicenseKey(Base):
    __tablename__ = "license_keys"
    __table_args__ = (
        Index("ix_license_keys_provenance", "script_id", "source", "requester_address", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_value: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    script_id: Mapped[str] = mapped_column(String(36), ForeignKey("scripts.id"), index=True)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    type: Mapped[str] = mapped_column(String(16), default=KeyType.TIMED.value)
    status: Mapped[str] = mapped_column(String(16), default=KeyStatus.UNUSED.value)
    max_devices: Mapped[int] = mapped_column(Integer, default=1)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Procedencia estructurada (la nota es solo informativa)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    requester_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class IssuanceSlot(Base):
    """Fila de bloqueo por (script, IP): la emisión la escribe antes de recontar."""

    __tablename__ = "issuance_slots"

    script_id: Mapped[str] = mapped_column(String(36), ForeignKey("scripts.id"), primary_key=True)
    requester_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    issued_count: Mapped[int] = mapped_column(Integer, default=0)
    last_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class KeyDevice(Base):
    __tablename__ = "key_devices"
    __table_args__ = (UniqueConstraint("key_id", "hwid"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[int] = mapped_column(Integer, ForeignKey("license_keys.id", ondelete="CASCADE"), index=True)
    hwid: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class GetKeySession(Base):
    __tablename__ = "getkey_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    token: Mapped[str] = mapped_column(Text)
    script_id: Mapped[str] = mapped_column(String(36), ForeignKey("scripts.id"), index=True)
    ip_address: Mapped[str] = mapped_column(String(64))
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    checkpoints_required: Mapped[int] = mapped_column(Integer)
    checkpoints_completed: Mapped[list] = mapped_column(JSON, default=list)
    captcha_required: Mapped[bool] = mapped_column(Boolean, default=False)
    captcha_passed: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[str] = mapped_column(String(16), default=SessionStatus.PENDING.value, index=True)
    key_value: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    # Bloqueo optimista: dos updates concurrentes -> uno recibe StaleDataError
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
