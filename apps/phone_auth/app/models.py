import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=True)
    role = Column(String(16), nullable=False, default="customer")  # customer|admin
    is_verified = Column(Boolean, nullable=False, default=False)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class BlockRecord(Base):
    """Per-phone daily attempt counter and block status."""

    __tablename__ = "block_records"
    __table_args__ = (Index("ix_block_records_last_updated", "last_updated"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    daily_attempts = Column(Integer, nullable=False, default=0)
    is_permanently_blocked = Column(Boolean, nullable=False, default=False)
    temporary_block_until = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class RequestLog(Base):
    """Append-only request log backing the sliding-window rate limiter."""

    __tablename__ = "request_logs"
    __table_args__ = (Index("ix_request_logs_ip_created", "ip", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip = Column(String(64), nullable=False)
    scope = Column(String(32), nullable=False, default="global")
    endpoint = Column(String(256), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class DeviceFingerprint(Base):
    __tablename__ = "device_fingerprints"
    __table_args__ = (Index("ix_device_fingerprints_phone_seen", "phone", "seen_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String(32), nullable=False)
    user_agent = Column(String(512), nullable=False, default="unknown")
    ip = Column(String(64), nullable=True)
    seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class FailedAttempt(Base):
    __tablename__ = "failed_attempts"
    __table_args__ = (UniqueConstraint("identifier", "kind", name="uq_failed_attempts_identifier_kind"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(64), nullable=False, index=True)
    kind = Column(String(8), nullable=False)  # IP|PHONE
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt = Column(DateTime, nullable=False, default=datetime.utcnow)

    reasons = relationship(
        "FailedAttemptReason",
        order_by="FailedAttemptReason.id",
        cascade="all, delete-orphan",
    )


class FailedAttemptReason(Base):
    __tablename__ = "failed_attempt_reasons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    failed_attempt_id = Column(Integer, ForeignKey("failed_attempts.id", ondelete="CASCADE"), nullable=False, index=True)
    detail = Column(String(512), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
