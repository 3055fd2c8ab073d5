from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, distinct, func

from phoneguard_shared import build_client_fingerprint, mask_phone

from .clock import Clock, SystemClock
from .database import SessionFactory, SessionLocal, dialect_insert, session_scope
from .metrics import SUSPICIOUS_FLAGS
from .models import DeviceFingerprint, FailedAttempt, FailedAttemptReason

logger = logging.getLogger("phoneguard.fraud")

IP = "IP"
PHONE = "PHONE"
KINDS = (IP, PHONE)


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str = "unknown"
    ip: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        return build_client_fingerprint(self.ip, self.user_agent)


@dataclass(frozen=True)
class FailedAttemptView:
    identifier: str
    kind: str
    attempts: int
    last_attempt: datetime
    reasons: List[str] = field(default_factory=list)


class SuspiciousActivityDetector:
    """Flags phone numbers requested from too many distinct devices.

    Also owns the failed-attempt audit trail, which records rate limit
    denials and suspicious activity per IP and per phone but never gates a
    request on its own.
    """

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        clock: Optional[Clock] = None,
        window_secs: int = 24 * 60 * 60,
        max_devices: int = 5,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.window = timedelta(seconds=window_secs)
        self.max_devices = max_devices

    def note_device(self, phone: str, device: DeviceInfo) -> None:
        with session_scope(self.session_factory) as db:
            db.add(
                DeviceFingerprint(
                    phone=phone,
                    user_agent=(device.user_agent or "unknown")[:512],
                    ip=device.ip[:64] if device.ip else None,
                    seen_at=self.clock.now(),
                )
            )
        logger.debug("Device %s seen for %s", device.fingerprint[:12], mask_phone(phone))

    def distinct_devices(self, phone: str) -> int:
        since = self.clock.now() - self.window
        with session_scope(self.session_factory) as db:
            return (
                db.query(func.count(distinct(DeviceFingerprint.user_agent)))
                .filter(DeviceFingerprint.phone == phone, DeviceFingerprint.seen_at >= since)
                .scalar()
                or 0
            )

    def is_suspicious(self, phone: str) -> bool:
        devices = self.distinct_devices(phone)
        if devices <= self.max_devices:
            return False
        logger.warning("Phone %s requested from %d devices within the window", mask_phone(phone), devices)
        SUSPICIOUS_FLAGS.inc()
        self.log_failed_attempt(phone, PHONE, "Multiple device attempts")
        return True

    def log_failed_attempt(self, identifier: str, kind: str, reason: str) -> None:
        if kind not in KINDS:
            raise ValueError(f"kind must be one of {KINDS}, got {kind!r}")
        now = self.clock.now()
        table = FailedAttempt.__table__
        with session_scope(self.session_factory) as db:
            db.execute(
                dialect_insert(db, table)
                .values(identifier=identifier, kind=kind, attempts=1, last_attempt=now)
                .on_conflict_do_update(
                    index_elements=["identifier", "kind"],
                    set_={"attempts": table.c.attempts + 1, "last_attempt": now},
                )
            )
            attempt_id = (
                db.query(FailedAttempt.id)
                .filter(FailedAttempt.identifier == identifier, FailedAttempt.kind == kind)
                .scalar()
            )
            db.add(
                FailedAttemptReason(
                    failed_attempt_id=attempt_id,
                    detail=f"{now.isoformat()}: {reason}"[:512],
                    created_at=now,
                )
            )

    def failed_attempts(self, identifier: str, kind: str) -> Optional[FailedAttemptView]:
        with session_scope(self.session_factory) as db:
            row = (
                db.query(FailedAttempt)
                .filter(FailedAttempt.identifier == identifier, FailedAttempt.kind == kind)
                .one_or_none()
            )
            if row is None:
                return None
            return FailedAttemptView(
                identifier=row.identifier,
                kind=row.kind,
                attempts=row.attempts,
                last_attempt=row.last_attempt,
                reasons=[r.detail for r in row.reasons],
            )

    def prune(self) -> int:
        before = self.clock.now() - self.window
        with session_scope(self.session_factory) as db:
            result = db.execute(delete(DeviceFingerprint).where(DeviceFingerprint.seen_at < before))
            return result.rowcount or 0
